from enum import Enum
from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean, Text, SmallInteger, JSON, CheckConstraint, Index, UniqueConstraint
from .base import Base
from perfhistory.core.config import settings
import datetime


class RunStatus(str, Enum):
    RUNNING = 'RUNNING'
    SUCCESS = 'SUCCESS'
    PARTIAL = 'PARTIAL'
    FAILED = 'FAILED'


ALLOWED_INTERVALS = (5, 10, 15, 30, 60)


def default_settings(connection_id: str) -> dict:
    return {
        'connection_id': connection_id,
        'is_enabled': True,
        'collection_interval_minutes': 10,
        'retention_days': 30,
        'min_executions': 1,
        'min_elapsed_time_ms': 0.0,
        'excluded_schemas': list(settings.EXCLUDED_SCHEMAS),
        'top_sql_limit': 500,
        'collect_all_hours': True,
        'collect_start_hour': 0,
        'collect_end_hour': 23,
        'total_collections': 0,
        'successful_collections': 0,
        'failed_collections': 0,
    }


class CollectionSettings(Base):
    __tablename__ = 'performance_collection_settings'
    id = Column(Integer, primary_key=True)
    connection_id = Column(String(64), nullable=False)

    is_enabled = Column(Boolean, default=True)
    collection_interval_minutes = Column(Integer, default=10)
    retention_days = Column(Integer, default=30)

    min_executions = Column(Integer, default=1)
    min_elapsed_time_ms = Column(Float, default=0)
    excluded_schemas = Column(JSON, default=lambda: list(settings.EXCLUDED_SCHEMAS))
    top_sql_limit = Column(Integer, default=500)

    collect_all_hours = Column(Boolean, default=True)
    collect_start_hour = Column(SmallInteger, default=0)
    collect_end_hour = Column(SmallInteger, default=23)

    last_collection_at = Column(DateTime, nullable=True)
    last_collection_status = Column(String(20), nullable=True)
    last_collection_count = Column(Integer, default=0)
    last_error_message = Column(Text, nullable=True)

    total_collections = Column(Integer, default=0)
    successful_collections = Column(Integer, default=0)
    failed_collections = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.datetime.now)
    updated_at = Column(DateTime, default=datetime.datetime.now, onupdate=datetime.datetime.now)

    __table_args__ = (
        UniqueConstraint('connection_id', name='uq_collection_settings_conn'),
        CheckConstraint('collection_interval_minutes IN (5, 10, 15, 30, 60)', name='ck_settings_interval'),
        CheckConstraint('retention_days BETWEEN 7 AND 90', name='ck_settings_retention'),
        CheckConstraint('top_sql_limit BETWEEN 100 AND 1000', name='ck_settings_top_limit'),
    )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'connection_id': self.connection_id,
            'is_enabled': self.is_enabled,
            'collection_interval_minutes': self.collection_interval_minutes,
            'retention_days': self.retention_days,
            'min_executions': self.min_executions,
            'min_elapsed_time_ms': self.min_elapsed_time_ms,
            'excluded_schemas': list(self.excluded_schemas or []),
            'top_sql_limit': self.top_sql_limit,
            'collect_all_hours': self.collect_all_hours,
            'collect_start_hour': self.collect_start_hour,
            'collect_end_hour': self.collect_end_hour,
            'total_collections': self.total_collections,
            'successful_collections': self.successful_collections,
            'failed_collections': self.failed_collections,
            'last_collection_at': self.last_collection_at,
            'last_collection_status': self.last_collection_status,
            'last_collection_count': self.last_collection_count,
            'last_error_message': self.last_error_message,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }


class CollectionLog(Base):
    __tablename__ = 'performance_collection_logs'
    id = Column(Integer, primary_key=True)
    connection_id = Column(String(64), nullable=False)

    started_at = Column(DateTime, nullable=False, default=datetime.datetime.now)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    status = Column(String(20), nullable=False, default=RunStatus.RUNNING.value)
    records_collected = Column(Integer, default=0)
    records_inserted = Column(Integer, default=0)
    source = Column(String(20), nullable=False, default='v$sql')

    error_message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('RUNNING', 'SUCCESS', 'FAILED', 'PARTIAL')", name='ck_collection_logs_status'),
        Index('idx_collection_logs_recent', 'connection_id', 'started_at'),
    )

    def finalize(self, status, completed_at, records_collected=0, records_inserted=0,
                 error_message=None, error_details=None):
        if self.completed_at is not None:
            raise RuntimeError(f"Collection log {self.id} already finalized as {self.status}")
        completed_at = max(completed_at, self.started_at)
        self.status = RunStatus(status).value
        self.completed_at = completed_at
        self.duration_ms = int((completed_at - self.started_at).total_seconds() * 1000)
        self.records_collected = records_collected
        self.records_inserted = records_inserted
        self.error_message = error_message
        self.error_details = error_details

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'connection_id': self.connection_id,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'duration_ms': self.duration_ms,
            'status': self.status,
            'records_collected': self.records_collected,
            'records_inserted': self.records_inserted,
            'source': self.source,
            'error_message': self.error_message,
            'error_details': self.error_details,
        }
