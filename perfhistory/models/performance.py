from sqlalchemy import (
    Column, Integer, BigInteger, String, Float, DateTime, Date, Text, SmallInteger,
    CheckConstraint, Index, UniqueConstraint,
)
from sqlalchemy.orm import validates
from .base import Base
import datetime


def local_collection_time(collected_at: datetime.datetime) -> datetime.datetime:
    """Aware timestamps are converted to local wall-clock time; naive ones are already local."""
    if collected_at.tzinfo is not None:
        return collected_at.astimezone().replace(tzinfo=None)
    return collected_at


class PerformanceRecord(Base):
    __tablename__ = 'sql_performance_history'
    id = Column(Integer, primary_key=True)
    connection_id = Column(String(64), nullable=False)

    sql_id = Column(String(13), nullable=False)
    plan_hash_value = Column(BigInteger, nullable=True)
    parsing_schema_name = Column(String(128), nullable=True)
    module = Column(String(64), nullable=True)
    action = Column(String(64), nullable=True)
    sql_text = Column(Text, nullable=True)

    # Per-execution averages, except executions and rows_processed
    executions = Column(Integer, default=0)
    elapsed_time_ms = Column(Float, default=0)
    cpu_time_ms = Column(Float, default=0)
    buffer_gets = Column(Integer, default=0)
    disk_reads = Column(Integer, default=0)
    rows_processed = Column(BigInteger, default=0)

    physical_read_requests = Column(Integer, default=0)
    physical_write_requests = Column(Integer, default=0)
    direct_reads = Column(Integer, default=0)
    direct_writes = Column(Integer, default=0)

    application_wait_time_ms = Column(Float, default=0)
    concurrency_wait_time_ms = Column(Float, default=0)
    cluster_wait_time_ms = Column(Float, default=0)
    user_io_wait_time_ms = Column(Float, default=0)

    performance_grade = Column(String(1), nullable=True)
    source = Column(String(20), nullable=False, default='v$sql')
    collected_at = Column(DateTime, nullable=False)
    collection_hour = Column(SmallInteger, nullable=False)
    collection_date = Column(Date, nullable=False)
    created_at = Column(DateTime, default=datetime.datetime.now)

    __table_args__ = (
        CheckConstraint('length(sql_id) <= 13', name='ck_perf_history_sql_id'),
        CheckConstraint("performance_grade IN ('A', 'B', 'C', 'D', 'F')", name='ck_perf_history_grade'),
        CheckConstraint("source IN ('v$sql', 'awr', 'manual')", name='ck_perf_history_source'),
        Index('idx_perf_history_conn_date', 'connection_id', 'collection_date', 'collected_at'),
        Index('idx_perf_history_hourly', 'connection_id', 'collection_date', 'collection_hour'),
        Index('idx_perf_history_sql_id', 'connection_id', 'sql_id', 'collected_at'),
    )

    def __init__(self, **kwargs):
        # Derived columns are owned by the collected_at validator
        kwargs.pop('collection_hour', None)
        kwargs.pop('collection_date', None)
        kwargs.setdefault('collected_at', datetime.datetime.now())
        super().__init__(**kwargs)

    @validates('collected_at')
    def _derive_collection_slot(self, key, value):
        local = local_collection_time(value)
        self._deriving = True
        try:
            self.collection_hour = local.hour
            self.collection_date = local.date()
        finally:
            self._deriving = False
        return value

    @validates('collection_hour', 'collection_date')
    def _guard_derived(self, key, value):
        if not getattr(self, '_deriving', False):
            raise ValueError(f"{key} is derived from collected_at and cannot be set independently")
        return value

    def to_dict(self) -> dict:
        return {
            'sql_id': self.sql_id,
            'sql_text': self.sql_text or '',
            'executions': int(self.executions or 0),
            'avg_elapsed_time': float(self.elapsed_time_ms or 0),
            'avg_cpu_time': float(self.cpu_time_ms or 0),
            'avg_buffer_gets': float(self.buffer_gets or 0),
            'avg_disk_reads': float(self.disk_reads or 0),
            'rows_processed': int(self.rows_processed or 0),
            'performance_grade': self.performance_grade,
            'parsing_schema_name': self.parsing_schema_name,
            'first_seen': self.collected_at,
            'last_seen': self.collected_at,
            'source': 'database',
        }


class DailySummary(Base):
    __tablename__ = 'sql_performance_daily_summary'
    id = Column(Integer, primary_key=True)
    connection_id = Column(String(64), nullable=False)
    summary_date = Column(Date, nullable=False)

    total_sqls = Column(Integer, default=0)
    total_executions = Column(BigInteger, default=0)

    avg_elapsed_time_ms = Column(Float, default=0)
    avg_cpu_time_ms = Column(Float, default=0)
    avg_buffer_gets = Column(Float, default=0)
    avg_disk_reads = Column(Float, default=0)

    max_elapsed_time_ms = Column(Float, default=0)
    max_buffer_gets = Column(BigInteger, default=0)

    grade_a_count = Column(Integer, default=0)
    grade_b_count = Column(Integer, default=0)
    grade_c_count = Column(Integer, default=0)
    grade_d_count = Column(Integer, default=0)
    grade_f_count = Column(Integer, default=0)

    peak_hour = Column(SmallInteger, nullable=True)
    peak_hour_executions = Column(BigInteger, nullable=True)

    collection_count = Column(Integer, default=0)
    first_collection_at = Column(DateTime, nullable=True)
    last_collection_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.datetime.now)
    updated_at = Column(DateTime, default=datetime.datetime.now, onupdate=datetime.datetime.now)

    __table_args__ = (
        UniqueConstraint('connection_id', 'summary_date', name='uq_daily_summary_conn_date'),
    )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'connection_id': self.connection_id,
            'summary_date': self.summary_date.isoformat() if self.summary_date else None,
            'total_sqls': self.total_sqls,
            'total_executions': self.total_executions,
            'avg_elapsed_time_ms': self.avg_elapsed_time_ms,
            'avg_cpu_time_ms': self.avg_cpu_time_ms,
            'avg_buffer_gets': self.avg_buffer_gets,
            'avg_disk_reads': self.avg_disk_reads,
            'max_elapsed_time_ms': self.max_elapsed_time_ms,
            'max_buffer_gets': self.max_buffer_gets,
            'grade_a_count': self.grade_a_count,
            'grade_b_count': self.grade_b_count,
            'grade_c_count': self.grade_c_count,
            'grade_d_count': self.grade_d_count,
            'grade_f_count': self.grade_f_count,
            'peak_hour': self.peak_hour,
            'peak_hour_executions': self.peak_hour_executions,
            'collection_count': self.collection_count,
            'first_collection_at': self.first_collection_at,
            'last_collection_at': self.last_collection_at,
        }
