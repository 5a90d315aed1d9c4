import logging
import re
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from perfhistory.core.database import SessionLocal
from perfhistory.core.errors import ConfigurationError, InvalidRequest
from perfhistory.models.collection import ALLOWED_INTERVALS, CollectionSettings, default_settings


EDITABLE_FIELDS = (
    'is_enabled', 'collection_interval_minutes', 'retention_days', 'min_executions',
    'min_elapsed_time_ms', 'excluded_schemas', 'top_sql_limit', 'collect_all_hours',
    'collect_start_hour', 'collect_end_hour',
)

_SCHEMA_RE = re.compile(r'^[A-Za-z0-9_$#]+$')


def _int_in_range(name, value, low, high):
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"{name} must be an integer, got {value!r}")
    if not low <= number <= high:
        raise InvalidRequest(f"{name} must be between {low} and {high}, got {number}")
    return number


def validate_settings(values: dict, current: dict) -> dict:
    """Checked copy of the editable values; raises InvalidRequest on the first bad one."""
    unknown = set(values) - set(EDITABLE_FIELDS)
    if unknown:
        raise InvalidRequest(f"Unknown settings: {', '.join(sorted(unknown))}")

    clean = {}
    for name, value in values.items():
        if value is None:
            continue
        if name in ('is_enabled', 'collect_all_hours'):
            clean[name] = bool(value)
        elif name == 'collection_interval_minutes':
            interval = _int_in_range(name, value, min(ALLOWED_INTERVALS), max(ALLOWED_INTERVALS))
            if interval not in ALLOWED_INTERVALS:
                raise InvalidRequest(f"collection_interval_minutes must be one of {ALLOWED_INTERVALS}, got {value}")
            clean[name] = interval
        elif name == 'retention_days':
            clean[name] = _int_in_range(name, value, 7, 90)
        elif name == 'top_sql_limit':
            clean[name] = _int_in_range(name, value, 100, 1000)
        elif name in ('collect_start_hour', 'collect_end_hour'):
            clean[name] = _int_in_range(name, value, 0, 23)
        elif name == 'min_executions':
            clean[name] = _int_in_range(name, value, 0, 2 ** 31 - 1)
        elif name == 'min_elapsed_time_ms':
            try:
                clean[name] = float(value)
            except (TypeError, ValueError):
                raise InvalidRequest(f"min_elapsed_time_ms must be a number, got {value!r}")
            if clean[name] < 0:
                raise InvalidRequest("min_elapsed_time_ms cannot be negative")
        elif name == 'excluded_schemas':
            if isinstance(value, str):
                value = [s.strip() for s in value.split(',') if s.strip()]
            for schema in value:
                if not _SCHEMA_RE.match(str(schema)):
                    raise InvalidRequest(f"Invalid schema name: {schema!r}")
            clean[name] = [str(s).upper() for s in value]

    start = clean.get('collect_start_hour', current.get('collect_start_hour', 0))
    end = clean.get('collect_end_hour', current.get('collect_end_hour', 23))
    if start > end:
        raise InvalidRequest(f"collect_start_hour {start} is after collect_end_hour {end}")
    return clean


class SettingsService:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def get(self, connection_id: str) -> dict:
        if not connection_id:
            raise ConfigurationError("Connection ID is required")
        session = self.session_factory()
        try:
            row = session.query(CollectionSettings).filter_by(connection_id=connection_id).first()
            if row is None:
                return dict(default_settings(connection_id), is_default=True)
            return dict(row.to_dict(), is_default=False)
        finally:
            session.close()

    def save(self, connection_id: str, **values) -> dict:
        if not connection_id:
            raise ConfigurationError("Connection ID is required")
        session = self.session_factory()
        try:
            row = session.query(CollectionSettings).filter_by(connection_id=connection_id).first()
            current = row.to_dict() if row else default_settings(connection_id)
            clean = validate_settings(values, current)
            if row is None:
                row = CollectionSettings(**dict(default_settings(connection_id), **clean))
                session.add(row)
                logging.info(f"[{connection_id}] Collection settings created")
            else:
                for name, value in clean.items():
                    setattr(row, name, value)
                logging.info(f"[{connection_id}] Collection settings updated: {sorted(clean)}")
            session.commit()
            return dict(row.to_dict(), is_default=False)
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    def record_run(self, connection_id: str, status: str, inserted: int, completed_at,
                   error_message: Optional[str] = None) -> bool:
        """
        Bump the run counters of a configured connection. Read-then-write, so
        two overlapping runs can lose an increment. Returns False when the
        connection has no settings row.
        """
        session = self.session_factory()
        try:
            row = session.query(CollectionSettings).filter_by(connection_id=connection_id).first()
            if row is None:
                return False
            failed = status == 'FAILED'
            row.last_collection_at = completed_at
            row.last_collection_status = status
            row.last_collection_count = inserted
            row.last_error_message = error_message
            row.total_collections = (row.total_collections or 0) + 1
            if failed:
                row.failed_collections = (row.failed_collections or 0) + 1
            else:
                row.successful_collections = (row.successful_collections or 0) + 1
            session.commit()
            return True
        except SQLAlchemyError as e:
            session.rollback()
            logging.error(f"[{connection_id}] Failed to update collection counters: {e}")
            return False
        finally:
            session.close()
