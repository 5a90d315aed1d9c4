import datetime
import logging
import traceback
from dataclasses import asdict, dataclass
from typing import Callable, List, Optional

import pandas as pd
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from perfhistory.core.config import settings
from perfhistory.core.database import SessionLocal
from perfhistory.core.errors import ConfigurationError, InvalidRequest, TierUnavailable
from perfhistory.models.collection import CollectionLog, RunStatus
from perfhistory.models.performance import DailySummary, PerformanceRecord, local_collection_time
from . import queries
from .aggregator import DailyAggregator
from .normalize import build_performance_records
from .persister import BatchPersister
from .settings import SettingsService
from .tier_probe import TierProbe
from .window import TIER_C


# Raised by engines that predate the direct I/O columns of v$sql
MISSING_COLUMN_CODE = 'ORA-00904'


@dataclass
class CollectionOutcome:
    success: bool
    message: str
    status: Optional[str] = None
    records_collected: int = 0
    records_inserted: int = 0
    duration_ms: int = 0
    log_id: Optional[int] = None
    skipped: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class PerformanceCollector:
    """
    One collection run: read the cursor cache of a monitored connection,
    persist the top statements, fold them into the day's summary and
    close the run log.
    """

    def __init__(self, client_factory, probe: Optional[TierProbe] = None, session_factory=None,
                 persister: Optional[BatchPersister] = None, aggregator: Optional[DailyAggregator] = None,
                 settings_service: Optional[SettingsService] = None,
                 clock: Callable[[], datetime.datetime] = datetime.datetime.now):
        self.client_factory = client_factory
        self.probe = probe or TierProbe()
        self.session_factory = session_factory or SessionLocal
        self.persister = persister or BatchPersister(self.session_factory)
        self.aggregator = aggregator or DailyAggregator(self.session_factory)
        self.settings_service = settings_service or SettingsService(self.session_factory)
        self.clock = clock

    def collect(self, connection_id: str) -> CollectionOutcome:
        if not connection_id:
            raise ConfigurationError("Connection ID is required")
        client = self.client_factory.get(connection_id)
        try:
            config = self.settings_service.get(connection_id)
        except SQLAlchemyError as e:
            logging.error(f"[{connection_id}] Could not read collection settings: {e}")
            return CollectionOutcome(success=False, status=RunStatus.FAILED.value,
                                     message=f"Collection failed: settings unavailable ({e.__class__.__name__})")

        if not config['is_enabled']:
            logging.info(f"[{connection_id}] Collection disabled, skipping")
            return CollectionOutcome(success=False, message='Collection is disabled for this connection', skipped=True)

        started_at = self.clock()
        hour = local_collection_time(started_at).hour
        if not config['collect_all_hours']:
            start, end = config['collect_start_hour'], config['collect_end_hour']
            if not start <= hour <= end:
                logging.info(f"[{connection_id}] Hour {hour} outside collection hours {start}-{end}, skipping")
                return CollectionOutcome(
                    success=False,
                    message=f"Collection not allowed at hour {hour}. Allowed: {start}-{end}",
                    skipped=True,
                )

        try:
            log_id = self._open_log(connection_id, started_at)
        except SQLAlchemyError as e:
            logging.error(f"[{connection_id}] Could not open collection log: {e}")
            return CollectionOutcome(success=False, status=RunStatus.FAILED.value,
                                     message=f"Collection failed: run log unavailable ({e.__class__.__name__})")

        try:
            capabilities = self.probe.capabilities(client)
            logging.info(f"[{connection_id}] Tier capabilities: {capabilities.to_dict()}")

            df = self._fetch(client, config)
            if df.empty:
                outcome = self._finish(connection_id, log_id, started_at, RunStatus.SUCCESS,
                                       message='No data to collect')
            else:
                outcome = self._store(connection_id, log_id, started_at, df, config)
        except TierUnavailable as e:
            logging.error(f"[{connection_id}] Collection query failed: {e}")
            outcome = self._finish(connection_id, log_id, started_at, RunStatus.FAILED,
                                   error_message=str(e),
                                   error_details={'tier': e.tier, 'reason': e.reason},
                                   message=f"Collection failed: {e.reason}")
        except SQLAlchemyError as e:
            logging.error(f"[{connection_id}] Storage error during collection: {e}")
            outcome = self._finish(connection_id, log_id, started_at, RunStatus.FAILED,
                                   error_message=str(e),
                                   error_details={'stack': traceback.format_exc()},
                                   message='Collection failed')

        self.purge_expired_records(connection_id, config['retention_days'])
        return outcome

    def _store(self, connection_id: str, log_id: int, started_at: datetime.datetime,
               df: pd.DataFrame, config: dict) -> CollectionOutcome:
        records = build_performance_records(df, connection_id, started_at, source=TIER_C)
        min_elapsed = config.get('min_elapsed_time_ms') or 0
        if min_elapsed > 0:
            records = [r for r in records if r['elapsed_time_ms'] >= min_elapsed]

        result = self.persister.persist(records)
        if result.inserted:
            self.aggregator.fold(connection_id, local_collection_time(started_at).date(),
                                 result.inserted, now=started_at)

        error_details = None
        if result.errors:
            error_details = {
                'batch_errors': result.batch_errors,
                'failed_sql_ids': [e.sql_id for e in result.errors],
            }
        return self._finish(
            connection_id, log_id, started_at, result.status,
            records_collected=len(df),
            records_inserted=result.inserted_count,
            error_message=result.error_message(),
            error_details=error_details,
            message='Performance data collected successfully',
        )

    def _fetch(self, client, config: dict) -> pd.DataFrame:
        schemas = config.get('excluded_schemas') or settings.EXCLUDED_SCHEMAS
        params = {'min_execs': config['min_executions'], 'top_limit': config['top_sql_limit']}
        timeout = settings.COLLECT_QUERY_TIMEOUT_SECONDS
        try:
            return client.fetch(queries.collection_query(schemas), params=params, timeout=timeout, tier=TIER_C)
        except TierUnavailable as e:
            if MISSING_COLUMN_CODE not in e.reason:
                raise
            logging.warning(f"[{client.connection_id}] Direct I/O columns missing, retrying compatibility query")
            return client.fetch(queries.collection_query(schemas, with_direct_io=False),
                                params=params, timeout=timeout, tier=TIER_C)

    def _open_log(self, connection_id: str, started_at: datetime.datetime) -> int:
        session = self.session_factory()
        try:
            log = CollectionLog(connection_id=connection_id, started_at=started_at,
                                status=RunStatus.RUNNING.value, source=TIER_C)
            session.add(log)
            session.commit()
            return log.id
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    def _finish(self, connection_id: str, log_id: int, started_at: datetime.datetime, status: RunStatus,
                records_collected: int = 0, records_inserted: int = 0, error_message: Optional[str] = None,
                error_details: Optional[dict] = None, message: str = '') -> CollectionOutcome:
        completed_at = self.clock()
        status = RunStatus(status)
        duration_ms = 0
        session = self.session_factory()
        try:
            log = session.get(CollectionLog, log_id)
            log.finalize(status, completed_at, records_collected=records_collected,
                         records_inserted=records_inserted, error_message=error_message,
                         error_details=error_details)
            duration_ms = log.duration_ms
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logging.error(f"[{connection_id}] Failed to finalize collection log {log_id}: {e}")
        finally:
            session.close()

        self.settings_service.record_run(connection_id, status.value, records_inserted, completed_at, error_message)
        logging.info(f"[{connection_id}] Collection {status.value}: {records_inserted}/{records_collected} "
                     f"records in {duration_ms} ms")
        return CollectionOutcome(
            success=status != RunStatus.FAILED,
            message=message,
            status=status.value,
            records_collected=records_collected,
            records_inserted=records_inserted,
            duration_ms=duration_ms,
            log_id=log_id,
        )

    def purge_expired_records(self, connection_id: str, retention_days: int) -> int:
        cutoff = local_collection_time(self.clock()).date() - datetime.timedelta(days=retention_days)
        session = self.session_factory()
        try:
            deleted = session.query(PerformanceRecord).filter(
                PerformanceRecord.connection_id == connection_id,
                PerformanceRecord.collection_date < cutoff,
            ).delete(synchronize_session=False)
            session.commit()
            if deleted:
                logging.info(f"[{connection_id}] Purged {deleted} records older than {cutoff}")
            return deleted
        except SQLAlchemyError as e:
            session.rollback()
            logging.error(f"[{connection_id}] Retention purge failed: {e}")
            return 0
        finally:
            session.close()

    def purge_expired_logs(self, days: Optional[int] = None) -> int:
        """Delete run logs older than the given age across all connections."""
        days = settings.LOG_RETENTION_DAYS if days is None else days
        cutoff = self.clock() - datetime.timedelta(days=days)
        session = self.session_factory()
        try:
            deleted = session.query(CollectionLog).filter(
                CollectionLog.started_at < cutoff).delete(synchronize_session=False)
            session.commit()
            logging.info(f"Pruned {deleted} collection logs older than {days} days")
            return deleted
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    def collection_status(self, connection_id: str) -> dict:
        if not connection_id:
            raise ConfigurationError("Connection ID is required")
        config = self.settings_service.get(connection_id)
        today = local_collection_time(self.clock()).date()
        session = self.session_factory()
        try:
            logs = session.query(CollectionLog).filter_by(connection_id=connection_id) \
                .order_by(CollectionLog.started_at.desc(), CollectionLog.id.desc()).limit(10).all()
            summary = session.query(DailySummary).filter_by(
                connection_id=connection_id, summary_date=today).first()
            total = session.query(func.count(PerformanceRecord.id)).filter(
                PerformanceRecord.connection_id == connection_id).scalar()
            return {
                'settings': config,
                'recent_logs': [log.to_dict() for log in logs],
                'today_summary': summary.to_dict() if summary else None,
                'total_records': int(total or 0),
            }
        finally:
            session.close()

    def list_logs(self, connection_id: str, limit: int = 50) -> List[dict]:
        if not connection_id:
            raise ConfigurationError("Connection ID is required")
        session = self.session_factory()
        try:
            logs = session.query(CollectionLog).filter_by(connection_id=connection_id) \
                .order_by(CollectionLog.started_at.desc(), CollectionLog.id.desc()).limit(limit).all()
            return [log.to_dict() for log in logs]
        finally:
            session.close()

    def delete_logs(self, connection_id: str, log_id: Optional[int] = None, delete_all: bool = False) -> int:
        """Remove run logs only; the records a run produced stay in place."""
        if not connection_id:
            raise ConfigurationError("Connection ID is required")
        if log_id is None and not delete_all:
            raise InvalidRequest("Either log_id or delete_all is required")
        session = self.session_factory()
        try:
            query = session.query(CollectionLog).filter(CollectionLog.connection_id == connection_id)
            if not delete_all:
                query = query.filter(CollectionLog.id == log_id)
            deleted = query.delete(synchronize_session=False)
            session.commit()
            logging.info(f"[{connection_id}] Deleted {deleted} collection logs")
            return deleted
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    def list_summaries(self, connection_id: str, days: int = 7) -> List[dict]:
        if not connection_id:
            raise ConfigurationError("Connection ID is required")
        since = local_collection_time(self.clock()).date() - datetime.timedelta(days=days)
        session = self.session_factory()
        try:
            rows = session.query(DailySummary).filter(
                DailySummary.connection_id == connection_id,
                DailySummary.summary_date >= since,
            ).order_by(DailySummary.summary_date.desc()).all()
            return [row.to_dict() for row in rows]
        finally:
            session.close()
