import datetime
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import pandas as pd
from sqlalchemy.exc import SQLAlchemyError

from perfhistory.core.config import settings
from perfhistory.core.database import SessionLocal
from perfhistory.core.errors import (
    ConfigurationError, InvalidIdentifier, InvalidRequest, StatementNotFound, TierUnavailable,
)
from perfhistory.models.performance import PerformanceRecord
from . import queries
from .normalize import (
    HISTORY_COLUMNS, frame_to_rows, normalize_cache_frame, normalize_snapshot_frame, order_by_metric,
)
from .queries import SortKey
from .tier_probe import Edition, TierProbe, parse_edition
from .window import TIER_A, TIER_B, TIER_C, TimeWindow, resolve_window


SOURCE_DATABASE = 'database'
SOURCE_TIER_B = 'tier_b'
SOURCE_TIER_A = 'ash'
SOURCE_TIER_C = 'v$sql'
SOURCE_TIER_C_UNFILTERED = 'v$sql_cache'
SOURCE_NONE = 'none'
SOURCE_ERROR = 'error'

STATEMENT_HISTORY_DAYS = 7

# Raised to the caller as-is; anything else on the read path becomes source='error'
CALLER_ERRORS = (InvalidRequest, ConfigurationError, StatementNotFound)


def validate_sql_id(sql_id: str) -> str:
    if not isinstance(sql_id, str) or not queries.SQL_ID_PATTERN.match(sql_id):
        raise InvalidIdentifier(f"Invalid SQL_ID format: {sql_id!r}")
    return sql_id


@dataclass
class HistoryRequest:
    connection_id: str
    client: object
    window: TimeWindow
    sort_key: SortKey
    limit: int
    today: datetime.date
    excluded_schemas: List[str] = field(default_factory=lambda: list(settings.EXCLUDED_SCHEMAS))


@dataclass
class TierAttempt:
    rows: List[dict]
    ok: bool
    source: str
    warning: Optional[str] = None

    @classmethod
    def skipped(cls, source: str) -> 'TierAttempt':
        return cls(rows=[], ok=False, source=source)


class TierStrategy(ABC):
    name = ''

    @abstractmethod
    def attempt(self, request: HistoryRequest) -> TierAttempt:
        pass


class StoredRecordsStrategy(TierStrategy):
    """Tier zero: records this system already collected for the requested day."""
    name = SOURCE_DATABASE

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def attempt(self, request: HistoryRequest) -> TierAttempt:
        column = getattr(PerformanceRecord, request.sort_key.stored_column)
        session = self.session_factory()
        try:
            query = session.query(PerformanceRecord).filter(
                PerformanceRecord.connection_id == request.connection_id,
                PerformanceRecord.collection_date == request.window.date,
            )
            hours = request.window.hour_range()
            if hours is not None:
                query = query.filter(PerformanceRecord.collection_hour.between(*hours))
            limit = min(request.limit or settings.STORED_ROW_LIMIT, settings.STORED_ROW_LIMIT)
            records = query.order_by(column.desc(), PerformanceRecord.id).limit(limit).all()
            rows = [r.to_dict() for r in records]
        except SQLAlchemyError as e:
            logging.error(f"[{request.connection_id}] Stored history read failed: {e}")
            return TierAttempt.skipped(self.name)
        finally:
            session.close()

        if rows:
            df = order_by_metric(pd.DataFrame(rows, columns=HISTORY_COLUMNS), request.sort_key.result_column)
            rows = frame_to_rows(df)
        return TierAttempt(rows=rows, ok=True, source=self.name)


class _TierQueryStrategy(TierStrategy):
    """Shared plumbing for strategies that read the monitored database."""
    tier = ''

    def __init__(self, probe: TierProbe, timeout: Optional[int] = None, row_cap: Optional[int] = None):
        self.probe = probe
        self.timeout = timeout or settings.HISTORY_QUERY_TIMEOUT_SECONDS
        self.row_cap = row_cap or settings.HISTORY_ROW_CAP

    def fetch(self, request: HistoryRequest, sql: str, params: dict) -> Optional[pd.DataFrame]:
        try:
            return request.client.fetch(sql, params=params, timeout=self.timeout, tier=self.tier)
        except TierUnavailable as e:
            logging.warning(f"[{request.connection_id}] {self.tier} query failed, cascading: {e.reason}")
            return None

    def row_limit(self, request: HistoryRequest) -> int:
        return min(request.limit or self.row_cap, self.row_cap)

    def finish(self, request: HistoryRequest, df: pd.DataFrame, source: str,
               warning: Optional[str] = None) -> TierAttempt:
        out = order_by_metric(df, request.sort_key.result_column).head(self.row_limit(request))
        return TierAttempt(rows=frame_to_rows(out), ok=True, source=source, warning=warning)


class SnapshotRepositoryStrategy(_TierQueryStrategy):
    name = SOURCE_TIER_B
    tier = TIER_B

    def attempt(self, request: HistoryRequest) -> TierAttempt:
        if not self.probe.tier_b_available(request.client):
            logging.info(f"[{request.connection_id}] Tier B not licensed for this edition, skipping")
            return TierAttempt.skipped(self.name)

        begin, end = request.window.bounds(self.tier)
        sql = queries.tier_b_window_query(request.sort_key, request.excluded_schemas,
                                          closed=request.window.has_time_filter)
        df = self.fetch(request, sql, {'begin_dt': begin, 'end_dt': end, 'row_limit': self.row_limit(request)})
        if df is None:
            return TierAttempt.skipped(self.name)
        return self.finish(request, normalize_snapshot_frame(df, source=TIER_B), self.name)


class SessionSamplingStrategy(_TierQueryStrategy):
    name = SOURCE_TIER_A
    tier = TIER_A

    def attempt(self, request: HistoryRequest) -> TierAttempt:
        # tier A is never read on limited editions
        if parse_edition(request.client.edition) == Edition.LIMITED:
            logging.info(f"[{request.connection_id}] Tier A not licensed for this edition, skipping")
            return TierAttempt.skipped(self.name)
        if not self.probe.tier_a_available(request.client):
            return TierAttempt.skipped(self.name)

        begin, end = request.window.bounds(self.tier)
        sql = queries.tier_a_window_query(closed=request.window.has_time_filter)
        df = self.fetch(request, sql, {'begin_dt': begin, 'end_dt': end, 'row_limit': self.row_limit(request)})
        if df is None:
            return TierAttempt.skipped(self.name)
        return self.finish(request, normalize_cache_frame(df, source=self.name), self.name)


class SqlCacheStrategy(_TierQueryStrategy):
    """
    Tier C holds no history. For today or yesterday its rows are filtered by
    last activity inside the widened window; for older days the current
    contents are returned unfiltered under a distinct source tag.
    """
    name = SOURCE_TIER_C
    tier = TIER_C

    def attempt(self, request: HistoryRequest) -> TierAttempt:
        gap = request.window.days_before(request.today)
        params = {'row_limit': self.row_limit(request)}
        warning = None
        if gap <= 1:
            source = SOURCE_TIER_C
            params['begin_dt'], params['end_dt'] = request.window.bounds(self.tier)
            sql = queries.tier_c_query(request.sort_key, request.excluded_schemas, time_filtered=True,
                                       closed=request.window.has_time_filter)
        else:
            source = SOURCE_TIER_C_UNFILTERED
            warning = (f"No history found for {request.window.date_str}; showing current cursor cache "
                       f"contents, the time filter was not applied")
            sql = queries.tier_c_query(request.sort_key, request.excluded_schemas, time_filtered=False)

        df = self.fetch(request, sql, params)
        if df is None:
            return TierAttempt.skipped(source)
        return self.finish(request, normalize_cache_frame(df, source=source), source, warning=warning)


class HistoryQueryService:
    """Answers "what ran on this connection in this window" from the cheapest tier that has rows."""

    def __init__(self, client_factory, probe: TierProbe, session_factory=None,
                 strategies: Optional[List[TierStrategy]] = None,
                 today: Callable[[], datetime.date] = datetime.date.today):
        self.client_factory = client_factory
        self.probe = probe
        self.session_factory = session_factory or SessionLocal
        self.today = today
        self.strategies = strategies or [
            StoredRecordsStrategy(self.session_factory),
            SnapshotRepositoryStrategy(probe),
            SessionSamplingStrategy(probe),
            SqlCacheStrategy(probe),
        ]
        self._by_id = SqlCacheStrategy(probe)

    def query(self, connection_id: str, date: str, start_time: Optional[str] = None,
              end_time: Optional[str] = None, sort_key=None, limit: Optional[int] = None,
              sql_id: Optional[str] = None) -> dict:
        if not connection_id:
            raise ConfigurationError("Connection ID is required")
        window = resolve_window(date, start_time, end_time)
        key = SortKey.parse(sort_key)
        if limit is not None and int(limit) <= 0:
            raise InvalidRequest(f"Limit must be positive, got {limit}")
        if sql_id is not None:
            validate_sql_id(sql_id)
        client = self.client_factory.get(connection_id)

        request = HistoryRequest(
            connection_id=connection_id,
            client=client,
            window=window,
            sort_key=key,
            limit=int(limit) if limit else settings.STORED_ROW_LIMIT,
            today=self.today(),
        )
        try:
            if sql_id is not None:
                attempt = self._statement_attempt(request, sql_id)
            else:
                attempt = self._cascade(request)
        except CALLER_ERRORS:
            raise
        except Exception as e:
            logging.exception(f"[{connection_id}] History query for {window.date_str} failed")
            return self._result(window, [], SOURCE_ERROR, success=False, warning=f"History query failed: {e}")

        return self._result(window, attempt.rows, attempt.source, warning=attempt.warning)

    def _cascade(self, request: HistoryRequest) -> TierAttempt:
        for strategy in self.strategies:
            attempt = strategy.attempt(request)
            if attempt.ok and attempt.rows:
                logging.info(f"[{request.connection_id}] History for {request.window.date_str} "
                             f"served from {attempt.source} ({len(attempt.rows)} rows)")
                return attempt
            logging.debug(f"[{request.connection_id}] {strategy.name} gave no rows")
        logging.info(f"[{request.connection_id}] No tier had rows for {request.window.date_str}")
        return TierAttempt(rows=[], ok=True, source=SOURCE_NONE)

    def _statement_attempt(self, request: HistoryRequest, sql_id: str) -> TierAttempt:
        df = request.client.fetch(queries.TIER_C_BY_ID_QUERY, params={'sql_id': sql_id},
                                  timeout=self._by_id.timeout, tier=TIER_C)
        if df.empty:
            raise StatementNotFound(sql_id)
        out = order_by_metric(normalize_cache_frame(df, source=SOURCE_TIER_C), request.sort_key.result_column)
        return TierAttempt(rows=frame_to_rows(out), ok=True, source=SOURCE_TIER_C)

    def statement_history(self, connection_id: str, sql_id: str) -> dict:
        """Per-snapshot history of one statement, or its current cache row when tier B is out of reach."""
        validate_sql_id(sql_id)
        client = self.client_factory.get(connection_id)

        if self.probe.tier_b_available(client):
            try:
                df = client.fetch(queries.TIER_B_STATEMENT_HISTORY,
                                  params={'sql_id': sql_id, 'days': STATEMENT_HISTORY_DAYS,
                                          'row_limit': settings.HISTORY_ROW_CAP},
                                  timeout=settings.HISTORY_QUERY_TIMEOUT_SECONDS, tier=TIER_B)
                if not df.empty:
                    rows = frame_to_rows(df)
                    return {'success': True, 'sql_id': sql_id, 'source': SOURCE_TIER_B,
                            'count': len(rows), 'data': rows}
            except TierUnavailable as e:
                logging.warning(f"[{connection_id}] Snapshot history for {sql_id} unavailable: {e.reason}")

        try:
            df = client.fetch(queries.TIER_C_BY_ID_QUERY, params={'sql_id': sql_id},
                              timeout=settings.HISTORY_QUERY_TIMEOUT_SECONDS, tier=TIER_C)
        except TierUnavailable as e:
            logging.warning(f"[{connection_id}] Cursor cache lookup for {sql_id} failed: {e.reason}")
            return {'success': False, 'sql_id': sql_id, 'source': SOURCE_ERROR, 'count': 0, 'data': [],
                    'warning': f"Statement history unavailable: {e.reason}"}
        if df.empty:
            raise StatementNotFound(sql_id)
        rows = frame_to_rows(normalize_cache_frame(df, source=SOURCE_TIER_C).head(1))
        return {'success': True, 'sql_id': sql_id, 'source': SOURCE_TIER_C, 'count': len(rows), 'data': rows,
                'warning': 'Snapshot history unavailable; showing current cursor cache statistics'}

    @staticmethod
    def _result(window: TimeWindow, rows: List[dict], source: str, success: bool = True,
                warning: Optional[str] = None) -> dict:
        result = {
            'success': success,
            'data': rows,
            'date': window.date_str,
            'count': len(rows),
            'source': source,
            'time_filter': window.describe(),
        }
        if warning:
            result['warning'] = warning
        return result
