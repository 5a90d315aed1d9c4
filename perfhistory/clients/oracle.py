import logging
import threading
import time
from typing import Dict, Optional

import pandas as pd
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from perfhistory.core.errors import TierUnavailable
from .registry import BaseConnectionRegistry, ConnectionInfo


class OracleClient:
    """
    Runs read-only telemetry queries against one monitored database and hands
    the rows back as a DataFrame with lower-case column names.

    Every failure (missing view, privilege denial, call timeout, network) is
    reported as TierUnavailable for the tier that was being queried.
    """

    def __init__(self, info: ConnectionInfo, engine=None):
        self.info = info
        self.connection_id = info.connection_id
        self.edition = info.edition
        self._engine = engine

    @property
    def engine(self):
        if self._engine is None:
            self._engine = create_engine(self.info.url, pool_size=2, max_overflow=3, pool_pre_ping=True)
            logging.info(f"Oracle client initialized for connection {self.connection_id}")
        return self._engine

    def fetch(self, sql: str, params: Optional[dict] = None, timeout: float = 10, tier: str = 'v$sql') -> pd.DataFrame:
        started = time.time()
        try:
            with self.engine.connect() as conn:
                self._apply_call_timeout(conn, timeout)
                df = pd.read_sql(text(sql), conn, params=params or {})
        except SQLAlchemyError as e:
            raise TierUnavailable(tier, str(getattr(e, 'orig', None) or e)) from e
        df.columns = [str(c).lower() for c in df.columns]
        logging.debug(f"[{self.connection_id}] {tier} returned {len(df)} rows in {time.time() - started:.2f}s")
        return df

    @staticmethod
    def _apply_call_timeout(conn, timeout: float):
        # python-oracledb enforces round-trip deadlines through call_timeout (ms)
        raw = getattr(conn.connection, 'driver_connection', None)
        if raw is not None and hasattr(raw, 'call_timeout'):
            raw.call_timeout = int(timeout * 1000)

    def dispose(self):
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None


class OracleClientFactory:
    """Keeps one client (and so one small pool) per registered connection."""

    def __init__(self, registry: BaseConnectionRegistry):
        self.registry = registry
        self._clients: Dict[str, OracleClient] = {}
        self._lock = threading.Lock()

    def get(self, connection_id: str) -> OracleClient:
        info = self.registry.lookup(connection_id)
        with self._lock:
            client = self._clients.get(connection_id)
            if client is None or client.info != info:
                if client is not None:
                    client.dispose()
                client = OracleClient(info)
                self._clients[connection_id] = client
            return client

    def dispose_all(self):
        with self._lock:
            for client in self._clients.values():
                client.dispose()
            self._clients.clear()
