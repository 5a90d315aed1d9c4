import os

os.environ.setdefault('DATABASE_URL', 'sqlite://')

import datetime

import pandas as pd
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import perfhistory.models  # noqa: F401  registers every table on Base.metadata
from perfhistory.core.errors import ConfigurationError, TierUnavailable
from perfhistory.models.base import Base
from perfhistory.services.tier_probe import TIER_A_PROBE_SQL


ENTERPRISE = 'Oracle Database 19c Enterprise Edition Release 19.0.0.0.0'
STANDARD = 'Oracle Database 19c Standard Edition 2 Release 19.0.0.0.0'


class FakeClient:
    """
    Stands in for OracleClient. Responses are keyed by tier ('ash', 'awr',
    'v$sql') plus 'probe' for the tier A probe; a value may be a DataFrame,
    an exception to raise, or a list consumed one call at a time.
    """

    def __init__(self, connection_id='C1', edition=ENTERPRISE, responses=None):
        self.connection_id = connection_id
        self.edition = edition
        self.responses = dict(responses or {})
        self.calls = []

    def fetch(self, sql, params=None, timeout=10, tier='v$sql'):
        key = 'probe' if sql == TIER_A_PROBE_SQL else tier
        self.calls.append({'key': key, 'sql': sql, 'params': params or {}, 'timeout': timeout})
        result = self.responses.get(key)
        if isinstance(result, list):
            result = result.pop(0) if result else None
        if isinstance(result, Exception):
            raise result
        if result is None:
            if key == 'probe':
                raise TierUnavailable('ash', 'ORA-00942: table or view does not exist')
            return pd.DataFrame()
        return result.copy()

    def keys_called(self):
        return [c['key'] for c in self.calls]


class FakeClientFactory:
    def __init__(self, *clients):
        self.clients = {c.connection_id: c for c in clients}

    def get(self, connection_id):
        if not connection_id:
            raise ConfigurationError("Connection ID is required")
        if connection_id not in self.clients:
            raise ConfigurationError(f"Unknown connection: {connection_id}")
        return self.clients[connection_id]


def cache_frame(rows):
    """Raw cursor-cache rows: cumulative counters in microseconds."""
    defaults = {
        'sql_text': 'SELECT * FROM orders', 'executions': 1, 'elapsed_time': 1000, 'cpu_time': 500,
        'buffer_gets': 10, 'disk_reads': 0, 'rows_processed': 1, 'parsing_schema_name': 'APP',
        'first_load_time': '2025-01-10/08:00:00', 'last_active_time': datetime.datetime(2025, 1, 10, 9, 0),
    }
    return pd.DataFrame([dict(defaults, **r) for r in rows])


def collection_frame(rows):
    defaults = {
        'plan_hash_value': 123456, 'parsing_schema_name': 'APP', 'module': 'JDBC Thin Client',
        'action': None, 'sql_text': 'SELECT * FROM orders WHERE id = :1', 'executions': 10,
        'elapsed_time': 50000, 'cpu_time': 20000, 'buffer_gets': 500, 'disk_reads': 10,
        'rows_processed': 10, 'physical_read_requests': 3, 'physical_write_requests': 0,
        'direct_reads': 0, 'direct_writes': 0, 'application_wait_time': 1000,
        'concurrency_wait_time': 0, 'cluster_wait_time': 0, 'user_io_wait_time': 4000,
    }
    return pd.DataFrame([dict(defaults, **r) for r in rows])


def sql_id(n):
    return f"{n:013d}"


@pytest.fixture
def session_factory():
    engine = create_engine('sqlite://', poolclass=StaticPool, connect_args={'check_same_thread': False})
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()
