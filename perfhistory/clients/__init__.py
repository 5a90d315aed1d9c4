from .oracle import OracleClient, OracleClientFactory
from .registry import BaseConnectionRegistry, ConnectionInfo, InMemoryConnectionRegistry

__all__ = [
    'BaseConnectionRegistry',
    'ConnectionInfo',
    'InMemoryConnectionRegistry',
    'OracleClient',
    'OracleClientFactory',
]
