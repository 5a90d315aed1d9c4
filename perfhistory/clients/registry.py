import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from perfhistory.core.errors import ConfigurationError


@dataclass(frozen=True)
class ConnectionInfo:
    """What the connection registry knows about one monitored database."""
    connection_id: str
    url: str                      # SQLAlchemy URL, e.g. oracle+oracledb://user:pw@host:1521/?service_name=ORCL
    edition: Optional[str] = None  # product edition banner as declared by the registry
    name: Optional[str] = None


class BaseConnectionRegistry(ABC):
    @abstractmethod
    def lookup(self, connection_id: str) -> ConnectionInfo:
        pass


class InMemoryConnectionRegistry(BaseConnectionRegistry):
    def __init__(self, connections=None):
        self._connections: Dict[str, ConnectionInfo] = {}
        self._lock = threading.Lock()
        for info in connections or []:
            self.register(info)

    def register(self, info: ConnectionInfo):
        with self._lock:
            self._connections[info.connection_id] = info

    def remove(self, connection_id: str):
        with self._lock:
            self._connections.pop(connection_id, None)

    def connection_ids(self):
        with self._lock:
            return list(self._connections)

    def lookup(self, connection_id: str) -> ConnectionInfo:
        if not connection_id:
            raise ConfigurationError("Connection ID is required")
        with self._lock:
            info = self._connections.get(connection_id)
        if info is None:
            raise ConfigurationError(f"Unknown connection: {connection_id}")
        return info

    @classmethod
    def from_file(cls, path: str) -> 'InMemoryConnectionRegistry':
        """
        Loads a JSON list of {"id", "url", "edition", "name"} objects.
        A missing file yields an empty registry.
        """
        try:
            with open(path, 'r') as f:
                entries = json.load(f)
        except FileNotFoundError:
            logging.warning(f"Connections file {path} not found. Starting with an empty registry.")
            return cls()

        registry = cls()
        for entry in entries:
            registry.register(ConnectionInfo(
                connection_id=str(entry['id']),
                url=entry['url'],
                edition=entry.get('edition'),
                name=entry.get('name'),
            ))
        logging.info(f"Loaded {len(registry.connection_ids())} connections from {path}")
        return registry
