import logging
from typing import Optional

from perfhistory.clients.oracle import OracleClientFactory
from perfhistory.clients.registry import BaseConnectionRegistry
from perfhistory.core.database import SessionLocal
from perfhistory.core.errors import ConfigurationError
from perfhistory.services.aggregator import DailyAggregator
from perfhistory.services.collector import PerformanceCollector
from perfhistory.services.history import HistoryQueryService
from perfhistory.services.persister import BatchPersister
from perfhistory.services.scheduler import CollectionScheduler
from perfhistory.services.settings import SettingsService
from perfhistory.services.tier_probe import TierProbe


class TelemetryService:
    """
    Entry point for the API layer: collection control, history reads and
    run-log housekeeping for every registered connection.
    """

    def __init__(self, registry: BaseConnectionRegistry, session_factory=None, client_factory=None,
                 probe: Optional[TierProbe] = None):
        self.registry = registry
        self.session_factory = session_factory or SessionLocal
        self.client_factory = client_factory or OracleClientFactory(registry)
        self.probe = probe or TierProbe()
        self.settings = SettingsService(self.session_factory)
        self.collector = PerformanceCollector(
            self.client_factory,
            probe=self.probe,
            session_factory=self.session_factory,
            persister=BatchPersister(self.session_factory),
            aggregator=DailyAggregator(self.session_factory),
            settings_service=self.settings,
        )
        self.history = HistoryQueryService(self.client_factory, self.probe, self.session_factory)
        self.scheduler = CollectionScheduler(self.collector)

    # Collection

    def collect_now(self, connection_id: str) -> dict:
        return self.scheduler.collect_now(connection_id).to_dict()

    def start_collection(self, connection_id: str, interval_minutes: Optional[int] = None) -> dict:
        self.registry.lookup(connection_id)
        config = self.settings.get(connection_id)
        if not config['is_enabled']:
            return {'success': False, 'message': 'Collection is disabled for this connection'}
        interval = interval_minutes or config['collection_interval_minutes']
        state = self.scheduler.start(connection_id, interval)
        return {'success': True, 'message': f"Collection scheduled every {state.interval_minutes} minutes",
                'state': state.to_dict()}

    def stop_collection(self, connection_id: str) -> dict:
        if not connection_id:
            raise ConfigurationError("Connection ID is required")
        stopped = self.scheduler.stop(connection_id)
        message = 'Collection stopped' if stopped else 'Collection was not running'
        return {'success': True, 'message': message}

    def collection_status(self, connection_id: str) -> dict:
        self.registry.lookup(connection_id)
        status = self.collector.collection_status(connection_id)
        status['scheduler'] = self.scheduler.state(connection_id)
        status['is_running'] = self.scheduler.is_running(connection_id)
        return status

    # Settings

    def get_settings(self, connection_id: str) -> dict:
        return self.settings.get(connection_id)

    def save_settings(self, connection_id: str, **values) -> dict:
        self.registry.lookup(connection_id)
        saved = self.settings.save(connection_id, **values)
        if self.scheduler.is_running(connection_id):
            if not saved['is_enabled']:
                self.scheduler.stop(connection_id)
            else:
                self.scheduler.update_interval(connection_id, saved['collection_interval_minutes'])
        return saved

    # History

    def query_history(self, connection_id: str, date: str, start_time: Optional[str] = None,
                      end_time: Optional[str] = None, sort_key=None, limit: Optional[int] = None,
                      sql_id: Optional[str] = None) -> dict:
        return self.history.query(connection_id, date, start_time=start_time, end_time=end_time,
                                  sort_key=sort_key, limit=limit, sql_id=sql_id)

    def statement_history(self, connection_id: str, sql_id: str) -> dict:
        return self.history.statement_history(connection_id, sql_id)

    # Logs and summaries

    def list_logs(self, connection_id: str, limit: int = 50) -> dict:
        logs = self.collector.list_logs(connection_id, limit=limit)
        return {'success': True, 'data': logs, 'count': len(logs)}

    def delete_logs(self, connection_id: str, log_id: Optional[int] = None, delete_all: bool = False) -> dict:
        deleted = self.collector.delete_logs(connection_id, log_id=log_id, delete_all=delete_all)
        return {'success': True, 'deleted': deleted}

    def list_summaries(self, connection_id: str, days: int = 7) -> dict:
        summaries = self.collector.list_summaries(connection_id, days=days)
        return {'success': True, 'data': summaries, 'count': len(summaries)}

    def shutdown(self):
        self.scheduler.stop_all()
        if hasattr(self.client_factory, 'dispose_all'):
            self.client_factory.dispose_all()
        logging.info("Telemetry service shut down")
