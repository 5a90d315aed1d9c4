from .aggregator import DailyAggregator
from .collector import CollectionOutcome, PerformanceCollector
from .history import HistoryQueryService
from .persister import BatchPersister, PersistResult
from .scheduler import CollectionScheduler
from .settings import SettingsService
from .tier_probe import Edition, TierProbe

__all__ = [
    'BatchPersister',
    'CollectionOutcome',
    'CollectionScheduler',
    'DailyAggregator',
    'Edition',
    'HistoryQueryService',
    'PerformanceCollector',
    'PersistResult',
    'SettingsService',
    'TierProbe',
]
