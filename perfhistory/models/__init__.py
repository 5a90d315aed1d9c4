from .base import Base
from .collection import CollectionLog, CollectionSettings, RunStatus
from .performance import DailySummary, PerformanceRecord

__all__ = [
    'Base',
    'CollectionLog',
    'CollectionSettings',
    'DailySummary',
    'PerformanceRecord',
    'RunStatus',
]
