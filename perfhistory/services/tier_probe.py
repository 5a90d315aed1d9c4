import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from perfhistory.core.config import settings
from perfhistory.core.errors import TierUnavailable
from .window import TIER_A


TIER_A_PROBE_SQL = "SELECT 1 AS ok FROM v$active_session_history WHERE ROWNUM = 1"


class Edition(str, Enum):
    FULL_FEATURED = 'FullFeatured'
    LIMITED = 'Limited'
    UNKNOWN = 'Unknown'


def parse_edition(banner: Optional[str]) -> Edition:
    if not banner:
        return Edition.UNKNOWN
    normalized = banner.lower()
    if 'enterprise' in normalized:
        return Edition.FULL_FEATURED
    if 'standard' in normalized or 'express' in normalized:
        return Edition.LIMITED
    return Edition.UNKNOWN


@dataclass(frozen=True)
class TierCapabilities:
    edition: Edition
    tier_a: bool
    tier_b: bool

    def to_dict(self) -> dict:
        return {'edition': self.edition.value, 'tier_a': self.tier_a, 'tier_b': self.tier_b}


class TierProbe:
    """
    Decides which licensed tiers a connection can use.

    Tier A is probed with a one-row read; the answer is kept in memory for a
    short while and never persisted. Tier B is decided from the declared
    edition without touching the database.
    """

    def __init__(self, cache_seconds: Optional[int] = None, timeout: Optional[int] = None, clock=time.monotonic):
        self.cache_seconds = settings.TIER_PROBE_CACHE_SECONDS if cache_seconds is None else cache_seconds
        self.timeout = settings.PROBE_TIMEOUT_SECONDS if timeout is None else timeout
        self._clock = clock
        self._cache: Dict[str, Tuple[float, bool]] = {}
        self._lock = threading.Lock()

    def tier_a_available(self, client) -> bool:
        now = self._clock()
        with self._lock:
            cached = self._cache.get(client.connection_id)
        if cached and now - cached[0] < self.cache_seconds:
            return cached[1]

        try:
            client.fetch(TIER_A_PROBE_SQL, timeout=self.timeout, tier=TIER_A)
            available = True
        except TierUnavailable as e:
            logging.info(f"[{client.connection_id}] Tier A probe failed, treating as unavailable: {e.reason}")
            available = False

        with self._lock:
            self._cache[client.connection_id] = (now, available)
        return available

    def tier_b_available(self, client) -> bool:
        return parse_edition(client.edition) != Edition.LIMITED

    def capabilities(self, client) -> TierCapabilities:
        return TierCapabilities(
            edition=parse_edition(client.edition),
            tier_a=self.tier_a_available(client),
            tier_b=self.tier_b_available(client),
        )

    def invalidate(self, connection_id: Optional[str] = None):
        with self._lock:
            if connection_id is None:
                self._cache.clear()
            else:
                self._cache.pop(connection_id, None)
