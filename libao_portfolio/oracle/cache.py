"""In-memory TTL price cache shared by the oracle's worker threads."""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, Optional, Tuple

from libao_portfolio.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    price: float
    fetched_at: float


class PriceCache:
    """Price cache keyed by (symbol, market).

    Entries older than the TTL are reported as stale but are never
    evicted: a stale price is still the fallback when every provider
    fails. Only reset() clears the cache.

    Example:
        >>> cache = PriceCache(ttl_seconds=30)
        >>> cache.store(("2330", "TW"), 580.0)
        >>> cache.lookup(("2330", "TW"))
        (580.0, True)
    """

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize price cache.

        Args:
            ttl_seconds: Freshness window in seconds
            clock: Monotonic time source (injectable for tests)

        Raises:
            ValueError: If ttl_seconds is negative
        """
        if ttl_seconds < 0:
            raise ValueError(f"ttl_seconds must be non-negative, got {ttl_seconds}")

        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, CacheEntry] = {}
        self._lock = threading.Lock()

    def lookup(self, key: Hashable) -> Tuple[Optional[float], bool]:
        """Return (price, is_fresh); (None, False) when nothing is cached."""
        with self._lock:
            entry = self._entries.get(key)

        if entry is None:
            return None, False

        age = self._clock() - entry.fetched_at
        return entry.price, age < self.ttl_seconds

    def store(self, key: Hashable, price: float) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(price=price, fetched_at=self._clock())

    def reset(self) -> None:
        """Drop every cached price."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.debug("Price cache reset (%d entries dropped)", count)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
