"""In-memory read cache with per-entry TTL and lazy eviction."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300.0  # seconds


@dataclass
class CacheEntry:
    data: Any
    stored_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl


class TTLCache:
    """
    Thread-safe key/value cache. Expired entries are dropped when read.

    Args:
        ttl: Default time-to-live in seconds; must be positive
        enabled: When False every ``get`` misses and ``set`` is a no-op
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl <= 0:
            raise ConfigurationError(f"cache ttl must be positive, got {ttl}")
        self.ttl = ttl
        self.enabled = enabled
        self._clock = clock
        self._store: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._store[key]
                logger.debug(f"Cache entry expired: {key}")
                return None
            return entry.data

    def set(self, key: str, data: Any, ttl: Optional[float] = None) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._store[key] = CacheEntry(data=data, stored_at=self._clock(), ttl=ttl or self.ttl)

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)
