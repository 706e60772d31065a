"""
In-process TTL cache shared by the market and DEX clients.

Expiry is checked lazily on read; there is no background sweep.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")

DEFAULT_TTL_SECONDS = 45.0


@dataclass
class CacheEntry(Generic[V]):
    value: V
    expires_at: float


class TTLCache:
    def __init__(self, default_ttl: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._store: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if absent or expired."""
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.expires_at < self._clock():
            del self._store[key]
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        self._store[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    async def get_or_set(
        self,
        key: str,
        producer: Callable[[], Awaitable[V]],
        ttl: Optional[float] = None,
    ) -> V:
        """
        Return the cached value for key, or await producer, store and return its result.

        Producer failures propagate and nothing is stored. Two concurrent misses
        for the same key may both run the producer; the last one wins.
        """
        cached = self.get(key)
        if cached is not None:
            logger.debug(f"Cache hit: {key}")
            return cached
        fresh = await producer()
        self.set(key, fresh, ttl)
        return fresh

    def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)


shared_cache = TTLCache(DEFAULT_TTL_SECONDS)
