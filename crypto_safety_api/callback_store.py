"""
One-shot store for interactive button payloads.

Telegram limits callback data to 64 bytes, so buttons carry a short id and the
structured payload lives here until the button is pressed (or the TTL runs out).
"""
import time
from typing import Any, Callable, Dict, Optional, Tuple

from nanoid import generate

ID_ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_"
ID_LENGTH = 12
DEFAULT_TTL_SECONDS = 5 * 60


class CallbackStore:
    def __init__(self, default_ttl: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._store: Dict[str, Tuple[Any, float]] = {}  # id -> (value, expires_at)

    def _gc(self) -> None:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._store.items() if expires_at < now]
        for key in expired:
            del self._store[key]

    def put(self, value: Any, ttl: Optional[float] = None) -> str:
        """Store a payload and return the short id that references it."""
        self._gc()
        ttl = self.default_ttl if ttl is None else ttl
        payload_id = generate(ID_ALPHABET, ID_LENGTH)
        while payload_id in self._store:
            payload_id = generate(ID_ALPHABET, ID_LENGTH)
        self._store[payload_id] = (value, self._clock() + ttl)
        return payload_id

    def take(self, payload_id: str) -> Optional[Any]:
        """Return the payload and forget it. A second take returns None."""
        self._gc()
        hit = self._store.pop(payload_id, None)
        if hit is None:
            return None
        return hit[0]

    def __len__(self) -> int:
        return len(self._store)


callback_store = CallbackStore()
