"""
Per-chat admission control.

Two independent rules must both pass:
- a token bucket (capacity 5, one token back every 6s) bounds sustained throughput
- a minimum gap of 900ms between admitted actions bounds burst spacing

State is local to this process. admit() never awaits, so on a single event loop
one admission check cannot interleave with another.
"""
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

CAPACITY = 5
REFILL_SECONDS = 6.0
MIN_GAP_SECONDS = 0.9

REASON_SLOW_DOWN = "slow_down"
REASON_EXHAUSTED = "exhausted"


@dataclass
class RateBucket:
    tokens: int
    last_refill_at: float
    last_admitted_at: Optional[float] = None


@dataclass
class Admission:
    allowed: bool
    reason: Optional[str] = None
    retry_after: Optional[int] = None  # seconds


class RateGovernor:
    def __init__(
        self,
        capacity: int = CAPACITY,
        refill_seconds: float = REFILL_SECONDS,
        min_gap_seconds: float = MIN_GAP_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.capacity = capacity
        self.refill_seconds = refill_seconds
        self.min_gap_seconds = min_gap_seconds
        self._clock = clock
        # Grows with the number of distinct chats; never evicted.
        self._buckets: Dict[int, RateBucket] = {}

    def _refill(self, bucket: RateBucket, now: float) -> None:
        elapsed = now - bucket.last_refill_at
        if elapsed <= 0:
            return
        added = int(elapsed // self.refill_seconds)
        if added > 0:
            bucket.tokens = min(self.capacity, bucket.tokens + added)
            # Advance by whole intervals so the partial interval carries over.
            bucket.last_refill_at += added * self.refill_seconds

    def admit(self, chat_id: int) -> Admission:
        now = self._clock()
        bucket = self._buckets.get(chat_id)
        if bucket is None:
            bucket = RateBucket(tokens=self.capacity, last_refill_at=now)
            self._buckets[chat_id] = bucket

        self._refill(bucket, now)

        if bucket.last_admitted_at is not None and now - bucket.last_admitted_at < self.min_gap_seconds:
            return Admission(allowed=False, reason=REASON_SLOW_DOWN)

        if bucket.tokens <= 0:
            until_next = self.refill_seconds - (now - bucket.last_refill_at)
            retry_after = max(1, math.ceil(until_next))
            logger.info(f"Rate limit exhausted for chat {chat_id}, retry in ~{retry_after}s")
            return Admission(allowed=False, reason=REASON_EXHAUSTED, retry_after=retry_after)

        bucket.tokens -= 1
        bucket.last_admitted_at = now
        return Admission(allowed=True)

    def tokens_left(self, chat_id: int) -> int:
        bucket = self._buckets.get(chat_id)
        return self.capacity if bucket is None else bucket.tokens

    def reset(self) -> None:
        self._buckets.clear()


rate_governor = RateGovernor()
