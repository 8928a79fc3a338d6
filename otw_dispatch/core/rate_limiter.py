"""
In-memory token-bucket rate limiting.

Refill is interval-quantized: each whole elapsed interval restores a full
batch of tokens, and a partial interval restores none. Any positive elapsed
time moves the refill mark to now, including on calls that are denied.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

from .errors import InvalidConfig

logger = structlog.get_logger(__name__)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass
class RateBucket:
    """Mutable per-key bucket state. Only touched while holding `lock`."""
    tokens: int
    capacity: int
    interval_ms: float
    last_refill_at: float
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a single attempt."""
    allowed: bool
    retry_after_ms: float
    remaining: int

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "retryAfterMs": self.retry_after_ms}


class RateLimiter:
    """Token buckets keyed by an arbitrary string such as a client id.

    Buckets are created lazily on first use and keep the capacity they were
    created with. When `max_keys` is set the least recently used bucket is
    evicted once the limit is exceeded.
    """

    def __init__(
        self,
        clock: Callable[[], float] = _monotonic_ms,
        max_keys: Optional[int] = None,
    ):
        """Initialize the limiter.

        Args:
            clock: Returns the current time in milliseconds
            max_keys: Optional bound on tracked keys (LRU eviction)

        Raises:
            InvalidConfig: If max_keys is not positive
        """
        if max_keys is not None and max_keys <= 0:
            raise InvalidConfig("max_keys must be > 0")
        self._clock = clock
        self._max_keys = max_keys
        self._buckets: "OrderedDict[str, RateBucket]" = OrderedDict()
        self._map_lock = threading.Lock()

    def __len__(self) -> int:
        with self._map_lock:
            return len(self._buckets)

    def attempt(self, key: str, interval_ms: float, max_tokens: int) -> RateLimitDecision:
        """Try to consume one token from the bucket for `key`.

        Args:
            key: Bucket identity
            interval_ms: Refill interval in milliseconds
            max_tokens: Bucket capacity and tokens restored per whole interval

        Returns:
            RateLimitDecision; denied attempts report retry_after_ms = interval_ms

        Raises:
            InvalidConfig: If interval_ms or max_tokens is not positive
        """
        if max_tokens <= 0:
            raise InvalidConfig(f"max_tokens must be > 0, got {max_tokens}")
        if interval_ms <= 0:
            raise InvalidConfig(f"interval_ms must be > 0, got {interval_ms}")

        while True:
            bucket = self._get_bucket(key, interval_ms, max_tokens)
            with bucket.lock:
                # Evicted or reset after lookup; a token taken here would be lost.
                if not self._is_current(key, bucket):
                    continue
                return self._consume(bucket, key, interval_ms, max_tokens)

    def _consume(self, bucket: RateBucket, key: str, interval_ms: float, max_tokens: int) -> RateLimitDecision:
        now = self._clock()
        elapsed = now - bucket.last_refill_at
        if elapsed > 0:
            refill = int(elapsed // interval_ms) * max_tokens
            bucket.tokens = min(bucket.capacity, bucket.tokens + refill)
            bucket.last_refill_at = now

        if bucket.tokens <= 0:
            logger.warning("rate_limit.denied", key=key, retry_after_ms=interval_ms)
            return RateLimitDecision(allowed=False, retry_after_ms=interval_ms, remaining=0)

        bucket.tokens -= 1
        return RateLimitDecision(allowed=True, retry_after_ms=0, remaining=bucket.tokens)

    def _is_current(self, key: str, bucket: RateBucket) -> bool:
        with self._map_lock:
            return self._buckets.get(key) is bucket

    def reset(self, key: Optional[str] = None) -> None:
        """Forget one bucket, or all of them when no key is given."""
        with self._map_lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)

    def _get_bucket(self, key: str, interval_ms: float, max_tokens: int) -> RateBucket:
        with self._map_lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = RateBucket(
                    tokens=max_tokens,
                    capacity=max_tokens,
                    interval_ms=interval_ms,
                    last_refill_at=self._clock(),
                )
                self._buckets[key] = bucket
                if self._max_keys is not None and len(self._buckets) > self._max_keys:
                    evicted, _ = self._buckets.popitem(last=False)
                    logger.debug("rate_limit.evicted", key=evicted)
            else:
                self._buckets.move_to_end(key)
            return bucket


# Process-wide limiter
_default_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get the process-wide limiter instance."""
    global _default_limiter
    if _default_limiter is None:
        _default_limiter = RateLimiter()
    return _default_limiter


def attempt(key: str, interval_ms: float, max_tokens: int) -> RateLimitDecision:
    """Attempt against the process-wide limiter."""
    return get_rate_limiter().attempt(key, interval_ms, max_tokens)
