"""Fixed-window abuse throttling.

Time is cut into non-overlapping windows of ``window_ms`` milliseconds
(``now_ms // window_ms``). Each key gets ``max_attempts`` hits per window; the
next hit locks the key until the window boundary. Bursts of up to twice the
ceiling are possible across a boundary.

Bucket state lives in an injectable store: ``MemoryBucketStore`` for a single
process, ``RedisBucketStore`` when several instances must share counters.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    max_attempts: int
    window_ms: int


@dataclass
class RateLimitBucket:
    key: str
    window_start: int
    window_ms: int
    count: int = 0
    locked_until: int | None = None


class BucketStore(Protocol):
    def hit(self, key: str, window_start: int, window_ms: int, ceiling: int) -> RateLimitBucket: ...

    def get(self, key: str, window_start: int) -> RateLimitBucket | None: ...

    def reset(self, key: str, window_start: int) -> None: ...

    def sweep(self, now_ms: int) -> int: ...


class MemoryBucketStore:
    """Process-local buckets behind a single lock."""

    def __init__(self, grace_ms: int = 60_000, sweep_interval_ms: int = 60_000):
        self.grace_ms = grace_ms
        self.sweep_interval_ms = sweep_interval_ms
        self._lock = threading.Lock()
        self._buckets: dict[str, RateLimitBucket] = {}
        self._last_sweep = 0

    def hit(self, key: str, window_start: int, window_ms: int, ceiling: int) -> RateLimitBucket:
        with self._lock:
            if window_start - self._last_sweep >= self.sweep_interval_ms:
                self._sweep_locked(window_start)
                self._last_sweep = window_start

            bucket = self._buckets.get(key)
            if bucket is None or bucket.window_start != window_start:
                bucket = RateLimitBucket(key=key, window_start=window_start, window_ms=window_ms)
                self._buckets[key] = bucket
            if bucket.count <= ceiling:
                bucket.count += 1
            if bucket.count > ceiling:
                bucket.locked_until = window_start + window_ms
            return RateLimitBucket(**vars(bucket))

    def get(self, key: str, window_start: int) -> RateLimitBucket | None:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None or bucket.window_start != window_start:
                return None
            return RateLimitBucket(**vars(bucket))

    def reset(self, key: str, window_start: int) -> None:
        with self._lock:
            self._buckets.pop(key, None)

    def sweep(self, now_ms: int) -> int:
        with self._lock:
            return self._sweep_locked(now_ms)

    def _sweep_locked(self, now_ms: int) -> int:
        stale = [
            key
            for key, b in self._buckets.items()
            if b.window_start + b.window_ms + self.grace_ms <= now_ms
        ]
        for key in stale:
            del self._buckets[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)


class RedisBucketStore:
    """Shared buckets; one Redis key per (key, window) with INCR + PEXPIREAT."""

    def __init__(self, client, prefix: str = "ratelimit", grace_ms: int = 60_000):
        self.client = client
        self.prefix = prefix
        self.grace_ms = grace_ms

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisBucketStore":
        import redis

        return cls(redis.Redis.from_url(url), **kwargs)

    def _key(self, key: str, window_start: int) -> str:
        return f"{self.prefix}:{key}:{window_start}"

    def hit(self, key: str, window_start: int, window_ms: int, ceiling: int) -> RateLimitBucket:
        redis_key = self._key(key, window_start)
        pipe = self.client.pipeline(transaction=True)
        pipe.incr(redis_key)
        pipe.pexpireat(redis_key, window_start + window_ms + self.grace_ms)
        count, _ = pipe.execute()
        bucket = RateLimitBucket(key=key, window_start=window_start, window_ms=window_ms, count=int(count))
        if bucket.count > ceiling:
            bucket.locked_until = window_start + window_ms
        return bucket

    def get(self, key: str, window_start: int) -> RateLimitBucket | None:
        raw = self.client.get(self._key(key, window_start))
        if raw is None:
            return None
        # window_ms is not stored; the limiter only needs count here
        return RateLimitBucket(key=key, window_start=window_start, window_ms=0, count=int(raw))

    def reset(self, key: str, window_start: int) -> None:
        self.client.delete(self._key(key, window_start))

    def sweep(self, now_ms: int) -> int:
        # Redis expires keys on its own
        return 0


class RateLimiter:
    def __init__(
        self,
        policy: RateLimitPolicy,
        store: BucketStore,
        clock: Callable[[], float] = time.time,
    ):
        self.policy = policy
        self.store = store
        self.clock = clock

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _window_start(self, now_ms: int) -> int:
        return (now_ms // self.policy.window_ms) * self.policy.window_ms

    def _bucket_key(self, key: str) -> str:
        return f"{self.policy.name}:{key}"

    def is_allowed(self, key: str) -> bool:
        now_ms = self._now_ms()
        bucket = self.store.hit(
            self._bucket_key(key),
            self._window_start(now_ms),
            self.policy.window_ms,
            self.policy.max_attempts,
        )
        allowed = bucket.count <= self.policy.max_attempts
        if not allowed:
            logger.warning(f"Rate limit '{self.policy.name}' exceeded for {key}")
        return allowed

    def get_remaining_time(self, key: str) -> int:
        """Milliseconds until *key* may try again; 0 when it is not limited."""
        now_ms = self._now_ms()
        window_start = self._window_start(now_ms)
        bucket = self.store.get(self._bucket_key(key), window_start)
        if bucket is None or bucket.count <= self.policy.max_attempts:
            return 0
        return max(0, window_start + self.policy.window_ms - now_ms)

    def retry_after_seconds(self, key: str) -> int:
        return -(-self.get_remaining_time(key) // 1000)

    def reset(self, key: str) -> None:
        self.store.reset(self._bucket_key(key), self._window_start(self._now_ms()))

    def sweep(self) -> int:
        return self.store.sweep(self._now_ms())


def build_bucket_store(backend: str, redis_url: str, grace_seconds: int) -> BucketStore:
    if backend == "redis":
        return RedisBucketStore.from_url(redis_url, grace_ms=grace_seconds * 1000)
    if backend == "memory":
        return MemoryBucketStore(grace_ms=grace_seconds * 1000)
    raise ValueError(f"Unknown rate limit backend: {backend}")
