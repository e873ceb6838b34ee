import threading

import pytest

from app.security.ratelimit import (
    MemoryBucketStore,
    RateLimiter,
    RateLimitPolicy,
    RedisBucketStore,
    build_bucket_store,
)

WINDOW_MS = 15 * 60 * 1000


@pytest.fixture
def store():
    return MemoryBucketStore(grace_ms=60_000)


@pytest.fixture
def limiter(store, clock):
    # Start exactly on a window boundary so tests can reason about the reset
    clock.now = (clock.now * 1000 // WINDOW_MS) * WINDOW_MS / 1000
    return RateLimiter(RateLimitPolicy("login", 5, WINDOW_MS), store, clock=clock)


def test_sixth_attempt_is_rejected(limiter):
    assert all(limiter.is_allowed("1.2.3.4") for _ in range(5))
    assert limiter.get_remaining_time("1.2.3.4") == 0
    assert not limiter.is_allowed("1.2.3.4")
    assert limiter.get_remaining_time("1.2.3.4") == WINDOW_MS


def test_remaining_time_counts_down_to_boundary(limiter, clock):
    for _ in range(6):
        limiter.is_allowed("k")
    clock.advance(60)
    assert limiter.get_remaining_time("k") == WINDOW_MS - 60_000
    assert limiter.retry_after_seconds("k") == 15 * 60 - 60


def test_retry_after_rounds_up(limiter, clock):
    for _ in range(6):
        limiter.is_allowed("k")
    clock.advance(0.2505)
    assert limiter.retry_after_seconds("k") == 15 * 60


def test_counter_resets_at_next_window(limiter, clock):
    for _ in range(6):
        limiter.is_allowed("k")
    clock.advance(WINDOW_MS / 1000)
    assert limiter.is_allowed("k")
    assert limiter.get_remaining_time("k") == 0


def test_keys_are_independent(limiter):
    for _ in range(6):
        limiter.is_allowed("a")
    assert limiter.is_allowed("b")


def test_policies_share_a_store_without_colliding(store, clock):
    login = RateLimiter(RateLimitPolicy("login", 1, WINDOW_MS), store, clock=clock)
    message = RateLimiter(RateLimitPolicy("message", 1, 60_000), store, clock=clock)
    assert login.is_allowed("7")
    assert message.is_allowed("7")
    assert not login.is_allowed("7")


def test_reset(limiter):
    for _ in range(6):
        limiter.is_allowed("k")
    limiter.reset("k")
    assert limiter.is_allowed("k")


def test_sweep_evicts_old_buckets(store, limiter, clock):
    limiter.is_allowed("a")
    limiter.is_allowed("b")
    assert len(store) == 2

    clock.advance(WINDOW_MS / 1000 + 30)
    assert limiter.sweep() == 0
    clock.advance(31)
    assert limiter.sweep() == 2
    assert len(store) == 0


def test_concurrent_hits_never_exceed_ceiling(store, clock):
    limiter = RateLimiter(RateLimitPolicy("burst", 50, WINDOW_MS), store, clock=clock)
    results = []
    lock = threading.Lock()

    def worker():
        for _ in range(20):
            allowed = limiter.is_allowed("shared")
            with lock:
                results.append(allowed)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 50


def test_message_policy_from_services(services):
    for _ in range(30):
        assert services.message_limiter.is_allowed("42:1.2.3.4")
    assert not services.message_limiter.is_allowed("42:1.2.3.4")


def test_unknown_backend():
    with pytest.raises(ValueError):
        build_bucket_store("memcached", "redis://localhost:6379/0", 60)


@pytest.fixture
def redis_store():
    try:
        store = RedisBucketStore.from_url("redis://localhost:6379/15", prefix="test-ratelimit")
        store.client.ping()
    except Exception:
        pytest.skip("Redis not available")
    yield store
    for key in store.client.scan_iter("test-ratelimit:*"):
        store.client.delete(key)


def test_redis_store(redis_store):
    limiter = RateLimiter(RateLimitPolicy("login", 2, WINDOW_MS), redis_store)
    limiter.reset("k")
    assert limiter.is_allowed("k")
    assert limiter.is_allowed("k")
    assert not limiter.is_allowed("k")
    assert limiter.get_remaining_time("k") > 0
    limiter.reset("k")
    assert limiter.is_allowed("k")
