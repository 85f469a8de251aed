from datetime import timedelta

import pytest

from hardyauth.service.errors import RateLimitExceeded
from hardyauth.service.rate_limit import RateLimiter
from hardyauth.storage.errors import StorageError
from hardyauth.storage.models import RateLimitCounter


class BrokenCounters:
    def increment_counter(self, key, window_seconds, now):
        raise StorageError("counter table unavailable")


class RecordingCache:
    def __init__(self):
        self.calls = []

    async def increment_counter(self, key, window_seconds, now):
        self.calls.append(key)
        return RateLimitCounter(
            key=key, count=len(self.calls), reset_at=now + timedelta(seconds=window_seconds)
        )


async def test_limit_allows_then_blocks(store, clock):
    limiter = RateLimiter(store, clock=clock)
    for n in range(1, 101):
        decision = await limiter.check("ip:10.0.0.1:login", 100, 60)
        assert decision.count == n
    assert decision.remaining == 0

    with pytest.raises(RateLimitExceeded) as excinfo:
        await limiter.check("ip:10.0.0.1:login", 100, 60)
    assert excinfo.value.status_code == 429
    assert excinfo.value.retry_after == 60
    assert excinfo.value.detail["retry_after"] == 60


async def test_retry_after_tracks_window_remaining(store, clock):
    limiter = RateLimiter(store, clock=clock)
    await limiter.check("k", 1, 60)
    clock.advance(seconds=45.5)
    with pytest.raises(RateLimitExceeded) as excinfo:
        await limiter.check("k", 1, 60)
    assert excinfo.value.retry_after == 15


async def test_window_resets(store, clock):
    limiter = RateLimiter(store, clock=clock)
    for _ in range(3):
        await limiter.check("k", 3, 60)
    with pytest.raises(RateLimitExceeded):
        await limiter.check("k", 3, 60)

    clock.advance(seconds=60)
    decision = await limiter.check("k", 3, 60)
    assert decision.count == 1
    assert decision.reset_at == clock.now() + timedelta(seconds=60)


async def test_keys_are_independent(store, clock):
    limiter = RateLimiter(store, clock=clock)
    await limiter.check("a", 1, 60)
    assert (await limiter.check("b", 1, 60)).allowed


async def test_storage_failure_denies(clock):
    limiter = RateLimiter(BrokenCounters(), clock=clock)
    with pytest.raises(RateLimitExceeded) as excinfo:
        await limiter.check("k", 100, 60)
    assert excinfo.value.reason == "rate_limit_unavailable"


async def test_cache_is_preferred_over_store(store, clock):
    cache = RecordingCache()
    limiter = RateLimiter(store, cache, clock=clock)
    await limiter.check("k", 5, 60)
    assert cache.calls == ["k"]
    assert store.counters == {}
