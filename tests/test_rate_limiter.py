"""
Unit tests for datahub/core/rate_limiter.py

Tests cover token bucket behavior, refill, concurrency slots, per-source
configuration from RateLimit, the limit() context manager and statistics.

All tests are fully offline.
"""
import pytest

from datahub.core.errors import RateLimitExceeded
from datahub.core.models import RateLimit
from datahub.core.rate_limiter import RateLimiterService, TokenBucket

# =============================================================================
# Token Bucket: Core Behavior
# =============================================================================


class TestTokenBucket:

    def test_starts_with_full_bucket(self, timer):
        bucket = TokenBucket(
            source="cmhc", requests_per_second=2.0,
            burst_capacity=10, concurrent_limit=5, clock=timer,
        )
        assert bucket.tokens == 10.0
        assert bucket.total_requests == 0

    def test_from_config(self, timer):
        bucket = TokenBucket.from_config(
            "cmhc", RateLimit(requests=500, window_seconds=3600, concurrent_limit=3), clock=timer
        )
        assert bucket.burst_capacity == 500
        assert bucket.concurrent_limit == 3
        assert bucket.requests_per_second == pytest.approx(500 / 3600)

    def test_acquire_consumes_token(self, timer):
        bucket = TokenBucket("cmhc", 1.0, 2, 5, clock=timer)
        assert bucket.try_acquire() is True
        assert bucket.tokens == pytest.approx(1.0)
        assert bucket.current_concurrent == 1

    def test_empty_bucket_throttles(self, timer):
        bucket = TokenBucket("cmhc", 1.0, 2, 5, clock=timer)
        assert bucket.try_acquire()
        assert bucket.try_acquire()
        assert bucket.try_acquire() is False
        assert bucket.total_throttled == 1

    def test_refill_over_time(self, timer):
        bucket = TokenBucket("cmhc", 1.0, 2, 5, clock=timer)
        bucket.try_acquire()
        bucket.try_acquire()

        timer.advance(1.0)

        assert bucket.try_acquire() is True

    def test_refill_capped_at_capacity(self, timer):
        bucket = TokenBucket("cmhc", 1.0, 2, 5, clock=timer)
        timer.advance(100)
        bucket.try_acquire()
        assert bucket.tokens == pytest.approx(1.0)

    def test_concurrent_limit(self, timer):
        bucket = TokenBucket("cmhc", 10.0, 10, 1, clock=timer)
        assert bucket.try_acquire()
        assert bucket.try_acquire() is False
        bucket.release()
        assert bucket.try_acquire()

    def test_wait_time(self, timer):
        bucket = TokenBucket("cmhc", 2.0, 1, 5, clock=timer)
        assert bucket.wait_time() == 0.0
        bucket.try_acquire()
        assert bucket.wait_time() == pytest.approx(0.5)


# =============================================================================
# Rate Limiter Service
# =============================================================================


class TestRateLimiterService:

    @pytest.mark.asyncio
    async def test_unconfigured_source_is_not_limited(self, timer):
        limiter = RateLimiterService(clock=timer)
        for _ in range(100):
            assert await limiter.acquire("unknown") is True

    @pytest.mark.asyncio
    async def test_limit_context_releases_slot(self, timer):
        limiter = RateLimiterService(clock=timer)
        limiter.configure_source("cmhc", RateLimit(requests=10, window_seconds=10, concurrent_limit=1))

        async with limiter.limit("cmhc"):
            assert limiter.get_stats("cmhc")["current_concurrent"] == 1
        assert limiter.get_stats("cmhc")["current_concurrent"] == 0

    @pytest.mark.asyncio
    async def test_limit_raises_when_wait_exceeds_timeout(self, timer):
        limiter = RateLimiterService(clock=timer)
        # One request per hour: the second one cannot be served within 1s
        limiter.configure_source("cra", RateLimit(requests=1, window_seconds=3600))

        async with limiter.limit("cra", timeout=1.0):
            pass

        with pytest.raises(RateLimitExceeded) as exc_info:
            async with limiter.limit("cra", timeout=1.0):
                pass
        assert exc_info.value.source == "cra"

    @pytest.mark.asyncio
    async def test_slot_released_on_error(self, timer):
        limiter = RateLimiterService(clock=timer)
        limiter.configure_source("cmhc", RateLimit(requests=10, window_seconds=10, concurrent_limit=1))

        with pytest.raises(ValueError):
            async with limiter.limit("cmhc"):
                raise ValueError("adapter failed")
        assert limiter.get_stats("cmhc")["current_concurrent"] == 0

    def test_remove_source(self, timer):
        limiter = RateLimiterService(clock=timer)
        limiter.configure_source("cmhc", RateLimit())
        limiter.remove_source("cmhc")
        assert limiter.is_configured("cmhc") is False
        assert limiter.get_stats("cmhc") == {"source": "cmhc", "configured": False}
