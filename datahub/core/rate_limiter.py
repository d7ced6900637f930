"""
Per-source request quotas.

Each registered source gets a token bucket sized from its RateLimit:
``requests`` tokens, refilled evenly over ``window_seconds``, plus a cap on
requests in flight. The registry wraps every adapter call in
``RateLimiterService.limit`` so quotas hold across consumer fetches and
scheduled syncs alike.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from datahub.core.errors import RateLimitExceeded
from datahub.core.models import RateLimit

logger = logging.getLogger(__name__)

# Longest single sleep while waiting for a token or a free slot
MAX_POLL_SECONDS = 0.5
# Re-check interval when only the in-flight cap blocks
SLOT_POLL_SECONDS = 0.01


@dataclass
class TokenBucket:
    """
    Quota state of one source.

    ``tokens`` refill continuously at ``requests_per_second`` and never exceed
    ``burst_capacity``; a request takes one token and one in-flight slot.
    """

    source: str
    requests_per_second: float
    burst_capacity: int
    concurrent_limit: int
    clock: Callable[[], float] = time.monotonic

    tokens: float = field(init=False)
    current_concurrent: int = field(default=0, init=False)
    total_requests: int = field(default=0, init=False)
    total_throttled: int = field(default=0, init=False)
    _updated_at: float = field(init=False, repr=False)

    def __post_init__(self):
        self.tokens = float(self.burst_capacity)
        self._updated_at = self.clock()

    @classmethod
    def from_config(cls, source: str, rate_limit: RateLimit, **kwargs) -> "TokenBucket":
        return cls(
            source,
            rate_limit.requests_per_second,
            rate_limit.requests,
            rate_limit.concurrent_limit,
            **kwargs,
        )

    def _top_up(self) -> None:
        now = self.clock()
        gained = (now - self._updated_at) * self.requests_per_second
        self.tokens = min(float(self.burst_capacity), self.tokens + gained)
        self._updated_at = now

    def _blocked_by(self) -> Optional[str]:
        if self.current_concurrent >= self.concurrent_limit:
            return "concurrency"
        if self.tokens < 1.0:
            return "tokens"
        return None

    def try_acquire(self) -> bool:
        """Take a token and an in-flight slot if both are available."""
        self._top_up()
        if self._blocked_by() is not None:
            self.total_throttled += 1
            return False

        self.tokens -= 1.0
        self.current_concurrent += 1
        self.total_requests += 1
        return True

    def release(self) -> None:
        if self.current_concurrent > 0:
            self.current_concurrent -= 1

    def wait_time(self) -> float:
        """Seconds until try_acquire could succeed (0 if it can now)."""
        self._top_up()
        blocked = self._blocked_by()
        if blocked is None:
            return 0.0
        if blocked == "concurrency" and self.tokens >= 1.0:
            return SLOT_POLL_SECONDS
        return (1.0 - self.tokens) / self.requests_per_second

    def snapshot(self) -> Dict[str, Any]:
        self._top_up()
        return {
            "requests_per_second": round(self.requests_per_second, 4),
            "burst_capacity": self.burst_capacity,
            "concurrent_limit": self.concurrent_limit,
            "current_tokens": round(self.tokens, 2),
            "current_concurrent": self.current_concurrent,
            "total_requests": self.total_requests,
            "total_throttled": self.total_throttled,
        }


class RateLimiterService:
    """
    Holds one TokenBucket per source.

    Sources that were never configured pass through unthrottled.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}
        self._guards: Dict[str, asyncio.Lock] = {}

    def configure_source(self, source: str, rate_limit: RateLimit) -> None:
        """Create or replace the bucket of a source (starts full)."""
        self._buckets[source] = TokenBucket.from_config(source, rate_limit, clock=self._clock)
        self._guards.setdefault(source, asyncio.Lock())
        logger.debug(
            f"Quota for '{source}': {rate_limit.requests} per "
            f"{rate_limit.window_seconds:.0f}s, {rate_limit.concurrent_limit} in flight"
        )

    def remove_source(self, source: str) -> None:
        self._buckets.pop(source, None)
        self._guards.pop(source, None)

    def is_configured(self, source: str) -> bool:
        return source in self._buckets

    async def acquire(self, source: str, timeout: float = 30.0) -> bool:
        """
        Wait for a token and a slot of ``source``.

        Gives up early, without sleeping through the whole timeout, as soon
        as the next token is known to arrive after the deadline.

        Returns:
            True once acquired, False if the deadline cannot be met
        """
        bucket = self._buckets.get(source)
        if bucket is None:
            return True

        guard = self._guards.setdefault(source, asyncio.Lock())
        deadline = self._clock() + timeout
        while True:
            async with guard:
                if bucket.try_acquire():
                    return True
                delay = bucket.wait_time()

            remaining = deadline - self._clock()
            if delay > remaining:
                logger.warning(
                    f"Quota for '{source}' exhausted: next slot in {delay:.1f}s, "
                    f"{max(remaining, 0.0):.1f}s left to wait"
                )
                return False
            await asyncio.sleep(min(delay, MAX_POLL_SECONDS))

    def release(self, source: str) -> None:
        bucket = self._buckets.get(source)
        if bucket is not None:
            bucket.release()

    @asynccontextmanager
    async def limit(self, source: str, timeout: float = 30.0):
        """
        Hold a quota slot of ``source`` for the body of the block.

        Usage:
            async with rate_limiter.limit("cmhc"):
                data = await adapter.fetch("v1/rental", params)

        Raises:
            RateLimitExceeded: If no slot is available within ``timeout``
        """
        started = self._clock()
        if not await self.acquire(source, timeout):
            raise RateLimitExceeded(source, self._clock() - started)
        try:
            yield
        finally:
            self.release(source)

    def get_stats(self, source: str) -> Dict[str, Any]:
        bucket = self._buckets.get(source)
        if bucket is None:
            return {"source": source, "configured": False}
        return {"source": source, "configured": True, **bucket.snapshot()}
