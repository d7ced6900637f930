"""
Source registry and fetch gateway.

The registry holds exactly one adapter + config per source id. Every fetch
(consumer requests and scheduled syncs alike) goes through ``fetch`` so that
caching, rate limiting, timeouts, validation and per-source metrics are
applied in one place.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional

from datahub.core.cache import MISSING, ResponseCache, build_cache_key
from datahub.core.errors import (
    DataValidationError,
    DuplicateSourceError,
    SourceFetchError,
    UnknownSourceError,
)
from datahub.core.models import SourceConfig, UpdateFrequency
from datahub.core.rate_limiter import RateLimiterService
from datahub.core.validation import DataValidator

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

# Cache lifetime of a fetched payload, by the source's update frequency
CACHE_TTLS: Dict[UpdateFrequency, timedelta] = {
    UpdateFrequency.REAL_TIME: timedelta(minutes=5),
    UpdateFrequency.HOURLY: timedelta(hours=1),
    UpdateFrequency.DAILY: timedelta(hours=1),
    UpdateFrequency.WEEKLY: timedelta(days=1),
    UpdateFrequency.MONTHLY: timedelta(days=7),
    UpdateFrequency.ANNUALLY: timedelta(days=7),
}


def cache_ttl_for(config: SourceConfig) -> float:
    """Cache TTL in seconds for payloads fetched from a source."""
    if config.cache_ttl_seconds is not None:
        return config.cache_ttl_seconds
    return CACHE_TTLS[config.update_frequency].total_seconds()


@dataclass
class SourceMetrics:
    """Request counters and latency extrema for one source."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    cache_hits: int = 0
    min_response_time_ms: Optional[float] = None
    max_response_time_ms: Optional[float] = None
    average_response_time_ms: float = 0.0
    last_error: Optional[str] = None
    _timed_requests: int = field(default=0, repr=False)

    def record_hit(self) -> None:
        self.total_requests += 1
        self.successful_requests += 1
        self.cache_hits += 1

    def record_rejection(self, error: str) -> None:
        """Count the last successful call as failed (its payload was rejected)."""
        if self.successful_requests > 0:
            self.successful_requests -= 1
            self.failed_requests += 1
        self.last_error = error

    def record_call(self, elapsed_ms: float, error: Optional[str] = None) -> None:
        self.total_requests += 1
        if error is None:
            self.successful_requests += 1
        else:
            self.failed_requests += 1
            self.last_error = error

        self._timed_requests += 1
        self.average_response_time_ms += (
            (elapsed_ms - self.average_response_time_ms) / self._timed_requests
        )
        if self.min_response_time_ms is None or elapsed_ms < self.min_response_time_ms:
            self.min_response_time_ms = elapsed_ms
        if self.max_response_time_ms is None or elapsed_ms > self.max_response_time_ms:
            self.max_response_time_ms = elapsed_ms

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.successful_requests / self.total_requests * 100

    def to_dict(self) -> Dict[str, Any]:
        def _ms(value: Optional[float]) -> Optional[float]:
            return round(value, 2) if value is not None else None

        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "cache_hits": self.cache_hits,
            "success_rate": round(self.success_rate, 2),
            "average_response_time_ms": round(self.average_response_time_ms, 2),
            "min_response_time_ms": _ms(self.min_response_time_ms),
            "max_response_time_ms": _ms(self.max_response_time_ms),
            "last_error": self.last_error,
        }


@dataclass
class RegisteredSource:
    source_id: str
    adapter: Any
    config: SourceConfig
    metrics: SourceMetrics = field(default_factory=SourceMetrics)


class SourceRegistry:
    """
    Owns the registered sources and routes fetches through the cache.

    Usage:
        registry = SourceRegistry(cache, rate_limiter=RateLimiterService())
        registry.register("bank-of-canada", adapter, config)
        data = await registry.fetch("bank-of-canada", "observations/FXUSDCAD/json")
    """

    def __init__(
        self,
        cache: ResponseCache,
        rate_limiter: Optional[RateLimiterService] = None,
        validator: Optional[DataValidator] = None,
        default_timeout: float = DEFAULT_TIMEOUT,
        rate_limit_wait: float = DEFAULT_TIMEOUT,
    ):
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.validator = validator
        self.default_timeout = default_timeout
        self.rate_limit_wait = rate_limit_wait
        self._sources: Dict[str, RegisteredSource] = {}

    def __contains__(self, source_id: str) -> bool:
        return source_id in self._sources

    def __len__(self) -> int:
        return len(self._sources)

    def register(self, source_id: str, adapter: Any, config: SourceConfig) -> RegisteredSource:
        """
        Register an adapter under ``source_id``.

        Raises:
            DuplicateSourceError: If the id is already registered
        """
        if source_id in self._sources:
            raise DuplicateSourceError(source_id)
        if config.source_id != source_id:
            config = config.model_copy(update={"source_id": source_id})

        registered = RegisteredSource(source_id=source_id, adapter=adapter, config=config)
        self._sources[source_id] = registered
        if self.rate_limiter is not None:
            self.rate_limiter.configure_source(source_id, config.rate_limit)

        logger.info(
            f"Registered data source '{source_id}' "
            f"(priority={config.priority.value}, frequency={config.update_frequency.value})"
        )
        return registered

    def unregister(self, source_id: str) -> None:
        if source_id not in self._sources:
            raise UnknownSourceError(source_id)
        del self._sources[source_id]
        if self.rate_limiter is not None:
            self.rate_limiter.remove_source(source_id)
        logger.info(f"Unregistered data source '{source_id}'")

    def get_source(self, source_id: str) -> RegisteredSource:
        try:
            return self._sources[source_id]
        except KeyError:
            raise UnknownSourceError(source_id) from None

    def get_config(self, source_id: str) -> SourceConfig:
        return self.get_source(source_id).config

    def source_ids(self) -> List[str]:
        return list(self._sources.keys())

    def sources(self) -> List[RegisteredSource]:
        return list(self._sources.values())

    async def fetch(
        self,
        source_id: str,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        force_refresh: bool = False,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Fetch data from a source, serving from cache when fresh.

        Args:
            source_id: Registered source id
            endpoint: Adapter endpoint
            params: Request parameters (part of the cache key)
            force_refresh: Skip the cache lookup and always call the adapter
            timeout: Adapter call bound in seconds (registry default if None)

        Returns:
            The adapter's payload (possibly from cache)

        Raises:
            UnknownSourceError: If the source is not registered
            SourceFetchError: If the adapter fails, times out or the rate
                limit wait is exhausted
            DataValidationError: If a fail-closed payload is invalid
        """
        source = self.get_source(source_id)
        params = dict(params or {})
        key = build_cache_key(source_id, endpoint, params)

        if not force_refresh:
            cached = await self.cache.get(key, MISSING)
            if cached is not MISSING:
                source.metrics.record_hit()
                logger.debug(f"Cache hit for {key}")
                return cached

        payload = await self._call_adapter(source, endpoint, params, timeout)
        self._validate(source, endpoint, payload)

        await self.cache.set(key, payload, ttl=cache_ttl_for(source.config))
        return payload

    async def _call_adapter(
        self,
        source: RegisteredSource,
        endpoint: str,
        params: Dict[str, Any],
        timeout: Optional[float],
    ) -> Any:
        timeout = self.default_timeout if timeout is None else timeout
        start = time.perf_counter()
        try:
            if self.rate_limiter is not None:
                async with self.rate_limiter.limit(source.source_id, self.rate_limit_wait):
                    payload = await asyncio.wait_for(
                        source.adapter.fetch(endpoint, params), timeout
                    )
            else:
                payload = await asyncio.wait_for(source.adapter.fetch(endpoint, params), timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError) and not isinstance(e, TimeoutError):
                e = TimeoutError(f"No response within {timeout:.1f}s")
            error = SourceFetchError(source.source_id, endpoint, cause=e)
            source.metrics.record_call((time.perf_counter() - start) * 1000, error=error.message)
            logger.error(f"Error fetching data from {source.source_id}/{endpoint}: {error.message}")
            raise error from e

        source.metrics.record_call((time.perf_counter() - start) * 1000)
        return payload

    def _validate(self, source: RegisteredSource, endpoint: str, payload: Any) -> None:
        kind = source.config.data_kind
        if self.validator is None or not kind:
            return

        result = self.validator.validate(kind, payload)
        for warning in result.warnings:
            logger.warning(f"Validation warning for {source.source_id}/{endpoint}: {warning}")

        if result.is_valid:
            return

        if self.validator.fails_closed(kind):
            error = DataValidationError(source.source_id, endpoint, kind, result)
            source.metrics.record_rejection(error.message)
            logger.error(error.message)
            raise error

        logger.warning(
            f"Serving invalid '{kind}' payload from {source.source_id}/{endpoint}: "
            f"{'; '.join(result.errors)}"
        )

    def _metrics(self, source: RegisteredSource) -> Dict[str, Any]:
        metrics = source.metrics.to_dict()
        if self.rate_limiter is not None:
            metrics["rate_limit"] = self.rate_limiter.get_stats(source.source_id)
        return metrics

    def get_performance_metrics(self, source_id: str) -> Dict[str, Any]:
        """Request counters of a source, plus its quota state when rate limited."""
        return self._metrics(self.get_source(source_id))

    def get_all_performance_metrics(self) -> Dict[str, Dict[str, Any]]:
        return {sid: self._metrics(src) for sid, src in self._sources.items()}

    def get_data_sources(self) -> List[Dict[str, Any]]:
        return [src.config.summary() for src in self._sources.values()]
