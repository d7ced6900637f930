"""
Unit tests for datahub/core/source_registry.py

Tests cover registration, cache-first fetching, timeouts, error wrapping,
validation (fail-closed and lenient), cache TTLs by update frequency and
per-source metrics.

All tests are fully offline (in-memory adapters only).
"""
import asyncio
import pytest
from unittest.mock import AsyncMock

from datahub.core.errors import (
    DataValidationError,
    DuplicateSourceError,
    SourceFetchError,
    UnknownSourceError,
)
from datahub.core.models import RateLimit, UpdateFrequency
from datahub.core.rate_limiter import RateLimiterService
from datahub.core.source_registry import SourceRegistry, cache_ttl_for
from datahub.core.validation import RuleValidator
from conftest import FakeAdapter, make_config


class TestRegistration:

    def test_register_and_lookup(self, registry):
        adapter = FakeAdapter()
        registry.register("cmhc", adapter, make_config("cmhc"))

        assert "cmhc" in registry
        assert registry.get_source("cmhc").adapter is adapter
        assert registry.source_ids() == ["cmhc"]

    def test_duplicate_registration_rejected(self, registry):
        registry.register("cmhc", FakeAdapter(), make_config("cmhc"))
        with pytest.raises(DuplicateSourceError):
            registry.register("cmhc", FakeAdapter(), make_config("cmhc"))

    def test_unknown_source(self, registry):
        with pytest.raises(UnknownSourceError):
            registry.get_source("nope")

    def test_config_id_aligned_with_registration_id(self, registry):
        registry.register("alias", FakeAdapter(), make_config("original"))
        assert registry.get_config("alias").source_id == "alias"

    def test_unregister(self, registry):
        registry.register("cmhc", FakeAdapter(), make_config("cmhc"))
        registry.unregister("cmhc")
        assert "cmhc" not in registry
        with pytest.raises(UnknownSourceError):
            registry.unregister("cmhc")

    def test_register_configures_rate_limiter(self, cache):
        limiter = RateLimiterService()
        registry = SourceRegistry(cache, rate_limiter=limiter)
        registry.register("cmhc", FakeAdapter(), make_config("cmhc", rate_limit=RateLimit(requests=500)))

        assert limiter.get_stats("cmhc")["burst_capacity"] == 500

    def test_metrics_include_quota_state(self, cache):
        registry = SourceRegistry(cache, rate_limiter=RateLimiterService())
        registry.register("cmhc", FakeAdapter(), make_config("cmhc", rate_limit=RateLimit(requests=500)))

        metrics = registry.get_performance_metrics("cmhc")

        assert metrics["rate_limit"]["configured"] is True
        assert metrics["rate_limit"]["burst_capacity"] == 500
        assert registry.get_all_performance_metrics()["cmhc"] == metrics

    def test_metrics_without_rate_limiter(self, registry):
        registry.register("cmhc", FakeAdapter(), make_config("cmhc"))
        assert "rate_limit" not in registry.get_performance_metrics("cmhc")

    def test_get_data_sources(self, registry):
        registry.register("cmhc", FakeAdapter(), make_config("cmhc"))
        sources = registry.get_data_sources()
        assert sources[0]["id"] == "cmhc"
        assert sources[0]["priority"] == "high"
        assert sources[0]["update_frequency"] == "daily"


class TestFetch:

    @pytest.mark.asyncio
    async def test_fetch_unknown_source(self, registry):
        with pytest.raises(UnknownSourceError):
            await registry.fetch("nope", "v1/data")

    @pytest.mark.asyncio
    async def test_second_fetch_served_from_cache(self, registry):
        adapter = FakeAdapter(payload={"rent": 2500})
        registry.register("cmhc", adapter, make_config("cmhc"))

        first = await registry.fetch("cmhc", "v1/rental", {"city": "toronto"})
        second = await registry.fetch("cmhc", "v1/rental", {"city": "toronto"})

        assert first == second == {"rent": 2500}
        assert len(adapter.calls) == 1
        metrics = registry.get_performance_metrics("cmhc")
        assert metrics["cache_hits"] == 1
        assert metrics["total_requests"] == 2
        assert metrics["successful_requests"] == 2

    @pytest.mark.asyncio
    async def test_different_params_miss_cache(self, registry):
        adapter = FakeAdapter()
        registry.register("cmhc", adapter, make_config("cmhc"))

        await registry.fetch("cmhc", "v1/rental", {"city": "toronto"})
        await registry.fetch("cmhc", "v1/rental", {"city": "ottawa"})

        assert len(adapter.calls) == 2

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_cache(self, registry):
        adapter = FakeAdapter()
        registry.register("cmhc", adapter, make_config("cmhc"))

        await registry.fetch("cmhc", "v1/rental")
        await registry.fetch("cmhc", "v1/rental", force_refresh=True)

        assert len(adapter.calls) == 2

    @pytest.mark.asyncio
    async def test_expired_entry_refetched(self, registry, timer):
        adapter = FakeAdapter()
        registry.register("cmhc", adapter, make_config("cmhc", cache_ttl_seconds=60))

        await registry.fetch("cmhc", "v1/rental")
        timer.advance(61)
        await registry.fetch("cmhc", "v1/rental")

        assert len(adapter.calls) == 2

    @pytest.mark.asyncio
    async def test_adapter_error_wrapped(self, registry):
        cause = ConnectionError("reset by peer")
        registry.register("cmhc", FakeAdapter(failures=1, error=cause), make_config("cmhc"))

        with pytest.raises(SourceFetchError) as exc_info:
            await registry.fetch("cmhc", "v1/rental")

        error = exc_info.value
        assert error.source == "cmhc"
        assert error.endpoint == "v1/rental"
        assert error.cause is cause
        metrics = registry.get_performance_metrics("cmhc")
        assert metrics["failed_requests"] == 1
        assert "reset by peer" in metrics["last_error"]

    @pytest.mark.asyncio
    async def test_failed_fetch_caches_nothing(self, registry, cache):
        registry.register("cmhc", FakeAdapter(failures=1), make_config("cmhc"))
        with pytest.raises(SourceFetchError):
            await registry.fetch("cmhc", "v1/rental")
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_timeout_becomes_fetch_error(self, cache):
        registry = SourceRegistry(cache, default_timeout=0.01)
        registry.register("cmhc", FakeAdapter(delay=1.0), make_config("cmhc"))

        with pytest.raises(SourceFetchError) as exc_info:
            await registry.fetch("cmhc", "v1/rental")

        assert isinstance(exc_info.value.cause, TimeoutError)
        assert exc_info.value.timed_out

    @pytest.mark.asyncio
    async def test_rate_limit_exhaustion_becomes_fetch_error(self, cache):
        limiter = RateLimiterService()
        registry = SourceRegistry(cache, rate_limiter=limiter, rate_limit_wait=0.1)
        registry.register(
            "cra", FakeAdapter(), make_config("cra", rate_limit=RateLimit(requests=1, window_seconds=3600))
        )

        await registry.fetch("cra", "v1/tax-rates")
        with pytest.raises(SourceFetchError) as exc_info:
            await registry.fetch("cra", "v1/tax-rates", force_refresh=True)
        assert "Rate limit exceeded" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_concurrent_fetches_allowed(self, registry):
        adapter = FakeAdapter()
        adapter.fetch = AsyncMock(side_effect=lambda endpoint, params: {"endpoint": endpoint})
        registry.register("cmhc", adapter, make_config("cmhc"))

        results = await asyncio.gather(
            *(registry.fetch("cmhc", f"v1/e{i}") for i in range(5))
        )
        assert [r["endpoint"] for r in results] == [f"v1/e{i}" for i in range(5)]


class TestValidation:

    @pytest.mark.asyncio
    async def test_fail_closed_kind_rejects_invalid_payload(self, cache):
        registry = SourceRegistry(cache, validator=RuleValidator())
        registry.register(
            "cra",
            FakeAdapter(payload={"federal": {"gst": 500}}),
            make_config("cra", data_kind="tax_rates"),
        )

        with pytest.raises(DataValidationError) as exc_info:
            await registry.fetch("cra", "v1/tax-rates")

        assert exc_info.value.kind == "tax_rates"
        assert isinstance(exc_info.value, SourceFetchError)
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_rejected_payload_counts_as_failed_request(self, cache):
        registry = SourceRegistry(cache, validator=RuleValidator())
        registry.register(
            "cra",
            FakeAdapter(payload={"federal": {"gst": 500}}),
            make_config("cra", data_kind="tax_rates"),
        )

        with pytest.raises(DataValidationError):
            await registry.fetch("cra", "v1/tax-rates")

        metrics = registry.get_performance_metrics("cra")
        assert metrics["total_requests"] == 1
        assert metrics["successful_requests"] == 0
        assert metrics["failed_requests"] == 1
        assert "tax_rates" in metrics["last_error"]

    @pytest.mark.asyncio
    async def test_lenient_kind_serves_invalid_payload(self, cache):
        registry = SourceRegistry(cache, validator=RuleValidator())
        payload = {"prices": {"averagePrice": 700_000}}
        registry.register("cmhc", FakeAdapter(payload=payload), make_config("cmhc", data_kind="housing"))

        assert await registry.fetch("cmhc", "v1/housing") == payload
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_source_without_kind_not_validated(self, cache):
        validator = RuleValidator()
        registry = SourceRegistry(cache, validator=validator)
        registry.register("esdc", FakeAdapter(payload=[1, 2, 3]), make_config("esdc"))

        assert await registry.fetch("esdc", "v1/benefits") == [1, 2, 3]


class TestCacheTTL:

    @pytest.mark.parametrize("frequency,seconds", [
        (UpdateFrequency.REAL_TIME, 5 * 60),
        (UpdateFrequency.HOURLY, 60 * 60),
        (UpdateFrequency.DAILY, 60 * 60),
        (UpdateFrequency.WEEKLY, 24 * 60 * 60),
        (UpdateFrequency.MONTHLY, 7 * 24 * 60 * 60),
        (UpdateFrequency.ANNUALLY, 7 * 24 * 60 * 60),
    ])
    def test_ttl_by_frequency(self, frequency, seconds):
        assert cache_ttl_for(make_config(update_frequency=frequency)) == seconds

    def test_override(self):
        assert cache_ttl_for(make_config(cache_ttl_seconds=42)) == 42

    @pytest.mark.asyncio
    async def test_fetched_entry_uses_frequency_ttl(self, registry, cache):
        registry.register(
            "boc", FakeAdapter(), make_config("boc", update_frequency=UpdateFrequency.HOURLY)
        )
        await registry.fetch("boc", "observations")

        exported = await cache.export()
        assert list(exported.values())[0]["ttl"] == 3600
