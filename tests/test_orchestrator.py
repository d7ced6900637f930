"""
Tests for datahub/orchestrator.py

End-to-end flows through the orchestrator with in-memory adapters and a
mocked APScheduler: startup (health check, initial sync, periodic jobs),
repeated sync failures with backoff, shutdown and the default catalog
build.

All tests are fully offline.
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from datahub.core.config import Settings
from datahub.core.errors import DuplicateSourceError, UnknownSourceError
from datahub.core.models import AlertThreshold, Priority, ThresholdPair, UpdateFrequency
from datahub.orchestrator import (
    CACHE_SWEEP_JOB_ID,
    HEALTH_TICK_JOB_ID,
    SYNC_TICK_JOB_ID,
    DataServiceOrchestrator,
    build_default_orchestrator,
)
from datahub.sources.bank_of_canada.client import BankOfCanadaAdapter
from datahub.sources.http_adapter import HTTPSourceAdapter
from conftest import FakeAdapter, make_config


@pytest.fixture
def job_scheduler():
    job_scheduler = MagicMock()
    job_scheduler.running = False
    job_scheduler.get_job.return_value = None
    return job_scheduler


@pytest.fixture
def orchestrator(clean_env, job_scheduler):
    settings = Settings(run_initial_sync=True, request_timeout_seconds=1.0)
    return DataServiceOrchestrator(settings, job_scheduler=job_scheduler)


def _job_ids(job_scheduler, trigger_type):
    return [
        call.kwargs["id"]
        for call in job_scheduler.add_job.call_args_list
        if isinstance(call.kwargs["trigger"], trigger_type)
    ]


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_syncs_and_schedules_jobs(self, orchestrator, job_scheduler):
        adapter = FakeAdapter()
        orchestrator.register_source(
            "x", adapter, make_config("x", priority=Priority.HIGH, update_frequency=UpdateFrequency.DAILY)
        )

        before = datetime.now(timezone.utc)
        await orchestrator.start()

        job_scheduler.start.assert_called_once()
        assert adapter.probes == 1
        assert len(adapter.calls) == 1

        status = orchestrator.get_sync_status()["x"]
        assert status["consecutive_failures"] == 0
        next_update = datetime.fromisoformat(status["next_update"])
        assert before + timedelta(hours=24) <= next_update
        assert next_update - before < timedelta(hours=24, minutes=1)

        assert _job_ids(job_scheduler, IntervalTrigger) == [
            CACHE_SWEEP_JOB_ID, SYNC_TICK_JOB_ID, HEALTH_TICK_JOB_ID,
        ]

    @pytest.mark.asyncio
    async def test_initial_sync_skips_lower_priorities(self, orchestrator):
        adapter = FakeAdapter()
        orchestrator.register_source("low", adapter, make_config("low", priority=Priority.LOW))

        await orchestrator.start()

        assert adapter.calls == []

    @pytest.mark.asyncio
    async def test_initial_sync_can_be_disabled(self, clean_env, job_scheduler):
        orchestrator = DataServiceOrchestrator(
            Settings(run_initial_sync=False), job_scheduler=job_scheduler
        )
        adapter = FakeAdapter()
        orchestrator.register_source("x", adapter, make_config("x"))

        await orchestrator.start()

        assert adapter.calls == []
        assert adapter.probes == 1

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, orchestrator, job_scheduler):
        await orchestrator.start()
        job_scheduler.running = True
        await orchestrator.start()

        job_scheduler.start.assert_called_once()

    @pytest.mark.asyncio
    async def test_stop_closes_adapters(self, orchestrator, job_scheduler):
        adapter = FakeAdapter()
        orchestrator.register_source("x", adapter, make_config("x"))

        async with orchestrator:
            job_scheduler.running = True
            assert orchestrator.running

        job_scheduler.shutdown.assert_called_once_with(wait=False)
        assert adapter.closed
        assert not orchestrator.running

    @pytest.mark.asyncio
    async def test_close_failure_does_not_abort_stop(self, orchestrator):
        failing = FakeAdapter()

        async def broken_close():
            raise RuntimeError("already closed")

        failing.close = broken_close
        healthy = FakeAdapter()
        orchestrator.register_source("a", failing, make_config("a"))
        orchestrator.register_source("b", healthy, make_config("b"))

        await orchestrator.start()
        await orchestrator.stop()

        assert healthy.closed


class TestSyncFlow:

    @pytest.mark.asyncio
    async def test_consecutive_failures_back_off(self, orchestrator, job_scheduler):
        adapter = FakeAdapter()
        orchestrator.register_source("x", adapter, make_config("x"))
        await orchestrator.start()

        adapter.failures = 3
        results = [await orchestrator.force_sync("x") for _ in range(3)]

        status = orchestrator.get_sync_status()["x"]
        assert status["consecutive_failures"] == 3
        assert status["retry_delays"] == [1.0, 2.0]
        assert [r.retry_delay for r in results] == [1.0, 2.0, None]
        assert _job_ids(job_scheduler, DateTrigger) == ["sync_retry_x", "sync_retry_x"]

    @pytest.mark.asyncio
    async def test_unhealthy_probe_blocks_sync(self, orchestrator):
        adapter = FakeAdapter()
        adapter.probe_error = ConnectionError("refused")
        orchestrator.register_source("x", adapter, make_config("x"))

        await orchestrator.start()

        assert adapter.calls == []
        assert orchestrator.get_sync_status()["x"]["consecutive_failures"] == 1
        assert orchestrator.get_system_health_status()["overall_status"] == "critical"

    @pytest.mark.asyncio
    async def test_force_sync_all(self, orchestrator):
        orchestrator.register_source("a", FakeAdapter(), make_config("a", priority=Priority.LOW))
        orchestrator.register_source("b", FakeAdapter(), make_config("b", priority=Priority.CRITICAL))

        results = await orchestrator.force_sync_all()

        assert list(results) == ["b", "a"]

    @pytest.mark.asyncio
    async def test_fetch_through_cache(self, orchestrator):
        adapter = FakeAdapter(payload={"rate": 5.0})
        orchestrator.register_source("x", adapter, make_config("x"))

        assert await orchestrator.fetch("x", "v1/rates") == {"rate": 5.0}
        assert await orchestrator.fetch("x", "v1/rates") == {"rate": 5.0}
        assert len(adapter.calls) == 1

        info = await orchestrator.get_cache_info()
        assert info["stats"]["hits"] == 1
        assert await orchestrator.clear_cache() == 1


class TestQueries:

    def test_duplicate_registration(self, orchestrator):
        orchestrator.register_source("x", FakeAdapter(), make_config("x"))
        with pytest.raises(DuplicateSourceError):
            orchestrator.register_source("x", FakeAdapter(), make_config("x"))

    @pytest.mark.asyncio
    async def test_alerts_with_custom_threshold(self, orchestrator):
        orchestrator.register_source(
            "x", FakeAdapter(), make_config("x"),
            alert_threshold=AlertThreshold(response_time_ms=ThresholdPair(warning=50, critical=500)),
        )
        await orchestrator.monitor.check_source_health("x")

        alerts = orchestrator.get_alerts("x")

        assert [(a["metric"], a["level"]) for a in alerts] == [("response_time", "warning")]

    def test_alerts_for_unknown_source(self, orchestrator):
        with pytest.raises(UnknownSourceError):
            orchestrator.get_alerts("nope")

    @pytest.mark.asyncio
    async def test_performance_metrics(self, orchestrator):
        orchestrator.register_source("x", FakeAdapter(), make_config("x"))
        await orchestrator.fetch("x", "v1/data")

        assert orchestrator.get_performance_metrics("x")["total_requests"] == 1
        assert set(orchestrator.get_performance_metrics()) == {"x"}

    @pytest.mark.asyncio
    async def test_unregister_source(self, orchestrator):
        gone = FakeAdapter()
        kept = FakeAdapter()
        orchestrator.register_source(
            "a", gone, make_config("a"),
            alert_threshold=AlertThreshold(response_time_ms=ThresholdPair(warning=50, critical=500)),
        )
        orchestrator.register_source("b", kept, make_config("b"))
        await orchestrator.monitor.tick()

        await orchestrator.unregister_source("a")

        assert gone.closed
        assert [s["id"] for s in orchestrator.get_data_sources()] == ["b"]
        assert set(orchestrator.get_sync_status()) == {"b"}
        assert orchestrator.monitor.get_history("a") == []
        assert orchestrator.monitor.get_alert_threshold("a") == AlertThreshold()
        assert not orchestrator.rate_limiter.is_configured("a")
        assert (await orchestrator.force_sync_all())["b"].success
        with pytest.raises(UnknownSourceError):
            await orchestrator.unregister_source("a")

    def test_configuration_status(self, orchestrator):
        orchestrator.register_source(
            "cmhc", FakeAdapter(), make_config("cmhc", required=True, requires_api_key=True)
        )

        status = orchestrator.get_configuration_status()

        assert status["registered_sources"] == ["cmhc"]
        assert status["required_sources"] == ["cmhc"]
        assert status["missing_credentials"] == ["cmhc"]
        assert set(status["missing_required_sources"]) == {"stats-can", "bank-of-canada"}


class TestDefaultOrchestrator:

    def test_registers_enabled_catalog_sources(self, clean_env):
        settings = Settings(enabled_sources="bank-of-canada, cmhc, unknown-source")

        orchestrator = build_default_orchestrator(settings)

        assert orchestrator.registry.source_ids() == ["bank-of-canada", "cmhc"]
        assert isinstance(orchestrator.registry.get_source("bank-of-canada").adapter, BankOfCanadaAdapter)
        assert type(orchestrator.registry.get_source("cmhc").adapter) is HTTPSourceAdapter

    def test_empty_enabled_sources_registers_catalog(self, clean_env):
        orchestrator = build_default_orchestrator(Settings())
        assert len(orchestrator.registry) == 7

    def test_api_keys_reach_configs(self, clean_env, monkeypatch):
        monkeypatch.setenv("CMHC_API_KEY", "secret")

        orchestrator = build_default_orchestrator(Settings(enabled_sources="cmhc"))

        assert orchestrator.registry.get_config("cmhc").api_key == "secret"
        assert orchestrator.get_configuration_status()["missing_credentials"] == []
