"""
Pytest configuration and shared fixtures.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from datahub.core.cache import ResponseCache
from datahub.core.config import reset_settings
from datahub.core.models import (
    HealthState,
    HealthStatus,
    Priority,
    SourceConfig,
    SyncTarget,
    UpdateFrequency,
)
from datahub.core.source_registry import SourceRegistry
from datahub.sources.base import SourceAdapter

T0 = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeTimer:
    """Manually advanced seconds clock (time.time / time.monotonic stand-in)."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeAdapter(SourceAdapter):
    """
    In-memory adapter.

    ``failures`` makes the next N fetches raise ``error``; ``delay`` makes
    fetches sleep (for timeout tests); ``health`` is returned by the probe.
    """

    def __init__(
        self,
        payload: Any = None,
        failures: int = 0,
        error: Optional[Exception] = None,
        delay: float = 0.0,
        health: Optional[HealthStatus] = None,
    ):
        self.payload = payload if payload is not None else {"value": 1}
        self.failures = failures
        self.error = error or ConnectionError("provider unreachable")
        self.delay = delay
        self.health = health or HealthStatus(status=HealthState.HEALTHY, response_time_ms=100.0)
        self.probe_error: Optional[Exception] = None
        self.calls: List[tuple] = []
        self.probes = 0
        self.closed = False

    async def fetch(self, endpoint: str, params: Dict[str, Any]) -> Any:
        self.calls.append((endpoint, dict(params)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        return self.payload

    async def health_probe(self) -> HealthStatus:
        self.probes += 1
        if self.probe_error is not None:
            raise self.probe_error
        return self.health

    async def close(self) -> None:
        self.closed = True


def make_config(source_id: str = "test-source", **overrides) -> SourceConfig:
    values = {
        "source_id": source_id,
        "name": source_id.title(),
        "priority": Priority.HIGH,
        "update_frequency": UpdateFrequency.DAILY,
        "sync_targets": [SyncTarget(endpoint="v1/data")],
    }
    values.update(overrides)
    return SourceConfig(**values)


@pytest.fixture(scope="function")
def clean_env(monkeypatch):
    """
    Clean environment for testing.

    Removes all datahub env vars to ensure clean state.
    """
    env_vars = [
        "STATSCAN_API_KEY",
        "CMHC_API_KEY",
        "BANK_OF_CANADA_API_KEY",
        "OEB_API_KEY",
        "TORONTO_OPEN_DATA_API_KEY",
        "CRA_API_KEY",
        "ESDC_API_KEY",
        "ENABLED_SOURCES",
        "LOG_LEVEL",
        "REQUEST_TIMEOUT_SECONDS",
        "CACHE_MAX_SIZE",
        "RUN_INITIAL_SYNC",
    ]
    for var in env_vars:
        monkeypatch.delenv(var, raising=False)
    # Keep a developer's .env out of the tests
    monkeypatch.chdir("/")

    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timer():
    return FakeTimer()


@pytest.fixture
def cache(timer):
    return ResponseCache(default_ttl=300, max_size=100, clock=timer)


@pytest.fixture
def registry(cache):
    return SourceRegistry(cache, default_timeout=1.0)
