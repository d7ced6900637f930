"""
Bank of Canada Valet API adapter.

Official Valet API documentation:
https://www.bankofcanada.ca/valet/docs

Series used here:
- V39079: target for the overnight rate (policy rate)
- FXUSDCAD: USD/CAD daily exchange rate

Observations are returned as:
    {"observations": [{"d": "2024-01-02", "FXUSDCAD": {"v": "1.3316"}}, ...]}
"""
import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Optional

from datahub.core.models import DataQuality, HealthState, HealthStatus, SourceConfig
from datahub.core.source_catalog import DEFAULT_SOURCE_CONFIGS
from datahub.sources.http_adapter import HTTPSourceAdapter

logger = logging.getLogger(__name__)

HEALTH_SERIES = "FXUSDCAD"

# Observations older than this score zero freshness
FRESHNESS_HORIZON_DAYS = 30


def _today() -> date:
    return datetime.now(timezone.utc).date()


def observations_path(series: str) -> str:
    return f"observations/{series}/json"


def latest_observation(data: Any, series: str) -> Optional[Dict[str, Any]]:
    """
    Return ``{"date": date, "value": float}`` for the most recent observation.

    Returns None when the payload has no parsable observation for the series.
    """
    observations = data.get("observations") if isinstance(data, dict) else None
    if not observations:
        return None

    latest = max(observations, key=lambda obs: obs.get("d", ""))
    try:
        return {
            "date": date.fromisoformat(latest["d"]),
            "value": float(latest[series]["v"]),
        }
    except (KeyError, TypeError, ValueError):
        return None


class BankOfCanadaAdapter(HTTPSourceAdapter):
    """
    Valet adapter whose health probe also scores data freshness.
    """

    def __init__(
        self,
        config: Optional[SourceConfig] = None,
        today: Callable[[], date] = _today,
        **client_kwargs,
    ):
        super().__init__(
            config or DEFAULT_SOURCE_CONFIGS["bank-of-canada"],
            health_path=observations_path(HEALTH_SERIES),
            **client_kwargs,
        )
        self._today = today

    def _health_params(self) -> Dict[str, Any]:
        return {"recent": 1}

    async def get_latest(self, series: str) -> Optional[Dict[str, Any]]:
        data = await self.fetch(observations_path(series), {"recent": 1})
        return latest_observation(data, series)

    def _assess(self, data: Any, response_time_ms: float) -> HealthStatus:
        status = super()._assess(data, response_time_ms)

        latest = latest_observation(data, HEALTH_SERIES)
        if latest is None:
            status.status = HealthState.WARNING
            status.errors.append(f"No parsable {HEALTH_SERIES} observation in response")
            status.data_quality = DataQuality(reliability=1.0)
            return status

        age_days = max(0, (self._today() - latest["date"]).days)
        freshness = max(0.0, 1.0 - age_days / FRESHNESS_HORIZON_DAYS)
        status.data_quality = DataQuality(
            completeness=1.0,
            accuracy=1.0,
            freshness=round(freshness, 4),
            consistency=1.0,
            reliability=1.0,
        )
        if freshness == 0.0:
            status.status = HealthState.WARNING
            status.errors.append(f"Latest {HEALTH_SERIES} observation is {age_days} days old")
        return status
