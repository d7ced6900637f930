"""
Generic REST adapter.

Serves any provider whose endpoints are plain JSON GETs under a base URL,
which covers most of the catalog. Providers with a richer health signal
subclass it (see bank_of_canada).
"""
import logging
import time
from typing import Any, Dict, Optional

import httpx

from datahub.core.api_errors import APIError
from datahub.core.http_client import BaseAPIClient
from datahub.core.models import HealthState, HealthStatus, SourceConfig
from datahub.sources.base import SourceAdapter

logger = logging.getLogger(__name__)

# Probes slower than this report "warning"
SLOW_PROBE_MS = 2000.0


class HTTPSourceAdapter(BaseAPIClient, SourceAdapter):
    """
    Adapter for a JSON-over-HTTP provider described by a SourceConfig.

    Args:
        config: Source configuration (base URL, API key, id)
        health_path: Path probed by health_probe (first sync target if None)
        slow_probe_ms: Probe latency above which the source is "warning"
        **client_kwargs: Passed to BaseAPIClient (timeouts, transport, ...)
    """

    def __init__(
        self,
        config: SourceConfig,
        health_path: Optional[str] = None,
        slow_probe_ms: float = SLOW_PROBE_MS,
        **client_kwargs,
    ):
        client_kwargs.setdefault("max_concurrency", config.rate_limit.concurrent_limit)
        super().__init__(
            api_key=config.api_key,
            base_url=config.base_url,
            source_name=config.source_id,
            **client_kwargs,
        )
        self.config = config
        if health_path is None:
            health_path = config.sync_targets[0].endpoint if config.sync_targets else ""
        self.health_path = health_path
        self.slow_probe_ms = slow_probe_ms

    def _build_headers(self) -> Dict[str, str]:
        headers = super()._build_headers()
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def fetch(self, endpoint: str, params: Dict[str, Any]) -> Any:
        return await self.get(endpoint, params=params)

    def _health_params(self) -> Dict[str, Any]:
        return {}

    def _assess(self, data: Any, response_time_ms: float) -> HealthStatus:
        """Turn a successful probe response into a HealthStatus."""
        if response_time_ms > self.slow_probe_ms:
            return HealthStatus(
                status=HealthState.WARNING,
                response_time_ms=response_time_ms,
                errors=[f"Slow response: {response_time_ms:.0f}ms"],
            )
        return HealthStatus(status=HealthState.HEALTHY, response_time_ms=response_time_ms)

    async def health_probe(self) -> HealthStatus:
        start = time.perf_counter()
        try:
            data = await self.get(self.health_path, params=self._health_params(),
                                  resource_id=f"health:{self.health_path}")
        except (APIError, httpx.HTTPError) as e:
            logger.debug(f"[{self.source_name}] Health probe failed: {e}")
            return HealthStatus(status=HealthState.UNHEALTHY, errors=[str(e)])

        return self._assess(data, (time.perf_counter() - start) * 1000)
