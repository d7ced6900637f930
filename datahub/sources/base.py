"""
Adapter capability every data source implements.

The orchestration layer only ever calls ``fetch`` and ``health_probe``;
everything provider specific (URLs, auth, payload shapes) stays inside the
adapter.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from datahub.core.models import HealthStatus


class SourceAdapter(ABC):
    """
    Base class for all data source adapters.

    Subclasses should:
    - Implement fetch() returning the provider payload for an endpoint
    - Implement health_probe() as a cheap reachability/latency check
    - Override close() if they hold connections
    """

    @abstractmethod
    async def fetch(self, endpoint: str, params: Dict[str, Any]) -> Any:
        """Fetch one endpoint. Raise on any failure."""

    @abstractmethod
    async def health_probe(self) -> HealthStatus:
        """Report current reachability, latency and data quality."""

    async def close(self) -> None:
        return None
