"""
Built-in catalog of the Canadian data providers.

Each entry is the default SourceConfig for one provider; API keys are filled
in from settings when the orchestrator is built. Rate limits are
conservative defaults below each provider's published quota.
"""
from typing import Dict, Optional

from datahub.core.models import (
    Priority,
    RateLimit,
    RetryPolicy,
    SourceConfig,
    SyncTarget,
    UpdateFrequency,
)

DEFAULT_RETRY_POLICY = RetryPolicy(max_retries=3, initial_delay=1.0, backoff_multiplier=2.0)


def _hourly(requests: int, concurrent_limit: int = 5) -> RateLimit:
    return RateLimit(requests=requests, window_seconds=3600, concurrent_limit=concurrent_limit)


DEFAULT_SOURCE_CONFIGS: Dict[str, SourceConfig] = {
    "stats-can": SourceConfig(
        source_id="stats-can",
        name="Statistics Canada",
        requires_api_key=True,
        base_url="https://api.statcan.gc.ca",
        priority=Priority.HIGH,
        update_frequency=UpdateFrequency.DAILY,
        rate_limit=_hourly(1000),
        retry_policy=DEFAULT_RETRY_POLICY,
        required=True,
        data_kind="housing",
        sync_targets=[
            SyncTarget(endpoint="v1/housing"),
            SyncTarget(endpoint="v1/economy"),
        ],
    ),
    "cmhc": SourceConfig(
        source_id="cmhc",
        name="Canada Mortgage and Housing Corporation",
        requires_api_key=True,
        base_url="https://api.cmhc-schl.gc.ca",
        priority=Priority.HIGH,
        update_frequency=UpdateFrequency.WEEKLY,
        rate_limit=_hourly(500),
        retry_policy=DEFAULT_RETRY_POLICY,
        required=True,
        data_kind="housing",
        sync_targets=[
            SyncTarget(endpoint="v1/rental"),
            SyncTarget(endpoint="v1/mortgage"),
        ],
    ),
    "bank-of-canada": SourceConfig(
        source_id="bank-of-canada",
        name="Bank of Canada",
        base_url="https://www.bankofcanada.ca/valet",
        priority=Priority.CRITICAL,
        update_frequency=UpdateFrequency.HOURLY,
        rate_limit=_hourly(2000, concurrent_limit=10),
        retry_policy=DEFAULT_RETRY_POLICY,
        required=True,
        sync_targets=[
            SyncTarget(endpoint="observations/V39079/json", params={"recent": "1"}),
            SyncTarget(endpoint="observations/FXUSDCAD/json", params={"recent": "1"}),
        ],
    ),
    "ontario-energy-board": SourceConfig(
        source_id="ontario-energy-board",
        name="Ontario Energy Board",
        requires_api_key=True,
        base_url="https://api.oeb.ca",
        priority=Priority.MEDIUM,
        update_frequency=UpdateFrequency.MONTHLY,
        rate_limit=_hourly(200, concurrent_limit=2),
        retry_policy=DEFAULT_RETRY_POLICY,
        data_kind="utility_rates",
        sync_targets=[SyncTarget(endpoint="v1/rates")],
    ),
    "toronto-open-data": SourceConfig(
        source_id="toronto-open-data",
        name="City of Toronto Open Data",
        base_url="https://ckan0.cf.opendata.inter.prod-toronto.ca",
        priority=Priority.MEDIUM,
        update_frequency=UpdateFrequency.WEEKLY,
        rate_limit=_hourly(1000),
        retry_policy=DEFAULT_RETRY_POLICY,
        sync_targets=[SyncTarget(endpoint="api/3/action/package_list")],
    ),
    "cra": SourceConfig(
        source_id="cra",
        name="Canada Revenue Agency",
        requires_api_key=True,
        base_url="https://api.cra-arc.gc.ca",
        priority=Priority.MEDIUM,
        update_frequency=UpdateFrequency.ANNUALLY,
        rate_limit=_hourly(100, concurrent_limit=2),
        retry_policy=DEFAULT_RETRY_POLICY,
        data_kind="tax_rates",
        sync_targets=[SyncTarget(endpoint="v1/tax-rates")],
    ),
    "esdc": SourceConfig(
        source_id="esdc",
        name="Employment and Social Development Canada",
        requires_api_key=True,
        base_url="https://api.esdc-edsc.gc.ca",
        priority=Priority.LOW,
        update_frequency=UpdateFrequency.MONTHLY,
        rate_limit=_hourly(100, concurrent_limit=2),
        retry_policy=DEFAULT_RETRY_POLICY,
        sync_targets=[SyncTarget(endpoint="v1/benefits")],
    ),
}


def get_source_config(source_id: str, api_key: Optional[str] = None) -> SourceConfig:
    """
    Return the catalog config for a provider, with an API key applied.

    Raises:
        KeyError: If the id is not in the catalog
    """
    config = DEFAULT_SOURCE_CONFIGS[source_id]
    if api_key is not None:
        config = config.model_copy(update={"api_key": api_key})
    return config
