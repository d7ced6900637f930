"""
Data service orchestrator.

Owns one instance of every orchestration component (cache, rate limiter,
registry, scheduler, monitor) plus the APScheduler job scheduler that drives
them, and exposes the query surface used by the API layer.

Usage:
    orchestrator = build_default_orchestrator()
    async with orchestrator:
        rates = await orchestrator.fetch("bank-of-canada", "observations/V39079/json")
"""
import logging
from typing import Any, Dict, List, Mapping, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from datahub.core.cache import ResponseCache
from datahub.core.config import Settings, get_settings
from datahub.core.models import AlertThreshold, SourceConfig, SyncResult
from datahub.core.monitoring import HealthMonitor
from datahub.core.rate_limiter import RateLimiterService
from datahub.core.scheduler_service import SyncScheduler
from datahub.core.source_catalog import DEFAULT_SOURCE_CONFIGS, get_source_config
from datahub.core.source_registry import RegisteredSource, SourceRegistry
from datahub.core.validation import DataValidator, RuleValidator
from datahub.sources.bank_of_canada.client import BankOfCanadaAdapter
from datahub.sources.http_adapter import HTTPSourceAdapter

logger = logging.getLogger(__name__)

CACHE_SWEEP_JOB_ID = "datahub_cache_sweep"
SYNC_TICK_JOB_ID = "datahub_sync_tick"
HEALTH_TICK_JOB_ID = "datahub_health_tick"

# Catalog sources with a dedicated adapter; the rest use HTTPSourceAdapter
ADAPTER_CLASSES = {
    "bank-of-canada": BankOfCanadaAdapter,
}


class DataServiceOrchestrator:
    """
    Lifecycle and query surface of the multi-source data layer.

    Components are created once per orchestrator and passed explicitly to
    each other; nothing is shared through module globals.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        validator: Optional[DataValidator] = None,
        job_scheduler: Any = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings

        self.job_scheduler = job_scheduler if job_scheduler is not None else AsyncIOScheduler()
        self.cache = ResponseCache(
            default_ttl=s.cache_default_ttl_seconds,
            max_size=s.cache_max_size,
            cleanup_interval=s.cache_cleanup_interval_seconds,
        )
        self.rate_limiter = RateLimiterService()
        self.registry = SourceRegistry(
            self.cache,
            rate_limiter=self.rate_limiter,
            validator=validator,
            default_timeout=s.request_timeout_seconds,
            rate_limit_wait=s.rate_limit_wait_seconds,
        )
        self.monitor = HealthMonitor(
            self.registry,
            history_limit=s.health_history_limit,
            error_history_limit=s.error_history_limit,
            alert_window=s.alert_window,
            probe_timeout=s.request_timeout_seconds,
        )
        self.scheduler = SyncScheduler(
            self.registry,
            job_scheduler=self.job_scheduler,
            health_lookup=self.monitor.get_latest_record,
            request_timeout=s.request_timeout_seconds,
        )
        self.monitor.sync_status_lookup = self.scheduler.get_source_sync_status
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def register_source(
        self,
        source_id: str,
        adapter: Any,
        config: SourceConfig,
        alert_threshold: Optional[AlertThreshold] = None,
    ) -> None:
        """
        Register a source with the gateway, scheduler and monitor.

        Raises:
            DuplicateSourceError: If the id is already registered
        """
        registered = self.registry.register(source_id, adapter, config)
        self.scheduler.add_source(source_id, registered.config)
        if alert_threshold is not None:
            self.monitor.set_alert_threshold(source_id, alert_threshold)

    async def unregister_source(self, source_id: str) -> None:
        """
        Remove a source from the gateway, scheduler and monitor, then close
        its adapter. Cached payloads of the source expire on their own.

        Raises:
            UnknownSourceError: If the source is not registered
        """
        registered = self.registry.get_source(source_id)
        self.registry.unregister(source_id)
        self.scheduler.remove_source(source_id)
        self.monitor.remove_source(source_id)
        await self._close_adapter(registered)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """
        Start background work: initial health check, initial sync of
        critical/high sources, then the periodic sweep, sync and health jobs.
        """
        if self._running:
            logger.debug("Orchestrator already running")
            return

        logger.info(f"Starting data service orchestrator with {len(self.registry)} source(s)")
        if not self.job_scheduler.running:
            self.job_scheduler.start()
        self._running = True

        await self.monitor.tick()
        if self.settings.run_initial_sync:
            await self.scheduler.initial_sync()

        interval = self.settings.health_check_interval_seconds
        jobs = [
            (self.cache.sweep, CACHE_SWEEP_JOB_ID, "Cache sweep", self.cache.cleanup_interval),
            (self.scheduler.tick, SYNC_TICK_JOB_ID, "Synchronization tick", interval),
            (self.monitor.tick, HEALTH_TICK_JOB_ID, "Health check", interval),
        ]
        for func, job_id, name, seconds in jobs:
            self.job_scheduler.add_job(
                func,
                trigger=IntervalTrigger(seconds=seconds),
                id=job_id,
                name=name,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )

        logger.info("Data service orchestrator started")

    async def stop(self) -> None:
        """
        Cancel periodic jobs and pending retries, then close adapters.

        In-flight fetches are not aborted; they finish or time out.
        """
        if not self._running:
            return

        logger.info("Stopping data service orchestrator")
        if self.job_scheduler.running:
            self.job_scheduler.shutdown(wait=False)
        self._running = False

        for registered in self.registry.sources():
            await self._close_adapter(registered)

        logger.info("Data service orchestrator stopped")

    async def _close_adapter(self, registered: RegisteredSource) -> None:
        close = getattr(registered.adapter, "close", None)
        if close is None:
            return
        try:
            await close()
        except Exception as e:
            logger.warning(f"Failed to close adapter for '{registered.source_id}': {e}")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # -------------------------------------------------------------------------
    # Query surface
    # -------------------------------------------------------------------------

    async def fetch(
        self,
        source_id: str,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        force_refresh: bool = False,
    ) -> Any:
        return await self.registry.fetch(source_id, endpoint, params, force_refresh=force_refresh)

    def get_sync_status(self) -> Dict[str, Dict[str, Any]]:
        return self.scheduler.get_sync_status()

    def get_sync_statistics(self) -> Dict[str, Any]:
        return self.scheduler.get_sync_statistics()

    def get_all_sources_health_status(self) -> Dict[str, Dict[str, Any]]:
        return self.monitor.get_all_sources_health_status()

    def get_system_health_status(self) -> Dict[str, Any]:
        return self.monitor.get_system_health_status()

    def get_alerts(self, source_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if source_id is not None:
            self.registry.get_source(source_id)
        return [alert.to_dict() for alert in self.monitor.evaluate_alerts(source_id)]

    def get_error_summary(self) -> Dict[str, Any]:
        return self.monitor.get_error_summary()

    def reset_monitoring_data(self, source_id: str) -> None:
        self.registry.get_source(source_id)
        self.monitor.reset_monitoring_data(source_id)

    async def force_sync(self, source_id: str) -> SyncResult:
        return await self.scheduler.force_sync(source_id)

    async def force_sync_all(self) -> Dict[str, SyncResult]:
        return await self.scheduler.force_sync_all()

    async def get_cache_info(self) -> Dict[str, Any]:
        return {
            "stats": await self.cache.get_stats(),
            "keys": self.cache.keys(),
        }

    async def clear_cache(self) -> int:
        cleared = await self.cache.clear()
        logger.info(f"Cleared {cleared} cache entries")
        return cleared

    def get_data_sources(self) -> List[Dict[str, Any]]:
        return self.registry.get_data_sources()

    def get_performance_metrics(self, source_id: Optional[str] = None) -> Dict[str, Any]:
        if source_id is not None:
            return self.registry.get_performance_metrics(source_id)
        return self.registry.get_all_performance_metrics()

    def get_configuration_status(self) -> Dict[str, Any]:
        """Report registered, required and credential-less sources."""
        registered = self.registry.source_ids()
        configs = [self.registry.get_config(sid) for sid in registered]
        required_catalog = [sid for sid, c in DEFAULT_SOURCE_CONFIGS.items() if c.required]

        return {
            "total_sources": len(registered),
            "registered_sources": registered,
            "required_sources": [c.source_id for c in configs if c.required],
            "missing_required_sources": [sid for sid in required_catalog if sid not in self.registry],
            "missing_credentials": [
                c.source_id for c in configs if c.requires_api_key and not c.api_key
            ],
        }


def build_default_orchestrator(
    settings: Optional[Settings] = None,
    **adapter_kwargs,
) -> DataServiceOrchestrator:
    """
    Build an orchestrator with the enabled catalog sources registered.

    Args:
        settings: Settings to use (global settings if None)
        **adapter_kwargs: Extra BaseAPIClient arguments for every adapter
            (e.g. ``transport`` in tests)
    """
    settings = settings or get_settings()
    orchestrator = DataServiceOrchestrator(settings, validator=RuleValidator())
    api_keys = settings.get_api_keys()

    enabled = settings.get_enabled_sources() or list(DEFAULT_SOURCE_CONFIGS)
    for source_id in enabled:
        if source_id not in DEFAULT_SOURCE_CONFIGS:
            logger.warning(f"Ignoring unknown source '{source_id}' in enabled_sources")
            continue

        config = get_source_config(source_id, api_keys.get(source_id))
        if config.requires_api_key and not config.api_key:
            logger.warning(f"No API key configured for '{source_id}'; requests may be rejected")

        adapter_class = ADAPTER_CLASSES.get(source_id, HTTPSourceAdapter)
        adapter = adapter_class(
            config,
            timeout=settings.request_timeout_seconds,
            **adapter_kwargs,
        )
        orchestrator.register_source(source_id, adapter, config)

    return orchestrator
