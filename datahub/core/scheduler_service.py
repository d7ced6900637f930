"""
Synchronization scheduler.

Keeps one SyncSchedule per registered source and re-fetches each source's
sync targets when its update frequency says the data is due. Failed
synchronizations are retried with exponential backoff through APScheduler
date jobs; after ``max_retries`` consecutive failures no further retry is
scheduled and the source waits for the next periodic tick.

Per-source state machine:

    idle -> due -> attempting -> idle       (success)
                              -> retrying   (failure, retry scheduled)
                              -> idle       (failure, retries exhausted)
    retrying -> attempting                  (retry job fires)
"""
import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from apscheduler.triggers.date import DateTrigger

from datahub.core.errors import DataHubError, SourceUnhealthyError
from datahub.core.models import (
    PRIORITY_ORDER,
    HealthRecord,
    HealthState,
    Priority,
    SourceConfig,
    SyncResult,
    SyncSchedule,
    SyncState,
    frequency_interval,
)
from datahub.core.source_registry import SourceRegistry

logger = logging.getLogger(__name__)

INITIAL_SYNC_PRIORITIES = (Priority.CRITICAL, Priority.HIGH)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _retry_job_id(source_id: str) -> str:
    return f"sync_retry_{source_id}"


class SyncScheduler:
    """
    Periodic, priority-ordered synchronization of registered sources.

    Args:
        registry: Gateway used for every sync fetch
        job_scheduler: APScheduler scheduler used for retry jobs. Without one,
            pending retries are picked up by ``tick`` once their time passes.
        health_lookup: Returns the latest health record of a source (or None)
        request_timeout: Bound for each sync fetch (registry default if None)
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        registry: SourceRegistry,
        job_scheduler: Any = None,
        health_lookup: Optional[Callable[[str], Optional[HealthRecord]]] = None,
        request_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.job_scheduler = job_scheduler
        self.health_lookup = health_lookup
        self.request_timeout = request_timeout
        self._clock = clock
        self._schedules: Dict[str, SyncSchedule] = {}

    # -------------------------------------------------------------------------
    # Schedules
    # -------------------------------------------------------------------------

    def add_source(self, source_id: str, config: SourceConfig) -> SyncSchedule:
        schedule = SyncSchedule(
            source_id=source_id,
            frequency=config.update_frequency,
            priority=config.priority,
            next_update=self._clock() + frequency_interval(config.update_frequency),
        )
        self._schedules[source_id] = schedule
        logger.debug(
            f"Sync schedule for '{source_id}': {config.update_frequency.value}, "
            f"next update {schedule.next_update.isoformat()}"
        )
        return schedule

    def remove_source(self, source_id: str) -> None:
        self._cancel_retry(source_id)
        self._schedules.pop(source_id, None)

    def _drop_unregistered(self) -> None:
        for source_id in [sid for sid in self._schedules if sid not in self.registry]:
            logger.warning(f"Dropping sync schedule of unregistered source '{source_id}'")
            self.remove_source(source_id)

    def get_schedule(self, source_id: str) -> SyncSchedule:
        self.registry.get_source(source_id)
        return self._schedules[source_id]

    def _sort_key(self, source_id: str):
        return (PRIORITY_ORDER[self._schedules[source_id].priority], source_id)

    def _is_due(self, schedule: SyncSchedule, now: datetime) -> bool:
        if schedule.state == SyncState.ATTEMPTING:
            return False
        if schedule.state == SyncState.RETRYING:
            # A retry job owns the next attempt when there is a job scheduler
            if self.job_scheduler is not None or schedule.next_retry_at is None:
                return False
            return now >= schedule.next_retry_at
        return schedule.is_due(now)

    def get_due_sources(self) -> List[str]:
        """Ids of sources due for synchronization, highest priority first."""
        now = self._clock()
        due = [sid for sid, s in self._schedules.items() if self._is_due(s, now)]
        return sorted(due, key=self._sort_key)

    # -------------------------------------------------------------------------
    # Synchronization
    # -------------------------------------------------------------------------

    async def tick(self) -> List[str]:
        """
        Synchronize every due source, one at a time in priority order.

        Returns:
            Ids of the sources processed in this tick
        """
        self._drop_unregistered()
        due = self.get_due_sources()
        if not due:
            return []

        for source_id in due:
            self._schedules[source_id].state = SyncState.DUE

        logger.info(f"Synchronizing {len(due)} due source(s): {', '.join(due)}")
        processed = []
        for source_id in due:
            if source_id not in self.registry:
                self.remove_source(source_id)
                continue
            await self.sync_source(source_id)
            processed.append(source_id)
        return processed

    async def sync_source(self, source_id: str) -> SyncResult:
        """
        Synchronize one source: refresh each of its sync targets.

        Failures are recorded in the source's schedule and returned, never
        raised (apart from an unknown source id).
        """
        registered = self.registry.get_source(source_id)
        schedule = self._schedules[source_id]
        config = registered.config

        if schedule.state == SyncState.ATTEMPTING:
            logger.debug(f"Synchronization of '{source_id}' already in progress")
            return SyncResult(source_id=source_id, success=False, duration_ms=0.0,
                              error="Synchronization already in progress")

        schedule.state = SyncState.ATTEMPTING
        schedule.last_attempt = self._clock()
        schedule.total_syncs += 1
        start = time.perf_counter()

        try:
            self._check_health(source_id)

            if not config.sync_targets:
                logger.debug(f"Source '{source_id}' has no sync targets")
            for target in config.sync_targets:
                await self.registry.fetch(
                    source_id,
                    target.endpoint,
                    target.params,
                    force_refresh=True,
                    timeout=self.request_timeout,
                )
        except asyncio.CancelledError:
            schedule.state = SyncState.IDLE
            raise
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            return self._record_failure(schedule, config, e, duration_ms)

        duration_ms = (time.perf_counter() - start) * 1000
        self._record_success(schedule, config, duration_ms)
        return SyncResult(source_id=source_id, success=True, duration_ms=duration_ms)

    def _check_health(self, source_id: str) -> None:
        if self.health_lookup is None:
            return
        record = self.health_lookup(source_id)
        if record is not None and record.status == HealthState.UNHEALTHY:
            raise SourceUnhealthyError(source_id, record.errors)

    def _record_success(self, schedule: SyncSchedule, config: SourceConfig, duration_ms: float) -> None:
        now = self._clock()
        schedule.successful_syncs += 1
        schedule.average_sync_time_ms += (
            (duration_ms - schedule.average_sync_time_ms) / schedule.successful_syncs
        )
        schedule.last_update = now
        schedule.next_update = now + frequency_interval(config.update_frequency)
        schedule.consecutive_failures = 0
        schedule.last_error = None
        schedule.retry_delays = []
        schedule.state = SyncState.IDLE
        self._cancel_retry(schedule.source_id)

        logger.info(
            f"Synchronized '{schedule.source_id}' in {duration_ms:.0f}ms, "
            f"next update {schedule.next_update.isoformat()}"
        )

    def _record_failure(
        self,
        schedule: SyncSchedule,
        config: SourceConfig,
        error: Exception,
        duration_ms: float,
    ) -> SyncResult:
        schedule.failed_syncs += 1
        schedule.consecutive_failures += 1
        schedule.last_error = error.message if isinstance(error, DataHubError) else str(error)

        policy = config.retry_policy
        retry_delay: Optional[float] = None
        if config.retry_on_failure and schedule.consecutive_failures < policy.max_retries:
            retry_delay = policy.delay_for(schedule.consecutive_failures)
            self._schedule_retry(schedule, retry_delay)
        else:
            schedule.state = SyncState.IDLE
            schedule.next_retry_at = None

        logger.error(
            f"Synchronization of '{schedule.source_id}' failed "
            f"({schedule.consecutive_failures} consecutive): {schedule.last_error}"
        )
        if retry_delay is None and config.retry_on_failure:
            logger.warning(
                f"Retries exhausted for '{schedule.source_id}'; "
                f"waiting for next update at {schedule.next_update.isoformat()}"
            )

        return SyncResult(
            source_id=schedule.source_id,
            success=False,
            duration_ms=duration_ms,
            error=schedule.last_error,
            retry_scheduled=retry_delay is not None,
            retry_delay=retry_delay,
        )

    # -------------------------------------------------------------------------
    # Retries
    # -------------------------------------------------------------------------

    def _schedule_retry(self, schedule: SyncSchedule, delay: float) -> None:
        run_at = self._clock() + timedelta(seconds=delay)
        schedule.state = SyncState.RETRYING
        schedule.next_retry_at = run_at
        schedule.retry_delays.append(delay)

        if self.job_scheduler is not None:
            self.job_scheduler.add_job(
                self._run_retry,
                trigger=DateTrigger(run_date=run_at),
                id=_retry_job_id(schedule.source_id),
                args=[schedule.source_id],
                name=f"Retry sync {schedule.source_id}",
                misfire_grace_time=None,
                replace_existing=True,
            )

        logger.info(
            f"Retry {schedule.consecutive_failures} for '{schedule.source_id}' "
            f"scheduled in {delay:.1f}s"
        )

    def _cancel_retry(self, source_id: str) -> None:
        schedule = self._schedules.get(source_id)
        if schedule is not None:
            schedule.next_retry_at = None
        if self.job_scheduler is None:
            return
        job_id = _retry_job_id(source_id)
        if self.job_scheduler.get_job(job_id):
            self.job_scheduler.remove_job(job_id)

    async def _run_retry(self, source_id: str) -> None:
        if source_id not in self.registry:
            self.remove_source(source_id)
            return
        schedule = self._schedules.get(source_id)
        if schedule is None or schedule.state != SyncState.RETRYING:
            return
        schedule.next_retry_at = None
        await self.sync_source(source_id)

    # -------------------------------------------------------------------------
    # Batch operations
    # -------------------------------------------------------------------------

    async def initial_sync(self) -> List[SyncResult]:
        """Synchronize critical and high priority sources concurrently."""
        self._drop_unregistered()
        source_ids = sorted(
            (sid for sid, s in self._schedules.items() if s.priority in INITIAL_SYNC_PRIORITIES),
            key=self._sort_key,
        )
        if not source_ids:
            return []

        logger.info(f"Initial synchronization of {len(source_ids)} source(s)")
        results = await asyncio.gather(*(self.sync_source(sid) for sid in source_ids))
        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Initial synchronization complete: {succeeded}/{len(results)} succeeded")
        return list(results)

    async def force_sync(self, source_id: str) -> SyncResult:
        """
        Synchronize one source now, regardless of its schedule.

        Raises:
            UnknownSourceError: If the source is not registered
        """
        self.registry.get_source(source_id)
        logger.info(f"Forced synchronization of '{source_id}'")
        return await self.sync_source(source_id)

    async def force_sync_all(self) -> Dict[str, SyncResult]:
        """Synchronize every source sequentially in priority order."""
        self._drop_unregistered()
        results: Dict[str, SyncResult] = {}
        for source_id in sorted(self._schedules, key=self._sort_key):
            if source_id not in self.registry:
                continue
            results[source_id] = await self.sync_source(source_id)
        return results

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def get_sync_status(self) -> Dict[str, Dict[str, Any]]:
        return {sid: schedule.to_dict() for sid, schedule in self._schedules.items()}

    def get_source_sync_status(self, source_id: str) -> Optional[Dict[str, Any]]:
        schedule = self._schedules.get(source_id)
        return schedule.to_dict() if schedule else None

    def get_sync_statistics(self) -> Dict[str, Any]:
        schedules = list(self._schedules.values())
        total_syncs = sum(s.total_syncs for s in schedules)
        successful = sum(s.successful_syncs for s in schedules)
        timed = [s.average_sync_time_ms for s in schedules if s.successful_syncs]

        return {
            "total_sources": len(schedules),
            "healthy_sources": sum(1 for s in schedules if s.consecutive_failures == 0),
            "sources_with_errors": sum(1 for s in schedules if s.consecutive_failures > 0),
            "retrying_sources": sum(1 for s in schedules if s.state == SyncState.RETRYING),
            "sources_due": len(self.get_due_sources()),
            "total_syncs": total_syncs,
            "successful_syncs": successful,
            "failed_syncs": sum(s.failed_syncs for s in schedules),
            "success_rate": round(successful / total_syncs * 100, 2) if total_syncs else 0.0,
            "average_sync_time_ms": round(sum(timed) / len(timed), 2) if timed else 0.0,
        }

    def get_sources_needing_sync(self) -> List[str]:
        return self.get_due_sources()

    def get_sources_with_errors(self) -> List[str]:
        return sorted(
            (sid for sid, s in self._schedules.items() if s.consecutive_failures > 0),
            key=self._sort_key,
        )

    def reset_error_count(self, source_id: str) -> None:
        schedule = self.get_schedule(source_id)
        self._cancel_retry(source_id)
        schedule.consecutive_failures = 0
        schedule.last_error = None
        schedule.retry_delays = []
        if schedule.state == SyncState.RETRYING:
            schedule.state = SyncState.IDLE
        logger.info(f"Reset error count for '{source_id}'")

    def reset_all_error_counts(self) -> None:
        for source_id in list(self._schedules):
            self.reset_error_count(source_id)
