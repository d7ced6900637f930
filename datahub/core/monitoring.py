"""
Health monitoring and alerting.

Probes every registered source on a timer, keeps a bounded health history
and error log per source, and derives alerts and system-level health from
the most recent records.
"""

import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from datahub.core.errors import describe_error
from datahub.core.models import (
    Alert,
    AlertLevel,
    AlertThreshold,
    HealthRecord,
    HealthState,
    HealthStatus,
)
from datahub.core.source_registry import SourceRegistry

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 100
DEFAULT_ERROR_HISTORY_LIMIT = 50
DEFAULT_ALERT_WINDOW = 10
RECENT_ERRORS = 5

# Latency swing (relative to the previous probe) worth a log line
RESPONSE_TIME_CHANGE_RATIO = 0.5

_SEVERITY = {HealthState.HEALTHY: 0, HealthState.WARNING: 1, HealthState.UNHEALTHY: 2}

# Probe states some providers report that map onto ours
PROBE_STATE_ALIASES = {"degraded": HealthState.WARNING}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def probe_state(value: Any) -> HealthState:
    """
    Normalize the status reported by a health probe.

    Raises:
        ValueError: If the status is not a known health state
    """
    if isinstance(value, HealthState):
        return value
    name = str(value).strip().lower()
    if name in PROBE_STATE_ALIASES:
        return PROBE_STATE_ALIASES[name]
    return HealthState(name)


class HealthMonitor:
    """
    Tracks per-source health and produces alerts.

    Usage:
        monitor = HealthMonitor(registry)
        await monitor.tick()
        alerts = monitor.evaluate_alerts()
    """

    def __init__(
        self,
        registry: SourceRegistry,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        error_history_limit: int = DEFAULT_ERROR_HISTORY_LIMIT,
        alert_window: int = DEFAULT_ALERT_WINDOW,
        probe_timeout: float = 30.0,
        sync_status_lookup: Optional[Callable[[str], Optional[Dict[str, Any]]]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.history_limit = history_limit
        self.error_history_limit = error_history_limit
        self.alert_window = alert_window
        self.probe_timeout = probe_timeout
        self.sync_status_lookup = sync_status_lookup
        self._clock = clock

        self._history: Dict[str, Deque[HealthRecord]] = {}
        self._errors: Dict[str, Deque[Dict[str, Any]]] = {}
        self._thresholds: Dict[str, AlertThreshold] = {}

    # -------------------------------------------------------------------------
    # Probing
    # -------------------------------------------------------------------------

    async def check_source_health(self, source_id: str) -> HealthRecord:
        """
        Probe one source and record the result.

        A probe that raises, times out or returns something other than a
        usable HealthStatus is recorded as unhealthy; this method does not
        raise for probe failures.

        Raises:
            UnknownSourceError: If the source is not registered
        """
        registered = self.registry.get_source(source_id)
        start = time.perf_counter()

        try:
            status: HealthStatus = await asyncio.wait_for(
                registered.adapter.health_probe(), self.probe_timeout
            )
            record = self._record_from_probe(status, (time.perf_counter() - start) * 1000)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                message = f"Health probe timed out after {self.probe_timeout:.1f}s"
            else:
                message = f"Health probe failed: {describe_error(e)}"
            record = HealthRecord(
                status=HealthState.UNHEALTHY,
                response_time_ms=None,
                checked_at=self._clock(),
                errors=[message],
            )
            self._log_error(source_id, message, type(e).__name__, "critical")
        else:
            if record.status != HealthState.HEALTHY:
                for message in record.errors:
                    self._log_error(source_id, message, "probe", record.status.value)

        previous = self.get_latest_record(source_id)
        history = self._history.setdefault(source_id, deque(maxlen=self.history_limit))
        history.append(record)
        self._log_transition(source_id, previous, record)
        return record

    def _record_from_probe(self, status: HealthStatus, elapsed_ms: float) -> HealthRecord:
        response_time_ms = status.response_time_ms
        return HealthRecord(
            status=probe_state(status.status),
            response_time_ms=float(response_time_ms) if response_time_ms is not None else elapsed_ms,
            checked_at=self._clock(),
            errors=[str(e) for e in status.errors or ()],
            data_quality=status.data_quality,
        )

    def remove_source(self, source_id: str) -> None:
        """Forget everything recorded for a source that was unregistered."""
        self._history.pop(source_id, None)
        self._errors.pop(source_id, None)
        self._thresholds.pop(source_id, None)

    def _log_error(self, source_id: str, message: str, error_type: str, severity: str) -> None:
        errors = self._errors.setdefault(source_id, deque(maxlen=self.error_history_limit))
        errors.append({
            "timestamp": self._clock().isoformat(),
            "message": message,
            "type": error_type,
            "severity": severity,
        })

    def _log_transition(
        self, source_id: str, previous: Optional[HealthRecord], current: HealthRecord
    ) -> None:
        if previous is None:
            logger.debug(f"First health record for '{source_id}': {current.status.value}")
            return

        if previous.status != current.status:
            message = (
                f"Health status changed for '{source_id}': "
                f"{previous.status.value} -> {current.status.value}"
            )
            if _SEVERITY[current.status] > _SEVERITY[previous.status]:
                logger.warning(message)
            else:
                logger.info(message)

        if previous.response_time_ms and current.response_time_ms is not None:
            change = abs(current.response_time_ms - previous.response_time_ms) / previous.response_time_ms
            if change > RESPONSE_TIME_CHANGE_RATIO:
                logger.info(
                    f"Significant response time change for '{source_id}': "
                    f"{previous.response_time_ms:.0f}ms -> {current.response_time_ms:.0f}ms "
                    f"({change * 100:.1f}%)"
                )

    async def tick(self) -> Dict[str, HealthRecord]:
        """Probe every registered source in turn, then log current alerts."""
        records: Dict[str, HealthRecord] = {}
        for source_id in self.registry.source_ids():
            # Unregistered while an earlier probe was awaited
            if source_id not in self.registry:
                continue
            records[source_id] = await self.check_source_health(source_id)

        for alert in self.evaluate_alerts():
            level = logging.ERROR if alert.level == AlertLevel.CRITICAL else logging.WARNING
            logger.log(level, f"[{alert.level.value.upper()}] {alert.source}: {alert.message}")
        return records

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    def set_alert_threshold(self, source_id: str, threshold: AlertThreshold) -> None:
        self._thresholds[source_id] = threshold

    def get_alert_threshold(self, source_id: str) -> AlertThreshold:
        return self._thresholds.get(source_id, AlertThreshold())

    def _window(self, source_id: str) -> List[HealthRecord]:
        history = self._history.get(source_id)
        if not history:
            return []
        return list(history)[-self.alert_window:]

    def evaluate_alerts(self, source_id: Optional[str] = None) -> List[Alert]:
        """
        Derive alerts from the most recent ``alert_window`` records.

        Args:
            source_id: Restrict to one source (all sources if None)
        """
        source_ids = [source_id] if source_id else list(self._history.keys())
        alerts: List[Alert] = []
        for sid in source_ids:
            alerts.extend(self._evaluate_source(sid))
        return alerts

    def _evaluate_source(self, source_id: str) -> List[Alert]:
        window = self._window(source_id)
        if not window:
            return []

        thresholds = self.get_alert_threshold(source_id)
        latest = window[-1]
        now = self._clock()
        alerts: List[Alert] = []

        def emit(level: AlertLevel, metric: str, message: str, value: float) -> None:
            alerts.append(Alert(source_id, level, metric, message, value, now))

        rt = latest.response_time_ms
        if rt is not None:
            if rt > thresholds.response_time_ms.critical:
                emit(AlertLevel.CRITICAL, "response_time", f"Response time critical: {rt:.0f}ms", rt)
            elif rt > thresholds.response_time_ms.warning:
                emit(AlertLevel.WARNING, "response_time", f"Response time high: {rt:.0f}ms", rt)

        error_rate = sum(1 for r in window if r.status == HealthState.UNHEALTHY) / len(window)
        if error_rate > thresholds.error_rate.critical:
            emit(AlertLevel.CRITICAL, "error_rate", f"Error rate critical: {error_rate * 100:.1f}%", error_rate)
        elif error_rate > thresholds.error_rate.warning:
            emit(AlertLevel.WARNING, "error_rate", f"Error rate high: {error_rate * 100:.1f}%", error_rate)

        uptime = 1.0 - error_rate
        if uptime < thresholds.uptime.critical:
            emit(AlertLevel.CRITICAL, "uptime", f"Uptime critical: {uptime * 100:.1f}%", uptime)
        elif uptime < thresholds.uptime.warning:
            emit(AlertLevel.WARNING, "uptime", f"Uptime low: {uptime * 100:.1f}%", uptime)

        if latest.data_quality is not None:
            quality = latest.data_quality.overall
            if quality < thresholds.data_quality.critical:
                emit(AlertLevel.CRITICAL, "data_quality", f"Data quality critical: {quality:.2f}", quality)
            elif quality < thresholds.data_quality.warning:
                emit(AlertLevel.WARNING, "data_quality", f"Data quality low: {quality:.2f}", quality)

        return alerts

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def get_latest_record(self, source_id: str) -> Optional[HealthRecord]:
        history = self._history.get(source_id)
        return history[-1] if history else None

    def get_history(self, source_id: str) -> List[HealthRecord]:
        return list(self._history.get(source_id, ()))

    def get_errors(self, source_id: str) -> List[Dict[str, Any]]:
        return list(self._errors.get(source_id, ()))

    def get_source_uptime(self, source_id: str) -> Optional[float]:
        """Percentage of non-unhealthy probes in the alert window (None without data)."""
        window = self._window(source_id)
        if not window:
            return None
        up = sum(1 for r in window if r.status != HealthState.UNHEALTHY)
        return up / len(window) * 100

    def _average_response_time(self, records: List[HealthRecord]) -> Optional[float]:
        times = [r.response_time_ms for r in records if r.response_time_ms is not None]
        if not times:
            return None
        return sum(times) / len(times)

    def get_source_health_status(self, source_id: str) -> Optional[Dict[str, Any]]:
        """Detailed status of one source, or None before its first probe."""
        self.registry.get_source(source_id)
        latest = self.get_latest_record(source_id)
        if latest is None:
            return None

        window = self._window(source_id)
        errors = self.get_errors(source_id)
        sync = self.sync_status_lookup(source_id) if self.sync_status_lookup else None
        average = self._average_response_time(window)
        uptime = self.get_source_uptime(source_id)

        return {
            "name": source_id,
            "current_status": latest.status.value,
            "last_checked": latest.checked_at.isoformat(),
            "response_time_ms": latest.response_time_ms,
            "average_response_time_ms": round(average, 2) if average is not None else None,
            "uptime": round(uptime, 2) if uptime is not None else None,
            "error_count": len(errors),
            "recent_errors": errors[-RECENT_ERRORS:],
            "data_quality": latest.data_quality.to_dict() if latest.data_quality else None,
            "last_sync": sync.get("last_update") if sync else None,
            "next_sync": sync.get("next_update") if sync else None,
            "consecutive_failures": sync.get("consecutive_failures", 0) if sync else 0,
        }

    def get_all_sources_health_status(self) -> Dict[str, Dict[str, Any]]:
        statuses = {}
        for source_id in self.registry.source_ids():
            status = self.get_source_health_status(source_id)
            if status is not None:
                statuses[source_id] = status
        return statuses

    def get_system_health_status(self) -> Dict[str, Any]:
        """Aggregate health across every registered source."""
        source_ids = self.registry.source_ids()
        counts = {HealthState.HEALTHY: 0, HealthState.WARNING: 0, HealthState.UNHEALTHY: 0}
        unknown = 0
        response_times: List[float] = []
        uptimes: List[float] = []
        total_errors = 0

        for source_id in source_ids:
            total_errors += len(self._errors.get(source_id, ()))
            latest = self.get_latest_record(source_id)
            if latest is None:
                unknown += 1
                continue
            counts[latest.status] += 1
            if latest.response_time_ms is not None:
                response_times.append(latest.response_time_ms)
            uptimes.append(self.get_source_uptime(source_id))

        if counts[HealthState.UNHEALTHY]:
            overall = "critical"
        elif counts[HealthState.WARNING]:
            overall = "warning"
        elif counts[HealthState.HEALTHY]:
            overall = "healthy"
        else:
            overall = "unknown"

        return {
            "overall_status": overall,
            "total_sources": len(source_ids),
            "healthy_sources": counts[HealthState.HEALTHY],
            "warning_sources": counts[HealthState.WARNING],
            "critical_sources": counts[HealthState.UNHEALTHY],
            "unknown_sources": unknown,
            "average_response_time_ms": (
                round(sum(response_times) / len(response_times), 2) if response_times else 0.0
            ),
            "total_errors": total_errors,
            "uptime": round(sum(uptimes) / len(uptimes), 2) if uptimes else 0.0,
            "last_updated": self._clock().isoformat(),
        }

    def get_error_summary(self) -> Dict[str, Any]:
        error_types: Dict[str, int] = {}
        total = 0
        critical = 0
        with_errors = 0

        for errors in self._errors.values():
            if not errors:
                continue
            with_errors += 1
            total += len(errors)
            for error in errors:
                error_types[error["type"]] = error_types.get(error["type"], 0) + 1
                if error["severity"] == "critical":
                    critical += 1

        return {
            "total_errors": total,
            "critical_errors": critical,
            "sources_with_errors": with_errors,
            "total_sources": len(self.registry),
            "error_types": error_types,
            "last_updated": self._clock().isoformat(),
        }

    def reset_monitoring_data(self, source_id: str) -> None:
        """Drop a source's health history and error log (its sync schedule is kept)."""
        self._history.pop(source_id, None)
        self._errors.pop(source_id, None)
        logger.info(f"Reset monitoring data for '{source_id}'")

    def reset_all_monitoring_data(self) -> None:
        self._history.clear()
        self._errors.clear()
        logger.info("Reset all monitoring data")
