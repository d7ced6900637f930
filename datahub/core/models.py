"""
Data model for the orchestration layer.

Configuration types are immutable pydantic models (validated at
registration); runtime state (schedules, health records, alerts) uses
dataclasses owned by the component that mutates them.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Priority(str, enum.Enum):
    """Scheduling precedence among sources competing for one sync batch."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class UpdateFrequency(str, enum.Enum):
    """Declared cadence at which a source's data should be refreshed."""
    REAL_TIME = "real-time"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    ANNUALLY = "annually"


class HealthState(str, enum.Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    UNHEALTHY = "unhealthy"


class SyncState(str, enum.Enum):
    IDLE = "idle"
    DUE = "due"
    ATTEMPTING = "attempting"
    RETRYING = "retrying"


class AlertLevel(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


# Sort key for sync batches: lower runs first
PRIORITY_ORDER: Dict[Priority, int] = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}

FREQUENCY_INTERVALS: Dict[UpdateFrequency, timedelta] = {
    UpdateFrequency.REAL_TIME: timedelta(minutes=5),
    UpdateFrequency.HOURLY: timedelta(hours=1),
    UpdateFrequency.DAILY: timedelta(hours=24),
    UpdateFrequency.WEEKLY: timedelta(days=7),
    UpdateFrequency.MONTHLY: timedelta(days=30),
    UpdateFrequency.ANNUALLY: timedelta(days=365),
}


def frequency_interval(frequency: UpdateFrequency) -> timedelta:
    """Return the refresh interval for an update frequency."""
    return FREQUENCY_INTERVALS[UpdateFrequency(frequency)]


# =============================================================================
# Configuration
# =============================================================================


class RetryPolicy(BaseModel):
    """Backoff policy for failed synchronizations."""
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0, le=20)
    initial_delay: float = Field(default=1.0, ge=0, description="Seconds before the first retry")
    backoff_multiplier: float = Field(default=2.0, ge=1.0)

    def delay_for(self, failure_count: int) -> float:
        """
        Delay in seconds before the retry that follows the Nth consecutive failure.

        The first retry waits ``initial_delay``; each further one multiplies
        it by ``backoff_multiplier``.
        """
        return self.initial_delay * (self.backoff_multiplier ** max(0, failure_count - 1))


class RateLimit(BaseModel):
    """Requests allowed per window, plus the in-flight cap."""
    model_config = ConfigDict(frozen=True)

    requests: int = Field(default=1000, ge=1)
    window_seconds: float = Field(default=3600.0, gt=0)
    concurrent_limit: int = Field(default=5, ge=1)

    @property
    def requests_per_second(self) -> float:
        return self.requests / self.window_seconds


class SyncTarget(BaseModel):
    """One endpoint refreshed on every synchronization of a source."""
    model_config = ConfigDict(frozen=True)

    endpoint: str
    params: Dict[str, str] = Field(default_factory=dict)


class SourceConfig(BaseModel):
    """Immutable registration-time configuration of one data source."""
    model_config = ConfigDict(frozen=True)

    source_id: str = Field(..., min_length=1)
    name: str = ""
    base_url: str = ""
    api_key: Optional[str] = Field(default=None, repr=False)
    priority: Priority = Priority.MEDIUM
    update_frequency: UpdateFrequency = UpdateFrequency.DAILY
    retry_on_failure: bool = True
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    rate_limit: RateLimit = Field(default_factory=RateLimit)
    required: bool = False
    requires_api_key: bool = False
    sync_targets: List[SyncTarget] = Field(default_factory=list)
    data_kind: Optional[str] = Field(
        default=None,
        description="Validation kind applied to fetched payloads"
    )
    cache_ttl_seconds: Optional[float] = Field(default=None, gt=0)
    data_quality_threshold: float = Field(default=0.8, ge=0, le=1)

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.source_id,
            "name": self.name or self.source_id,
            "priority": self.priority.value,
            "update_frequency": self.update_frequency.value,
            "required": self.required,
            "retry_on_failure": self.retry_on_failure,
            "rate_limit": {
                "requests": self.rate_limit.requests,
                "window_seconds": self.rate_limit.window_seconds,
            },
            "sync_targets": [t.endpoint for t in self.sync_targets],
        }


# =============================================================================
# Health
# =============================================================================


@dataclass
class DataQuality:
    """Quality scores in [0, 1] reported by a health probe."""
    completeness: float = 0.0
    accuracy: float = 0.0
    freshness: float = 0.0
    consistency: float = 0.0
    reliability: float = 0.0

    @property
    def overall(self) -> float:
        return (
            self.completeness + self.accuracy + self.freshness
            + self.consistency + self.reliability
        ) / 5

    def to_dict(self) -> Dict[str, float]:
        return {
            "completeness": self.completeness,
            "accuracy": self.accuracy,
            "freshness": self.freshness,
            "consistency": self.consistency,
            "reliability": self.reliability,
            "overall": round(self.overall, 4),
        }


@dataclass
class HealthStatus:
    """What an adapter's health probe returns."""
    status: HealthState
    response_time_ms: Optional[float] = None
    errors: List[str] = field(default_factory=list)
    data_quality: Optional[DataQuality] = None


@dataclass
class HealthRecord:
    """One entry of a source's bounded health history."""
    status: HealthState
    response_time_ms: Optional[float]
    checked_at: datetime
    errors: List[str] = field(default_factory=list)
    data_quality: Optional[DataQuality] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "response_time_ms": (
                round(self.response_time_ms, 2) if self.response_time_ms is not None else None
            ),
            "checked_at": self.checked_at.isoformat(),
            "errors": list(self.errors),
            "data_quality": self.data_quality.to_dict() if self.data_quality else None,
        }


@dataclass(frozen=True)
class ThresholdPair:
    warning: float
    critical: float


@dataclass(frozen=True)
class AlertThreshold:
    """
    Alert cutoffs for one source.

    Response time is "higher is worse" (milliseconds), error rate is "higher
    is worse" (fraction), data quality and uptime are "lower is worse"
    (fractions).
    """
    response_time_ms: ThresholdPair = ThresholdPair(warning=2000, critical=5000)
    error_rate: ThresholdPair = ThresholdPair(warning=0.05, critical=0.15)
    data_quality: ThresholdPair = ThresholdPair(warning=0.8, critical=0.6)
    uptime: ThresholdPair = ThresholdPair(warning=0.95, critical=0.85)


@dataclass
class Alert:
    """Derived alert report; computed on demand and never stored."""
    source: str
    level: AlertLevel
    metric: str
    message: str
    value: Optional[float] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "level": self.level.value,
            "metric": self.metric,
            "message": self.message,
            "value": self.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# =============================================================================
# Synchronization
# =============================================================================


@dataclass
class SyncSchedule:
    """Per-source synchronization bookkeeping; mutated only by the scheduler."""
    source_id: str
    frequency: UpdateFrequency
    priority: Priority
    next_update: datetime
    state: SyncState = SyncState.IDLE
    last_update: Optional[datetime] = None
    last_attempt: Optional[datetime] = None
    consecutive_failures: int = 0
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    average_sync_time_ms: float = 0.0
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    retry_delays: List[float] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if self.total_syncs == 0:
            return 0.0
        return self.successful_syncs / self.total_syncs * 100

    def is_due(self, now: datetime) -> bool:
        return now >= self.next_update

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.source_id,
            "state": self.state.value,
            "frequency": self.frequency.value,
            "priority": self.priority.value,
            "last_update": self.last_update.isoformat() if self.last_update else None,
            "next_update": self.next_update.isoformat(),
            "last_attempt": self.last_attempt.isoformat() if self.last_attempt else None,
            "consecutive_failures": self.consecutive_failures,
            "total_syncs": self.total_syncs,
            "successful_syncs": self.successful_syncs,
            "failed_syncs": self.failed_syncs,
            "success_rate": round(self.success_rate, 2),
            "average_sync_time_ms": round(self.average_sync_time_ms, 2),
            "last_error": self.last_error,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "retry_delays": list(self.retry_delays),
        }


@dataclass
class SyncResult:
    """Outcome of one synchronization attempt."""
    source_id: str
    success: bool
    duration_ms: float
    error: Optional[str] = None
    retry_scheduled: bool = False
    retry_delay: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "success": self.success,
            "duration_ms": round(self.duration_ms, 2),
            "error": self.error,
            "retry_scheduled": self.retry_scheduled,
            "retry_delay": self.retry_delay,
        }
