"""
Settings for the data hub, read from the environment and an optional .env file.

Key principles:
- APP STARTUP does NOT require any provider API key
- Sources whose key is missing still register; their probes report the problem
- All timeouts, intervals and history limits are configurable
- Every optional setting has a working default
"""
from typing import Dict, List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """Data hub settings.

    Field names map to upper-case environment variables (e.g. CMHC_API_KEY).
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Provider API keys (all OPTIONAL for startup)
    statscan_api_key: Optional[str] = Field(default=None, description="Statistics Canada API key")
    cmhc_api_key: Optional[str] = Field(default=None, description="CMHC API key")
    bank_of_canada_api_key: Optional[str] = Field(
        default=None,
        description="Bank of Canada Valet key - the public Valet API does not need one"
    )
    oeb_api_key: Optional[str] = Field(default=None, description="Ontario Energy Board API key")
    toronto_open_data_api_key: Optional[str] = Field(default=None, description="Toronto Open Data API key")
    cra_api_key: Optional[str] = Field(default=None, description="Canada Revenue Agency API key")
    esdc_api_key: Optional[str] = Field(default=None, description="ESDC API key")

    # Sources to register at startup (comma separated catalog ids, empty = all)
    enabled_sources: str = Field(
        default="",
        description="Comma separated source ids to register; empty registers the full catalog"
    )

    # Adapter calls
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Upper bound for any single adapter call (fetch or health probe)"
    )
    rate_limit_wait_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Maximum time a fetch waits for a rate-limit token"
    )

    # Response cache
    cache_default_ttl_seconds: float = Field(default=300.0, gt=0, description="Default cache TTL")
    cache_max_size: int = Field(default=1000, ge=1, description="Maximum number of cache entries")
    cache_cleanup_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Period of the expired-entry sweep"
    )

    # Scheduler / monitor
    health_check_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Period of the health check and of the synchronization tick"
    )
    health_history_limit: int = Field(default=100, ge=1, le=10000)
    error_history_limit: int = Field(default=50, ge=1, le=10000)
    alert_window: int = Field(
        default=10,
        ge=1,
        description="Number of recent health records evaluated for alerts"
    )
    run_initial_sync: bool = Field(
        default=True,
        description="Synchronize critical and high priority sources on startup"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Root logging level"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize to upper case and reject names logging does not know."""
        level = v.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}, got {v!r}")
        return level

    def get_enabled_sources(self) -> List[str]:
        """
        Parse ``enabled_sources`` into a list of source ids.

        Returns:
            List of ids, empty when every catalog source is enabled
        """
        return [s.strip() for s in self.enabled_sources.split(",") if s.strip()]

    def get_api_keys(self) -> Dict[str, Optional[str]]:
        """
        Map catalog source ids to their configured API keys.

        Returns:
            Dict of source id -> key (None when not configured)
        """
        return {
            "stats-can": self.statscan_api_key,
            "cmhc": self.cmhc_api_key,
            "bank-of-canada": self.bank_of_canada_api_key,
            "ontario-energy-board": self.oeb_api_key,
            "toronto-open-data": self.toronto_open_data_api_key,
            "cra": self.cra_api_key,
            "esdc": self.esdc_api_key,
        }


# Process-wide settings, loaded on first use
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide Settings, loading env/.env on first call."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Forget the loaded Settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
