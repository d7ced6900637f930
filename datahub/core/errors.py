"""
Orchestration error hierarchy.

Every error raised by the registry, the fetch gateway or the scheduler's
public operations derives from DataHubError so callers can branch on the
concrete type (e.g. try a secondary source after a SourceFetchError).
"""

from typing import Any, Dict, Optional


class DataHubError(Exception):
    """
    Base exception for orchestration errors.

    Attributes:
        message: Human-readable error description
        source: Source identifier the error relates to, if any
    """

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.source = source

    def __str__(self) -> str:
        if self.source:
            return f"[{self.source}] {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "source": self.source,
        }


class DuplicateSourceError(DataHubError):
    """A source with the same identifier is already registered."""

    def __init__(self, source: str):
        super().__init__(f"Data source '{source}' is already registered", source=source)


class UnknownSourceError(DataHubError):
    """Fetch or sync requested for an identifier that was never registered."""

    def __init__(self, source: str):
        super().__init__(f"Data source '{source}' not found", source=source)


class SourceFetchError(DataHubError):
    """
    An adapter call failed.

    Raised for adapter exceptions, timeouts and rate-limit wait exhaustion.
    The original exception is kept on ``cause`` (and chained as __cause__).
    """

    def __init__(
        self,
        source: str,
        endpoint: str,
        cause: Optional[BaseException] = None,
        message: Optional[str] = None,
    ):
        if message is None:
            detail = describe_error(cause) if cause is not None else "unknown error"
            message = f"Fetch of '{endpoint}' failed: {detail}"
        super().__init__(message, source=source)
        self.endpoint = endpoint
        self.cause = cause

    @property
    def timed_out(self) -> bool:
        return isinstance(self.cause, TimeoutError)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["endpoint"] = self.endpoint
        data["cause"] = describe_error(self.cause) if self.cause is not None else None
        data["timed_out"] = self.timed_out
        return data


class DataValidationError(SourceFetchError):
    """
    Fetched payload failed validation for a fail-closed data kind.

    The payload is neither cached nor returned.
    """

    def __init__(self, source: str, endpoint: str, kind: str, result: Any):
        errors = "; ".join(getattr(result, "errors", []) or []) or "invalid payload"
        super().__init__(
            source,
            endpoint,
            message=f"Validation of '{kind}' payload from '{endpoint}' failed: {errors}",
        )
        self.kind = kind
        self.result = result

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["kind"] = self.kind
        data["errors"] = list(getattr(self.result, "errors", []) or [])
        return data


class SourceUnhealthyError(DataHubError):
    """Sync attempted while the source's last health probe was unhealthy."""

    def __init__(self, source: str, errors: Optional[list] = None):
        detail = f": {'; '.join(errors)}" if errors else ""
        super().__init__(f"Data source '{source}' is unhealthy{detail}", source=source)
        self.errors = list(errors or [])


class RateLimitExceeded(DataHubError):
    """Timed out waiting for a rate-limit token."""

    def __init__(self, source: str, waited: float):
        super().__init__(
            f"Rate limit exceeded for source '{source}' after waiting {waited:.1f}s",
            source=source,
        )
        self.waited = waited


def describe_error(exc: BaseException) -> str:
    text = str(exc)
    return f"{exc.__class__.__name__}: {text}" if text else exc.__class__.__name__
