"""
Provider HTTP error classification.

Used by the HTTP adapters to turn transport and status failures into typed
errors. The gateway wraps whatever an adapter raises in SourceFetchError, so
these types surface to callers as ``SourceFetchError.cause``.
"""

from typing import Any, Dict, Optional

# Statuses worth retrying at the HTTP layer
RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

# Seconds to wait after a 429 without a Retry-After header
DEFAULT_RETRY_AFTER = 60.0


class APIError(Exception):
    """
    A provider request failed.

    ``retryable`` defaults to the class attribute, so subclasses only need
    to say whether their kind of failure is transient.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        status_code: Optional[int] = None,
        response_data: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.source = source
        self.status_code = status_code
        self.response_data = response_data
        if retryable is not None:
            self.retryable = retryable

    def __str__(self) -> str:
        text = f"[{self.source}] {self.message}" if self.source else self.message
        if self.status_code:
            text += f" (HTTP {self.status_code})"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "source": self.source,
            "status_code": self.status_code,
            "retryable": self.retryable,
        }


class RetryableError(APIError):
    """Transient failure: 5xx, 408, network errors."""

    retryable = True


class RateLimitError(RetryableError):
    """HTTP 429. ``retry_after`` is how long the provider asked us to wait."""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        retry_after: Optional[float] = None,
        response_data: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, source=source, status_code=429, response_data=response_data)
        self.retry_after = DEFAULT_RETRY_AFTER if retry_after is None else retry_after


class FatalError(APIError):
    """Permanent failure (400, 403, malformed body); never retried."""


class AuthenticationError(FatalError):
    """Missing or rejected API key."""

    def __init__(self, message: str = "Authentication failed - check API key", source: Optional[str] = None):
        super().__init__(message, source=source, status_code=401)


class NotFoundError(FatalError):
    """Unknown endpoint or series."""

    def __init__(self, message: str = "Resource not found", source: Optional[str] = None):
        super().__init__(message, source=source, status_code=404)


def classify_http_error(
    status_code: int, response_text: str = "", source: Optional[str] = None
) -> APIError:
    """
    Map an HTTP error status to the matching APIError subclass.

    The response body is truncated into the message for logs.
    """
    body = response_text[:200]

    if status_code == 429:
        return RateLimitError(f"Rate limited: {body}", source=source)
    if status_code == 401:
        return AuthenticationError(f"Authentication failed: {body}", source=source)
    if status_code == 404:
        return NotFoundError(f"Not found: {body}", source=source)
    if status_code in RETRYABLE_STATUSES:
        return RetryableError(f"Server error: {body}", source=source, status_code=status_code)
    if 400 <= status_code < 500:
        return FatalError(f"Client error: {body}", source=source, status_code=status_code)

    # Unlisted 5xx are still worth another attempt
    return APIError(
        f"HTTP error {status_code}: {body}",
        source=source,
        status_code=status_code,
        retryable=status_code >= 500,
    )
