"""
Shared HTTP plumbing for provider adapters.

One pooled ``httpx.AsyncClient`` per adapter, a semaphore bounding requests
in flight, and a small retry loop for transient failures inside a single
fetch. Per-source quotas are enforced one level up by the registry's rate
limiter, and sync-level retries by the scheduler.
"""
import asyncio
import logging
import random
from typing import Any, Dict, Optional

import httpx

from datahub.core.api_errors import (
    APIError,
    FatalError,
    RateLimitError,
    RetryableError,
    classify_http_error,
)

logger = logging.getLogger(__name__)


class BaseAPIClient:
    """
    GET-only JSON client with retries.

    Subclasses customise a provider through three hooks:
    ``_build_headers`` (auth headers), ``_add_auth_to_params`` (auth query
    parameters) and ``_check_api_error`` (errors reported in a 200 body).
    """

    SOURCE_NAME: str = "unknown"
    BASE_URL: str = ""

    DEFAULT_MAX_CONCURRENCY = 2
    DEFAULT_TIMEOUT = 30.0
    DEFAULT_CONNECT_TIMEOUT = 10.0
    DEFAULT_MAX_RETRIES = 3
    DEFAULT_BACKOFF_FACTOR = 2.0
    MAX_BACKOFF_SECONDS = 60.0
    JITTER = 0.25

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        source_name: Optional[str] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        timeout: float = DEFAULT_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            api_key: Provider key, if the provider needs one
            base_url: Root URL that request paths are joined to
            source_name: Source id used in logs and errors
            max_concurrency: Requests in flight at once
            max_retries: Attempts per request (at least one)
            backoff_factor: Growth of the delay between attempts
            timeout: Read/write timeout in seconds
            connect_timeout: Connect timeout in seconds
            transport: Custom httpx transport (``httpx.MockTransport`` in tests)
        """
        self.api_key = api_key
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.source_name = source_name or self.SOURCE_NAME
        self.max_concurrency = max_concurrency
        self.max_retries = max(1, max_retries)
        self.backoff_factor = backoff_factor
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self._transport = transport

        self.semaphore = asyncio.Semaphore(max_concurrency)
        self._client: Optional[httpx.AsyncClient] = None

        logger.info(
            f"Initialized {self.source_name} client "
            f"(key={'yes' if api_key else 'no'}, concurrency={max_concurrency}, "
            f"attempts={self.max_retries})"
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout),
                limits=httpx.Limits(
                    max_connections=self.max_concurrency * 2,
                    max_keepalive_connections=self.max_concurrency,
                ),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            await client.aclose()
            logger.debug(f"{self.source_name} client closed")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # -------------------------------------------------------------------------
    # Provider hooks
    # -------------------------------------------------------------------------

    def _build_headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "User-Agent": f"datahub/{self.source_name}",
        }

    def _add_auth_to_params(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return params

    def _check_api_error(self, data: Any, resource_id: str) -> Optional[APIError]:
        """Return an error for ``{"error": ...}`` bodies, else None."""
        if not isinstance(data, dict) or not data.get("error"):
            return None
        detail = data["error"]
        if isinstance(detail, dict):
            detail = detail.get("message", detail)
        return FatalError(f"{resource_id}: {detail}", source=self.source_name, response_data=data)

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def build_url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _backoff_delay(self, attempt: int) -> float:
        delay = min(self.backoff_factor ** attempt, self.MAX_BACKOFF_SECONDS)
        return max(0.1, delay * (1 + self.JITTER * random.uniform(-1, 1)))

    async def _backoff(self, attempt: int) -> None:
        delay = self._backoff_delay(attempt)
        logger.debug(f"[{self.source_name}] Retrying in {delay:.2f}s")
        await asyncio.sleep(delay)

    async def _send(
        self,
        client: httpx.AsyncClient,
        url: str,
        params: Dict[str, Any],
        headers: Dict[str, str],
        resource_id: str,
    ) -> Any:
        """One attempt. Returns the decoded body or raises an APIError."""
        try:
            response = await client.get(url, params=params, headers=headers)
        except httpx.RequestError as e:
            raise RetryableError(f"Request failed: {e}", source=self.source_name) from e

        if response.is_error:
            error = classify_http_error(response.status_code, response.text, self.source_name)
            if isinstance(error, RateLimitError):
                retry_after = response.headers.get("Retry-After")
                if retry_after and retry_after.replace(".", "", 1).isdigit():
                    error.retry_after = float(retry_after)
            raise error

        try:
            data = response.json()
        except ValueError as e:
            raise FatalError(f"Invalid JSON from {resource_id}: {e}", source=self.source_name) from e

        api_error = self._check_api_error(data, resource_id)
        if api_error is not None:
            raise api_error
        return data

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        resource_id: Optional[str] = None,
    ) -> Any:
        """
        GET a JSON resource, retrying transient failures.

        Raises:
            APIError: The last error once attempts run out, or the first
                non-retryable one
        """
        url = self.build_url(path)
        resource_id = resource_id or path
        params = self._add_auth_to_params(dict(params or {}))
        headers = self._build_headers()

        async with self.semaphore:
            client = await self._get_client()
            for attempt in range(self.max_retries):
                try:
                    data = await self._send(client, url, params, headers, resource_id)
                except APIError as error:
                    if not error.retryable or attempt == self.max_retries - 1:
                        raise
                    logger.warning(
                        f"[{self.source_name}] {resource_id} attempt "
                        f"{attempt + 1}/{self.max_retries} failed: {error}"
                    )
                    if isinstance(error, RateLimitError):
                        await asyncio.sleep(error.retry_after)
                    else:
                        await self._backoff(attempt)
                    continue

                logger.debug(f"[{self.source_name}] Fetched {resource_id}")
                return data

        raise APIError(f"No attempt made for {resource_id}", source=self.source_name)
