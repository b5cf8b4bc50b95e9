"""Shared HTTP plumbing for the transcription and translation endpoints."""

import asyncio
import logging
from typing import Any

import httpx

from speech_relay.cancellation import RequestCancellationToken

logger = logging.getLogger(__name__)


class ApiError(RuntimeError):
    """Request failed after all retry attempts."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ApiClient:
    """Lazily-created httpx client with bounded retry and exponential backoff.

    Retries on transport errors and on any non-success status. No timeout is
    applied unless configured; a hung request is ended by cancellation.
    """

    error_class: type[ApiError] = ApiError

    def __init__(
        self,
        base_url: str = "http://localhost:3000",
        api_key: str | None = None,
        timeout: float | None = None,
        max_attempts: int = 2,
        base_delay: float = 0.25,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize API client.

        Args:
            base_url: Backend base URL
            api_key: Optional bearer token
            timeout: Per-request timeout in seconds (None disables it)
            max_attempts: Total attempts per request, including the first
            base_delay: Backoff before the second attempt; doubles each retry
            http_client: Optional pre-built httpx.AsyncClient (not closed by us)
        """
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        if base_delay < 0:
            raise ValueError("base_delay must be non-negative")

        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._client = http_client
        self._client_owned = http_client is None

    def _get_headers(self) -> dict[str, str]:
        """Get request headers including auth token."""
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
            )
            self._client_owned = True
        return self._client

    async def _post_with_retry(
        self,
        path: str,
        token: RequestCancellationToken | None = None,
        **kwargs: Any,
    ) -> dict:
        """POST and decode a JSON response, retrying failed attempts.

        Args:
            path: Endpoint path relative to base_url
            token: Cancellation token checked before each attempt and after backoff
            **kwargs: Passed to httpx.AsyncClient.post

        Returns:
            Decoded JSON object

        Raises:
            ApiError: After the final failed attempt (as error_class)
            asyncio.CancelledError: If the token is cancelled
        """
        client = await self._get_client()
        kwargs["headers"] = {**self._get_headers(), **kwargs.get("headers", {})}
        last_error: Exception | None = None
        status_code: int | None = None

        for attempt in range(self.max_attempts):
            if token is not None:
                token.raise_if_cancelled()
            try:
                response = await client.post(path, **kwargs)
                status_code = response.status_code
                if response.is_success:
                    body = response.json()
                    return body if isinstance(body, dict) else {}
                last_error = httpx.HTTPStatusError(
                    f"{response.status_code} {response.reason_phrase}",
                    request=response.request,
                    response=response,
                )
            except (httpx.HTTPError, ValueError) as e:
                last_error = e

            logger.warning(
                "POST %s attempt %d/%d failed (%s: %s)",
                path,
                attempt + 1,
                self.max_attempts,
                type(last_error).__name__,
                last_error,
            )
            if attempt < self.max_attempts - 1:
                wait_time = self.base_delay * (2**attempt)
                logger.debug("Waiting %.2fs before retry", wait_time)
                await asyncio.sleep(wait_time)

        if token is not None:
            token.raise_if_cancelled()
        raise self.error_class(
            f"POST {path} failed after {self.max_attempts} attempts: {last_error}",
            status_code=status_code,
        ) from last_error

    async def health_check(self) -> bool:
        """Check if the backend is reachable and healthy."""
        try:
            client = await self._get_client()
            response = await client.get("/api/health", headers=self._get_headers())
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug("Health check failed: %s", e)
            return False

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._client is not None and self._client_owned and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
