"""Shared HTTP transport for the evidence sources.

ARCHITECTURE:
    Extractor → SourceHTTPClient → throttle → httpx.AsyncClient → upstream API

Every source talks to its upstream through one SourceHTTPClient.

Key Design:
- Async HTTP with connection pooling (httpx.AsyncClient)
- Per-source minimum spacing between requests
- Transient failures (transport errors, 5xx) retried with exponential backoff (tenacity)
- HTTP 429 waits out Retry-After (or a longer source backoff), then surfaces as RateLimitedError
- 404 is an empty result; any other 4xx is SourceUnavailableError
- Context manager for session cleanup
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    wait_exponential,
)

from ddiminer.config import settings
from ddiminer.errors import RateLimitedError, SourceUnavailableError

logger = logging.getLogger(__name__)


class _TransientResponse(Exception):
    """Retryable upstream response (5xx)."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class _ThrottledResponse(Exception):
    """Upstream answered HTTP 429."""

    def __init__(self, retry_after: float | None) -> None:
        super().__init__("HTTP 429")
        self.retry_after = retry_after


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


class SourceHTTPClient:
    """Throttled, retrying HTTP client for one upstream source."""

    def __init__(
        self,
        source_type: str,
        min_interval: float = 0.0,
        timeout: float | None = None,
        max_attempts: int | None = None,
        backoff_min: float | None = None,
        backoff_max: float | None = None,
        rate_limit_backoff: float | None = None,
        rate_limit_attempts: int | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            source_type: Label used in errors and logs
            min_interval: Minimum seconds between consecutive requests
            timeout: Request timeout in seconds
            max_attempts: Attempt cap for transient failures
            backoff_min: Lower bound of the exponential backoff
            backoff_max: Upper bound of the exponential backoff
            rate_limit_backoff: Wait after HTTP 429 when no Retry-After is given
            rate_limit_attempts: Attempts allowed while the upstream answers 429
            headers: Extra default headers
            transport: Custom httpx transport (tests use httpx.MockTransport)
            sleep: Awaitable sleep used for backoff and throttling
        """
        self.source_type = source_type
        self.min_interval = min_interval
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self.max_attempts = max_attempts if max_attempts is not None else settings.max_attempts
        self.rate_limit_backoff = (
            rate_limit_backoff if rate_limit_backoff is not None else settings.rate_limit_backoff
        )
        self.rate_limit_attempts = (
            rate_limit_attempts if rate_limit_attempts is not None else settings.rate_limit_attempts
        )
        self._backoff = wait_exponential(
            multiplier=1,
            min=backoff_min if backoff_min is not None else settings.backoff_min,
            max=backoff_max if backoff_max is not None else settings.backoff_max,
        )
        self.headers = {"User-Agent": settings.user_agent, **(headers or {})}
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()
        self._next_allowed = 0.0

    async def __aenter__(self) -> "SourceHTTPClient":
        """Async context manager entry."""
        self._get_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.headers,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _throttle(self) -> None:
        """Space requests at least min_interval seconds apart."""
        if self.min_interval <= 0:
            return
        async with self._lock:
            now = time.monotonic()
            delay = self._next_allowed - now
            if delay > 0:
                await self._sleep(delay)
            self._next_allowed = max(now, self._next_allowed) + self.min_interval

    async def _send(self, url: str, params: dict[str, Any] | None) -> httpx.Response:
        await self._throttle()
        response = await self._get_client().get(url, params=params)
        if response.status_code == 429:
            raise _ThrottledResponse(parse_retry_after(response.headers.get("Retry-After")))
        if response.status_code >= 500:
            raise _TransientResponse(response.status_code)
        return response

    async def _request(self, url: str, params: dict[str, Any] | None = None) -> httpx.Response | None:
        """GET with retries.

        Returns:
            The response, or None when the upstream answered 404

        Raises:
            RateLimitedError: If the upstream keeps answering 429
            SourceUnavailableError: If the upstream stays unreachable or rejects the request
        """
        throttled = 0
        transient = 0

        def _stop(state: RetryCallState) -> bool:
            if isinstance(state.outcome.exception(), _ThrottledResponse):
                return throttled >= self.rate_limit_attempts
            return transient >= self.max_attempts

        def _wait(state: RetryCallState) -> float:
            exc = state.outcome.exception()
            if isinstance(exc, _ThrottledResponse):
                wait = exc.retry_after if exc.retry_after is not None else self.rate_limit_backoff
                logger.warning(f"{self.source_type}: rate limited, backing off {wait:.1f}s")
                return wait
            wait = self._backoff(state)
            logger.debug(f"{self.source_type}: transient failure ({exc}), retrying in {wait:.1f}s")
            return wait

        retrying = AsyncRetrying(
            retry=retry_if_exception_type((httpx.TransportError, _TransientResponse, _ThrottledResponse)),
            stop=_stop,
            wait=_wait,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    try:
                        response = await self._send(url, params)
                    except _ThrottledResponse:
                        throttled += 1
                        raise
                    except (httpx.TransportError, _TransientResponse):
                        transient += 1
                        raise
        except _ThrottledResponse as e:
            raise RateLimitedError(
                self.source_type, f"HTTP 429 after {throttled} attempt(s)", retry_after=e.retry_after
            ) from e
        except _TransientResponse as e:
            raise SourceUnavailableError(
                self.source_type, f"HTTP {e.status_code} after {transient} attempt(s)"
            ) from e
        except httpx.TransportError as e:
            raise SourceUnavailableError(self.source_type, f"{type(e).__name__}: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise SourceUnavailableError(self.source_type, f"HTTP {response.status_code} for {url}")
        return response

    async def get_json(self, url: str, params: dict[str, Any] | None = None) -> Any | None:
        """GET a JSON document. Returns None on 404."""
        response = await self._request(url, params)
        if response is None:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise SourceUnavailableError(self.source_type, f"Malformed JSON from {url}") from e

    async def get_text(self, url: str, params: dict[str, Any] | None = None) -> str | None:
        """GET a text document (e.g. XML). Returns None on 404."""
        response = await self._request(url, params)
        if response is None:
            return None
        return response.text
