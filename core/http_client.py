"""
Shared REST Client

Async HTTP client used by every exchange adapter. One instance per connector
session; it owns an aiohttp ClientSession for its lifetime.

It handles:
- Hard per-request timeout (ConnectorSettings.timeout_ms)
- Bounded retries with exponential backoff (core.retry.RetryPolicy)
- Failure classification into the core.errors taxonomy
- Optional HTTP proxy

Retry Rules:
    RateLimitError, UpstreamServerError, TransportError -> retried
    RateLimitError with Retry-After                     -> waits at least that long
    DataValidationError (other 4xx, undecodable body)   -> raised immediately

Usage:
    async with RestClient("okx", "https://www.okx.com") as rest:
        data = await rest.get_json("/api/v5/public/funding-rate", {"instId": "BTC-USDT-SWAP"})
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from core.errors import (
    ConnectorError,
    DataValidationError,
    RateLimitError,
    TransportError,
    classify_http_status,
    classify_transport_error,
    parse_retry_after,
)
from core.logging import get_logger, log_api_request, log_api_response
from core.retry import RetryPolicy


class RestClient:
    """
    Async JSON-over-HTTP client with retry and error classification.

    Args:
        exchange: Exchange name (for logging)
        base_url: Base URL prepended to relative paths
        timeout: Total timeout per request in seconds
        retry: RetryPolicy (defaults to 3 tries, 300ms base)
        proxy: Optional proxy URL
        sleep: Awaitable sleep function (injectable for tests)
    """

    def __init__(
        self,
        exchange: str,
        base_url: str,
        timeout: float = 10.0,
        retry: Optional[RetryPolicy] = None,
        proxy: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.exchange = exchange
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry = retry or RetryPolicy()
        self.proxy = proxy
        self._sleep = sleep
        self.session: Optional[aiohttp.ClientSession] = None
        self.logger = get_logger(f"http.{exchange}")

    # ============================================
    # Context Manager for Session Management
    # ============================================

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def open(self) -> None:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
            self.logger.debug(f"{self.exchange} REST session created")

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()
            self.logger.debug(f"{self.exchange} REST session closed")
        self.session = None

    # ============================================
    # Public Request Methods
    # ============================================

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request_json("GET", path, params=params)

    async def post_json(self, path: str, payload: Dict[str, Any]) -> Any:
        return await self.request_json("POST", path, json_body=payload)

    async def request_json(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Perform a request with retries.

        Raises:
            RuntimeError: If the client session is not open
            ConnectorError: The last classified failure once retries are exhausted,
                            or immediately for non-retryable failures
        """
        if not self.session:
            raise RuntimeError("Client session not initialized. Use 'async with' statement.")

        url = path if path.startswith("http") else f"{self.base_url}{path}"
        last_error: Optional[ConnectorError] = None

        for attempt in range(self.retry.attempts):
            try:
                return await self._request_once(method, url, path, params, json_body)
            except ConnectorError as e:
                last_error = e
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = TransportError(str(e) or type(e).__name__, category=classify_transport_error(e))

            if not last_error.retryable:
                raise last_error

            if attempt + 1 < self.retry.attempts:
                delay = self.retry.delay(attempt)
                if isinstance(last_error, RateLimitError) and last_error.retry_after:
                    delay = max(delay, last_error.retry_after)
                self.logger.warning(
                    f"{method} {path} failed ({last_error.category}: {last_error}). "
                    f"Retrying in {delay:.2f}s... (attempt {attempt + 1}/{self.retry.attempts})"
                )
                await self._sleep(delay)

        self.logger.error(f"{method} {path} failed after {self.retry.attempts} attempts: {last_error}")
        raise last_error

    async def _request_once(
        self,
        method: str,
        url: str,
        path: str,
        params: Optional[Dict[str, Any]],
        json_body: Optional[Dict[str, Any]],
    ) -> Any:
        log_api_request(self.exchange, path, params or json_body)
        started = time.monotonic()
        try:
            async with self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                proxy=self.proxy,
            ) as resp:
                log_api_response(self.exchange, path, resp.status, time.monotonic() - started)
                if resp.status != 200:
                    text = await resp.text()
                    raise classify_http_status(
                        resp.status,
                        text[:200],
                        retry_after=parse_retry_after(resp.headers.get("Retry-After")),
                    )
                try:
                    return await resp.json(content_type=None)
                except ValueError as e:
                    raise DataValidationError(f"Invalid JSON from {path}: {e}") from e
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timeout after {self.timeout}s on {path}", category="timeout") from e
        except aiohttp.ClientError as e:
            raise TransportError(str(e), category=classify_transport_error(e)) from e
