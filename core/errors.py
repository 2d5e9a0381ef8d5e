"""
Connector Error Taxonomy

Every failure a connector can run into is expressed as a ConnectorError
subclass carrying a short `category` string. Categories drive the reconnect
multipliers (see core.retry) and show up in logs and status payloads.

Hierarchy:
    ConnectorError
    ├── TransportError          - connect/receive/send failed (dns, refused, reset, timeout)
    ├── StaleConnectionError    - health monitor saw no inbound message in time
    ├── ProtocolError           - unexpected frame / close code
    ├── RateLimitError          - HTTP 429 (and 418/503 throttling)
    ├── UpstreamServerError     - HTTP 5xx
    └── DataValidationError     - payload missing required fields, other 4xx

None of these escape a ConnectorSession: they are converted into
reconnect / retry / skip decisions at the session boundary.
"""

import asyncio
import math
import socket
from typing import Any, Optional

import aiohttp


class ConnectorError(Exception):
    """Base class for all connector failures."""

    category: str = "unknown"
    retryable: bool = True

    def __init__(self, message: str = "", category: Optional[str] = None):
        super().__init__(message)
        if category:
            self.category = category


class TransportError(ConnectorError):
    category = "network"


class StaleConnectionError(ConnectorError):
    category = "stale_connection"


class ProtocolError(ConnectorError):
    category = "protocol_error"


class RateLimitError(ConnectorError):
    category = "rate_limit"

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamServerError(ConnectorError):
    category = "server_error"

    def __init__(self, message: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class DataValidationError(ConnectorError):
    category = "malformed_data"
    retryable = False

    def __init__(self, message: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.status = status


# ============================================
# Classification Helpers
# ============================================

CLOSE_CODE_CATEGORIES = {
    1000: "normal",
    1001: "going_away",
    1002: "protocol_error",
    1003: "unsupported_data",
    1006: "abnormal_closure",
    1011: "server_error",
}


def close_code_category(code: Optional[int]) -> str:
    """
    Map a WebSocket close code to an error category.

    Example:
        >>> close_code_category(1011)
        'server_error'
        >>> close_code_category(None)
        'abnormal_closure'
    """
    if code is None:
        return "abnormal_closure"
    return CLOSE_CODE_CATEGORIES.get(code, "unknown")


def parse_retry_after(value: Any) -> Optional[float]:
    """
    Seconds from a Retry-After header. HTTP-date values are not supported.

    Example:
        >>> parse_retry_after("2"), parse_retry_after("Wed, 21 Oct 2026 07:28:00 GMT")
        (2.0, None)
    """
    if isinstance(value, str):
        value = value.strip()
    elif not isinstance(value, (int, float)):
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if math.isfinite(seconds) and seconds >= 0 else None


def classify_http_status(status: int, message: str = "", retry_after: Optional[float] = None) -> ConnectorError:
    """
    Convert a non-200 HTTP status into the matching ConnectorError.

    429/418/503 are throttling, other 5xx are server errors and every
    remaining 4xx is treated as a non-retryable validation failure.
    `retry_after` (seconds) is only kept on RateLimitError.
    """
    if status in (429, 418, 503):
        return RateLimitError(f"HTTP {status}: {message}", retry_after=retry_after)
    if status >= 500:
        return UpstreamServerError(f"HTTP {status}: {message}", status=status)
    return DataValidationError(f"HTTP {status}: {message}", status=status)


def classify_transport_error(exc: BaseException) -> str:
    """
    Derive the transport error category for an exception raised while
    connecting or receiving.

    Returns one of: dns_error, connection_refused, timeout, connection_reset,
    server_error, or the category of a ConnectorError, or "unknown".
    """
    if isinstance(exc, ConnectorError):
        return exc.category
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return "timeout"
    if isinstance(exc, aiohttp.WSServerHandshakeError):
        return "server_error" if exc.status >= 500 else "protocol_error"
    if isinstance(exc, aiohttp.ClientConnectorError):
        os_error = exc.os_error
        if isinstance(os_error, socket.gaierror):
            return "dns_error"
        if isinstance(os_error, ConnectionRefusedError):
            return "connection_refused"
        if isinstance(os_error, (TimeoutError, asyncio.TimeoutError)):
            return "timeout"
        return "connection_refused"
    if isinstance(exc, socket.gaierror):
        return "dns_error"
    if isinstance(exc, ConnectionRefusedError):
        return "connection_refused"
    if isinstance(exc, ConnectionResetError):
        return "connection_reset"
    if isinstance(exc, TimeoutError):
        return "timeout"
    if isinstance(exc, (aiohttp.ServerDisconnectedError, aiohttp.ClientOSError)):
        return "connection_reset"
    return "unknown"
