"""
Unified Logging Configuration

This module sets up a centralized logging system for the entire application.
All modules should import and use the logger from this module instead of
using print() statements.

Usage:
    from core.logging import get_logger, log_event

    logger = get_logger(__name__)
    logger.info("Funding refresh finished")

    log_event("connection", "binance", "info", "connected", {"attempt": 0})

Structured Events:
    Connection transitions, fetch outcomes and periodic summaries go through
    log_event(category, exchange, level, message, data). The event fields are
    attached to the record (`record.event`) so a different handler can
    render them as JSON; the default formatter prints a single line.

Configuration:
    Log level is controlled by the LOG_LEVEL setting in .env file.
"""

import json
import logging
import sys
from typing import Any, Dict, Optional


APP_LOGGER_NAME = "arbscanner"


def setup_logging(
    log_level: str = "INFO",
    log_format: Optional[str] = None,
    include_timestamp: bool = True,
    include_module: bool = True
) -> logging.Logger:
    """
    Configure and return the application logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Custom log format string (uses default if None)
        include_timestamp: Include timestamp in log messages
        include_module: Include logger name in log messages

    Returns:
        logging.Logger: Configured logger instance

    Example:
        >>> logger = setup_logging(log_level="DEBUG")
        >>> logger.info("Application started")
        2024-01-01 12:00:00 [INFO] arbscanner Application started
    """
    if log_format is None:
        format_parts = []
        if include_timestamp:
            format_parts.append("%(asctime)s")
        format_parts.append("[%(levelname)s]")
        if include_module:
            format_parts.append("%(name)s")
        format_parts.append("%(message)s")
        log_format = " ".join(format_parts)

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
        force=True
    )

    logger = logging.getLogger(APP_LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    return logger


# ============================================
# Initialize Logger with Settings
# ============================================

from core.config import settings  # noqa: E402

logger = setup_logging(log_level=settings.log_level)


# ============================================
# Convenience Functions
# ============================================

def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific module or component.

    Example:
        # In exchanges/bybit/__init__.py:
        logger = get_logger(__name__)  # "arbscanner.exchanges.bybit"
    """
    return logging.getLogger(f"{APP_LOGGER_NAME}.{name}")


# ============================================
# Log Helper Functions
# ============================================

_event_logger = logging.getLogger(f"{APP_LOGGER_NAME}.events")


def log_event(
    category: str,
    exchange: Optional[str],
    level: str,
    message: str,
    data: Optional[Dict[str, Any]] = None
) -> None:
    """
    Emit a structured core event.

    Args:
        category: Event family ("connection", "funding", "tickers", "summary", ...)
        exchange: Exchange name, or None for cross-exchange events
        level: "debug", "info", "warning" or "error"
        message: Human readable message
        data: Optional JSON-serialisable payload

    Example:
        >>> log_event("connection", "bybit", "warning", "reconnect scheduled", {"delay": 2.0})
        [WARNING] arbscanner.events [BYBIT] connection: reconnect scheduled | {"delay": 2.0}
    """
    event = {"category": category, "exchange": exchange, "message": message, "data": data}
    prefix = f"[{exchange.upper()}] " if exchange else ""
    suffix = f" | {json.dumps(data, default=str)}" if data else ""
    _event_logger.log(
        getattr(logging, level.upper(), logging.INFO),
        f"{prefix}{category}: {message}{suffix}",
        extra={"event": event},
    )


def log_api_request(exchange: str, endpoint: str, params: dict = None) -> None:
    """
    Log an API request with consistent formatting.

    Example:
        >>> log_api_request("okx", "/api/v5/public/funding-rate", {"instId": "BTC-USDT-SWAP"})
        [DEBUG] API Request: okx /api/v5/public/funding-rate | Params: {'instId': 'BTC-USDT-SWAP'}
    """
    if params:
        logger.debug(f"API Request: {exchange} {endpoint} | Params: {params}")
    else:
        logger.debug(f"API Request: {exchange} {endpoint}")


def log_api_response(exchange: str, endpoint: str, status: int, response_time: float = None) -> None:
    """Log an API response with status and timing information."""
    time_str = f" | Time: {response_time:.3f}s" if response_time else ""
    logger.debug(f"API Response: {exchange} {endpoint} | Status: {status}{time_str}")


def log_websocket_event(exchange: str, event: str, symbol: str = None, details: str = None) -> None:
    """
    Log a WebSocket event with consistent formatting.

    Example:
        >>> log_websocket_event("binance", "error", details="Connection timeout")
        [ERROR] WebSocket: binance error | Connection timeout
    """
    symbol_str = f" | Symbol: {symbol}" if symbol else ""
    details_str = f" | {details}" if details else ""

    level = logging.ERROR if event == "error" else logging.INFO
    logger.log(level, f"WebSocket: {exchange} {event}{symbol_str}{details_str}")


logger.debug("Logging system initialized")
