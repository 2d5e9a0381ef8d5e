"""
Configuration Management Module

This module handles loading, validating, and providing access to application
configuration from environment variables (.env file).

Uses Pydantic Settings for automatic validation and type conversion.

Key Features:
- Loads configuration from .env file
- Built-in defaults for every supported exchange
- Per-exchange overrides through nested variables, e.g.
      EXCHANGES__BYBIT__FETCH_INTERVAL_MS=30000
      EXCHANGES__EDGEX__TREAT_USD_AS_USDT=false
- Per-connector settings are immutable once built (no hot reload)

Usage:
    from core.config import settings

    print(settings.aggregation_interval_ms)
    print(settings.connector_settings("binance").ws_url)
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Fixed iteration order. Ties in the aggregation engine resolve to the
# exchange that comes first here.
EXCHANGE_ORDER = ("okx", "bybit", "binance", "backpack", "edgex", "hyperliquid")

GROUPING_MODES = {
    "price_grouping": ("base", "symbol"),
    "funding_grouping": ("base", "settlement"),
}


class ConnectorSettings(BaseModel):
    """
    Immutable settings for one exchange connector.

    All durations are milliseconds, matching the exchange APIs.

    Attributes:
        enabled: Whether the exchange session is started
        base_url: REST base URL
        ws_url: Streaming URL (None for REST-polled exchanges)
        fetch_interval_ms: Funding refresh cadence
        ticker_poll_interval_ms: Ticker poll cadence for REST-polled exchanges
        market_refresh_interval_ms: Market list reload cadence
        retry_attempts: Tries per REST request
        timeout_ms: Hard timeout per REST request
        reconnect_base_ms / reconnect_max_ms / reconnect_jitter_ms: Reconnect backoff
        max_reconnect_attempts: Attempts before the session stays Disconnected
        message_timeout_ms: Silence window before the health monitor forces a reconnect
        health_check_interval_ms: How often the health monitor looks
        heartbeat_interval_ms: Keepalive cadence (application or protocol ping)
        max_malformed_frames: Consecutive unparsable frames before a forced reconnect
        batch_size / batch_pause_ms: Funding request fan-out and inter-batch pause
        subscribe_batch_size: Topics per subscribe frame
        handshake_timeout_ms: WebSocket connect timeout
        treat_usd_as_usdt / include_by_name_suffix: Symbol normalization switches
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    enabled: bool = True
    base_url: str = ""
    ws_url: Optional[str] = None
    fetch_interval_ms: int = Field(60_000, gt=0)
    ticker_poll_interval_ms: int = Field(5_000, gt=0)
    market_refresh_interval_ms: int = Field(3_600_000, gt=0)
    retry_attempts: int = Field(3, ge=1)
    timeout_ms: int = Field(10_000, gt=0)
    reconnect_base_ms: int = Field(1_000, gt=0)
    reconnect_max_ms: int = Field(60_000, gt=0)
    reconnect_jitter_ms: int = Field(500, ge=0)
    max_reconnect_attempts: int = Field(5, ge=1)
    message_timeout_ms: int = Field(30_000, gt=0)
    health_check_interval_ms: int = Field(15_000, gt=0)
    heartbeat_interval_ms: Optional[int] = None
    max_malformed_frames: int = Field(10, ge=1)
    batch_size: int = Field(10, ge=1)
    batch_pause_ms: int = Field(200, ge=0)
    subscribe_batch_size: int = Field(100, ge=1)
    handshake_timeout_ms: int = Field(15_000, gt=0)
    treat_usd_as_usdt: bool = True
    include_by_name_suffix: bool = True


DEFAULT_CONNECTORS: Dict[str, Dict[str, Any]] = {
    "okx": {
        "base_url": "https://www.okx.com",
        "batch_size": 10,
        "batch_pause_ms": 250,
    },
    "bybit": {
        "base_url": "https://api.bybit.com",
        "ws_url": "wss://stream.bybit.com/v5/public/linear",
        "heartbeat_interval_ms": 20_000,
        "reconnect_base_ms": 2_000,
        "max_reconnect_attempts": 10,
    },
    "binance": {
        "base_url": "https://fapi.binance.com",
        "ws_url": "wss://fstream.binance.com/stream?streams=!ticker@arr",
        "reconnect_base_ms": 5_000,
        "max_reconnect_attempts": 5,
    },
    "backpack": {
        "base_url": "https://api.backpack.exchange",
        "ws_url": "wss://ws.backpack.exchange",
        "heartbeat_interval_ms": 30_000,
        "reconnect_base_ms": 5_000,
        "retry_attempts": 2,
        "batch_size": 5,
    },
    "edgex": {
        "base_url": "https://pro.edgex.exchange",
        "ws_url": "wss://quote.edgex.exchange/api/v1/public/ws",
        "timeout_ms": 15_000,
        "retry_attempts": 2,
        "batch_size": 10,
        "batch_pause_ms": 200,
    },
    "hyperliquid": {
        "base_url": "https://api.hyperliquid.xyz",
        "ticker_poll_interval_ms": 5_000,
    },
}


class Settings(BaseSettings):
    """
    Application Settings

    Values are automatically loaded from environment variables or .env file.

    Attributes:
        app_host / app_port: FastAPI server bind address
        environment: Current environment (development, production)
        debug: Enable debug mode
        log_level: Logging level
        cors_origins: Comma-separated list of allowed CORS origins
        enabled_exchanges: Comma-separated list of exchanges to run
        aggregation_interval_ms: Opportunity recompute cadence
        summary_interval_s: Periodic stats summary cadence
        price_grouping: "base" groups USDT/USDC contracts of one coin together,
                        "symbol" compares only identical canonical symbols
        funding_grouping: "base" compares every funding rate of a coin,
                          "settlement" restricts comparison to one settlement asset
        proxy_url: Optional HTTP proxy for REST and WebSocket traffic
        exchanges: Per-exchange ConnectorSettings
    """

    # ============================================
    # Application Configuration
    # ============================================

    app_host: str = Field(default="0.0.0.0", description="FastAPI server host address")
    app_port: int = Field(default=8000, description="FastAPI server port")
    environment: str = Field(default="development", description="Application environment")
    debug: bool = Field(default=True, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")

    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated list of allowed CORS origins"
    )

    # ============================================
    # Aggregation Configuration
    # ============================================

    enabled_exchanges: str = Field(
        default=",".join(EXCHANGE_ORDER),
        description="Comma-separated list of exchanges to connect to"
    )

    aggregation_interval_ms: int = Field(default=5_000, description="Aggregation cycle interval")
    summary_interval_s: int = Field(default=900, description="Stats summary interval")

    price_grouping: str = Field(default="base", description="base | symbol")
    funding_grouping: str = Field(default="base", description="base | settlement")

    # ============================================
    # Transport Configuration
    # ============================================

    proxy_url: Optional[str] = Field(default=None, description="HTTP proxy, e.g. http://127.0.0.1:1080")

    exchanges: Dict[str, ConnectorSettings] = Field(default_factory=dict, validate_default=True)

    # ============================================
    # Pydantic Settings Configuration
    # ============================================

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
        env_nested_delimiter="__"
    )

    @field_validator("exchanges", mode="before")
    @classmethod
    def merge_connector_defaults(cls, v: Any) -> Dict[str, Dict[str, Any]]:
        """Layer overrides on top of the built-in per-exchange defaults."""
        merged = {name: dict(values) for name, values in DEFAULT_CONNECTORS.items()}
        for name, overrides in (v or {}).items():
            if isinstance(overrides, ConnectorSettings):
                overrides = overrides.model_dump(exclude_unset=True)
            merged.setdefault(name.lower(), {}).update(overrides or {})
        return merged

    # ============================================
    # Custom Properties
    # ============================================

    @property
    def enabled_exchanges_list(self) -> List[str]:
        """
        Enabled exchanges in the fixed iteration order.

        Example:
            >>> settings.enabled_exchanges_list
            ['okx', 'bybit', 'binance', 'backpack', 'edgex', 'hyperliquid']
        """
        requested = {e.strip().lower() for e in self.enabled_exchanges.split(",") if e.strip()}
        return [
            name for name in EXCHANGE_ORDER
            if name in requested and self.connector_settings(name).enabled
        ]

    @property
    def cors_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def connector_settings(self, name: str) -> ConnectorSettings:
        """
        Settings for one exchange.

        Raises:
            ValueError: If the exchange has no settings
        """
        try:
            return self.exchanges[name.lower()]
        except KeyError:
            raise ValueError(f"No connector settings for exchange '{name}'") from None


# ============================================
# Global Settings Instance
# ============================================

settings = Settings()


# ============================================
# Configuration Validation
# ============================================

def validate_configuration(config: Optional[Settings] = None) -> None:
    """
    Validate critical configuration settings on application startup.

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    # Import logger here to avoid circular import
    from core.logging import logger

    config = config or settings

    requested = [e.strip().lower() for e in config.enabled_exchanges.split(",") if e.strip()]
    unknown = [e for e in requested if e not in EXCHANGE_ORDER]
    if unknown:
        raise ValueError(
            f"Unknown exchange(s) in ENABLED_EXCHANGES: {', '.join(unknown)}. "
            f"Must be among: {', '.join(EXCHANGE_ORDER)}"
        )

    if not (1 <= config.app_port <= 65535):
        raise ValueError(f"Invalid port number: {config.app_port}. Must be between 1 and 65535")

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if config.log_level.upper() not in valid_log_levels:
        raise ValueError(
            f"Invalid LOG_LEVEL: '{config.log_level}'. "
            f"Must be one of: {', '.join(valid_log_levels)}"
        )

    for field, allowed in GROUPING_MODES.items():
        value = getattr(config, field)
        if value not in allowed:
            raise ValueError(f"Invalid {field.upper()}: '{value}'. Must be one of: {', '.join(allowed)}")

    if config.aggregation_interval_ms <= 0 or config.summary_interval_s <= 0:
        raise ValueError("AGGREGATION_INTERVAL_MS and SUMMARY_INTERVAL_S must be positive")

    logger.info("Configuration validated successfully")
    logger.info(f"Exchanges: {', '.join(config.enabled_exchanges_list) or 'none'}")
    logger.info(f"Aggregation every {config.aggregation_interval_ms}ms "
                f"(price={config.price_grouping}, funding={config.funding_grouping})")
    logger.info(f"Server: {config.app_host}:{config.app_port}")
    logger.info(f"Log level: {config.log_level.upper()}")
    if config.proxy_url:
        logger.info(f"Proxy: {config.proxy_url}")
