"""
Exchange Manager - Central Registry for Connector Sessions

The ExchangeManager owns one ConnectorSession per enabled exchange and the
shared MarketDataStore / StatsCollector handles they write into. The HTTP
layer and the aggregation engine only talk to the manager.

Design Benefits:
    - Single source of truth for available exchanges
    - Fixed exchange order (also the aggregation tie-break order)
    - Centralized lifecycle management (start_all / stop_all)
    - One failing exchange never blocks the others

Example Usage:
    manager = ExchangeManager()
    await manager.start_all()

    state, counters = manager.get_exchange_status("bybit")
    funding = manager.get_funding_map("okx")

    await manager.stop_all()

Adding a new exchange:
    1. Write an ExchangeAdapter under exchanges/<name>/
    2. Register it in ADAPTERS and EXCHANGE_ORDER
    3. Give it defaults in core.config.DEFAULT_CONNECTORS
"""

from typing import Any, Dict, List, Optional, Tuple, Type

from core.config import EXCHANGE_ORDER, Settings, settings as default_settings
from core.connector import ConnectorSession
from core.exchange_interface import ExchangeAdapter
from core.logging import logger
from core.schemas import ConnectionState, FundingSnapshot
from core.stats import StatsCollector
from storage.market_data import MarketDataStore


def _adapters() -> Dict[str, Type[ExchangeAdapter]]:
    # Import here to avoid circular imports
    # Each exchange module imports from core, so we can't import at module level
    from exchanges.backpack import BackpackAdapter
    from exchanges.binance import BinanceAdapter
    from exchanges.bybit import BybitAdapter
    from exchanges.edgex import EdgeXAdapter
    from exchanges.hyperliquid import HyperliquidAdapter
    from exchanges.okx import OKXAdapter

    return {
        "okx": OKXAdapter,
        "bybit": BybitAdapter,
        "binance": BinanceAdapter,
        "backpack": BackpackAdapter,
        "edgex": EdgeXAdapter,
        "hyperliquid": HyperliquidAdapter,
    }


class ExchangeManager:
    """
    Central Manager for Connector Sessions

    Attributes:
        store: Shared MarketDataStore
        stats: Shared StatsCollector
        sessions: exchange name -> ConnectorSession, in EXCHANGE_ORDER

    Example:
        >>> manager = ExchangeManager()
        >>> manager.list_exchanges()
        ['okx', 'bybit', 'binance', 'backpack', 'edgex', 'hyperliquid']
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        store: Optional[MarketDataStore] = None,
        stats: Optional[StatsCollector] = None,
        sessions: Optional[Dict[str, ConnectorSession]] = None,
    ):
        self.config = config or default_settings
        self.store = store or MarketDataStore()
        self.stats = stats or StatsCollector()

        if sessions is None:
            adapters = _adapters()
            sessions = {}
            for name in self.config.enabled_exchanges_list:
                connector_settings = self.config.connector_settings(name)
                sessions[name] = ConnectorSession(
                    adapters[name](connector_settings),
                    self.store,
                    self.stats,
                    connector_settings,
                    proxy=self.config.proxy_url,
                )

        self.sessions: Dict[str, ConnectorSession] = {
            name: sessions[name] for name in EXCHANGE_ORDER if name in sessions
        }
        logger.info(
            f"ExchangeManager initialized with {len(self.sessions)} exchange(s): "
            f"{', '.join(self.sessions.keys()) or 'none'}"
        )

    # ============================================
    # Session Retrieval Methods
    # ============================================

    @property
    def exchange_order(self) -> List[str]:
        return list(self.sessions.keys())

    def get_session(self, name: str) -> ConnectorSession:
        """
        Get a session by exchange name (case-insensitive).

        Raises:
            ValueError: If the exchange is not registered
        """
        name = name.lower()
        if name not in self.sessions:
            available = ", ".join(self.sessions.keys())
            raise ValueError(
                f"Exchange '{name}' is not supported. "
                f"Available exchanges: {available}"
            )
        return self.sessions[name]

    def has_exchange(self, name: str) -> bool:
        return name.lower() in self.sessions

    def list_exchanges(self) -> List[str]:
        return list(self.sessions.keys())

    # ============================================
    # Status Accessors
    # ============================================

    def get_exchange_status(self, name: str) -> Tuple[ConnectionState, Dict[str, Dict[str, Any]]]:
        """
        Connection state and stats counters for one exchange.

        Example:
            >>> state, counters = manager.get_exchange_status("okx")
            >>> state, counters["funding"]["success"]
            (<ConnectionState.CONNECTED: 'connected'>, 245)
        """
        session = self.get_session(name)
        return session.state, self.stats.for_exchange(session.name)

    def get_funding_map(self, name: str) -> Dict[str, FundingSnapshot]:
        session = self.get_session(name)
        return self.store.get_funding(session.name)

    def streaming_status(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: session.status()
            for name, session in self.sessions.items()
            if session.adapter.supports("ticker_stream")
        }

    # ============================================
    # Lifecycle Management
    # ============================================

    async def start_all(self) -> None:
        logger.info("Starting all exchange sessions...")
        for name, session in self.sessions.items():
            try:
                await session.start()
                logger.info(f"✓ {name.capitalize()} session started")
            except Exception as e:
                logger.error(f"✗ Failed to start {name}: {e}")

    async def stop_all(self) -> None:
        logger.info("Stopping all exchange sessions...")
        for name, session in self.sessions.items():
            try:
                await session.stop()
                logger.info(f"✓ {name.capitalize()} session stopped")
            except Exception as e:
                logger.error(f"✗ Error stopping {name}: {e}")
        logger.info("All exchange sessions stopped")

    # ============================================
    # Utility Methods
    # ============================================

    def __repr__(self) -> str:
        return f"<ExchangeManager(exchanges={list(self.sessions.keys())})>"

    def __len__(self) -> int:
        return len(self.sessions)


# ============================================
# Global Manager Instance
# ============================================

_manager: Optional[ExchangeManager] = None


def get_manager() -> ExchangeManager:
    """
    Get the global ExchangeManager instance (singleton pattern).

    Example:
        >>> from core.exchange_manager import get_manager
        >>> get_manager().get_funding_map("bybit")
    """
    global _manager
    if _manager is None:
        _manager = ExchangeManager()
    return _manager
