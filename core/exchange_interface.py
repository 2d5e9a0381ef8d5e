"""
Exchange Adapter - Protocol Contract for All Exchanges

This module defines the abstract base class that every exchange adapter
implements. An adapter only describes an exchange's wire contract:

    - which instruments exist (load_markets)
    - how to subscribe (subscribe_messages)
    - how to turn one inbound frame into ticker snapshots (parse_message)
    - how to keep the connection alive (heartbeat_frame)
    - how to fetch funding / tickers over REST (fetch_funding / fetch_tickers)

Everything stateful about connectivity (reconnect, backoff, health monitor,
heartbeat timer, guarded teardown, funding merge policy) lives in
core.connector.ConnectorSession, which drives any adapter the same way.

Design Philosophy:
    "Program to an interface, not an implementation"

Capabilities System:
    capabilities = {
        "ticker_stream": True,   # WebSocket ticker push
        "ticker_poll": False,    # REST ticker polling
        "ticker_snapshot": True, # one REST ticker round right after each stream connect
        "funding_poll": True,    # REST funding refresh
    }

Example:
    class OKXAdapter(ExchangeAdapter):
        name = "okx"
        capabilities = {"ticker_stream": False, "ticker_poll": True, "funding_poll": True}

        async def load_markets(self, rest): ...
        async def fetch_funding(self, rest): ...
        async def fetch_tickers(self, rest): ...
"""

import math
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from core.batching import gather_in_batches
from core.config import ConnectorSettings
from core.errors import ConnectorError
from core.http_client import RestClient
from core.logging import get_logger
from core.schemas import FrameResult, FundingBatch, FundingSnapshot, TickerBatch, TickerSnapshot


TickerLookup = Callable[[str], Optional[TickerSnapshot]]


# ============================================
# Parsing Helpers
# ============================================

def to_float(value: Any) -> Optional[float]:
    """
    Lenient float conversion for exchange payload fields.

    Example:
        >>> to_float("101.5"), to_float(""), to_float(None), to_float("abc")
        (101.5, None, None, None)
    """
    if value is None or value == "":
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


def to_int(value: Any) -> Optional[int]:
    number = to_float(value)
    return int(number) if number is not None else None


class ExchangeAdapter(ABC):
    """
    Abstract Base Class for exchange protocol adapters.

    Class Attributes:
        name: Unique identifier for the exchange (lowercase)
        capabilities: Which transport features this adapter implements

    Instance Attributes:
        settings: Immutable ConnectorSettings for this exchange
        markets: native instrument id -> canonical symbol string,
                 filled by load_markets()

    Abstract Methods (MUST be implemented by all exchanges):
        - load_markets
        - fetch_funding

    Optional Methods (depending on capabilities):
        - subscribe_messages / parse_message / heartbeat_frame (ticker_stream)
        - fetch_tickers (ticker_poll)
    """

    name: str

    capabilities: Dict[str, bool] = {
        "ticker_stream": False,
        "ticker_poll": False,
        "funding_poll": True,
    }

    def __init__(self, settings: ConnectorSettings):
        self.settings = settings
        self.markets: Dict[str, str] = {}
        self.logger = get_logger(f"exchanges.{self.name}")

    # ============================================
    # Market Discovery
    # ============================================

    @abstractmethod
    async def load_markets(self, rest: RestClient) -> Dict[str, str]:
        """
        Discover tradable perpetual instruments.

        Returns:
            Dict mapping native instrument id -> canonical symbol string.
            Implementations also assign the result to `self.markets`.

        Raises:
            ConnectorError: If the exchange cannot be reached or the
                            response is structurally invalid
        """
        ...

    # ============================================
    # Streaming Contract
    # ============================================

    @property
    def stream_url(self) -> Optional[str]:
        return self.settings.ws_url

    def subscribe_messages(self) -> List[Union[Dict[str, Any], str]]:
        """Frames to send right after the transport opens (already batched)."""
        return []

    def parse_message(self, payload: Any, previous: TickerLookup) -> FrameResult:
        """
        Convert one decoded inbound frame into ticker snapshots.

        Args:
            payload: Decoded JSON frame
            previous: Lookup of the currently stored snapshot by canonical symbol,
                      for exchanges that push partial (delta) updates

        Raises:
            ProtocolError / DataValidationError: Frame is not understood
        """
        raise NotImplementedError(f"{self.name} does not stream tickers")

    def heartbeat_frame(self) -> Optional[Union[Dict[str, Any], str]]:
        """
        Application-level keepalive frame, or None to send a protocol ping.
        Only used when settings.heartbeat_interval_ms is set.
        """
        return None

    # ============================================
    # REST Contract
    # ============================================

    @abstractmethod
    async def fetch_funding(self, rest: RestClient) -> FundingBatch:
        """
        Fetch one full round of funding rates.

        Per-record failures are counted in the returned batch; only a
        failure of the whole round should raise ConnectorError.
        """
        ...

    async def fetch_tickers(self, rest: RestClient) -> TickerBatch:
        """
        Fetch all tickers in one REST round.

        Raises:
            DataValidationError: If the response is structurally invalid
        """
        raise NotImplementedError(f"{self.name} does not poll tickers")

    # ============================================
    # Helper Methods
    # ============================================

    async def fetch_each(
        self,
        items: Sequence[Any],
        fn: Callable[[Any], Awaitable[Optional[FundingSnapshot]]],
    ) -> FundingBatch:
        """
        Run a per-instrument funding request over `items` in rate-limited batches.

        `fn` returns a FundingSnapshot, None for "skipped", or raises
        ConnectorError for a classified failure.
        """
        results = await gather_in_batches(
            items,
            fn,
            batch_size=self.settings.batch_size,
            pause=self.settings.batch_pause_ms / 1000,
        )

        batch = FundingBatch()
        for item, result in zip(items, results):
            if isinstance(result, FundingSnapshot):
                batch.records.append(result)
            elif result is None:
                batch.skipped += 1
            elif isinstance(result, BaseException):
                category = result.category if isinstance(result, ConnectorError) else "unknown"
                batch.errors += 1
                batch.error_categories[category] = batch.error_categories.get(category, 0) + 1
                self.logger.debug(f"{self.name} funding failed for {item}: {category} {result}")
        return batch

    def supports(self, feature: str) -> bool:
        """
        Check if this adapter supports a specific feature.

        Example:
            >>> adapter.supports("ticker_stream")
            True
        """
        return self.capabilities.get(feature, False)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name='{self.name}', markets={len(self.markets)})>"
