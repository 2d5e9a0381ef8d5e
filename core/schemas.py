"""
Normalized Data Schemas

This module defines the Pydantic models shared by every connector, the
market data store, the aggregation engine and the HTTP layer.

Key Principle:
    Regardless of which exchange the data comes from (Binance, Bybit, OKX,
    Backpack, EdgeX, Hyperliquid), it is normalized into these schemas and
    keyed by a canonical symbol of the form BASE/QUOTE:SETTLE.

Models:
    - CanonicalSymbol: Unified instrument identifier (BTC/USDT:USDT)
    - TickerSnapshot: Latest bid/ask/last/volume for one instrument
    - FundingSnapshot: Latest funding rate for one instrument
    - ConnectionState: Lifecycle state of a connector session
    - ExchangeQuote / Opportunity: Output of one aggregation cycle
    - FrameResult / TickerBatch / FundingBatch: Adapter return values

Snapshots are frozen: a connector replaces them, it never mutates them.
"""

import math
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================
# Canonical Symbol
# ============================================

class CanonicalSymbol(BaseModel):
    """
    Unified cross-exchange instrument identifier.

    Attributes:
        base: Underlying asset (e.g., "BTC")
        quote: Quote asset (e.g., "USDT")
        settle: Settlement / margin asset (e.g., "USDT")

    Example:
        >>> sym = CanonicalSymbol(base="BTC", quote="USDT", settle="USDT")
        >>> str(sym)
        'BTC/USDT:USDT'
        >>> CanonicalSymbol.parse("ETH/USDC:USDC").base
        'ETH'
    """

    model_config = ConfigDict(frozen=True)

    base: str = Field(..., min_length=1)
    quote: str = Field(..., min_length=1)
    settle: str = Field(..., min_length=1)

    @field_validator("base", "quote", "settle")
    @classmethod
    def validate_upper(cls, v: str) -> str:
        """Ensure components are uppercase"""
        return v.strip().upper()

    def __str__(self) -> str:
        return f"{self.base}/{self.quote}:{self.settle}"

    @classmethod
    def parse(cls, text: str) -> "CanonicalSymbol":
        """
        Parse "BASE/QUOTE:SETTLE" (settle defaults to quote when omitted).

        Raises:
            ValueError: If the text is not in canonical form
        """
        pair, _, settle = text.partition(":")
        base, sep, quote = pair.partition("/")
        if not sep or not base or not quote:
            raise ValueError(f"Not a canonical symbol: '{text}'")
        return cls(base=base, quote=quote, settle=settle or quote)


def base_asset(symbol: str) -> str:
    """Base component of a canonical symbol string ("BTC/USDT:USDT" -> "BTC")."""
    return symbol.split("/")[0]


def settle_asset(symbol: str) -> str:
    """Settlement component of a canonical symbol string."""
    pair, _, settle = symbol.partition(":")
    return settle or pair.partition("/")[2]


def _positive(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value) and value > 0


# ============================================
# Market Snapshots
# ============================================

class SnapshotModel(BaseModel):
    """Common fields for per-exchange snapshots."""

    model_config = ConfigDict(frozen=True)

    exchange: str = Field(..., description="Source exchange identifier (lowercase)")
    symbol: str = Field(..., description="Canonical symbol, BASE/QUOTE:SETTLE")

    @field_validator("exchange")
    @classmethod
    def validate_exchange(cls, v: str) -> str:
        """Ensure exchange is lowercase"""
        return v.lower()


class TickerSnapshot(SnapshotModel):
    """
    Latest top-of-book / last trade for one instrument on one exchange.

    The snapshot is stored even when it carries no usable price; the
    aggregation engine simply skips it.

    Example:
        >>> t = TickerSnapshot(exchange="binance", symbol="BTC/USDT:USDT",
        ...                    bid=100.0, ask=102.0, last=101.5, timestamp=0)
        >>> t.usable_price
        101.0
    """

    bid: Optional[float] = None
    ask: Optional[float] = None
    last: Optional[float] = None
    base_volume: float = 0.0
    quote_volume: float = 0.0
    timestamp: int = Field(0, description="Exchange event time, epoch ms")

    @property
    def usable_price(self) -> Optional[float]:
        """
        Mid price when bid and ask are both finite and positive,
        otherwise last when finite and positive, otherwise None.
        """
        if _positive(self.bid) and _positive(self.ask):
            return (self.bid + self.ask) / 2
        if _positive(self.last):
            return self.last
        return None


class FundingSnapshot(SnapshotModel):
    """Latest funding rate for one perpetual instrument."""

    funding_rate: float = Field(..., description="Signed fraction per funding interval")
    next_funding_time_ms: Optional[int] = None
    funding_interval_hours: float = Field(8.0, gt=0)


# ============================================
# Connection State
# ============================================

class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


# ============================================
# Aggregation Output
# ============================================

class ExchangeQuote(BaseModel):
    """One exchange's contribution to an Opportunity."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    price: Optional[float] = None
    funding_rate: Optional[float] = None
    volume: float = 0.0
    next_funding_time_ms: Optional[int] = None
    funding_interval_hours: Optional[float] = None


class Opportunity(BaseModel):
    """
    Per-cycle arbitrage signal for one base asset.

    Attributes:
        symbol: Base asset (e.g., "BTC")
        exchanges: exchange -> ExchangeQuote
        long_exchange / short_exchange: cheapest / most expensive venue
        long_funding_exchange / short_funding_exchange: lowest / highest funding
        price_spread_pct: (max - min) / min * 100
        funding_spread: max rate - min rate, None with fewer than two rates
    """

    model_config = ConfigDict(frozen=True)

    symbol: str
    exchanges: Dict[str, ExchangeQuote]
    long_exchange: str
    short_exchange: str
    long_funding_exchange: Optional[str] = None
    short_funding_exchange: Optional[str] = None
    price_spread_pct: float = 0.0
    funding_spread: Optional[float] = None


# ============================================
# Adapter Results
# ============================================

class FrameResult(BaseModel):
    """
    Outcome of parsing one inbound transport frame.

    Attributes:
        tickers: Snapshots to upsert into the store
        reply: Frame to send back (e.g. pong), dict or raw text
        control: True for acks / pongs / heartbeats carrying no data
    """

    tickers: List[TickerSnapshot] = Field(default_factory=list)
    reply: Optional[Union[Dict, str]] = None
    control: bool = False


class TickerBatch(BaseModel):
    """Result of one REST ticker poll."""

    tickers: List[TickerSnapshot] = Field(default_factory=list)
    skipped: int = 0


class FundingBatch(BaseModel):
    """
    Result of one funding refresh cycle.

    `success` counts records that made it into `records`; the session only
    replaces its funding map when success >= 1.
    """

    records: List[FundingSnapshot] = Field(default_factory=list)
    errors: int = 0
    skipped: int = 0
    error_categories: Dict[str, int] = Field(default_factory=dict)

    @property
    def success(self) -> int:
        return len(self.records)
