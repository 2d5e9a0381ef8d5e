"""
Aggregation Engine

Fixed-cadence job that turns the per-exchange snapshot maps into a ranked
list of cross-exchange opportunities.

Per cycle:
    1. Read every exchange's ticker and funding map (non-blocking copies)
    2. Group tickers by base asset (or by full canonical symbol)
    3. Keep one usable price per exchange, drop groups with < 2 exchanges
    4. Long the cheapest venue, short the most expensive one
    5. Independently, long the lowest funding rate, short the highest
    6. Publish (opportunities, last_update) with a single reference swap

Ties resolve to the exchange that comes first in the fixed exchange order.
Only one cycle runs at a time; a tick that fires while a cycle is still
running is skipped.
"""

import asyncio
import contextlib
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from core.config import EXCHANGE_ORDER
from core.logging import get_logger, log_event
from core.schemas import (
    ExchangeQuote,
    FundingSnapshot,
    Opportunity,
    TickerSnapshot,
    base_asset,
    settle_asset,
)
from core.stats import StatsCollector
from storage.market_data import MarketDataStore


logger = get_logger(__name__)

QUOTE_PREFERENCE = ("USDT", "USDC", "USD")

TickerMaps = Dict[str, Dict[str, TickerSnapshot]]
FundingMaps = Dict[str, Dict[str, FundingSnapshot]]
Published = Tuple[Tuple[Opportunity, ...], Optional[str]]


# ============================================
# Pure Computation
# ============================================

def _preference(symbol: str) -> Tuple[int, str]:
    """Sort key picking one contract when an exchange lists several for a base."""
    quote = symbol.split("/", 1)[1].split(":", 1)[0] if "/" in symbol else ""
    rank = QUOTE_PREFERENCE.index(quote) if quote in QUOTE_PREFERENCE else len(QUOTE_PREFERENCE)
    return rank, symbol


def _argmin(values: Dict[str, float], order: Sequence[str]) -> str:
    best = None
    for exchange in order:
        if exchange in values and (best is None or values[exchange] < values[best]):
            best = exchange
    return best


def _argmax(values: Dict[str, float], order: Sequence[str]) -> str:
    best = None
    for exchange in order:
        if exchange in values and (best is None or values[exchange] > values[best]):
            best = exchange
    return best


def _select_funding(
    candidates: Dict[str, List[FundingSnapshot]],
    preferred_symbols: Dict[str, str],
    order: Sequence[str],
    funding_grouping: str,
) -> Dict[str, FundingSnapshot]:
    """
    One funding record per exchange for a group.

    "base" compares every settlement asset; "settlement" keeps only the
    settlement asset reported by the most exchanges.
    """
    if funding_grouping == "settlement":
        by_settle: Dict[str, Dict[str, List[FundingSnapshot]]] = {}
        for exchange in order:
            for record in candidates.get(exchange, []):
                by_settle.setdefault(settle_asset(record.symbol), {}).setdefault(exchange, []).append(record)
        if not by_settle:
            return {}
        # dicts keep insertion order, so max() returns the group whose first exchange comes earliest
        candidates = max(by_settle.values(), key=len)

    selected = {}
    for exchange in order:
        records = candidates.get(exchange)
        if not records:
            continue
        preferred = preferred_symbols.get(exchange)
        match = next((r for r in records if r.symbol == preferred), None)
        selected[exchange] = match or min(records, key=lambda r: _preference(r.symbol))
    return selected


def compute_opportunities(
    tickers: TickerMaps,
    funding: FundingMaps,
    order: Sequence[str] = EXCHANGE_ORDER,
    price_grouping: str = "base",
    funding_grouping: str = "base",
) -> List[Opportunity]:
    """
    Build the opportunity list from one snapshot of every store.

    Args:
        tickers: exchange -> {canonical symbol -> TickerSnapshot}
        funding: exchange -> {canonical symbol -> FundingSnapshot}
        order: Exchange iteration order, used for tie-breaking
        price_grouping: "base" or "symbol"
        funding_grouping: "base" or "settlement"

    Returns:
        Opportunities sorted by group key

    Example:
        >>> opps = compute_opportunities(
        ...     {"okx": {"BTC/USDT:USDT": t1}, "bybit": {"BTC/USDT:USDT": t2}}, {})
        >>> opps[0].long_exchange, opps[0].short_exchange
        ('okx', 'bybit')
    """
    group_of = base_asset if price_grouping == "base" else (lambda symbol: symbol)

    # group -> exchange -> [(ticker, price)]
    priced: Dict[str, Dict[str, List[Tuple[TickerSnapshot, float]]]] = {}
    for exchange in order:
        for symbol, ticker in tickers.get(exchange, {}).items():
            price = ticker.usable_price
            if price is None:
                continue
            priced.setdefault(group_of(symbol), {}).setdefault(exchange, []).append((ticker, price))

    rates: Dict[str, Dict[str, List[FundingSnapshot]]] = {}
    for exchange in order:
        for symbol, record in funding.get(exchange, {}).items():
            rates.setdefault(group_of(symbol), {}).setdefault(exchange, []).append(record)

    opportunities = []
    for group in sorted(priced):
        venues = priced[group]
        if len(venues) < 2:
            continue

        chosen: Dict[str, Tuple[TickerSnapshot, float]] = {
            exchange: min(entries, key=lambda e: _preference(e[0].symbol))
            for exchange, entries in venues.items()
        }
        prices = {exchange: price for exchange, (_, price) in chosen.items()}
        long_exchange = _argmin(prices, order)
        short_exchange = _argmax(prices, order)

        selected = _select_funding(
            rates.get(group, {}),
            {exchange: ticker.symbol for exchange, (ticker, _) in chosen.items()},
            order,
            funding_grouping,
        )
        funding_rates = {exchange: r.funding_rate for exchange, r in selected.items()}

        quotes: Dict[str, ExchangeQuote] = {}
        for exchange in order:
            if exchange not in chosen and exchange not in selected:
                continue
            ticker, price = chosen.get(exchange, (None, None))
            record = selected.get(exchange)
            quotes[exchange] = ExchangeQuote(
                symbol=ticker.symbol if ticker else record.symbol,
                price=price,
                funding_rate=record.funding_rate if record else None,
                volume=ticker.base_volume if ticker else 0.0,
                next_funding_time_ms=record.next_funding_time_ms if record else None,
                funding_interval_hours=record.funding_interval_hours if record else None,
            )

        low, high = prices[long_exchange], prices[short_exchange]
        opportunities.append(
            Opportunity(
                symbol=group,
                exchanges=quotes,
                long_exchange=long_exchange,
                short_exchange=short_exchange,
                long_funding_exchange=_argmin(funding_rates, order) if funding_rates else None,
                short_funding_exchange=_argmax(funding_rates, order) if funding_rates else None,
                price_spread_pct=(high - low) / low * 100,
                funding_spread=(
                    max(funding_rates.values()) - min(funding_rates.values())
                    if len(funding_rates) >= 2 else None
                ),
            )
        )
    return opportunities


# ============================================
# Engine
# ============================================

class AggregationEngine:
    """
    Periodic aggregation job with an atomically published result.

    Args:
        store: Shared MarketDataStore
        stats: Shared StatsCollector (read for the cycle summary)
        exchanges: Exchanges to aggregate, in tie-break order
        interval_ms: Cycle cadence
        price_grouping / funding_grouping: See compute_opportunities

    Example:
        >>> engine = AggregationEngine(store, stats, ["okx", "bybit"])
        >>> await engine.start()
        >>> opportunities, last_update = engine.get_latest_opportunities()
    """

    def __init__(
        self,
        store: MarketDataStore,
        stats: StatsCollector,
        exchanges: Sequence[str] = EXCHANGE_ORDER,
        interval_ms: int = 5_000,
        price_grouping: str = "base",
        funding_grouping: str = "base",
    ):
        self.store = store
        self.stats = stats
        self.exchanges = [e for e in EXCHANGE_ORDER if e in exchanges]
        self.interval = interval_ms / 1000
        self.price_grouping = price_grouping
        self.funding_grouping = funding_grouping

        self._published: Published = ((), None)
        self._cycle_running = False
        self._running = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.cycles = 0
        self.skipped_ticks = 0

    @property
    def is_running(self) -> bool:
        return self._running.is_set()

    async def start(self) -> None:
        if self._running.is_set():
            return
        self._running.set()
        logger.info(f"Starting aggregation engine (every {self.interval:.1f}s)")
        self._task = asyncio.create_task(self._run(), name="aggregation_engine")

    async def stop(self) -> None:
        if not self._running.is_set():
            return
        logger.info("Stopping aggregation engine...")
        self._running.clear()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        while self._running.is_set():
            self.tick()
            await asyncio.sleep(self.interval)

    def tick(self) -> bool:
        """
        Run one cycle unless one is already running.

        Returns:
            True if a cycle ran, False if the tick was skipped
        """
        if self._cycle_running:
            self.skipped_ticks += 1
            logger.debug("Aggregation cycle still running, tick skipped")
            return False

        self._cycle_running = True
        try:
            self.run_cycle()
        except Exception as e:
            logger.error(f"✗ Aggregation cycle failed: {e}", exc_info=True)
        finally:
            self._cycle_running = False
        return True

    def _read_snapshot(self) -> Tuple[TickerMaps, FundingMaps]:
        tickers: TickerMaps = {}
        funding: FundingMaps = {}
        for exchange in self.exchanges:
            try:
                tickers[exchange] = self.store.get_tickers(exchange)
                funding[exchange] = self.store.get_funding(exchange)
            except Exception as e:
                tickers.pop(exchange, None)
                log_event("aggregation", exchange, "warning", f"snapshot read failed, excluded this cycle: {e}")
        return tickers, funding

    def run_cycle(self) -> List[Opportunity]:
        tickers, funding = self._read_snapshot()
        opportunities = compute_opportunities(
            tickers,
            funding,
            order=self.exchanges,
            price_grouping=self.price_grouping,
            funding_grouping=self.funding_grouping,
        )
        self._published = (tuple(opportunities), datetime.now(timezone.utc).isoformat())
        self.cycles += 1

        log_event(
            "summary",
            None,
            "debug",
            "aggregation cycle",
            {
                "opportunities": len(opportunities),
                "tickers": {e: len(m) for e, m in tickers.items()},
                "funding": {e: len(m) for e, m in funding.items()},
                "ticker_totals": self.stats.totals(self.stats.snapshot(), "tickers"),
                "funding_totals": self.stats.totals(self.stats.snapshot(), "funding"),
            },
        )
        return opportunities

    def get_latest_opportunities(self) -> Tuple[List[Opportunity], Optional[str]]:
        """Latest published list and its ISO-8601 timestamp (None before the first cycle)."""
        opportunities, last_update = self._published
        return list(opportunities), last_update
