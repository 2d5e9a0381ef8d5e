"""
Market Data Store

Two maps per exchange, both keyed by canonical symbol string:
    tickers: symbol -> TickerSnapshot   (push model, key-level updates)
    funding: symbol -> FundingSnapshot  (poll model, whole-map replacement)

Concurrency model:
    Single writer per exchange (its ConnectorSession), many readers.
    All access happens on one event loop and none of the methods await,
    so a write is never interleaved with a read. Readers get shallow
    copies; snapshots themselves are frozen, so no caller can mutate
    what another sees. Whole-map writes swap in a new dict.
"""

from typing import Dict, Iterable, Optional

from core.schemas import FundingSnapshot, TickerSnapshot


class MarketDataStore:
    """
    In-memory latest-value store for every exchange.

    Example:
        >>> store = MarketDataStore()
        >>> store.put_ticker(TickerSnapshot(exchange="okx", symbol="BTC/USDT:USDT", last=1.0))
        >>> list(store.get_tickers("okx"))
        ['BTC/USDT:USDT']
    """

    def __init__(self):
        self._tickers: Dict[str, Dict[str, TickerSnapshot]] = {}
        self._funding: Dict[str, Dict[str, FundingSnapshot]] = {}

    # ============================================
    # Reads (never block, may be stale)
    # ============================================

    def get_tickers(self, exchange: str) -> Dict[str, TickerSnapshot]:
        return dict(self._tickers.get(exchange, {}))

    def get_funding(self, exchange: str) -> Dict[str, FundingSnapshot]:
        return dict(self._funding.get(exchange, {}))

    def get_ticker(self, exchange: str, symbol: str) -> Optional[TickerSnapshot]:
        return self._tickers.get(exchange, {}).get(symbol)

    def exchanges(self):
        return sorted(set(self._tickers) | set(self._funding))

    def counts(self, exchange: str) -> Dict[str, int]:
        return {
            "tickers": len(self._tickers.get(exchange, {})),
            "funding": len(self._funding.get(exchange, {})),
        }

    # ============================================
    # Writes (owning connector only)
    # ============================================

    def put_ticker(self, snapshot: TickerSnapshot) -> None:
        self._tickers.setdefault(snapshot.exchange, {})[snapshot.symbol] = snapshot

    def put_tickers(self, snapshots: Iterable[TickerSnapshot]) -> int:
        count = 0
        for snapshot in snapshots:
            self.put_ticker(snapshot)
            count += 1
        return count

    def replace_tickers(self, exchange: str, snapshots: Iterable[TickerSnapshot]) -> None:
        """Rebuild an exchange's ticker map from a structurally valid REST response."""
        self._tickers[exchange] = {s.symbol: s for s in snapshots}

    def replace_funding(self, exchange: str, snapshots: Iterable[FundingSnapshot]) -> None:
        """Swap in a new funding map. Callers gate this on at least one success."""
        self._funding[exchange] = {s.symbol: s for s in snapshots}
