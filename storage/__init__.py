"""
Storage Package

Holds the in-memory market data snapshots written by connector sessions and
read by the aggregation engine and the HTTP layer.

Current implementation:
- MarketDataStore: per-exchange ticker and funding maps (latest value only)

Nothing is persisted: historical data is out of scope, a restart starts
from an empty store.
"""

from storage.market_data import MarketDataStore

__all__ = ["MarketDataStore"]
