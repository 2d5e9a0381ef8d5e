"""
Stats Collector

Per-exchange, per-category counters:

    {"tickers": {"binance": {"success": 120, "errors": 2, "skipped": 5, "last_update": 1717...}},
     "funding": {...}}

Connectors increment only their own exchange's counters. Periodic health
reporting takes a snapshot and diffs it against the previous one; every
delta is clamped at zero so a counter reset between windows never yields
negative numbers.
"""

import copy
import time
from typing import Callable, Dict, Optional


CATEGORIES = ("tickers", "funding")
COUNTERS = ("success", "errors", "skipped")

Snapshot = Dict[str, Dict[str, Dict[str, float]]]


def _empty() -> Dict[str, float]:
    return {"success": 0, "errors": 0, "skipped": 0, "last_update": None}


class StatsCollector:
    """
    Counter registry with windowed deltas.

    Args:
        clock: Returns current epoch milliseconds (injectable for tests)

    Example:
        >>> stats = StatsCollector()
        >>> stats.record_success("okx", "funding", 10)
        >>> stats.get("okx", "funding")["success"]
        10
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._counters: Snapshot = {category: {} for category in CATEGORIES}

    def _entry(self, exchange: str, category: str) -> Dict[str, float]:
        if category not in self._counters:
            raise ValueError(f"Unknown stats category '{category}'. Use one of: {', '.join(CATEGORIES)}")
        return self._counters[category].setdefault(exchange, _empty())

    # ============================================
    # Recording
    # ============================================

    def record_success(self, exchange: str, category: str, count: int = 1) -> None:
        entry = self._entry(exchange, category)
        entry["success"] += count
        entry["last_update"] = self._clock()

    def record_error(self, exchange: str, category: str, count: int = 1) -> None:
        entry = self._entry(exchange, category)
        entry["errors"] += count
        entry["last_update"] = self._clock()

    def record_skipped(self, exchange: str, category: str, count: int = 1) -> None:
        entry = self._entry(exchange, category)
        entry["skipped"] += count
        entry["last_update"] = self._clock()

    def reset(self, exchange: Optional[str] = None) -> None:
        for category in CATEGORIES:
            if exchange is None:
                self._counters[category] = {}
            else:
                self._counters[category].pop(exchange, None)

    # ============================================
    # Reading
    # ============================================

    def get(self, exchange: str, category: str) -> Dict[str, float]:
        return dict(self._counters.get(category, {}).get(exchange) or _empty())

    def for_exchange(self, exchange: str) -> Dict[str, Dict[str, float]]:
        return {category: self.get(exchange, category) for category in CATEGORIES}

    def snapshot(self) -> Snapshot:
        return copy.deepcopy(self._counters)

    @staticmethod
    def window_delta(current: Snapshot, previous: Optional[Snapshot]) -> Snapshot:
        """
        Per-counter difference between two snapshots, clamped at zero.

        `last_update` is carried over from the current snapshot unchanged.
        """
        previous = previous or {}
        delta: Snapshot = {}
        for category, exchanges in current.items():
            delta[category] = {}
            for exchange, counters in exchanges.items():
                prev = previous.get(category, {}).get(exchange, {})
                entry = {
                    name: max(0, (counters.get(name) or 0) - (prev.get(name) or 0))
                    for name in COUNTERS
                }
                entry["last_update"] = counters.get("last_update")
                delta[category][exchange] = entry
        return delta

    @staticmethod
    def totals(window: Snapshot, category: str) -> Dict[str, int]:
        result = {name: 0 for name in COUNTERS}
        for counters in window.get(category, {}).values():
            for name in COUNTERS:
                result[name] += counters.get(name) or 0
        return result
