"""
Periodic Stats Summary

Every summary_interval_s the reporter diffs the StatsCollector against its
previous snapshot and logs what happened in the window:

    📊 Summary (last 900s): tickers ✅ 5400 ❌ 2 ⏭ 10 | funding ✅ 1200 ❌ 0 ⏭ 4
      bybit    tickers ✅ 1800 ❌ 0 ⏭ 0 (1s ago) | funding ✅ 400 ❌ 0 ⏭ 0 (42s ago)
"""

import asyncio
import contextlib
import time
from typing import Callable, Dict, List, Optional, Sequence

from core.logging import get_logger, log_event
from core.stats import CATEGORIES, Snapshot, StatsCollector


logger = get_logger(__name__)


def _age(last_update: Optional[float], now_ms: int) -> str:
    if not last_update:
        return "never"
    return f"{max(0, int((now_ms - last_update) / 1000))}s ago"


def _counts(counters: Dict[str, float]) -> str:
    return f"✅ {counters.get('success', 0)} ❌ {counters.get('errors', 0)} ⏭ {counters.get('skipped', 0)}"


def format_summary(window: Snapshot, exchanges: Sequence[str], interval_s: int, now_ms: int) -> List[str]:
    """Render one window as log lines: a totals line, then one line per exchange."""
    totals = " | ".join(f"{c} {_counts(StatsCollector.totals(window, c))}" for c in CATEGORIES)
    lines = [f"📊 Summary (last {interval_s}s): {totals}"]
    for exchange in exchanges:
        parts = []
        for category in CATEGORIES:
            counters = window.get(category, {}).get(exchange)
            if counters is None:
                parts.append(f"{category} no data")
            else:
                parts.append(f"{category} {_counts(counters)} ({_age(counters.get('last_update'), now_ms)})")
        lines.append(f"  {exchange:<12} {' | '.join(parts)}")
    return lines


class StatsReporter:
    """
    Background service logging windowed stats deltas.

    Example:
        >>> reporter = StatsReporter(stats, ["okx", "bybit"], interval_s=900)
        >>> await reporter.start()
    """

    def __init__(
        self,
        stats: StatsCollector,
        exchanges: Sequence[str],
        interval_s: int = 900,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.stats = stats
        self.exchanges = list(exchanges)
        self.interval_s = interval_s
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._previous: Optional[Snapshot] = None
        self._running = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._running.is_set():
            return
        self._running.set()
        self._previous = self.stats.snapshot()
        logger.info(f"Starting stats reporter (every {self.interval_s}s)")
        self._task = asyncio.create_task(self._run(), name="stats_reporter")

    async def stop(self) -> None:
        if not self._running.is_set():
            return
        self._running.clear()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        while self._running.is_set():
            await asyncio.sleep(self.interval_s)
            try:
                self.report()
            except Exception as e:
                logger.error(f"✗ Stats summary failed: {e}")

    def report(self) -> Snapshot:
        """Log the window since the previous report and start a new one."""
        current = self.stats.snapshot()
        window = StatsCollector.window_delta(current, self._previous)
        self._previous = current

        for line in format_summary(window, self.exchanges, self.interval_s, self._clock()):
            logger.info(line)
        log_event(
            "summary",
            None,
            "debug",
            "periodic stats window",
            {category: StatsCollector.totals(window, category) for category in CATEGORIES},
        )
        return window
