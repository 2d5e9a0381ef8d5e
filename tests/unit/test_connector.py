"""
Unit Tests for ConnectorSession

A scripted FakeWebSocket and a recording sleep replace the network and
timers, so reconnect/backoff, health monitor, malformed-frame handling and
the funding merge policy run deterministically.

Run with:
    pytest tests/unit/test_connector.py -v
"""

import asyncio
import json
from typing import Any, Dict, List
from unittest.mock import AsyncMock

import pytest

from core.config import ConnectorSettings
from core.connector import ConnectorSession
from core.errors import DataValidationError, StaleConnectionError, TransportError
from core.exchange_interface import ExchangeAdapter, TickerLookup
from core.retry import ReconnectPolicy
from core.schemas import (
    ConnectionState,
    FrameResult,
    FundingBatch,
    FundingSnapshot,
    TickerBatch,
    TickerSnapshot,
)
from core.stats import StatsCollector
from storage.market_data import MarketDataStore
from tests.unit.fakes import FakeWebSocket, RecordingSleep, close_frame, fake_rest, text


# ============================================
# Test Adapter
# ============================================

class StubAdapter(ExchangeAdapter):
    """Minimal streaming adapter: {"p": price} frames for BTC, {"ping": n} heartbeats."""

    name = "stubex"
    capabilities = {"ticker_stream": True, "ticker_poll": False, "funding_poll": True}

    def __init__(self, settings):
        super().__init__(settings)
        self.load_calls = 0
        self.listed = {"BTCUSDT": "BTC/USDT:USDT"}
        self.funding_batches: List[Any] = []
        self.ticker_batches: List[Any] = []

    async def load_markets(self, rest):
        self.load_calls += 1
        self.markets = dict(self.listed)
        return self.markets

    def subscribe_messages(self) -> List[Dict[str, Any]]:
        return [{"op": "subscribe", "args": list(self.markets)}]

    def parse_message(self, payload: Any, previous: TickerLookup) -> FrameResult:
        if "ping" in payload:
            return FrameResult(reply={"pong": payload["ping"]}, control=True)
        return FrameResult(tickers=[
            TickerSnapshot(exchange=self.name, symbol="BTC/USDT:USDT", last=float(payload["p"]))
        ])

    async def fetch_funding(self, rest):
        result = self.funding_batches.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def fetch_tickers(self, rest):
        result = self.ticker_batches.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class BrokenSendWebSocket(FakeWebSocket):
    """Accepts `fail_after` frames, then every send raises ConnectionResetError."""

    def __init__(self, messages=None, fail_after=0):
        super().__init__(messages)
        self.fail_after = fail_after

    async def send_str(self, data: str) -> None:
        if len(self.sent) >= self.fail_after:
            raise ConnectionResetError("connection reset by peer")
        await super().send_str(data)


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_session(sockets=None, max_attempts=3, **overrides):
    settings = ConnectorSettings(
        ws_url="wss://stub.test/ws",
        max_reconnect_attempts=max_attempts,
        message_timeout_ms=30_000,
        max_malformed_frames=3,
        **overrides,
    )
    adapter = StubAdapter(settings)
    sleep = RecordingSleep()
    clock = Clock()
    sockets = list(sockets or [])

    async def ws_factory(url):
        item = sockets.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    session = ConnectorSession(
        adapter,
        MarketDataStore(),
        StatsCollector(),
        settings,
        rest=fake_rest(),
        policy=ReconnectPolicy(base=1.0, max_delay=60.0, max_attempts=max_attempts, jitter_max=0.0),
        ws_factory=AsyncMock(side_effect=ws_factory),
        sleep=sleep,
        clock=clock,
    )
    # Monitors are exercised separately through check_health()
    session._arm_monitors = lambda: None
    return session, sleep, clock


async def run_stream(session):
    session._running.set()
    await asyncio.wait_for(session._stream_loop(), timeout=5)


async def wait_for_state(session, state):
    for _ in range(200):
        if session.state == state:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"session never reached {state}")


# ============================================
# Reconnect Policy
# ============================================

class TestStreamReconnect:

    @pytest.mark.asyncio
    async def test_normal_close_does_not_reconnect(self):
        ws = FakeWebSocket([text('{"p": 100}'), close_frame(1000)], close_code=1000)
        session, sleep, _ = make_session([ws])

        await run_stream(session)

        assert session.state == ConnectionState.DISCONNECTED
        assert session._ws_factory.await_count == 1
        assert sleep.delays == []
        assert session.store.get_ticker("stubex", "BTC/USDT:USDT").last == 100.0
        assert json.loads(ws.sent[0]) == {"op": "subscribe", "args": ["BTCUSDT"]}

    @pytest.mark.asyncio
    async def test_abnormal_close_schedules_reconnect(self):
        first = FakeWebSocket([close_frame(1006)], close_code=1006)
        second = FakeWebSocket([close_frame(1000)], close_code=1000)
        session, sleep, _ = make_session([first, second])

        await run_stream(session)

        assert session._ws_factory.await_count == 2
        assert sleep.delays == [1.0]
        assert session.total_reconnects == 1
        assert session.reconnect_attempt == 0
        assert session.last_error_category == "abnormal_closure"

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        refused = TransportError("refused", category="connection_refused")
        session, sleep, _ = make_session([refused] * 4, max_attempts=3)

        await run_stream(session)

        assert session.state == ConnectionState.DISCONNECTED
        assert session._ws_factory.await_count == 4
        assert sleep.delays == [2.0, 4.0, 8.0]
        assert session.last_error_category == "connection_refused"

    @pytest.mark.asyncio
    async def test_successful_connect_resets_attempts(self):
        refused = TransportError("refused", category="connection_refused")
        ok = FakeWebSocket([close_frame(1006)], close_code=1006)
        final = FakeWebSocket([close_frame(1000)], close_code=1000)
        session, sleep, _ = make_session([refused, ok, final], max_attempts=3)

        await run_stream(session)

        # refused -> attempt 1 (x2), connect resets, 1006 -> attempt 1 again
        assert sleep.delays == [2.0, 1.0]

    @pytest.mark.asyncio
    async def test_resubscribe_replaces_transport_without_backoff(self):
        first = FakeWebSocket()
        second = FakeWebSocket([close_frame(1000)], close_code=1000)
        session, sleep, _ = make_session([first, second])

        task = asyncio.create_task(run_stream(session))
        await wait_for_state(session, ConnectionState.CONNECTED)
        await session.resubscribe()
        await task

        assert session._ws_factory.await_count == 2
        assert sleep.delays == []
        assert session.total_reconnects == 0
        assert session.adapter.load_calls == 2

    @pytest.mark.asyncio
    async def test_failed_subscribe_closes_the_socket(self):
        broken = BrokenSendWebSocket()
        final = FakeWebSocket([close_frame(1000)], close_code=1000)
        session, sleep, _ = make_session([broken, final])

        await run_stream(session)

        assert broken.closed is True
        assert sleep.delays == [1.0]
        assert session.last_error_category == "connection_reset"
        assert session.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_failed_reply_closes_the_socket(self):
        broken = BrokenSendWebSocket([text('{"ping": 1}')], fail_after=1)
        final = FakeWebSocket([close_frame(1000)], close_code=1000)
        session, sleep, _ = make_session([broken, final])

        await run_stream(session)

        assert broken.closed is True
        assert len(broken.sent) == 1
        assert sleep.delays == [1.0]


# ============================================
# Frames, Heartbeat Replies, Malformed Data
# ============================================

class TestFrameHandling:

    @pytest.mark.asyncio
    async def test_reply_frames_are_sent_back(self):
        session, _, _ = make_session()
        session._ws = FakeWebSocket()

        await session._handle_text('{"ping": 7}')

        assert json.loads(session._ws.sent[0]) == {"pong": 7}

    @pytest.mark.asyncio
    async def test_malformed_frames_are_counted_and_skipped(self):
        session, _, _ = make_session()
        session._ws = FakeWebSocket()

        await session._handle_text("not json")
        await session._handle_text('{"unexpected": true}')
        await session._handle_text('{"p": 5}')

        assert session.consecutive_malformed == 0
        assert session.stats.get("stubex", "tickers")["errors"] == 2
        assert session.stats.get("stubex", "tickers")["success"] == 1
        assert not session._ws.closed

    @pytest.mark.asyncio
    async def test_malformed_threshold_forces_reconnect(self):
        session, _, _ = make_session()
        ws = FakeWebSocket()
        session._ws = ws

        for _ in range(3):
            await session._handle_text("garbage")

        assert ws.closed
        assert session._pending_error.category == "malformed_data"


# ============================================
# Health Monitor
# ============================================

class TestHealthMonitor:

    @pytest.mark.asyncio
    async def test_fresh_connection_is_healthy(self):
        session, _, clock = make_session()
        session._ws = FakeWebSocket()
        session.last_message_at = clock.now - 5

        assert await session.check_health() is True
        assert not session._ws.closed

    @pytest.mark.asyncio
    async def test_silent_connection_is_forced_to_reconnect(self):
        session, _, clock = make_session()
        ws = FakeWebSocket()
        session._ws = ws
        session.last_message_at = clock.now - 31

        assert await session.check_health() is False
        assert ws.closed
        with pytest.raises(StaleConnectionError):
            await session._receive_until_closed()

    @pytest.mark.asyncio
    async def test_heartbeat_loop_sends_protocol_ping(self):
        session, sleep, _ = make_session(heartbeat_interval_ms=20_000)
        ws = FakeWebSocket()
        session._ws = ws

        task = asyncio.create_task(session._heartbeat_loop())
        for _ in range(5):
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert ws.ping.await_count >= 1
        assert sleep.delays[0] == 20.0

    @pytest.mark.asyncio
    async def test_failed_heartbeat_forces_reconnect(self):
        session, _, _ = make_session(heartbeat_interval_ms=20_000)
        ws = FakeWebSocket()
        ws.ping.side_effect = ConnectionResetError("gone")
        session._ws = ws

        await asyncio.wait_for(session._heartbeat_loop(), timeout=5)

        assert ws.closed
        assert session._pending_error.category == "connection_reset"


# ============================================
# Funding Merge Policy and Ticker Polling
# ============================================

def funding_record(symbol, rate):
    return FundingSnapshot(exchange="stubex", symbol=symbol, funding_rate=rate)


class TestFundingRefresh:

    @pytest.mark.asyncio
    async def test_any_success_replaces_whole_map(self):
        session, _, _ = make_session()
        session.store.replace_funding("stubex", [funding_record("OLD/USDT:USDT", 0.1)])
        session.adapter.funding_batches = [
            FundingBatch(records=[funding_record("BTC/USDT:USDT", 0.2)], errors=4, skipped=1)
        ]

        batch = await session.refresh_funding()

        assert batch.success == 1
        assert list(session.store.get_funding("stubex")) == ["BTC/USDT:USDT"]
        counters = session.stats.get("stubex", "funding")
        assert (counters["success"], counters["errors"], counters["skipped"]) == (1, 4, 1)

    @pytest.mark.asyncio
    async def test_zero_successes_keep_previous_map(self):
        session, _, _ = make_session()
        session.store.replace_funding("stubex", [funding_record("BTC/USDT:USDT", 0.1)])
        session.adapter.funding_batches = [FundingBatch(errors=5, error_categories={"rate_limit": 5})]

        await session.refresh_funding()

        assert session.store.get_funding("stubex")["BTC/USDT:USDT"].funding_rate == 0.1

    @pytest.mark.asyncio
    async def test_whole_round_failure_keeps_previous_map(self):
        session, _, _ = make_session()
        session.store.replace_funding("stubex", [funding_record("BTC/USDT:USDT", 0.1)])
        session.adapter.funding_batches = [DataValidationError("no list")]

        assert await session.refresh_funding() is None
        assert len(session.store.get_funding("stubex")) == 1
        assert session.stats.get("stubex", "funding")["errors"] == 1


class TestTickerPolling:

    @pytest.mark.asyncio
    async def test_successful_poll_replaces_map_and_connects(self):
        session, _, _ = make_session()
        session.adapter.ticker_batches = [
            TickerBatch(tickers=[TickerSnapshot(exchange="stubex", symbol="BTC/USDT:USDT", last=1.0)], skipped=2)
        ]

        await session.poll_tickers()

        assert session.state == ConnectionState.CONNECTED
        assert session.store.counts("stubex")["tickers"] == 1
        assert session.stats.get("stubex", "tickers")["skipped"] == 2

    @pytest.mark.asyncio
    async def test_failed_poll_keeps_stale_tickers(self):
        session, _, _ = make_session()
        session.store.put_ticker(TickerSnapshot(exchange="stubex", symbol="BTC/USDT:USDT", last=1.0))
        session.adapter.ticker_batches = [TransportError("timeout", category="timeout")]

        assert await session.poll_tickers() is None
        assert session.store.counts("stubex")["tickers"] == 1
        assert session.last_error_category == "timeout"
        assert session.state == ConnectionState.DISCONNECTED


def make_polled_session(max_attempts=3):
    session, sleep, clock = make_session(max_attempts=max_attempts)
    session.adapter.capabilities = {"ticker_stream": False, "ticker_poll": True, "funding_poll": True}
    return session, sleep, clock


def ticker_batch(last=1.0):
    return TickerBatch(tickers=[TickerSnapshot(exchange="stubex", symbol="BTC/USDT:USDT", last=last)])


class TestPolledConnectionState:

    @pytest.mark.asyncio
    async def test_failed_poll_marks_session_reconnecting(self):
        session, _, _ = make_polled_session()
        session.adapter.ticker_batches = [ticker_batch(), TransportError("timeout", category="timeout")]

        await session.poll_tickers()
        assert session.state == ConnectionState.CONNECTED

        await session.poll_tickers()
        assert session.state == ConnectionState.RECONNECTING
        assert session.status()["connected"] is False
        assert session.reconnect_attempt == 1

    @pytest.mark.asyncio
    async def test_consecutive_failures_disconnect(self):
        session, _, _ = make_polled_session(max_attempts=3)
        session.adapter.ticker_batches = [ticker_batch()] + [
            TransportError("timeout", category="timeout") for _ in range(3)
        ]

        await session.poll_tickers()
        states = []
        for _ in range(3):
            await session.poll_tickers()
            states.append(session.state)

        assert states == [
            ConnectionState.RECONNECTING,
            ConnectionState.RECONNECTING,
            ConnectionState.DISCONNECTED,
        ]
        assert session.store.counts("stubex")["tickers"] == 1

    @pytest.mark.asyncio
    async def test_next_success_reconnects(self):
        session, _, _ = make_polled_session(max_attempts=2)
        session.adapter.ticker_batches = [
            TransportError("timeout", category="timeout"),
            TransportError("timeout", category="timeout"),
            ticker_batch(2.0),
        ]

        await session.poll_tickers()
        await session.poll_tickers()
        assert session.state == ConnectionState.DISCONNECTED

        await session.poll_tickers()
        assert session.state == ConnectionState.CONNECTED
        assert session.reconnect_attempt == 0

    @pytest.mark.asyncio
    async def test_poll_after_stop_keeps_session_closed(self):
        session, _, _ = make_polled_session()
        session._running.set()
        await session.stop()
        session.adapter.ticker_batches = [TransportError("timeout", category="timeout"), ticker_batch()]

        await session.poll_tickers()
        await session.poll_tickers()

        assert session.state == ConnectionState.CLOSED


class TestMarketRefresh:

    @pytest.mark.asyncio
    async def test_changed_markets_replace_transport(self):
        session, _, _ = make_session()
        await session.ensure_markets()
        session._ws = FakeWebSocket()
        session.adapter.listed = {"BTCUSDT": "BTC/USDT:USDT", "ETHUSDT": "ETH/USDT:USDT"}

        assert await session.refresh_markets() is True

        assert session._ws.closed is True
        assert session._replacing is True
        assert set(session.adapter.markets) == {"BTCUSDT", "ETHUSDT"}

    @pytest.mark.asyncio
    async def test_unchanged_markets_keep_transport(self):
        session, _, _ = make_session()
        await session.ensure_markets()
        session._ws = FakeWebSocket()

        assert await session.refresh_markets() is False

        assert session._ws.closed is False
        assert session._replacing is False

    @pytest.mark.asyncio
    async def test_failed_reload_keeps_previous_markets(self):
        session, _, _ = make_session()
        await session.ensure_markets()
        session.adapter.load_markets = AsyncMock(side_effect=TransportError("down", category="timeout"))

        assert await session.refresh_markets() is False
        assert session.adapter.markets == {"BTCUSDT": "BTC/USDT:USDT"}

    @pytest.mark.asyncio
    async def test_live_stream_resubscribes_with_new_markets(self):
        first = FakeWebSocket()
        second = FakeWebSocket([close_frame(1000)], close_code=1000)
        session, sleep, _ = make_session([first, second])

        task = asyncio.create_task(run_stream(session))
        await wait_for_state(session, ConnectionState.CONNECTED)
        session.adapter.listed = {"BTCUSDT": "BTC/USDT:USDT", "ETHUSDT": "ETH/USDT:USDT"}
        await session.refresh_markets()
        await task

        assert json.loads(second.sent[0])["args"] == ["BTCUSDT", "ETHUSDT"]
        assert session.adapter.load_calls == 2
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_market_loop_refreshes_on_interval(self):
        session, sleep, _ = make_session(market_refresh_interval_ms=600_000)
        session.refresh_markets = AsyncMock(side_effect=lambda: session._running.clear())
        session._running.set()

        await asyncio.wait_for(session._market_loop(), timeout=5)

        assert sleep.delays == [600.0]
        session.refresh_markets.assert_awaited_once()


class TestStatus:

    def test_status_payload(self):
        session, _, _ = make_session()
        status = session.status()

        assert status["exchange"] == "stubex"
        assert status["state"] == "disconnected"
        assert status["transport"] == "stream"
        assert status["cached_tickers"] == 0
        assert set(status["counters"]) == {"tickers", "funding"}

    @pytest.mark.asyncio
    async def test_stop_marks_session_closed(self):
        session, _, _ = make_session()
        session._running.set()
        await session.stop()

        assert session.state == ConnectionState.CLOSED
        session.rest.close.assert_awaited()
