"""
Connector Session

One ConnectorSession per exchange. It owns the transport for that exchange
and keeps MarketDataStore filled with the most recent data it knows,
degrading to stale cache instead of failing callers.

The session drives any ExchangeAdapter; adapters never reconnect, sleep or
touch the store themselves.

Background tasks (depending on adapter capabilities):
    _stream_loop    connect -> subscribe -> receive until closed -> backoff -> repeat
    _poll_loop      REST ticker poll every ticker_poll_interval_ms
    _funding_loop   REST funding refresh every fetch_interval_ms
    _market_loop    market list reload every market_refresh_interval_ms;
                    a changed list replaces the stream transport

While a stream is open two helper tasks are armed:
    _health_loop    forces a reconnect after message_timeout_ms of silence
    _heartbeat_loop sends the adapter's keepalive (or a protocol ping)

Reconnect Rules:
    - close code 1000 with no pending error      -> no reconnect, Disconnected
    - any other close / error                     -> backoff per ReconnectPolicy
    - more than max_reconnect_attempts in a row   -> give up, Disconnected
    - resubscribe() (own transport replacement)   -> immediate reconnect,
      no backoff, attempt counter untouched

Funding Merge Policy:
    A refresh round replaces the exchange's funding map only when at least
    one record succeeded. A fully failed round leaves the previous map as is.
"""

import asyncio
import contextlib
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiohttp

from core.config import ConnectorSettings
from core.errors import (
    ConnectorError,
    ProtocolError,
    StaleConnectionError,
    TransportError,
    classify_transport_error,
    close_code_category,
)
from core.exchange_interface import ExchangeAdapter
from core.http_client import RestClient
from core.logging import get_logger, log_event, log_websocket_event
from core.retry import ReconnectPolicy, RetryPolicy
from core.schemas import ConnectionState, FundingBatch, TickerBatch
from core.stats import StatsCollector
from storage.market_data import MarketDataStore


WSFactory = Callable[[str], Awaitable[Any]]

NORMAL_CLOSURE = 1000


class ConnectorSession:
    """
    Connection lifecycle, reconnection and ingestion for one exchange.

    Args:
        adapter: Protocol adapter for the exchange
        store: Shared MarketDataStore (this session is the only writer for its exchange)
        stats: Shared StatsCollector (this session only touches its exchange's counters)
        settings: Immutable per-exchange settings
        rest: REST client (built from settings when omitted)
        policy: Reconnect policy (built from settings when omitted)
        proxy: Optional HTTP proxy URL
        ws_factory: Coroutine function url -> websocket (defaults to aiohttp ws_connect)
        sleep: Awaitable sleep (injectable for tests)
        clock: Monotonic clock in seconds (injectable for tests)

    Example:
        >>> session = ConnectorSession(BybitAdapter(cfg), store, stats, cfg)
        >>> await session.start()
        >>> session.state
        <ConnectionState.CONNECTED: 'connected'>
        >>> await session.stop()
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        store: MarketDataStore,
        stats: StatsCollector,
        settings: ConnectorSettings,
        rest: Optional[RestClient] = None,
        policy: Optional[ReconnectPolicy] = None,
        proxy: Optional[str] = None,
        ws_factory: Optional[WSFactory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.adapter = adapter
        self.name = adapter.name
        self.store = store
        self.stats = stats
        self.settings = settings
        self.proxy = proxy
        self.rest = rest or RestClient(
            self.name,
            settings.base_url,
            timeout=settings.timeout_ms / 1000,
            retry=RetryPolicy(attempts=settings.retry_attempts),
            proxy=proxy,
        )
        self.policy = policy or ReconnectPolicy(
            base=settings.reconnect_base_ms / 1000,
            max_delay=settings.reconnect_max_ms / 1000,
            max_attempts=settings.max_reconnect_attempts,
            jitter_max=settings.reconnect_jitter_ms / 1000,
        )
        self._ws_factory = ws_factory or self._aiohttp_ws_connect
        self._sleep = sleep
        self._clock = clock
        self.logger = get_logger(f"connector.{self.name}")

        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempt = 0
        self.total_reconnects = 0
        self.last_message_at: Optional[float] = None
        self.connected_at: Optional[float] = None
        self.last_error_category: Optional[str] = None
        self.consecutive_malformed = 0

        self._ws: Any = None
        self._ws_session: Optional[aiohttp.ClientSession] = None
        self._pending_error: Optional[ConnectorError] = None
        self._replacing = False
        self._running = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._monitor_tasks: List[asyncio.Task] = []
        self._markets_lock = asyncio.Lock()

    # ============================================
    # Lifecycle
    # ============================================

    async def start(self) -> None:
        if self._running.is_set():
            return
        self._running.set()
        self.logger.info(f"Starting {self.name} session...")
        await self.rest.open()

        if self.adapter.supports("ticker_stream"):
            self._tasks.append(asyncio.create_task(self._stream_loop(), name=f"{self.name}_stream"))
        if self.adapter.supports("ticker_poll"):
            self._tasks.append(asyncio.create_task(self._poll_loop(), name=f"{self.name}_tickers"))
        if self.adapter.supports("funding_poll"):
            self._tasks.append(asyncio.create_task(self._funding_loop(), name=f"{self.name}_funding"))
        self._tasks.append(asyncio.create_task(self._market_loop(), name=f"{self.name}_markets"))

    async def stop(self) -> None:
        if not self._running.is_set():
            return
        self.logger.info(f"Stopping {self.name} session...")
        self._running.clear()
        self._set_state(ConnectionState.CLOSED)

        await self._disarm_monitors()
        if self._ws is not None and not self._ws.closed:
            with contextlib.suppress(Exception):
                await self._ws.close()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._tasks = []

        await self.rest.close()
        if self._ws_session and not self._ws_session.closed:
            await self._ws_session.close()
        self._ws_session = None

    @property
    def running(self) -> bool:
        return self._running.is_set()

    def _set_state(self, state: ConnectionState, **data: Any) -> None:
        if state == self.state:
            return
        previous, self.state = self.state, state
        level = "warning" if state in (ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED) else "info"
        log_event("connection", self.name, level, f"{previous.value} -> {state.value}", data or None)

    # ============================================
    # Market Discovery
    # ============================================

    async def ensure_markets(self) -> Dict[str, str]:
        async with self._markets_lock:
            if not self.adapter.markets:
                markets = await self.adapter.load_markets(self.rest)
                self.logger.info(f"✓ {self.name}: loaded {len(markets)} markets")
            return self.adapter.markets

    async def refresh_markets(self) -> bool:
        """
        Reload the market list. When it changed and a stream is open, the
        transport is replaced so the new subscriptions take effect.

        Returns:
            True when the market list changed
        """
        async with self._markets_lock:
            previous = set(self.adapter.markets)
            try:
                markets = await self.adapter.load_markets(self.rest)
            except ConnectorError as e:
                log_event("markets", self.name, "error", f"market refresh failed: {e}", {"category": e.category})
                return False

        added, removed = set(markets) - previous, previous - set(markets)
        if not added and not removed:
            return False

        log_event(
            "markets", self.name, "info", "market list changed",
            {"added": len(added), "removed": len(removed), "total": len(markets)},
        )
        await self.resubscribe(reload_markets=False)
        return True

    # ============================================
    # Streaming Transport
    # ============================================

    async def connect(self) -> None:
        """
        Open the stream transport, subscribe and arm the monitors.

        On success the session is Connected and the retry counter is reset.

        Raises:
            ConnectorError / aiohttp.ClientError / asyncio.TimeoutError: connect failed
        """
        self._set_state(ConnectionState.CONNECTING)
        await self.ensure_markets()

        url = self.adapter.stream_url
        if not url:
            raise ProtocolError(f"{self.name} has no stream URL configured")

        self._pending_error = None
        self._ws = await self._ws_factory(url)
        frames = self.adapter.subscribe_messages()
        for frame in frames:
            await self._send(frame)
        if frames:
            log_websocket_event(self.name, "subscribed", details=f"{len(self.adapter.markets)} markets in {len(frames)} frame(s)")

        self.reconnect_attempt = 0
        self.consecutive_malformed = 0
        self.connected_at = self._clock()
        self.last_message_at = self.connected_at
        self._set_state(ConnectionState.CONNECTED, url=url)
        self._arm_monitors()

        if self.adapter.supports("ticker_snapshot"):
            await self.poll_tickers()

    async def _aiohttp_ws_connect(self, url: str) -> aiohttp.ClientWebSocketResponse:
        if self._ws_session is None or self._ws_session.closed:
            self._ws_session = aiohttp.ClientSession()
        return await asyncio.wait_for(
            self._ws_session.ws_connect(url, proxy=self.proxy, autoping=True),
            timeout=self.settings.handshake_timeout_ms / 1000,
        )

    async def _stream_loop(self) -> None:
        while self._running.is_set():
            close_code: Optional[int] = None
            category: Optional[str] = None
            try:
                await self.connect()
                close_code = await self._receive_until_closed()
                category = close_code_category(close_code)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                category = classify_transport_error(e)
                self.logger.error(f"✗ {self.name} stream error ({category}): {e}")
            finally:
                await self._disarm_monitors()
                if self._ws is not None and not self._ws.closed:
                    with contextlib.suppress(Exception):
                        await self._ws.close()
                self._ws = None

            if not self._running.is_set():
                break

            if self._replacing:
                self._replacing = False
                self.logger.info(f"{self.name}: transport replaced, resubscribing")
                continue

            if close_code == NORMAL_CLOSURE:
                log_event("connection", self.name, "info", "closed normally (1000), not reconnecting")
                self._set_state(ConnectionState.DISCONNECTED, close_code=close_code)
                break

            self.last_error_category = category
            if not await self._schedule_reconnect(category):
                break

    async def _receive_until_closed(self) -> Optional[int]:
        """
        Read frames until the transport closes.

        Returns:
            The close code reported by the transport

        Raises:
            ConnectorError: A forced reconnect (stale / malformed) was requested,
                            or the transport reported an error frame
        """
        ws = self._ws
        while True:
            msg = await ws.receive()

            if msg.type == aiohttp.WSMsgType.TEXT:
                self.last_message_at = self._clock()
                await self._handle_text(msg.data)

            elif msg.type == aiohttp.WSMsgType.BINARY:
                self.last_message_at = self._clock()
                await self._handle_text(msg.data.decode("utf-8", errors="replace"))

            elif msg.type in (aiohttp.WSMsgType.PING, aiohttp.WSMsgType.PONG):
                self.last_message_at = self._clock()

            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                if self._pending_error is not None:
                    raise self._pending_error
                code = ws.close_code
                if code is None and msg.type == aiohttp.WSMsgType.CLOSE:
                    code = msg.data
                self.logger.warning(f"{self.name} WebSocket closed (code={code}, {close_code_category(code)})")
                return code

            elif msg.type == aiohttp.WSMsgType.ERROR:
                if self._pending_error is not None:
                    raise self._pending_error
                raise TransportError(f"WebSocket error: {msg.data}", category=classify_transport_error(msg.data))

            if self._pending_error is not None and ws.closed:
                raise self._pending_error

    async def _handle_text(self, data: str) -> None:
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            await self._register_malformed(f"invalid JSON: {data[:100]}")
            return

        try:
            result = self.adapter.parse_message(payload, self._lookup)
        except (ConnectorError, KeyError, TypeError, ValueError) as e:
            await self._register_malformed(f"{type(e).__name__}: {e}")
            return

        self.consecutive_malformed = 0
        if result.reply is not None:
            await self._send(result.reply)
        if result.tickers:
            count = self.store.put_tickers(result.tickers)
            self.stats.record_success(self.name, "tickers", count)

    def _lookup(self, symbol: str):
        return self.store.get_ticker(self.name, symbol)

    async def _register_malformed(self, reason: str) -> None:
        self.consecutive_malformed += 1
        self.stats.record_error(self.name, "tickers")
        self.logger.debug(f"{self.name} skipped malformed frame ({self.consecutive_malformed}): {reason}")
        if self.consecutive_malformed >= self.settings.max_malformed_frames:
            await self._force_reconnect(
                ProtocolError(f"{self.consecutive_malformed} consecutive malformed frames", category="malformed_data")
            )

    async def _send(self, frame: Union[Dict[str, Any], str]) -> None:
        if isinstance(frame, str):
            await self._ws.send_str(frame)
        else:
            await self._ws.send_str(json.dumps(frame))

    # ============================================
    # Reconnection
    # ============================================

    async def _schedule_reconnect(self, category: Optional[str]) -> bool:
        """
        Sleep for the backoff delay of the next attempt.

        Returns:
            False when attempts are exhausted (session stays Disconnected)
        """
        self.reconnect_attempt += 1
        if not self.policy.should_retry(self.reconnect_attempt):
            self._set_state(ConnectionState.DISCONNECTED, attempts=self.reconnect_attempt - 1)
            log_event(
                "connection", self.name, "error",
                f"giving up after {self.policy.max_attempts} reconnect attempts",
                {"last_error": category},
            )
            return False

        delay = self.policy.delay(self.reconnect_attempt, category)
        self._set_state(ConnectionState.RECONNECTING)
        log_event(
            "connection", self.name, "warning", "reconnect scheduled",
            {"attempt": self.reconnect_attempt, "delay_s": round(delay, 3), "category": category},
        )
        await self._sleep(delay)
        self.total_reconnects += 1
        return self._running.is_set()

    async def _force_reconnect(self, error: ConnectorError) -> None:
        """Close the live transport so the stream loop reconnects with `error`'s category."""
        if self._pending_error is not None:
            return
        self._pending_error = error
        log_event("connection", self.name, "warning", f"forcing reconnect: {error}", {"category": error.category})
        if self._ws is not None and not self._ws.closed:
            await self._ws.close(code=aiohttp.WSCloseCode.GOING_AWAY)

    async def resubscribe(self, reload_markets: bool = True) -> None:
        """
        Replace the current transport (e.g. after the market list changed).

        The close of the old transport is suppressed: no backoff, no attempt
        counted, the stream loop reconnects immediately.
        """
        if self._ws is None or self._ws.closed:
            return
        self._replacing = True
        if reload_markets:
            self.adapter.markets = {}
        await self._ws.close()

    # ============================================
    # Health Monitor and Heartbeat
    # ============================================

    def _arm_monitors(self) -> None:
        self._monitor_tasks = [
            asyncio.create_task(self._health_loop(), name=f"{self.name}_health"),
        ]
        if self.settings.heartbeat_interval_ms:
            self._monitor_tasks.append(
                asyncio.create_task(self._heartbeat_loop(), name=f"{self.name}_heartbeat")
            )

    async def _disarm_monitors(self) -> None:
        current = asyncio.current_task()
        tasks, self._monitor_tasks = self._monitor_tasks, []
        for task in tasks:
            if task is not current:
                task.cancel()
        for task in tasks:
            if task is not current:
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task

    async def check_health(self) -> bool:
        """
        Returns:
            False (and forces a reconnect) when no message arrived within message_timeout_ms
        """
        if self.last_message_at is None or self._ws is None:
            return True
        silence = self._clock() - self.last_message_at
        if silence > self.settings.message_timeout_ms / 1000:
            await self._force_reconnect(
                StaleConnectionError(f"no message for {silence:.1f}s")
            )
            return False
        return True

    async def _health_loop(self) -> None:
        interval = self.settings.health_check_interval_ms / 1000
        while True:
            await self._sleep(interval)
            if not await self.check_health():
                return

    async def _heartbeat_loop(self) -> None:
        interval = self.settings.heartbeat_interval_ms / 1000
        while True:
            await self._sleep(interval)
            try:
                frame = self.adapter.heartbeat_frame()
                if frame is None:
                    await self._ws.ping()
                else:
                    await self._send(frame)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._force_reconnect(
                    TransportError(f"heartbeat failed: {e}", category=classify_transport_error(e))
                )
                return

    # ============================================
    # REST Refresh Loops
    # ============================================

    async def refresh_funding(self) -> Optional[FundingBatch]:
        """
        Run one funding refresh round and apply the merge policy.

        Returns:
            The batch, or None when the whole round failed
        """
        try:
            await self.ensure_markets()
            batch = await self.adapter.fetch_funding(self.rest)
        except ConnectorError as e:
            self.stats.record_error(self.name, "funding")
            log_event("funding", self.name, "error", f"refresh failed: {e}", {"category": e.category})
            return None

        if batch.success:
            self.stats.record_success(self.name, "funding", batch.success)
        if batch.errors:
            self.stats.record_error(self.name, "funding", batch.errors)
        if batch.skipped:
            self.stats.record_skipped(self.name, "funding", batch.skipped)

        data = {"success": batch.success, "errors": batch.errors, "skipped": batch.skipped}
        if batch.error_categories:
            data["categories"] = batch.error_categories

        if batch.success >= 1:
            self.store.replace_funding(self.name, batch.records)
            log_event("funding", self.name, "info", "funding map updated", data)
        else:
            log_event("funding", self.name, "warning", "no funding records, keeping previous map", data)
        return batch

    async def poll_tickers(self) -> Optional[TickerBatch]:
        """
        Run one REST ticker poll. A structurally valid response replaces the
        whole ticker map; any failure keeps the previous map.
        """
        try:
            await self.ensure_markets()
            batch = await self.adapter.fetch_tickers(self.rest)
        except ConnectorError as e:
            self.stats.record_error(self.name, "tickers")
            self.last_error_category = e.category
            log_event("tickers", self.name, "error", f"poll failed: {e}", {"category": e.category})
            self._record_poll_failure(e.category)
            return None

        self.store.replace_tickers(self.name, batch.tickers)
        self.stats.record_success(self.name, "tickers", len(batch.tickers))
        if batch.skipped:
            self.stats.record_skipped(self.name, "tickers", batch.skipped)
        self.last_message_at = self._clock()
        if self._polled_only():
            self.reconnect_attempt = 0
        if self.state != ConnectionState.CONNECTED and self.state != ConnectionState.CLOSED:
            self.connected_at = self.last_message_at
            self._set_state(ConnectionState.CONNECTED, mode="poll")
        return batch

    def _polled_only(self) -> bool:
        return not self.adapter.supports("ticker_stream")

    def _record_poll_failure(self, category: str) -> None:
        """A failed poll degrades a polled session; max_reconnect_attempts failures in a row disconnect it."""
        if not self._polled_only() or self.state == ConnectionState.CLOSED:
            return
        self.reconnect_attempt += 1
        if self.reconnect_attempt >= self.settings.max_reconnect_attempts:
            self._set_state(ConnectionState.DISCONNECTED, failed_polls=self.reconnect_attempt, category=category)
        else:
            self._set_state(ConnectionState.RECONNECTING, failed_polls=self.reconnect_attempt, category=category)

    async def _funding_loop(self) -> None:
        interval = self.settings.fetch_interval_ms / 1000
        while self._running.is_set():
            try:
                await self.refresh_funding()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"{self.name} funding loop error: {e}")
            await self._sleep(interval)

    async def _poll_loop(self) -> None:
        interval = self.settings.ticker_poll_interval_ms / 1000
        while self._running.is_set():
            try:
                await self.poll_tickers()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"{self.name} ticker poll error: {e}")
            await self._sleep(interval)

    async def _market_loop(self) -> None:
        interval = self.settings.market_refresh_interval_ms / 1000
        while self._running.is_set():
            await self._sleep(interval)
            try:
                await self.refresh_markets()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"{self.name} market refresh error: {e}")

    # ============================================
    # Status
    # ============================================

    def status(self) -> Dict[str, Any]:
        """
        Connection status snapshot for the HTTP layer.

        Example:
            >>> session.status()["state"]
            'connected'
        """
        now = self._clock()
        counts = self.store.counts(self.name)
        return {
            "exchange": self.name,
            "state": self.state.value,
            "connected": self.state == ConnectionState.CONNECTED,
            "transport": "stream" if self.adapter.supports("ticker_stream") else "poll",
            "reconnect_attempts": self.reconnect_attempt,
            "total_reconnects": self.total_reconnects,
            "last_message_age_s": round(now - self.last_message_at, 3) if self.last_message_at else None,
            "connection_uptime_s": (
                round(now - self.connected_at, 3)
                if self.connected_at and self.state == ConnectionState.CONNECTED else 0
            ),
            "cached_tickers": counts["tickers"],
            "cached_funding": counts["funding"],
            "last_error_type": self.last_error_category,
            "consecutive_errors": self.consecutive_malformed,
            "markets": len(self.adapter.markets),
            "counters": self.stats.for_exchange(self.name),
        }

    def __repr__(self) -> str:
        return f"<ConnectorSession(exchange='{self.name}', state={self.state.value})>"
