"""
Backpack Exchange Adapter

Protocol adapter for Backpack perpetual markets.

Wire Contract:
    WebSocket: wss://ws.backpack.exchange

    Subscribe:
        {"method": "SUBSCRIBE", "params": ["ticker.SOL_USDC_PERP", ...]}

    Ticker frames:
        {"stream": "ticker.SOL_USDC_PERP", "data": {"c": "...", "b": "...", "a": "...", ...}}

    Heartbeat:
        Protocol-level ping every 30s (heartbeat_frame returns None).
"""

from typing import Any, Dict, List

from core.errors import ProtocolError
from core.exchange_interface import ExchangeAdapter, TickerLookup
from core.http_client import RestClient
from core.schemas import FrameResult, FundingBatch, TickerBatch
from .api_client import BackpackAPIClient, parse_ticker


class BackpackAdapter(ExchangeAdapter):
    """
    Backpack adapter: WebSocket tickers, REST funding.

    fetch_tickers is kept as a REST fallback so the ticker map can be
    rebuilt without the stream.
    """

    name = "backpack"
    capabilities = {
        "ticker_stream": True,
        "ticker_poll": False,
        "ticker_snapshot": True,
        "funding_poll": True,
    }

    async def load_markets(self, rest: RestClient) -> Dict[str, str]:
        self.markets = await BackpackAPIClient(rest).get_markets()
        return self.markets

    def subscribe_messages(self) -> List[Dict[str, Any]]:
        streams = [f"ticker.{native}" for native in self.markets]
        size = self.settings.subscribe_batch_size
        return [
            {"method": "SUBSCRIBE", "params": streams[i:i + size]}
            for i in range(0, len(streams), size)
        ]

    def parse_message(self, payload: Any, previous: TickerLookup) -> FrameResult:
        if not isinstance(payload, dict):
            raise ProtocolError(f"Unexpected Backpack frame: {str(payload)[:100]}")

        stream = payload.get("stream")
        if stream is None:
            # Subscription acks and error replies carry no stream
            if "error" in payload and payload["error"]:
                self.logger.warning(f"Backpack replied with error: {payload['error']}")
            return FrameResult(control=True)

        stream_type, _, native = str(stream).partition(".")
        if stream_type != "ticker":
            return FrameResult(control=True)

        data = payload.get("data")
        if not isinstance(data, dict):
            raise ProtocolError(f"Backpack {stream} frame has no data")
        canonical = self.markets.get(native.upper())
        if canonical is None:
            return FrameResult()
        return FrameResult(tickers=[parse_ticker(data, canonical)])

    async def fetch_tickers(self, rest: RestClient) -> TickerBatch:
        return await BackpackAPIClient(rest).get_tickers(self.markets)

    async def fetch_funding(self, rest: RestClient) -> FundingBatch:
        client = BackpackAPIClient(rest)
        items = list(self.markets.items())
        return await self.fetch_each(items, lambda item: client.get_funding_rate(*item))
