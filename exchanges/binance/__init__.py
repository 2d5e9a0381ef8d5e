"""
Binance Exchange Adapter

Protocol adapter for Binance Futures (USD-M) perpetuals.

API Documentation:
    https://binance-docs.github.io/apidocs/futures/en/

Wire Contract:
    WebSocket:
        wss://fstream.binance.com/stream?streams=!ticker@arr
        No subscribe frame: the stream is selected in the URL. Frames are
        either combined ({"stream": "!ticker@arr", "data": [...]}) or a bare
        array of 24h tickers:
            {"e": "24hrTicker", "E": 1717000000000, "s": "BTCUSDT",
             "c": "67000.1", "b": "67000.0", "a": "67000.2",
             "v": "1234.5", "q": "82700000.0", ...}
        The server sends protocol pings; aiohttp answers them (autoping).

    REST:
        See exchanges/binance/api_client.py
"""

from typing import Any, Dict

from core.errors import ProtocolError
from core.exchange_interface import ExchangeAdapter, TickerLookup, to_float, to_int
from core.http_client import RestClient
from core.schemas import FrameResult, FundingBatch, TickerSnapshot
from .api_client import BinanceAPIClient


class BinanceAdapter(ExchangeAdapter):
    """
    Binance USD-M adapter: WebSocket tickers, REST funding.

    Example:
        >>> adapter = BinanceAdapter(settings.connector_settings("binance"))
        >>> adapter.parse_message([{"s": "BTCUSDT", "c": "100", "E": 1}], lambda s: None)
    """

    name = "binance"
    capabilities = {
        "ticker_stream": True,
        "ticker_poll": False,
        "funding_poll": True,
    }

    async def load_markets(self, rest: RestClient) -> Dict[str, str]:
        self.markets = await BinanceAPIClient(rest).get_markets()
        return self.markets

    def parse_message(self, payload: Any, previous: TickerLookup) -> FrameResult:
        if isinstance(payload, dict) and "data" in payload:
            data = payload["data"]
        elif isinstance(payload, dict) and "result" in payload:
            return FrameResult(control=True)
        else:
            data = payload

        if not isinstance(data, list):
            raise ProtocolError(f"Unexpected Binance frame: {str(payload)[:100]}")

        tickers = []
        for item in data:
            canonical = self.markets.get(item.get("s")) if isinstance(item, dict) else None
            if canonical is None:
                continue
            tickers.append(
                TickerSnapshot(
                    exchange=self.name,
                    symbol=canonical,
                    bid=to_float(item.get("b")),
                    ask=to_float(item.get("a")),
                    last=to_float(item.get("c")),
                    base_volume=to_float(item.get("v")) or 0.0,
                    quote_volume=to_float(item.get("q")) or 0.0,
                    timestamp=to_int(item.get("E")) or 0,
                )
            )
        return FrameResult(tickers=tickers)

    async def fetch_funding(self, rest: RestClient) -> FundingBatch:
        return await BinanceAPIClient(rest).get_funding(self.markets)
