"""
Bybit Exchange Adapter

Protocol adapter for Bybit v5 linear perpetuals (USDT).

Wire Contract:
    WebSocket: wss://stream.bybit.com/v5/public/linear

    Subscribe (max 100 topics per frame):
        {"op": "subscribe", "args": ["tickers.BTCUSDT", "tickers.ETHUSDT", ...]}

    Heartbeat (client-initiated, every 20s):
        {"op": "ping"}  ->  {"op": "pong", "ret_msg": "pong", ...}

    Ticker frames:
        {"topic": "tickers.BTCUSDT", "type": "snapshot" | "delta", "ts": 1717000000000,
         "data": {"symbol": "BTCUSDT", "bid1Price": "...", "ask1Price": "...",
                  "lastPrice": "...", "volume24h": "...", "turnover24h": "..."}}

    Delta frames carry only the fields that changed; missing fields keep
    the value from the stored snapshot.
"""

from typing import Any, Dict, List

from core.errors import ProtocolError
from core.exchange_interface import ExchangeAdapter, TickerLookup, to_float, to_int
from core.http_client import RestClient
from core.schemas import FrameResult, FundingBatch, TickerSnapshot
from .api_client import BybitAPIClient


class BybitAdapter(ExchangeAdapter):
    """Bybit linear adapter: WebSocket tickers, REST funding."""

    name = "bybit"
    capabilities = {
        "ticker_stream": True,
        "ticker_poll": False,
        "funding_poll": True,
    }

    def __init__(self, settings):
        super().__init__(settings)
        self.funding_intervals: Dict[str, float] = {}

    async def load_markets(self, rest: RestClient) -> Dict[str, str]:
        client = BybitAPIClient(rest)
        self.markets = await client.get_markets()
        self.funding_intervals = client.funding_intervals
        return self.markets

    def subscribe_messages(self) -> List[Dict[str, Any]]:
        topics = [f"tickers.{native}" for native in self.markets]
        size = self.settings.subscribe_batch_size
        return [
            {"op": "subscribe", "args": topics[i:i + size]}
            for i in range(0, len(topics), size)
        ]

    def heartbeat_frame(self) -> Dict[str, Any]:
        return {"op": "ping"}

    def parse_message(self, payload: Any, previous: TickerLookup) -> FrameResult:
        if not isinstance(payload, dict):
            raise ProtocolError(f"Unexpected Bybit frame: {str(payload)[:100]}")

        if payload.get("op") in ("subscribe", "pong", "ping") or payload.get("ret_msg") == "pong":
            if payload.get("op") == "subscribe" and payload.get("success") is False:
                self.logger.warning(f"Bybit subscribe rejected: {payload.get('ret_msg')}")
            return FrameResult(control=True)

        topic = payload.get("topic")
        if not isinstance(topic, str) or not topic.startswith("tickers."):
            raise ProtocolError(f"Unexpected Bybit topic: {topic}")

        data = payload.get("data")
        rows = data if isinstance(data, list) else [data]
        ts = to_int(payload.get("ts")) or 0

        tickers = []
        for row in rows:
            if not isinstance(row, dict):
                raise ProtocolError("Bybit ticker data is not an object")
            canonical = self.markets.get(row.get("symbol") or topic.split(".", 1)[1])
            if canonical is None:
                continue
            tickers.append(self._merge(canonical, row, ts, previous(canonical)))
        return FrameResult(tickers=tickers)

    def _merge(self, canonical: str, row: Dict[str, Any], ts: int, prior) -> TickerSnapshot:
        def pick(field: str, current):
            value = to_float(row.get(field))
            return value if value is not None else current

        return TickerSnapshot(
            exchange=self.name,
            symbol=canonical,
            bid=pick("bid1Price", prior.bid if prior else None),
            ask=pick("ask1Price", prior.ask if prior else None),
            last=pick("lastPrice", prior.last if prior else None),
            base_volume=pick("volume24h", prior.base_volume if prior else 0.0),
            quote_volume=pick("turnover24h", prior.quote_volume if prior else 0.0),
            timestamp=ts or (prior.timestamp if prior else 0),
        )

    async def fetch_funding(self, rest: RestClient) -> FundingBatch:
        return await BybitAPIClient(rest).get_funding(self.markets, self.funding_intervals)
