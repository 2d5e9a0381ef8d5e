"""
EdgeX Exchange Adapter

Protocol adapter for EdgeX perpetual contracts.

Wire Contract:
    WebSocket: wss://quote.edgex.exchange/api/v1/public/ws

    Subscribe:
        {"type": "subscribe", "channel": "ticker.all"}
        {"type": "subscribe", "channel": "depth.<contractId>.15"}   (one per contract)

    Heartbeat (server-initiated, must be answered or the server disconnects):
        {"type": "ping", "time": "1717000000000"}  ->  {"type": "pong", "time": "1717000000000"}

    Data frames:
        {"type": "quote-event", "channel": "ticker.all",
         "content": {"data": [{"contractId": "10000001", "lastPrice": "67000.1",
                               "size": "120.5", "value": "8073000.0"}]}}
        {"type": "quote-event", "channel": "depth.10000001.15",
         "content": {"data": [{"contractId": "10000001",
                               "bids": [["67000.0", "1.2"]], "asks": [["67000.2", "0.8"]]}]}}

    Ticker frames carry the last price, depth frames the best bid/ask; each
    merges into the stored snapshot for the contract.
"""

import time
from typing import Any, Dict, List, Optional

from core.errors import ProtocolError
from core.exchange_interface import ExchangeAdapter, TickerLookup, to_float, to_int
from core.http_client import RestClient
from core.schemas import FrameResult, FundingBatch, TickerSnapshot
from core.symbols import edgex_normalizer
from .api_client import EdgeXAPIClient, EdgeXContract


def best_level(levels: Any) -> Optional[float]:
    """Price of the first level, accepting [[price, size]] or [{"price", "size"}]."""
    if not isinstance(levels, list) or not levels:
        return None
    top = levels[0]
    if isinstance(top, (list, tuple)) and top:
        return to_float(top[0])
    if isinstance(top, dict):
        return to_float(top.get("price"))
    return None


class EdgeXAdapter(ExchangeAdapter):
    """EdgeX adapter: WebSocket ticker + depth, per-contract REST funding."""

    name = "edgex"
    capabilities = {
        "ticker_stream": True,
        "ticker_poll": False,
        "funding_poll": True,
    }

    def __init__(self, settings):
        super().__init__(settings)
        self.normalizer = edgex_normalizer(
            treat_usd_as_usdt=settings.treat_usd_as_usdt,
            include_by_name_suffix=settings.include_by_name_suffix,
        )
        self.contracts: Dict[str, EdgeXContract] = {}

    async def load_markets(self, rest: RestClient) -> Dict[str, str]:
        self.contracts = await EdgeXAPIClient(rest, self.normalizer).get_contracts()
        self.markets = {cid: c.symbol for cid, c in self.contracts.items()}
        return self.markets

    def subscribe_messages(self) -> List[Dict[str, Any]]:
        frames = [{"type": "subscribe", "channel": "ticker.all"}]
        frames.extend({"type": "subscribe", "channel": f"depth.{cid}.15"} for cid in self.contracts)
        return frames

    def parse_message(self, payload: Any, previous: TickerLookup) -> FrameResult:
        if not isinstance(payload, dict):
            raise ProtocolError(f"Unexpected EdgeX frame: {str(payload)[:100]}")

        msg_type = payload.get("type")
        if msg_type == "ping":
            return FrameResult(reply={"type": "pong", "time": payload.get("time")}, control=True)
        if msg_type != "quote-event":
            if msg_type == "error":
                self.logger.warning(f"EdgeX error frame: {payload.get('content')}")
            return FrameResult(control=True)

        channel = str(payload.get("channel", ""))
        content = payload.get("content")
        rows = content.get("data") if isinstance(content, dict) else None
        if not isinstance(rows, list):
            raise ProtocolError(f"EdgeX {channel} frame has no content.data")

        tickers = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            canonical = self.markets.get(str(row.get("contractId")))
            if canonical is None:
                continue
            prior = previous(canonical)
            if channel.startswith("ticker."):
                tickers.append(self._with_last(canonical, row, prior))
            elif channel.startswith("depth."):
                tickers.append(self._with_book(canonical, row, prior))
        return FrameResult(tickers=tickers)

    def _with_last(self, canonical: str, row: Dict[str, Any], prior: Optional[TickerSnapshot]) -> TickerSnapshot:
        last = to_float(row.get("lastPrice"))
        return TickerSnapshot(
            exchange=self.name,
            symbol=canonical,
            bid=prior.bid if prior else None,
            ask=prior.ask if prior else None,
            last=last if last is not None else (prior.last if prior else None),
            base_volume=to_float(row.get("size")) or (prior.base_volume if prior else 0.0),
            quote_volume=to_float(row.get("value")) or (prior.quote_volume if prior else 0.0),
            timestamp=to_int(row.get("endTime")) or int(time.time() * 1000),
        )

    def _with_book(self, canonical: str, row: Dict[str, Any], prior: Optional[TickerSnapshot]) -> TickerSnapshot:
        bid = best_level(row.get("bids"))
        ask = best_level(row.get("asks"))
        return TickerSnapshot(
            exchange=self.name,
            symbol=canonical,
            bid=bid if bid is not None else (prior.bid if prior else None),
            ask=ask if ask is not None else (prior.ask if prior else None),
            last=prior.last if prior else None,
            base_volume=prior.base_volume if prior else 0.0,
            quote_volume=prior.quote_volume if prior else 0.0,
            timestamp=int(time.time() * 1000),
        )

    async def fetch_funding(self, rest: RestClient) -> FundingBatch:
        client = EdgeXAPIClient(rest, self.normalizer)
        return await self.fetch_each(list(self.contracts.values()), client.get_funding_rate)
