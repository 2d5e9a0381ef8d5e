"""
OKX Exchange Adapter

Protocol adapter for OKX USDT-margined perpetual swaps.

OKX is REST-polled: tickers for every swap come back from a single request
every ticker_poll_interval_ms, and funding is fetched per instrument in
rate-limited batches every fetch_interval_ms.
"""

from typing import Dict

from core.exchange_interface import ExchangeAdapter
from core.http_client import RestClient
from core.schemas import FundingBatch, TickerBatch
from .api_client import OKXAPIClient


class OKXAdapter(ExchangeAdapter):
    """OKX adapter: REST tickers, REST funding."""

    name = "okx"
    capabilities = {
        "ticker_stream": False,
        "ticker_poll": True,
        "funding_poll": True,
    }

    async def load_markets(self, rest: RestClient) -> Dict[str, str]:
        self.markets = await OKXAPIClient(rest).get_markets()
        return self.markets

    async def fetch_tickers(self, rest: RestClient) -> TickerBatch:
        return await OKXAPIClient(rest).get_tickers(self.markets)

    async def fetch_funding(self, rest: RestClient) -> FundingBatch:
        client = OKXAPIClient(rest)
        items = list(self.markets.items())
        return await self.fetch_each(items, lambda item: client.get_funding_rate(*item))
