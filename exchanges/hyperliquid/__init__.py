"""
Hyperliquid Exchange Adapter

Hyperliquid is REST-polled. Tickers and funding both come from the
metaAndAssetCtxs snapshot, so a single request covers every perp.
See exchanges.hyperliquid.api_client for the wire format.
"""

import time
from typing import Dict

from core.exchange_interface import ExchangeAdapter
from core.http_client import RestClient
from core.schemas import FundingBatch, TickerBatch
from .api_client import HyperliquidAPIClient


class HyperliquidAdapter(ExchangeAdapter):
    """Hyperliquid adapter: REST tickers, REST funding."""

    name = "hyperliquid"
    capabilities = {
        "ticker_stream": False,
        "ticker_poll": True,
        "funding_poll": True,
    }

    async def load_markets(self, rest: RestClient) -> Dict[str, str]:
        self.markets = await HyperliquidAPIClient(rest).get_markets()
        return self.markets

    async def fetch_tickers(self, rest: RestClient) -> TickerBatch:
        markets, batch = await HyperliquidAPIClient(rest).get_tickers(int(time.time() * 1000))
        self.markets = markets
        return batch

    async def fetch_funding(self, rest: RestClient) -> FundingBatch:
        return await HyperliquidAPIClient(rest).get_funding(int(time.time() * 1000))
