"""
Hyperliquid REST API Client

Hyperliquid exposes everything through a single POST endpoint. One
`metaAndAssetCtxs` request returns the perp universe together with the
live context (prices, volume, funding) of every asset, index-aligned.

API Documentation:
    https://hyperliquid.gitbook.io/hyperliquid-docs/for-developers/api

Request:
    POST /info  {"type": "metaAndAssetCtxs"}

Response Format:
    [
        {"universe": [{"name": "BTC", "szDecimals": 5, "maxLeverage": 50}, ...]},
        [{"midPx": "67000.5", "markPx": "67001.0", "impactPxs": ["67000.0", "67001.0"],
          "dayNtlVlm": "1234567.8", "dayBaseVlm": "18.4", "funding": "0.0000125", ...}, ...]
    ]

Funding is paid hourly, on the hour.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from core.errors import DataValidationError
from core.exchange_interface import to_float
from core.http_client import RestClient
from core.logging import get_logger
from core.schemas import FundingBatch, FundingSnapshot, TickerBatch, TickerSnapshot
from core.symbols import normalize_hyperliquid


FUNDING_INTERVAL_HOURS = 1.0
HOUR_MS = 3_600_000


@dataclass(frozen=True)
class AssetContext:
    name: str
    symbol: Optional[str]
    ctx: Dict[str, Any]


def next_hour_ms(now_ms: int) -> int:
    """
    Top of the next hour.

    Example:
        >>> next_hour_ms(3_600_000 * 5 + 1)
        21600000
    """
    return (now_ms // HOUR_MS + 1) * HOUR_MS


def parse_meta_and_ctxs(payload: Any) -> List[AssetContext]:
    """
    Pair every universe entry with its asset context.

    Raises:
        DataValidationError: If the response is not [meta, ctxs] with a universe list
    """
    if not isinstance(payload, list) or len(payload) < 2:
        raise DataValidationError("metaAndAssetCtxs is not a [meta, ctxs] pair")
    meta, ctxs = payload[0], payload[1]
    universe = meta.get("universe") if isinstance(meta, dict) else None
    if not isinstance(universe, list) or not isinstance(ctxs, list):
        raise DataValidationError("metaAndAssetCtxs has no universe / asset contexts")

    assets = []
    for entry, ctx in zip(universe, ctxs):
        if not isinstance(entry, dict) or not isinstance(ctx, dict):
            continue
        name = str(entry.get("name", ""))
        canonical = normalize_hyperliquid(name) if not entry.get("isDelisted") else None
        assets.append(AssetContext(name=name, symbol=str(canonical) if canonical else None, ctx=ctx))
    return assets


def parse_ticker(asset: AssetContext, now_ms: int) -> Optional[TickerSnapshot]:
    if asset.symbol is None:
        return None
    ctx = asset.ctx
    impact = ctx.get("impactPxs")
    bid, ask = (to_float(impact[0]), to_float(impact[1])) if isinstance(impact, list) and len(impact) == 2 else (None, None)
    last = to_float(ctx.get("midPx")) or to_float(ctx.get("markPx"))
    if last is None and bid is None:
        return None
    return TickerSnapshot(
        exchange="hyperliquid",
        symbol=asset.symbol,
        bid=bid,
        ask=ask,
        last=last,
        base_volume=to_float(ctx.get("dayBaseVlm")) or 0.0,
        quote_volume=to_float(ctx.get("dayNtlVlm")) or 0.0,
        timestamp=now_ms,
    )


def parse_funding(asset: AssetContext, now_ms: int) -> Optional[FundingSnapshot]:
    if asset.symbol is None:
        return None
    rate = to_float(asset.ctx.get("funding"))
    if rate is None:
        return None
    return FundingSnapshot(
        exchange="hyperliquid",
        symbol=asset.symbol,
        funding_rate=rate,
        next_funding_time_ms=next_hour_ms(now_ms),
        funding_interval_hours=FUNDING_INTERVAL_HOURS,
    )


class HyperliquidAPIClient:
    """
    Thin wrapper around POST /info.

    Example:
        >>> client = HyperliquidAPIClient(rest)
        >>> markets, tickers = await client.get_tickers(now_ms)
    """

    def __init__(self, rest: RestClient):
        self.rest = rest
        self.logger = get_logger(__name__)

    async def get_assets(self) -> List[AssetContext]:
        return parse_meta_and_ctxs(await self.rest.post_json("/info", {"type": "metaAndAssetCtxs"}))

    async def get_markets(self) -> Dict[str, str]:
        markets = {a.name: a.symbol for a in await self.get_assets() if a.symbol}
        self.logger.debug(f"Hyperliquid universe: {len(markets)} perps")
        return markets

    async def get_tickers(self, now_ms: int) -> Tuple[Dict[str, str], TickerBatch]:
        """Tickers for the whole universe, plus the universe itself (it can grow between polls)."""
        assets = await self.get_assets()
        batch = TickerBatch()
        for asset in assets:
            ticker = parse_ticker(asset, now_ms)
            if ticker is None:
                batch.skipped += 1
            else:
                batch.tickers.append(ticker)
        return {a.name: a.symbol for a in assets if a.symbol}, batch

    async def get_funding(self, now_ms: int) -> FundingBatch:
        batch = FundingBatch()
        for asset in await self.get_assets():
            record = parse_funding(asset, now_ms)
            if record is None:
                batch.skipped += 1
            else:
                batch.records.append(record)
        return batch
