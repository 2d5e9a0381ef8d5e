"""
OKX REST API Client

Endpoint helpers for OKX USDT-margined perpetual swaps.

API Documentation:
    https://www.okx.com/docs-v5/en/

Endpoints Used:
    GET /api/v5/public/instruments?instType=SWAP     - live swap instruments
    GET /api/v5/market/tickers?instType=SWAP         - all swap tickers in one call
    GET /api/v5/public/funding-rate?instId=...       - one instrument per call

Response Envelope:
    {"code": "0", "msg": "", "data": [...]}
    Any code other than "0" is a DataValidationError.
"""

from typing import Any, Dict, List, Optional

from core.errors import DataValidationError
from core.exchange_interface import to_float, to_int
from core.http_client import RestClient
from core.logging import get_logger
from core.schemas import FundingSnapshot, TickerBatch, TickerSnapshot
from core.symbols import normalize_okx


DEFAULT_FUNDING_INTERVAL_HOURS = 8.0
HOUR_MS = 3_600_000


def unwrap(payload: Any) -> List[Any]:
    if not isinstance(payload, dict):
        raise DataValidationError("OKX response is not an object")
    if str(payload.get("code")) != "0":
        raise DataValidationError(f"OKX code {payload.get('code')}: {payload.get('msg')}")
    data = payload.get("data")
    if not isinstance(data, list):
        raise DataValidationError("OKX response has no 'data' list")
    return data


def funding_interval_hours(funding_time: Optional[int], next_funding_time: Optional[int]) -> float:
    """
    Interval between two consecutive settlements, in hours.

    Example:
        >>> funding_interval_hours(1717027200000, 1717056000000)
        8.0
    """
    if funding_time and next_funding_time and next_funding_time > funding_time:
        return (next_funding_time - funding_time) / HOUR_MS
    return DEFAULT_FUNDING_INTERVAL_HOURS


class OKXAPIClient:
    """OKX v5 endpoint helpers."""

    def __init__(self, rest: RestClient):
        self.rest = rest
        self.logger = get_logger(__name__)

    async def get_markets(self) -> Dict[str, str]:
        rows = unwrap(await self.rest.get_json("/api/v5/public/instruments", {"instType": "SWAP"}))
        markets: Dict[str, str] = {}
        for row in rows:
            if not isinstance(row, dict):
                continue
            if row.get("settleCcy") != "USDT" or row.get("state", "live") != "live":
                continue
            canonical = normalize_okx(row.get("instId", ""))
            if canonical is not None:
                markets[row["instId"]] = str(canonical)
        self.logger.debug(f"OKX instruments: {len(markets)} USDT swaps")
        return markets

    async def get_tickers(self, markets: Dict[str, str]) -> TickerBatch:
        """
        All swap tickers in one request.

        Response Format:
            {"code": "0", "data": [{"instId": "BTC-USDT-SWAP", "last": "67000.1",
              "bidPx": "67000", "askPx": "67000.2", "volCcy24h": "1234.5",
              "vol24h": "123450", "ts": "1717000000000"}]}
        """
        rows = unwrap(await self.rest.get_json("/api/v5/market/tickers", {"instType": "SWAP"}))
        batch = TickerBatch()
        for row in rows:
            canonical = markets.get(row.get("instId")) if isinstance(row, dict) else None
            if canonical is None:
                batch.skipped += 1
                continue
            base_volume = to_float(row.get("volCcy24h")) or 0.0
            last = to_float(row.get("last"))
            batch.tickers.append(
                TickerSnapshot(
                    exchange="okx",
                    symbol=canonical,
                    bid=to_float(row.get("bidPx")),
                    ask=to_float(row.get("askPx")),
                    last=last,
                    base_volume=base_volume,
                    quote_volume=base_volume * last if last else 0.0,
                    timestamp=to_int(row.get("ts")) or 0,
                )
            )
        return batch

    async def get_funding_rate(self, inst_id: str, canonical: str) -> Optional[FundingSnapshot]:
        """
        Funding for one instrument.

        Returns:
            FundingSnapshot, or None when OKX returned no usable rate (skipped)
        """
        rows = unwrap(await self.rest.get_json("/api/v5/public/funding-rate", {"instId": inst_id}))
        if not rows or not isinstance(rows[0], dict):
            return None
        item = rows[0]
        rate = to_float(item.get("fundingRate"))
        if rate is None:
            return None
        funding_time = to_int(item.get("fundingTime"))
        next_funding_time = to_int(item.get("nextFundingTime"))
        return FundingSnapshot(
            exchange="okx",
            symbol=canonical,
            funding_rate=rate,
            next_funding_time_ms=funding_time or None,
            funding_interval_hours=funding_interval_hours(funding_time, next_funding_time),
        )
