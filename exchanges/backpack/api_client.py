"""
Backpack REST API Client

Endpoint helpers for Backpack Exchange perpetual markets (`*_PERP`).

API Documentation:
    https://docs.backpack.exchange/

Endpoints Used:
    GET /api/v1/markets                   - every market, spot and perp
    GET /api/v1/tickers                   - 24h tickers (REST fallback)
    GET /api/v1/fundingRates?symbol=...   - funding history, newest first

A 400 on fundingRates means funding is not offered for that market; it is
counted as skipped, not as an error.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from core.errors import DataValidationError
from core.exchange_interface import to_float, to_int
from core.http_client import RestClient
from core.logging import get_logger
from core.schemas import FundingSnapshot, TickerBatch, TickerSnapshot
from core.symbols import normalize_backpack


DEFAULT_FUNDING_INTERVAL_HOURS = 8.0


def to_epoch_ms(value: Any) -> Optional[int]:
    """Accept epoch milliseconds or an ISO-8601 timestamp."""
    number = to_int(value)
    if number is not None:
        return number
    if isinstance(value, str):
        try:
            return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            return None
    return None


def parse_ticker(row: Dict[str, Any], canonical: str) -> TickerSnapshot:
    """
    Normalize a Backpack ticker, from either the stream (short keys) or REST.

    Stream Format:
        {"e": "ticker", "s": "SOL_USDC_PERP", "c": "150.1", "b": "150.0", "a": "150.2",
         "v": "1234", "V": "185000", "E": 1717000000000000}
    """
    last = to_float(row.get("c", row.get("lastPrice")))
    return TickerSnapshot(
        exchange="backpack",
        symbol=canonical,
        bid=to_float(row.get("b", row.get("bidPrice"))),
        ask=to_float(row.get("a", row.get("askPrice"))),
        last=last,
        base_volume=to_float(row.get("v", row.get("volume"))) or 0.0,
        quote_volume=to_float(row.get("V", row.get("quoteVolume"))) or 0.0,
        timestamp=normalize_event_time(to_int(row.get("E", row.get("closeTime")))),
    )


def normalize_event_time(value: Optional[int]) -> int:
    """Backpack stream event times are microseconds; fold them to milliseconds."""
    if not value:
        return 0
    return value // 1000 if value > 10**14 else value


class BackpackAPIClient:
    """Backpack endpoint helpers."""

    def __init__(self, rest: RestClient):
        self.rest = rest
        self.logger = get_logger(__name__)

    async def get_markets(self) -> Dict[str, str]:
        data = await self.rest.get_json("/api/v1/markets")
        if not isinstance(data, list):
            raise DataValidationError("Backpack markets response is not a list")
        markets: Dict[str, str] = {}
        for market in data:
            native = str(market.get("symbol", "")).upper() if isinstance(market, dict) else ""
            canonical = normalize_backpack(native)
            if canonical is not None:
                markets[native] = str(canonical)
        self.logger.debug(f"Backpack markets: {len(markets)} PERP of {len(data)}")
        return markets

    async def get_tickers(self, markets: Dict[str, str]) -> TickerBatch:
        data = await self.rest.get_json("/api/v1/tickers")
        if not isinstance(data, list):
            raise DataValidationError("Backpack tickers response is not a list")
        batch = TickerBatch()
        for row in data:
            native = str(row.get("symbol", "")).upper() if isinstance(row, dict) else ""
            canonical = markets.get(native)
            if canonical is None:
                batch.skipped += 1
                continue
            batch.tickers.append(parse_ticker(row, canonical))
        return batch

    async def get_funding_rate(self, native: str, canonical: str) -> Optional[FundingSnapshot]:
        """
        Latest funding entry for one market.

        Response Format:
            [{"symbol": "SOL_USDC_PERP", "fundingRate": "0.0000125",
              "intervalEndTimestamp": "2024-05-30T08:00:00"}]
        """
        try:
            data = await self.rest.get_json("/api/v1/fundingRates", {"symbol": native})
        except DataValidationError as e:
            if e.status == 400:
                self.logger.warning(f"Backpack funding not supported for {native}")
                return None
            raise
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            return None
        latest = data[0]
        rate = to_float(latest.get("fundingRate"))
        if rate is None:
            return None
        settled_at = to_epoch_ms(latest.get("fundingTime", latest.get("intervalEndTimestamp")))
        interval_ms = int(DEFAULT_FUNDING_INTERVAL_HOURS * 3_600_000)
        return FundingSnapshot(
            exchange="backpack",
            symbol=canonical,
            funding_rate=rate,
            next_funding_time_ms=settled_at + interval_ms if settled_at else None,
            funding_interval_hours=DEFAULT_FUNDING_INTERVAL_HOURS,
        )
