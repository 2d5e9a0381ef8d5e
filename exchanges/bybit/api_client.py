"""
Bybit REST API Client

Endpoint helpers for Bybit v5 linear (USDT-margined) perpetuals.

API Documentation:
    https://bybit-exchange.github.io/docs/v5/intro

Endpoints Used:
    GET /v5/market/instruments-info?category=linear  - paginated via cursor
    GET /v5/market/tickers?category=linear           - fundingRate, nextFundingTime

Response Envelope:
    {"retCode": 0, "retMsg": "OK", "result": {...}, "time": 1717000000000}
    A non-zero retCode is a DataValidationError.
"""

from typing import Any, Dict, List, Optional

from core.errors import DataValidationError
from core.exchange_interface import to_float, to_int
from core.http_client import RestClient
from core.logging import get_logger
from core.schemas import FundingBatch, FundingSnapshot
from core.symbols import normalize_bybit


DEFAULT_FUNDING_INTERVAL_HOURS = 8.0
PAGE_LIMIT = 1000
MAX_PAGES = 20


def unwrap(payload: Any) -> Dict[str, Any]:
    """Return `result` from a v5 envelope or raise DataValidationError."""
    if not isinstance(payload, dict):
        raise DataValidationError("Bybit response is not an object")
    if payload.get("retCode", 0) != 0:
        raise DataValidationError(f"Bybit retCode {payload.get('retCode')}: {payload.get('retMsg')}")
    result = payload.get("result")
    if not isinstance(result, dict):
        raise DataValidationError("Bybit response has no 'result'")
    return result


def is_usdt_perpetual(instrument: Dict[str, Any]) -> bool:
    contract_type = str(instrument.get("contractType", "")).lower()
    return (
        ("perpetual" in contract_type or "perp" in contract_type)
        and instrument.get("quoteCoin") == "USDT"
        and instrument.get("status", "Trading") == "Trading"
    )


class BybitAPIClient:
    """
    Bybit v5 endpoint helpers.

    Attributes:
        funding_intervals: native symbol -> funding interval hours,
                           filled while loading instruments
    """

    def __init__(self, rest: RestClient):
        self.rest = rest
        self.logger = get_logger(__name__)
        self.funding_intervals: Dict[str, float] = {}

    async def get_instruments(self) -> List[Dict[str, Any]]:
        """
        Walk every page of instruments-info.

        Pagination:
            Pass result.nextPageCursor as `cursor` until it comes back empty.
        """
        instruments: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        for _ in range(MAX_PAGES):
            params = {"category": "linear", "limit": PAGE_LIMIT}
            if cursor:
                params["cursor"] = cursor
            result = unwrap(await self.rest.get_json("/v5/market/instruments-info", params))
            page = result.get("list")
            if not isinstance(page, list):
                raise DataValidationError("instruments-info has no 'list'")
            instruments.extend(i for i in page if isinstance(i, dict))
            cursor = result.get("nextPageCursor")
            if not cursor:
                break
        return instruments

    async def get_markets(self) -> Dict[str, str]:
        markets: Dict[str, str] = {}
        for instrument in await self.get_instruments():
            if not is_usdt_perpetual(instrument):
                continue
            native = instrument.get("symbol", "")
            canonical = normalize_bybit(native)
            if canonical is None:
                continue
            markets[native] = str(canonical)
            minutes = to_float(instrument.get("fundingInterval"))
            if minutes:
                self.funding_intervals[native] = minutes / 60
        self.logger.debug(f"Bybit instruments: {len(markets)} USDT perpetuals")
        return markets

    async def get_funding(
        self,
        markets: Dict[str, str],
        intervals: Dict[str, float],
    ) -> FundingBatch:
        """
        Funding for every known market from the linear tickers endpoint.

        Response Format:
            {"result": {"list": [{"symbol": "BTCUSDT", "fundingRate": "0.0001",
                                  "nextFundingTime": "1717027200000", ...}]}}
        """
        result = unwrap(await self.rest.get_json("/v5/market/tickers", {"category": "linear"}))
        rows = result.get("list")
        if not isinstance(rows, list):
            raise DataValidationError("tickers response has no 'list'")

        batch = FundingBatch()
        for row in rows:
            native = row.get("symbol") if isinstance(row, dict) else None
            canonical = markets.get(native)
            rate = to_float(row.get("fundingRate")) if canonical else None
            if canonical is None or rate is None:
                batch.skipped += 1
                continue
            batch.records.append(
                FundingSnapshot(
                    exchange="bybit",
                    symbol=canonical,
                    funding_rate=rate,
                    next_funding_time_ms=to_int(row.get("nextFundingTime")) or None,
                    funding_interval_hours=intervals.get(native, DEFAULT_FUNDING_INTERVAL_HOURS),
                )
            )
        return batch
