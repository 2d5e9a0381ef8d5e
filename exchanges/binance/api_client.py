"""
Binance REST API Client

Thin endpoint layer over the shared RestClient for Binance Futures (USD-M).
It handles:
- Endpoint paths and query parameters
- Validation of response structure
- Normalization to our schemas

API Documentation:
    https://binance-docs.github.io/apidocs/futures/en/

Endpoints Used:
    GET /fapi/v1/exchangeInfo   - Tradable perpetual contracts
    GET /fapi/v1/premiumIndex   - Mark price, last funding rate, next funding time
    GET /fapi/v1/fundingInfo    - Per-symbol funding interval (only adjusted symbols)

Usage:
    client = BinanceAPIClient(rest)
    markets = await client.get_markets()
    batch = await client.get_funding(markets)
"""

from typing import Any, Dict, List

from core.errors import DataValidationError
from core.exchange_interface import to_float, to_int
from core.http_client import RestClient
from core.logging import get_logger
from core.schemas import FundingBatch, FundingSnapshot
from core.symbols import normalize_binance


DEFAULT_FUNDING_INTERVAL_HOURS = 8.0


def parse_exchange_info(payload: Any) -> Dict[str, str]:
    """
    Extract TRADING perpetual contracts from /fapi/v1/exchangeInfo.

    Response Format:
        {"symbols": [{"symbol": "BTCUSDT", "status": "TRADING",
                      "contractType": "PERPETUAL", "quoteAsset": "USDT", ...}]}

    Returns:
        Dict native symbol -> canonical symbol string

    Raises:
        DataValidationError: If "symbols" is missing
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("symbols"), list):
        raise DataValidationError("exchangeInfo response has no 'symbols' list")

    markets: Dict[str, str] = {}
    for item in payload["symbols"]:
        if not isinstance(item, dict):
            continue
        if item.get("status") != "TRADING" or item.get("contractType", "PERPETUAL") != "PERPETUAL":
            continue
        canonical = normalize_binance(item.get("symbol", ""))
        if canonical is not None:
            markets[item["symbol"]] = str(canonical)
    return markets


def parse_funding(
    premium_index: Any,
    funding_info: Any,
    markets: Dict[str, str],
) -> FundingBatch:
    """
    Combine premiumIndex and fundingInfo into one FundingBatch.

    premiumIndex Format:
        [{"symbol": "BTCUSDT", "markPrice": "...", "lastFundingRate": "0.00010000",
          "nextFundingTime": 1597392000000, ...}]

    fundingInfo Format:
        [{"symbol": "BLZUSDT", "fundingIntervalHours": 4, ...}]

    Symbols missing from fundingInfo use the default 8h interval. Entries
    not in `markets` or without a numeric rate are counted as skipped.
    """
    if not isinstance(premium_index, list):
        raise DataValidationError("premiumIndex response is not a list")

    intervals: Dict[str, float] = {}
    if isinstance(funding_info, list):
        for item in funding_info:
            if isinstance(item, dict) and to_float(item.get("fundingIntervalHours")):
                intervals[item.get("symbol")] = to_float(item["fundingIntervalHours"])

    batch = FundingBatch()
    for item in premium_index:
        if not isinstance(item, dict):
            batch.skipped += 1
            continue
        native = item.get("symbol")
        canonical = markets.get(native)
        rate = to_float(item.get("lastFundingRate"))
        if canonical is None or rate is None:
            batch.skipped += 1
            continue
        batch.records.append(
            FundingSnapshot(
                exchange="binance",
                symbol=canonical,
                funding_rate=rate,
                next_funding_time_ms=to_int(item.get("nextFundingTime")) or None,
                funding_interval_hours=intervals.get(native, DEFAULT_FUNDING_INTERVAL_HOURS),
            )
        )
    return batch


class BinanceAPIClient:
    """
    Binance Futures endpoint helpers.

    Args:
        rest: Open RestClient pointed at https://fapi.binance.com

    Example:
        >>> client = BinanceAPIClient(rest)
        >>> markets = await client.get_markets()
        >>> markets["BTCUSDT"]
        'BTC/USDT:USDT'
    """

    def __init__(self, rest: RestClient):
        self.rest = rest
        self.logger = get_logger(__name__)

    async def get_markets(self) -> Dict[str, str]:
        data = await self.rest.get_json("/fapi/v1/exchangeInfo")
        markets = parse_exchange_info(data)
        self.logger.debug(f"Binance exchangeInfo: {len(markets)} perpetual contracts")
        return markets

    async def get_funding_info(self) -> List[Dict[str, Any]]:
        """
        Fetch funding interval overrides.

        Returns an empty list on failure: the default interval is still valid.
        """
        try:
            data = await self.rest.get_json("/fapi/v1/fundingInfo")
        except DataValidationError as e:
            self.logger.warning(f"fundingInfo unavailable, using default interval: {e}")
            return []
        return data if isinstance(data, list) else []

    async def get_funding(self, markets: Dict[str, str]) -> FundingBatch:
        premium_index = await self.rest.get_json("/fapi/v1/premiumIndex")
        funding_info = await self.get_funding_info()
        return parse_funding(premium_index, funding_info, markets)
