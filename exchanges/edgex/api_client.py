"""
EdgeX REST API Client

Endpoint helpers for EdgeX perpetual contracts.

Endpoints Used:
    GET /api/v1/public/meta/getMetaData
        {"code": "SUCCESS", "data": {
            "coinList": [{"coinId": "1000", "coinName": "USDT"}, ...],
            "contractList": [{"contractId": "10000001", "contractName": "BTCUSDT",
                              "baseCoinId": "1001", "quoteCoinId": "1000",
                              "fundingRateIntervalMin": "240", "enableTrade": true}, ...]}}

    GET /api/v1/public/funding/getLatestFundingRate?contractId=...
        {"code": "SUCCESS", "data": [{"contractId": "10000001", "fundingRate": "0.00005",
                                      "fundingTime": "1717027200000",
                                      "fundingRateIntervalMin": "240"}]}

Quote Normalization:
    Coin names containing USDT / TETHER collapse to USDT. USD is treated as
    USDT when treat_usd_as_usdt is set. Contracts whose coins are unknown
    fall back to the contract name suffix (BTCUSD -> BTC/USDT:USDT).
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from core.errors import DataValidationError
from core.exchange_interface import to_float, to_int
from core.http_client import RestClient
from core.logging import get_logger
from core.schemas import FundingSnapshot
from core.symbols import SymbolNormalizer, normalize_edgex


DEFAULT_FUNDING_INTERVAL_MIN = 240.0


@dataclass(frozen=True)
class EdgeXContract:
    contract_id: str
    name: str
    symbol: str
    funding_interval_min: Optional[float] = None


def unwrap(payload: Any) -> Any:
    if not isinstance(payload, dict):
        raise DataValidationError("EdgeX response is not an object")
    code = payload.get("code", "SUCCESS")
    if code not in ("SUCCESS", 0, "0"):
        raise DataValidationError(f"EdgeX code {code}: {payload.get('msg') or payload.get('errorParam')}")
    return payload.get("data")


def parse_metadata(data: Any, normalizer: SymbolNormalizer) -> Dict[str, EdgeXContract]:
    """
    Build contractId -> EdgeXContract from getMetaData.

    Raises:
        DataValidationError: If contractList is missing
    """
    if not isinstance(data, dict) or not isinstance(data.get("contractList"), list):
        raise DataValidationError("EdgeX metadata has no 'contractList'")

    coins = {
        str(c.get("coinId")): c.get("coinName")
        for c in data.get("coinList") or []
        if isinstance(c, dict)
    }

    contracts: Dict[str, EdgeXContract] = {}
    for c in data["contractList"]:
        if not isinstance(c, dict) or not c.get("contractId") or not c.get("contractName"):
            continue
        if c.get("enableTrade") is False:
            continue
        canonical = normalize_edgex(
            str(c["contractName"]),
            base_coin=coins.get(str(c.get("baseCoinId"))),
            quote_coin=coins.get(str(c.get("quoteCoinId"))),
            normalizer=normalizer,
        )
        if canonical is None:
            continue
        contract_id = str(c["contractId"])
        contracts[contract_id] = EdgeXContract(
            contract_id=contract_id,
            name=str(c["contractName"]),
            symbol=str(canonical),
            funding_interval_min=to_float(c.get("fundingRateIntervalMin")),
        )
    return contracts


def to_ms(value: Optional[int]) -> Optional[int]:
    """Second-resolution timestamps are promoted to milliseconds."""
    if not value:
        return None
    return value * 1000 if value < 10**12 else value


class EdgeXAPIClient:
    """EdgeX public endpoint helpers."""

    def __init__(self, rest: RestClient, normalizer: SymbolNormalizer):
        self.rest = rest
        self.normalizer = normalizer
        self.logger = get_logger(__name__)

    async def get_contracts(self) -> Dict[str, EdgeXContract]:
        data = unwrap(await self.rest.get_json("/api/v1/public/meta/getMetaData"))
        contracts = parse_metadata(data, self.normalizer)
        self.logger.debug(f"EdgeX metadata: {len(contracts)} contracts")
        return contracts

    async def get_funding_rate(self, contract: EdgeXContract) -> Optional[FundingSnapshot]:
        data = unwrap(await self.rest.get_json(
            "/api/v1/public/funding/getLatestFundingRate",
            {"contractId": contract.contract_id},
        ))
        rows = data if isinstance(data, list) else [data] if isinstance(data, dict) else []
        item = next(
            (r for r in rows if isinstance(r, dict) and str(r.get("contractId")) == contract.contract_id),
            None,
        )
        if item is None:
            return None
        rate = to_float(item.get("fundingRate"))
        if rate is None:
            return None

        interval_min = (
            to_float(item.get("fundingRateIntervalMin"))
            or contract.funding_interval_min
            or DEFAULT_FUNDING_INTERVAL_MIN
        )
        funding_time = to_ms(to_int(item.get("fundingTimestamp") or item.get("fundingTime")))
        return FundingSnapshot(
            exchange="edgex",
            symbol=contract.symbol,
            funding_rate=rate,
            next_funding_time_ms=funding_time + int(interval_min * 60_000) if funding_time else None,
            funding_interval_hours=interval_min / 60,
        )
