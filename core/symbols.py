"""
Symbol Normalization

Pure, deterministic mapping from exchange-native instrument identifiers to
CanonicalSymbol. Every function here either returns a CanonicalSymbol or
None ("unmappable"); callers skip unmappable records and count them.

Exchange-native formats:
    binance      BTCUSDT                -> BTC/USDT:USDT
    bybit        BTCUSDT, BTCPERP       -> BTC/USDT:USDT, BTC/USDC:USDC
    okx          BTC-USDT-SWAP          -> BTC/USDT:USDT
    backpack     BTC_USDC_PERP          -> BTC/USDC:USDC
    edgex        contract metadata (baseCoin/quoteCoin) or name suffix
    hyperliquid  BTC                    -> BTC/USDC:USDC

No function in this module performs I/O or keeps state between calls.
"""

import re
from typing import Dict, Iterable, Optional

from core.schemas import CanonicalSymbol


STABLE_QUOTES = ("USDT", "USDC", "USD")


class SymbolNormalizer:
    """
    Configurable base normalizer shared by the per-exchange functions.

    Args:
        quote_aliases: Map of quote codes to rewrite (e.g. {"USD": "USDT"})
        include_by_name_suffix: Allow deriving base/quote from a contract name
                                like "BTCUSD" when metadata is missing
        quotes: Quote codes recognised when splitting a name suffix

    Example:
        >>> n = SymbolNormalizer(quote_aliases={"USD": "USDT"})
        >>> str(n.from_parts("btc", "usd"))
        'BTC/USDT:USDT'
        >>> str(n.from_contract_name("ETHUSD"))
        'ETH/USDT:USDT'
    """

    def __init__(
        self,
        quote_aliases: Optional[Dict[str, str]] = None,
        include_by_name_suffix: bool = True,
        quotes: Iterable[str] = STABLE_QUOTES,
    ):
        self.quote_aliases = {k.upper(): v.upper() for k, v in (quote_aliases or {}).items()}
        self.include_by_name_suffix = include_by_name_suffix
        # Longest first so USDT wins over USD
        self.quotes = tuple(sorted({q.upper() for q in quotes}, key=len, reverse=True))
        self._suffix_re = re.compile(rf"^(?P<base>[A-Z0-9]+?)(?P<quote>{'|'.join(self.quotes)})$")

    def normalize_coin(self, code: Optional[str]) -> Optional[str]:
        """Uppercase a coin code and apply aliases (TETHER/USDT variants collapse to USDT)."""
        if not code:
            return None
        code = str(code).strip().upper()
        if "USDT" in code or "TETHER" in code:
            code = "USDT"
        return self.quote_aliases.get(code, code)

    def from_parts(
        self,
        base: Optional[str],
        quote: Optional[str],
        settle: Optional[str] = None,
    ) -> Optional[CanonicalSymbol]:
        base = (base or "").strip().upper()
        quote = self.normalize_coin(quote)
        if not base or not quote:
            return None
        settle = self.normalize_coin(settle) or quote
        return CanonicalSymbol(base=base, quote=quote, settle=settle)

    def from_contract_name(self, name: Optional[str]) -> Optional[CanonicalSymbol]:
        """Split "BTCUSDT" style names by known quote suffix."""
        if not self.include_by_name_suffix or not name:
            return None
        match = self._suffix_re.match(str(name).strip().upper())
        if not match:
            return None
        return self.from_parts(match.group("base"), match.group("quote"))


_plain = SymbolNormalizer()


# ============================================
# Per-Exchange Functions
# ============================================

def normalize_binance(native: str) -> Optional[CanonicalSymbol]:
    """
    Binance USDT-M / USDC-M perpetual ("BTCUSDT").

    Delivery contracts carry an underscore (BTCUSDT_250328) and are rejected.
    """
    if not native or "_" in native:
        return None
    sym = _plain.from_contract_name(native)
    if sym is None or sym.quote == "USD":
        return None
    return sym


def normalize_bybit(native: str) -> Optional[CanonicalSymbol]:
    """Bybit linear perpetual: "BTCUSDT" (USDT) or "BTCPERP" (USDC)."""
    if not native or "-" in native:
        return None
    native = native.upper()
    if native.endswith("PERP"):
        base = native[: -len("PERP")]
        return _plain.from_parts(base, "USDC") if base else None
    sym = _plain.from_contract_name(native)
    if sym is None or sym.quote == "USD":
        return None
    return sym


def normalize_okx(native: str) -> Optional[CanonicalSymbol]:
    """OKX swap instId: "BTC-USDT-SWAP". Inverse (BTC-USD-SWAP) settles in the base coin."""
    parts = (native or "").upper().split("-")
    if len(parts) != 3 or parts[2] != "SWAP":
        return None
    base, quote = parts[0], parts[1]
    if quote == "USD":
        return _plain.from_parts(base, quote, settle=base)
    return _plain.from_parts(base, quote)


def normalize_backpack(native: str) -> Optional[CanonicalSymbol]:
    """Backpack perpetual market: "SOL_USDC_PERP". Spot markets are rejected."""
    parts = (native or "").upper().split("_")
    if len(parts) != 3 or parts[2] != "PERP":
        return None
    return _plain.from_parts(parts[0], parts[1])


def normalize_hyperliquid(name: str) -> Optional[CanonicalSymbol]:
    """Hyperliquid perp universe entry: coin name, USDC-settled. "@123" spot ids are rejected."""
    if not name or name.startswith("@") or "/" in name:
        return None
    return _plain.from_parts(name, "USDC")


def edgex_normalizer(treat_usd_as_usdt: bool = True, include_by_name_suffix: bool = True) -> SymbolNormalizer:
    """Normalizer configured the way EdgeX contract metadata needs it."""
    aliases = {"USD": "USDT"} if treat_usd_as_usdt else {}
    return SymbolNormalizer(quote_aliases=aliases, include_by_name_suffix=include_by_name_suffix)


def normalize_edgex(
    contract_name: str,
    base_coin: Optional[str] = None,
    quote_coin: Optional[str] = None,
    normalizer: Optional[SymbolNormalizer] = None,
) -> Optional[CanonicalSymbol]:
    """
    EdgeX contract: prefer explicit coin metadata, fall back to the contract
    name suffix ("BTCUSD" -> BTC/USDT:USDT when USD is aliased).
    """
    normalizer = normalizer or edgex_normalizer()
    if base_coin and quote_coin:
        return normalizer.from_parts(base_coin, quote_coin)
    return normalizer.from_contract_name(contract_name)
