"""Symbol normalization and asset-class utilities for perpetual contracts.

Accepts `BTC`, `btcusdt`, `BTC-USDT`, `BTC/USDT:USDT` or `XBTUSDT` and resolves
them to the venue format `BTCUSDT`. The asset class decides which leverage
ceiling and notional multiple apply to a symbol.
"""

from __future__ import annotations

from typing import Dict, Optional, Tuple

DEFAULT_QUOTE = "USDT"

QUOTE_SUFFIXES: Tuple[str, ...] = (
    "USDT",
    "USDC",
    "USD",
)

# Bases that collapse into a single canonical asset key.
_BASE_ALIAS_MAP: Dict[str, str] = {
    "XBT": "BTC",
    "WBTC": "BTC",
    "WETH": "ETH",
}

MAJOR_BASES = frozenset({"BTC", "ETH"})

ASSET_CLASS_MAJOR = "btc_eth"
ASSET_CLASS_ALTCOIN = "altcoin"


def canonical_base(base: str) -> str:
    """Return the canonical base asset ticker (e.g., XBT -> BTC)."""

    if not base:
        return ""
    ticker = base.upper()
    return _BASE_ALIAS_MAP.get(ticker, ticker)


def split_symbol(symbol: Optional[str], *, default_quote: str = DEFAULT_QUOTE) -> Tuple[str, str]:
    """Return (base, quote) for any symbol variant."""

    if not symbol:
        return "", default_quote

    token = str(symbol).strip().upper().replace(" ", "")
    # ccxt-style settle suffix: BTC/USDT:USDT
    token = token.split(":", 1)[0]
    for delim in ("/", "_", "-"):
        token = token.replace(delim, "")
    if not token:
        return "", default_quote

    for quote in QUOTE_SUFFIXES:
        if token.endswith(quote) and len(token) > len(quote):
            return canonical_base(token[: -len(quote)]), quote
    return canonical_base(token), default_quote


def normalize_symbol(symbol: Optional[str], *, default_quote: str = DEFAULT_QUOTE) -> str:
    """Normalize a symbol to the venue format `BASEQUOTE` (e.g., BTCUSDT)."""

    base, quote = split_symbol(symbol, default_quote=default_quote)
    if not base:
        return ""
    return f"{base}{quote}"


def base_asset(symbol: Optional[str]) -> str:
    """Return the coin name used by venues that quote by base only (BTCUSDT -> BTC)."""

    return split_symbol(symbol)[0]


def asset_class(symbol: Optional[str]) -> str:
    """Return ``btc_eth`` for BTC/ETH contracts and ``altcoin`` for everything else."""

    if base_asset(symbol) in MAJOR_BASES:
        return ASSET_CLASS_MAJOR
    return ASSET_CLASS_ALTCOIN


__all__ = [
    "ASSET_CLASS_ALTCOIN",
    "ASSET_CLASS_MAJOR",
    "DEFAULT_QUOTE",
    "MAJOR_BASES",
    "QUOTE_SUFFIXES",
    "asset_class",
    "base_asset",
    "canonical_base",
    "normalize_symbol",
    "split_symbol",
]
