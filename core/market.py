"""
AutoPerp Core: Market Reader

Fetches a compact market snapshot per symbol for the proposal prompt:
last price, funding rate, open interest and a short close series.
The core's risk logic never reads these; only the prompt does.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol

import requests

from infra.symbols import base_asset

logger = logging.getLogger(__name__)

HYPERLIQUID_INFO_URL = "https://api.hyperliquid.xyz/info"

_MINUTE_MS = 60 * 1000

# Candle intervals the info endpoint serves, shortest first.
_INTERVAL_MS = {
    "1m": _MINUTE_MS,
    "3m": 3 * _MINUTE_MS,
    "5m": 5 * _MINUTE_MS,
    "15m": 15 * _MINUTE_MS,
    "30m": 30 * _MINUTE_MS,
    "1h": 60 * _MINUTE_MS,
    "2h": 2 * 60 * _MINUTE_MS,
    "4h": 4 * 60 * _MINUTE_MS,
    "8h": 8 * 60 * _MINUTE_MS,
    "12h": 12 * 60 * _MINUTE_MS,
    "1d": 24 * 60 * _MINUTE_MS,
}


def candle_interval_for(interval_minutes: int) -> str:
    """Shortest candle interval that spans at least one scan interval."""
    wanted_ms = max(int(interval_minutes), 1) * _MINUTE_MS
    for name, length_ms in _INTERVAL_MS.items():
        if length_ms >= wanted_ms:
            return name
    return "1d"


@dataclass
class MarketSnapshot:
    symbol: str
    current_price: float
    funding_rate: float = 0.0
    open_interest: float = 0.0
    candle_interval: str = "1h"
    recent_closes: List[float] = field(default_factory=list)

    @property
    def change_pct(self) -> float:
        """Change over the close series, in percent."""
        if len(self.recent_closes) < 2 or self.recent_closes[0] <= 0:
            return 0.0
        return (self.recent_closes[-1] - self.recent_closes[0]) / self.recent_closes[0] * 100.0


class MarketReader(Protocol):
    def get(self, symbol: str, interval_minutes: int) -> MarketSnapshot:
        ...


def format_snapshot(snapshot: MarketSnapshot) -> str:
    """Human-readable block consumed by the prompt builder."""
    lines = [
        f"Current Price: {snapshot.current_price:.4f}",
        f"Funding Rate: {snapshot.funding_rate:.6f}",
    ]
    if snapshot.open_interest:
        lines.append(f"Open Interest: {snapshot.open_interest:.2f}")
    if snapshot.recent_closes:
        series = ", ".join(f"{c:.4f}" for c in snapshot.recent_closes)
        lines.append(
            f"{snapshot.candle_interval} closes (oldest→latest, {snapshot.change_pct:+.2f}%): {series}"
        )
    return "\n".join(lines) + "\n"


def collect_market_context(reader: MarketReader, symbols: Iterable[str],
                           interval_minutes: int) -> Dict[str, MarketSnapshot]:
    """
    Fetch snapshots for each symbol independently.

    A failure for one symbol is logged and that symbol is left out.
    """
    context: Dict[str, MarketSnapshot] = {}
    for symbol in symbols:
        if symbol in context:
            continue
        try:
            context[symbol] = reader.get(symbol, interval_minutes)
        except Exception as exc:
            logger.warning(f"Market data for {symbol} unavailable, omitting: {exc}")
    return context


class HyperliquidMarketReader:
    """
    Public Hyperliquid info endpoint reader (no credentials needed).

    Candles come from ``candleSnapshot``; funding and open interest from
    ``metaAndAssetCtxs``, which is cached for ``meta_ttl_seconds`` because it
    covers every asset in one response. Without an explicit ``candle_interval``
    the candle size follows the caller's scan interval.
    """

    def __init__(self, url: str = HYPERLIQUID_INFO_URL, candle_interval: Optional[str] = None,
                 candle_count: int = 24, timeout: float = 10.0,
                 meta_ttl_seconds: float = 30.0, session: Optional[requests.Session] = None):
        if candle_interval is not None and candle_interval not in _INTERVAL_MS:
            raise ValueError(f"Unsupported candle interval {candle_interval!r}")
        self.url = url
        self.candle_interval = candle_interval
        self.candle_count = candle_count
        self.timeout = timeout
        self.meta_ttl_seconds = meta_ttl_seconds
        self.session = session or requests.Session()
        self._meta_cache = None
        self._meta_fetched_at = 0.0

    def get(self, symbol: str, interval_minutes: int) -> MarketSnapshot:
        coin = base_asset(symbol)
        interval = self.candle_interval or candle_interval_for(interval_minutes)
        closes = self._closes(coin, interval)
        if not closes:
            raise ValueError(f"No candles returned for {coin}")

        funding, open_interest = 0.0, 0.0
        try:
            funding, open_interest = self._asset_context(coin)
        except (requests.exceptions.RequestException, ValueError, LookupError,
                TypeError, AttributeError) as exc:
            # Candles alone still make a usable snapshot.
            logger.debug(f"Funding/OI for {coin} unavailable: {exc}")

        return MarketSnapshot(
            symbol=symbol,
            current_price=closes[-1],
            funding_rate=funding,
            open_interest=open_interest,
            candle_interval=interval,
            recent_closes=closes,
        )

    def _post(self, body: dict):
        response = self.session.post(self.url, json=body, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def _closes(self, coin: str, interval: str) -> List[float]:
        end_ms = int(time.time() * 1000)
        start_ms = end_ms - self.candle_count * _INTERVAL_MS[interval]
        rows = self._post({
            "type": "candleSnapshot",
            "req": {
                "coin": coin,
                "interval": interval,
                "startTime": start_ms,
                "endTime": end_ms,
            },
        })
        closes = []
        for row in rows or []:
            try:
                closes.append(float(row["c"]))
            except (KeyError, TypeError, ValueError):
                continue
        return closes[-self.candle_count:]

    def _asset_context(self, coin: str):
        now = time.monotonic()
        if self._meta_cache is None or now - self._meta_fetched_at > self.meta_ttl_seconds:
            self._meta_cache = self._post({"type": "metaAndAssetCtxs"})
            self._meta_fetched_at = now

        meta, contexts = self._meta_cache[0], self._meta_cache[1]
        for index, asset in enumerate(meta.get("universe", [])):
            if asset.get("name") == coin and index < len(contexts):
                ctx = contexts[index]
                return float(ctx.get("funding") or 0.0), float(ctx.get("openInterest") or 0.0)
        raise ValueError(f"{coin} not listed")

    def price(self, symbol: str) -> float:
        """Latest close, usable as a price source for the paper venue."""
        closes = self._closes(base_asset(symbol), self.candle_interval or "1m")
        if not closes:
            raise ValueError(f"No candles returned for {symbol}")
        return closes[-1]
