from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from scalper.exchange.binance.client import BinanceSpotClient
from scalper.strategy.base import MarketSample

log = logging.getLogger("scalper.market")

# token -> Binance spot pair
BINANCE_PAIRS: Dict[str, str] = {
    "SOL": "SOLUSDT",
    "JUP": "JUPUSDT",
    "BONK": "BONKUSDT",
    "RAY": "RAYUSDT",
    "WIF": "WIFUSDT",
    "RENDER": "RENDERUSDT",
    "PYTH": "PYTHUSDT",
}

# last-resort prices when nothing was ever fetched
BASE_PRICES: Dict[str, float] = {
    "SOL": 144.0,
    "JUP": 0.85,
    "BONK": 0.000015,
    "RAY": 1.25,
    "WIF": 2.5,
    "RENDER": 5.0,
    "PYTH": 0.3,
}
DEFAULT_BASE_PRICE = 1.0


@dataclass
class _Cached:
    price: float
    change24h: float
    fetched_at: float


def _to_float(v) -> Optional[float]:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


class PriceFeed:
    """
    One MarketSample per watchlist token per scan.

    Fresh cache hits skip the network. On any failure the last cached price
    (of any age) is used, then the static base price; the engine never sees an error.
    """

    def __init__(
        self,
        client: Optional[BinanceSpotClient] = None,
        cache_seconds: float = 1.5,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client or BinanceSpotClient()
        self.cache_seconds = float(cache_seconds)
        self.clock = clock
        self._cache: Dict[str, _Cached] = {}

    def fallback_price(self, token: str) -> float:
        cached = self._cache.get(token)
        if cached is not None:
            return cached.price
        return BASE_PRICES.get(token, DEFAULT_BASE_PRICE)

    def fetch(self, token: str) -> MarketSample:
        token = token.upper()
        now = self.clock()
        now_ms = int(now * 1000)

        cached = self._cache.get(token)
        if cached is not None and now - cached.fetched_at < self.cache_seconds:
            return MarketSample(token, cached.price, cached.change24h, now_ms)

        pair = BINANCE_PAIRS.get(token)
        if pair is None:
            log.warning("unknown token %s, using fallback price", token)
            return MarketSample(token, self.fallback_price(token), 0.0, now_ms)

        try:
            data = self.client.ticker_24hr(pair)
        except RuntimeError as e:
            log.warning("price fetch failed for %s (%s), using cache/fallback", token, e)
            return MarketSample(token, self.fallback_price(token), 0.0, now_ms)

        price = _to_float((data or {}).get("lastPrice"))
        if price is None or price <= 0:
            log.warning("no price data for %s, using fallback", token)
            return MarketSample(token, self.fallback_price(token), 0.0, now_ms)

        change = _to_float(data.get("priceChangePercent")) or 0.0
        self._cache[token] = _Cached(price, change, now)
        log.debug("%s: %.8g (24h %+.2f%%)", token, price, change)
        return MarketSample(token, price, change, now_ms)

    def fetch_all(self, tokens: Sequence[str]) -> List[MarketSample]:
        return [self.fetch(t) for t in tokens]
