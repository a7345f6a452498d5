"""Native token / USD price for gas-fee reporting.

Never used to validate a payment. ``PriceFeedCache.get_native_price`` always
returns a number: fresh cache, then each source in order, then stale cache,
then a hardcoded last-resort value.
"""
from __future__ import annotations

import logging
import math
import threading
import time

import requests

from app.core.chains import ConfigurationError
from app.core.config import Settings

logger = logging.getLogger(__name__)

FALLBACK_PRICES_USD = {
    "ETH": 3000.0,
    "BNB": 600.0,
}
# Symbols outside the table; only reachable when the feed was built without required_symbols
DEFAULT_FALLBACK_PRICE_USD = 1.0


class PriceSourceError(RuntimeError):
    pass


class PriceSource:
    name = "base"
    symbol_ids: dict[str, str] = {}

    def __init__(self, base_url: str, timeout: int = 10):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _symbol_id(self, symbol: str) -> str:
        sid = self.symbol_ids.get(symbol.upper())
        if not sid:
            raise PriceSourceError(f"{self.name}: unknown symbol {symbol}")
        return sid

    def _get_json(self, url: str, params: dict | None = None) -> dict:
        try:
            r = requests.get(url, params=params, headers={"Accept": "application/json"}, timeout=self.timeout)
        except requests.RequestException as e:
            raise PriceSourceError(f"{self.name}: {e}") from e
        if r.status_code >= 400:
            raise PriceSourceError(f"{self.name} returned {r.status_code}")
        try:
            return r.json()
        except ValueError as e:
            raise PriceSourceError(f"{self.name}: invalid JSON") from e

    @staticmethod
    def _positive(name: str, raw) -> float:
        try:
            price = float(raw)
        except (TypeError, ValueError):
            raise PriceSourceError(f"Invalid price from {name}: {raw!r}")
        if not math.isfinite(price) or price <= 0:
            raise PriceSourceError(f"Invalid price from {name}: {price}")
        return price

    def fetch(self, symbol: str) -> float:
        raise NotImplementedError


class CoinGeckoSource(PriceSource):
    name = "coingecko"
    symbol_ids = {"ETH": "ethereum", "BNB": "binancecoin"}

    def fetch(self, symbol: str) -> float:
        coin_id = self._symbol_id(symbol)
        data = self._get_json(self.base_url, params={"ids": coin_id, "vs_currencies": "usd"})
        return self._positive(self.name, (data.get(coin_id) or {}).get("usd"))


class CoinCapSource(PriceSource):
    name = "coincap"
    symbol_ids = {"ETH": "ethereum", "BNB": "binance-coin"}

    def fetch(self, symbol: str) -> float:
        asset_id = self._symbol_id(symbol)
        data = self._get_json(f"{self.base_url}/{asset_id}")
        return self._positive(self.name, (data.get("data") or {}).get("priceUsd"))


class BinanceSource(PriceSource):
    name = "binance"
    symbol_ids = {"ETH": "ETHUSDT", "BNB": "BNBUSDT"}

    def fetch(self, symbol: str) -> float:
        pair = self._symbol_id(symbol)
        data = self._get_json(self.base_url, params={"symbol": pair})
        return self._positive(self.name, data.get("price"))


def _usable(price) -> bool:
    return price is not None and math.isfinite(price) and price > 0


class PriceFeedCache:
    def __init__(
        self,
        sources: list,
        ttl_seconds: float = 300,
        fallback_prices: dict[str, float] | None = None,
        clock=time.monotonic,
        required_symbols=(),
    ):
        self.sources = list(sources)
        self.ttl_seconds = ttl_seconds
        self.fallback_prices = dict(FALLBACK_PRICES_USD if fallback_prices is None else fallback_prices)
        missing = sorted(s.upper() for s in required_symbols if not _usable(self.fallback_prices.get(s.upper())))
        if missing:
            raise ConfigurationError(f"No positive fallback price for: {', '.join(missing)}")
        self._clock = clock
        self._cache: dict[str, tuple[float, float]] = {}  # symbol -> (price, fetched_at)
        self._lock = threading.Lock()

    def _fresh(self, entry: tuple[float, float] | None) -> bool:
        return entry is not None and self._clock() - entry[1] < self.ttl_seconds

    def get_native_price(self, symbol: str) -> float:
        symbol = (symbol or "").upper()
        cached = self._cache.get(symbol)
        if self._fresh(cached):
            logger.debug(f"[Price] Using cached {symbol} price: ${cached[0]}")
            return cached[0]

        for source in self.sources:
            try:
                price = float(source.fetch(symbol))
            except Exception as e:
                # A broken source must never fail fee reporting
                logger.warning(f"[Price] Source {getattr(source, 'name', source)} failed for {symbol}: {e}")
                continue
            if _usable(price):
                with self._lock:
                    self._cache[symbol] = (price, self._clock())
                logger.info(f"[Price] {symbol} = ${price} ({getattr(source, 'name', source)})")
                return price

        if cached:
            logger.warning(f"[Price] Using stale cache for {symbol}: ${cached[0]}")
            return cached[0]

        fallback = self.fallback_prices.get(symbol, DEFAULT_FALLBACK_PRICE_USD)
        logger.warning(f"[Price] Using fallback price for {symbol}: ${fallback}")
        return fallback

    def cached_price(self, symbol: str) -> float | None:
        """Fresh cached price for display, or None."""
        cached = self._cache.get((symbol or "").upper())
        return cached[0] if self._fresh(cached) else None

    def clear(self) -> None:
        with self._lock:
            self._cache = {}


def build_price_feed(settings: Settings, symbols=()) -> PriceFeedCache:
    """``symbols`` are the native currencies the feed must price; each needs a fallback entry."""
    timeout = settings.PRICE_FEED_TIMEOUT_SECONDS
    return PriceFeedCache(
        sources=[
            CoinGeckoSource(settings.COINGECKO_API_URL, timeout),
            CoinCapSource(settings.COINCAP_API_URL, timeout),
            BinanceSource(settings.BINANCE_API_URL, timeout),
        ],
        ttl_seconds=settings.PRICE_CACHE_TTL_SECONDS,
        required_symbols=symbols,
    )
