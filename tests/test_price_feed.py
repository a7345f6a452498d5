import pytest
import requests

from app.core.chains import ConfigurationError
from app.services.price_feed import (
    BinanceSource,
    CoinCapSource,
    CoinGeckoSource,
    DEFAULT_FALLBACK_PRICE_USD,
    PriceFeedCache,
    PriceSourceError,
    build_price_feed,
)
from conftest import StaticPriceSource


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class Broken:
    name = "broken"

    def __init__(self):
        self.calls = 0

    def fetch(self, symbol):
        self.calls += 1
        raise PriceSourceError("rate limited")


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        return self._payload


def test_fresh_cache_is_reused():
    clock = Clock()
    source = StaticPriceSource({"ETH": 2500.0})
    feed = PriceFeedCache([source], ttl_seconds=300, clock=clock)

    assert feed.get_native_price("eth") == 2500.0
    clock.now += 299
    assert feed.get_native_price("ETH") == 2500.0
    assert source.calls == 1
    assert feed.cached_price("ETH") == 2500.0


def test_expired_cache_is_refreshed():
    clock = Clock()
    source = StaticPriceSource({"ETH": 2500.0})
    feed = PriceFeedCache([source], ttl_seconds=300, clock=clock)

    feed.get_native_price("ETH")
    clock.now += 301
    assert feed.cached_price("ETH") is None
    feed.get_native_price("ETH")
    assert source.calls == 2


def test_next_source_is_tried_in_order():
    broken = Broken()
    feed = PriceFeedCache([broken, StaticPriceSource({"BNB": 612.5})])

    assert feed.get_native_price("BNB") == 612.5
    assert broken.calls == 1


def test_stale_cache_beats_fallback():
    clock = Clock()
    source = StaticPriceSource({"ETH": 2500.0})
    feed = PriceFeedCache([source], ttl_seconds=300, clock=clock)
    feed.get_native_price("ETH")

    source.fetch = Broken().fetch
    clock.now += 1000

    assert feed.get_native_price("ETH") == 2500.0


@pytest.mark.parametrize("symbol,expected", [("ETH", 3000.0), ("BNB", 600.0), ("DOGE", DEFAULT_FALLBACK_PRICE_USD)])
def test_fallback_when_every_source_fails(symbol, expected):
    feed = PriceFeedCache([Broken(), Broken()])
    assert feed.get_native_price(symbol) == expected
    assert expected > 0


def test_non_finite_source_answer_is_skipped():
    feed = PriceFeedCache([StaticPriceSource({"ETH": float("inf")}), StaticPriceSource({"ETH": 2500.0})])

    assert feed.get_native_price("ETH") == 2500.0
    assert feed.cached_price("ETH") == 2500.0


def test_only_non_finite_answers_use_fallback():
    feed = PriceFeedCache([StaticPriceSource({"BNB": float("inf")}), StaticPriceSource({"BNB": float("nan")})])

    assert feed.get_native_price("BNB") == 600.0
    assert feed.cached_price("BNB") is None


def test_required_symbol_without_fallback_is_a_configuration_error():
    with pytest.raises(ConfigurationError, match="MATIC"):
        PriceFeedCache([], required_symbols=["ETH", "matic"])


def test_zero_fallback_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        PriceFeedCache([], fallback_prices={"ETH": 0.0}, required_symbols=["ETH"])


def test_feed_built_for_registry_symbols(test_settings, registry):
    feed = build_price_feed(test_settings, symbols={chain.native_currency_symbol for chain in registry})

    assert [source.name for source in feed.sources] == ["coingecko", "coincap", "binance"]
    assert feed.ttl_seconds == test_settings.PRICE_CACHE_TTL_SECONDS


def test_clear_drops_cache():
    feed = PriceFeedCache([StaticPriceSource({"ETH": 2500.0})])
    feed.get_native_price("ETH")
    feed.clear()
    assert feed.cached_price("ETH") is None


def test_coingecko_parsing(monkeypatch):
    seen = {}

    def fake_get(url, params=None, headers=None, timeout=None):
        seen.update(url=url, params=params, timeout=timeout)
        return FakeResponse({"ethereum": {"usd": 3120.4}})

    monkeypatch.setattr(requests, "get", fake_get)

    price = CoinGeckoSource("https://api.coingecko.com/api/v3/simple/price", timeout=7).fetch("ETH")

    assert price == 3120.4
    assert seen["params"] == {"ids": "ethereum", "vs_currencies": "usd"}
    assert seen["timeout"] == 7


def test_coincap_and_binance_parsing(monkeypatch):
    def fake_get(url, params=None, headers=None, timeout=None):
        if "coincap" in url:
            assert url.endswith("/binance-coin")
            return FakeResponse({"data": {"priceUsd": "601.25"}})
        assert params == {"symbol": "BNBUSDT"}
        return FakeResponse({"symbol": "BNBUSDT", "price": "599.10"})

    monkeypatch.setattr(requests, "get", fake_get)

    assert CoinCapSource("https://api.coincap.io/v2/assets").fetch("BNB") == 601.25
    assert BinanceSource("https://api.binance.com/api/v3/ticker/price").fetch("BNB") == 599.10


@pytest.mark.parametrize("payload,status", [
    ({"ethereum": {"usd": 0}}, 200),
    ({"ethereum": {"usd": "inf"}}, 200),
    ({"ethereum": {"usd": "NaN"}}, 200),
    ({"ethereum": {}}, 200),
    ({}, 429),
])
def test_bad_source_answers_raise(monkeypatch, payload, status):
    monkeypatch.setattr(requests, "get", lambda *a, **kw: FakeResponse(payload, status))
    with pytest.raises(PriceSourceError):
        CoinGeckoSource("https://api.coingecko.com/api/v3/simple/price").fetch("ETH")


def test_network_error_raises_source_error(monkeypatch):
    def boom(*a, **kw):
        raise requests.ConnectionError("dns")

    monkeypatch.setattr(requests, "get", boom)
    with pytest.raises(PriceSourceError):
        BinanceSource("https://api.binance.com/api/v3/ticker/price").fetch("ETH")
