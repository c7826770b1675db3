import pytest
import requests

from scalper.exchange.binance.client import BinanceSpotClient
from scalper.market.price_feed import BASE_PRICES, PriceFeed


class _FakeClient:
    def __init__(self, replies=None):
        self.replies = dict(replies or {})
        self.calls = []

    def ticker_24hr(self, symbol):
        self.calls.append(symbol)
        r = self.replies.get(symbol)
        if isinstance(r, Exception):
            raise r
        return r


def test_fetch_parses_ticker(clock):
    client = _FakeClient({"SOLUSDT": {"lastPrice": "150.5", "priceChangePercent": "-6.2"}})
    feed = PriceFeed(client, clock=clock)
    s = feed.fetch("sol")
    assert (s.token, s.price, s.change24h) == ("SOL", 150.5, -6.2)
    assert s.timestamp == int(clock() * 1000)


def test_cache_hit_skips_network(clock):
    client = _FakeClient({"SOLUSDT": {"lastPrice": "150", "priceChangePercent": "1"}})
    feed = PriceFeed(client, cache_seconds=1.5, clock=clock)
    feed.fetch("SOL")
    clock.advance(1.0)
    s = feed.fetch("SOL")
    assert client.calls == ["SOLUSDT"]
    assert s.change24h == 1.0

    clock.advance(1.0)
    feed.fetch("SOL")
    assert client.calls == ["SOLUSDT", "SOLUSDT"]


def test_failure_uses_last_known_price(clock):
    client = _FakeClient({"SOLUSDT": {"lastPrice": "150", "priceChangePercent": "1"}})
    feed = PriceFeed(client, clock=clock)
    feed.fetch("SOL")

    client.replies["SOLUSDT"] = RuntimeError("Binance request failed")
    clock.advance(10)
    s = feed.fetch("SOL")
    assert s.price == 150.0
    assert s.change24h == 0.0


def test_failure_without_cache_uses_base_price(clock):
    feed = PriceFeed(_FakeClient({"JUPUSDT": RuntimeError("down")}), clock=clock)
    assert feed.fetch("JUP").price == BASE_PRICES["JUP"]


@pytest.mark.parametrize("reply", [{}, {"lastPrice": "0"}, {"lastPrice": "abc"}, None])
def test_bad_payload_uses_fallback(clock, reply):
    feed = PriceFeed(_FakeClient({"RAYUSDT": reply}), clock=clock)
    assert feed.fetch("RAY").price == BASE_PRICES["RAY"]


def test_unknown_token_defaults_to_one(clock):
    client = _FakeClient()
    feed = PriceFeed(client, clock=clock)
    assert feed.fetch("DOGE").price == 1.0
    assert client.calls == []


def test_fetch_all_keeps_order(clock):
    client = _FakeClient(
        {
            "SOLUSDT": {"lastPrice": "150", "priceChangePercent": "0"},
            "BONKUSDT": {"lastPrice": "0.00002", "priceChangePercent": "0"},
        }
    )
    out = PriceFeed(client, clock=clock).fetch_all(["BONK", "SOL"])
    assert [s.token for s in out] == ["BONK", "SOL"]


class _Resp:
    def __init__(self, status, data=None, headers=None):
        self.status_code = status
        self._data = data
        self.headers = headers or {}
        self.content = b"x" if data is not None else b""

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def json(self):
        return self._data


def test_client_retries_rate_limit_then_succeeds(monkeypatch):
    replies = [_Resp(429, headers={"Retry-After": "0"}), _Resp(200, {"lastPrice": "1"})]
    calls = []

    def fake_request(method, url, params=None, headers=None, timeout=None):
        calls.append((method, url, params))
        return replies.pop(0)

    monkeypatch.setattr(requests, "request", fake_request)
    client = BinanceSpotClient("https://example.test/", sleep=lambda s: None)
    assert client.ticker_24hr("solusdt") == {"lastPrice": "1"}
    assert calls[-1] == ("GET", "https://example.test/api/v3/ticker/24hr", {"symbol": "SOLUSDT"})
    assert len(calls) == 2


def test_client_raises_after_retries(monkeypatch):
    def fake_request(method, url, params=None, headers=None, timeout=None):
        raise requests.ConnectionError("no route")

    monkeypatch.setattr(requests, "request", fake_request)
    client = BinanceSpotClient(max_retries=2, sleep=lambda s: None)
    with pytest.raises(RuntimeError):
        client.ticker_24hr("SOLUSDT")
