import json

import pytest
import requests

from scalper.core.errors import AdvisoryError
from scalper.strategy.advisor import (
    AdvisorArbiter,
    GroqAdvisory,
    build_prompt,
    parse_advisory_response,
)
from scalper.strategy.base import Action, TradingSignal


def _sig(token, action, strength, *reasons):
    return TradingSignal(token=token, action=action, strength=strength, reasons=tuple(reasons))


SOL_BUY = _sig("SOL", Action.BUY, 75, "RSI Oversold 25.0", "MACD Bullish")
JUP_BUY = _sig("JUP", Action.BUY, 80, "MACD Bullish", "Dip -6.0%")
RAY_SELL = _sig("RAY", Action.SELL, 65, "Stop loss -2.00%")
BONK_HOLD = _sig("BONK", Action.HOLD, 40)


class _FakeAdvisory:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.prompts = []

    def complete(self, prompt):
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return self.reply


def test_no_candidates_returns_none():
    assert AdvisorArbiter(_FakeAdvisory("{}")).choose([BONK_HOLD]) is None


def test_single_candidate_skips_advisory():
    adv = _FakeAdvisory("{}")
    d = AdvisorArbiter(adv).choose([BONK_HOLD, SOL_BUY])
    assert d.token == "SOL"
    assert d.confidence == 75
    assert adv.prompts == []


def test_without_advisory_strongest_wins():
    d = AdvisorArbiter(None).choose([SOL_BUY, JUP_BUY, RAY_SELL])
    assert (d.token, d.action, d.confidence) == ("JUP", Action.BUY, 80)


def test_tie_resolves_in_feed_order():
    a = _sig("WIF", Action.BUY, 70)
    b = _sig("PYTH", Action.BUY, 70)
    assert AdvisorArbiter(None).choose([a, b]).token == "WIF"


def test_advisory_picks_token_but_confidence_is_rule_strength():
    reply = json.dumps({"token": "SOL", "action": "BUY", "confidence": 99, "reason": "best r/r"})
    adv = _FakeAdvisory(reply)
    d = AdvisorArbiter(adv).choose([SOL_BUY, JUP_BUY])
    assert d.token == "SOL"
    assert d.action == Action.BUY
    assert d.confidence == 75
    assert d.reason == "best r/r"
    assert "SOL: BUY (strength: 75) - RSI Oversold 25.0, MACD Bullish" in adv.prompts[0]


def test_advisory_cannot_flip_action():
    reply = json.dumps({"token": "RAY", "action": "BUY", "confidence": 90, "reason": "x"})
    d = AdvisorArbiter(_FakeAdvisory(reply)).choose([SOL_BUY, RAY_SELL])
    assert d.token == "RAY"
    assert d.action == Action.SELL
    assert d.confidence == 65
    assert d.reason == "Stop loss -2.00%"


@pytest.mark.parametrize(
    "reply",
    [
        "not json",
        "[1, 2]",
        json.dumps({"action": "BUY"}),
        json.dumps({"token": "DOGE", "action": "BUY"}),
    ],
)
def test_bad_advisory_reply_falls_back_to_strongest(reply):
    d = AdvisorArbiter(_FakeAdvisory(reply)).choose([SOL_BUY, JUP_BUY])
    assert d.token == "JUP"
    assert d.confidence == 80


def test_transport_failure_falls_back():
    adv = _FakeAdvisory(error=AdvisoryError("timeout"))
    d = AdvisorArbiter(adv).choose([SOL_BUY, JUP_BUY])
    assert d.token == "JUP"


def test_parse_is_case_insensitive_on_token_and_action():
    reply = json.dumps({"token": "sol", "action": "buy", "reason": ""})
    d = parse_advisory_response(reply, [SOL_BUY, JUP_BUY])
    assert d.token == "SOL"
    assert d.reason == SOL_BUY.reason_text


def test_prompt_lists_every_candidate():
    text = build_prompt([SOL_BUY, RAY_SELL])
    assert "SOL: BUY" in text
    assert "RAY: SELL" in text


class _Resp:
    def __init__(self, status, data):
        self.status_code = status
        self._data = data

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def json(self):
        return self._data


class _Session:
    def __init__(self, resp=None, exc=None):
        self.resp = resp
        self.exc = exc
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append((url, json, headers, timeout))
        if self.exc:
            raise self.exc
        return self.resp


def test_groq_client_posts_json_mode_request():
    sess = _Session(_Resp(200, {"choices": [{"message": {"content": '{"token":"SOL"}'}}]}))
    adv = GroqAdvisory("key", session=sess, timeout_s=3)
    assert adv.complete("prompt") == '{"token":"SOL"}'

    url, payload, headers, timeout = sess.calls[0]
    assert url == "https://api.groq.com/openai/v1/chat/completions"
    assert payload["model"] == "llama3-70b-8192"
    assert payload["temperature"] == 0.1
    assert payload["response_format"] == {"type": "json_object"}
    assert headers["Authorization"] == "Bearer key"
    assert timeout == 3


@pytest.mark.parametrize(
    "session",
    [
        _Session(exc=requests.Timeout("slow")),
        _Session(_Resp(500, {})),
        _Session(_Resp(200, {"choices": []})),
    ],
)
def test_groq_client_raises_advisory_error(session):
    with pytest.raises(AdvisoryError):
        GroqAdvisory("key", session=session).complete("prompt")
