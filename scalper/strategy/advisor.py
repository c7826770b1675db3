from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

import requests

from scalper.core.errors import AdvisoryError
from scalper.strategy.base import Action, Decision, TradingSignal

log = logging.getLogger("scalper.advisor")

SYSTEM_PROMPT = "You are an expert crypto trading assistant. Return JSON only."


class Advisory(Protocol):
    def complete(self, prompt: str) -> str: ...


class GroqAdvisory:
    """
    Chat-completions client for Groq's OpenAI-compatible endpoint.
    Any transport or shape problem is raised as AdvisoryError.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.groq.com/openai/v1",
        model: str = "llama3-70b-8192",
        timeout_s: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

    def complete(self, prompt: str) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.1,
            "response_format": {"type": "json_object"},
        }
        try:
            r = self.session.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout_s,
            )
            r.raise_for_status()
            data = r.json()
        except (requests.RequestException, ValueError) as e:
            raise AdvisoryError(f"advisory request failed: {e}") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise AdvisoryError("advisory response has no message content") from e
        if not content:
            raise AdvisoryError("empty advisory response")
        return content


def build_prompt(candidates: Sequence[TradingSignal]) -> str:
    opportunities = "\n".join(
        f"{s.token}: {s.action.value} (strength: {s.strength:g}) - {s.reason_text}"
        for s in candidates
    )
    return (
        "You are a crypto trading assistant. Multiple trading opportunities detected:\n"
        f"{opportunities}\n"
        "Pick the SINGLE BEST opportunity based on:\n"
        "1. Highest signal strength\n"
        "2. Best risk/reward ratio\n"
        "3. News sentiment alignment\n\n"
        "Respond with JSON only:\n"
        '{"token": "XXX", "action": "BUY or SELL", "confidence": number, "reason": "brief reason"}'
    )


def _rule_decision(s: TradingSignal, reason: Optional[str] = None) -> Decision:
    return Decision(
        token=s.token,
        action=s.action,
        confidence=s.strength,
        reason=reason or s.reason_text,
    )


def parse_advisory_response(
    content: str, candidates: Sequence[TradingSignal]
) -> Decision:
    """
    Validate the advisory's pick against the rule candidates.

    - unparseable / wrong schema / unknown token -> AdvisoryError
    - action differs from the rule action -> rule action kept, override logged
    - confidence is always the rule strength
    """
    try:
        parsed: Any = json.loads(content)
    except ValueError as e:
        raise AdvisoryError(f"advisory returned invalid JSON: {e}") from e

    if not isinstance(parsed, dict):
        raise AdvisoryError("advisory response is not a JSON object")
    token = parsed.get("token")
    action = parsed.get("action")
    if not isinstance(token, str) or not isinstance(action, str):
        raise AdvisoryError("advisory response missing token/action")

    by_token: Dict[str, TradingSignal] = {s.token: s for s in candidates}
    match = by_token.get(token.strip().upper())
    if match is None:
        raise AdvisoryError(f"advisory picked unknown token {token!r}")

    if action.strip().upper() != match.action.value:
        log.warning(
            "advisory tried to override %s on %s with %s - rejected",
            match.action.value,
            match.token,
            action,
        )
        return _rule_decision(match)

    reason = parsed.get("reason")
    return _rule_decision(match, reason if isinstance(reason, str) and reason else None)


class AdvisorArbiter:
    """
    Picks one opportunity among rule-approved candidates.
    The advisory may choose *which* token; never the action nor the confidence.
    """

    def __init__(self, advisory: Optional[Advisory] = None):
        self.advisory = advisory

    @staticmethod
    def candidates(signals: Sequence[TradingSignal]) -> List[TradingSignal]:
        return [s for s in signals if s.action != Action.HOLD]

    @staticmethod
    def strongest(candidates: Sequence[TradingSignal]) -> TradingSignal:
        # max() keeps the first of equal strengths, so ties resolve in feed order
        return max(candidates, key=lambda s: s.strength)

    def choose(self, signals: Sequence[TradingSignal]) -> Optional[Decision]:
        cands = self.candidates(signals)
        if not cands:
            return None

        if len(cands) == 1 or self.advisory is None:
            return _rule_decision(self.strongest(cands))

        try:
            content = self.advisory.complete(build_prompt(cands))
            return parse_advisory_response(content, cands)
        except AdvisoryError as e:
            log.warning("advisory failed, falling back to rule logic: %s", e)
            return _rule_decision(self.strongest(cands))
