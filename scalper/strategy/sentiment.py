from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import requests

from scalper.strategy.base import Sentiment

log = logging.getLogger("scalper.sentiment")

CRYPTOPANIC_URL = "https://cryptopanic.com/api/free/v1/posts/"
COINGECKO_URL = "https://api.coingecko.com/api/v3/coins/{coin_id}"

SEARCH_TERMS: Dict[str, str] = {
    "SOL": "solana",
    "JUP": "jupiter dex",
    "RAY": "raydium",
    "BONK": "bonk coin",
}

COINGECKO_IDS: Dict[str, str] = {
    "solana": "solana",
    "jupiter dex": "jupiter-exchange-solana",
    "raydium": "raydium",
    "bonk coin": "bonk",
}

POSITIVE_WORDS = (
    "surge", "soar", "rally", "bullish", "gain", "pump", "moon", "breakthrough",
    "partnership", "adoption", "upgrade", "launch", "success", "record", "high",
    "growth", "boost", "positive", "optimistic", "buy", "accumulate",
)
NEGATIVE_WORDS = (
    "crash", "dump", "bearish", "fall", "drop", "plunge", "fear", "hack",
    "scam", "fraud", "ban", "regulation", "lawsuit", "sell", "warning",
    "risk", "concern", "decline", "loss", "weak", "trouble",
)


@dataclass
class NewsSentiment:
    token: str
    positive: int = 0
    negative: int = 0
    neutral: int = 0
    overall: Sentiment = Sentiment.NEUTRAL
    headlines: List[str] = field(default_factory=list)


def classify_headline(text: str) -> str:
    """Keyword vote: 'positive' | 'negative' | 'neutral'."""
    lower = (text or "").lower()
    pos = sum(1 for w in POSITIVE_WORDS if w in lower)
    neg = sum(1 for w in NEGATIVE_WORDS if w in lower)
    if pos > neg:
        return "positive"
    if neg > pos:
        return "negative"
    return "neutral"


def summarize(token: str, labelled: Sequence[tuple]) -> NewsSentiment:
    """labelled: sequence of (headline, 'positive'|'negative'|'neutral')."""
    out = NewsSentiment(token=token)
    for title, label in labelled:
        out.headlines.append(title)
        if label == "positive":
            out.positive += 1
        elif label == "negative":
            out.negative += 1
        else:
            out.neutral += 1

    # a side needs a strict majority over everything else
    if out.positive > out.negative + out.neutral:
        out.overall = Sentiment.BULLISH
    elif out.negative > out.positive + out.neutral:
        out.overall = Sentiment.BEARISH
    out.headlines = out.headlines[:3]
    return out


class NewsSentimentService:
    """CryptoPanic headlines, CoinGecko community votes as fallback; per-token cache."""

    def __init__(
        self,
        cache_seconds: float = 300,
        timeout_s: float = 5.0,
        pause_s: float = 0.2,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cache_seconds = cache_seconds
        self.timeout_s = timeout_s
        self.pause_s = pause_s
        self.session = session or requests.Session()
        self.clock = clock
        self._cache: Dict[str, tuple] = {}  # token -> (NewsSentiment, ts)

    def get_sentiment(self, token: str) -> Optional[NewsSentiment]:
        token = token.upper()
        cached = self._cache.get(token)
        if cached and self.clock() - cached[1] < self.cache_seconds:
            return cached[0]

        term = SEARCH_TERMS.get(token, token)
        labelled = self._fetch_cryptopanic(term)
        if labelled is None:
            labelled = self._fetch_coingecko(term)
        if not labelled:
            return None

        result = summarize(token, labelled)
        self._cache[token] = (result, self.clock())
        return result

    def get_all(self, tokens: Sequence[str]) -> Dict[str, NewsSentiment]:
        out: Dict[str, NewsSentiment] = {}
        for i, token in enumerate(tokens):
            s = self.get_sentiment(token)
            if s is not None:
                out[token.upper()] = s
            if self.pause_s and i < len(tokens) - 1:
                time.sleep(self.pause_s)
        return out

    def _fetch_cryptopanic(self, term: str) -> Optional[List[tuple]]:
        try:
            r = self.session.get(
                CRYPTOPANIC_URL,
                params={"currencies": term, "kind": "news", "public": "true"},
                headers={"Accept": "application/json"},
                timeout=self.timeout_s,
            )
            if r.status_code >= 400:
                return None
            results = (r.json() or {}).get("results") or []
        except (requests.RequestException, ValueError) as e:
            log.info("cryptopanic unavailable for %s: %s", term, e)
            return None

        out = []
        for item in results[:10]:
            title = (item or {}).get("title") or ""
            out.append((title, classify_headline(title)))
        return out

    def _fetch_coingecko(self, term: str) -> List[tuple]:
        coin_id = COINGECKO_IDS.get(term, term.lower())
        try:
            r = self.session.get(
                COINGECKO_URL.format(coin_id=coin_id),
                params={
                    "localization": "false",
                    "tickers": "false",
                    "market_data": "false",
                    "community_data": "true",
                    "developer_data": "false",
                },
                timeout=self.timeout_s,
            )
            if r.status_code >= 400:
                return []
            data = r.json() or {}
        except (requests.RequestException, ValueError) as e:
            log.info("coingecko unavailable for %s: %s", coin_id, e)
            return []

        up = data.get("sentiment_votes_up_percentage") or 50
        label = "positive" if up > 60 else "negative" if up < 40 else "neutral"
        title = f"{data.get('name') or 'Unknown'} - {up}% positive sentiment"
        return [(title, label)]


class SentimentCache:
    """
    Engine-side view of the sentiment feed: refreshed on a multi-minute horizon,
    missing tokens read as None (no penalty, no bonus).
    """

    def __init__(
        self,
        service: Optional[NewsSentimentService],
        refresh_seconds: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.service = service
        self.refresh_seconds = refresh_seconds
        self.clock = clock
        self._labels: Dict[str, Sentiment] = {}
        self._last_refresh: Optional[float] = None

    def refresh(self, tokens: Sequence[str]) -> None:
        if self.service is None:
            return
        now = self.clock()
        if self._last_refresh is not None and now - self._last_refresh < self.refresh_seconds:
            return
        self._last_refresh = now

        log.info("fetching news sentiment for %d tokens", len(tokens))
        try:
            fetched = self.service.get_all(tokens)
        except Exception as e:
            log.warning("could not fetch news sentiment: %s", e)
            return
        for token, s in fetched.items():
            self._labels[token] = s.overall

    def get(self, token: str) -> Optional[Sentiment]:
        return self._labels.get(token.upper())
