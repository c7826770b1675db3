from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class Action(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class Crossover(str, Enum):
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NONE = "NONE"


class Sentiment(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


@dataclass(frozen=True)
class MarketSample:
    token: str
    price: float
    change24h: float
    timestamp: int  # ms

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "price": self.price,
            "change24h": self.change24h,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class MACDResult:
    macd: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class IndicatorSnapshot:
    rsi: Optional[float] = None
    sma: Optional[float] = None
    macd: Optional[MACDResult] = None
    crossover: Crossover = Crossover.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rsi": self.rsi,
            "sma": self.sma,
            "macd": None
            if self.macd is None
            else {
                "macd": self.macd.macd,
                "signal": self.macd.signal,
                "histogram": self.macd.histogram,
            },
            "crossover": self.crossover.value,
        }


@dataclass(frozen=True)
class TradingSignal:
    """Rule-scored candidate for one token. Immutable once produced."""

    token: str
    action: Action
    strength: float
    reasons: Tuple[str, ...] = ()
    indicators: IndicatorSnapshot = field(default_factory=IndicatorSnapshot)
    sentiment: Optional[Sentiment] = None

    @property
    def reason_text(self) -> str:
        return ", ".join(self.reasons)


@dataclass(frozen=True)
class Decision:
    """What the engine hands to an executioner: one token, one action."""

    token: str
    action: Action
    confidence: float
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "action": self.action.value,
            "confidence": self.confidence,
            "reason": self.reason,
        }
