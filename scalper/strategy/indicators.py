from __future__ import annotations

import logging
import math
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional, Sequence

from scalper.strategy.base import Crossover, IndicatorSnapshot, MACDResult, MarketSample

log = logging.getLogger("scalper.indicators")

MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9
MACD_MIN_SAMPLES = MACD_SLOW + MACD_SIGNAL - 1


def sma(values: Sequence[float], period: int) -> Optional[float]:
    if period <= 0 or len(values) < period:
        return None
    return sum(values[-period:]) / float(period)


def ema(values: Sequence[float], period: int) -> Optional[float]:
    """EMA seeded with the simple average of the first `period` values."""
    if period <= 0 or len(values) < period:
        return None
    tracker = EmaTracker(period)
    out: Optional[float] = None
    for v in values:
        out = tracker.push(v)
    return out


def rsi(values: Sequence[float], period: int = 14) -> Optional[float]:
    """
    RSI over the last `period` price deltas using a plain average of gains and
    losses (no Wilder smoothing).
    Returns None on short history or any non-finite price.
    """
    if period <= 0 or len(values) < period + 1:
        return None
    for v in values:
        if not isinstance(v, (int, float)) or not math.isfinite(v):
            return None

    gains = 0.0
    losses = 0.0
    for i in range(len(values) - period, len(values)):
        diff = values[i] - values[i - 1]
        if diff > 0:
            gains += diff
        else:
            losses += abs(diff)

    avg_gain = gains / period
    avg_loss = losses / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100 - (100 / (1 + rs))


def macd(values: Sequence[float]) -> Optional[MACDResult]:
    """MACD(12, 26, 9) of the whole series; None below 34 samples."""
    if len(values) < MACD_MIN_SAMPLES:
        return None
    tracker = MacdTracker()
    out: Optional[MACDResult] = None
    for v in values:
        out = tracker.push(v)
    return out


class EmaTracker:
    """O(1)-per-sample EMA. Emits None until `period` samples are seen."""

    def __init__(self, period: int):
        self.period = period
        self.k = 2 / (period + 1)
        self.value: Optional[float] = None
        self._seed: List[float] = []

    def push(self, x: float) -> Optional[float]:
        if self.value is None:
            self._seed.append(x)
            if len(self._seed) == self.period:
                self.value = sum(self._seed) / self.period
                self._seed = []
            return self.value
        self.value = (x - self.value) * self.k + self.value
        return self.value


class MacdTracker:
    """
    Incremental MACD: fast/slow EMAs of price, signal EMA of the MACD line.
    Matches prefix recomputation over the same unevicted series.
    """

    def __init__(
        self, fast: int = MACD_FAST, slow: int = MACD_SLOW, signal: int = MACD_SIGNAL
    ):
        self._fast = EmaTracker(fast)
        self._slow = EmaTracker(slow)
        self._signal = EmaTracker(signal)

    def push(self, price: float) -> Optional[MACDResult]:
        f = self._fast.push(price)
        s = self._slow.push(price)
        if f is None or s is None:
            return None
        line = f - s
        sig = self._signal.push(line)
        if sig is None:
            return None
        return MACDResult(macd=line, signal=sig, histogram=line - sig)


class IndicatorEngine:
    """
    Owns per-symbol bounded price history and the MACD state derived from it.
    Mutated once per scan tick via update().
    """

    def __init__(self, max_history: int = 50, rsi_period: int = 14, sma_period: int = 20):
        self.max_history = int(max_history)
        self.rsi_period = int(rsi_period)
        self.sma_period = int(sma_period)

        self._history: Dict[str, Deque[float]] = {}
        self._macd: Dict[str, MacdTracker] = {}
        self._last_macd: Dict[str, Optional[MACDResult]] = {}
        self._prev_histogram: Dict[str, float] = {}
        self._crossover: Dict[str, Crossover] = {}

    def update(self, samples: Iterable[MarketSample]) -> None:
        for s in samples:
            price = s.price
            if not isinstance(price, (int, float)) or not math.isfinite(price) or price <= 0:
                log.warning("skipping invalid price for %s: %r", s.token, price)
                continue

            hist = self._history.get(s.token)
            if hist is None:
                hist = deque(maxlen=self.max_history)
                self._history[s.token] = hist
            hist.append(float(price))

            tracker = self._macd.setdefault(s.token, MacdTracker())
            result = tracker.push(float(price))
            self._last_macd[s.token] = result
            self._crossover[s.token] = self._detect_crossover(s.token, result)

    def _detect_crossover(self, token: str, result: Optional[MACDResult]) -> Crossover:
        if result is None:
            return Crossover.NONE

        cross = Crossover.NONE
        prev = self._prev_histogram.get(token)
        if prev is not None:
            if prev < 0 and result.histogram > 0:
                cross = Crossover.BULLISH
            elif prev > 0 and result.histogram < 0:
                cross = Crossover.BEARISH

        self._prev_histogram[token] = result.histogram
        return cross

    def snapshot(self, token: str) -> IndicatorSnapshot:
        hist = list(self._history.get(token, ()))
        return IndicatorSnapshot(
            rsi=rsi(hist, self.rsi_period),
            sma=sma(hist, self.sma_period),
            macd=self._last_macd.get(token),
            crossover=self._crossover.get(token, Crossover.NONE),
        )

    def history(self, token: str) -> List[float]:
        return list(self._history.get(token, ()))

    def history_length(self, token: str) -> int:
        return len(self._history.get(token, ()))

    def average_history_length(self, tokens: Sequence[str]) -> float:
        if not tokens:
            return 0.0
        total = sum(self.history_length(t) for t in tokens)
        return total / len(tokens)
