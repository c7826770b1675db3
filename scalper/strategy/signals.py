from __future__ import annotations

import math
from typing import List, Optional

from scalper.core.config import TradingConfig
from scalper.ledger.models import Position
from scalper.strategy.base import (
    Action,
    Crossover,
    Decision,
    IndicatorSnapshot,
    MarketSample,
    Sentiment,
    TradingSignal,
)

# data-quality penalties
RSI_INVALID_PENALTY = 50
SMA_MISSING_PENALTY = 15
MACD_MISSING_PENALTY = 20
PENALTY_HOLD_THRESHOLD = 40

# sell-side weights (open position)
W_TAKE_PROFIT = 45
W_STOP_LOSS = 55
W_OVERBOUGHT = 35
W_BEARISH_CROSS = 30
W_NEWS_BEARISH_EXIT = 20

# buy-side weights (flat)
W_OVERSOLD = 40
W_BULLISH_CROSS = 35
W_BELOW_SMA = 20
W_DIP = 18
W_NEWS_BULLISH = 20
W_NEWS_BEARISH_ENTRY = -35

# RSI at or below this is treated as flatline data, not oversold
RSI_FLOOR = 0.1
SMA_DISCOUNT = 0.98
DIP_24H_PCT = -5.0

SYSTEM_TOKEN = "SYSTEM"


def _rsi_invalid(v: Optional[float]) -> bool:
    return v is None or not math.isfinite(v) or v == 0


def data_penalty(ind: IndicatorSnapshot) -> int:
    penalty = 0
    if _rsi_invalid(ind.rsi):
        penalty += RSI_INVALID_PENALTY
    if ind.sma is None:
        penalty += SMA_MISSING_PENALTY
    if ind.macd is None:
        penalty += MACD_MISSING_PENALTY
    return penalty


def generate_signal(
    sample: MarketSample,
    indicators: IndicatorSnapshot,
    position: Optional[Position],
    sentiment: Optional[Sentiment],
    cfg: TradingConfig,
) -> TradingSignal:
    """
    Code-enforced rule scoring for one token.

    - data-quality gate first: a large enough penalty forces HOLD/0
    - open position: accumulate sell strength
    - flat: accumulate buy strength
    - act only when one side is strictly stronger and clears min confidence
    """
    reasons: List[str] = []
    penalty = data_penalty(indicators)
    if _rsi_invalid(indicators.rsi):
        reasons.append("RSI invalid")

    if penalty >= PENALTY_HOLD_THRESHOLD:
        return TradingSignal(
            token=sample.token,
            action=Action.HOLD,
            strength=0,
            reasons=("Insufficient data",),
            indicators=indicators,
            sentiment=sentiment,
        )

    rsi_v = indicators.rsi
    sma_v = indicators.sma
    buy = 0.0
    sell = 0.0
    has_position = position is not None and position.amount > 0

    if has_position:
        pnl = position.pnl_percentage
        if pnl >= cfg.take_profit_pct:
            sell += W_TAKE_PROFIT
            reasons.append(f"Scalp profit +{pnl:.2f}%")
        if pnl <= cfg.stop_loss_pct:
            sell += W_STOP_LOSS
            reasons.append(f"Stop loss {pnl:.2f}%")
        if rsi_v is not None and rsi_v > cfg.rsi_overbought:
            sell += W_OVERBOUGHT
            reasons.append(f"RSI Overbought {rsi_v:.1f}")
        if indicators.crossover == Crossover.BEARISH:
            sell += W_BEARISH_CROSS
            reasons.append("MACD Bearish")
        if sentiment == Sentiment.BEARISH:
            sell += W_NEWS_BEARISH_EXIT
            reasons.append("News Bearish")
        sell = max(0.0, sell - penalty)
    else:
        if rsi_v is not None and RSI_FLOOR < rsi_v < cfg.rsi_oversold:
            buy += W_OVERSOLD
            reasons.append(f"RSI Oversold {rsi_v:.1f}")
        if indicators.crossover == Crossover.BULLISH:
            buy += W_BULLISH_CROSS
            reasons.append("MACD Bullish")
        if sma_v is not None and sample.price < sma_v * SMA_DISCOUNT:
            buy += W_BELOW_SMA
            reasons.append("Price < SMA20")
        if sample.change24h < DIP_24H_PCT:
            buy += W_DIP
            reasons.append(f"Dip -{abs(sample.change24h):.1f}%")
        if sentiment == Sentiment.BULLISH:
            buy += W_NEWS_BULLISH
            reasons.append("News Bullish")
        if sentiment == Sentiment.BEARISH:
            buy += W_NEWS_BEARISH_ENTRY
            reasons.append("News Bearish")
        buy = max(0.0, buy - penalty)

    if sell > buy and sell >= cfg.min_confidence:
        action, strength = Action.SELL, min(sell, 100.0)
    elif buy > sell and buy >= cfg.min_confidence:
        action, strength = Action.BUY, min(buy, 100.0)
    else:
        # diagnostic only
        action, strength = Action.HOLD, max(buy, sell)

    return TradingSignal(
        token=sample.token,
        action=action,
        strength=strength,
        reasons=tuple(reasons),
        indicators=indicators,
        sentiment=sentiment,
    )


def warmup_hold(avg_points: float, cfg: TradingConfig) -> Optional[Decision]:
    """Synthetic HOLD while the average history is below the warmup period."""
    if avg_points >= cfg.warmup_period:
        return None
    return Decision(
        token=SYSTEM_TOKEN,
        action=Action.HOLD,
        confidence=0,
        reason=f"Collecting market data (Warmup)... {avg_points:.0f}/{cfg.warmup_period}",
    )
