from scalper.core.config import TradingConfig
from scalper.ledger.models import Position
from scalper.strategy.base import (
    Action,
    Crossover,
    IndicatorSnapshot,
    MACDResult,
    MarketSample,
    Sentiment,
)
from scalper.strategy.signals import data_penalty, generate_signal, warmup_hold

CFG = TradingConfig()
MACD = MACDResult(macd=0.1, signal=0.05, histogram=0.05)


def _snap(rsi=50.0, sma=100.0, macd=MACD, crossover=Crossover.NONE):
    return IndicatorSnapshot(rsi=rsi, sma=sma, macd=macd, crossover=crossover)


def _sample(price=100.0, change=0.0, token="SOL"):
    return MarketSample(token, price, change, 0)


def _position(pnl_pct):
    p = Position(token="SOL", amount=1.0, avg_buy_price=100.0, current_price=100.0, total_cost=100.0)
    p.mark(100.0 * (1 + pnl_pct / 100))
    return p


def test_rsi_missing_forces_insufficient_data_hold():
    sig = generate_signal(_sample(), _snap(rsi=None), None, None, CFG)
    assert sig.action == Action.HOLD
    assert sig.strength == 0
    assert sig.reasons == ("Insufficient data",)


def test_rsi_zero_counts_as_invalid():
    assert data_penalty(_snap(rsi=0.0)) == 50
    sig = generate_signal(_sample(), _snap(rsi=0.0, crossover=Crossover.BULLISH), None, None, CFG)
    assert sig.action == Action.HOLD
    assert sig.strength == 0


def test_sma_and_macd_missing_cross_the_threshold():
    assert data_penalty(_snap(sma=None, macd=None)) == 35
    sig = generate_signal(_sample(), _snap(sma=None, macd=None), None, None, CFG)
    # 35 < 40: scored but penalised, nothing to buy on
    assert sig.action == Action.HOLD


def test_buy_on_oversold_and_bullish_cross():
    sig = generate_signal(_sample(), _snap(rsi=25, crossover=Crossover.BULLISH), None, None, CFG)
    assert sig.action == Action.BUY
    assert sig.strength == 75
    assert "MACD Bullish" in sig.reasons


def test_oversold_alone_is_not_enough():
    sig = generate_signal(_sample(), _snap(rsi=25), None, None, CFG)
    assert sig.action == Action.HOLD
    assert sig.strength == 40


def test_buy_strength_is_capped_at_100():
    sig = generate_signal(
        _sample(price=90.0, change=-8.0),
        _snap(rsi=20, sma=100.0, crossover=Crossover.BULLISH),
        None,
        Sentiment.BULLISH,
        CFG,
    )
    assert sig.action == Action.BUY
    assert sig.strength == 100


def test_bearish_news_vetoes_entry():
    sig = generate_signal(
        _sample(), _snap(rsi=25, crossover=Crossover.BULLISH), None, Sentiment.BEARISH, CFG
    )
    assert sig.action == Action.HOLD
    assert sig.strength == 40


def test_rsi_floor_is_not_oversold():
    sig = generate_signal(_sample(), _snap(rsi=0.05, crossover=Crossover.BULLISH), None, None, CFG)
    assert not any(r.startswith("RSI Oversold") for r in sig.reasons)
    assert sig.action == Action.HOLD


def test_sell_on_stop_loss_plus_bearish_cross():
    sig = generate_signal(_sample(), _snap(crossover=Crossover.BEARISH), _position(-2.0), None, CFG)
    assert sig.action == Action.SELL
    assert sig.strength == 85


def test_take_profit_plus_overbought_sells():
    sig = generate_signal(_sample(), _snap(rsi=80), _position(1.0), None, CFG)
    assert sig.action == Action.SELL
    assert sig.strength == 80


def test_open_position_never_scores_buy():
    sig = generate_signal(
        _sample(price=90.0, change=-8.0),
        _snap(rsi=20, crossover=Crossover.BULLISH),
        _position(0.0),
        None,
        CFG,
    )
    assert sig.action == Action.HOLD


def test_warmup_hold_until_threshold():
    d = warmup_hold(7.4, CFG)
    assert d.token == "SYSTEM"
    assert d.action == Action.HOLD
    assert d.confidence == 0
    assert d.reason == "Collecting market data (Warmup)... 7/20"
    assert warmup_hold(20, CFG) is None
