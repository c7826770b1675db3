import pytest

from scalper.core.config import TradingConfig
from scalper.execution.position_manager import ExitKind, PositionManager
from scalper.ledger.models import Position
from scalper.strategy.base import Action, MarketSample


def _open(pm, price=1.0, net=1.0, token="SOL"):
    return pm.open_position(token, price, net, net / price)


def test_entry_size_uses_smaller_of_buy_share_and_position_cap():
    pm = PositionManager(TradingConfig())
    # available = 10 - 2 = 8; 8 * 0.15 = 1.2 < 10 * 0.3
    assert pm.size_entry(10.0, 10.0) == pytest.approx(1.2)
    # available = 9.8 - 2 = 7.8 -> 1.17; cap = 3
    assert pm.size_entry(9.8, 10.0) == pytest.approx(1.17)


def test_entry_rejected_by_reserve():
    pm = PositionManager(TradingConfig())
    assert pm.size_entry(2.0, 10.0) is None


def test_entry_rejected_below_min_trade():
    pm = PositionManager(TradingConfig())
    # available 0.3 -> 0.045 < 0.05
    assert pm.size_entry(2.3, 10.0) is None


def test_dca_size_follows_multiplier_ladder():
    pm = PositionManager(TradingConfig())
    pos = _open(pm, net=1.0)
    assert pm.size_dca(pos, 0.98, 8.8, 10.0) == pytest.approx(1.0)

    pos.dca_level = 1
    pos.total_cost = 2.0
    # base = 2 / 2 = 1, multiplier 1.5
    assert pm.size_dca(pos, 0.95, 7.8, 10.0) == pytest.approx(1.5)


def test_dca_capped_to_80pct_of_available_cash():
    pm = PositionManager(TradingConfig())
    pos = _open(pm, net=1.0)
    pos.dca_level = 2
    pos.total_cost = 3.0
    pos.amount = 3.0
    # wanted 2.0, available = 3.5 - 2 = 1.5 -> 1.2
    assert pm.size_dca(pos, 0.5, 3.5, 10.0) == pytest.approx(1.2)


def test_dca_rejected_past_double_position_limit():
    pm = PositionManager(TradingConfig())
    pos = _open(pm, net=5.0)
    assert pm.size_dca(pos, 1.0, 9.0, 10.0) is None


def test_dca_rejected_at_max_level():
    pm = PositionManager(TradingConfig())
    pos = _open(pm)
    pos.dca_level = 3
    assert pm.size_dca(pos, 0.5, 9.0, 10.0) is None


def test_accumulate_averages_and_keeps_initial_and_peak():
    pm = PositionManager(TradingConfig())
    pos = _open(pm, price=1.0, net=1.0)
    pos.highest_price = 1.01
    pm.accumulate(pos, 0.98, 1.0, 1.0 / 0.98)

    assert pos.dca_level == 1
    assert pos.total_cost == pytest.approx(2.0)
    assert pos.avg_buy_price == pytest.approx(2.0 / (1.0 + 1.0 / 0.98))
    assert pos.initial_buy_price == 1.0
    assert pos.highest_price == 1.01


def test_peak_is_monotonic():
    pm = PositionManager(TradingConfig())
    pos = _open(pm)
    for p in (1.01, 1.03, 1.02, 0.9, 1.025):
        pm.update_peak(pos, p)
    assert pos.highest_price == 1.03


def test_dca_trigger_one_level_at_a_time():
    pm = PositionManager(TradingConfig())
    pos = _open(pm)
    pos.mark(0.89)
    # -11% crosses every zone, but only the next unconsumed one fires
    forced = pm.evaluate(pos, 0.89)
    assert forced.kind == ExitKind.DCA
    assert forced.action == Action.BUY
    assert forced.reason.startswith("DCA Level 1/3")


def test_no_dca_when_above_next_zone():
    pm = PositionManager(TradingConfig())
    pos = _open(pm)
    pos.dca_level = 1
    pos.mark(0.97)
    assert pm.evaluate(pos, 0.97) is None


def test_hard_stop_beats_remaining_dca_levels():
    pm = PositionManager(TradingConfig())
    pos = _open(pm)
    pos.mark(0.84)
    forced = pm.evaluate(pos, 0.84)
    assert forced.kind == ExitKind.HARD_STOP
    assert forced.action == Action.SELL
    assert "DCA Level 0/3" in forced.reason


def test_trailing_stop_needs_activation_and_callback():
    pm = PositionManager(TradingConfig())
    pos = _open(pm)

    pos.mark(1.03)
    assert pm.evaluate(pos, 1.03) is None
    assert pos.highest_price == 1.03

    # -0.1% from peak: still inside callback
    pos.mark(1.0269)
    assert pm.evaluate(pos, 1.0269) is None

    pos.mark(1.0245)
    forced = pm.evaluate(pos, 1.0245)
    assert forced.kind == ExitKind.TRAILING_STOP
    assert "from peak" in forced.reason
    assert "profit" in forced.reason


def test_trailing_stop_not_active_below_activation():
    pm = PositionManager(TradingConfig())
    pos = _open(pm)
    pm.update_peak(pos, 1.012)
    pos.mark(1.005)
    assert pm.evaluate(pos, 1.005) is None


def test_monitor_first_symbol_in_feed_order_wins():
    pm = PositionManager(TradingConfig())
    a = _open(pm, token="SOL")
    b = _open(pm, token="JUP")
    a.mark(0.97)
    b.mark(0.97)
    samples = [MarketSample("JUP", 0.97, 0, 0), MarketSample("SOL", 0.97, 0, 0)]
    forced = pm.monitor(samples, {"SOL": a, "JUP": b})
    assert forced.token == "JUP"


def test_monitor_ignores_tokens_without_position():
    pm = PositionManager(TradingConfig())
    assert pm.monitor([MarketSample("SOL", 1.0, 0, 0)], {}) is None


def test_forced_exit_bypass_is_opt_in():
    strict = PositionManager(TradingConfig())
    strict.record_trade("SOL", 1_000_000)
    assert not strict.may_trade("SOL", 1_010_000, forced_exit=True)

    lenient = PositionManager(TradingConfig(exit_bypasses_cooldown=True))
    lenient.record_trade("SOL", 1_000_000)
    assert lenient.may_trade("SOL", 1_010_000, forced_exit=True)
    assert not lenient.may_trade("SOL", 1_010_000)


def test_position_roundtrip_falls_back_to_avg_cost():
    p = Position.from_dict({"token": "sol", "amount": 2, "avgBuyPrice": 1.5})
    assert p.token == "SOL"
    assert p.total_cost == 3.0
    assert p.initial_buy_price == 1.5
    assert p.highest_price == 1.5


def test_no_trailing_exit_after_dca_recovery_below_activation():
    pm = PositionManager(TradingConfig())
    pos = _open(pm, price=1.0, net=1.0)
    pm.accumulate(pos, 0.98, 1.0, 1.0 / 0.98)
    pm.accumulate(pos, 0.95, 1.5, 1.5 / 0.95)
    assert pos.dca_level == 2

    # +0.27% on the averaged basis, 2.5% under the pre-DCA peak
    pos.mark(0.975)
    assert 0 < pos.pnl_percentage < 1.5
    assert pm.evaluate(pos, 0.975) is None
    assert not pos.trailing_armed


def test_trailing_arm_latches_until_next_dca():
    pm = PositionManager(TradingConfig())
    pos = _open(pm)

    pos.mark(1.018)
    pm.evaluate(pos, 1.018)
    assert pos.trailing_armed

    # +1.38%: below activation, inside the callback, still armed
    pos.mark(1.0138)
    assert pm.evaluate(pos, 1.0138) is None
    assert pos.trailing_armed

    pm.accumulate(pos, 0.98, 1.0, 1.0 / 0.98)
    assert not pos.trailing_armed


def test_trailing_arm_survives_record_roundtrip():
    pos = Position("SOL", 1.0, 1.0, 1.02, total_cost=1.0, trailing_armed=True)
    assert Position.from_dict(pos.to_dict()).trailing_armed is True
    assert Position.from_dict({"token": "SOL", "amount": 1}).trailing_armed is False
