from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional

from scalper.core.config import TradingConfig
from scalper.ledger.models import Position
from scalper.policy.trade_policy import CooldownGate
from scalper.strategy.base import Action, MarketSample

log = logging.getLogger("scalper.positions")

# a DCA that would overshoot available cash uses this share of it instead
DCA_CASH_CAP = 0.8
# DCA re-entries may grow a position up to this multiple of the max share
DCA_POSITION_LIMIT_FACTOR = 2


class ExitKind(str, Enum):
    HARD_STOP = "HARD_STOP"
    TRAILING_STOP = "TRAILING_STOP"
    DCA = "DCA"


@dataclass(frozen=True)
class ForcedAction:
    token: str
    action: Action
    kind: ExitKind
    reason: str
    price: float


def _move(price: float, ref: float) -> float:
    if not ref or ref <= 0:
        return 0.0
    return (price - ref) / ref


class PositionManager:
    """
    Per-token state machine NONE -> OPEN(0) -> OPEN(k) -> CLOSED.

    Owns sizing, DCA escalation, trailing/hard stops and the cooldown gate.
    Positions themselves live in the ledger; this class mutates the ones it is given.
    """

    def __init__(self, cfg: TradingConfig, cooldown: Optional[CooldownGate] = None):
        self.cfg = cfg
        self.cooldown = cooldown or CooldownGate(cfg.cooldown_seconds)

    # ---------- cooldown ----------
    def may_trade(self, token: str, now_ms: int, *, forced_exit: bool = False) -> bool:
        if forced_exit and self.cfg.exit_bypasses_cooldown:
            return True
        return self.cooldown.ok(token, now_ms)

    def record_trade(self, token: str, now_ms: int) -> None:
        self.cooldown.mark(token, now_ms)

    # ---------- sizing ----------
    def available_cash(self, cash: float, equity: float) -> float:
        return cash - equity * self.cfg.min_cash_reserve

    def size_entry(self, cash: float, equity: float) -> Optional[float]:
        """SOL to invest for a first entry, or None when rejected."""
        available = self.available_cash(cash, equity)
        if available < self.cfg.min_trade_amount:
            log.info(
                "cash reserve protection: keeping %.0f%% reserve",
                self.cfg.min_cash_reserve * 100,
            )
            return None

        invest = min(
            available * self.cfg.buy_percent,
            equity * self.cfg.max_position_percent,
        )
        if invest < self.cfg.min_trade_amount:
            log.info("trade too small: %.4f SOL", invest)
            return None
        return invest

    def size_dca(
        self, pos: Position, price: float, cash: float, equity: float
    ) -> Optional[float]:
        """SOL to invest for the next martingale level, or None when rejected."""
        if pos.dca_level >= self.cfg.max_dca_level:
            log.info("%s already at max DCA level %d", pos.token, pos.dca_level)
            return None

        available = self.available_cash(cash, equity)
        if available < self.cfg.min_trade_amount:
            log.info(
                "cash reserve protection: keeping %.0f%% reserve",
                self.cfg.min_cash_reserve * 100,
            )
            return None

        multiplier = self.cfg.dca_multipliers[pos.dca_level]
        base_size = pos.total_cost / (pos.dca_level + 1)
        invest = base_size * multiplier
        if invest > available:
            invest = available * DCA_CASH_CAP
            log.info("DCA size limited by cash: using %.4f SOL", invest)

        limit = self.cfg.max_position_percent * DCA_POSITION_LIMIT_FACTOR
        new_share = (pos.amount * price + invest) / equity if equity > 0 else float("inf")
        if new_share > limit:
            log.info(
                "DCA would exceed %dx position limit: %s would be %.1f%% of portfolio",
                DCA_POSITION_LIMIT_FACTOR,
                pos.token,
                new_share * 100,
            )
            return None

        if invest < self.cfg.min_trade_amount:
            log.info("DCA too small for %s: %.4f SOL", pos.token, invest)
            return None
        return invest

    # ---------- transitions ----------
    def open_position(self, token: str, price: float, net: float, qty: float) -> Position:
        pos = Position(
            token=token,
            amount=qty,
            avg_buy_price=price,
            current_price=price,
            dca_level=0,
            initial_buy_price=price,
            highest_price=price,
            total_cost=net,
        )
        log.info("INITIAL POSITION: %s @ %.6f amount=%.4f invest=%.4f", token, price, qty, net)
        return pos

    def accumulate(self, pos: Position, price: float, net: float, qty: float) -> None:
        """DCA fill: volume-weighted average, level +1; initial/peak untouched, trailing disarmed."""
        old_avg = pos.avg_buy_price
        pos.amount += qty
        pos.total_cost += net
        pos.avg_buy_price = pos.total_cost / pos.amount
        pos.dca_level += 1
        pos.mark(price)
        pos.trailing_armed = False
        log.info(
            "DCA EXECUTED: level %d/%d for %s @ %.6f avg %.6f -> %.6f",
            pos.dca_level,
            self.cfg.max_dca_level,
            pos.token,
            price,
            old_avg,
            pos.avg_buy_price,
        )

    # ---------- monitoring ----------
    def update_peak(self, pos: Position, price: float) -> bool:
        if price > pos.highest_price:
            pos.highest_price = price
            log.info(
                "%s NEW PEAK: %.6f (%+.2f%% from initial entry)",
                pos.token,
                price,
                _move(price, pos.initial_buy_price) * 100,
            )
            return True
        return False

    def check_hard_stop(self, pos: Position) -> Optional[str]:
        if pos.pnl_percentage <= self.cfg.hard_stop_loss * 100:
            return (
                f"Hard stop loss: {pos.pnl_percentage:.2f}% "
                f"(DCA Level {pos.dca_level}/{self.cfg.max_dca_level})"
            )
        return None

    def arm_trailing(self, pos: Position) -> bool:
        if not pos.trailing_armed and pos.pnl_percentage > self.cfg.trailing_stop_activation * 100:
            pos.trailing_armed = True
            log.info("%s trailing stop armed at %+.2f%%", pos.token, pos.pnl_percentage)
            return True
        return False

    def check_trailing_stop(self, pos: Position, price: float) -> Optional[str]:
        # only ever locks a profit
        activated = pos.trailing_armed and pos.pnl_percentage > 0
        drop = _move(price, pos.highest_price)
        if activated and drop < -self.cfg.trailing_stop_callback:
            return (
                f"Trailing stop: {drop * 100:.2f}% from peak {pos.highest_price:.6f}, "
                f"securing +{pos.pnl_percentage:.2f}% profit"
            )
        return None

    def check_dca(self, pos: Position, price: float) -> Optional[str]:
        level = pos.dca_level
        if level >= self.cfg.max_dca_level:
            return None
        zone = self.cfg.dca_zones[level]
        from_initial = _move(price, pos.initial_buy_price)
        if from_initial <= zone:
            return (
                f"DCA Level {level + 1}/{self.cfg.max_dca_level}: "
                f"{from_initial * 100:.2f}% drop, {self.cfg.dca_multipliers[level]:g}x position"
            )
        return None

    def evaluate(self, pos: Position, price: float) -> Optional[ForcedAction]:
        """Peak and trailing arm first, then hard stop, trailing stop, DCA."""
        self.update_peak(pos, price)
        self.arm_trailing(pos)

        reason = self.check_hard_stop(pos)
        if reason:
            return ForcedAction(pos.token, Action.SELL, ExitKind.HARD_STOP, reason, price)

        reason = self.check_trailing_stop(pos, price)
        if reason:
            return ForcedAction(pos.token, Action.SELL, ExitKind.TRAILING_STOP, reason, price)

        reason = self.check_dca(pos, price)
        if reason:
            return ForcedAction(pos.token, Action.BUY, ExitKind.DCA, reason, price)
        return None

    def monitor(
        self, samples: Iterable[MarketSample], positions: Dict[str, Position]
    ) -> Optional[ForcedAction]:
        """At most one forced action per scan; open positions checked in feed order."""
        for s in samples:
            pos = positions.get(s.token)
            if pos is None or pos.amount <= 0:
                continue
            if not math.isfinite(s.price) or s.price <= 0:
                continue
            forced = self.evaluate(pos, s.price)
            if forced is not None:
                log.info("%s TRIGGERED on %s: %s", forced.kind.value, forced.token, forced.reason)
                return forced
        return None
