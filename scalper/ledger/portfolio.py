from __future__ import annotations

import copy
import logging
import math
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from scalper.core.config import TradingConfig
from scalper.core.errors import PersistenceError
from scalper.execution.position_manager import ForcedAction, PositionManager
from scalper.ledger.models import Portfolio, Position, Trade
from scalper.persistence.state_store import StateStore
from scalper.persistence.writer import PersistenceWriter
from scalper.strategy.base import Action, Decision, MarketSample

log = logging.getLogger("scalper.ledger")


class PortfolioLedger:
    """
    Paper portfolio: cash, open positions and the newest-first trade log.

    Every mutation and every read happens under one lock; reads hand out copies.
    Accepted trades enqueue a full snapshot record on the persistence writer.
    """

    def __init__(
        self,
        cfg: TradingConfig,
        manager: Optional[PositionManager] = None,
        store: Optional[StateStore] = None,
        writer: Optional[PersistenceWriter] = None,
        store_key: str = "paper",
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg
        self.manager = manager or PositionManager(cfg)
        self.store = store
        self.writer = writer
        self.store_key = store_key
        self.clock = clock

        self._lock = threading.RLock()
        self.cash_balance: float = cfg.initial_balance
        self.positions: Dict[str, Position] = {}
        self.trades: List[Trade] = []
        self.trade_counter: int = 0

    # ---------- persistence ----------
    def _reset(self) -> None:
        self.cash_balance = self.cfg.initial_balance
        self.positions = {}
        self.trades = []
        self.trade_counter = 0

    def load(self) -> bool:
        """Restore the saved record. Returns True when one was loaded."""
        if self.store is None:
            return False
        with self._lock:
            try:
                record = self.store.load_portfolio(self.store_key)
                if record is None:
                    log.info("no saved portfolio under %s, starting fresh", self.store_key)
                    return False
                cash = float(record["cashBalance"])
                if not math.isfinite(cash) or cash < 0:
                    raise ValueError(f"bad cashBalance {cash!r}")
                positions = {}
                for p in record.get("positions", []):
                    pos = Position.from_dict(p)
                    positions[pos.token] = pos
                trades = [Trade.from_dict(t) for t in record.get("trades", [])]
                counter = int(record.get("tradeCounter", 0))
            except (PersistenceError, KeyError, TypeError, ValueError) as e:
                log.warning("saved portfolio unreadable (%s), resetting to defaults", e)
                self._reset()
                return False

            self.cash_balance = cash
            self.positions = positions
            self.trades = trades
            self.trade_counter = counter
            log.info(
                "loaded portfolio: cash=%.4f positions=%d trades=%d",
                cash,
                len(positions),
                len(trades),
            )
            return True

    def _record(self) -> Dict[str, Any]:
        return {
            "cashBalance": self.cash_balance,
            "positions": [p.to_dict() for p in self.positions.values()],
            "trades": [t.to_dict() for t in self.trades],
            "tradeCounter": self.trade_counter,
        }

    def _persist(self) -> None:
        if self.store is None:
            return
        record = self._record()
        store, key = self.store, self.store_key
        if self.writer is not None:
            self.writer.submit(
                "portfolio", lambda: store.save_portfolio(key, record), key=f"portfolio:{key}"
            )
            return
        try:
            store.save_portfolio(key, record)
        except PersistenceError as e:
            log.error("portfolio save failed: %s", e)

    # ---------- marking ----------
    def total_equity(self) -> float:
        with self._lock:
            return self.cash_balance + sum(
                p.amount * p.current_price for p in self.positions.values()
            )

    def update_prices(self, samples: Iterable[MarketSample]) -> None:
        with self._lock:
            for s in samples:
                pos = self.positions.get(s.token)
                if pos is not None and math.isfinite(s.price) and s.price > 0:
                    pos.mark(s.price)

    def monitor(self, samples: Iterable[MarketSample]) -> Optional[ForcedAction]:
        with self._lock:
            return self.manager.monitor(samples, self.positions)

    # ---------- trading ----------
    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def execute_trade(
        self, decision: Decision, price: float, *, forced_exit: bool = False
    ) -> Optional[Trade]:
        if decision.action == Action.HOLD:
            return None
        if not isinstance(price, (int, float)) or not math.isfinite(price) or price <= 0:
            log.warning("refusing %s %s at invalid price %r", decision.action.value, decision.token, price)
            return None

        token = decision.token.upper()
        now_ms = self._now_ms()
        with self._lock:
            if not self.manager.may_trade(token, now_ms, forced_exit=forced_exit):
                remaining = self.manager.cooldown.remaining_ms(token, now_ms)
                log.info("%s in cooldown (%ds left), skipping %s", token, remaining // 1000, decision.action.value)
                return None

            if decision.action == Action.BUY:
                trade = self._buy(token, price, now_ms)
            else:
                trade = self._sell(token, price, now_ms)

            if trade is None:
                return None
            self.manager.record_trade(token, now_ms)
            self.trades.insert(0, trade)
            self._persist()
            return trade

    def _next_id(self) -> str:
        self.trade_counter += 1
        return f"T{self.trade_counter}"

    def _buy(self, token: str, price: float, now_ms: int) -> Optional[Trade]:
        equity = self.total_equity()
        existing = self.positions.get(token)
        if existing is not None:
            invest = self.manager.size_dca(existing, price, self.cash_balance, equity)
        else:
            invest = self.manager.size_entry(self.cash_balance, equity)
        if invest is None:
            return None

        fee = invest * self.cfg.fee_rate
        net = invest - fee
        qty = net / price
        self.cash_balance -= invest

        if existing is not None:
            self.manager.accumulate(existing, price, net, qty)
        else:
            self.positions[token] = self.manager.open_position(token, price, net, qty)

        return Trade(
            id=self._next_id(),
            timestamp=now_ms,
            token=token,
            action=Action.BUY,
            amount=qty,
            price=price,
            fee=fee,
            total=invest,
        )

    def _sell(self, token: str, price: float, now_ms: int) -> Optional[Trade]:
        pos = self.positions.get(token)
        if pos is None:
            log.info("no position in %s to sell", token)
            return None
        if not math.isfinite(pos.amount) or pos.amount <= 0:
            log.warning("invalid amount for %s, aborting sell", token)
            return None

        sale_value = pos.amount * price
        fee = sale_value * self.cfg.fee_rate
        net = sale_value - fee
        realized = net - pos.total_cost
        pct = (realized / pos.total_cost) * 100 if pos.total_cost else 0.0

        self.cash_balance += net
        del self.positions[token]
        log.info(
            "SELL EXECUTED: %.4f %s @ %.6f realized %+.4f SOL (%+.2f%%) after %d DCA entries; "
            "initial %.6f peak %.6f exit %.6f",
            pos.amount,
            token,
            price,
            realized,
            pct,
            pos.dca_level,
            pos.initial_buy_price,
            pos.highest_price,
            price,
        )

        return Trade(
            id=self._next_id(),
            timestamp=now_ms,
            token=token,
            action=Action.SELL,
            amount=pos.amount,
            price=price,
            fee=fee,
            total=net,
        )

    # ---------- reads ----------
    def portfolio(self) -> Portfolio:
        with self._lock:
            positions = [copy.copy(p) for p in self.positions.values()]
            equity = self.total_equity()
            pnl = equity - self.cfg.initial_balance
            base = self.cfg.initial_balance
            return Portfolio(
                total_equity=equity,
                cash_balance=self.cash_balance,
                total_pnl=pnl,
                total_pnl_percentage=(pnl / base) * 100 if base else 0.0,
                positions=positions,
            )

    def positions_snapshot(self) -> Dict[str, Position]:
        with self._lock:
            return {k: copy.copy(v) for k, v in self.positions.items()}

    def recent_trades(self, limit: int = 50) -> List[Trade]:
        with self._lock:
            return list(self.trades[: max(0, int(limit))])

    def stats(self) -> Dict[str, Any]:
        """
        Closed-cycle win rate.
        A sell wins when its price beats the average cost of the buys that
        opened the cycle (older trades of the same token up to the previous sell).
        """
        with self._lock:
            trades = list(self.trades)

        sells = 0
        wins = 0
        for i, t in enumerate(trades):
            if t.action != Action.SELL:
                continue
            sells += 1
            cost = 0.0
            amount = 0.0
            for older in trades[i + 1 :]:
                if older.token != t.token:
                    continue
                if older.action == Action.SELL:
                    break
                cost += older.total
                amount += older.amount
            if amount > 0 and t.price > cost / amount:
                wins += 1

        return {
            "totalTrades": len(trades),
            "winningTrades": wins,
            "winRate": (wins / sells) * 100 if sells else 0.0,
        }
