from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

from scalper.strategy.base import Action


@dataclass
class Position:
    token: str
    amount: float
    avg_buy_price: float
    current_price: float
    pnl: float = 0.0
    pnl_percentage: float = 0.0
    # martingale / DCA
    dca_level: int = 0
    initial_buy_price: float = 0.0  # fixed at first entry
    highest_price: float = 0.0  # trailing-stop peak, never decreases while open
    total_cost: float = 0.0  # net SOL invested, fee-adjusted; the P&L cost basis
    trailing_armed: bool = False  # latched once pnl% clears activation; cleared by DCA

    def mark(self, price: float) -> None:
        """Mark to market against the fee-adjusted cost basis."""
        self.current_price = price
        self.pnl = self.amount * price - self.total_cost
        self.pnl_percentage = (self.pnl / self.total_cost) * 100 if self.total_cost else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "amount": self.amount,
            "avgBuyPrice": self.avg_buy_price,
            "currentPrice": self.current_price,
            "pnl": self.pnl,
            "pnlPercentage": self.pnl_percentage,
            "dcaLevel": self.dca_level,
            "initialBuyPrice": self.initial_buy_price,
            "highestPrice": self.highest_price,
            "totalCost": self.total_cost,
            "trailingArmed": self.trailing_armed,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Position":
        amount = float(d["amount"])
        avg = float(d.get("avgBuyPrice", 0.0) or 0.0)
        initial = float(d.get("initialBuyPrice", avg) or avg)
        total_cost = d.get("totalCost")
        return cls(
            token=str(d["token"]).upper(),
            amount=amount,
            avg_buy_price=avg,
            current_price=float(d.get("currentPrice", avg) or avg),
            pnl=float(d.get("pnl", 0.0) or 0.0),
            pnl_percentage=float(d.get("pnlPercentage", 0.0) or 0.0),
            dca_level=int(d.get("dcaLevel", 0) or 0),
            initial_buy_price=initial,
            highest_price=float(d.get("highestPrice", initial) or initial),
            # older records may lack totalCost; fall back to avg * amount
            total_cost=float(total_cost) if total_cost is not None else avg * amount,
            trailing_armed=bool(d.get("trailingArmed", False)),
        )


@dataclass(frozen=True)
class Trade:
    id: str
    timestamp: int  # ms
    token: str
    action: Action
    amount: float
    price: float
    fee: float
    total: float

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["action"] = self.action.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Trade":
        return cls(
            id=str(d["id"]),
            timestamp=int(d["timestamp"]),
            token=str(d["token"]).upper(),
            action=Action(str(d["action"]).upper()),
            amount=float(d["amount"]),
            price=float(d["price"]),
            fee=float(d["fee"]),
            total=float(d["total"]),
        )


@dataclass(frozen=True)
class Portfolio:
    total_equity: float
    cash_balance: float
    total_pnl: float
    total_pnl_percentage: float
    positions: List[Position] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalEquity": self.total_equity,
            "cashBalance": self.cash_balance,
            "totalPnL": self.total_pnl,
            "totalPnLPercentage": self.total_pnl_percentage,
            "positions": [p.to_dict() for p in self.positions],
        }
