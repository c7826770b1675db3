from __future__ import annotations

import json
import logging
import math
import threading
import time
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from scalper.core.config import Settings, TradingConfig
from scalper.core.errors import ConfigurationError
from scalper.execution.position_manager import ForcedAction, PositionManager
from scalper.ledger.models import Portfolio, Position, Trade
from scalper.ledger.portfolio import PortfolioLedger
from scalper.persistence.state_store import StateStore
from scalper.persistence.writer import PersistenceWriter
from scalper.strategy.base import Action, Decision, MarketSample

log = logging.getLogger("scalper.execution")

SECRET_KEY_LENGTH = 64


class ExecutionMode(str, Enum):
    PAPER = "PAPER"
    LIVE = "LIVE"


class Executioner(Protocol):
    """What the engine needs from a paper or live backend."""

    mode: ExecutionMode

    def price_update(self, samples: Iterable[MarketSample]) -> None: ...

    def monitor(self, samples: Iterable[MarketSample]) -> Optional[ForcedAction]: ...

    def execute_trade(
        self, decision: Decision, price: float, *, forced_exit: bool = False
    ) -> Optional[Trade]: ...

    def portfolio(self) -> Portfolio: ...

    def positions(self) -> Dict[str, Position]: ...

    def recent_trades(self, limit: int = 50) -> List[Trade]: ...

    def stats(self) -> dict: ...


# =========================
# Paper
# =========================
class PaperExecutioner:
    mode = ExecutionMode.PAPER

    def __init__(self, ledger: PortfolioLedger):
        self.ledger = ledger

    def price_update(self, samples: Iterable[MarketSample]) -> None:
        self.ledger.update_prices(samples)

    def monitor(self, samples: Iterable[MarketSample]) -> Optional[ForcedAction]:
        return self.ledger.monitor(samples)

    def execute_trade(
        self, decision: Decision, price: float, *, forced_exit: bool = False
    ) -> Optional[Trade]:
        return self.ledger.execute_trade(decision, price, forced_exit=forced_exit)

    def portfolio(self) -> Portfolio:
        return self.ledger.portfolio()

    def positions(self) -> Dict[str, Position]:
        return self.ledger.positions_snapshot()

    def recent_trades(self, limit: int = 50) -> List[Trade]:
        return self.ledger.recent_trades(limit)

    def stats(self) -> dict:
        return self.ledger.stats()


# =========================
# Live (stub)
# =========================
def parse_secret_key(raw: str) -> bytes:
    """PRIVATE_KEY must be a JSON array of 64 byte values."""
    text = (raw or "").strip()
    if not text.startswith("["):
        raise ConfigurationError("Unsupported PRIVATE_KEY format. Use JSON array of numbers.")
    try:
        arr = json.loads(text)
    except ValueError as e:
        raise ConfigurationError(f"Failed to parse PRIVATE_KEY: {e}") from e
    if not isinstance(arr, list) or len(arr) != SECRET_KEY_LENGTH:
        raise ConfigurationError(f"PRIVATE_KEY must hold {SECRET_KEY_LENGTH} numbers")
    if not all(isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in arr):
        raise ConfigurationError("PRIVATE_KEY values must be integers 0..255")
    return bytes(arr)


class LiveExecutioner:
    """
    Credential-checked stub with the paper surface.
    Records zero-size trades so the feed shows activity; nothing goes on-chain.
    """

    mode = ExecutionMode.LIVE

    def __init__(self, rpc_url: str, private_key: str, clock: Callable[[], float] = time.time):
        if not rpc_url:
            raise ConfigurationError("No SOLANA_RPC_URL provided")
        if not rpc_url.startswith(("http://", "https://")):
            raise ConfigurationError("SOLANA_RPC_URL must be an http(s) URL")
        if not private_key:
            raise ConfigurationError("No PRIVATE_KEY provided")

        self.rpc_url = rpc_url
        self._secret = parse_secret_key(private_key)
        self.clock = clock
        self._lock = threading.Lock()
        self._positions: Dict[str, Position] = {}
        self._trades: List[Trade] = []
        self._counter = 0
        log.info("LiveExecutioner initialized (no live trades executed)")

    def price_update(self, samples: Iterable[MarketSample]) -> None:
        with self._lock:
            for s in samples:
                pos = self._positions.get(s.token)
                if pos is not None:
                    pos.mark(s.price)

    def monitor(self, samples: Iterable[MarketSample]) -> Optional[ForcedAction]:
        return None

    def execute_trade(
        self, decision: Decision, price: float, *, forced_exit: bool = False
    ) -> Optional[Trade]:
        if decision.action == Action.HOLD:
            return None
        if not math.isfinite(price) or price <= 0:
            return None
        with self._lock:
            self._counter += 1
            trade = Trade(
                id=f"LT{self._counter}",
                timestamp=int(self.clock() * 1000),
                token=decision.token.upper(),
                action=decision.action,
                amount=0.0,
                price=price,
                fee=0.0,
                total=0.0,
            )
            self._trades.insert(0, trade)
        log.warning(
            "[LIVE STUB] %s %s @ %s (no on-chain execution)",
            decision.action.value,
            decision.token,
            price,
        )
        return trade

    def portfolio(self) -> Portfolio:
        with self._lock:
            positions = list(self._positions.values())
        value = sum(p.amount * p.current_price for p in positions)
        # wallet balance is not queried; cash reads as 0
        return Portfolio(
            total_equity=value,
            cash_balance=0.0,
            total_pnl=0.0,
            total_pnl_percentage=0.0,
            positions=positions,
        )

    def positions(self) -> Dict[str, Position]:
        with self._lock:
            return dict(self._positions)

    def recent_trades(self, limit: int = 50) -> List[Trade]:
        with self._lock:
            return list(self._trades[: max(0, int(limit))])

    def stats(self) -> dict:
        with self._lock:
            n = len(self._trades)
        return {"totalTrades": n, "winningTrades": 0, "winRate": 0.0}


# =========================
# Factory
# =========================
class ExecutionerFactory:
    """
    Builds executioners by mode tag. The paper ledger is built once and reused
    so switching LIVE -> PAPER keeps the paper book.
    """

    def __init__(
        self,
        s: Settings,
        cfg: TradingConfig,
        manager: Optional[PositionManager] = None,
        store: Optional[StateStore] = None,
        writer: Optional[PersistenceWriter] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = s
        self.cfg = cfg
        self.manager = manager or PositionManager(cfg)
        self.store = store
        self.writer = writer
        self.clock = clock
        self._paper: Optional[PaperExecutioner] = None
        self._builders: Dict[ExecutionMode, Callable[[], Executioner]] = {
            ExecutionMode.PAPER: self._build_paper,
            ExecutionMode.LIVE: self._build_live,
        }

    def _build_paper(self) -> PaperExecutioner:
        if self._paper is None:
            ledger = PortfolioLedger(
                self.cfg,
                manager=self.manager,
                store=self.store,
                writer=self.writer,
                store_key=self.settings.STORE_KEY,
                clock=self.clock,
            )
            ledger.load()
            self._paper = PaperExecutioner(ledger)
        return self._paper

    def _build_live(self) -> LiveExecutioner:
        return LiveExecutioner(
            self.settings.SOLANA_RPC_URL or "",
            self.settings.PRIVATE_KEY or "",
            clock=self.clock,
        )

    def build(self, mode) -> Executioner:
        try:
            tag = ExecutionMode(str(mode).upper())
        except ValueError as e:
            raise ConfigurationError(f"Unknown execution mode: {mode}") from e
        return self._builders[tag]()
