from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from scalper.core.config import Settings, TradingConfig
from scalper.core.errors import ConfigurationError, ModeSwitchRejected
from scalper.exchange.binance.client import BinanceSpotClient
from scalper.execution.executor import Executioner, ExecutionerFactory, ExecutionMode
from scalper.execution.position_manager import ExitKind, ForcedAction, PositionManager
from scalper.ledger.models import Trade
from scalper.market.price_feed import PriceFeed
from scalper.ops.context import clear_run_id, clear_tick_id, set_run_id, set_tick_id
from scalper.ops.events import (
    BOT_STATE,
    MARKET_UPDATE,
    PORTFOLIO_UPDATE,
    TRADE_LOG,
    EventBus,
)
from scalper.persistence.audit import Audit
from scalper.persistence.db import DB, utc_now_iso
from scalper.persistence.state_store import StateStore
from scalper.persistence.writer import PersistenceWriter
from scalper.runner.models import EngineState
from scalper.strategy.advisor import AdvisorArbiter, GroqAdvisory
from scalper.strategy.base import Action, Decision, MarketSample, TradingSignal
from scalper.strategy.indicators import IndicatorEngine
from scalper.strategy.sentiment import NewsSentimentService, SentimentCache
from scalper.strategy.signals import generate_signal, warmup_hold

log = logging.getLogger("scalper.engine")

FORCED_CONFIDENCE = 100


class TradingEngine:
    """
    One scan per run_tick():
    feed -> mark-to-market -> indicators -> monitor (forced exits / DCA)
    -> warmup gate -> sentiment -> signals -> arbiter -> execute -> events.
    """

    def __init__(
        self,
        settings: Settings,
        cfg: TradingConfig,
        feed: PriceFeed,
        factory: ExecutionerFactory,
        *,
        indicators: Optional[IndicatorEngine] = None,
        arbiter: Optional[AdvisorArbiter] = None,
        sentiment: Optional[SentimentCache] = None,
        bus: Optional[EventBus] = None,
        audit: Optional[Audit] = None,
    ):
        self.settings = settings
        self.cfg = cfg
        self.feed = feed
        self.factory = factory
        self.indicators = indicators or IndicatorEngine(
            max_history=settings.MAX_HISTORY,
            rsi_period=cfg.rsi_period,
            sma_period=cfg.sma_period,
        )
        self.arbiter = arbiter or AdvisorArbiter()
        self.sentiment = sentiment or SentimentCache(None)
        self.bus = bus or EventBus()
        self.audit = audit

        self.watchlist: List[str] = list(settings.WATCHLIST)
        self.state = EngineState()
        self.executioner: Executioner = factory.build(ExecutionMode.PAPER)
        self.run_id: Optional[str] = None

        # --- single-tick guard ---
        self._cycle_lock = threading.Lock()
        self._state_lock = threading.Lock()

    # ---------------- guards ----------------

    @contextmanager
    def cycle_guard(self, timeout_s: float = 0.0):
        """
        Prevent overlapping ticks.
        If another tick is running, we skip cleanly.
        """
        if timeout_s > 0:
            acquired = self._cycle_lock.acquire(timeout=timeout_s)
        else:
            acquired = self._cycle_lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._cycle_lock.release()

    def _audit(self, event_type: str, **kw) -> None:
        if self.audit is None:
            return
        try:
            self.audit.event(event_type, **kw)
        except Exception:
            # audit must never stop the loop
            log.exception("audit event %s failed", event_type)

    # ---------------- run lifecycle ----------------

    def open_run(self) -> str:
        self.run_id = str(uuid.uuid4())
        set_run_id(self.run_id)
        if self.audit is not None:
            self.audit.start_run(
                self.run_id, self.state.mode.value, self.settings.SCAN_INTERVAL_SECONDS
            )
        return self.run_id

    def close_run(self) -> None:
        if self.run_id and self.audit is not None:
            self.audit.stop_run(self.run_id)
        clear_run_id()

    # ---------------- controls ----------------

    def status(self) -> Dict[str, Any]:
        with self._state_lock:
            return self.state.public()

    def status_detail(self) -> Dict[str, Any]:
        with self._state_lock:
            return self.state.to_dict()

    def set_active(self, active: bool) -> Dict[str, Any]:
        with self._state_lock:
            if active:
                self.state.start()
            else:
                self.state.stop()
            public = self.state.public()
        log.info("Bot is now: %s", "RUNNING" if active else "STOPPED")
        self._audit("BOT_STATE", action="START" if active else "STOP", details=public, run_id=self.run_id)
        self.bus.publish(BOT_STATE, public)
        return public

    def set_mode(self, mode: str, timeout_s: float = 5.0) -> Dict[str, Any]:
        """
        Switch PAPER/LIVE. Rejected while trading is active.
        Raises ModeSwitchRejected or ConfigurationError; on either the current mode stays.
        """
        try:
            target = ExecutionMode(str(mode).upper())
        except ValueError as e:
            raise ConfigurationError("Invalid mode") from e

        with self.cycle_guard(timeout_s=timeout_s) as acquired:
            if not acquired:
                raise ModeSwitchRejected("A scan is still running, try again.")
            with self._state_lock:
                if self.state.active:
                    raise ModeSwitchRejected("Stop bot before switching modes.")
            executioner = self.factory.build(target)
            with self._state_lock:
                self.state.switch_mode(target)
                self.executioner = executioner
                public = self.state.public()

        log.info("execution mode -> %s", target.value)
        self._audit("MODE_SWITCH", action=target.value, details=public, run_id=self.run_id)
        self.bus.publish(BOT_STATE, public)
        return public

    # ---------------- tick ----------------

    def _forced_decision(self, forced: ForcedAction) -> Decision:
        return Decision(
            token=forced.token,
            action=forced.action,
            confidence=FORCED_CONFIDENCE,
            reason=forced.reason,
        )

    def _score(self, samples: List[MarketSample], executioner: Executioner) -> List[TradingSignal]:
        positions = executioner.positions()
        out: List[TradingSignal] = []
        for s in samples:
            # per-symbol warmup: too little own history is not scored
            if self.indicators.history_length(s.token) < self.cfg.warmup_period:
                continue
            out.append(
                generate_signal(
                    s,
                    self.indicators.snapshot(s.token),
                    positions.get(s.token),
                    self.sentiment.get(s.token),
                    self.cfg,
                )
            )
        return out

    def _emit_trade(
        self, executioner: Executioner, trade: Trade, decision: Decision, kind: str
    ) -> None:
        portfolio = executioner.portfolio().to_dict()
        self.bus.publish(
            TRADE_LOG,
            {"trade": trade.to_dict(), "signal": decision.to_dict(), "portfolio": portfolio},
        )
        self._audit(
            "TRADE",
            symbol=trade.token,
            action=trade.action.value,
            details={"kind": kind, "trade": trade.to_dict(), "reason": decision.reason},
        )

    def run_tick(self) -> Dict[str, Any]:
        with self.cycle_guard() as acquired:
            if not acquired:
                log.warning("previous scan still running, skipping tick")
                self._audit("TICK_SKIPPED", action="TICK_ALREADY_RUNNING", run_id=self.run_id)
                return {"skipped": True, "reason": "TICK_ALREADY_RUNNING"}

            with self._state_lock:
                if not self.state.active:
                    return {"skipped": True, "reason": "INACTIVE"}
                self.state.scan_count += 1
                scan = self.state.scan_count
                mode = self.state.mode
                executioner = self.executioner

            if self.run_id:
                set_run_id(self.run_id)
            set_tick_id(str(uuid.uuid4()))
            try:
                result = self._tick(executioner, scan, mode)
                with self._state_lock:
                    self.state.last_tick_at = utc_now_iso()
                return result
            except Exception as e:
                log.exception("trading loop error on scan #%d", scan)
                with self._state_lock:
                    self.state.last_error = f"{type(e).__name__}: {e}"
                self._audit("ERROR", action="TICK_FAILED", details={"error": repr(e)})
                return {"scan": scan, "error": repr(e)}
            finally:
                clear_tick_id()

    def _tick(self, executioner: Executioner, scan: int, mode: ExecutionMode) -> Dict[str, Any]:
        log.info("Scan #%d [%s]", scan, mode.value)

        samples = self.feed.fetch_all(self.watchlist)
        executioner.price_update(samples)
        self.indicators.update(samples)

        self.bus.publish(MARKET_UPDATE, [s.to_dict() for s in samples])
        self.bus.publish(PORTFOLIO_UPDATE, executioner.portfolio().to_dict())

        prices = {s.token: s.price for s in samples}

        # 1) position management has priority
        forced = executioner.monitor(samples)
        if forced is not None:
            decision = self._forced_decision(forced)
            trade = executioner.execute_trade(
                decision,
                forced.price,
                forced_exit=forced.kind != ExitKind.DCA,
            )
            if trade is not None:
                self._emit_trade(executioner, trade, decision, forced.kind.value)
            return {
                "scan": scan,
                "forced": forced.kind.value,
                "decision": decision.to_dict(),
                "trade": trade.to_dict() if trade else None,
            }

        # 2) warmup gate
        hold = warmup_hold(self.indicators.average_history_length(self.watchlist), self.cfg)
        if hold is not None:
            log.info(hold.reason)
            return {"scan": scan, "decision": hold.to_dict(), "trade": None}

        # 3) new opportunities
        if self.settings.NEWS_ENABLED:
            self.sentiment.refresh(self.watchlist)

        signals = self._score(samples, executioner)
        decision = self.arbiter.choose(signals)
        if decision is None or decision.action == Action.HOLD:
            return {"scan": scan, "decision": None, "trade": None}

        log.info("Signal: %s %s (%.0f) %s", decision.action.value, decision.token, decision.confidence, decision.reason)
        trade = executioner.execute_trade(decision, prices.get(decision.token, 0.0))
        if trade is not None:
            self._emit_trade(executioner, trade, decision, "SIGNAL")
        return {
            "scan": scan,
            "decision": decision.to_dict(),
            "trade": trade.to_dict() if trade else None,
        }


def build_engine(s: Settings, bus: Optional[EventBus] = None) -> tuple[TradingEngine, PersistenceWriter]:
    """Wire the production engine from settings. Caller owns the writer lifecycle."""
    cfg = TradingConfig.from_settings(s)
    db = DB(s.DB_PATH)
    writer = PersistenceWriter(maxsize=s.PERSIST_QUEUE_SIZE)
    store = StateStore(db)
    audit = Audit(db, s.AUDIT_JSONL_PATH, writer=writer)

    manager = PositionManager(cfg)
    factory = ExecutionerFactory(s, cfg, manager=manager, store=store, writer=writer)

    feed = PriceFeed(BinanceSpotClient(s.BINANCE_SPOT_BASE_URL), cache_seconds=s.PRICE_CACHE_SECONDS)

    advisory = None
    if s.advisory_enabled:
        advisory = GroqAdvisory(
            s.GROQ_API_KEY,
            base_url=s.GROQ_BASE_URL,
            model=s.GROQ_MODEL,
            timeout_s=s.ADVISORY_TIMEOUT_SECONDS,
        )

    sentiment = SentimentCache(
        NewsSentimentService(cache_seconds=s.NEWS_CACHE_SECONDS) if s.NEWS_ENABLED else None,
        refresh_seconds=s.NEWS_CACHE_SECONDS,
    )

    engine = TradingEngine(
        s,
        cfg,
        feed,
        factory,
        arbiter=AdvisorArbiter(advisory),
        sentiment=sentiment,
        bus=bus,
        audit=audit,
    )
    return engine, writer
