# scalper/core/config.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, List, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("scalper.config")

DEFAULT_WATCHLIST = ["SOL", "JUP", "BONK", "RAY", "WIF", "RENDER", "PYTH"]


def _parse_list(v: Any) -> List[str]:
    """
    Accepts:
      - list: ["SOL","JUP"]
      - csv:  "SOL,JUP"
      - json: '["SOL","JUP"]'
    Returns uppercase, trimmed symbols.
    """
    if v is None:
        return []
    if isinstance(v, (list, tuple)):
        return [str(x).strip().upper() for x in v if str(x).strip()]
    s = str(v).strip()
    if not s:
        return []
    if s.startswith("["):
        try:
            arr = json.loads(s)
            return [str(x).strip().upper() for x in arr if str(x).strip()]
        except ValueError:
            # fall back to csv parse
            pass
    return [p.strip().upper() for p in s.split(",") if p.strip()]


def _parse_float_list(v: Any) -> List[float]:
    """
    Accepts:
      - list: [-0.02, -0.05]
      - csv:  "-0.02,-0.05"
      - json: '[-0.02, -0.05]'
    Raises ValueError on a non-numeric entry (zones/multipliers must be exact).
    """
    if v is None:
        return []
    if isinstance(v, (list, tuple)):
        return [float(x) for x in v]
    s = str(v).strip()
    if not s:
        return []
    if s.startswith("["):
        return [float(x) for x in json.loads(s)]
    return [float(p.strip()) for p in s.split(",") if p.strip()]


class Settings(BaseSettings):
    """Runtime configuration loaded from .env / environment variables."""

    # enable_decoding=False keeps pydantic-settings from json-decoding list fields
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        enable_decoding=False,
    )

    # --- Universe / loop ---
    WATCHLIST: List[str] = Field(default_factory=lambda: list(DEFAULT_WATCHLIST))
    SCAN_INTERVAL_SECONDS: float = 2.0
    INITIAL_BALANCE: float = 10.0
    FEE_RATE: float = 0.001

    # --- Execution ---
    EXECUTION_MODE: str = "paper"  # paper/live
    SOLANA_RPC_URL: str = ""
    PRIVATE_KEY: str = ""

    # --- Indicators / signal rules ---
    MAX_HISTORY: int = 50
    RSI_PERIOD: int = 14
    SMA_PERIOD: int = 20
    RSI_OVERSOLD: float = 30.0
    RSI_OVERBOUGHT: float = 75.0
    TAKE_PROFIT_PCT: float = 0.8
    STOP_LOSS_PCT: float = -1.5
    MIN_CONFIDENCE: float = 60.0
    WARMUP_PERIOD: int = 20

    # --- Capital management ---
    MIN_CASH_RESERVE: float = 0.20
    MAX_POSITION_PERCENT: float = 0.30
    BUY_PERCENT: float = 0.15
    MIN_TRADE_AMOUNT: float = 0.05
    TRADE_COOLDOWN_SECONDS: int = 60
    EXIT_BYPASSES_COOLDOWN: bool = False

    # --- Martingale / exits ---
    DCA_ZONES: List[float] = Field(default_factory=lambda: [-0.02, -0.05, -0.10])
    DCA_MULTIPLIERS: List[float] = Field(default_factory=lambda: [1.0, 1.5, 2.0])
    TRAILING_STOP_ACTIVATION: float = 0.015
    TRAILING_STOP_CALLBACK: float = 0.005
    HARD_STOP_LOSS: float = -0.15

    # --- Market data ---
    BINANCE_SPOT_BASE_URL: str = "https://api.binance.com"
    PRICE_CACHE_SECONDS: float = 1.5

    # --- Advisory (Groq, OpenAI-compatible) ---
    GROQ_API_KEY: str = ""
    GROQ_BASE_URL: str = "https://api.groq.com/openai/v1"
    GROQ_MODEL: str = "llama3-70b-8192"
    ADVISORY_TIMEOUT_SECONDS: float = 10.0

    # --- News sentiment ---
    NEWS_ENABLED: bool = True
    NEWS_CACHE_SECONDS: int = 300

    # --- Persistence ---
    DB_PATH: str = "data/scalper.db"
    AUDIT_JSONL_PATH: str = "logs/audit.jsonl"
    STORE_KEY: str = "paper"
    PERSIST_QUEUE_SIZE: int = 16

    @field_validator("WATCHLIST", mode="before")
    @classmethod
    def parse_watchlist(cls, v: Any) -> List[str]:
        return _parse_list(v)

    @field_validator("DCA_ZONES", "DCA_MULTIPLIERS", mode="before")
    @classmethod
    def parse_float_lists(cls, v: Any) -> List[float]:
        return _parse_float_list(v)

    def model_post_init(self, __context: Any) -> None:
        self.EXECUTION_MODE = (self.EXECUTION_MODE or "paper").lower().strip()

    @property
    def advisory_enabled(self) -> bool:
        return bool(self.GROQ_API_KEY.strip())

    def validate_runtime(self) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ValueError for fatal misconfiguration.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if self.EXECUTION_MODE not in {"paper", "live"}:
            errors.append("EXECUTION_MODE must be 'paper' or 'live'.")

        if not self.WATCHLIST:
            warnings.append("WATCHLIST is empty. Bot will have nothing to trade.")

        if self.SCAN_INTERVAL_SECONDS <= 0:
            errors.append("SCAN_INTERVAL_SECONDS must be > 0.")
        if self.INITIAL_BALANCE <= 0:
            errors.append("INITIAL_BALANCE must be > 0.")
        if not 0 <= self.FEE_RATE < 1:
            errors.append("FEE_RATE must be in [0, 1).")

        if self.MAX_HISTORY < self.WARMUP_PERIOD:
            errors.append("MAX_HISTORY must be >= WARMUP_PERIOD.")
        if not 0 <= self.RSI_OVERSOLD < self.RSI_OVERBOUGHT <= 100:
            errors.append("RSI thresholds must satisfy 0 <= OVERSOLD < OVERBOUGHT <= 100.")
        if self.TAKE_PROFIT_PCT <= 0:
            errors.append("TAKE_PROFIT_PCT must be > 0.")
        if self.STOP_LOSS_PCT >= 0:
            errors.append("STOP_LOSS_PCT must be < 0.")

        # Capital sanity
        for name in ("MIN_CASH_RESERVE", "MAX_POSITION_PERCENT", "BUY_PERCENT"):
            val = getattr(self, name)
            if not 0 <= val <= 1:
                errors.append(f"{name} must be a fraction in [0, 1].")
        if self.MIN_TRADE_AMOUNT <= 0:
            errors.append("MIN_TRADE_AMOUNT must be > 0.")

        # Martingale sanity
        if len(self.DCA_ZONES) != len(self.DCA_MULTIPLIERS):
            errors.append("DCA_ZONES and DCA_MULTIPLIERS must have the same length.")
        if any(z >= 0 for z in self.DCA_ZONES):
            errors.append("DCA_ZONES must all be negative drawdowns.")
        if list(self.DCA_ZONES) != sorted(self.DCA_ZONES, reverse=True):
            errors.append("DCA_ZONES must be ordered from shallowest to deepest.")
        if self.HARD_STOP_LOSS >= 0:
            errors.append("HARD_STOP_LOSS must be < 0.")
        if self.DCA_ZONES and self.HARD_STOP_LOSS > self.DCA_ZONES[-1]:
            warnings.append(
                "HARD_STOP_LOSS is shallower than the deepest DCA zone; "
                "the last DCA level can never be reached."
            )

        if self.EXIT_BYPASSES_COOLDOWN:
            warnings.append(
                "EXIT_BYPASSES_COOLDOWN=true: forced exits ignore the per-token cooldown."
            )

        if not self.advisory_enabled:
            warnings.append("GROQ_API_KEY not set. Using rule-based selection only.")

        if self.EXECUTION_MODE == "live":
            warnings.append(
                "EXECUTION_MODE=live uses the stub executioner: no on-chain swaps are sent."
            )

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ValueError(msg)

        return warnings


@dataclass(frozen=True)
class TradingConfig:
    """Static policy constants handed to the pure decision functions."""

    rsi_period: int = 14
    sma_period: int = 20
    rsi_oversold: float = 30.0
    rsi_overbought: float = 75.0
    take_profit_pct: float = 0.8
    stop_loss_pct: float = -1.5
    min_confidence: float = 60.0
    warmup_period: int = 20

    min_cash_reserve: float = 0.20
    max_position_percent: float = 0.30
    buy_percent: float = 0.15
    min_trade_amount: float = 0.05
    cooldown_seconds: int = 60
    exit_bypasses_cooldown: bool = False

    dca_zones: Tuple[float, ...] = (-0.02, -0.05, -0.10)
    dca_multipliers: Tuple[float, ...] = (1.0, 1.5, 2.0)
    trailing_stop_activation: float = 0.015
    trailing_stop_callback: float = 0.005
    hard_stop_loss: float = -0.15

    fee_rate: float = 0.001
    initial_balance: float = 10.0

    @property
    def max_dca_level(self) -> int:
        return len(self.dca_zones)

    @classmethod
    def from_settings(cls, s: Settings) -> "TradingConfig":
        return cls(
            rsi_period=s.RSI_PERIOD,
            sma_period=s.SMA_PERIOD,
            rsi_oversold=s.RSI_OVERSOLD,
            rsi_overbought=s.RSI_OVERBOUGHT,
            take_profit_pct=s.TAKE_PROFIT_PCT,
            stop_loss_pct=s.STOP_LOSS_PCT,
            min_confidence=s.MIN_CONFIDENCE,
            warmup_period=s.WARMUP_PERIOD,
            min_cash_reserve=s.MIN_CASH_RESERVE,
            max_position_percent=s.MAX_POSITION_PERCENT,
            buy_percent=s.BUY_PERCENT,
            min_trade_amount=s.MIN_TRADE_AMOUNT,
            cooldown_seconds=s.TRADE_COOLDOWN_SECONDS,
            exit_bypasses_cooldown=s.EXIT_BYPASSES_COOLDOWN,
            dca_zones=tuple(s.DCA_ZONES),
            dca_multipliers=tuple(s.DCA_MULTIPLIERS),
            trailing_stop_activation=s.TRAILING_STOP_ACTIVATION,
            trailing_stop_callback=s.TRAILING_STOP_CALLBACK,
            hard_stop_loss=s.HARD_STOP_LOSS,
            fee_rate=s.FEE_RATE,
            initial_balance=s.INITIAL_BALANCE,
        )


# Pydantic v2 + postponed annotations safety
Settings.model_rebuild()
settings = Settings()
