# scalper/runner/models.py
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from scalper.core.errors import ModeSwitchRejected
from scalper.execution.executor import ExecutionMode


@dataclass
class EngineState:
    active: bool = False
    mode: ExecutionMode = ExecutionMode.PAPER
    scan_count: int = 0
    last_tick_at: Optional[str] = None  # utc iso
    last_error: Optional[str] = None

    def start(self) -> None:
        self.active = True

    def stop(self) -> None:
        self.active = False

    def switch_mode(self, mode: ExecutionMode) -> None:
        if self.active:
            raise ModeSwitchRejected("Stop bot before switching modes.")
        self.mode = mode

    def public(self) -> Dict[str, Any]:
        """Shape pushed to clients as bot_state."""
        return {"isTrading": self.active, "mode": self.mode.value}

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["mode"] = self.mode.value
        return d
