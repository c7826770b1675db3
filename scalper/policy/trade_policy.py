# scalper/policy/trade_policy.py
from __future__ import annotations

import threading
from typing import Dict


def _ms(seconds: float) -> int:
    return int(float(seconds) * 1000)


def cooldown_ok(last_trade_ms: int, now_ms: int, cooldown_seconds: float) -> bool:
    if cooldown_seconds <= 0:
        return True
    if last_trade_ms <= 0:
        return True
    return (now_ms - last_trade_ms) >= _ms(cooldown_seconds)


class CooldownGate:
    """
    Per-token minimum spacing between accepted trades.

    - every accepted trade marks the token, whatever path issued it
    - any attempt inside the window is rejected by the caller
    """

    def __init__(self, cooldown_seconds: float):
        self.cooldown_seconds = float(cooldown_seconds)
        self._last_trade_ms: Dict[str, int] = {}
        self._lock = threading.Lock()

    def ok(self, token: str, now_ms: int) -> bool:
        with self._lock:
            last = self._last_trade_ms.get(token.upper(), 0)
        return cooldown_ok(last, now_ms, self.cooldown_seconds)

    def remaining_ms(self, token: str, now_ms: int) -> int:
        with self._lock:
            last = self._last_trade_ms.get(token.upper(), 0)
        if last <= 0:
            return 0
        return max(0, _ms(self.cooldown_seconds) - (now_ms - last))

    def mark(self, token: str, now_ms: int) -> None:
        with self._lock:
            self._last_trade_ms[token.upper()] = int(now_ms)
