from __future__ import annotations

import random
import time
from typing import Callable

import requests


class BinanceSpotClient:
    """Public (unsigned) Binance spot market data. No account access."""

    def __init__(
        self,
        base_url: str = "https://api.binance.com",
        timeout_s: float = 5.0,
        max_retries: int = 2,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s)
        self.max_retries = int(max_retries)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # request helper with backoff
    # ------------------------------------------------------------------
    def _request(self, method: str, path: str, params=None, headers=None):
        url = f"{self.base_url}{path}"
        params = dict(params or {})
        headers = dict(headers or {})

        last_err = None
        for attempt in range(self.max_retries + 1):
            try:
                r = requests.request(
                    method, url, params=params, headers=headers, timeout=self.timeout_s
                )

                # Rate limit / temp ban
                if r.status_code in (418, 429):
                    ra = r.headers.get("Retry-After")
                    sleep_s = float(ra) if ra else (0.4 * (2**attempt))
                    sleep_s += random.uniform(0, 0.2)
                    self._sleep(min(sleep_s, 10.0))
                    last_err = f"HTTP {r.status_code}"
                    continue

                # Server errors
                if r.status_code >= 500:
                    self._sleep(min(0.4 * (2**attempt), 8.0))
                    last_err = f"HTTP {r.status_code}"
                    continue

                r.raise_for_status()
                return r.json() if r.content else None

            except (requests.Timeout, requests.ConnectionError) as e:
                last_err = e
                self._sleep(min(0.4 * (2**attempt), 8.0))
                continue
            except (requests.RequestException, ValueError) as e:
                last_err = e
                break

        raise RuntimeError(
            f"Binance request failed after retries: {method} {path} ({last_err})"
        )

    # ---------------- PUBLIC ----------------

    def ping(self) -> dict:
        r = requests.get(f"{self.base_url}/api/v3/ping", timeout=self.timeout_s)
        return {"status_code": r.status_code}

    def ticker_24hr(self, symbol: str) -> dict:
        return self._request("GET", "/api/v3/ticker/24hr", params={"symbol": symbol.upper()})

    def last_price(self, symbol: str) -> float:
        data = self._request("GET", "/api/v3/ticker/price", params={"symbol": symbol.upper()})
        return float(data["price"])
