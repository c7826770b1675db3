from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Callable, Dict, List, Tuple

log = logging.getLogger("scalper.events")

MARKET_UPDATE = "market_update"
PORTFOLIO_UPDATE = "portfolio_update"
TRADE_LOG = "trade_log"
BOT_STATE = "bot_state"

Event = Tuple[str, Any]
Handler = Callable[[str, Any], None]


class EventBus:
    """
    In-process fan-out of engine events.

    publish() is called from the tick worker thread. Plain handlers run inline;
    asyncio subscribers get events on their own loop via call_soon_threadsafe.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._handlers: List[Handler] = []
        self._queues: Dict[int, Tuple[asyncio.AbstractEventLoop, "asyncio.Queue[Event]"]] = {}

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._handlers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return unsubscribe

    def subscribe_queue(
        self, loop: asyncio.AbstractEventLoop, maxsize: int = 100
    ) -> "asyncio.Queue[Event]":
        q: "asyncio.Queue[Event]" = asyncio.Queue(maxsize=maxsize)
        with self._lock:
            self._queues[id(q)] = (loop, q)
        return q

    def unsubscribe_queue(self, q: "asyncio.Queue[Event]") -> None:
        with self._lock:
            self._queues.pop(id(q), None)

    @staticmethod
    def _offer(q: "asyncio.Queue[Event]", event: Event) -> None:
        try:
            q.put_nowait(event)
        except asyncio.QueueFull:
            # slow client: drop its oldest event
            try:
                q.get_nowait()
            except asyncio.QueueEmpty:
                pass
            q.put_nowait(event)

    def publish(self, kind: str, payload: Any) -> None:
        with self._lock:
            handlers = list(self._handlers)
            queues = list(self._queues.values())

        for h in handlers:
            try:
                h(kind, payload)
            except Exception:
                log.exception("event handler failed for %s", kind)

        for loop, q in queues:
            if loop.is_closed():
                continue
            try:
                loop.call_soon_threadsafe(self._offer, q, (kind, payload))
            except RuntimeError:
                # loop shut down between the check and the call
                continue
