from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable, Deque, List, Optional

from scalper.core.errors import PersistenceError

log = logging.getLogger("scalper.persistence")


class _Job:
    __slots__ = ("label", "fn", "key")

    def __init__(self, label: str, fn: Callable[[], None], key: Optional[str]):
        self.label = label
        self.fn = fn
        self.key = key


class PersistenceWriter:
    """
    Moves disk writes off the decision loop.

    - bounded queue drained by one daemon thread
    - every job opens and closes its own connection
    - keyed jobs (portfolio records) coalesce: a pending job with the same key is
      replaced in place by the newer one and is never dropped for space
    - a full queue drops its oldest unkeyed job (audit rows)
    - failures are logged; the engine keeps its in-memory state
    """

    def __init__(self, maxsize: int = 16, name: str = "persistence-writer"):
        self.maxsize = max(1, int(maxsize))
        self._pending: Deque[_Job] = deque()
        self._cond = threading.Condition()
        self._busy = False
        self._closed = False
        self.dropped = 0
        self.coalesced = 0
        self.failed = 0
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def submit(self, label: str, job: Callable[[], None], key: Optional[str] = None) -> None:
        with self._cond:
            if self._closed:
                log.warning("writer closed, dropping %s", label)
                return

            if key is not None:
                for pending in self._pending:
                    if pending.key == key:
                        pending.label, pending.fn = label, job
                        self.coalesced += 1
                        return

            if len(self._pending) >= self.maxsize:
                victim = self._oldest_unkeyed()
                if victim is not None:
                    self._pending.remove(victim)
                    self.dropped += 1
                    log.warning("persistence queue full, dropped pending %s", victim.label)
                elif key is None:
                    self.dropped += 1
                    log.warning("persistence queue full of records, dropped %s", label)
                    return

            self._pending.append(_Job(label, job, key))
            self._cond.notify_all()

    def _oldest_unkeyed(self) -> Optional[_Job]:
        for pending in self._pending:
            if pending.key is None:
                return pending
        return None

    def pending_labels(self) -> List[str]:
        with self._cond:
            return [j.label for j in self._pending]

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._pending and not self._closed:
                    self._cond.wait()
                if not self._pending:
                    return
                job = self._pending.popleft()
                self._busy = True
            try:
                job.fn()
            except PersistenceError as e:
                self.failed += 1
                log.error("persistence write failed (%s): %s", job.label, e)
            except Exception:
                self.failed += 1
                log.exception("unexpected persistence failure (%s)", job.label)
            finally:
                with self._cond:
                    self._busy = False
                    self._cond.notify_all()

    def flush(self) -> None:
        """Block until every queued job has run."""
        with self._cond:
            while self._pending or self._busy:
                self._cond.wait()

    def close(self, timeout_s: float = 5.0) -> None:
        """Drain what is queued, then stop the thread."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        self._thread.join(timeout=timeout_s)
