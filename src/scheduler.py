"""
Cancellable delayed callbacks.

Polling is expressed as callbacks scheduled on a ``Scheduler`` instead of
sleeping threads.  Two implementations are provided:

- ``TimerScheduler`` runs callbacks on ``threading.Timer`` threads, one at a
  time, so a checkout session behaves as a single thread of control.
- ``ManualScheduler`` keeps a virtual clock that only moves when
  ``advance()`` is called.  Tests use it to simulate minutes of polling
  without real delays.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ScheduledCall:
    """Handle returned by ``Scheduler.call_later``."""

    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False
        self._timer: Optional[threading.Timer] = None

    def cancel(self) -> None:
        self.cancelled = True
        if self._timer is not None:
            self._timer.cancel()


class Scheduler:
    """Abstract scheduler: a clock plus delayed, cancellable callbacks."""

    def now(self) -> float:  # pragma: no cover
        raise NotImplementedError

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledCall:  # pragma: no cover
        raise NotImplementedError


class TimerScheduler(Scheduler):
    """Wall-clock scheduler backed by ``threading.Timer``."""

    def __init__(self) -> None:
        # One lock for all callbacks keeps user events and polls serialised
        self.lock = threading.RLock()

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledCall:
        call = ScheduledCall(self.now() + max(0.0, delay), callback)

        def _run() -> None:
            with self.lock:
                if call.cancelled:
                    return
                try:
                    callback()
                except Exception:
                    logger.exception("Scheduled callback failed")

        timer = threading.Timer(max(0.0, delay), _run)
        timer.daemon = True
        call._timer = timer
        timer.start()
        return call


class ManualScheduler(Scheduler):
    """Virtual-time scheduler driven explicitly by ``advance``."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._seq = itertools.count()
        self._queue: List[Tuple[float, int, ScheduledCall]] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledCall:
        call = ScheduledCall(self._now + max(0.0, delay), callback)
        heapq.heappush(self._queue, (call.when, next(self._seq), call))
        return call

    def pending(self) -> int:
        """Number of scheduled, not yet cancelled callbacks."""
        return sum(1 for _, _, c in self._queue if not c.cancelled)

    def next_due(self) -> Optional[float]:
        live = [c.when for _, _, c in self._queue if not c.cancelled]
        return min(live) if live else None

    def advance(self, seconds: float) -> int:
        """Move the clock forward, running every callback that falls due.

        Callbacks scheduled by other callbacks run too if they fall inside
        the window.  Returns the number of callbacks executed.
        """
        deadline = self._now + seconds
        ran = 0
        while self._queue and self._queue[0][0] <= deadline:
            when, _, call = heapq.heappop(self._queue)
            if call.cancelled:
                continue
            self._now = when
            call.callback()
            ran += 1
        self._now = deadline
        return ran

    def run_until_idle(self, limit: int = 10_000) -> int:
        """Run callbacks in time order until none are left (bounded by ``limit``)."""
        ran = 0
        while ran < limit:
            due = self.next_due()
            if due is None:
                break
            ran += self.advance(due - self._now)
        return ran
