from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List

logger = logging.getLogger(__name__)


class TimerScheduler:
    """Brief: Cancellable one-shot timers backed by daemon threading.Timer objects.

    Inputs:
      - None.

    Outputs:
      - TimerScheduler; call_later() schedules, cancel_all() cancels everything
        still pending and refuses new timers afterwards.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timers: List[threading.Timer] = []
        self._cancelled = False

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> None:
        with self._lock:
            if self._cancelled:
                logger.debug("Scheduler cancelled; ignoring timer for %r", callback)
                return
            # Drop references to timers that already fired.
            self._timers = [t for t in self._timers if t.is_alive()]
            timer = threading.Timer(max(0.0, float(delay)), callback, args=args)
            timer.daemon = True
            self._timers.append(timer)
        timer.start()

    def cancel_all(self) -> None:
        with self._lock:
            self._cancelled = True
            timers, self._timers = self._timers, []
        for t in timers:
            t.cancel()

    @property
    def pending(self) -> int:
        with self._lock:
            return sum(1 for t in self._timers if t.is_alive())
