"""
Holoweb Tick Loop - Optional Self-Driven Cadence
================================================

The engine never schedules itself: hosts call ``step``/``tick`` with the
elapsed time. For hosts without a frame loop of their own, ``TickLoop`` runs
a daemon thread that measures elapsed milliseconds and calls back at a fixed
rate.

The engine components of one session share a single RLock, so a running
TickLoop and host calls are serialized without help from the host. Stop a
loop without holding that lock: ``stop`` joins the thread.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional


logger = logging.getLogger(__name__)


class TickLoop:
    """Fixed-rate daemon thread calling ``callback(delta_ms)``."""

    def __init__(self, callback: Callable[[float], None], target_hz: float = 60.0, name: str = "tick"):
        self.callback = callback
        self.target_hz = target_hz
        self.period = 1.0 / target_hz
        self.name = name

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        # Statistics
        self._tick_count = 0
        self._overruns = 0
        self._errors = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start ticking. No-op if already running."""
        if self._running:
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name=f"holoweb-{self.name}", daemon=True)
        self._thread.start()
        logger.info(f"TickLoop '{self.name}' started at {self.target_hz} Hz")

    def stop(self) -> None:
        """Stop ticking. No-op if already stopped."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)
        self._thread = None
        logger.info(f"TickLoop '{self.name}' stopped after {self._tick_count} ticks")

    def _run_loop(self) -> None:
        last = time.perf_counter()
        next_time = last + self.period

        while self._running:
            sleep_time = next_time - time.perf_counter()
            if sleep_time > 0 and self._stop_event.wait(sleep_time):
                break

            now = time.perf_counter()
            delta_ms = (now - last) * 1000.0
            last = now

            try:
                self.callback(delta_ms)
            except Exception as e:
                self._errors += 1
                logger.warning(f"TickLoop '{self.name}' callback failed: {e}")

            self._tick_count += 1
            next_time += self.period
            if next_time < time.perf_counter():
                # Overrun - we're behind
                self._overruns += 1
                next_time = time.perf_counter() + self.period

    def get_stats(self) -> dict:
        return {
            'tick_count': self._tick_count,
            'overruns': self._overruns,
            'errors': self._errors,
            'target_hz': self.target_hz,
        }


__all__ = [
    'TickLoop',
]
