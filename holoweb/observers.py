"""
Holoweb Observers - Per-Instance Change Notification
====================================================

Each engine component owns its own subscriber list, revision counter and
lock. There is no process-wide store; two engines in one process never see
each other's notifications.

Listeners are called synchronously, in subscription order, after every
effective mutation. A listener that raises is logged and skipped.

Thread-safe: mutations and reads take the component's RLock, so a
background TickLoop and host calls never interleave. Listeners run with the
lock held and may call back into the same component.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List


logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class ChangeNotifier:
    """Subscriber list plus a monotonic revision counter."""

    def __init__(self):
        self._lock = threading.RLock()
        self._subscribers: List[Listener] = []
        self._revision = 0

    @property
    def lock(self) -> threading.RLock:
        """The component's reentrant lock, for hosts batching several calls."""
        return self._lock

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a change listener.

        Returns:
            An idempotent unsubscribe function
        """
        with self._lock:
            self._subscribers.append(listener)

        def unsubscribe() -> None:
            # remove by identity; the same callable may be subscribed twice
            with self._lock:
                for i, existing in enumerate(self._subscribers):
                    if existing is listener:
                        del self._subscribers[i]
                        return

        return unsubscribe

    def get_revision(self) -> int:
        with self._lock:
            return self._revision

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def clear_subscribers(self) -> None:
        with self._lock:
            self._subscribers.clear()

    def _emit(self) -> None:
        """Bump the revision and notify every subscriber."""
        with self._lock:
            self._revision += 1
            for listener in list(self._subscribers):
                try:
                    listener()
                except Exception as e:
                    logger.warning(f"{type(self).__name__} listener {listener!r} failed: {e}")


__all__ = [
    'Listener',
    'ChangeNotifier',
]
