"""
Best-effort progress broadcast.

Listeners may or may not be attached. Delivery failures are an accepted
outcome: they are logged at debug level and never reach the orchestrator.
"""

import logging
import threading
from typing import Callable

from automator.core.constants import EventType
from automator.core.models import ProgressEvent

logger = logging.getLogger(__name__)

Listener = Callable[[ProgressEvent], None]


class ProgressBroadcaster:
    """Fan-out of ProgressEvents to any number of listeners."""

    def __init__(self):
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Attach a listener. Returns a function that detaches it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, event: ProgressEvent):
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.debug("Broadcast listener %r failed: %s", listener, e)

    # ── Convenience ───────────────────────────────────────────────────

    def progress(self, current: int, total: int, message: str, **extra):
        self.publish(ProgressEvent(EventType.PROGRESS, current, total, message, **extra))

    def log(self, message: str, current: int = 0, total: int = 0, **extra):
        self.publish(ProgressEvent(EventType.LOG, current, total, message, **extra))

    def error(self, message: str, current: int = 0, total: int = 0, **extra):
        self.publish(ProgressEvent(EventType.ERROR, current, total, message, **extra))

    def complete(self, current: int, total: int, message: str):
        self.publish(ProgressEvent(EventType.COMPLETE, current, total, message))
