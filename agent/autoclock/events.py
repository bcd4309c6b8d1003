"""
Event emitter — fire-and-forget notifications to observers.

Observers run synchronously on the emitting thread (usually while the
Scheduler holds its lock), so they must be quick and must not call back into
the Scheduler. Observer exceptions are logged and dropped.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .config import log

STARTED = "started"
STOPPED = "stopped"
CLOCK_IN_SCHEDULED = "clock_in_scheduled"
CLOCK_OUT_SCHEDULED = "clock_out_scheduled"
CLOCK_IN_SUCCEEDED = "clock_in_succeeded"
CLOCK_IN_FAILED = "clock_in_failed"
CLOCK_OUT_SUCCEEDED = "clock_out_succeeded"
CLOCK_OUT_FAILED = "clock_out_failed"
SCHEDULE_UPDATED = "schedule_updated"
SESSION_RECONCILED = "session_reconciled"
WAKE_DETECTED = "wake_detected"
TOKEN_REFRESHED = "token_refreshed"
ERROR = "error"


@dataclass(frozen=True)
class Event:
    type: str
    data: dict = field(default_factory=dict)
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventEmitter:
    def __init__(self):
        self._subscribers = []
        self._lock = threading.Lock()

    def subscribe(self, callback):
        """Register `callback(event)`. Returns the callback for use as a decorator."""
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback):
        with self._lock:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

    def emit(self, event_type, **data):
        event = Event(event_type, data)
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                log.warning("Event observer %r failed on %s: %s", callback, event_type, e)
        return event


def log_event(event):
    """Default observer: one log line per event."""
    details = ", ".join(f"{k}={v}" for k, v in event.data.items())
    log.info("event %s%s", event.type, f" ({details})" if details else "")
