"""
Activity log — structured history of clock operations, token refreshes,
wake-ups and errors, kept in the credential store as monthly containers
(`logs_YYYY_MM`). Newest 1000 entries per month, six months retained.

Subscribed to the EventEmitter; writing never raises into the emitter.
"""

import json
import threading
import uuid
from datetime import datetime, timezone

from .config import log
from .constants import LOG_KEY_PREFIX, LOG_MAX_ENTRIES_PER_MONTH, LOG_RETENTION_MONTHS
from .errors import StorageError
from . import events

CLOCK_IN = "clock_in"
CLOCK_OUT = "clock_out"
ATTENDANCE_CHECK = "attendance_check"
TOKEN_REFRESH = "token_refresh"
WAKE_DETECTED = "wake_detected"
SCHEDULE_UPDATED = "schedule_updated"
APP_STARTUP = "app_startup"
ERROR = "error"

SUCCESS = "success"
FAILED = "failed"
WARNING = "warning"
INFO = "info"


def month_key(moment):
    return f"{moment.year}_{moment.month:02d}"


def previous_month_key(key):
    year, month = (int(p) for p in key.split("_"))
    if month == 1:
        return f"{year - 1}_12"
    return f"{year}_{month - 1:02d}"


def _months_between(older, newer):
    oy, om = (int(p) for p in older.split("_"))
    ny, nm = (int(p) for p in newer.split("_"))
    return (ny - oy) * 12 + (nm - om)


def _entry_from_event(event):
    """Map an emitter event to (action, status, details, metadata) or None."""
    data = event.data
    t = event.type
    if t == events.CLOCK_IN_SUCCEEDED:
        return CLOCK_IN, SUCCESS, f"Clock-in completed (trigger: {data.get('trigger')})", data
    if t == events.CLOCK_IN_FAILED:
        return CLOCK_IN, FAILED, f"Clock-in failed: {data.get('error')}", data
    if t == events.CLOCK_OUT_SUCCEEDED:
        return CLOCK_OUT, SUCCESS, f"Clock-out completed (trigger: {data.get('trigger')})", data
    if t == events.CLOCK_OUT_FAILED:
        return CLOCK_OUT, FAILED, f"Clock-out failed: {data.get('error')}", data
    if t == events.TOKEN_REFRESHED:
        if data.get("success"):
            return TOKEN_REFRESH, SUCCESS, "Token refresh completed", data
        return TOKEN_REFRESH, FAILED, f"Token refresh failed: {data.get('error')}", data
    if t == events.SESSION_RECONCILED:
        details = f"Attendance check: {data.get('previous')} → {data.get('state')}"
        return ATTENDANCE_CHECK, INFO, details, data
    if t == events.WAKE_DETECTED:
        return WAKE_DETECTED, INFO, f"System wake detected after {data.get('gap_seconds')}s", data
    if t == events.SCHEDULE_UPDATED:
        return SCHEDULE_UPDATED, INFO, "Schedule updated", data
    if t == events.STARTED:
        return APP_STARTUP, SUCCESS, "Scheduler started", data
    if t == events.ERROR:
        return ERROR, FAILED, data.get("message", "error"), data
    return None


class ActivityLogger:
    def __init__(self, store, clock=None):
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()

    # ─── Writing ─────────────────────────────────────────────

    def __call__(self, event):
        """EventEmitter observer."""
        mapped = _entry_from_event(event)
        if mapped is None:
            return
        action, status, details, metadata = mapped
        try:
            self.log(action, status, details, metadata)
        except (StorageError, ValueError) as e:
            log.warning("Activity log write failed: %s", e)

    def log(self, action, status, details, metadata=None):
        now = self._clock()
        entry = {
            "id": f"log_{int(now.timestamp())}_{uuid.uuid4().hex[:6]}",
            "timestamp": now.isoformat(),
            "action": action,
            "status": status,
            "details": details,
            "metadata": dict(metadata or {}),
        }
        key = month_key(now)
        with self._lock:
            container = self._load(key) or {
                "monthKey": key,
                "entries": [],
                "totalEntries": 0,
                "createdAt": now.isoformat(),
            }
            container["entries"].append(entry)
            container["totalEntries"] += 1
            container["updatedAt"] = now.isoformat()
            if len(container["entries"]) > LOG_MAX_ENTRIES_PER_MONTH:
                container["entries"].sort(key=lambda e: e["timestamp"])
                container["entries"] = container["entries"][-LOG_MAX_ENTRIES_PER_MONTH:]
            self._store.set(LOG_KEY_PREFIX + key, json.dumps(container))
            self._cleanup_old_months(key)
        return entry

    def _load(self, key):
        raw = self._store.get(LOG_KEY_PREFIX + key)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            log.warning("Discarding corrupt activity log container %s", key)
            return None

    def _cleanup_old_months(self, current_key):
        for key in self._store.list_keys():
            if not key.startswith(LOG_KEY_PREFIX):
                continue
            suffix = key[len(LOG_KEY_PREFIX):]
            try:
                age = _months_between(suffix, current_key)
            except ValueError:
                continue
            if age > LOG_RETENTION_MONTHS:
                log.info("Removing old activity log %s", key)
                self._store.delete(key)

    # ─── Reading ─────────────────────────────────────────────

    def get_recent_entries(self, limit=100):
        """Newest-first entries from this month and, if needed, the previous one."""
        current = month_key(self._clock())
        with self._lock:
            entries = list((self._load(current) or {}).get("entries", []))
            if len(entries) < limit:
                entries += (self._load(previous_month_key(current)) or {}).get("entries", [])
        entries.sort(key=lambda e: e["timestamp"], reverse=True)
        return entries[:limit]

    def get_filtered_entries(self, action=None, status=None, limit=100):
        return [
            e for e in self.get_recent_entries(limit)
            if (action is None or e["action"] == action)
            and (status is None or e["status"] == status)
        ]

    def clear_all_logs(self):
        deleted = 0
        with self._lock:
            for key in self._store.list_keys():
                if key.startswith(LOG_KEY_PREFIX):
                    self._store.delete(key)
                    deleted += 1
        return deleted
