"""
Scheduler — owns today's Session, the pending clock-in/out operations and
their timers. Every decision to clock in or out is made here.

Triggers (all serialized on one re-entrant lock, never interleaved):
  start()             — restore session, overdue check, reconciliation pass
  on_heartbeat()      — day rollover, wake recovery, idle retry, overdue check
  _on_timer()         — a PendingOperation's timer fired (timer thread)
  manual_clock_in() / manual_clock_out() / reconcile() / update_schedule()

Remote failures never leave this class as exceptions: they are recorded on
the PendingOperation and last_error, and published as *_failed events.
"""

import json
import threading
from datetime import datetime

from .config import log
from .constants import SCHEDULE_KEY, SESSION_KEY, OPERATION_HISTORY_SIZE
from .errors import ApiError, NoCredentials, RefreshFailed, StorageError
from .state import (
    Session, SessionState, OperationKind, PendingOperation, SchedulerState, WorkSchedule,
)
from . import events


def load_schedule(store):
    """Schedule blob from the store, or the default schedule."""
    raw = store.get(SCHEDULE_KEY)
    if not raw:
        return WorkSchedule()
    try:
        return WorkSchedule.from_dict(json.loads(raw))
    except (ValueError, TypeError) as e:
        log.warning("Ignoring invalid saved schedule (%s) — using defaults", e)
        return WorkSchedule()


class Scheduler:
    def __init__(self, token_manager, reconciler, client, store, emitter=None,
                 schedule=None, clock=None, timer_factory=threading.Timer):
        self._token_manager = token_manager
        self._reconciler = reconciler
        self._client = client
        self._store = store
        self._emitter = emitter or events.EventEmitter()
        self._schedule = schedule or load_schedule(store)
        self._clock = clock
        self._timer_factory = timer_factory

        self._lock = threading.RLock()
        self._running = False
        self._operations = []
        self._last_error = None
        self._setup_warned = False
        self._session = Session(date=self._today(), min_work_minutes=self._min_work)
        self._reconciler.tz = self._schedule.tzinfo

    # ─── Clock / day helpers ─────────────────────────────────

    def _now(self) -> datetime:
        return self._clock() if self._clock is not None else self._schedule.now()

    def _today(self):
        return self._schedule.local_date(self._now())

    @property
    def _min_work(self):
        return self._schedule.min_work_duration_minutes

    @property
    def emitter(self):
        return self._emitter

    @property
    def is_running(self):
        return self._running

    # ─── Lifecycle ───────────────────────────────────────────

    def start(self):
        with self._lock:
            if self._running:
                return
            self._running = True
            self._last_error = None
            self._session = self._load_session()
            log.info(
                "Scheduler started — session %s is %s (min work %d min, clock-in %s)",
                self._session.date, self._session.state.value, self._min_work,
                self._schedule.clock_in_time or "first trigger",
            )
            self._emit(events.STARTED)
            self._run_pass("startup", overdue_first=True)

    def stop(self):
        with self._lock:
            if not self._running:
                return
            self._running = False
            for op in self._pending_operations():
                op.cancel("scheduler stopped")
            log.info("Scheduler stopped — all timers cancelled")
            self._emit(events.STOPPED)

    # ─── Public triggers ─────────────────────────────────────

    def on_heartbeat(self, gap_detected=False, gap_seconds=0.0):
        """Called by the Gap Detector on every tick."""
        with self._lock:
            if not self._running:
                return
            rolled = self._roll_day()

            if gap_detected:
                log.warning("Wake detected after %.0fs gap — reconciling", gap_seconds)
                self._emit(events.WAKE_DETECTED, gap_seconds=int(gap_seconds))
                self._run_pass("wake")
            elif self._session.state is SessionState.IDLE and not self._clock_in_armed():
                self._run_pass("new day" if rolled else "heartbeat")
            elif self._session.state is SessionState.CLOCKED_IN:
                self._check_overdue("heartbeat")

    def reconcile(self, trigger="manual"):
        """Force a reconciliation pass (plus overdue check)."""
        with self._lock:
            if not self._running:
                log.warning("Reconcile ignored — scheduler not running")
                return
            self._roll_day()
            self._run_pass(trigger)

    def manual_clock_in(self):
        with self._lock:
            if not self._running:
                log.warning("Manual clock-in ignored — scheduler not running")
                return False
            self._roll_day()
            state = self._session.state
            if state in (SessionState.CLOCKED_IN, SessionState.COMPLETED):
                log.warning("Manual clock-in rejected — session already %s", state.value)
                return False
            op = self._new_operation(OperationKind.CLOCK_IN, self._now(), "manual")
            return self._clock_in("manual", op=op)

    def manual_clock_out(self, bypass_minimum=False):
        with self._lock:
            if not self._running:
                log.warning("Manual clock-out ignored — scheduler not running")
                return False
            if self._session.state is not SessionState.CLOCKED_IN:
                log.warning("Manual clock-out rejected — session is %s", self._session.state.value)
                return False
            if not self._session.is_overdue(self._now()):
                if not bypass_minimum:
                    log.warning(
                        "Manual clock-out rejected — minimum work duration not reached (expected %s)",
                        self._session.expected_clock_out_at,
                    )
                    return False
                log.warning("Manual clock-out bypassing minimum work duration")
            return self._clock_out("manual", supersede=True)

    def can_clock_out(self):
        with self._lock:
            return self._session.is_overdue(self._now())

    def get_state(self) -> SchedulerState:
        with self._lock:
            pending = [op.snapshot() for op in self._operations if op.is_pending]
            recent = [op.snapshot() for op in self._operations if not op.is_pending]
            return SchedulerState(
                is_running=self._running,
                session=self._session.copy(),
                pending_operations=pending,
                recent_operations=recent,
                schedule=WorkSchedule.from_dict(self._schedule.to_dict()),
                last_error=self._last_error,
            )

    def update_schedule(self, schedule):
        schedule.validate()
        with self._lock:
            self._schedule = schedule
            self._session.min_work_minutes = schedule.min_work_duration_minutes
            self._reconciler.tz = schedule.tzinfo
            try:
                self._store.set(SCHEDULE_KEY, json.dumps(schedule.to_dict()))
            except StorageError as e:
                log.error("Failed to persist schedule: %s", e)
            log.info("Schedule updated: %s", schedule.to_dict())
            self._emit(events.SCHEDULE_UPDATED, schedule=schedule.to_dict())

            if not self._running:
                return
            self._cancel_pending(OperationKind.CLOCK_IN, "schedule changed")
            state = self._session.state
            if state is SessionState.CLOCKED_IN:
                if self._session.is_overdue(self._now()):
                    self._clock_out("schedule change")
                else:
                    self._schedule_clock_out()
            elif state is SessionState.IDLE:
                self._maybe_clock_in("schedule change")

    # ─── Passes ──────────────────────────────────────────────

    def _run_pass(self, trigger, overdue_first=False):
        """Reconcile with the remote record, then act on the result."""
        attempted_clock_out = False
        if overdue_first and self._session.is_overdue(self._now()):
            log.warning(
                "Session overdue (expected clock-out %s) — clocking out before anything else",
                self._session.expected_clock_out_at,
            )
            self._clock_out("overdue")
            attempted_clock_out = True

        self._reconcile()

        state = self._session.state
        if state is SessionState.IDLE:
            self._maybe_clock_in(trigger)
        elif state is SessionState.CLOCKED_IN and not attempted_clock_out:
            self._check_overdue(trigger)

    def _reconcile(self):
        if not self._token_manager.has_credentials():
            log.debug("Reconciliation skipped — no credentials")
            return
        remote = self._reconciler.reconcile(self._session, today=self._today())
        if remote is self._session or remote.same_as(self._session):
            return
        self._apply_remote(remote)

    def _apply_remote(self, remote):
        previous = self._session
        remote.min_work_minutes = self._min_work
        self._session = remote
        state = remote.state

        if state is SessionState.SKIPPED:
            log.info("%s is a rest day / leave — no clock operations today", remote.date)
            self._cancel_pending(None, "rest day or leave")
        elif state is SessionState.COMPLETED:
            self._cancel_pending(None, "completed remotely")
        elif state is SessionState.CLOCKED_IN:
            self._cancel_pending(OperationKind.CLOCK_IN, "clocked in remotely")
            moved = previous.clock_in_at != remote.clock_in_at
            if moved:
                log.info("Clock-in detected from remote record at %s", remote.clock_in_at)
            if (moved or self._pending(OperationKind.CLOCK_OUT) is None) \
                    and not remote.is_overdue(self._now()):
                self._schedule_clock_out()
        else:
            self._cancel_pending(OperationKind.CLOCK_OUT, "not clocked in remotely")

        self._persist_session()
        self._emit(
            events.SESSION_RECONCILED,
            previous=previous.state.value,
            state=state.value,
            clock_in_at=remote.clock_in_at.isoformat() if remote.clock_in_at else None,
        )

    def _check_overdue(self, trigger):
        if self._session.is_overdue(self._now()):
            log.warning("Expected clock-out %s has passed — clocking out (%s)",
                        self._session.expected_clock_out_at, trigger)
            self._clock_out(trigger)
            return
        op = self._pending(OperationKind.CLOCK_OUT)
        if op is None or op.timer is None:
            self._schedule_clock_out()

    def _maybe_clock_in(self, trigger):
        if not self._schedule.auto_schedule_enabled:
            log.debug("Automatic clock-in disabled — waiting for manual action")
            return False
        if not self._token_manager.has_credentials():
            if not self._setup_warned:
                self._setup_warned = True
                log.warning("No stored credentials — automatic clock-in paused until setup")
                self._emit(events.ERROR, message="No credentials stored; run setup")
            return False
        self._setup_warned = False

        start_at = self._schedule.clock_in_at_on(self._session.date)
        if start_at is not None and self._now() < start_at:
            pending = self._pending(OperationKind.CLOCK_IN)
            if pending is None or pending.scheduled_at != start_at or pending.timer is None:
                self._schedule_clock_in(start_at)
            return False
        return self._clock_in(trigger)

    # ─── Transitions ─────────────────────────────────────────

    def _clock_in(self, trigger, op=None):
        now = self._now()
        if op is None:
            op = self._due_pending(OperationKind.CLOCK_IN, now)
        if op is None:
            op = self._new_operation(OperationKind.CLOCK_IN, now, trigger)
        op.cancel_timer()

        log.info("Clocking in (trigger=%s)", trigger)
        try:
            self._token_manager.call_with_token(self._client.clock_in, "clock_in")
        except ApiError as e:
            self._fail(op, e, events.CLOCK_IN_FAILED)
            return False

        done_at = self._now()
        op.complete(done_at)
        self._session.mark_clocked_in(done_at)
        self._last_error = None
        self._persist_session()
        log.info("Clocked in at %s — expected clock-out %s",
                 done_at.isoformat(timespec="seconds"), self._session.expected_clock_out_at)
        self._schedule_clock_out()
        self._emit(events.CLOCK_IN_SUCCEEDED, time=done_at.isoformat(),
                   operation_id=op.id, trigger=trigger)
        return True

    def _clock_out(self, trigger, supersede=False):
        now = self._now()
        op = None if supersede else self._pending(OperationKind.CLOCK_OUT)
        if op is None:
            op = self._new_operation(OperationKind.CLOCK_OUT, now, trigger)
        op.cancel_timer()

        log.info("Clocking out (trigger=%s)", trigger)
        try:
            self._token_manager.call_with_token(self._client.clock_out, "clock_out")
        except ApiError as e:
            self._fail(op, e, events.CLOCK_OUT_FAILED)
            return False

        done_at = self._now()
        op.complete(done_at)
        self._session.mark_completed(done_at)
        self._last_error = None
        self._persist_session()
        worked = int((self._session.clock_out_at - self._session.clock_in_at).total_seconds() // 60) \
            if self._session.clock_in_at else None
        log.info("Clocked out at %s (worked %s min)", done_at.isoformat(timespec="seconds"), worked)
        self._emit(events.CLOCK_OUT_SUCCEEDED, time=done_at.isoformat(),
                   operation_id=op.id, trigger=trigger, worked_minutes=worked)
        return True

    def _fail(self, op, error, event_type):
        op.fail(self._now(), str(error))
        self._last_error = str(error)
        log.warning("%s failed (%s): %s", op.kind.value, type(error).__name__, error)
        self._emit(event_type, error=str(error), operation_id=op.id, trigger=op.trigger)
        if isinstance(error, (NoCredentials, RefreshFailed)):
            self._emit(events.ERROR, message=f"{op.kind.value}: {error}")

    # ─── Pending operations & timers ─────────────────────────

    def _pending_operations(self):
        return [op for op in self._operations if op.is_pending]

    def _pending(self, kind):
        for op in self._operations:
            if op.kind is kind and op.is_pending:
                return op
        return None

    def _due_pending(self, kind, now):
        op = self._pending(kind)
        if op is not None and op.scheduled_at <= now:
            return op
        return None

    def _clock_in_armed(self):
        op = self._pending(OperationKind.CLOCK_IN)
        return op is not None and op.timer is not None and op.scheduled_at > self._now()

    def _cancel_pending(self, kind, reason):
        """Cancel pending operations of `kind` (None = every kind)."""
        for op in self._pending_operations():
            if kind is None or op.kind is kind:
                op.cancel(reason)
                log.info("Cancelled %s (%s)", op.id, reason)

    def _new_operation(self, kind, scheduled_at, trigger):
        """Create the one pending operation of `kind`, cancelling any previous one."""
        self._cancel_pending(kind, "superseded")
        op = PendingOperation(kind=kind, scheduled_at=scheduled_at, trigger=trigger)
        self._operations.append(op)

        excess = len(self._operations) - OPERATION_HISTORY_SIZE
        if excess > 0:
            finished = [o for o in self._operations if not o.is_pending][:excess]
            self._operations = [o for o in self._operations if o not in finished]
        return op

    def _arm(self, op):
        delay = max(0.0, (op.scheduled_at - self._now()).total_seconds())
        timer = self._timer_factory(delay, self._on_timer, args=(op.id,))
        timer.daemon = True
        op.timer = timer
        timer.start()
        return timer

    def _schedule_clock_out(self):
        expected = self._session.expected_clock_out_at
        if expected is None:
            return None
        op = self._new_operation(OperationKind.CLOCK_OUT, expected, "timer")
        self._arm(op)
        log.info("Clock-out scheduled for %s (%s)", expected.isoformat(timespec="seconds"), op.id)
        self._emit(events.CLOCK_OUT_SCHEDULED, operation_id=op.id, scheduled_time=expected.isoformat())
        return op

    def _schedule_clock_in(self, at):
        op = self._new_operation(OperationKind.CLOCK_IN, at, "timer")
        self._arm(op)
        log.info("Clock-in scheduled for %s (%s)", at.isoformat(timespec="seconds"), op.id)
        self._emit(events.CLOCK_IN_SCHEDULED, operation_id=op.id, scheduled_time=at.isoformat())
        return op

    def _on_timer(self, operation_id):
        """Timer thread entry point."""
        with self._lock:
            op = next((o for o in self._operations if o.id == operation_id), None)
            if not self._running or op is None or not op.is_pending:
                return
            op.timer = None
            log.info("Timer fired for %s", operation_id)
            try:
                self._roll_day()
                self._run_pass(f"scheduled {op.kind.value}")
            except Exception as e:
                log.error("Timer %s failed: %s", operation_id, e, exc_info=True)
                self._last_error = str(e)
                self._emit(events.ERROR, message=str(e))

    # ─── Session persistence ─────────────────────────────────

    def _load_session(self):
        today = self._today()
        session = None
        raw = None
        try:
            raw = self._store.get(SESSION_KEY)
        except StorageError as e:
            log.warning("Could not read saved session: %s", e)
        if raw:
            try:
                session = Session.from_dict(json.loads(raw), self._min_work, self._schedule.tzinfo)
            except (ValueError, KeyError, TypeError) as e:
                log.warning("Ignoring unreadable saved session: %s", e)
        if session is None:
            session = Session(date=today, min_work_minutes=self._min_work)
            self._session = session
            self._persist_session()
            return session
        self._session = session
        self._roll_day()
        return self._session

    def _roll_day(self):
        """Start a fresh Idle session once the calendar day changes. Returns True if rolled."""
        today = self._today()
        session = self._session
        if session.date >= today:
            return False
        if session.state is SessionState.CLOCKED_IN:
            # Still working across midnight — the session ends with its clock-out.
            return False
        log.info("New day %s (previous session %s ended %s)", today, session.date, session.state.value)
        self._cancel_pending(OperationKind.CLOCK_IN, "new day")
        self._session = Session(date=today, min_work_minutes=self._min_work)
        self._persist_session()
        return True

    def _persist_session(self):
        try:
            self._store.set(SESSION_KEY, json.dumps(self._session.to_dict()))
        except StorageError as e:
            log.error("Failed to persist session: %s", e)

    def _emit(self, event_type, **data):
        self._emitter.emit(event_type, **data)
