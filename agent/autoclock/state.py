"""
Session, PendingOperation, TokenPair, WorkSchedule and the SchedulerState
snapshot — the data the Scheduler owns.

Mutations only happen while the Scheduler's transition lock is held.
Snapshots handed out by get_state() are copies.
"""

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .constants import DEFAULT_MIN_WORK_MINUTES, MAX_MIN_WORK_MINUTES

_HHMM = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")


class SessionState(str, Enum):
    IDLE = "idle"
    CLOCKED_IN = "clocked_in"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class OperationKind(str, Enum):
    CLOCK_IN = "clock_in"
    CLOCK_OUT = "clock_out"


class OperationStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def parse_timestamp(value, tz=None):
    """ISO-8601 string → aware datetime. Naive values are taken as `tz`."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz) if tz is not None else dt.astimezone()
    return dt


def _iso(dt):
    return dt.isoformat() if dt is not None else None


# ─── Session ─────────────────────────────────────────────────────

@dataclass
class Session:
    date: date
    state: SessionState = SessionState.IDLE
    clock_in_at: Optional[datetime] = None
    clock_out_at: Optional[datetime] = None
    min_work_minutes: int = DEFAULT_MIN_WORK_MINUTES

    @property
    def expected_clock_out_at(self) -> Optional[datetime]:
        """Derived, never stored: clock_in_at + min work duration."""
        if self.clock_in_at is None:
            return None
        return self.clock_in_at + timedelta(minutes=self.min_work_minutes)

    def is_overdue(self, now: datetime) -> bool:
        expected = self.expected_clock_out_at
        return self.state is SessionState.CLOCKED_IN and expected is not None and now >= expected

    def mark_clocked_in(self, at: datetime):
        self.state = SessionState.CLOCKED_IN
        self.clock_in_at = at
        self.clock_out_at = None

    def mark_completed(self, at: datetime):
        if self.clock_in_at is not None and at < self.clock_in_at:
            at = self.clock_in_at
        self.state = SessionState.COMPLETED
        self.clock_out_at = at

    def mark_skipped(self):
        self.state = SessionState.SKIPPED
        self.clock_in_at = None
        self.clock_out_at = None

    def same_as(self, other: "Session") -> bool:
        return (
            self.date == other.date
            and self.state is other.state
            and self.clock_in_at == other.clock_in_at
            and self.clock_out_at == other.clock_out_at
        )

    def copy(self) -> "Session":
        return replace(self)

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "state": self.state.value,
            "clockInAt": _iso(self.clock_in_at),
            "clockOutAt": _iso(self.clock_out_at),
        }

    @classmethod
    def from_dict(cls, data: dict, min_work_minutes=DEFAULT_MIN_WORK_MINUTES, tz=None) -> "Session":
        return cls(
            date=date.fromisoformat(data["date"]),
            state=SessionState(data.get("state", SessionState.IDLE.value)),
            clock_in_at=parse_timestamp(data.get("clockInAt"), tz),
            clock_out_at=parse_timestamp(data.get("clockOutAt"), tz),
            min_work_minutes=min_work_minutes,
        )


# ─── PendingOperation ────────────────────────────────────────────

def _new_operation_id(kind):
    return f"{kind.value}_{uuid.uuid4().hex[:12]}"


@dataclass
class PendingOperation:
    kind: OperationKind
    scheduled_at: datetime
    id: str = ""
    status: OperationStatus = OperationStatus.PENDING
    error_detail: Optional[str] = None
    completed_at: Optional[datetime] = None
    trigger: str = ""
    timer: Any = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if not self.id:
            self.id = _new_operation_id(self.kind)

    @property
    def is_pending(self) -> bool:
        return self.status is OperationStatus.PENDING

    def cancel_timer(self):
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def cancel(self, reason=None):
        self.cancel_timer()
        self.status = OperationStatus.CANCELLED
        if reason:
            self.error_detail = reason

    def complete(self, at: datetime):
        self.cancel_timer()
        self.status = OperationStatus.COMPLETED
        self.completed_at = at

    def fail(self, at: datetime, detail: str):
        self.cancel_timer()
        self.status = OperationStatus.FAILED
        self.completed_at = at
        self.error_detail = detail

    def snapshot(self) -> "PendingOperation":
        return replace(self, timer=None)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "scheduledAt": _iso(self.scheduled_at),
            "status": self.status.value,
            "errorDetail": self.error_detail,
            "completedAt": _iso(self.completed_at),
            "trigger": self.trigger,
        }


# ─── Tokens ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: Optional[int] = None

    def __repr__(self):
        return f"TokenPair(access_token=***, refresh_token=***, expires_in={self.expires_in})"


# ─── WorkSchedule ────────────────────────────────────────────────

@dataclass
class WorkSchedule:
    auto_schedule_enabled: bool = True
    clock_in_time: Optional[str] = None     # "HH:MM" local; None = first trigger of the day
    timezone: Optional[str] = None          # IANA name; None = host local time
    min_work_duration_minutes: int = DEFAULT_MIN_WORK_MINUTES

    def __post_init__(self):
        self.validate()

    def validate(self):
        if self.clock_in_time is not None and not _HHMM.match(self.clock_in_time):
            raise ValueError(f"clock_in_time must be HH:MM, got {self.clock_in_time!r}")
        if not 1 <= int(self.min_work_duration_minutes) <= MAX_MIN_WORK_MINUTES:
            raise ValueError(
                f"min_work_duration_minutes must be 1..{MAX_MIN_WORK_MINUTES}, "
                f"got {self.min_work_duration_minutes}"
            )
        self.tzinfo  # raises ValueError on an unknown zone

    @property
    def tzinfo(self):
        if not self.timezone:
            return None
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone {self.timezone!r}") from e

    def now(self) -> datetime:
        """Current aware time in the schedule's zone."""
        tz = self.tzinfo
        return datetime.now(tz) if tz is not None else datetime.now().astimezone()

    def local_date(self, moment: datetime) -> date:
        tz = self.tzinfo
        return (moment.astimezone(tz) if tz is not None else moment.astimezone()).date()

    def clock_in_at_on(self, day: date) -> Optional[datetime]:
        """The configured clock-in instant on `day`, or None when not configured."""
        if self.clock_in_time is None:
            return None
        hours, minutes = (int(p) for p in self.clock_in_time.split(":"))
        naive = datetime.combine(day, time(hours, minutes))
        tz = self.tzinfo
        return naive.replace(tzinfo=tz) if tz is not None else naive.astimezone()

    def to_dict(self) -> dict:
        return {
            "autoScheduleEnabled": self.auto_schedule_enabled,
            "clockInTime": self.clock_in_time,
            "timezone": self.timezone,
            "minWorkDurationMinutes": self.min_work_duration_minutes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkSchedule":
        kwargs = {
            "auto_schedule_enabled": bool(data.get("autoScheduleEnabled", True)),
            "clock_in_time": data.get("clockInTime") or None,
            "min_work_duration_minutes": int(
                data.get("minWorkDurationMinutes", DEFAULT_MIN_WORK_MINUTES)
            ),
        }
        if data.get("timezone"):
            kwargs["timezone"] = data["timezone"]
        return cls(**kwargs)


# ─── SchedulerState snapshot ─────────────────────────────────────

@dataclass
class SchedulerState:
    is_running: bool
    session: Session
    pending_operations: list
    recent_operations: list
    schedule: WorkSchedule
    last_error: Optional[str] = None

    @property
    def expected_clock_out_at(self) -> Optional[datetime]:
        return self.session.expected_clock_out_at

    def pending(self, kind: OperationKind) -> Optional[PendingOperation]:
        for op in self.pending_operations:
            if op.kind is kind:
                return op
        return None

    def to_dict(self) -> dict:
        return {
            "isRunning": self.is_running,
            "session": self.session.to_dict(),
            "expectedClockOutAt": _iso(self.expected_clock_out_at),
            "pendingOperations": [op.to_dict() for op in self.pending_operations],
            "recentOperations": [op.to_dict() for op in self.recent_operations],
            "schedule": self.schedule.to_dict(),
            "lastError": self.last_error,
        }
