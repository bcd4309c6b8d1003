from datetime import datetime, timedelta, timezone

import pytest

from autoclock.constants import ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY
from autoclock.errors import TokenInvalid
from autoclock.events import EventEmitter
from autoclock.reconciler import SessionReconciler
from autoclock.scheduler import Scheduler
from autoclock.state import TokenPair, WorkSchedule
from autoclock.token_manager import TokenManager


class FakeStore:
    def __init__(self):
        self.store: dict[str, str] = {}

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value):
        self.store[key] = value

    def delete(self, key):
        return self.store.pop(key, None) is not None

    def list_keys(self):
        return sorted(self.store)


class FakeAttendanceClient:
    """
    Records every call. Tokens in `expired` are rejected with TokenInvalid;
    `failures[name]` is a queue of exceptions raised by the next calls.
    """

    def __init__(self):
        self.items = []
        self.calls = []
        self.attendance_queries = []
        self.expired = set()
        self.failures = {}
        self.refresh_calls = 0
        self.refresh_error = None
        self.reset_calls = 0
        self.closed = False

    def count(self, name):
        return sum(1 for call, _ in self.calls if call == name)

    def _call(self, name, token):
        self.calls.append((name, token))
        if token in self.expired:
            raise TokenInvalid("token_expired", 401)
        queue = self.failures.get(name)
        if queue:
            raise queue.pop(0)

    def exchange_refresh_token(self, refresh_token):
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        n = self.refresh_calls
        return TokenPair(access_token=f"access-{n}", refresh_token=f"refresh-{n}")

    def get_attendance_status(self, access_token, date_from, date_to=None):
        self._call("attendance", access_token)
        self.attendance_queries.append((date_from, date_to))
        return list(self.items)

    def clock_in(self, access_token):
        self._call("clock_in", access_token)
        return {}

    def clock_out(self, access_token):
        self._call("clock_out", access_token)
        return {}

    def reset(self):
        self.reset_calls += 1

    def close(self):
        self.closed = True


class FakeTimer:
    def __init__(self, delay, function, args=()):
        self.delay = delay
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function(*self.args)


class FakeTimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, delay, function, args=()):
        timer = FakeTimer(delay, function, args)
        self.timers.append(timer)
        return timer

    def active(self):
        return [t for t in self.timers if t.started and not t.cancelled]


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class EventRecorder:
    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def types(self):
        return [e.type for e in self.events]

    def of(self, event_type):
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def store():
    s = FakeStore()
    s.set(ACCESS_TOKEN_KEY, "access-0")
    s.set(REFRESH_TOKEN_KEY, "refresh-0")
    return s


@pytest.fixture
def empty_store():
    return FakeStore()


@pytest.fixture
def client():
    return FakeAttendanceClient()


@pytest.fixture
def timers():
    return FakeTimerFactory()


@pytest.fixture
def clock():
    # Monday 09:00 UTC
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def emitter(recorder):
    e = EventEmitter()
    e.subscribe(recorder)
    return e


@pytest.fixture
def make_scheduler(store, client, clock, timers, emitter):
    def _make(schedule=None, store_=None):
        s = store_ if store_ is not None else store
        token_manager = TokenManager(client, s, emitter)
        reconciler = SessionReconciler(token_manager, client)
        return Scheduler(
            token_manager, reconciler, client, s,
            emitter=emitter,
            schedule=schedule or WorkSchedule(timezone="UTC"),
            clock=clock,
            timer_factory=timers,
        )

    return _make
