import json
import threading
from datetime import date, datetime, timezone

from autoclock import events
from autoclock.api import AttendanceItem
from autoclock.constants import SESSION_KEY
from autoclock.errors import ApiUnavailable
from autoclock.state import OperationKind, OperationStatus, SessionState, WorkSchedule


def _row(**kwargs):
    data = {"work_date": "2026-03-02", "attendance_status": "Present"}
    data.update(kwargs)
    return AttendanceItem.from_dict(data)


def test_startup_clocks_in_and_schedules_clock_out(make_scheduler, client, timers, clock):
    scheduler = make_scheduler()
    scheduler.start()

    state = scheduler.get_state()
    assert client.count("clock_in") == 1
    assert state.session.state is SessionState.CLOCKED_IN
    assert state.session.clock_in_at == clock.now
    assert state.expected_clock_out_at == datetime(2026, 3, 2, 18, 10, tzinfo=timezone.utc)
    assert len(timers.active()) == 1
    assert timers.active()[0].delay == 550 * 60
    assert timers.active()[0].daemon is True


def test_session_is_persisted_after_clock_in(make_scheduler, store):
    scheduler = make_scheduler()
    scheduler.start()

    saved = json.loads(store.get(SESSION_KEY))
    assert saved["state"] == "clocked_in"
    assert saved["date"] == "2026-03-02"
    assert saved["clockInAt"].startswith("2026-03-02T09:00")


def test_single_pending_operation_per_kind(make_scheduler, timers):
    scheduler = make_scheduler()
    scheduler.start()
    first_timer = timers.active()[0]

    for _ in range(3):
        scheduler.on_heartbeat(False, 60)
    scheduler.update_schedule(WorkSchedule(timezone="UTC", min_work_duration_minutes=480))

    state = scheduler.get_state()
    clock_outs = [op for op in state.pending_operations if op.kind is OperationKind.CLOCK_OUT]
    assert len(clock_outs) == 1
    assert first_timer.cancelled is True
    assert len(timers.active()) == 1
    assert timers.active()[0].delay == 480 * 60
    assert any(op.status is OperationStatus.CANCELLED for op in state.recent_operations)


def test_remote_completed_absorbs_local_clock_in_without_duplicate_clock_out(
        make_scheduler, client, timers, clock):
    scheduler = make_scheduler()
    scheduler.start()
    clock_out_timer = timers.active()[0]

    client.items = [_row(
        date_time_in="2026-03-02T09:00:00+00:00",
        date_time_out="2026-03-02T12:00:00+00:00",
    )]
    clock.advance(hours=10)
    clock_out_timer.fire()

    state = scheduler.get_state()
    assert client.count("clock_out") == 0
    assert state.session.state is SessionState.COMPLETED
    assert state.session.clock_out_at == datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
    assert state.pending_operations == []


def test_startup_overdue_issues_exactly_one_clock_out(make_scheduler, store, client, clock):
    store.set(SESSION_KEY, json.dumps({
        "date": "2026-03-02",
        "state": "clocked_in",
        "clockInAt": "2026-03-02T06:00:00+00:00",
        "clockOutAt": None,
    }))
    clock.now = datetime(2026, 3, 2, 17, 0, tzinfo=timezone.utc)

    scheduler = make_scheduler()
    scheduler.start()
    for _ in range(3):
        scheduler.on_heartbeat(False, 60)

    assert client.count("clock_out") == 1
    assert client.count("clock_in") == 0
    assert scheduler.get_state().session.state is SessionState.COMPLETED


def test_rest_day_is_skipped_and_never_clocks_in(make_scheduler, client):
    client.items = [_row(attendance_status="Rest Day")]
    scheduler = make_scheduler()
    scheduler.start()

    scheduler.on_heartbeat(False, 60)
    scheduler.on_heartbeat(False, 60)
    scheduler.on_heartbeat(True, 900)

    assert scheduler.get_state().session.state is SessionState.SKIPPED
    assert client.count("clock_in") == 0


def test_manual_clock_out_respects_minimum_unless_bypassed(make_scheduler, client, clock):
    scheduler = make_scheduler()
    scheduler.start()
    clock.advance(minutes=100)

    assert scheduler.can_clock_out() is False
    assert scheduler.manual_clock_out(False) is False
    assert client.count("clock_out") == 0

    assert scheduler.manual_clock_out(True) is True
    state = scheduler.get_state()
    assert client.count("clock_out") == 1
    assert state.session.state is SessionState.COMPLETED
    assert state.pending_operations == []


def test_manual_clock_out_allowed_once_overdue(make_scheduler, clock):
    scheduler = make_scheduler()
    scheduler.start()
    clock.advance(minutes=551)

    assert scheduler.can_clock_out() is True
    assert scheduler.manual_clock_out() is True


def test_manual_clock_in_rejected_when_already_clocked_in(make_scheduler, client):
    scheduler = make_scheduler()
    scheduler.start()

    assert scheduler.manual_clock_in() is False
    assert client.count("clock_in") == 1


def test_manual_clock_in_with_auto_schedule_disabled(make_scheduler, client):
    scheduler = make_scheduler(WorkSchedule(auto_schedule_enabled=False, timezone="UTC"))
    scheduler.start()
    assert client.count("clock_in") == 0

    assert scheduler.manual_clock_in() is True
    assert scheduler.get_state().session.state is SessionState.CLOCKED_IN


def test_clock_in_failure_stays_idle_and_retries_on_heartbeat(make_scheduler, client, recorder):
    client.failures["clock_in"] = [ApiUnavailable("Server unavailable", 503)]
    scheduler = make_scheduler()
    scheduler.start()

    state = scheduler.get_state()
    assert state.session.state is SessionState.IDLE
    assert "Server unavailable" in state.last_error
    assert recorder.of(events.CLOCK_IN_FAILED)
    assert state.recent_operations[-1].status is OperationStatus.FAILED

    scheduler.on_heartbeat(False, 60)

    state = scheduler.get_state()
    assert client.count("clock_in") == 2
    assert state.session.state is SessionState.CLOCKED_IN
    assert state.last_error is None


def test_expired_token_is_refreshed_once_during_startup(make_scheduler, client, store):
    client.expired.add("access-0")
    scheduler = make_scheduler()
    scheduler.start()

    assert client.refresh_calls == 1
    assert store.get("access_token") == "access-1"
    assert store.get("refresh_token") == "refresh-1"
    assert scheduler.get_state().session.state is SessionState.CLOCKED_IN


def test_configured_clock_in_time_arms_timer(make_scheduler, client, timers, clock):
    scheduler = make_scheduler(WorkSchedule(clock_in_time="10:30", timezone="UTC"))
    scheduler.start()

    assert client.count("clock_in") == 0
    assert len(timers.active()) == 1
    assert timers.active()[0].delay == 90 * 60
    assert scheduler.get_state().pending(OperationKind.CLOCK_IN) is not None

    scheduler.on_heartbeat(False, 60)
    assert len(timers.timers) == 1

    clock.now = datetime(2026, 3, 2, 10, 30, tzinfo=timezone.utc)
    timers.timers[0].fire()

    state = scheduler.get_state()
    assert client.count("clock_in") == 1
    assert state.session.state is SessionState.CLOCKED_IN
    assert state.pending(OperationKind.CLOCK_IN) is None
    assert state.pending(OperationKind.CLOCK_OUT) is not None


def test_stop_cancels_all_timers(make_scheduler, timers, recorder):
    scheduler = make_scheduler()
    scheduler.start()
    scheduler.stop()

    assert timers.active() == []
    assert scheduler.get_state().pending_operations == []
    assert recorder.types()[-1] == events.STOPPED


def test_new_day_rolls_session_and_clocks_in_again(make_scheduler, client, clock):
    scheduler = make_scheduler()
    scheduler.start()
    scheduler.manual_clock_out(True)

    clock.now = datetime(2026, 3, 3, 9, 0, tzinfo=timezone.utc)
    scheduler.on_heartbeat(False, 60)

    state = scheduler.get_state()
    assert state.session.date == date(2026, 3, 3)
    assert state.session.state is SessionState.CLOCKED_IN
    assert client.count("clock_in") == 2


def test_clocked_in_session_carries_over_midnight(make_scheduler, client, clock):
    clock.now = datetime(2026, 3, 2, 20, 0, tzinfo=timezone.utc)
    scheduler = make_scheduler()
    scheduler.start()

    clock.now = datetime(2026, 3, 3, 1, 0, tzinfo=timezone.utc)
    scheduler.on_heartbeat(False, 60)

    state = scheduler.get_state()
    assert state.session.date == date(2026, 3, 2)
    assert state.session.state is SessionState.CLOCKED_IN
    assert client.count("clock_out") == 0


def test_wake_reconciles_and_detects_remote_clock_in(make_scheduler, client, timers, recorder):
    scheduler = make_scheduler(WorkSchedule(auto_schedule_enabled=False, timezone="UTC"))
    scheduler.start()

    client.items = [_row(date_time_in="2026-03-02T08:30:00+00:00")]
    scheduler.on_heartbeat(True, 400)

    state = scheduler.get_state()
    assert recorder.of(events.WAKE_DETECTED)
    assert state.session.state is SessionState.CLOCKED_IN
    assert state.session.clock_in_at == datetime(2026, 3, 2, 8, 30, tzinfo=timezone.utc)
    assert len(timers.active()) == 1
    assert client.count("clock_in") == 0


def test_missing_credentials_pause_automatic_clock_in(make_scheduler, empty_store, client, recorder):
    scheduler = make_scheduler(store_=empty_store)
    scheduler.start()
    scheduler.on_heartbeat(False, 60)

    assert client.calls == []
    assert len(recorder.of(events.ERROR)) == 1
    assert scheduler.get_state().session.state is SessionState.IDLE


def test_get_state_returns_copies(make_scheduler):
    scheduler = make_scheduler()
    scheduler.start()

    snapshot = scheduler.get_state()
    snapshot.session.state = SessionState.SKIPPED

    assert scheduler.get_state().session.state is SessionState.CLOCKED_IN
    assert all(op.timer is None for op in snapshot.pending_operations)


def test_manual_clock_in_on_rest_day_can_still_clock_out(make_scheduler, client, timers, clock):
    client.items = [_row(attendance_status="Rest Day", is_restday=True)]
    scheduler = make_scheduler()
    scheduler.start()
    assert scheduler.get_state().session.state is SessionState.SKIPPED

    assert scheduler.manual_clock_in() is True
    client.items = [_row(
        attendance_status="Rest Day", is_restday=True, date_time_in="2026-03-02T09:00:00+00:00",
    )]
    clock.advance(minutes=551)
    timers.active()[0].fire()

    state = scheduler.get_state()
    assert client.count("clock_out") == 1
    assert state.session.state is SessionState.COMPLETED


def test_unreadable_remote_timestamp_does_not_break_start(make_scheduler, client):
    client.items = [_row(date_time_in="02/03/2026 08:30")]
    scheduler = make_scheduler()

    scheduler.start()
    scheduler.reconcile()

    assert scheduler.get_state().session.state is SessionState.CLOCKED_IN
    assert client.count("clock_in") == 1


def test_concurrent_manual_clock_ins_are_serialized(make_scheduler, client):
    entered = threading.Event()
    release = threading.Event()
    blocking_clock_in = client.clock_in

    def slow_clock_in(access_token):
        entered.set()
        release.wait(5)
        return blocking_clock_in(access_token)

    client.clock_in = slow_clock_in
    scheduler = make_scheduler(WorkSchedule(auto_schedule_enabled=False, timezone="UTC"))
    scheduler.start()
    results = {}

    def run(name):
        results[name] = scheduler.manual_clock_in()

    first = threading.Thread(target=run, args=("first",))
    first.start()
    assert entered.wait(5)

    second = threading.Thread(target=run, args=("second",))
    second.start()
    second.join(0.2)
    assert second.is_alive()
    assert client.count("clock_in") == 0

    release.set()
    first.join(5)
    second.join(5)

    assert results == {"first": True, "second": False}
    assert client.count("clock_in") == 1
    assert scheduler.get_state().session.state is SessionState.CLOCKED_IN


def test_timer_waits_for_manual_clock_out_in_progress(make_scheduler, client, timers, clock):
    scheduler = make_scheduler()
    scheduler.start()
    clock_out_timer = timers.active()[0]
    clock.advance(minutes=551)

    entered = threading.Event()
    release = threading.Event()
    blocking_clock_out = client.clock_out

    def slow_clock_out(access_token):
        entered.set()
        release.wait(5)
        return blocking_clock_out(access_token)

    client.clock_out = slow_clock_out
    manual = threading.Thread(target=scheduler.manual_clock_out)
    manual.start()
    assert entered.wait(5)

    fired = threading.Thread(target=clock_out_timer.fire)
    fired.start()
    fired.join(0.2)
    assert fired.is_alive()

    release.set()
    manual.join(5)
    fired.join(5)

    assert client.count("clock_out") == 1
    assert scheduler.get_state().session.state is SessionState.COMPLETED
