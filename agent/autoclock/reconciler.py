"""
Session Reconciler — replaces the locally assumed session with what the
attendance API says, whenever the API can be reached.

A failed fetch, a response without a row for the session's day, or a row
with unreadable timestamps is "no new information": the local session comes
back unchanged.
"""

from .config import log
from .constants import SKIP_STATUSES
from .errors import ApiError
from .state import SessionState, parse_timestamp


def derive_session(local, item, tz=None):
    """
    Apply one attendance row to a copy of `local`. A recorded clock-in wins
    over a rest-day/leave status. Raises ValueError on unparseable timestamps.
    """
    session = local.copy()

    clock_in = parse_timestamp(item.date_time_in, tz)
    clock_out = parse_timestamp(item.date_time_out, tz)

    if clock_in is not None and clock_out is None:
        session.mark_clocked_in(clock_in)
    elif clock_in is not None:
        session.clock_in_at = clock_in
        session.mark_completed(clock_out)
    elif item.attendance_status in SKIP_STATUSES or item.is_restday:
        session.mark_skipped()
    else:
        session.state = SessionState.IDLE
        session.clock_in_at = None
        session.clock_out_at = None
    return session


class SessionReconciler:
    def __init__(self, token_manager, client, tz=None):
        self._token_manager = token_manager
        self._client = client
        self.tz = tz

    def fetch_item(self, day, today=None):
        """Attendance row for `day`, or None. Raises ApiError."""
        date_to = max(day, today) if today else day
        items = self._token_manager.call_with_token(
            lambda token: self._client.get_attendance_status(token, day, date_to),
            "attendance_check",
        )
        wanted = day.isoformat()
        for item in items:
            if item.work_date == wanted:
                return item
        return None

    def reconcile(self, local, today=None):
        """Authoritative session for `local.date`. Never raises ApiError."""
        try:
            item = self.fetch_item(local.date, today)
        except ApiError as e:
            log.warning("Reconciliation skipped — attendance unavailable: %s", e)
            return local
        if item is None:
            log.info("No attendance row for %s — keeping local state %s",
                     local.date, local.state.value)
            return local

        try:
            session = derive_session(local, item, self.tz)
        except (ValueError, TypeError) as e:
            log.warning("Ignoring unreadable attendance row for %s: %s", local.date, e)
            return local
        if not session.same_as(local):
            log.info(
                "Reconciled %s: %s → %s (remote status=%r)",
                local.date, local.state.value, session.state.value, item.attendance_status,
            )
        return session
