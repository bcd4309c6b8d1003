"""
Attendance API client — token exchange, attendance status, clock in/out.

Every method is one blocking request (transport retries on 429/5xx are done
by the session's urllib3 Retry). Failures are raised as ApiError subclasses;
authentication failures as TokenInvalid so the Token Manager can refresh.
"""

from dataclasses import dataclass
from datetime import date
from typing import Optional

import requests

from .config import log
from .constants import (
    API_TIMEOUT, DEFAULT_CLIENT_ID, TOKEN_PATH, ATTENDANCE_PATH, CLOCK_IN_PATH,
    CLOCK_OUT_PATH, TOKEN_ERROR_MARKERS,
)
from .errors import ApiError, ApiUnavailable, TokenInvalid, RefreshFailed
from .state import TokenPair
from . import http_client


def is_token_error(status_code, body=""):
    """401, or an invalid_token / token_expired marker in the body."""
    if status_code == 401:
        return True
    text = (body or "").lower()
    return any(marker in text for marker in TOKEN_ERROR_MARKERS)


@dataclass
class AttendanceItem:
    work_date: str
    attendance_status: str = ""
    date_time_in: Optional[str] = None
    date_time_out: Optional[str] = None
    is_restday: Optional[bool] = None

    @classmethod
    def from_dict(cls, data):
        return cls(
            work_date=str(data.get("work_date", ""))[:10],
            attendance_status=data.get("attendance_status") or "",
            date_time_in=data.get("date_time_in"),
            date_time_out=data.get("date_time_out"),
            is_restday=data.get("is_restday"),
        )


class AttendanceClient:
    def __init__(self, api_base_url, token_url=None, client_id=DEFAULT_CLIENT_ID,
                 session=None, timeout=API_TIMEOUT):
        self._base = api_base_url.rstrip("/")
        self._token_url = token_url or self._base + TOKEN_PATH
        self._client_id = client_id
        self._timeout = timeout
        self.http = session or http_client.create_session()

    # ─── Transport ───────────────────────────────────────────

    def _request(self, method, url, access_token=None, **kwargs):
        headers = kwargs.pop("headers", {})
        if access_token is not None:
            headers["Authorization"] = f"Bearer {access_token}"
        try:
            resp = self.http.request(method, url, headers=headers, timeout=self._timeout, **kwargs)
        except requests.RequestException as e:
            # Includes RetryError once urllib3 gives up on 429/5xx
            raise ApiUnavailable(f"{method} {url.split('/')[-1]} failed: {e}") from e

        if 200 <= resp.status_code < 300:
            return resp

        body = resp.text[:500] if resp.text else ""
        if is_token_error(resp.status_code, body):
            raise TokenInvalid(f"Token rejected: {body[:200]}", resp.status_code)
        if resp.status_code == 429 or resp.status_code >= 500:
            raise ApiUnavailable(f"Server unavailable: {body[:200]}", resp.status_code)
        raise ApiError(f"Request rejected: {body[:200]}", resp.status_code)

    @staticmethod
    def _json(resp):
        try:
            return resp.json() if resp.content else {}
        except ValueError as e:
            raise ApiError(f"Invalid JSON in response: {e}", resp.status_code) from e

    @classmethod
    def _json_object(cls, resp):
        data = cls._json(resp)
        if not isinstance(data, dict):
            raise ApiError("Unexpected response shape: expected a JSON object", resp.status_code)
        return data

    # ─── Endpoints ───────────────────────────────────────────

    def exchange_refresh_token(self, refresh_token):
        """POST refresh token → TokenPair. Any failure is RefreshFailed."""
        payload = {
            "grant_type": "refresh_token",
            "client_id": self._client_id,
            "refresh_token": refresh_token,
            "scope": "openid",
        }
        try:
            resp = self._request("POST", self._token_url, json=payload)
            data = self._json_object(resp)
        except ApiError as e:
            raise RefreshFailed(f"Token exchange failed: {e.message}", e.status_code) from e

        if not data.get("access_token") or not data.get("refresh_token"):
            raise RefreshFailed("Token exchange response is missing tokens")
        log.info("Token exchange OK (expires_in=%s)", data.get("expires_in"))
        return TokenPair(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_in=data.get("expires_in"),
        )

    def get_attendance_status(self, access_token, date_from, date_to=None):
        """Attendance items between two dates (inclusive)."""
        date_to = date_to or date_from
        params = {
            "date_from": date_from.isoformat() if isinstance(date_from, date) else date_from,
            "date_to": date_to.isoformat() if isinstance(date_to, date) else date_to,
        }
        resp = self._request("GET", self._base + ATTENDANCE_PATH, access_token, params=params)
        data = self._json_object(resp)
        container = data.get("data") or data
        if isinstance(container, list):
            items = container
        elif isinstance(container, dict):
            items = container.get("items") or []
        else:
            raise ApiError("Unexpected response shape: data is not an object", resp.status_code)
        if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
            raise ApiError("Unexpected response shape: items is not a list of objects",
                           resp.status_code)
        return [AttendanceItem.from_dict(item) for item in items]

    def clock_in(self, access_token):
        resp = self._request("POST", self._base + CLOCK_IN_PATH, access_token, json={})
        log.info("Clock-in API OK (HTTP %d)", resp.status_code)
        return self._json(resp)

    def clock_out(self, access_token):
        resp = self._request("POST", self._base + CLOCK_OUT_PATH, access_token, json={})
        log.info("Clock-out API OK (HTTP %d)", resp.status_code)
        return self._json(resp)

    def reset(self):
        """Drop pooled connections (they are usually dead after a suspend)."""
        self.http = http_client.reset_session(self.http)

    def close(self):
        self.http.close()
