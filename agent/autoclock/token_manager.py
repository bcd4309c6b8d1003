"""
Token Manager — the single path every authenticated remote call goes through.

  1. Try the saved access token.
  2. Only on an auth error (401 / invalid_token / token_expired): refresh once,
     overwrite both fixed storage keys, retry once.
  3. Anything else propagates untouched.

So a logical operation costs at most two remote attempts and one refresh,
however many transport-level retries the HTTP session makes underneath.
"""

import time

from .config import log
from .constants import ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY
from .errors import NoCredentials, RefreshFailed, TokenInvalid, AuthRejected
from .state import TokenPair
from . import events


class TokenManager:
    def __init__(self, client, store, emitter=None):
        self._client = client
        self._store = store
        self._emitter = emitter

    # ─── Stored tokens ───────────────────────────────────────

    def has_credentials(self):
        return bool(self._store.get(REFRESH_TOKEN_KEY) or self._store.get(ACCESS_TOKEN_KEY))

    def save_tokens(self, pair):
        """Overwrite both fixed keys. No merge, no versioning."""
        self._store.set(REFRESH_TOKEN_KEY, pair.refresh_token)
        self._store.set(ACCESS_TOKEN_KEY, pair.access_token)

    def save_initial_tokens(self, refresh_token, access_token=None):
        """
        Setup path. With only a refresh token, exchange it first so the pair
        we store is known-good. Returns the stored TokenPair.
        """
        refresh_token = (refresh_token or "").strip()
        if not refresh_token:
            raise NoCredentials("A refresh token is required")
        if access_token:
            pair = TokenPair(access_token=access_token, refresh_token=refresh_token)
            self.save_tokens(pair)
            log.info("Initial tokens saved")
            return pair
        pair = self._client.exchange_refresh_token(refresh_token)
        self.save_tokens(pair)
        log.info("Initial tokens exchanged and saved")
        return pair

    def clear_tokens(self):
        self._store.delete(ACCESS_TOKEN_KEY)
        self._store.delete(REFRESH_TOKEN_KEY)
        log.info("Stored tokens cleared")

    # ─── Refresh ─────────────────────────────────────────────

    def refresh_tokens(self):
        """Exchange the stored refresh token and persist the new pair."""
        refresh_token = self._store.get(REFRESH_TOKEN_KEY)
        if not refresh_token:
            raise NoCredentials("No refresh token found")

        started = time.monotonic()
        try:
            pair = self._client.exchange_refresh_token(refresh_token)
        except RefreshFailed as e:
            self._emit_refresh(False, started, str(e))
            raise
        self.save_tokens(pair)
        self._emit_refresh(True, started)
        log.info("Tokens refreshed and saved")
        return pair

    def _emit_refresh(self, success, started, error=None):
        if self._emitter is None:
            return
        duration_ms = int((time.monotonic() - started) * 1000)
        data = {"success": success, "duration_ms": duration_ms}
        if error:
            data["error"] = error
        self._emitter.emit(events.TOKEN_REFRESHED, **data)

    # ─── Universal call pattern ──────────────────────────────

    def call_with_token(self, operation, operation_name):
        """
        Run `operation(access_token)` under the refresh-once policy and
        return its result. Raises ApiError subclasses on failure.
        """
        access_token = self._store.get(ACCESS_TOKEN_KEY)
        if not access_token:
            raise NoCredentials("No access token found")

        try:
            result = operation(access_token)
            log.debug("%s succeeded with saved token", operation_name)
            return result
        except TokenInvalid as e:
            log.info("%s got token error (%s) — refreshing and retrying once", operation_name, e)

        pair = self.refresh_tokens()

        try:
            result = operation(pair.access_token)
        except TokenInvalid as e:
            log.warning("%s still rejected after refresh: %s", operation_name, e)
            raise AuthRejected(f"{operation_name} rejected after token refresh", e.status_code) from e
        log.info("%s retry succeeded", operation_name)
        return result
