"""
Remote-call error taxonomy.

Everything the Attendance Client or Token Manager can fail with is an
ApiError subclass. The Scheduler catches ApiError at its boundary, so none
of these ever reach the heartbeat thread, timer threads or manual callers.
"""


class ApiError(Exception):
    """A remote call failed. Base class — also used for plain 4xx rejections."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self):
        if self.status_code is not None:
            return f"{self.message} (HTTP {self.status_code})"
        return self.message


class NoCredentials(ApiError):
    """No stored access/refresh token. Needs user setup."""


class RefreshFailed(ApiError):
    """The refresh-token exchange was rejected or could not be completed."""


class ApiUnavailable(ApiError):
    """Network error, timeout, or 5xx/429 after transport retries. Transient."""


class TokenInvalid(ApiError):
    """401 or invalid_token/token_expired marker. Triggers one refresh."""


class AuthRejected(ApiError):
    """Still rejected as unauthenticated after a successful refresh."""


class StorageError(Exception):
    """Credential store read/write failed or a key is invalid."""
