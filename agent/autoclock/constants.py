"""
Constants, intervals, endpoints, storage keys and attendance markers.
"""

AGENT_VERSION = "1.2.0"

# ─── Work session ────────────────────────────────────────────────
DEFAULT_MIN_WORK_MINUTES = 550      # 9h10m — expected clock-out = clock-in + this
MAX_MIN_WORK_MINUTES = 24 * 60
OPERATION_HISTORY_SIZE = 20         # finished operations kept for get_state()

# ─── Heartbeat / gap detection ───────────────────────────────────
HEARTBEAT_INTERVAL_SEC = 60
GAP_THRESHOLD_FACTOR = 2            # gap > 2× interval → host was suspended

# ─── Network ─────────────────────────────────────────────────────
API_TIMEOUT = (10, 30)              # (connect, read) seconds
RETRY_TOTAL = 3
RETRY_BACKOFF_FACTOR = 1            # 1s, 2s, 4s between transport retries
RETRY_STATUS_FORCELIST = (429, 500, 502, 503, 504)

DEFAULT_CLIENT_ID = "EMAPTA-MYEMAPTAWEB"
TOKEN_PATH = "/auth/v1/auth/protocol/openid-connect/token"
ATTENDANCE_PATH = "/dtr/attendance"
CLOCK_IN_PATH = "/dtr/attendance/login"
CLOCK_OUT_PATH = "/dtr/attendance/logout"

# Body markers that mean "refresh the access token" (besides HTTP 401)
TOKEN_ERROR_MARKERS = ("invalid_token", "token_expired")

# ─── Remote attendance statuses ──────────────────────────────────
SKIP_STATUSES = frozenset({"Rest Day", "On leave"})

# ─── Credential store keys (fixed — always overwritten) ──────────
ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"
SCHEDULE_KEY = "user_schedule"
SESSION_KEY = "session_state"
LOG_KEY_PREFIX = "logs_"

# ─── Activity log ────────────────────────────────────────────────
LOG_MAX_ENTRIES_PER_MONTH = 1000
LOG_RETENTION_MONTHS = 6

# ─── Auto-restart ────────────────────────────────────────────────
RESTART_STABLE_AFTER_SEC = 120      # uptime that resets the crash counter
RESTART_STEP_SEC = 10               # 10s, 20s, 30s ... per rapid crash
RESTART_MAX_STEP_SEC = 60
RESTART_RAPID_CRASH_LIMIT = 10
RESTART_COOLDOWN_SEC = 120          # wait once the rapid-crash limit is hit
