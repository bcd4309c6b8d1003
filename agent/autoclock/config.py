"""
Paths, logging setup, config load/save, safe_print.
"""

import os
import json
import sys
import logging
from pathlib import Path

from .constants import (
    DEFAULT_CLIENT_ID, TOKEN_PATH, HEARTBEAT_INTERVAL_SEC, GAP_THRESHOLD_FACTOR,
)


# ─── Paths ───────────────────────────────────────────────────────
# One data directory per user. AUTOCLOCK_HOME wins (tests, portable installs).
_FOLDER_NAME = "AutoClock"

if os.environ.get("AUTOCLOCK_HOME"):
    BASE_DIR = Path(os.environ["AUTOCLOCK_HOME"])
elif sys.platform == "win32":
    BASE_DIR = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming")) / _FOLDER_NAME
else:
    BASE_DIR = Path.home() / ".autoclock"

CONFIG_FILE = BASE_DIR / "config.json"
LOG_FILE = BASE_DIR / "agent.log"
STORE_DIR = BASE_DIR / "store"


class ConfigError(ValueError):
    """Raised when config.json is missing required values."""


# ─── Safe print (no crash when --noconsole) ──────────────────────

def safe_print(*args, **kwargs):
    try:
        print(*args, **kwargs)
    except Exception:
        pass


# ─── Logging ─────────────────────────────────────────────────────

log = logging.getLogger("autoclock")

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def setup_logging(level=logging.INFO):
    """Attach the file + console handlers. Safe to call more than once."""
    BASE_DIR.mkdir(parents=True, exist_ok=True)

    # Keep the log file under 1 MB between runs
    try:
        if LOG_FILE.exists() and LOG_FILE.stat().st_size > 1_000_000:
            LOG_FILE.write_text("")
    except OSError:
        pass

    if log.handlers:
        return log

    log.setLevel(level)

    file_handler = logging.FileHandler(str(LOG_FILE), encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    log.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    log.addHandler(console_handler)
    return log


# ─── Config Management ──────────────────────────────────────────

def load_config(path=None):
    """Load config from disk. Returns dict or None."""
    path = Path(path) if path else CONFIG_FILE
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError):
            return None
    return None


def save_config(config, path=None):
    """Save config dict to disk."""
    path = Path(path) if path else CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(config, f, indent=2)
    log.info("Config saved to %s", path)


def normalize_config(config):
    """
    Fill defaults and validate. Returns a new dict.
    Raises ConfigError when apiBaseUrl is missing or intervals are invalid.
    """
    if not config or not config.get("apiBaseUrl"):
        raise ConfigError("apiBaseUrl is required in config.json")

    cfg = dict(config)
    cfg["apiBaseUrl"] = cfg["apiBaseUrl"].rstrip("/")
    cfg.setdefault("tokenUrl", cfg["apiBaseUrl"] + TOKEN_PATH)
    cfg.setdefault("clientId", DEFAULT_CLIENT_ID)

    interval = int(cfg.get("heartbeatIntervalSec", HEARTBEAT_INTERVAL_SEC))
    if interval <= 0:
        raise ConfigError("heartbeatIntervalSec must be positive")
    cfg["heartbeatIntervalSec"] = interval

    threshold = int(cfg.get("gapThresholdSec", interval * GAP_THRESHOLD_FACTOR))
    if threshold <= interval:
        raise ConfigError("gapThresholdSec must be greater than heartbeatIntervalSec")
    cfg["gapThresholdSec"] = threshold
    return cfg
