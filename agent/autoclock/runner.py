"""
Entry point and auto-restart wrapper.
"""

import sys
import time

from .constants import (
    AGENT_VERSION, RESTART_STABLE_AFTER_SEC, RESTART_STEP_SEC, RESTART_MAX_STEP_SEC,
    RESTART_RAPID_CRASH_LIMIT, RESTART_COOLDOWN_SEC,
)
from .config import log, safe_print, load_config, normalize_config, setup_logging, ConfigError
from .enrollment import enroll_config, enroll_tokens
from .app import AgentApp


def _resolve_config():
    raw = load_config()
    if not raw:
        return enroll_config()
    try:
        config = normalize_config(raw)
    except ConfigError as e:
        log.error("Invalid config.json: %s", e)
        return None
    log.info("Loaded config for %s", config["apiBaseUrl"])
    return config


def main():
    """Primary agent entry point."""
    safe_print("AutoClock Attendance Agent v" + AGENT_VERSION)
    safe_print()
    setup_logging()

    config = _resolve_config()
    if not config:
        sys.exit(1)

    app = AgentApp(config)
    if not app.token_manager.has_credentials() and not enroll_tokens(app.token_manager):
        log.warning("Starting without credentials — automatic clock-in paused")
    app.run()


def restart_delay(crash_count):
    """Seconds to wait before restart number `crash_count`."""
    if crash_count >= RESTART_RAPID_CRASH_LIMIT:
        return RESTART_COOLDOWN_SEC
    return min(RESTART_STEP_SEC * crash_count, RESTART_MAX_STEP_SEC)


def run_with_auto_restart(entry=main, sleep=time.sleep):
    """
    Run `entry` forever, restarting after crashes. A run that lasted longer
    than RESTART_STABLE_AFTER_SEC resets the crash counter (not a boot loop).
    """
    crash_count = 0
    while True:
        started = time.monotonic()
        try:
            entry()
            return
        except KeyboardInterrupt:
            safe_print("\nAgent stopped by user.")
            return
        except SystemExit as e:
            if e.code:
                log.error("Agent exited with status %s", e.code)
            raise
        except Exception as e:
            uptime = time.monotonic() - started
            log.error("Agent crashed after %.0fs: %s", uptime, e, exc_info=True)
            crash_count = 1 if uptime > RESTART_STABLE_AFTER_SEC else crash_count + 1
            wait = restart_delay(crash_count)
            if crash_count >= RESTART_RAPID_CRASH_LIMIT:
                log.warning("Many rapid crashes (%d). Waiting %ds...", crash_count, wait)
            log.info("Restarting in %ds (crash %d)...", wait, crash_count)
            sleep(wait)
