"""
First-run enrollment on the console: API URL into config.json, refresh token
into the credential store.
"""

import getpass

from .config import log, safe_print, save_config, normalize_config, ConfigError
from .errors import ApiError


def _ask(prompt, secret=False, input_func=input):
    try:
        value = getpass.getpass(prompt) if secret else input_func(prompt)
    except EOFError:
        return ""
    return value.strip()


# ─── Config ──────────────────────────────────────────────────────

def enroll_config(input_func=input, path=None):
    """Ask for the API base URL and save config.json. Returns the normalized config or None."""
    safe_print("First run — enter the attendance API base URL")
    safe_print("  e.g. https://api.example.com/time-and-attendance/ta/v1")
    for _ in range(3):
        url = _ask("API base URL: ", input_func=input_func)
        if not url:
            continue
        if not url.startswith(("http://", "https://")):
            safe_print("URL must start with http:// or https://")
            continue
        try:
            config = normalize_config({"apiBaseUrl": url})
        except ConfigError as e:
            safe_print(str(e))
            continue
        save_config({"apiBaseUrl": config["apiBaseUrl"]}, path)
        return config
    log.error("Enrollment aborted — no API URL entered")
    return None


# ─── Tokens ──────────────────────────────────────────────────────

def enroll_tokens(token_manager, input_func=None):
    """
    Ask for a refresh token and exchange it once. Returns True when a working
    pair is stored. `input_func` replaces the hidden prompt (tests).
    """
    safe_print("No credentials stored — paste a refresh token from the web portal")
    for _ in range(3):
        if input_func is None:
            token = _ask("Refresh token: ", secret=True)
        else:
            token = _ask("Refresh token: ", input_func=input_func)
        if not token:
            continue
        try:
            token_manager.save_initial_tokens(token)
        except ApiError as e:
            log.warning("Token enrollment failed: %s", e)
            safe_print(f"Could not use that token: {e}")
            continue
        safe_print("Credentials saved.")
        return True
    log.error("Enrollment aborted — no usable refresh token")
    return False
