"""
Credential store — one file per key under the agent data directory.

Holds the token pair, the schedule blob, the persisted session and the
monthly activity logs. Values are plain strings; encryption at rest is left
to the OS account (the data directory is per-user).
"""

import os
from pathlib import Path

from .config import log, STORE_DIR
from .errors import StorageError

_INVALID_KEY_CHARS = set('/\\<>:"|?*')
_EXTENSION = ".dat"


def validate_key(key):
    """Raise StorageError for keys that can't be used as a file name."""
    if not key:
        raise StorageError("Storage key cannot be empty")
    if len(key) > 100:
        raise StorageError("Storage key too long")
    if any(c in _INVALID_KEY_CHARS or ord(c) < 32 for c in key):
        raise StorageError(f"Storage key contains invalid characters: {key!r}")


class CredentialStore:
    """File-backed get/set/delete keyed by string."""

    def __init__(self, base_dir=None):
        self._dir = Path(base_dir) if base_dir else STORE_DIR
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self):
        return self._dir

    def _path(self, key):
        validate_key(key)
        return self._dir / f"{key}{_EXTENSION}"

    def get(self, key):
        """Return the stored string or None."""
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    def set(self, key, value):
        """Overwrite `key` with `value` (write-then-rename, so readers never see half a file)."""
        if value is None:
            raise StorageError(f"Refusing to store None for {key}")
        path = self._path(key)
        tmp = path.with_suffix(_EXTENSION + ".tmp")
        try:
            tmp.write_text(value, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}") from e

    def delete(self, key):
        """Remove `key`. Returns True if something was deleted."""
        path = self._path(key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e

    def list_keys(self):
        if not self._dir.exists():
            return []
        return sorted(p.name[: -len(_EXTENSION)] for p in self._dir.glob(f"*{_EXTENSION}"))

    def __repr__(self):
        return f"CredentialStore({str(self._dir)!r})"


def open_default_store():
    store = CredentialStore()
    log.info("Credential store at %s", store.directory)
    return store
