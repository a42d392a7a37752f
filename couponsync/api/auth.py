"""Control API key: where it comes from and how requests are checked against it.

The key is taken from ``COUPONSYNC_API_KEY`` when set, otherwise from
``<data_dir>/config/.api_key``. A missing or empty key file gets a fresh
random key written to it (mode 0600).
"""

from __future__ import annotations

import hashlib
import logging
import os
import secrets
from pathlib import Path
from typing import Mapping, Optional

logger = logging.getLogger("couponsync.api.auth")

API_KEY_HEADER = "X-API-Key"
API_KEY_ENV = "COUPONSYNC_API_KEY"
KEY_FILE_SUBPATH = Path("config") / ".api_key"


def hash_key(key: str) -> str:
    """Short one-way fingerprint of a key, safe to log."""
    return hashlib.sha256(key.encode()).hexdigest()[:16]


def read_key_file(path: Path) -> Optional[str]:
    try:
        key = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("Unable to read API key at %s: %s", path, exc)
        return None
    return key or None


def write_key_file(path: Path, key: str) -> bool:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(key, encoding="utf-8")
        path.chmod(0o600)
    except OSError as exc:
        logger.warning("Unable to persist API key to %s: %s", path, exc)
        return False
    return True


class APIKeyManager:
    """Resolves the control API key once and validates request headers against it."""

    def __init__(self, data_dir: Path, environ: Optional[Mapping[str, str]] = None):
        self.data_dir = data_dir
        self._environ = os.environ if environ is None else environ
        self._key: Optional[str] = None
        self.source: Optional[str] = None

    @property
    def key_file_path(self) -> Path:
        return self.data_dir / KEY_FILE_SUBPATH

    def get_or_generate_key(self) -> str:
        if self._key is not None:
            return self._key

        pinned = (self._environ.get(API_KEY_ENV) or "").strip()
        if pinned:
            self._key, self.source = pinned, "env"
        else:
            stored = read_key_file(self.key_file_path)
            if stored is not None:
                self._key, self.source = stored, "file"
            else:
                return self.regenerate_key()

        logger.debug("Using API key %s from %s", hash_key(self._key), self.source)
        return self._key

    def validate_key(self, provided_key: str) -> bool:
        if not provided_key:
            return False
        return secrets.compare_digest(provided_key, self.get_or_generate_key())

    def regenerate_key(self) -> str:
        """Replace the key with a new random one and write it to the key file."""
        key = secrets.token_hex(32)
        if not write_key_file(self.key_file_path, key):
            logger.warning("API key %s lives in memory only for this process", hash_key(key))
        self._key, self.source = key, "generated"
        logger.info("Generated new API key %s", hash_key(key))
        return key

    def describe(self) -> dict:
        key = self.get_or_generate_key()
        return {"source": self.source, "fingerprint": hash_key(key), "header": API_KEY_HEADER}


__all__ = [
    "API_KEY_ENV",
    "API_KEY_HEADER",
    "APIKeyManager",
    "hash_key",
    "read_key_file",
    "write_key_file",
]
