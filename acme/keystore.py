"""
Optional on-disk cache for the ACME account key.

A run works without it (a fresh account key is generated and registered each
time).  When a path is configured the key is reused, so the authority sees one
account across scheduled runs.

The key file is written atomically:
  1. Write to a temporary file in the same directory
  2. fsync
  3. os.replace over the destination (atomic on POSIX filesystems)
so a crash mid-write never leaves a truncated PEM behind.
"""
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from josepy.jwk import JWKRSA

from acme import jws as jwslib

logger = logging.getLogger(__name__)


class AccountKeyStore:
    """Loads or creates the account key.  ``path=None`` means ephemeral keys."""

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = Path(path) if path else None

    def load(self) -> tuple[JWKRSA, bool]:
        """Return (account_key, was_cached)."""
        if self.path is not None and self.path.exists():
            logger.info("Loading cached ACME account key from %s", self.path)
            return jwslib.account_key_from_pem(self.path.read_bytes()), True

        key = jwslib.generate_account_key()
        if self.path is not None:
            logger.info("No account key at %s — generating and caching a new one", self.path)
            atomic_write_bytes(self.path, jwslib.account_key_to_pem(key), mode=0o600)
        else:
            logger.info("Using an ephemeral ACME account key for this run")
        return key, False


def atomic_write_bytes(path: Path, content: bytes, mode: int = 0o600) -> None:
    """Atomically write *content* to *path* with fsync and the given file mode."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise
