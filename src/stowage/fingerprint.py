"""Content fingerprints for dependency manifests."""

from __future__ import annotations

import hashlib
from pathlib import Path

_CHUNK_SIZE = 64 * 1024


def fingerprint(manifest: Path) -> str | None:
    """Return the sha256 hex digest of *manifest*, or None if it doesn't exist.

    A missing manifest means "nothing to install", not an error.
    """
    if not manifest.is_file():
        return None
    h = hashlib.sha256()
    with manifest.open("rb") as f:
        while chunk := f.read(_CHUNK_SIZE):
            h.update(chunk)
    return h.hexdigest()
