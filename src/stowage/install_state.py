"""Persisted install records, keyed by managed directory.

Records live next to what they describe: one JSON marker file inside each
managed directory (``.deps_installed`` by default), so a plugin directory
carries its install state with it when the persistent volume moves.

The old shell entrypoint touched an empty marker after installing. Such a file
is read as "installed, fingerprint unknown", which means the next pass sees a
fingerprint mismatch and reinstalls exactly once to start tracking content.
"""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from stowage.logger import logger
from stowage.types import InstallRecord


@runtime_checkable
class InstallStore(Protocol):
    """Key-value store of install records, indexed by directory."""

    def get(self, directory: Path) -> InstallRecord | None: ...

    def put(self, directory: Path, record: InstallRecord) -> None: ...


class SidecarInstallStore:
    def __init__(self, marker_name: str = ".deps_installed") -> None:
        self.marker_name = marker_name

    def marker_path(self, directory: Path) -> Path:
        return directory / self.marker_name

    def get(self, directory: Path) -> InstallRecord | None:
        path = self.marker_path(directory)
        if not path.is_file():
            return None
        try:
            text = path.read_text().strip()
        except OSError as exc:
            # Present but unreadable still counts as "installed at least once"
            logger.warning("Failed to read install marker", path=str(path), err=str(exc))
            return InstallRecord()
        if not text:
            return InstallRecord()
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Install marker is not JSON; treating as legacy", path=str(path))
            return InstallRecord()
        if not isinstance(data, dict):
            return InstallRecord()
        return InstallRecord.from_dict(data)

    def put(self, directory: Path, record: InstallRecord) -> None:
        if record.installed_at is None:
            record.installed_at = datetime.now(UTC).isoformat()
        path = self.marker_path(directory)
        tmp = path.with_name(f"{path.name}.tmp")
        tmp.write_text(json.dumps(record.to_dict(), indent=2, sort_keys=True))
        os.replace(tmp, path)
