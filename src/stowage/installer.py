"""Thin wrapper around the external package installer.

stowage never resolves dependencies itself; it only decides when to call
``pip install`` (or whatever ``installer.command`` points at) and checks the
exit code.
"""

from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path

from stowage.logger import logger
from stowage.types import StowageError


class InstallError(StowageError):
    """Raised when the installer exits non-zero or cannot be started."""


class PackageInstaller:
    def __init__(
        self,
        command: Sequence[str],
        *,
        upgrade_strategy: str = "only-if-needed",
        timeout: float | None = None,
    ) -> None:
        self.command = list(command)
        self.upgrade_strategy = upgrade_strategy
        self.timeout = timeout

    def _run(self, args: list[str], what: str) -> None:
        argv = [*self.command, "install", *args]
        logger.debug("Running installer", argv=argv)
        try:
            # Output goes straight to the container log so long installs show progress
            result = subprocess.run(argv, timeout=self.timeout)
        except FileNotFoundError as exc:
            raise InstallError(f"Installer not found: {self.command[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise InstallError(f"Installing {what} timed out after {self.timeout}s") from exc
        except OSError as exc:
            raise InstallError(f"Cannot run installer {self.command[0]!r}: {exc}") from exc
        if result.returncode != 0:
            raise InstallError(f"Installing {what} failed (exit {result.returncode})")

    def install_manifest(self, manifest: Path) -> None:
        self._run(
            ["--upgrade-strategy", self.upgrade_strategy, "-r", str(manifest)],
            what=str(manifest),
        )

    def install_wheels(self, wheels: Sequence[Path | str]) -> None:
        if not wheels:
            return
        self._run(["--no-cache-dir", *(str(w) for w in wheels)], what="extension wheels")


def find_wheels(directory: Path | None) -> list[Path]:
    """Wheels dropped into *directory*, sorted by name; empty if it doesn't exist."""
    if directory is None or not directory.is_dir():
        return []
    return sorted(directory.glob("*.whl"))
