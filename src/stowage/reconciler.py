"""Decide per directory whether dependencies must be (re)installed.

Policy: install when the directory has never been installed, or when the
manifest fingerprint differs from the one recorded at the last successful
install. Anything else is skipped. A failed install is not recorded, so the
next start retries it.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from stowage.fingerprint import fingerprint
from stowage.install_state import InstallStore
from stowage.installer import InstallError, PackageInstaller
from stowage.logger import log_context, logger
from stowage.types import InstallRecord, StepResult

STEP = "dependencies"


class DependencyReconciler:
    def __init__(
        self,
        store: InstallStore,
        installer: PackageInstaller,
        *,
        manifest_name: str = "requirements.txt",
        enabled: bool = True,
    ) -> None:
        self.store = store
        self.installer = installer
        self.manifest_name = manifest_name
        self.enabled = enabled

    def needs_install(self, record: InstallRecord | None, current: str) -> bool:
        if record is None or not record.installed:
            return True
        return record.fingerprint != current

    def reconcile(self, directory: Path) -> StepResult:
        with log_context(directory=directory.name):
            if not self.enabled:
                return StepResult.skipped(STEP, "dependency install disabled")

            manifest = directory / self.manifest_name
            try:
                current = fingerprint(manifest)
            except OSError as exc:
                logger.warning("Cannot read manifest", manifest=str(manifest), err=str(exc))
                return StepResult.failed(STEP, f"cannot read manifest: {exc}")
            if current is None:
                return StepResult.skipped(STEP, "no manifest")

            record = self.store.get(directory)
            if not self.needs_install(record, current):
                logger.debug("Dependencies up to date", fingerprint=current[:12])
                return StepResult.skipped(STEP, "dependencies up to date", fingerprint=current)

            if record is None:
                logger.info("First run, installing dependencies", manifest=str(manifest))
            else:
                logger.info(
                    "Manifest changed, installing dependencies",
                    manifest=str(manifest),
                    from_fingerprint=(record.fingerprint or "untracked")[:12],
                    to_fingerprint=current[:12],
                )

            try:
                self.installer.install_manifest(manifest)
            except InstallError as exc:
                logger.warning("Dependency install failed; will retry next start", err=str(exc))
                return StepResult.failed(STEP, str(exc), fingerprint=current)

            try:
                self.store.put(directory, InstallRecord(installed=True, fingerprint=current))
            except OSError as exc:
                # Installed, but the next start will redo it
                logger.warning("Failed to record install state", err=str(exc))
                return StepResult.failed(STEP, f"install record not saved: {exc}")

            logger.info("Dependencies installed", fingerprint=current[:12])
            return StepResult.ok(STEP, "installed", fingerprint=current)

    def reconcile_all(self, directories: Iterable[Path]) -> dict[Path, StepResult]:
        """Reconcile each directory independently; one failure never stops the rest."""
        results: dict[Path, StepResult] = {}
        for directory in directories:
            try:
                results[directory] = self.reconcile(directory)
            except Exception as exc:
                logger.exception(
                    "Unexpected error reconciling dependencies", directory=directory.name
                )
                results[directory] = StepResult.failed(STEP, f"unexpected error: {exc}")
        return results
