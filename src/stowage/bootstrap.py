"""One reconciliation pass over the container's directory tree.

Runs strictly in order, one step at a time:

1. create the persistent directory skeleton
2. link each managed root into persistent storage
3. update the application repo and the named plugin repos
4. reconcile dependencies of every plugin directory with a manifest
5. install extension wheels
6. log and persist the per-directory report

Link failures abort the pass (they risk data loss). Everything after that is
isolated per directory: a broken plugin ends up as a ``failed`` entry in the
report and the pass moves on.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

from stowage.config import Settings, get_settings
from stowage.discovery import iter_managed_directories
from stowage.install_state import SidecarInstallStore
from stowage.installer import InstallError, PackageInstaller, find_wheels
from stowage.linker import MigrationError, reconcile_link
from stowage.logger import logger
from stowage.reconciler import DependencyReconciler
from stowage.repo_updater import RepoUpdater
from stowage.types import BootstrapReport, StepResult

EXTENSIONS_ENTRY = "extensions"


def build_installer(settings: Settings) -> PackageInstaller:
    return PackageInstaller(
        settings.installer.command,
        upgrade_strategy=settings.installer.upgrade_strategy,
        timeout=settings.installer.timeout_seconds,
    )


def build_reconciler(settings: Settings, installer: PackageInstaller) -> DependencyReconciler:
    return DependencyReconciler(
        SidecarInstallStore(settings.installer.marker_name),
        installer,
        manifest_name=settings.installer.manifest_name,
        enabled=settings.auto_install_dependencies,
    )


def build_updater(settings: Settings, reconciler: DependencyReconciler) -> RepoUpdater:
    return RepoUpdater(
        remote=settings.git.remote,
        branches=settings.git.branches,
        release_api=settings.git.release_api,
        release_branch_prefix=settings.git.release_branch_prefix,
        git_timeout=settings.git.timeout_seconds,
        http_timeout=settings.git.http_timeout_seconds,
        reconciler=reconciler,
    )


def prepare_skeleton(settings: Settings) -> None:
    dirs = [m.persistent_path for m in settings.managed_paths()]
    dirs.append(settings.state_dir)
    if settings.paths.extensions_dir is not None:
        dirs.append(settings.paths.extensions_dir)
    for path in dirs:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise MigrationError(f"Cannot create directory {path}: {exc}") from exc


def link_managed_roots(settings: Settings, report: BootstrapReport) -> None:
    """Converge every managed root. MigrationError propagates and ends the pass."""
    for managed in settings.managed_paths():
        report.add(managed.name, managed.logical_path, reconcile_link(managed))


async def update_repositories(
    settings: Settings, updater: RepoUpdater, report: BootstrapReport
) -> set[Path]:
    """Update the app repo and named plugin repos.

    Returns the directories whose dependencies were already reconciled through
    the updater hand-off.
    """
    reconciled: set[Path] = set()
    targets = [(settings.paths.app_base.name, settings.paths.app_base, settings.auto_update_repos)]
    targets.extend(
        (d.name, d.path, settings.auto_update_plugins)
        for d in iter_managed_directories(settings.plugins_dir, settings.named_plugins)
        if d.named
    )

    for name, path, enabled in targets:
        try:
            steps = await updater.update(name, path, enabled=enabled)
        except Exception as exc:
            logger.exception("Unexpected error updating repository", directory=name)
            steps = [StepResult.failed("update", f"unexpected error: {exc}")]
        for step in steps:
            report.add(name, path, step)
            if step.step == "dependencies":
                reconciled.add(path)
    return reconciled


def reconcile_plugins(
    settings: Settings,
    reconciler: DependencyReconciler,
    report: BootstrapReport,
    already_reconciled: set[Path] | None = None,
) -> None:
    already_reconciled = already_reconciled or set()
    pending = [
        d.path
        for d in iter_managed_directories(settings.plugins_dir, settings.named_plugins)
        if d.path not in already_reconciled
    ]
    for path, result in reconciler.reconcile_all(pending).items():
        report.add(path.name, path, result)


def install_extensions(
    settings: Settings, installer: PackageInstaller, report: BootstrapReport
) -> None:
    wheels: list[Path | str] = [*settings.installer.bundled_wheels]
    wheels.extend(find_wheels(settings.paths.extensions_dir))
    location = settings.paths.extensions_dir or settings.state_dir

    if not settings.auto_install_dependencies:
        report.add(
            EXTENSIONS_ENTRY,
            location,
            StepResult.skipped("extensions", "dependency install disabled"),
        )
        return
    if not wheels:
        logger.info("No extension wheels found", directory=str(settings.paths.extensions_dir))
        return

    logger.info("Installing extension wheels", wheels=[str(w) for w in wheels])
    try:
        installer.install_wheels(wheels)
    except InstallError as exc:
        logger.warning("Extension install failed", err=str(exc))
        report.add(EXTENSIONS_ENTRY, location, StepResult.failed("extensions", str(exc)))
        return
    report.add(
        EXTENSIONS_ENTRY, location, StepResult.ok("extensions", "installed", count=len(wheels))
    )


def log_report(report: BootstrapReport) -> None:
    for entry in report.directories.values():
        for step in entry.steps:
            log = logger.warning if step.status == "failed" else logger.info
            log(
                "Bootstrap step",
                directory=entry.name,
                step=step.step,
                status=step.status,
                reason=step.reason,
            )
    failures = report.failures
    if failures:
        logger.warning(
            "Bootstrap finished with failures; container is running on last-known-good content",
            failed=[d.name for d in failures],
        )
    else:
        logger.info("Bootstrap finished", directories=len(report.directories))


def write_report(report: BootstrapReport, path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(report.to_dict(), indent=2, default=str))
    except OSError as exc:
        logger.warning("Failed to write bootstrap report", path=str(path), err=str(exc))


async def run_bootstrap(settings: Settings | None = None) -> BootstrapReport:
    s = settings or get_settings()
    report = BootstrapReport()

    prepare_skeleton(s)
    link_managed_roots(s, report)

    installer = build_installer(s)
    reconciler = build_reconciler(s, installer)
    updater = build_updater(s, reconciler)

    reconciled = await update_repositories(s, updater, report)
    await asyncio.to_thread(reconcile_plugins, s, reconciler, report, reconciled)
    await asyncio.to_thread(install_extensions, s, installer, report)

    report.finish()
    log_report(report)
    write_report(report, s.report_path)
    return report
