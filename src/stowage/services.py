"""Hand-off to the container's long-running processes.

After reconciliation the background services are started (either directly,
each with its own log file, or by launching the process supervisor), and the
bootstrap process replaces itself with the foreground command.

A service that can't be set up or started is logged and left out; the
foreground front-end still starts so the container stays reachable.
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import NoReturn

from stowage.config import FrontendConfig, ServiceConfig, Settings, SupervisorConfig
from stowage.logger import logger
from stowage.types import StowageError


class ServiceStartError(StowageError):
    """Raised when a service's setup or launch fails."""


def run_setup_commands(name: str, service: ServiceConfig) -> None:
    for setup in service.setup:
        if setup.unless_exists and Path(setup.unless_exists).exists():
            continue
        try:
            result = subprocess.run(setup.command, capture_output=True, text=True)
        except OSError as exc:
            raise ServiceStartError(
                f"{name}: setup command {setup.command[0]!r} failed: {exc}"
            ) from exc
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise ServiceStartError(
                f"{name}: setup {' '.join(setup.command)} exited {result.returncode}: "
                f"{stderr[-500:]}"
            )


def start_service(name: str, service: ServiceConfig) -> subprocess.Popen[bytes]:
    run_setup_commands(name, service)

    log_handle = None
    if service.log_file:
        log_path = Path(service.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_handle = log_path.open("wb")
    try:
        proc = subprocess.Popen(
            service.command,
            cwd=service.cwd,
            stdin=subprocess.DEVNULL,
            stdout=log_handle,
            stderr=subprocess.STDOUT if log_handle else None,
            start_new_session=True,
        )
    except OSError as exc:
        raise ServiceStartError(f"{name}: cannot start {service.command[0]!r}: {exc}") from exc
    finally:
        # The child holds its own descriptor
        if log_handle is not None:
            log_handle.close()

    logger.info(
        "Service started",
        service=name,
        pid=proc.pid,
        port=service.port,
        log_file=service.log_file,
    )
    return proc


def start_services(services: Mapping[str, ServiceConfig]) -> dict[str, subprocess.Popen[bytes]]:
    """Start every enabled service; failures are logged and skipped."""
    started: dict[str, subprocess.Popen[bytes]] = {}
    for name, service in services.items():
        if not service.enabled:
            continue
        logger.info("Starting service", service=name)
        try:
            started[name] = start_service(name, service)
        except (ServiceStartError, OSError) as exc:
            logger.error("Service failed to start", service=name, err=str(exc))
    return started


def start_supervisor(
    supervisor: SupervisorConfig, services: Mapping[str, ServiceConfig]
) -> bool:
    """Run service setup commands, then launch the supervisor daemon."""
    for name, service in services.items():
        if not service.enabled:
            continue
        try:
            run_setup_commands(name, service)
        except ServiceStartError as exc:
            logger.error("Service setup failed", service=name, err=str(exc))

    logger.info("Starting supervisor", command=supervisor.command)
    try:
        result = subprocess.run(supervisor.command)
    except OSError as exc:
        logger.error("Supervisor failed to start", err=str(exc))
        return False
    if result.returncode != 0:
        logger.error("Supervisor exited with an error", returncode=result.returncode)
        return False
    return True


def run_diagnostics(commands: Sequence[Sequence[str]]) -> None:
    """Log the output of each diagnostic command. Never raises."""
    for command in commands:
        try:
            result = subprocess.run(
                list(command), capture_output=True, text=True, timeout=60
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.info("Diagnostic unavailable", command=" ".join(command), err=str(exc))
            continue
        output = ((result.stdout or "") + (result.stderr or "")).strip()
        logger.info(
            "Diagnostic",
            command=" ".join(command),
            returncode=result.returncode,
            output=output[-2000:],
        )


def foreground_argv(frontend: FrontendConfig, command: Sequence[str] | None = None) -> list[str]:
    """The argv to exec: the caller's command if given, else the front-end, plus prefix."""
    base = list(command) if command else list(frontend.command)
    return [*frontend.exec_prefix, *base]


def exec_foreground(argv: Sequence[str]) -> NoReturn:
    logger.info("Handing off to foreground process", argv=list(argv))
    for handler in logging.getLogger().handlers:
        handler.flush()
    os.execvp(argv[0], list(argv))


def hand_off(settings: Settings, command: Sequence[str] | None = None) -> NoReturn:
    if settings.supervisor.enabled:
        start_supervisor(settings.supervisor, settings.services)
    else:
        start_services(settings.services)
    run_diagnostics(settings.frontend.diagnostics)
    exec_foreground(foreground_argv(settings.frontend, command))
