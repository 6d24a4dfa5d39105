"""Entry point for `python -m stowage` / the `stowage` console script.

Subcommands:
    stowage run [-- CMD ...]   Reconcile, start services, exec CMD or the front-end (default)
    stowage reconcile          Reconcile only; exit non-zero if any directory failed
    stowage status             Show the recorded install state of each plugin directory

Typical container use::

    ENTRYPOINT ["stowage", "run", "--"]
"""

from __future__ import annotations

import argparse
import asyncio
import sys


def _strip_separator(command: list[str]) -> list[str]:
    if command and command[0] == "--":
        return command[1:]
    return command


def _run(command: list[str]) -> None:
    from stowage.bootstrap import run_bootstrap
    from stowage.config import get_settings
    from stowage.services import hand_off

    s = get_settings()
    asyncio.run(run_bootstrap(s))
    hand_off(s, command or None)


def _reconcile() -> None:
    from stowage.bootstrap import run_bootstrap

    report = asyncio.run(run_bootstrap())
    sys.exit(1 if report.failures else 0)


def _status() -> None:
    from stowage.config import get_settings
    from stowage.discovery import iter_managed_directories
    from stowage.fingerprint import fingerprint
    from stowage.install_state import SidecarInstallStore

    s = get_settings()
    store = SidecarInstallStore(s.installer.marker_name)
    directories = list(iter_managed_directories(s.plugins_dir, s.named_plugins))
    if not directories:
        print(f"No plugin directories under {s.plugins_dir}")
        return

    width = max(len(d.name) for d in directories)
    for d in directories:
        current = fingerprint(d.path / s.installer.manifest_name)
        record = store.get(d.path)
        if current is None:
            state = "no manifest"
        elif record is None:
            state = "never installed"
        elif record.fingerprint == current:
            state = f"up to date ({current[:12]})"
        else:
            state = "manifest changed since last install"
        kind = "named" if d.named else "added"
        print(f"{d.name:<{width}}  {kind:<5}  {state}")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="stowage",
        description="Container startup reconciler",
    )
    sub = parser.add_subparsers(dest="command")
    run = sub.add_parser("run", help="Reconcile, start services and hand off (default)")
    run.add_argument(
        "argv",
        nargs=argparse.REMAINDER,
        help="Command to exec instead of the default front-end",
    )
    sub.add_parser("reconcile", help="Run the reconciliation pass only")
    sub.add_parser("status", help="Show plugin install state")

    args = parser.parse_args()

    match args.command:
        case "reconcile":
            _reconcile()
        case "status":
            _status()
        case "run":
            _run(_strip_separator(list(args.argv)))
        case _:
            _run([])


if __name__ == "__main__":
    main()
