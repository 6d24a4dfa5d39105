"""Enumerate the plugin directories a bootstrap pass manages.

The set is re-read from disk on every pass: configured plugins first, in
config order, then anything else a user dropped into the plugin root, sorted
by name. Nothing is cached between passes.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from pathlib import Path

from stowage.types import ManagedDirectory

_IGNORED = frozenset({"__pycache__"})


def _candidate(path: Path) -> bool:
    return path.is_dir() and not path.name.startswith(".") and path.name not in _IGNORED


def iter_managed_directories(
    plugins_dir: Path, named: Sequence[str] = ()
) -> Iterator[ManagedDirectory]:
    seen: set[str] = set()
    for name in named:
        path = plugins_dir / name
        if name in seen or not _candidate(path):
            continue
        seen.add(name)
        yield ManagedDirectory(name=name, path=path, named=True)

    if not plugins_dir.is_dir():
        return
    for path in sorted(plugins_dir.iterdir(), key=lambda p: p.name):
        if path.name in seen or not _candidate(path):
            continue
        seen.add(path.name)
        yield ManagedDirectory(name=path.name, path=path, named=False)
