"""Redirect ephemeral application directories into persistent storage.

Each managed root (``input``, ``output``, ...) inside the application checkout
is replaced by a symlink into the persistent workspace. On the first start the
directory still holds whatever the image shipped with; that content is copied
across without overwriting anything already in persistent storage, and only
then is the original removed.

Any filesystem error here is fatal. Once the copy has failed the source tree
is still intact, and the link is never created over a half-migrated tree.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path

from stowage.logger import logger
from stowage.types import ManagedPath, StepResult, StowageError


class MigrationError(StowageError):
    """Raised when a directory cannot be migrated without risking data loss."""


def _copy_no_clobber(src: Path, dst: Path) -> int:
    """Copy the tree under *src* into *dst*, keeping every existing entry in *dst*.

    Symlinks are recreated as symlinks. Returns the number of entries copied.
    """
    copied = 0
    for dirpath, dirnames, filenames in os.walk(src):
        rel = Path(dirpath).relative_to(src)
        target_dir = dst / rel
        target_dir.mkdir(parents=True, exist_ok=True)

        # os.walk doesn't descend into symlinked dirs; treat them like files
        linked_dirs = [d for d in dirnames if (Path(dirpath) / d).is_symlink()]
        for name in [*filenames, *linked_dirs]:
            source = Path(dirpath) / name
            target = target_dir / name
            if target.exists() or target.is_symlink():
                continue
            if source.is_symlink():
                os.symlink(os.readlink(source), target)
            else:
                shutil.copy2(source, target)
            copied += 1
        dirnames[:] = [d for d in dirnames if d not in linked_dirs]
    return copied


def _point_symlink(link: Path, target: Path) -> None:
    """Atomically (re)point *link* at *target*."""
    tmp = link.with_name(f".{link.name}.stowage-link")
    if tmp.is_symlink() or tmp.exists():
        tmp.unlink()
    os.symlink(target, tmp)
    os.replace(tmp, link)


def reconcile_link(managed: ManagedPath) -> StepResult:
    """Ensure *managed.logical_path* is a symlink to *managed.persistent_path*.

    Idempotent: an existing symlink is left alone.
    """
    src = managed.logical_path
    dst = managed.persistent_path

    try:
        dst.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise MigrationError(f"Cannot create persistent directory {dst}: {exc}") from exc

    if src.is_symlink():
        return StepResult.skipped("link", "already linked", target=os.readlink(src))

    if src.exists() and not src.is_dir():
        raise MigrationError(f"{src} exists and is not a directory; refusing to replace it")

    migrated = 0
    if src.is_dir():
        if any(src.iterdir()):
            logger.info("Migrating existing data", src=str(src), dst=str(dst))
            try:
                migrated = _copy_no_clobber(src, dst)
            except OSError as exc:
                raise MigrationError(
                    f"Copy from {src} to {dst} failed, source left in place: {exc}"
                ) from exc
            try:
                shutil.rmtree(src)
            except OSError as exc:
                raise MigrationError(f"Copied {src} but could not remove it: {exc}") from exc
        else:
            try:
                src.rmdir()
            except OSError as exc:
                raise MigrationError(f"Cannot remove empty directory {src}: {exc}") from exc

    try:
        src.parent.mkdir(parents=True, exist_ok=True)
        _point_symlink(src, dst)
    except OSError as exc:
        raise MigrationError(f"Cannot link {src} -> {dst}: {exc}") from exc

    logger.info("Linked directory", src=str(src), dst=str(dst), migrated=migrated)
    return StepResult.ok("link", "linked", target=str(dst), migrated=migrated)
