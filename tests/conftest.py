"""Shared test fixtures for stowage."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset({"plugins_dir", "state_dir", "report_path"})


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (paths, installer, etc.) and cached property
    overrides (plugins_dir, state_dir, report_path).

    Usage::

        s = make_settings(paths=PathsConfig(app_base=tmp_path / "app"))
        s = make_settings(auto_update_repos=False, services={})
    """
    from stowage.config import (
        FrontendConfig,
        GitConfig,
        InstallerConfig,
        Settings,
        SupervisorConfig,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "git": GitConfig(),
        "installer": InstallerConfig(command=["pip"]),
        "supervisor": SupervisorConfig(),
        "frontend": FrontendConfig(),
        "services": {},
        "named_plugins": [],
        "auto_update_repos": True,
        "auto_update_plugins": True,
        "auto_install_dependencies": True,
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def make_layout_settings(root: Path, **overrides):
    """Settings whose every path lives under *root* (app/, workspace/, system/)."""
    from stowage.config import PathsConfig

    paths = PathsConfig(
        app_base=root / "app",
        workspace_base=root / "workspace",
        system_base=root / "system",
        extensions_dir=root / "workspace" / "extensions",
    )
    return make_settings(paths=paths, **overrides)


def git(cwd: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        capture_output=True,
        text=True,
        check=True,
    )


def commit_file(repo: Path, name: str, content: str, message: str) -> str:
    """Write *name*, commit it, and return the new HEAD sha."""
    (repo / name).write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-m", message)
    return git(repo, "rev-parse", "HEAD").stdout.strip()


def make_origin(tmp_path: Path) -> tuple[Path, Path]:
    """Create a bare 'origin' with one commit on main, plus a clone used to push to it.

    Returns (origin, publisher).
    """
    origin = tmp_path / "origin.git"
    origin.mkdir()
    git(origin, "init", "--bare", "--initial-branch=main")

    publisher = tmp_path / "publisher"
    git(tmp_path, "clone", str(origin), str(publisher))
    git(publisher, "config", "user.email", "test@test.com")
    git(publisher, "config", "user.name", "Test")
    commit_file(publisher, "requirements.txt", "x==1.0\n", "initial commit")
    git(publisher, "push", "origin", "main")
    return origin, publisher


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True, scope="session")
def _clean_git_env():
    """Strip git env vars that pre-commit leaks during its stash cycle.

    Tests that create temporary git repos would otherwise inherit
    GIT_INDEX_FILE / GIT_DIR / GIT_WORK_TREE and operate on the wrong repo.
    """
    import os

    for var in ("GIT_INDEX_FILE", "GIT_DIR", "GIT_WORK_TREE"):
        os.environ.pop(var, None)


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` so no config file, .env, or environment is read.
    Tests that pass settings explicitly are unaffected.
    """
    safe = make_settings()
    monkeypatch.setattr("stowage.config._settings", safe)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


class FakeInstaller:
    """Records manifest installs; fails for directories listed in *failing*."""

    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.manifests: list[Path] = []
        self.wheel_batches: list[list[str]] = []

    def install_manifest(self, manifest: Path) -> None:
        from stowage.installer import InstallError

        self.manifests.append(manifest)
        if manifest.parent.name in self.failing:
            raise InstallError(f"Installing {manifest} failed (exit 1)")

    def install_wheels(self, wheels) -> None:
        self.wheel_batches.append([str(w) for w in wheels])


@pytest.fixture
def fake_installer():
    return FakeInstaller()
