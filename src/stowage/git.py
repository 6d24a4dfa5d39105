"""Git helpers used by the repo updater."""

from __future__ import annotations

import re
import shutil
import subprocess
from pathlib import Path

from stowage.logger import logger
from stowage.types import RemoteIdentity

_SUBPROCESS_TIMEOUT = 120.0

# https://github.com/owner/name(.git) and git@github.com:owner/name(.git)
_GITHUB_REMOTE_RE = re.compile(r"github\.com[:/]([^/\s]+)/([^/\s]+?)(?:\.git)?/?$")


class GitCommandError(Exception):
    """Raised when a git command fails."""

    def __init__(self, command: str, stderr: str, returncode: int) -> None:
        self.command = command
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(f"git {command} failed (exit {returncode}): {stderr}")


def git_available() -> bool:
    return shutil.which("git") is not None


def is_git_repo(path: Path) -> bool:
    """True when *path* carries git metadata (a .git dir, or a .git file for worktrees)."""
    return (path / ".git").exists()


def run_git(
    *args: str,
    cwd: Path,
    timeout: float = _SUBPROCESS_TIMEOUT,
) -> subprocess.CompletedProcess[str]:
    """Run a git command with standard timeout and error capture."""
    return subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        capture_output=True,
        text=True,
        timeout=timeout,
    )


def require_success(result: subprocess.CompletedProcess[str], command: str) -> str:
    """Assert that a git command succeeded, raising GitCommandError otherwise.

    Returns the stripped stdout on success.
    """
    if result.returncode != 0:
        raise GitCommandError(command, result.stderr.strip()[-500:], result.returncode)
    return result.stdout.strip()


def remote_url(repo: Path, remote: str = "origin") -> str | None:
    """Return the configured URL of *remote*, or None if it can't be read."""
    try:
        result = run_git("remote", "get-url", remote, cwd=repo)
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("remote_url failed", error=str(exc), cwd=str(repo))
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def parse_remote(url: str | None) -> RemoteIdentity | None:
    """Extract owner/name from a GitHub remote URL; None for any other host."""
    if not url:
        return None
    match = _GITHUB_REMOTE_RE.search(url.strip())
    if not match:
        return None
    return RemoteIdentity(owner=match.group(1), name=match.group(2))


def describe_head(repo: Path) -> str:
    """Return a human-readable ref for HEAD (tag, branch or short sha), or 'unknown'."""
    for args in (
        ("describe", "--tags", "--exact-match"),
        ("symbolic-ref", "--short", "HEAD"),
        ("rev-parse", "--short", "HEAD"),
    ):
        try:
            result = run_git(*args, cwd=repo)
        except (OSError, subprocess.SubprocessError):
            return "unknown"
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip()
    return "unknown"
