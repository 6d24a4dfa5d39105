"""Advance git-backed directories to their latest published release.

Order of preference for a repository whose remote is on GitHub:

1. the tag of the latest published release (fetch tags, check it out);
2. a fast-forward-only pull of the primary branch, then the alternate.

Repositories on any other host go straight to step 2. Every git and network
step is best-effort: a failure is logged and the next fallback runs, and the
worst outcome is a repository left at its current ref. Nothing here raises
for a git or network problem, so being offline never blocks startup.

After the update attempt the repository is handed to the dependency
reconciler, since a new ref often comes with a new requirements file.
"""

from __future__ import annotations

import asyncio
import subprocess
from collections.abc import Sequence
from pathlib import Path

from stowage.git import (
    GitCommandError,
    describe_head,
    git_available,
    is_git_repo,
    parse_remote,
    remote_url,
    require_success,
    run_git,
)
from stowage.logger import log_context, logger
from stowage.reconciler import DependencyReconciler
from stowage.releases import latest_release_tag
from stowage.types import ManagedRepo, StepResult

STEP = "update"


class RepoUpdater:
    def __init__(
        self,
        *,
        remote: str = "origin",
        branches: Sequence[str] = ("master", "main"),
        release_api: str = "https://api.github.com",
        release_branch_prefix: str = "release-",
        git_timeout: float = 120.0,
        http_timeout: float = 15.0,
        reconciler: DependencyReconciler | None = None,
    ) -> None:
        self.remote = remote
        self.branches = list(branches)
        self.release_api = release_api
        self.release_branch_prefix = release_branch_prefix
        self.git_timeout = git_timeout
        self.http_timeout = http_timeout
        self.reconciler = reconciler

    async def _git(self, repo: Path, *args: str, failed: list[str] | None = None) -> bool:
        """Run one best-effort git step. Returns True on success.

        A failing command is appended to *failed* when given.
        """
        command = " ".join(args)
        try:
            result = await asyncio.to_thread(run_git, *args, cwd=repo, timeout=self.git_timeout)
            require_success(result, command)
        except GitCommandError as exc:
            logger.warning("git step failed", command=command, stderr=exc.stderr)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("git step failed", command=command, error=str(exc))
        else:
            return True
        if failed is not None:
            failed.append(f"git {command}")
        return False

    async def _checkout_release(
        self, repo: Path, tag: str, failed: list[str] | None = None
    ) -> bool:
        # Tags may already be present locally, so a failed fetch isn't final
        await self._git(repo, "fetch", "--tags", self.remote, failed=failed)
        if await self._git(repo, "checkout", tag, failed=failed):
            return True
        branch = f"{self.release_branch_prefix}{tag}"
        return await self._git(repo, "checkout", "-b", branch, tag, failed=failed)

    async def _pull_branch(self, repo: Path, failed: list[str] | None = None) -> str | None:
        for branch in self.branches:
            if await self._git(repo, "pull", "--ff-only", self.remote, branch, failed=failed):
                return branch
        return None

    async def inspect(self, name: str, path: Path) -> ManagedRepo:
        url = await asyncio.to_thread(remote_url, path, self.remote)
        ref = await asyncio.to_thread(describe_head, path)
        return ManagedRepo(name=name, path=path, remote=parse_remote(url), current_ref=ref)

    async def _advance(self, repo: ManagedRepo) -> StepResult:
        failed: list[str] = []
        if repo.remote is not None:
            tag = await latest_release_tag(
                repo.remote, api_base=self.release_api, timeout=self.http_timeout
            )
            if tag:
                logger.info("Checking out latest release", tag=tag)
                if await self._checkout_release(repo.path, tag, failed):
                    return StepResult.ok(
                        STEP, "release", ref=tag, previous=repo.current_ref, failed_steps=failed
                    )
                return StepResult.failed(
                    STEP,
                    f"checkout of release {tag} failed",
                    previous=repo.current_ref,
                    failed_steps=failed,
                )
            logger.info("No release found, updating from branch")

        branch = await self._pull_branch(repo.path, failed)
        if branch is None:
            return StepResult.failed(
                STEP,
                f"no branch could be fast-forwarded (tried {', '.join(self.branches)})",
                ref=repo.current_ref,
                failed_steps=failed,
            )
        return StepResult.ok(
            STEP, "branch", branch=branch, previous=repo.current_ref, failed_steps=failed
        )

    async def update(self, name: str, path: Path, *, enabled: bool = True) -> list[StepResult]:
        """Update the repository at *path*; returns the update step and, if run,
        the dependency step for the repository's own manifest.
        """
        with log_context(directory=name):
            if not enabled:
                return [StepResult.skipped(STEP, "auto-update disabled")]
            if not is_git_repo(path):
                return [StepResult.skipped(STEP, "not a git repository")]

            if not git_available():
                logger.warning("git not available; skipping update", path=str(path))
                result = StepResult.skipped(STEP, "git not available")
            else:
                logger.info("Updating repository", path=str(path))
                repo = await self.inspect(name, path)
                result = await self._advance(repo)
                if result.status == "ok":
                    result.detail["head"] = await asyncio.to_thread(describe_head, path)

        steps = [result]
        if self.reconciler is not None:
            steps.append(await asyncio.to_thread(self.reconciler.reconcile, path))
        return steps
