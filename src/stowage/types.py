"""Data models for stowage."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

StepStatus = Literal["ok", "skipped", "failed"]


class StowageError(Exception):
    """Base class for errors raised by the bootstrap pass."""


@dataclass(frozen=True)
class ManagedPath:
    name: str
    logical_path: Path  # where the application reads/writes
    persistent_path: Path  # durable backing location


@dataclass(frozen=True)
class ManagedDirectory:
    """A directory under the plugin root, as seen by one bootstrap pass."""

    name: str
    path: Path
    named: bool  # listed in config, as opposed to dropped in by the user


@dataclass(frozen=True)
class RemoteIdentity:
    owner: str
    name: str

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass
class ManagedRepo:
    name: str
    path: Path
    remote: RemoteIdentity | None = None
    current_ref: str | None = None


@dataclass
class InstallRecord:
    installed: bool = True
    fingerprint: str | None = None  # None for markers written without content tracking
    installed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "installed": self.installed,
            "fingerprint": self.fingerprint,
            "installed_at": self.installed_at,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> InstallRecord:
        fingerprint = raw.get("fingerprint")
        return cls(
            installed=bool(raw.get("installed", True)),
            fingerprint=fingerprint if isinstance(fingerprint, str) else None,
            installed_at=raw.get("installed_at"),
        )


@dataclass
class StepResult:
    step: str  # "link", "update", "dependencies", ...
    status: StepStatus
    reason: str = ""
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, step: str, reason: str = "", **detail: Any) -> StepResult:
        return cls(step=step, status="ok", reason=reason, detail=detail)

    @classmethod
    def skipped(cls, step: str, reason: str, **detail: Any) -> StepResult:
        return cls(step=step, status="skipped", reason=reason, detail=detail)

    @classmethod
    def failed(cls, step: str, reason: str, **detail: Any) -> StepResult:
        return cls(step=step, status="failed", reason=reason, detail=detail)


@dataclass
class DirectoryReport:
    name: str
    path: Path
    steps: list[StepResult] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return any(s.status == "failed" for s in self.steps)

    def step(self, name: str) -> StepResult | None:
        for s in self.steps:
            if s.step == name:
                return s
        return None


@dataclass
class BootstrapReport:
    started_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    finished_at: str | None = None
    directories: dict[str, DirectoryReport] = field(default_factory=dict)

    def entry(self, name: str, path: Path) -> DirectoryReport:
        """Return the report for *name*, creating it on first use."""
        if name not in self.directories:
            self.directories[name] = DirectoryReport(name=name, path=path)
        return self.directories[name]

    def add(self, name: str, path: Path, result: StepResult) -> StepResult:
        self.entry(name, path).steps.append(result)
        return result

    @property
    def failures(self) -> list[DirectoryReport]:
        return [d for d in self.directories.values() if d.failed]

    def finish(self) -> None:
        self.finished_at = datetime.now(UTC).isoformat()

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "directories": [
                {
                    "name": d.name,
                    "path": str(d.path),
                    "steps": [asdict(s) for s in d.steps],
                }
                for d in self.directories.values()
            ],
        }
