"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Deployment layout lives in a TOML file (``STOWAGE_CONFIG``, default
``/etc/stowage/config.toml``). Environment variables override it using the
``STOWAGE_`` prefix and ``__`` as the nested delimiter
(e.g. ``STOWAGE_INSTALLER__TIMEOUT_SECONDS=900``).

The three update switches are flat fields so they read naturally as container
env vars, and they also accept the names used by the old shell entrypoint
(``COMFYUI_AUTO_UPDATE=0`` still disables the application repo update).

Priority (highest wins): init args > env vars > .env > TOML file

Usage::

    from stowage.config import get_settings

    s = get_settings()
    print(s.paths.workspace_base)
    print(s.auto_update_repos)
"""

from __future__ import annotations

import os
import sys
from functools import cached_property
from pathlib import Path

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from stowage.types import ManagedPath

DEFAULT_CONFIG_PATH = "/etc/stowage/config.toml"

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in the TOML file)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models: reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class PathsConfig(_StrictModel):
    app_base: Path = Path("/opt/app/ComfyUI")  # ephemeral application checkout
    workspace_base: Path = Path("/notebooks/comfyui")  # persistent storage root
    system_base: Path = Path("/storage/system")  # service databases, bootstrap state
    extensions_dir: Path | None = Path("/notebooks/jlab/extensions")  # drop-in wheels
    browse_root: Path = Path("/notebooks")  # served by the file browser
    # Linked in this order; each name exists under both app_base and workspace_base
    managed_roots: list[str] = ["input", "output", "custom_nodes", "user"]
    plugin_root: str = "custom_nodes"

    @field_validator("managed_roots")
    @classmethod
    def validate_roots(cls, v: list[str]) -> list[str]:
        for name in v:
            if not name or "/" in name or name in (".", ".."):
                raise ValueError(f"Managed root must be a plain directory name: {name!r}")
        return v


class GitConfig(_StrictModel):
    remote: str = "origin"
    branches: list[str] = ["master", "main"]  # ff-only candidates, tried in order
    release_api: str = "https://api.github.com"
    release_branch_prefix: str = "release-"
    timeout_seconds: float = 120.0
    http_timeout_seconds: float = 15.0


class InstallerConfig(_StrictModel):
    # Everything before "install"; e.g. ["micromamba", "run", "-p", "/opt/conda/envs/pyenv", "pip"]
    command: list[str] = [sys.executable, "-m", "pip"]
    manifest_name: str = "requirements.txt"
    marker_name: str = ".deps_installed"
    upgrade_strategy: str = "only-if-needed"
    timeout_seconds: float | None = None  # None → wait for the installer however long it takes
    # Installed on every start before the drop-in extension wheels
    bundled_wheels: list[str] = []

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("installer.command cannot be empty")
        return v


class SetupCommandConfig(_StrictModel):
    command: list[str]
    unless_exists: str | None = None  # skip when this path already exists


class ServiceConfig(_StrictModel):
    command: list[str]
    cwd: str | None = None
    log_file: str | None = None  # None → inherit our stdout/stderr
    port: int | None = None  # informational, logged on start
    enabled: bool = True
    setup: list[SetupCommandConfig] = []


class SupervisorConfig(_StrictModel):
    """When enabled, services are left to the supervisor instead of launched directly."""

    enabled: bool = False
    command: list[str] = ["supervisord", "-c", "/etc/supervisord.conf"]


class FrontendConfig(_StrictModel):
    command: list[str] = [
        "jupyter",
        "lab",
        "--ip=0.0.0.0",
        "--port=8888",
        "--no-browser",
        "--ServerApp.token=",
        "--ServerApp.password=",
    ]
    exec_prefix: list[str] = []  # wraps both the default and caller-supplied commands
    diagnostics: list[list[str]] = []


def _default_services(paths: PathsConfig) -> dict[str, ServiceConfig]:
    fb_db = str(paths.system_base / "filebrowser" / "filebrowser.db")
    return {
        "comfyui": ServiceConfig(
            command=["python", "main.py", "--listen", "127.0.0.1", "--port", "8189"],
            cwd=str(paths.app_base),
            log_file="/tmp/comfyui.log",
            port=8189,
        ),
        "filebrowser": ServiceConfig(
            command=[
                "filebrowser",
                "--address",
                "127.0.0.1",
                "--port",
                "8766",
                "--root",
                str(paths.browse_root),
                "--database",
                fb_db,
                "--baseurl",
                "/filebrowser",
            ],
            log_file="/tmp/filebrowser.log",
            port=8766,
            setup=[
                SetupCommandConfig(
                    command=["filebrowser", "-d", fb_db, "config", "init"],
                    unless_exists=fb_db,
                ),
                SetupCommandConfig(
                    command=["filebrowser", "-d", fb_db, "config", "set", "--auth.method", "noauth"]
                ),
            ],
        ),
        "studio": ServiceConfig(
            command=["studio", "--port", "8765", "--base-url", "/studio"],
            log_file="/tmp/studio.log",
            port=8765,
        ),
    }


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


def _config_path() -> str:
    return os.environ.get("STOWAGE_CONFIG", DEFAULT_CONFIG_PATH)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="STOWAGE_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    paths: PathsConfig = PathsConfig()
    git: GitConfig = GitConfig()
    installer: InstallerConfig = InstallerConfig()
    supervisor: SupervisorConfig = SupervisorConfig()
    frontend: FrontendConfig = FrontendConfig()
    # Derived from the validated paths
    services: dict[str, ServiceConfig] = Field(
        default_factory=lambda data: _default_services(data.get("paths") or PathsConfig())
    )

    # Pre-installed plugin repos under the plugin root that get auto-updated
    named_plugins: list[str] = ["ComfyUI-Manager", "nunchaku_nodes", "ComfyUI-ProxyFix"]

    auto_update_repos: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "auto_update_repos", "STOWAGE_AUTO_UPDATE_REPOS", "COMFYUI_AUTO_UPDATE"
        ),
    )
    auto_update_plugins: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "auto_update_plugins",
            "STOWAGE_AUTO_UPDATE_PLUGINS",
            "COMFYUI_CUSTOM_NODES_AUTO_UPDATE",
        ),
    )
    auto_install_dependencies: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "auto_install_dependencies", "STOWAGE_AUTO_INSTALL_DEPENDENCIES"
        ),
    )

    @field_validator(
        "auto_update_repos", "auto_update_plugins", "auto_install_dependencies", mode="before"
    )
    @classmethod
    def parse_switch(cls, v: object) -> object:
        """Only "0" and "false" turn a switch off; any other string leaves it on."""
        if isinstance(v, str):
            return v.strip().lower() not in ("0", "false")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > TOML file."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=_config_path()),
        )

    # --- Computed properties ---

    @cached_property
    def plugins_dir(self) -> Path:
        return self.paths.workspace_base / self.paths.plugin_root

    @cached_property
    def state_dir(self) -> Path:
        return self.paths.system_base / "stowage"

    @cached_property
    def report_path(self) -> Path:
        return self.state_dir / "last-report.json"

    def managed_paths(self) -> list[ManagedPath]:
        return [
            ManagedPath(
                name=name,
                logical_path=self.paths.app_base / name,
                persistent_path=self.paths.workspace_base / name,
            )
            for name in self.paths.managed_roots
        ]


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
