"""Tests for bootstrap.py: full reconciliation passes over a tmp_path layout.

The package installer is replaced by FakeInstaller; filesystem and git work
is real.
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import FakeInstaller, commit_file, git, make_layout_settings, make_origin

from stowage.bootstrap import run_bootstrap
from stowage.linker import MigrationError


def _plugin(root: Path, name: str, manifest: str = "x==1.0\n") -> Path:
    path = root / name
    path.mkdir(parents=True, exist_ok=True)
    (path / "requirements.txt").write_text(manifest)
    return path


@pytest.fixture
def layout(tmp_path: Path):
    app = tmp_path / "app"
    (app / "input").mkdir(parents=True)
    (app / "input" / "example.png").write_bytes(b"png")
    (app / "output").mkdir()
    _plugin(app / "custom_nodes", "plugin-a")
    _plugin(app / "custom_nodes", "user-plugin", "y==3\n")
    # Already on the persistent volume from a previous container
    _plugin(tmp_path / "workspace" / "custom_nodes", "persisted-plugin", "z\n")
    return tmp_path


async def _run(settings, installer: FakeInstaller):
    with patch("stowage.bootstrap.build_installer", return_value=installer):
        return await run_bootstrap(settings)


class TestFullPass:
    async def test_first_start_links_and_installs_everything(self, layout: Path):
        s = make_layout_settings(layout, named_plugins=["plugin-a"])
        installer = FakeInstaller()

        report = await _run(s, installer)

        for name in ("input", "output", "custom_nodes", "user"):
            link = layout / "app" / name
            assert link.is_symlink(), name
            assert link.resolve() == (layout / "workspace" / name).resolve()
        assert (layout / "workspace" / "input" / "example.png").read_bytes() == b"png"

        plugins = layout / "workspace" / "custom_nodes"
        assert sorted(m.parent.name for m in installer.manifests) == [
            "persisted-plugin",
            "plugin-a",
            "user-plugin",
        ]
        assert all(m.parent.parent == plugins for m in installer.manifests)
        assert report.failures == []
        assert report.directories["plugin-a"].step("update").reason == "not a git repository"

    async def test_second_start_does_no_work(self, layout: Path):
        s = make_layout_settings(layout, named_plugins=["plugin-a"])
        await _run(s, FakeInstaller())

        installer = FakeInstaller()
        report = await _run(s, installer)

        assert installer.manifests == []
        for name in ("input", "output", "custom_nodes", "user"):
            assert report.directories[name].step("link").status == "skipped"

    async def test_user_dropped_plugin_installed_on_next_start(self, layout: Path):
        s = make_layout_settings(layout)
        await _run(s, FakeInstaller())

        _plugin(layout / "workspace" / "custom_nodes", "brand-new")
        installer = FakeInstaller()
        await _run(s, installer)

        assert [m.parent.name for m in installer.manifests] == ["brand-new"]

    async def test_report_written_as_json(self, layout: Path):
        s = make_layout_settings(layout)

        await _run(s, FakeInstaller())

        data = json.loads((layout / "system" / "stowage" / "last-report.json").read_text())
        names = [d["name"] for d in data["directories"]]
        assert names[:4] == ["input", "output", "custom_nodes", "user"]
        assert data["finished_at"]


class TestIsolationAndSwitches:
    async def test_broken_plugin_does_not_block_others(self, layout: Path):
        s = make_layout_settings(layout)
        installer = FakeInstaller(failing={"user-plugin"})

        report = await _run(s, installer)

        assert [d.name for d in report.failures] == ["user-plugin"]
        plugins = layout / "workspace" / "custom_nodes"
        assert (plugins / "plugin-a" / ".deps_installed").exists()
        assert (plugins / "persisted-plugin" / ".deps_installed").exists()
        assert not (plugins / "user-plugin" / ".deps_installed").exists()

    async def test_install_switch_off_installs_nothing(self, layout: Path):
        s = make_layout_settings(layout, auto_install_dependencies=False)
        installer = FakeInstaller()
        (layout / "workspace" / "extensions").mkdir(parents=True)
        (layout / "workspace" / "extensions" / "ext-0.1-py3-none-any.whl").write_bytes(b"")

        report = await _run(s, installer)

        assert installer.manifests == []
        assert installer.wheel_batches == []
        assert report.directories["extensions"].step("extensions").status == "skipped"

    async def test_extension_wheels_installed(self, layout: Path):
        s = make_layout_settings(layout)
        ext = layout / "workspace" / "extensions"
        ext.mkdir(parents=True)
        (ext / "b-0.1-py3-none-any.whl").write_bytes(b"")
        (ext / "a-0.1-py3-none-any.whl").write_bytes(b"")
        installer = FakeInstaller()

        await _run(s, installer)

        assert installer.wheel_batches == [
            [str(ext / "a-0.1-py3-none-any.whl"), str(ext / "b-0.1-py3-none-any.whl")]
        ]

    async def test_migration_failure_aborts_before_any_install(self, layout: Path):
        (layout / "app" / "user").write_text("stray file")
        s = make_layout_settings(layout)
        installer = FakeInstaller()

        with pytest.raises(MigrationError):
            await _run(s, installer)

        assert installer.manifests == []


class TestNamedRepos:
    async def test_named_repo_updated_and_reconciled_once(self, layout: Path):
        origin, publisher = make_origin(layout)
        plugin = layout / "workspace" / "custom_nodes" / "ComfyUI-Manager"
        git(layout, "clone", str(origin), str(plugin))
        new_sha = commit_file(publisher, "requirements.txt", "x==2.0\n", "bump")
        git(publisher, "push", "origin", "main")
        s = make_layout_settings(layout, named_plugins=["ComfyUI-Manager"])
        installer = FakeInstaller()

        report = await _run(s, installer)

        entry = report.directories["ComfyUI-Manager"]
        assert [step.step for step in entry.steps] == ["update", "dependencies"]
        assert entry.step("update").status == "ok"
        assert git(plugin, "rev-parse", "HEAD").stdout.strip() == new_sha
        assert [m.parent.name for m in installer.manifests].count("ComfyUI-Manager") == 1

    async def test_plugin_update_switch_off(self, layout: Path):
        origin, publisher = make_origin(layout)
        plugin = layout / "workspace" / "custom_nodes" / "ComfyUI-Manager"
        git(layout, "clone", str(origin), str(plugin))
        before = git(plugin, "rev-parse", "HEAD").stdout.strip()
        commit_file(publisher, "requirements.txt", "x==2.0\n", "bump")
        git(publisher, "push", "origin", "main")
        s = make_layout_settings(
            layout, named_plugins=["ComfyUI-Manager"], auto_update_plugins=False
        )

        report = await _run(s, FakeInstaller())

        entry = report.directories["ComfyUI-Manager"]
        assert entry.step("update").reason == "auto-update disabled"
        # Dependencies are still reconciled by the discovery sweep
        assert entry.step("dependencies").status == "ok"
        assert git(plugin, "rev-parse", "HEAD").stdout.strip() == before
