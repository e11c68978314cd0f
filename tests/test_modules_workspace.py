"""Tests for autodev/modules/workspace.py — snapshot, apply, restore, confinement."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from autodev.core.exceptions import ProviderError
from autodev.modules.base import Capability, ModuleRequest
from autodev.modules.workspace import WorkspaceModifier


def _call(modifier: WorkspaceModifier, operation: str, **payload):
    return modifier.invoke(ModuleRequest(Capability.SELF_MODIFY, operation, payload))


@pytest.fixture
def modifier(workspace: Path) -> WorkspaceModifier:
    (workspace / "strategies").mkdir()
    (workspace / "strategies" / "retry.yaml").write_text("attempts: 3\n")
    return WorkspaceModifier(workspace)


class TestSnapshot:
    def test_existing_and_missing_resources(self, modifier: WorkspaceModifier):
        response = _call(modifier, "snapshot", paths=["strategies/retry.yaml", "strategies/new.yaml"])
        assert response.data["resources"] == {
            "strategies/retry.yaml": "attempts: 3\n",
            "strategies/new.yaml": None,
        }


class TestApply:
    def test_write_creates_parents(self, modifier: WorkspaceModifier, workspace: Path):
        response = _call(modifier, "apply", changes=[{"path": "prompts/plan.txt", "content": "be brief"}])
        assert response.data == {"written": ["prompts/plan.txt"], "deleted": []}
        assert (workspace / "prompts" / "plan.txt").read_text() == "be brief"
        assert not (workspace / "prompts" / "plan.txt.autodev-tmp").exists()

    def test_none_content_deletes(self, modifier: WorkspaceModifier, workspace: Path):
        response = _call(modifier, "apply", changes=[{"path": "strategies/retry.yaml", "content": None}])
        assert response.data["deleted"] == ["strategies/retry.yaml"]
        assert not (workspace / "strategies" / "retry.yaml").exists()

    def test_read(self, modifier: WorkspaceModifier):
        assert _call(modifier, "read", path="strategies/retry.yaml").data == {"content": "attempts: 3\n"}
        with pytest.raises(ProviderError, match="File not found"):
            _call(modifier, "read", path="strategies/missing.yaml")


class TestRestore:
    def test_restore_returns_workspace_to_snapshot(self, modifier: WorkspaceModifier, workspace: Path):
        paths = ["strategies/retry.yaml", "strategies/new.yaml"]
        before = _call(modifier, "snapshot", paths=paths).data["resources"]
        _call(
            modifier,
            "apply",
            changes=[
                {"path": "strategies/retry.yaml", "content": "attempts: 9\n"},
                {"path": "strategies/new.yaml", "content": "x: 1\n"},
            ],
        )

        response = _call(modifier, "restore", resources=before)

        assert response.data["restored"] == sorted(paths)
        assert _call(modifier, "snapshot", paths=paths).data["resources"] == before
        assert not (workspace / "strategies" / "new.yaml").exists()


class TestConfinement:
    @pytest.mark.parametrize("path", ["../escape.txt", "strategies/../../escape.txt", "/etc/passwd"])
    def test_escape_refused(self, modifier: WorkspaceModifier, path: str):
        with pytest.raises(ProviderError, match="escapes workspace"):
            _call(modifier, "apply", changes=[{"path": path, "content": "x"}])

    @pytest.mark.parametrize("path", ["", "a\x00b"])
    def test_invalid_path(self, modifier: WorkspaceModifier, path: str):
        with pytest.raises(ProviderError, match="Invalid resource path"):
            _call(modifier, "snapshot", paths=[path])

    def test_symlink_refused(self, modifier: WorkspaceModifier, workspace: Path, tmp_path: Path):
        outside = tmp_path / "outside.txt"
        outside.write_text("keep")
        os.symlink(outside, workspace / "link.txt")
        with pytest.raises(ProviderError, match="symlink"):
            _call(modifier, "apply", changes=[{"path": "link.txt", "content": "overwrite"}])
        assert outside.read_text() == "keep"

    def test_unsupported_operation(self, modifier: WorkspaceModifier):
        with pytest.raises(ProviderError, match="Unsupported"):
            _call(modifier, "chmod")

    def test_health(self, modifier: WorkspaceModifier, tmp_path: Path):
        assert modifier.health()
        assert not WorkspaceModifier(tmp_path / "nope").health()
