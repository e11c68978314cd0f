"""Tests for autodev/cli.py — commands and exit codes via click's CliRunner."""

from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest
from click.testing import CliRunner

from autodev.cli import EXIT_CONFIG, EXIT_FAILURE, EXIT_OK, EXIT_UNRECOVERABLE, cli


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _invoke(runner: CliRunner, config_dir: Path, workspace: Path, *args: str, env: str = "test"):
    base = ["--config-dir", str(config_dir), "--workspace", str(workspace)]
    if env:
        base += ["--env", env]
    return runner.invoke(cli, [*base, *args])


class TestRun:
    def test_command_task_succeeds(self, runner, config_dir, workspace):
        result = _invoke(runner, config_dir, workspace, "run", "say hi", "--command", "echo hi")
        assert result.exit_code == EXIT_OK, result.output
        assert "Completed" in result.output

    def test_failing_command_exits_1(self, runner, config_dir, workspace):
        result = _invoke(runner, config_dir, workspace, "run", "list nothing", "--command", "ls does-not-exist")
        assert result.exit_code == EXIT_FAILURE
        assert "Failed" in result.output

    def test_disallowed_command_fails_task(self, runner, config_dir, workspace):
        result = _invoke(runner, config_dir, workspace, "run", "fetch", "--command", "curl http://example.com")
        assert result.exit_code == EXIT_FAILURE
        assert "not allowed by policy" in result.output

    def test_no_planner_is_unrecoverable(self, runner, config_dir, workspace, monkeypatch):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        result = _invoke(runner, config_dir, workspace, "run", "think hard")
        assert result.exit_code == EXIT_UNRECOVERABLE
        assert "ProviderUnavailable" in result.output

    def test_requires_description(self, runner, config_dir, workspace):
        result = _invoke(runner, config_dir, workspace, "run")
        assert result.exit_code == 2


class TestConfigErrors:
    def test_bad_config_exits_2(self, runner, tmp_path, workspace):
        bad = tmp_path / "bad_config"
        bad.mkdir()
        (bad / "default.yaml").write_text("agent: [unclosed\n")
        result = _invoke(runner, bad, workspace, "checkpoints", env=None)
        assert result.exit_code == EXIT_CONFIG
        assert "Configuration error" in result.output

    def test_unknown_env_exits_2(self, runner, config_dir, workspace):
        result = _invoke(runner, config_dir, workspace, "metrics", env="staging")
        assert result.exit_code == EXIT_CONFIG


class TestReporting:
    def test_empty_checkpoints_and_metrics(self, runner, config_dir, workspace):
        result = _invoke(runner, config_dir, workspace, "checkpoints")
        assert result.exit_code == EXIT_OK
        assert "No checkpoints." in result.output

        result = _invoke(runner, config_dir, workspace, "metrics")
        assert result.exit_code == EXIT_OK
        assert '"tasks_submitted": 0' in result.output

    def test_persisted_state_is_reported(self, runner, config_dir, workspace):
        result = _invoke(runner, config_dir, workspace, "run", "say hi", "--command", "echo hi", env=None)
        assert result.exit_code == EXIT_OK, result.output

        result = _invoke(runner, config_dir, workspace, "checkpoints", env=None)
        assert result.exit_code == EXIT_OK
        assert "task task-" in result.output

        metrics = json.loads((workspace / ".agent" / "audit" / "metrics.json").read_text())
        assert metrics["metrics"]["tasks_completed"] == 1
        result = _invoke(runner, config_dir, workspace, "metrics", env=None)
        assert '"tasks_completed": 1' in result.output


class TestImprove:
    def test_no_opportunity_exits_0(self, runner, config_dir, workspace):
        result = _invoke(runner, config_dir, workspace, "improve", "--no-interactive")
        assert result.exit_code == EXIT_OK
        assert "NoOpportunity" in result.output

    def test_opportunity_found_from_persisted_metrics(self, runner, config_dir, tmp_path, workspace):
        overlay_dir = tmp_path / "config"
        overlay_dir.mkdir()
        shutil.copy(config_dir / "default.yaml", overlay_dir / "default.yaml")
        (overlay_dir / "ci.yaml").write_text(
            "self_improvement:\n  auto_apply: true\nself_tests:\n  command: [\"true\"]\n"
        )
        audit_dir = workspace / ".agent" / "audit"
        audit_dir.mkdir(parents=True)
        (audit_dir / "metrics.json").write_text(
            json.dumps({"counters": {}, "metrics": {"tasks_submitted": 5, "tasks_completed": 1, "tasks_failed": 4}})
        )

        result = _invoke(runner, overlay_dir, workspace, "improve", "--no-interactive", env="ci")

        assert result.exit_code == EXIT_OK, result.output
        assert "Confirmed" in result.output
        assert "max_attempts: 5" in (workspace / ".agent" / "strategies" / "retry.yaml").read_text()
