"""Tests for autodev/core/factory.py — ComponentFactory wiring."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from autodev.core.exceptions import ConfigError
from autodev.core.factory import AgentBundle, ComponentFactory
from autodev.modules.base import Capability
from autodev.modules.llm_gateway import LLMGateway


class TestComponentFactory:
    def test_create_returns_bundle(self, config_dir: Path, workspace: Path, monkeypatch):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        bundle = ComponentFactory.create(config_dir=config_dir, env="test", workspace_dir=workspace)
        try:
            assert isinstance(bundle, AgentBundle)
            assert bundle.workspace_dir == workspace.resolve()
            assert set(bundle.registry.capabilities()) == {
                Capability.SELF_MODIFY,
                Capability.EXECUTE_TOOL,
                Capability.RUN_SELF_TESTS,
            }
            assert bundle.orchestrator.engine is bundle.engine
            assert bundle.orchestrator.modification_lock is bundle.engine.modification_lock
            assert bundle.engine.gate is bundle.gate
            assert bundle.store.storage_dir is None
            assert bundle.state_manager.current().kind.value == "Idle"
        finally:
            ComponentFactory.close(bundle)

    def test_api_key_registers_gateway(self, config_dir: Path, workspace: Path):
        bundle = ComponentFactory.create(
            config_dir=config_dir, env="test", workspace_dir=workspace, api_key="sk-test"
        )
        try:
            assert isinstance(bundle.registry.provider_for(Capability.GENERATE), LLMGateway)
        finally:
            ComponentFactory.close(bundle)

    def test_persistent_paths_resolve_under_workspace(self, config_dir: Path, workspace: Path):
        bundle = ComponentFactory.create(config_dir=config_dir, workspace_dir=workspace)
        try:
            assert bundle.store.storage_dir == workspace.resolve() / ".agent" / "checkpoints"
            assert bundle.audit.jsonl_path == workspace.resolve() / ".agent" / "audit" / "events.jsonl"
        finally:
            ComponentFactory.close(bundle)
        assert bundle.audit.metrics_path.exists()

    def test_prebuilt_config(self, test_config, workspace: Path):
        bundle = ComponentFactory.create(config=test_config, workspace_dir=workspace)
        try:
            assert bundle.config is test_config
        finally:
            ComponentFactory.close(bundle)

    def test_invalid_config_raises(self, tmp_path: Path, workspace: Path):
        (tmp_path / "default.yaml").write_text("agent:\n  max_concurrent_tasks: 0\n")
        with pytest.raises(ConfigError):
            ComponentFactory.create(config_dir=tmp_path, workspace_dir=workspace)

    def test_close_closes_providers(self, make_agent):
        bundle = make_agent()
        tests_provider = bundle.registry.provider_for(Capability.RUN_SELF_TESTS)
        ComponentFactory.close(bundle)
        assert tests_provider.closed

    def test_persisted_observations_are_restored(self, config_dir: Path, workspace: Path):
        audit_dir = workspace / ".agent" / "audit"
        audit_dir.mkdir(parents=True)
        (audit_dir / "metrics.json").write_text(json.dumps({
            "counters": {"task_outcome": 2},
            "metrics": {"tasks_completed": 1, "tasks_failed": 1, "average_latency_seconds": 2.5},
        }))
        events = [
            {"event_type": "task_outcome", "payload": {"task_id": "task-1", "status": "Completed"}},
            {"event_type": "rollback", "payload": {"proposal_id": "p1"}},
            {"event_type": "task_outcome", "payload": {"task_id": "task-2", "status": "Failed", "error_kind": "Timeout"}},
        ]
        (audit_dir / "events.jsonl").write_text("".join(json.dumps(e) + "\n" for e in events))

        bundle = ComponentFactory.create(config_dir=config_dir, workspace_dir=workspace)
        try:
            snapshot = bundle.metrics.snapshot()
            assert snapshot.tasks_failed == 1
            assert snapshot.average_latency_seconds == 2.5
            assert bundle.audit.counters["task_outcome"] == 2
            assert [o.error_kind for o in bundle.orchestrator.recent_outcomes()] == [None, "Timeout"]
        finally:
            ComponentFactory.close(bundle)
