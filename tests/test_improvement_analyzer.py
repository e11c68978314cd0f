"""Tests for autodev/improvement/analyzer.py — heuristic and provider-backed analysis."""

from __future__ import annotations

import pytest
import yaml

from autodev.core.exceptions import ProviderError
from autodev.core.models import AgentMetrics, TaskOutcome, TaskStatus
from autodev.improvement.analyzer import (
    HeuristicAnalyzer,
    ImpactLevel,
    Observation,
    Opportunity,
    OpportunityKind,
    ProviderAnalyzer,
    rank_opportunities,
)
from autodev.modules.base import Capability, ModuleResponse
from tests.conftest import FakeProvider


def _timeout(task_id: str) -> TaskOutcome:
    return TaskOutcome(task_id=task_id, status=TaskStatus.FAILED, error_kind="Timeout")


class TestHeuristicAnalyzer:
    def test_healthy_metrics_find_nothing(self):
        metrics = AgentMetrics(tasks_completed=10, average_latency_seconds=0.5)
        assert HeuristicAnalyzer().find_opportunities(Observation(metrics=metrics)) == []

    def test_empty_metrics_find_nothing(self):
        assert HeuristicAnalyzer().find_opportunities(Observation(metrics=AgentMetrics())) == []

    def test_low_success_rate(self):
        metrics = AgentMetrics(tasks_completed=1, tasks_failed=3)
        [opp] = HeuristicAnalyzer().find_opportunities(Observation(metrics=metrics))

        assert opp.kind == OpportunityKind.RELIABILITY
        assert opp.impact == ImpactLevel.HIGH
        assert opp.target_paths == [".agent/strategies/retry.yaml"]
        change = opp.suggested_changes[0]
        assert yaml.safe_load(change.content)["retry"]["max_attempts"] == 5

    def test_declining_history_is_critical(self):
        history = [
            AgentMetrics(tasks_completed=9, tasks_failed=1),
            AgentMetrics(tasks_completed=1, tasks_failed=3),
        ]
        observation = Observation(metrics=history[-1], history=history)
        [opp] = HeuristicAnalyzer().find_opportunities(observation)
        assert opp.impact == ImpactLevel.CRITICAL

    def test_high_latency(self):
        metrics = AgentMetrics(tasks_completed=5, average_latency_seconds=12.0)
        [opp] = HeuristicAnalyzer(max_latency_seconds=5.0).find_opportunities(Observation(metrics=metrics))
        assert opp.kind == OpportunityKind.PERFORMANCE
        assert opp.risk_score > 0.5

    def test_repeated_timeouts(self):
        observation = Observation(metrics=AgentMetrics(), outcomes=[_timeout("a"), _timeout("b")])
        [opp] = HeuristicAnalyzer(timeout_threshold=2).find_opportunities(observation)
        assert opp.kind == OpportunityKind.TIMEOUTS
        assert opp.evidence["timeouts"] == 2

    def test_custom_strategy_dir(self):
        metrics = AgentMetrics(tasks_failed=2)
        [opp] = HeuristicAnalyzer(strategy_dir="tuning/").find_opportunities(Observation(metrics=metrics))
        assert opp.target_paths == ["tuning/retry.yaml"]

    def test_from_config(self, app_config):
        analyzer = HeuristicAnalyzer.from_config(app_config)
        assert analyzer.min_success_rate == app_config.self_improvement.min_success_rate
        assert analyzer.timeout_threshold == app_config.self_improvement.timeout_pattern_threshold


class TestRanking:
    def test_impact_per_effort_then_risk(self):
        cheap = Opportunity(kind=OpportunityKind.OTHER, description="cheap", impact=ImpactLevel.MEDIUM, effort=0.5)
        costly = Opportunity(kind=OpportunityKind.OTHER, description="costly", impact=ImpactLevel.HIGH, effort=3.0)
        safer = Opportunity(kind=OpportunityKind.OTHER, description="safer", impact=ImpactLevel.MEDIUM, effort=0.5, risk_score=0.1)

        ranked = rank_opportunities([costly, cheap, safer])

        assert [o.description for o in ranked] == ["safer", "cheap", "costly"]


class TestProviderAnalyzer:
    def test_parses_opportunities(self, registry):
        raw = {
            "opportunities": [
                {
                    "kind": "Performance",
                    "description": "cache lookups",
                    "impact": "high",
                    "risk_score": 3.0,
                    "changes": [{"path": "strategies/cache.yaml", "content": "on: true\n"}],
                },
                {"kind": "Mystery", "description": "unknown kind"},
                {"impact": "HIGH"},
            ]
        }
        provider = FakeProvider(Capability.ANALYZE, lambda r: raw)
        registry.register(Capability.ANALYZE, provider)

        found = ProviderAnalyzer(registry).find_opportunities(Observation(metrics=AgentMetrics()))

        assert len(found) == 2
        assert found[0].kind == OpportunityKind.PERFORMANCE
        assert found[0].impact == ImpactLevel.HIGH
        assert found[0].risk_score == 1.0
        assert found[0].target_paths == ["strategies/cache.yaml"]
        assert found[1].kind == OpportunityKind.OTHER
        assert provider.operations == ["find_opportunities"]
        assert "metrics" in provider.calls[0].payload

    def test_reported_failure_raises(self, registry):
        registry.register(
            Capability.ANALYZE,
            FakeProvider(Capability.ANALYZE, lambda r: ModuleResponse(success=False, error="model down")),
        )
        with pytest.raises(ProviderError, match="model down"):
            ProviderAnalyzer(registry).find_opportunities(Observation(metrics=AgentMetrics()))
