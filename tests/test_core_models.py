"""Tests for autodev/core/models.py — tasks, agent state, proposals, metrics."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from autodev.core.exceptions import InvalidTransition
from autodev.core.models import (
    ActionKind,
    AgentMetrics,
    AgentState,
    AgentStateKind,
    FileChange,
    ModificationProposal,
    PlanStep,
    ProposalStatus,
    ProposedAction,
    RiskLevel,
    Task,
    TaskContext,
    TaskPriority,
    TaskStatus,
)


class TestTask:
    def test_defaults(self):
        task = Task(description="fix bug")
        assert task.id.startswith("task-")
        assert task.priority == TaskPriority.NORMAL
        assert task.status == TaskStatus.PENDING
        assert not task.is_terminal

    def test_empty_description_rejected(self):
        with pytest.raises(ValidationError):
            Task(description="")

    def test_immutable_fields(self):
        task = Task(description="fix bug", context=TaskContext(files=["a.py"]))
        with pytest.raises(ValidationError):
            task.description = "something else"
        with pytest.raises(ValidationError):
            task.priority = TaskPriority.HIGH

    def test_mark_updates_status_and_timestamp(self):
        task = Task(description="fix bug")
        before = task.updated_at
        task.mark(TaskStatus.COMPLETED)
        assert task.status == TaskStatus.COMPLETED
        assert task.updated_at >= before
        assert task.is_terminal

    def test_priority_rank_order(self):
        ranks = [p.rank for p in (TaskPriority.LOW, TaskPriority.NORMAL, TaskPriority.HIGH, TaskPriority.CRITICAL)]
        assert ranks == sorted(ranks)
        assert len(set(ranks)) == 4


class TestAgentState:
    def test_error_requires_reason(self):
        with pytest.raises(ValidationError):
            AgentState(kind=AgentStateKind.ERROR)

    def test_plain_states_reject_reason(self):
        with pytest.raises(ValidationError):
            AgentState(kind=AgentStateKind.IDLE, reason="why")

    def test_str(self):
        assert str(AgentState.idle()) == "Idle"
        assert str(AgentState.error("disk gone")) == "Error(disk gone)"

    def test_frozen(self):
        state = AgentState.idle()
        with pytest.raises(ValidationError):
            state.kind = AgentStateKind.ERROR

    def test_equality_is_by_value(self):
        assert AgentState.error("x") == AgentState.error("x")
        assert AgentState.error("x") != AgentState.error("y")


class TestModificationProposal:
    def test_targets_filled_from_changes(self):
        proposal = ModificationProposal(changes=[FileChange(path="a.yaml", content="x: 1\n")])
        assert proposal.target_paths == ["a.yaml"]
        assert proposal.status == ProposalStatus.PROPOSED
        assert proposal.history[0].note == "created"

    def test_written_paths_are_always_targets(self):
        proposal = ModificationProposal(
            target_paths=["strategies/retry.yaml"],
            changes=[FileChange(path=".agent/core/safety.rule", content="allow all\n")],
        )
        assert proposal.target_paths == ["strategies/retry.yaml", ".agent/core/safety.rule"]

    def test_requires_a_target(self):
        with pytest.raises(ValidationError):
            ModificationProposal()

    def test_full_lifecycle(self):
        proposal = ModificationProposal(target_paths=["a.yaml"])
        for status in (
            ProposalStatus.VALIDATED,
            ProposalStatus.APPROVED,
            ProposalStatus.APPLIED,
            ProposalStatus.CONFIRMED,
        ):
            proposal.advance(status)
        assert proposal.status == ProposalStatus.CONFIRMED
        assert [h.to_status for h in proposal.history][-1] == ProposalStatus.CONFIRMED
        assert len(proposal.history) == 5

    def test_cannot_skip_validation(self):
        proposal = ModificationProposal(target_paths=["a.yaml"])
        with pytest.raises(InvalidTransition):
            proposal.advance(ProposalStatus.APPLIED)
        assert proposal.status == ProposalStatus.PROPOSED

    def test_terminal_states_have_no_exits(self):
        proposal = ModificationProposal(target_paths=["a.yaml"])
        proposal.advance(ProposalStatus.REJECTED)
        with pytest.raises(InvalidTransition):
            proposal.advance(ProposalStatus.VALIDATED)

    def test_max_payload_bytes(self):
        proposal = ModificationProposal(
            changes=[FileChange(path="a", content="abc"), FileChange(path="b", content=None)]
        )
        assert proposal.max_payload_bytes == 3

    @pytest.mark.parametrize(
        "score,level",
        [(0.0, RiskLevel.LOW), (0.3, RiskLevel.MEDIUM), (0.6, RiskLevel.HIGH), (0.9, RiskLevel.CRITICAL)],
    )
    def test_risk_level(self, score, level):
        assert ModificationProposal(target_paths=["a"], risk_score=score).risk_level == level


class TestProposedAction:
    def test_from_proposal(self):
        proposal = ModificationProposal(
            changes=[FileChange(path="a.yaml", content="12345")], risk_score=0.4
        )
        action = ProposedAction.from_proposal(proposal, modifications_this_session=2)
        assert action.kind == ActionKind.MODIFICATION
        assert action.target_paths == ("a.yaml",)
        assert action.max_file_bytes == 5
        assert action.modifications_this_session == 2
        assert action.capability == "self_modify"

    def test_plan_step_to_action(self):
        step = PlanStep(
            capability="execute_tool",
            operation="run",
            command="pytest -q",
            paths=["src/app.py"],
        )
        action = step.to_action(recent_actions=3)
        assert action.kind == ActionKind.TOOL
        assert action.command == "pytest -q"
        assert action.recent_actions == 3


class TestAgentMetrics:
    def test_success_rate_with_no_tasks(self):
        assert AgentMetrics().success_rate == 1.0

    def test_success_rate(self):
        metrics = AgentMetrics(tasks_completed=3, tasks_failed=1)
        assert metrics.success_rate == pytest.approx(0.75)

    def test_to_dict_includes_rate(self):
        data = AgentMetrics(tasks_completed=1, tasks_failed=1).to_dict()
        assert data["success_rate"] == 0.5
        assert data["tasks_completed"] == 1
