"""Tests for autodev/core/exceptions.py — exception hierarchy and kinds."""

import pytest

from autodev.core.exceptions import (
    AgentCoreError,
    CheckpointError,
    ConfigError,
    ImprovementInProgressError,
    InvalidTransition,
    ModificationHaltedError,
    OperationTimeoutError,
    ProviderError,
    ProviderUnavailableError,
    QueueClosedError,
    RestoreError,
    RollbackFailure,
    SafetyViolation,
    StateCorruptionError,
    error_kind,
)
from autodev.core.models import RuleViolation, SafetyReport, SafetyVerdict


class TestExceptionHierarchy:
    def test_base_exception(self):
        with pytest.raises(AgentCoreError):
            raise AgentCoreError("test")

    @pytest.mark.parametrize(
        "exc_type",
        [
            InvalidTransition,
            StateCorruptionError,
            SafetyViolation,
            ProviderError,
            OperationTimeoutError,
            CheckpointError,
            RestoreError,
            RollbackFailure,
            QueueClosedError,
            ImprovementInProgressError,
            ModificationHaltedError,
            ConfigError,
        ],
    )
    def test_all_inherit_from_base(self, exc_type):
        assert issubclass(exc_type, AgentCoreError)

    def test_unavailable_is_a_provider_error(self):
        assert issubclass(ProviderUnavailableError, ProviderError)


class TestExceptionDetails:
    def test_invalid_transition_message(self):
        exc = InvalidTransition("Idle", "Validating")
        assert exc.current == "Idle"
        assert exc.requested == "Validating"
        assert "Idle → Validating" in str(exc)

    def test_safety_violation_carries_rule_ids(self):
        report = SafetyReport(
            verdict=SafetyVerdict.DENY,
            violations=(
                RuleViolation(rule_id="protected-path", evidence="x", rationale="protected"),
            ),
        )
        exc = SafetyViolation(report)
        assert exc.rule_ids == ["protected-path"]
        assert "Deny" in str(exc)
        assert "protected-path" in str(exc)

    def test_provider_error_retryable_flag(self):
        assert ProviderError("boom").retryable is False
        assert ProviderError("boom", retryable=True).retryable is True

    def test_unavailable_names_capability(self):
        exc = ProviderUnavailableError("generate")
        assert exc.capability == "generate"
        assert "generate" in str(exc)
        assert exc.retryable is False

    def test_timeout_message(self):
        exc = OperationTimeoutError("execute_tool.run", 1.5)
        assert exc.operation == "execute_tool.run"
        assert "1.50s" in str(exc)

    def test_rollback_failure_fields(self):
        exc = RollbackFailure("prop-1", "cp-1", "disk full")
        assert exc.proposal_id == "prop-1"
        assert exc.checkpoint_id == "cp-1"
        assert "disk full" in str(exc)


class TestErrorKind:
    def test_timeout_kind(self):
        assert error_kind(OperationTimeoutError("op", 1)) == "Timeout"

    def test_unavailable_kind(self):
        assert error_kind(ProviderUnavailableError("analyze")) == "ProviderUnavailable"

    def test_foreign_exception_uses_class_name(self):
        assert error_kind(ValueError("x")) == "ValueError"
