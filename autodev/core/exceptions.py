"""Custom exception hierarchy for the autodev core.

All exceptions inherit from AgentCoreError so callers can catch broadly
or narrowly as needed. Every class carries a machine-readable ``kind``
that ends up on task outcomes and audit records.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from autodev.core.models import SafetyReport


class AgentCoreError(Exception):
    """Base exception for all autodev errors."""

    kind: str = "AgentCoreError"


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class InvalidTransition(AgentCoreError):
    """A state machine was asked for a transition outside its table."""

    kind = "InvalidTransition"

    def __init__(self, current: Any, requested: Any, message: Optional[str] = None):
        self.current = current
        self.requested = requested
        super().__init__(message or f"Invalid transition: {current} → {requested}")


class StateCorruptionError(AgentCoreError):
    """Agent state or checkpoint integrity could not be verified."""

    kind = "StateCorruption"


# ---------------------------------------------------------------------------
# Safety
# ---------------------------------------------------------------------------

class SafetyViolation(AgentCoreError):
    """Policy denial. Carries the report so callers can surface rule ids."""

    kind = "SafetyViolation"

    def __init__(self, report: "SafetyReport", message: Optional[str] = None):
        self.report = report
        if message is None:
            details = "; ".join(f"{v.rule_id}: {v.rationale}" for v in report.violations)
            message = f"Safety verdict {report.verdict.value}: {details or 'no rule recorded'}"
        super().__init__(message)

    @property
    def rule_ids(self) -> list[str]:
        return [v.rule_id for v in self.report.violations]


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class ProviderError(AgentCoreError):
    """A capability provider call failed."""

    kind = "ProviderError"

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class ProviderUnavailableError(ProviderError):
    """No healthy provider is registered for a capability (system-level fault)."""

    kind = "ProviderUnavailable"

    def __init__(self, capability: str, message: Optional[str] = None):
        self.capability = capability
        super().__init__(message or f"No provider registered for capability '{capability}'")


class OperationTimeoutError(AgentCoreError):
    """A suspension point exceeded its configured bound."""

    kind = "Timeout"

    def __init__(self, operation: str, timeout_seconds: float):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{operation} timed out after {timeout_seconds:.2f}s")


# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------

class CheckpointError(AgentCoreError):
    """Failed to create, load or persist a checkpoint."""

    kind = "CheckpointError"


class RestoreError(AgentCoreError):
    """Checkpoint restore failed. Agent integrity can no longer be guaranteed."""

    kind = "RestoreError"

    def __init__(self, checkpoint_id: str, message: str):
        self.checkpoint_id = checkpoint_id
        super().__init__(f"Restore of checkpoint {checkpoint_id} failed: {message}")


class RollbackFailure(AgentCoreError):
    """Apply-phase rollback failed. Automated self-modification is halted."""

    kind = "RollbackFailure"

    def __init__(self, proposal_id: str, checkpoint_id: Optional[str], message: str):
        self.proposal_id = proposal_id
        self.checkpoint_id = checkpoint_id
        super().__init__(
            f"Rollback of proposal {proposal_id} to checkpoint {checkpoint_id} failed: {message}"
        )


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

class QueueClosedError(AgentCoreError):
    """Task submitted after the queue stopped accepting work."""

    kind = "QueueClosed"


class ImprovementInProgressError(AgentCoreError):
    """A second improvement cycle was requested while one is in flight."""

    kind = "ImprovementInProgress"


class ModificationHaltedError(AgentCoreError):
    """Automated self-modification is halted pending administrative reset."""

    kind = "ModificationHalted"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(AgentCoreError):
    """Invalid or missing configuration."""

    kind = "ConfigError"


def error_kind(exc: BaseException) -> str:
    """Return the machine-readable kind for any exception."""
    if isinstance(exc, AgentCoreError):
        return exc.kind
    return type(exc).__name__
