"""Pydantic data models for the autodev core.

Defines the data contracts shared by the task queue, state manager,
safety validator, module registry, orchestrator and improvement engine.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from autodev.core.exceptions import InvalidTransition


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

class TaskPriority(str, enum.Enum):
    LOW = "Low"
    NORMAL = "Normal"
    HIGH = "High"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.LOW: 0,
    TaskPriority.NORMAL: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.CRITICAL: 3,
}


class TaskStatus(str, enum.Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)


class TaskContext(BaseModel):
    workspace_path: Optional[str] = None
    files: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class Task(BaseModel):
    """A unit of work. Only ``status`` and ``updated_at`` change after creation."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: _new_id("task"), frozen=True)
    description: str = Field(frozen=True, min_length=1)
    priority: TaskPriority = Field(default=TaskPriority.NORMAL, frozen=True)
    status: TaskStatus = TaskStatus.PENDING
    context: TaskContext = Field(default_factory=TaskContext, frozen=True)
    created_at: datetime = Field(default_factory=_now, frozen=True)
    updated_at: datetime = Field(default_factory=_now)

    def mark(self, status: TaskStatus) -> None:
        self.status = status
        self.updated_at = _now()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


# ---------------------------------------------------------------------------
# Agent state
# ---------------------------------------------------------------------------

class AgentStateKind(str, enum.Enum):
    IDLE = "Idle"
    ANALYZING = "Analyzing"
    PLANNING = "Planning"
    EXECUTING = "Executing"
    VALIDATING = "Validating"
    IMPROVING = "Improving"
    ERROR = "Error"


class AgentState(BaseModel):
    """Tagged variant: one of the plain phases, or ``Error(reason)``."""

    model_config = ConfigDict(frozen=True)

    kind: AgentStateKind
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _validate_reason(self) -> "AgentState":
        if self.kind == AgentStateKind.ERROR:
            if not self.reason or not self.reason.strip():
                raise ValueError("Error state requires a non-empty reason")
        elif self.reason is not None:
            raise ValueError(f"{self.kind.value} state does not carry a reason")
        return self

    @classmethod
    def idle(cls) -> "AgentState":
        return cls(kind=AgentStateKind.IDLE)

    @classmethod
    def analyzing(cls) -> "AgentState":
        return cls(kind=AgentStateKind.ANALYZING)

    @classmethod
    def planning(cls) -> "AgentState":
        return cls(kind=AgentStateKind.PLANNING)

    @classmethod
    def executing(cls) -> "AgentState":
        return cls(kind=AgentStateKind.EXECUTING)

    @classmethod
    def validating(cls) -> "AgentState":
        return cls(kind=AgentStateKind.VALIDATING)

    @classmethod
    def improving(cls) -> "AgentState":
        return cls(kind=AgentStateKind.IMPROVING)

    @classmethod
    def error(cls, reason: str) -> "AgentState":
        return cls(kind=AgentStateKind.ERROR, reason=reason)

    @property
    def is_error(self) -> bool:
        return self.kind == AgentStateKind.ERROR

    def __str__(self) -> str:
        if self.is_error:
            return f"Error({self.reason})"
        return self.kind.value


class Checkpoint(BaseModel):
    """Immutable, content-addressed snapshot of agent state."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str = ""
    state: AgentState
    state_metadata: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    digest: str
    created_at: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Modification proposals
# ---------------------------------------------------------------------------

class ProposalStatus(str, enum.Enum):
    PROPOSED = "Proposed"
    VALIDATED = "Validated"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    APPLIED = "Applied"
    CONFIRMED = "Confirmed"
    ROLLED_BACK = "RolledBack"


PROPOSAL_TRANSITIONS: dict[ProposalStatus, set[ProposalStatus]] = {
    ProposalStatus.PROPOSED: {ProposalStatus.VALIDATED, ProposalStatus.REJECTED},
    ProposalStatus.VALIDATED: {ProposalStatus.APPROVED, ProposalStatus.REJECTED},
    ProposalStatus.APPROVED: {
        ProposalStatus.APPLIED,
        ProposalStatus.ROLLED_BACK,  # apply failed part-way
        ProposalStatus.REJECTED,  # could not checkpoint
    },
    ProposalStatus.APPLIED: {ProposalStatus.CONFIRMED, ProposalStatus.ROLLED_BACK},
    ProposalStatus.REJECTED: set(),
    ProposalStatus.CONFIRMED: set(),
    ProposalStatus.ROLLED_BACK: set(),
}


class RiskLevel(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @classmethod
    def from_score(cls, score: float) -> "RiskLevel":
        if score < 0.3:
            return cls.LOW
        if score < 0.6:
            return cls.MEDIUM
        if score < 0.85:
            return cls.HIGH
        return cls.CRITICAL


class FileChange(BaseModel):
    """Full replacement content for one resource. ``content=None`` deletes it."""
    path: str
    content: Optional[str] = None

    @property
    def size_bytes(self) -> int:
        return len(self.content.encode("utf-8")) if self.content is not None else 0


class ProposalTransition(BaseModel):
    from_status: Optional[ProposalStatus] = None
    to_status: ProposalStatus
    note: str = ""
    at: datetime = Field(default_factory=_now)


class SafetyVerdict(str, enum.Enum):
    ALLOW = "Allow"
    DENY = "Deny"
    REQUIRE_APPROVAL = "RequireApproval"


class RuleViolation(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    evidence: str
    rationale: str


class SafetyReport(BaseModel):
    """Derived verdict for one action. Recomputed per check, never stored as state."""

    model_config = ConfigDict(frozen=True)

    verdict: SafetyVerdict
    violations: tuple[RuleViolation, ...] = ()

    @property
    def allowed(self) -> bool:
        return self.verdict == SafetyVerdict.ALLOW

    @property
    def denied(self) -> bool:
        return self.verdict == SafetyVerdict.DENY

    @property
    def rule_ids(self) -> list[str]:
        return [v.rule_id for v in self.violations]


class ModificationProposal(BaseModel):
    id: str = Field(default_factory=lambda: _new_id("prop"))
    target_paths: list[str] = Field(default_factory=list)
    changes: list[FileChange] = Field(default_factory=list)
    rationale: str = ""
    risk_score: float = Field(default=0.5, ge=0.0, le=1.0)
    generator: str = "unknown"
    opportunity_id: Optional[str] = None
    status: ProposalStatus = ProposalStatus.PROPOSED
    history: list[ProposalTransition] = Field(default_factory=list)
    safety_report: Optional[SafetyReport] = None
    approved_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)

    @model_validator(mode="after")
    def _fill_targets(self) -> "ModificationProposal":
        # Every written path is a target: the validator and the pre-apply
        # snapshot only look at target_paths.
        targets = list(dict.fromkeys(self.target_paths))
        for change in self.changes:
            if change.path not in targets:
                targets.append(change.path)
        self.target_paths = targets
        if not self.target_paths:
            raise ValueError("proposal must target at least one resource path")
        if not self.history:
            self.history = [ProposalTransition(to_status=self.status, note="created")]
        return self

    @property
    def risk_level(self) -> RiskLevel:
        return RiskLevel.from_score(self.risk_score)

    @property
    def max_payload_bytes(self) -> int:
        return max((c.size_bytes for c in self.changes), default=0)

    def advance(self, new_status: ProposalStatus, note: str = "") -> ProposalTransition:
        """Move along the proposal lifecycle, recording the transition.

        Raises:
            InvalidTransition: If ``new_status`` is not reachable from the current status.
        """
        if new_status not in PROPOSAL_TRANSITIONS[self.status]:
            raise InvalidTransition(
                self.status.value,
                new_status.value,
                f"Invalid proposal transition: {self.status.value} → {new_status.value} "
                f"for proposal {self.id}",
            )
        record = ProposalTransition(from_status=self.status, to_status=new_status, note=note)
        self.status = new_status
        self.history.append(record)
        return record


# ---------------------------------------------------------------------------
# Safety inputs
# ---------------------------------------------------------------------------

class ActionKind(str, enum.Enum):
    MODIFICATION = "modification"
    TOOL = "tool"


class ProposedAction(BaseModel):
    """Everything a safety verdict depends on, captured as one immutable value."""

    model_config = ConfigDict(frozen=True)

    kind: ActionKind
    target_paths: tuple[str, ...] = ()
    command: Optional[str] = None
    capability: Optional[str] = None
    max_file_bytes: int = Field(default=0, ge=0)
    risk_score: float = 0.0
    modifications_this_session: int = 0
    concurrent_modifications: int = 0
    recent_actions: int = 0

    @classmethod
    def from_proposal(
        cls,
        proposal: ModificationProposal,
        modifications_this_session: int = 0,
        concurrent_modifications: int = 0,
        recent_actions: int = 0,
    ) -> "ProposedAction":
        return cls(
            kind=ActionKind.MODIFICATION,
            target_paths=tuple(proposal.target_paths),
            capability="self_modify",
            max_file_bytes=proposal.max_payload_bytes,
            risk_score=proposal.risk_score,
            modifications_this_session=modifications_this_session,
            concurrent_modifications=concurrent_modifications,
            recent_actions=recent_actions,
        )


# ---------------------------------------------------------------------------
# Plans and outcomes
# ---------------------------------------------------------------------------

class PlanStep(BaseModel):
    """One module call in a task's action plan."""
    capability: str
    operation: str
    payload: dict[str, Any] = Field(default_factory=dict)
    idempotent: Optional[bool] = None  # None: provider decides
    parallel: bool = False
    paths: list[str] = Field(default_factory=list)
    command: Optional[str] = None
    risk_score: float = Field(default=0.0, ge=0.0, le=1.0)

    def to_action(self, recent_actions: int = 0) -> ProposedAction:
        return ProposedAction(
            kind=ActionKind.TOOL,
            target_paths=tuple(self.paths),
            command=self.command,
            capability=self.capability,
            risk_score=self.risk_score,
            recent_actions=recent_actions,
        )


class StepResult(BaseModel):
    index: int
    capability: str
    operation: str
    success: bool
    output: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    duration_seconds: float = 0.0


class TaskOutcome(BaseModel):
    task_id: str
    status: TaskStatus
    error_kind: Optional[str] = None
    diagnostic: Optional[str] = None
    steps: list[StepResult] = Field(default_factory=list)
    checkpoint_id: Optional[str] = None
    duration_seconds: float = 0.0
    finished_at: datetime = Field(default_factory=_now)

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.COMPLETED


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

class AgentMetrics(BaseModel):
    """Point-in-time copy of the agent counters."""
    tasks_submitted: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_cancelled: int = 0
    improvements_applied: int = 0
    improvements_rolled_back: int = 0
    improvements_denied: int = 0
    timeouts: int = 0
    average_latency_seconds: float = 0.0
    start_time: datetime = Field(default_factory=_now)
    last_updated: datetime = Field(default_factory=_now)

    @property
    def success_rate(self) -> float:
        finished = self.tasks_completed + self.tasks_failed
        if finished == 0:
            return 1.0
        return self.tasks_completed / finished

    @property
    def uptime_seconds(self) -> float:
        return (self.last_updated - self.start_time).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["success_rate"] = round(self.success_rate, 4)
        return data
