"""Improvement engine: the transactional self-modification cycle.

One cycle walks Observing → Analyzing → Proposing → Validating, ends at
Denied (or NoOpportunity), or proceeds through Approved → Applying →
Testing and ends at Confirmed or RolledBack.

Guarantees:
- At most one cycle is in flight; a concurrent request is rejected.
- Applying and Testing run inside the global modification lock.
- A checkpoint is taken strictly before a proposal is applied.
- Failures below Applying end the cycle as Denied. From Applying onward
  every failure triggers an explicit restore; if the restore itself fails
  the agent escalates to Error and automated modification halts until
  ``reset_halt`` is called.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from autodev.core.config import CheckpointConfig, SelfImprovementConfig
from autodev.core.exceptions import (
    ImprovementInProgressError,
    ModificationHaltedError,
    ProviderError,
    RollbackFailure,
    error_kind,
)
from autodev.core.models import (
    AgentMetrics,
    AgentState,
    FileChange,
    ModificationProposal,
    ProposalStatus,
    ProposedAction,
    SafetyReport,
    SafetyVerdict,
    TaskOutcome,
)
from autodev.improvement.analyzer import (
    Observation,
    Opportunity,
    OpportunityAnalyzer,
    rank_opportunities,
)
from autodev.improvement.approvals import ApprovalDecision, ApprovalGate
from autodev.modules.base import Capability
from autodev.modules.registry import ModuleRegistry
from autodev.observability.audit import AuditLog
from autodev.orchestrator.metrics import MetricsCollector
from autodev.orchestrator.state_manager import StateManager, StateSnapshot
from autodev.security.policy import SafetyValidator

logger = logging.getLogger("autodev.improvement.engine")


class ImprovementPhase(str, enum.Enum):
    OBSERVING = "Observing"
    ANALYZING = "Analyzing"
    PROPOSING = "Proposing"
    VALIDATING = "Validating"
    APPROVED = "Approved"
    DENIED = "Denied"
    APPLYING = "Applying"
    TESTING = "Testing"
    CONFIRMED = "Confirmed"
    ROLLED_BACK = "RolledBack"
    NO_OPPORTUNITY = "NoOpportunity"
    ROLLBACK_FAILED = "RollbackFailed"


TERMINAL_PHASES = frozenset({
    ImprovementPhase.DENIED,
    ImprovementPhase.CONFIRMED,
    ImprovementPhase.ROLLED_BACK,
    ImprovementPhase.NO_OPPORTUNITY,
    ImprovementPhase.ROLLBACK_FAILED,
})


@dataclass
class CycleResult:
    """Record of one improvement cycle."""
    cycle_id: str = field(default_factory=lambda: f"cycle-{uuid.uuid4().hex[:12]}")
    phases: list[ImprovementPhase] = field(default_factory=list)
    opportunity: Optional[Opportunity] = None
    proposal: Optional[ModificationProposal] = None
    safety_report: Optional[SafetyReport] = None
    checkpoint_id: Optional[str] = None
    restored_checkpoint_id: Optional[str] = None
    pre_apply_snapshot: Optional[StateSnapshot] = None
    post_rollback_snapshot: Optional[StateSnapshot] = None
    reason: str = ""
    error_kind: Optional[str] = None

    @property
    def final_phase(self) -> Optional[ImprovementPhase]:
        return self.phases[-1] if self.phases else None

    @property
    def finished(self) -> bool:
        return self.final_phase in TERMINAL_PHASES

    def enter(self, phase: ImprovementPhase) -> None:
        self.phases.append(phase)
        logger.debug("Cycle %s → %s", self.cycle_id, phase.value)

    def summary(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "final_phase": self.final_phase.value if self.final_phase else None,
            "phases": [p.value for p in self.phases],
            "proposal_id": self.proposal.id if self.proposal else None,
            "proposal_status": self.proposal.status.value if self.proposal else None,
            "rule_ids": self.safety_report.rule_ids if self.safety_report else [],
            "checkpoint_id": self.checkpoint_id,
            "reason": self.reason,
        }


class ImprovementEngine:
    """Runs improvement cycles on top of the state manager, validator and registry.

    Injected dependencies:
        state_manager: Owner of AgentState; checkpoints and restores.
        validator: Safety policy for proposals.
        registry: Providers for self_modify, run_self_tests and generate.
        metrics: Source of observations and sink for improvement counters.
        analyzer: Opportunity detection strategy.
        gate: Human approval channel for RequireApproval verdicts.
        modification_lock: Global lock shared with the orchestrator.
    """

    def __init__(
        self,
        state_manager: StateManager,
        validator: SafetyValidator,
        registry: ModuleRegistry,
        metrics: MetricsCollector,
        analyzer: OpportunityAnalyzer,
        gate: Optional[ApprovalGate] = None,
        config: Optional[SelfImprovementConfig] = None,
        checkpoint_config: Optional[CheckpointConfig] = None,
        audit: Optional[AuditLog] = None,
        modification_lock: Optional[threading.Lock] = None,
        module_timeout: Optional[float] = None,
        test_timeout: Optional[float] = None,
    ):
        self.state_manager = state_manager
        self.validator = validator
        self.registry = registry
        self.metrics = metrics
        self.analyzer = analyzer
        self.gate = gate or ApprovalGate()
        self.config = config or SelfImprovementConfig()
        self.checkpoint_config = checkpoint_config or CheckpointConfig(storage_dir=None)
        self.audit = audit or AuditLog()
        self.modification_lock = modification_lock or threading.Lock()
        self.module_timeout = module_timeout
        self.test_timeout = test_timeout

        self._cycle_lock = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()
        self._shutdown = threading.Event()
        self._halted = False
        self._halt_reason: Optional[str] = None
        self._session_modifications = 0
        self._in_flight_modifications = 0
        self._history: deque[AgentMetrics] = deque(maxlen=self.config.metrics_history_size)
        self.last_result: Optional[CycleResult] = None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def in_progress(self) -> bool:
        return self._cycle_lock.locked()

    @property
    def halted(self) -> bool:
        return self._halted

    @property
    def halt_reason(self) -> Optional[str]:
        return self._halt_reason

    @property
    def session_modifications(self) -> int:
        return self._session_modifications

    def reset_halt(self, actor: str) -> None:
        """Administrative reset after a rollback failure."""
        if not self._halted:
            return
        logger.warning("Self-modification halt cleared by %s (was: %s)", actor, self._halt_reason)
        self.audit.emit_event("halt_reset", {"actor": actor, "reason": self._halt_reason})
        self._halted = False
        self._halt_reason = None

    def shutdown(self) -> None:
        """Deny any pending approval and refuse new cycles."""
        self._shutdown.set()
        self.gate.cancel_all("shutdown")

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no cycle is in flight. Returns False on timeout.

        A cycle already in Applying or Testing is never interrupted; it runs
        to Confirmed or RolledBack before this returns.
        """
        return self._idle.wait(timeout)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self, outcomes: Sequence[TaskOutcome] = ()) -> CycleResult:
        """Run one full improvement cycle from the Idle (or Validating) state.

        Raises:
            ModificationHaltedError: A previous rollback failed and no one reset it.
            ImprovementInProgressError: Another cycle is in flight.
            InvalidTransition: The agent is not in a state that may start improving.
            RollbackFailure: Restoring after a failed apply or test failed.
        """
        if self._halted:
            raise ModificationHaltedError(
                f"Automated self-modification halted: {self._halt_reason}"
            )
        if not self._cycle_lock.acquire(blocking=False):
            raise ImprovementInProgressError("An improvement cycle is already in flight")

        try:
            self._idle.clear()
            result = CycleResult()
            self.last_result = result
            if self._shutdown.is_set():
                self._end_denied(result, "shutdown in progress")
                return result

            self.state_manager.transition(AgentState.improving(), note=result.cycle_id)
            try:
                self._run_phases(result, list(outcomes))
            finally:
                if not self.state_manager.current().is_error:
                    self.state_manager.transition(AgentState.idle(), note=f"{result.cycle_id} done")

            logger.info(
                "Improvement cycle %s finished: %s%s",
                result.cycle_id,
                result.final_phase.value if result.final_phase else "?",
                f" ({result.reason})" if result.reason else "",
            )
            self.audit.emit_event("improvement_cycle", result.summary())
            return result
        finally:
            self._idle.set()
            self._cycle_lock.release()

    def _run_phases(self, result: CycleResult, outcomes: list[TaskOutcome]) -> None:
        # Observing (read-only)
        result.enter(ImprovementPhase.OBSERVING)
        snapshot = self.metrics.snapshot()
        self._history.append(snapshot)
        observation = Observation(metrics=snapshot, outcomes=outcomes, history=list(self._history))

        # Analyzing
        result.enter(ImprovementPhase.ANALYZING)
        try:
            ranked = rank_opportunities(self.analyzer.find_opportunities(observation))
        except Exception as e:
            self._end_denied(result, f"analysis failed: {e}", error_kind(e))
            return
        if not ranked:
            result.enter(ImprovementPhase.NO_OPPORTUNITY)
            result.reason = "no improvement opportunities found"
            return
        opportunity = ranked[0]
        result.opportunity = opportunity

        # Proposing
        result.enter(ImprovementPhase.PROPOSING)
        try:
            proposal = self._build_proposal(opportunity)
        except Exception as e:
            self._end_denied(result, f"proposal generation failed: {e}", error_kind(e))
            return
        result.proposal = proposal
        self._audit_proposal(proposal, None)

        # Validating
        result.enter(ImprovementPhase.VALIDATING)
        action = ProposedAction.from_proposal(
            proposal,
            modifications_this_session=self._session_modifications,
            concurrent_modifications=self._in_flight_modifications,
        )
        report = self.validator.evaluate(action)
        proposal.safety_report = report
        result.safety_report = report
        self.audit.emit_event(
            "safety_verdict",
            {
                "proposal_id": proposal.id,
                "verdict": report.verdict.value,
                "violations": [v.model_dump() for v in report.violations],
            },
        )

        if report.denied:
            rules = ", ".join(report.rule_ids)
            self._advance(proposal, ProposalStatus.REJECTED, f"denied: {rules}")
            for v in report.violations:
                logger.warning("Proposal %s denied [%s]: %s (%s)", proposal.id, v.rule_id, v.rationale, v.evidence)
            self._end_denied(result, f"safety denial: {rules}", "SafetyViolation")
            return

        self._advance(proposal, ProposalStatus.VALIDATED, report.verdict.value)
        if report.verdict == SafetyVerdict.REQUIRE_APPROVAL:
            decision, actor, note = self._await_approval(proposal, report)
            if decision != ApprovalDecision.APPROVED:
                self._advance(proposal, ProposalStatus.REJECTED, f"approval {decision.value}")
                self._end_denied(result, f"approval {decision.value}{f': {note}' if note else ''}")
                return
            proposal.approved_by = actor
        self._advance(proposal, ProposalStatus.APPROVED, f"approved by {proposal.approved_by or 'policy'}")
        result.enter(ImprovementPhase.APPROVED)

        # Applying + Testing: globally exclusive
        with self.modification_lock:
            self._in_flight_modifications += 1
            try:
                self._apply_and_test(result, proposal)
            finally:
                self._in_flight_modifications -= 1

    def _apply_and_test(self, result: CycleResult, proposal: ModificationProposal) -> None:
        result.enter(ImprovementPhase.APPLYING)

        try:
            snap = self.registry.invoke(
                Capability.SELF_MODIFY,
                "snapshot",
                {"paths": list(proposal.target_paths)},
                timeout=self.module_timeout,
            )
            if not snap.success:
                raise ProviderError(snap.error or "resource snapshot failed")
            resources: dict[str, Optional[str]] = dict(snap.data.get("resources", {}))
            checkpoint_id = self.state_manager.checkpoint(
                label=f"pre-apply {proposal.id}",
                metadata={
                    "proposal_id": proposal.id,
                    "prior_digest": _resources_digest(resources),
                    "target_paths": list(proposal.target_paths),
                    "resources": resources,
                },
            )
        except Exception as e:
            # Nothing has been modified yet.
            self._advance(proposal, ProposalStatus.REJECTED, f"checkpoint failed: {e}")
            self._end_denied(result, f"could not checkpoint before apply: {e}", error_kind(e))
            return

        result.checkpoint_id = checkpoint_id
        result.pre_apply_snapshot = self.state_manager.snapshot()

        try:
            response = self.registry.invoke(
                Capability.SELF_MODIFY,
                "apply",
                {"changes": [c.model_dump() for c in proposal.changes]},
                idempotent=False,
                timeout=self.module_timeout,
            )
            if not response.success:
                raise ProviderError(response.error or "apply reported failure")
            self._advance(proposal, ProposalStatus.APPLIED, f"checkpoint {checkpoint_id}")
            applied = self.state_manager.get_metadata("applied_proposals", [])
            self.state_manager.set_metadata("applied_proposals", [*applied, proposal.id])
        except Exception as e:
            self._rollback(result, proposal, resources, checkpoint_id, f"apply failed: {e}", error_kind(e))
            return

        result.enter(ImprovementPhase.TESTING)
        try:
            tests = self.registry.invoke(
                Capability.RUN_SELF_TESTS, "run", timeout=self.test_timeout
            )
            passed = tests.success and bool(tests.data.get("passed", True))
            failure = tests.error or "self-tests reported failure"
            failure_kind = "SelfTestFailure"
        except Exception as e:
            passed = False
            failure = str(e)
            failure_kind = error_kind(e)

        if not passed:
            self._rollback(result, proposal, resources, checkpoint_id, f"self-tests failed: {failure}", failure_kind)
            return

        self._advance(proposal, ProposalStatus.CONFIRMED, "self-tests passed")
        result.enter(ImprovementPhase.CONFIRMED)
        self._session_modifications += 1
        self.metrics.record_improvement_applied()
        logger.info(
            "Proposal %s confirmed (%d/%d this session)",
            proposal.id, self._session_modifications, self.config.max_modifications_per_session,
        )
        self._prune_checkpoints()

    def _rollback(
        self,
        result: CycleResult,
        proposal: ModificationProposal,
        resources: dict[str, Optional[str]],
        checkpoint_id: str,
        reason: str,
        kind: Optional[str],
    ) -> None:
        logger.warning("Rolling back proposal %s to checkpoint %s: %s", proposal.id, checkpoint_id, reason)
        result.reason = reason
        result.error_kind = kind
        try:
            restored = self.registry.invoke(
                Capability.SELF_MODIFY,
                "restore",
                {"resources": resources},
                timeout=self.module_timeout,
            )
            if not restored.success:
                raise ProviderError(restored.error or "resource restore failed")
            self.state_manager.restore(checkpoint_id)
        except Exception as e:
            message = f"Rollback of proposal {proposal.id} to checkpoint {checkpoint_id} failed: {e}"
            result.enter(ImprovementPhase.ROLLBACK_FAILED)
            result.reason = f"{reason}; {message}"
            result.error_kind = "RollbackFailure"
            self._halted = True
            self._halt_reason = message
            self.state_manager.escalate(message)
            self.audit.emit_event(
                "rollback_failed",
                {"proposal_id": proposal.id, "checkpoint_id": checkpoint_id, "error": str(e)},
            )
            self.audit.emit_event("state_escalation", {"reason": message})
            logger.critical("%s. Automated self-modification halted.", message)
            raise RollbackFailure(proposal.id, checkpoint_id, str(e)) from e

        result.restored_checkpoint_id = checkpoint_id
        result.post_rollback_snapshot = self.state_manager.snapshot()
        self._advance(proposal, ProposalStatus.ROLLED_BACK, reason)
        result.enter(ImprovementPhase.ROLLED_BACK)
        self.metrics.record_improvement_rolled_back()
        identical = result.post_rollback_snapshot == result.pre_apply_snapshot
        logger.warning(
            "Rolled back proposal %s: before=%s after=%s (state identical: %s)",
            proposal.id, checkpoint_id, result.restored_checkpoint_id, identical,
        )
        self.audit.emit_event(
            "rollback",
            {
                "proposal_id": proposal.id,
                "before_checkpoint_id": checkpoint_id,
                "after_checkpoint_id": result.restored_checkpoint_id,
                "reason": reason,
                "state_identical": identical,
            },
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _build_proposal(self, opportunity: Opportunity) -> ModificationProposal:
        if opportunity.suggested_changes:
            return ModificationProposal(
                target_paths=list(opportunity.target_paths),
                changes=list(opportunity.suggested_changes),
                rationale=opportunity.description,
                risk_score=opportunity.risk_score,
                generator=f"analyzer:{self.analyzer.name}",
                opportunity_id=opportunity.id,
            )

        response = self.registry.invoke(
            Capability.GENERATE,
            "propose_modification",
            {"opportunity": opportunity.to_dict()},
            timeout=self.module_timeout,
        )
        if not response.success:
            raise ProviderError(response.error or "proposal generation failed")
        data = response.data
        changes = [FileChange.model_validate(c) for c in data.get("changes", [])]
        risk = float(data.get("risk_score", opportunity.risk_score))
        return ModificationProposal(
            changes=changes,
            rationale=str(data.get("rationale") or opportunity.description),
            # A generator may not lower the analyzer's risk estimate.
            risk_score=min(max(risk, opportunity.risk_score, 0.0), 1.0),
            generator=f"{response.provider}:{data.get('model', 'unknown')}",
            opportunity_id=opportunity.id,
        )

    def _await_approval(
        self, proposal: ModificationProposal, report: SafetyReport
    ) -> tuple[ApprovalDecision, Optional[str], str]:
        if self._shutdown.is_set():
            return ApprovalDecision.CANCELLED, None, "shutdown"
        self.gate.request(proposal, report)
        req = self.gate.wait(proposal.id, timeout=self.config.approval_timeout_seconds)
        decision = req.decision or ApprovalDecision.TIMED_OUT
        return decision, req.actor, req.note

    def _advance(self, proposal: ModificationProposal, status: ProposalStatus, note: str) -> None:
        previous = proposal.status
        proposal.advance(status, note)
        self._audit_proposal(proposal, previous, note)

    def _audit_proposal(
        self,
        proposal: ModificationProposal,
        previous: Optional[ProposalStatus],
        note: str = "created",
    ) -> None:
        self.audit.emit_event(
            "proposal_transition",
            {
                "proposal_id": proposal.id,
                "from": previous.value if previous else None,
                "to": proposal.status.value,
                "note": note,
                "target_paths": list(proposal.target_paths),
                "generator": proposal.generator,
            },
        )

    def _end_denied(self, result: CycleResult, reason: str, kind: Optional[str] = None) -> None:
        result.enter(ImprovementPhase.DENIED)
        result.reason = reason
        result.error_kind = kind
        self.metrics.record_improvement_denied()
        logger.info("Improvement cycle %s denied: %s", result.cycle_id, reason)

    def _prune_checkpoints(self) -> None:
        max_age = self.checkpoint_config.max_age_hours
        self.state_manager.store.prune(
            keep=self.checkpoint_config.max_checkpoints,
            max_age_seconds=max_age * 3600 if max_age is not None else None,
        )


def _resources_digest(resources: dict[str, Optional[str]]) -> str:
    canonical = json.dumps(resources, sort_keys=True, ensure_ascii=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
