"""Human approval gate for proposals that the safety validator escalates.

A request blocks the improvement cycle until someone approves or rejects
it, or until the bounded wait expires. A proposal denied by timeout is
finished: a later cycle has to propose again from scratch.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Callable, Optional

from autodev.core.models import ModificationProposal, SafetyReport

logger = logging.getLogger("autodev.improvement.approvals")


class ApprovalDecision(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class ApprovalRequest:
    proposal: ModificationProposal
    report: SafetyReport
    requested_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    decision: Optional[ApprovalDecision] = None
    actor: Optional[str] = None
    note: str = ""
    _event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def proposal_id(self) -> str:
        return self.proposal.id


ApprovalListener = Callable[["ApprovalGate", ApprovalRequest], None]


class ApprovalGate:
    """Pending approval requests keyed by proposal id."""

    def __init__(self, listener: Optional[ApprovalListener] = None):
        self.listener = listener
        self._pending: dict[str, ApprovalRequest] = {}
        self._lock = threading.Lock()

    def request(self, proposal: ModificationProposal, report: SafetyReport) -> ApprovalRequest:
        req = ApprovalRequest(proposal=proposal, report=report)
        with self._lock:
            self._pending[proposal.id] = req
        logger.info(
            "Approval requested for proposal %s (%s): %s",
            proposal.id,
            ", ".join(proposal.target_paths),
            ", ".join(report.rule_ids),
        )
        if self.listener is not None:
            try:
                self.listener(self, req)
            except Exception as e:
                logger.warning("Approval listener failed for %s: %s", proposal.id, e)
        return req

    def wait(self, proposal_id: str, timeout: float) -> ApprovalRequest:
        """Block until a decision or ``timeout``; the request leaves the gate either way."""
        with self._lock:
            req = self._pending.get(proposal_id)
        if req is None:
            raise KeyError(f"No approval request for proposal {proposal_id}")

        if not req._event.wait(timeout):
            self._resolve(proposal_id, ApprovalDecision.TIMED_OUT, None, f"no decision within {timeout:.0f}s")
        with self._lock:
            self._pending.pop(proposal_id, None)
        return req

    def approve(self, proposal_id: str, actor: str = "operator") -> bool:
        return self._resolve(proposal_id, ApprovalDecision.APPROVED, actor, "")

    def reject(self, proposal_id: str, actor: str = "operator", reason: str = "") -> bool:
        return self._resolve(proposal_id, ApprovalDecision.REJECTED, actor, reason)

    def cancel_all(self, reason: str = "shutdown") -> int:
        with self._lock:
            ids = list(self._pending)
        count = sum(1 for pid in ids if self._resolve(pid, ApprovalDecision.CANCELLED, None, reason))
        if count:
            logger.info("Cancelled %d pending approval(s): %s", count, reason)
        return count

    def pending(self) -> list[ApprovalRequest]:
        with self._lock:
            return [r for r in self._pending.values() if r.decision is None]

    def _resolve(
        self,
        proposal_id: str,
        decision: ApprovalDecision,
        actor: Optional[str],
        note: str,
    ) -> bool:
        with self._lock:
            req = self._pending.get(proposal_id)
            if req is None or req.decision is not None:
                return False
            req.decision = decision
            req.actor = actor
            req.note = note
            req._event.set()
        logger.info("Proposal %s %s%s", proposal_id, decision.value, f" by {actor}" if actor else "")
        return True
