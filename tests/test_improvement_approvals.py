"""Tests for autodev/improvement/approvals.py — bounded human approval."""

from __future__ import annotations

import threading

import pytest

from autodev.core.models import FileChange, ModificationProposal, SafetyReport, SafetyVerdict
from autodev.improvement.approvals import ApprovalDecision, ApprovalGate


def _proposal() -> ModificationProposal:
    return ModificationProposal(changes=[FileChange(path="strategies/a.yaml", content="a: 1\n")])


REPORT = SafetyReport(verdict=SafetyVerdict.REQUIRE_APPROVAL)


class TestApprovalGate:
    def test_approve_from_another_thread(self):
        gate = ApprovalGate()
        proposal = _proposal()
        gate.request(proposal, REPORT)
        timer = threading.Timer(0.05, gate.approve, args=(proposal.id, "alice"))
        timer.start()

        req = gate.wait(proposal.id, timeout=5)
        timer.join()

        assert req.decision == ApprovalDecision.APPROVED
        assert req.actor == "alice"
        assert gate.pending() == []

    def test_timeout(self):
        gate = ApprovalGate()
        proposal = _proposal()
        gate.request(proposal, REPORT)

        req = gate.wait(proposal.id, timeout=0.05)

        assert req.decision == ApprovalDecision.TIMED_OUT
        # A late decision has nothing to attach to
        assert not gate.approve(proposal.id)

    def test_reject_with_reason(self):
        gate = ApprovalGate(listener=lambda g, r: g.reject(r.proposal_id, "bob", "too risky"))
        proposal = _proposal()
        gate.request(proposal, REPORT)
        req = gate.wait(proposal.id, timeout=1)
        assert req.decision == ApprovalDecision.REJECTED
        assert req.note == "too risky"

    def test_first_decision_wins(self):
        gate = ApprovalGate()
        proposal = _proposal()
        gate.request(proposal, REPORT)
        assert gate.approve(proposal.id)
        assert not gate.reject(proposal.id)
        assert gate.wait(proposal.id, timeout=1).decision == ApprovalDecision.APPROVED

    def test_cancel_all(self):
        gate = ApprovalGate()
        first, second = _proposal(), _proposal()
        gate.request(first, REPORT)
        gate.request(second, REPORT)

        assert gate.cancel_all("shutdown") == 2

        assert gate.pending() == []
        assert gate.wait(first.id, timeout=1).decision == ApprovalDecision.CANCELLED

    def test_failing_listener_does_not_break_request(self):
        def explode(gate, req):
            raise RuntimeError("ui gone")

        gate = ApprovalGate(listener=explode)
        proposal = _proposal()
        req = gate.request(proposal, REPORT)
        assert req.decision is None
        assert [r.proposal_id for r in gate.pending()] == [proposal.id]

    def test_unknown_proposal(self):
        with pytest.raises(KeyError):
            ApprovalGate().wait("prop-missing", timeout=0.01)
