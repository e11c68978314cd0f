"""Safety validator for proposed modifications and tool actions.

Stateless policy engine. Given a ProposedAction it returns a SafetyReport
with verdict Allow, Deny or RequireApproval. Rule categories run in a
fixed order and the first Deny short-circuits:

1. Path and capability rules (protected-path, malformed-path,
   outside-workspace, forbidden-command, reserved-capability)
2. Resource limits (file-size-limit, rate-limit,
   session-modification-limit, concurrent-modification-limit)
3. Approval rules (risk-threshold, manual-approval-required)

Paths are judged by string normalization only; the filesystem is never
touched, so identical inputs always reproduce identical verdicts.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from autodev.core.exceptions import SafetyViolation
from autodev.core.models import (
    ActionKind,
    ProposedAction,
    RuleViolation,
    SafetyReport,
    SafetyVerdict,
)

logger = logging.getLogger("autodev.security.policy")

RESERVED_TOOL_CAPABILITIES = frozenset({"self_modify"})


@dataclass(frozen=True)
class SafetyValidator:
    """Policy configuration plus the pure ``evaluate`` function over it."""

    workspace_root: str = field(default_factory=lambda: os.path.abspath("."))
    protected_paths: tuple[str, ...] = (
        ".agent/core/**",
        ".agent/safety/**",
        ".agent/auth/**",
        ".agent/config/schema*",
    )
    forbidden_commands: tuple[str, ...] = ("rm -rf /", "dd if=/dev/zero", "mkfs", "shutdown")
    max_file_size_bytes: int = 10 * 1024 * 1024
    max_actions_per_hour: int = 200
    max_modifications_per_session: int = 10
    max_concurrent_modifications: int = 1
    risk_approval_threshold: float = 0.5
    auto_apply: bool = False

    @classmethod
    def from_config(cls, config, workspace_root: Union[str, Path]) -> "SafetyValidator":
        """Build from an AppConfig."""
        return cls(
            workspace_root=os.path.abspath(str(workspace_root)),
            protected_paths=tuple(config.safety.protected_paths),
            forbidden_commands=tuple(config.safety.forbidden_commands),
            max_file_size_bytes=config.safety.max_file_size_bytes,
            max_actions_per_hour=config.safety.max_actions_per_hour,
            max_modifications_per_session=config.self_improvement.max_modifications_per_session,
            max_concurrent_modifications=config.safety.max_concurrent_modifications,
            risk_approval_threshold=config.self_improvement.risk_approval_threshold,
            auto_apply=config.self_improvement.auto_apply,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def evaluate(self, action: ProposedAction) -> SafetyReport:
        """Return the verdict for ``action``. Never raises for a ProposedAction."""
        for rule_group in (self._path_rules, self._limit_rules):
            violations = rule_group(action)
            if violations:
                report = SafetyReport(verdict=SafetyVerdict.DENY, violations=tuple(violations))
                logger.info(
                    "Denied %s action: %s",
                    action.kind.value,
                    "; ".join(f"{v.rule_id} ({v.evidence})" for v in violations),
                )
                return report

        approvals = self._approval_rules(action)
        if approvals:
            return SafetyReport(verdict=SafetyVerdict.REQUIRE_APPROVAL, violations=tuple(approvals))
        return SafetyReport(verdict=SafetyVerdict.ALLOW)

    def enforce(self, action: ProposedAction) -> SafetyReport:
        """Evaluate and raise on Deny.

        Raises:
            SafetyViolation: If the verdict is Deny.
        """
        report = self.evaluate(action)
        if report.denied:
            raise SafetyViolation(report)
        return report

    def is_protected(self, path: str) -> bool:
        """True when ``path`` normalizes to a protected location."""
        rel, _ = self._normalize(path)
        return rel is not None and self._protected_match(rel) is not None

    # ------------------------------------------------------------------
    # Rule groups
    # ------------------------------------------------------------------

    def _path_rules(self, action: ProposedAction) -> list[RuleViolation]:
        normalized: list[tuple[str, Optional[str], Optional[str]]] = [
            (path, *self._normalize(path)) for path in action.target_paths
        ]

        protected = []
        for raw, rel, _ in normalized:
            pattern = self._protected_match(rel) if rel is not None else None
            if pattern is not None:
                protected.append(
                    RuleViolation(
                        rule_id="protected-path",
                        evidence=f"{raw} matches {pattern}",
                        rationale="Protected resources cannot be changed by automated modification",
                    )
                )
        if protected:
            return protected

        problems = [
            RuleViolation(rule_id=problem, evidence=repr(raw), rationale=_PATH_RATIONALE[problem])
            for raw, rel, problem in normalized
            if problem is not None
        ]
        if problems:
            return problems

        if action.command is not None:
            command = " ".join(action.command.split())
            for forbidden in self.forbidden_commands:
                if forbidden and forbidden in command:
                    return [
                        RuleViolation(
                            rule_id="forbidden-command",
                            evidence=f"{command!r} contains {forbidden!r}",
                            rationale="Command is on the forbidden list",
                        )
                    ]

        if action.kind == ActionKind.TOOL and action.capability in RESERVED_TOOL_CAPABILITIES:
            return [
                RuleViolation(
                    rule_id="reserved-capability",
                    evidence=f"capability={action.capability}",
                    rationale="Self-modification is only reachable through the improvement cycle",
                )
            ]
        return []

    def _limit_rules(self, action: ProposedAction) -> list[RuleViolation]:
        if action.max_file_bytes > self.max_file_size_bytes:
            return [
                RuleViolation(
                    rule_id="file-size-limit",
                    evidence=f"{action.max_file_bytes} bytes > {self.max_file_size_bytes}",
                    rationale="Payload exceeds the maximum file size",
                )
            ]
        if action.recent_actions >= self.max_actions_per_hour:
            return [
                RuleViolation(
                    rule_id="rate-limit",
                    evidence=f"{action.recent_actions} actions in the last hour",
                    rationale=f"Action budget of {self.max_actions_per_hour}/hour exhausted",
                )
            ]
        if action.kind == ActionKind.MODIFICATION:
            if action.modifications_this_session >= self.max_modifications_per_session:
                return [
                    RuleViolation(
                        rule_id="session-modification-limit",
                        evidence=f"{action.modifications_this_session} modifications this session",
                        rationale=(
                            f"Session limit of {self.max_modifications_per_session} "
                            "modifications reached"
                        ),
                    )
                ]
            if action.concurrent_modifications >= self.max_concurrent_modifications:
                return [
                    RuleViolation(
                        rule_id="concurrent-modification-limit",
                        evidence=f"{action.concurrent_modifications} modifications in flight",
                        rationale="Another modification is already being applied",
                    )
                ]
        return []

    def _approval_rules(self, action: ProposedAction) -> list[RuleViolation]:
        reasons = []
        if action.risk_score > self.risk_approval_threshold:
            reasons.append(
                RuleViolation(
                    rule_id="risk-threshold",
                    evidence=f"risk {action.risk_score:.2f} > {self.risk_approval_threshold:.2f}",
                    rationale="High-risk action needs human approval",
                )
            )
        if action.kind == ActionKind.MODIFICATION and not self.auto_apply:
            reasons.append(
                RuleViolation(
                    rule_id="manual-approval-required",
                    evidence="auto_apply=false",
                    rationale="Automatic application is disabled",
                )
            )
        return reasons

    # ------------------------------------------------------------------
    # Path helpers
    # ------------------------------------------------------------------

    def _normalize(self, path: object) -> tuple[Optional[str], Optional[str]]:
        """Return ``(workspace-relative posix path, problem rule id)``."""
        if not isinstance(path, str) or not path.strip():
            return None, "malformed-path"
        if "\x00" in path:
            return None, "malformed-path"
        lowered = path.lower()
        if "%2f" in lowered or "%2e" in lowered:
            return None, "malformed-path"
        if path.startswith("~"):
            return None, "outside-workspace"

        candidate = path.replace("\\", "/")
        root = self.workspace_root.replace("\\", "/")
        if posixpath.isabs(candidate):
            normalized = posixpath.normpath(candidate)
            root = posixpath.normpath(root)
            if normalized == root:
                return ".", None
            if not normalized.startswith(root.rstrip("/") + "/"):
                return None, "outside-workspace"
            normalized = normalized[len(root.rstrip("/")) + 1:]
        else:
            normalized = posixpath.normpath(candidate)
        if normalized == ".." or normalized.startswith("../"):
            return None, "outside-workspace"
        return normalized, None

    def _protected_match(self, rel: str) -> Optional[str]:
        lowered = rel.lower()
        for pattern in self.protected_paths:
            pat = pattern.replace("\\", "/").lower()
            if pat.startswith("./"):
                pat = pat[2:]
            if fnmatch.fnmatchcase(lowered, pat):
                return pattern
            prefix = pat[:-3] if pat.endswith("/**") else pat.rstrip("/")
            if not any(ch in prefix for ch in "*?["):
                if lowered == prefix or lowered.startswith(prefix + "/"):
                    return pattern
        return None


_PATH_RATIONALE = {
    "malformed-path": "Path could not be resolved",
    "outside-workspace": "Path resolves outside the workspace",
}
