"""Improvement opportunity analysis.

Turns observed metrics and task outcomes into ranked improvement
opportunities. Analysis is pluggable: the heuristic analyzer works from
the recorded metrics alone, the provider analyzer delegates to whatever
is registered for the ``analyze`` capability.
"""

from __future__ import annotations

import enum
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

from autodev.core.exceptions import ProviderError
from autodev.core.models import AgentMetrics, FileChange, TaskOutcome
from autodev.modules.base import Capability
from autodev.modules.registry import ModuleRegistry

logger = logging.getLogger("autodev.improvement.analyzer")


class ImpactLevel(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def weight(self) -> int:
        return {"LOW": 1, "MEDIUM": 2, "HIGH": 3, "CRITICAL": 4}[self.value]


class OpportunityKind(str, enum.Enum):
    RELIABILITY = "Reliability"
    PERFORMANCE = "Performance"
    TIMEOUTS = "Timeouts"
    OTHER = "Other"


@dataclass
class Observation:
    """Read-only input to analysis, gathered during the Observing phase."""
    metrics: AgentMetrics
    outcomes: list[TaskOutcome] = field(default_factory=list)
    history: list[AgentMetrics] = field(default_factory=list)


@dataclass
class Opportunity:
    kind: OpportunityKind
    description: str
    impact: ImpactLevel = ImpactLevel.MEDIUM
    effort: float = 1.0
    risk_score: float = 0.5
    target_paths: list[str] = field(default_factory=list)
    suggested_changes: list[FileChange] = field(default_factory=list)
    evidence: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"opp-{uuid.uuid4().hex[:12]}")

    @property
    def score(self) -> float:
        """Estimated impact per unit of effort."""
        return self.impact.weight / max(self.effort, 0.1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "description": self.description,
            "impact": self.impact.value,
            "effort": self.effort,
            "risk_score": self.risk_score,
            "target_paths": list(self.target_paths),
            "evidence": self.evidence,
        }


def rank_opportunities(opportunities: list[Opportunity]) -> list[Opportunity]:
    """Highest impact/effort first; ties go to the lower-risk opportunity."""
    return sorted(opportunities, key=lambda o: (-o.score, o.risk_score))


class OpportunityAnalyzer(ABC):
    """Derives candidate improvements from an Observation."""

    name: str = "analyzer"

    @abstractmethod
    def find_opportunities(self, observation: Observation) -> list[Opportunity]:
        """Return candidate opportunities, in any order."""


class HeuristicAnalyzer(OpportunityAnalyzer):
    """Detects low success rate, high latency and repeated timeouts.

    Suggested changes are strategy files under ``strategy_dir`` that the
    agent reads at start-up; they never touch protected resources.
    """

    name = "heuristic"

    def __init__(
        self,
        min_success_rate: float = 0.8,
        max_latency_seconds: float = 5.0,
        timeout_threshold: int = 2,
        strategy_dir: str = ".agent/strategies",
    ):
        self.min_success_rate = min_success_rate
        self.max_latency_seconds = max_latency_seconds
        self.timeout_threshold = timeout_threshold
        self.strategy_dir = strategy_dir.rstrip("/")

    @classmethod
    def from_config(cls, config) -> "HeuristicAnalyzer":
        si = config.self_improvement
        return cls(
            min_success_rate=si.min_success_rate,
            max_latency_seconds=si.max_acceptable_latency_seconds,
            timeout_threshold=si.timeout_pattern_threshold,
        )

    def find_opportunities(self, observation: Observation) -> list[Opportunity]:
        found: list[Opportunity] = []
        metrics = observation.metrics
        finished = metrics.tasks_completed + metrics.tasks_failed

        if finished > 0 and metrics.success_rate < self.min_success_rate:
            impact = ImpactLevel.HIGH
            if self._declining(observation.history):
                impact = ImpactLevel.CRITICAL
            found.append(self._strategy_opportunity(
                kind=OpportunityKind.RELIABILITY,
                description=(
                    f"Success rate {metrics.success_rate:.0%} is below "
                    f"{self.min_success_rate:.0%}; retry failed steps more patiently"
                ),
                impact=impact,
                effort=1.0,
                risk_score=0.2,
                filename="retry.yaml",
                content={"retry": {"max_attempts": 5, "backoff_base_seconds": 1.0}},
                evidence={"success_rate": metrics.success_rate, "finished_tasks": finished},
            ))

        if finished > 0 and metrics.average_latency_seconds > self.max_latency_seconds:
            found.append(self._strategy_opportunity(
                kind=OpportunityKind.PERFORMANCE,
                description=(
                    f"Average task latency {metrics.average_latency_seconds:.1f}s exceeds "
                    f"{self.max_latency_seconds:.1f}s; run independent plan steps in parallel"
                ),
                impact=ImpactLevel.MEDIUM,
                effort=2.0,
                risk_score=0.6,
                filename="concurrency.yaml",
                content={"concurrency": {"parallel_independent_steps": True}},
                evidence={"average_latency_seconds": metrics.average_latency_seconds},
            ))

        timeouts = sum(1 for o in observation.outcomes if o.error_kind == "Timeout")
        if timeouts >= self.timeout_threshold:
            found.append(self._strategy_opportunity(
                kind=OpportunityKind.TIMEOUTS,
                description=f"{timeouts} recent tasks timed out; extend module timeouts",
                impact=ImpactLevel.MEDIUM,
                effort=1.0,
                risk_score=0.3,
                filename="timeouts.yaml",
                content={"timeouts": {"module_timeout_multiplier": 1.5}},
                evidence={"timeouts": timeouts, "observed_outcomes": len(observation.outcomes)},
            ))

        logger.debug("Heuristic analysis found %d opportunity(ies)", len(found))
        return found

    def _strategy_opportunity(
        self,
        kind: OpportunityKind,
        description: str,
        impact: ImpactLevel,
        effort: float,
        risk_score: float,
        filename: str,
        content: dict[str, Any],
        evidence: dict[str, Any],
    ) -> Opportunity:
        path = f"{self.strategy_dir}/{filename}"
        return Opportunity(
            kind=kind,
            description=description,
            impact=impact,
            effort=effort,
            risk_score=risk_score,
            target_paths=[path],
            suggested_changes=[
                FileChange(path=path, content=yaml.safe_dump(content, sort_keys=True))
            ],
            evidence=evidence,
        )

    @staticmethod
    def _declining(history: list[AgentMetrics]) -> bool:
        if len(history) < 2:
            return False
        return history[-1].success_rate < history[0].success_rate


class ProviderAnalyzer(OpportunityAnalyzer):
    """Delegates analysis to the ``analyze`` capability (``find_opportunities``)."""

    name = "provider"

    def __init__(self, registry: ModuleRegistry, timeout: Optional[float] = None):
        self.registry = registry
        self.timeout = timeout

    def find_opportunities(self, observation: Observation) -> list[Opportunity]:
        response = self.registry.invoke(
            Capability.ANALYZE,
            "find_opportunities",
            payload={
                "metrics": observation.metrics.to_dict(),
                "outcomes": [o.model_dump(mode="json") for o in observation.outcomes],
            },
            timeout=self.timeout,
        )
        if not response.success:
            raise ProviderError(response.error or "analysis provider reported failure")

        opportunities = []
        for raw in response.data.get("opportunities", []):
            try:
                opportunities.append(_opportunity_from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed opportunity %r: %s", raw, e)
        return opportunities


def _opportunity_from_dict(raw: dict[str, Any]) -> Opportunity:
    changes = [FileChange.model_validate(c) for c in raw.get("changes", [])]
    targets = list(dict.fromkeys([*(raw.get("target_paths") or []), *(c.path for c in changes)]))
    kind_value = raw.get("kind", OpportunityKind.OTHER.value)
    try:
        kind = OpportunityKind(kind_value)
    except ValueError:
        kind = OpportunityKind.OTHER
    return Opportunity(
        kind=kind,
        description=str(raw["description"]),
        impact=ImpactLevel(str(raw.get("impact", "MEDIUM")).upper()),
        effort=float(raw.get("effort", 1.0)),
        risk_score=min(max(float(raw.get("risk_score", 0.5)), 0.0), 1.0),
        target_paths=targets,
        suggested_changes=changes,
        evidence=dict(raw.get("evidence", {})),
    )
