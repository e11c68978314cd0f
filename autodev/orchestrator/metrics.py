"""Agent metrics collector.

Records per-task and per-step execution data and keeps the AgentMetrics
counters. All writes are serialized behind one lock; readers receive
copies, so a snapshot is always fully formed even while tasks run.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Optional

from autodev.core.models import AgentMetrics, TaskOutcome, TaskStatus

logger = logging.getLogger("autodev.orchestrator.metrics")

LATENCY_WINDOW = 100


@dataclass
class StepMetric:
    """Single module call within a task run."""
    task_id: str
    capability: str
    operation: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    status: str = "pending"
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


@dataclass
class TaskRun:
    """Aggregated metrics for one task execution."""
    task_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: Optional[datetime] = None
    step_metrics: list[StepMetric] = field(default_factory=list)
    outcome: str = "in_progress"
    error_kind: Optional[str] = None

    @property
    def total_duration(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def bottleneck_step(self) -> Optional[str]:
        if not self.step_metrics:
            return None
        slowest = max(self.step_metrics, key=lambda m: m.duration_seconds)
        return f"{slowest.capability}.{slowest.operation}"


class MetricsCollector:
    """Single-writer, multi-reader store for AgentMetrics and recent runs."""

    def __init__(self, history_size: int = 200):
        self._lock = threading.Lock()
        self._metrics = AgentMetrics()
        self._latencies: deque[float] = deque(maxlen=LATENCY_WINDOW)
        self._runs: deque[TaskRun] = deque(maxlen=history_size)

    def seed(self, snapshot: AgentMetrics) -> None:
        """Continue counting from a snapshot persisted by an earlier session."""
        with self._lock:
            self._metrics = snapshot.model_copy()
            self._latencies.clear()
            if snapshot.average_latency_seconds > 0:
                self._latencies.append(snapshot.average_latency_seconds)
        logger.info(
            "Metrics seeded: %d completed, %d failed",
            snapshot.tasks_completed, snapshot.tasks_failed,
        )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def record_submitted(self) -> None:
        with self._lock:
            self._metrics.tasks_submitted += 1
            self._touch()

    def record_cancelled(self) -> None:
        with self._lock:
            self._metrics.tasks_cancelled += 1
            self._touch()

    def start_task(self, task_id: str) -> TaskRun:
        run = TaskRun(task_id=task_id)
        with self._lock:
            self._runs.append(run)
        return run

    def start_step(self, run: TaskRun, capability: str, operation: str) -> StepMetric:
        metric = StepMetric(
            task_id=run.task_id,
            capability=capability,
            operation=operation,
            started_at=datetime.now(UTC),
        )
        with self._lock:
            run.step_metrics.append(metric)
        return metric

    def complete_step(self, metric: StepMetric, status: str, error: Optional[str] = None) -> None:
        with self._lock:
            metric.completed_at = datetime.now(UTC)
            metric.status = status
            metric.error = error
            metric.duration_seconds = (metric.completed_at - metric.started_at).total_seconds()
        logger.debug(
            "Step %s.%s: status=%s, duration=%.2fs",
            metric.capability, metric.operation, status, metric.duration_seconds,
        )

    def complete_task(self, run: TaskRun, outcome: TaskOutcome) -> None:
        with self._lock:
            run.completed_at = datetime.now(UTC)
            run.outcome = outcome.status.value
            run.error_kind = outcome.error_kind
            if outcome.status == TaskStatus.COMPLETED:
                self._metrics.tasks_completed += 1
            elif outcome.status == TaskStatus.FAILED:
                self._metrics.tasks_failed += 1
            elif outcome.status == TaskStatus.CANCELLED:
                self._metrics.tasks_cancelled += 1
            if outcome.error_kind == "Timeout":
                self._metrics.timeouts += 1
            self._latencies.append(run.total_duration)
            self._metrics.average_latency_seconds = sum(self._latencies) / len(self._latencies)
            self._touch()

        logger.info(
            "Task %s complete: outcome=%s, duration=%.2fs, bottleneck=%s",
            run.task_id, run.outcome, run.total_duration, run.bottleneck_step or "none",
        )

    # ------------------------------------------------------------------
    # Improvements
    # ------------------------------------------------------------------

    def record_improvement_applied(self) -> None:
        with self._lock:
            self._metrics.improvements_applied += 1
            self._touch()

    def record_improvement_rolled_back(self) -> None:
        with self._lock:
            self._metrics.improvements_rolled_back += 1
            self._touch()

    def record_improvement_denied(self) -> None:
        with self._lock:
            self._metrics.improvements_denied += 1
            self._touch()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> AgentMetrics:
        with self._lock:
            self._touch()
            return self._metrics.model_copy(deep=True)

    def recent_runs(self, limit: Optional[int] = None) -> list[TaskRun]:
        with self._lock:
            runs = list(self._runs)
        return runs[-limit:] if limit else runs

    def get_summary(self) -> dict:
        """Get an aggregate summary of recorded runs."""
        runs = self.recent_runs()
        if not runs:
            return {"total_runs": 0}

        outcomes: dict[str, int] = {}
        for r in runs:
            outcomes[r.outcome] = outcomes.get(r.outcome, 0) + 1

        return {
            "total_runs": len(runs),
            "total_duration_seconds": round(sum(r.total_duration for r in runs), 2),
            "outcomes": outcomes,
        }

    def _touch(self) -> None:
        self._metrics.last_updated = datetime.now(UTC)
