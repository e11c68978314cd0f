"""Main orchestration loop for the autodev core.

Dequeues the next task and drives it through the agent state machine:
  Idle → Analyzing → Planning → Executing → Validating → Idle

Task-level failures are contained at the task boundary: the task is marked
Failed and the loop walks the remaining legal states back to Idle.
System-level faults (provider unavailable, state corruption, restore
failure) escalate to Error, which suspends dequeuing until recover().
Improvement cycles run only at safe points, when the agent is Idle.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

from pydantic import ValidationError

from autodev.core.config import AppConfig
from autodev.core.exceptions import (
    AgentCoreError,
    CheckpointError,
    ImprovementInProgressError,
    InvalidTransition,
    ModificationHaltedError,
    OperationTimeoutError,
    ProviderError,
    ProviderUnavailableError,
    RestoreError,
    RollbackFailure,
    SafetyViolation,
    StateCorruptionError,
    error_kind,
)
from autodev.core.models import (
    AgentMetrics,
    AgentState,
    AgentStateKind,
    PlanStep,
    StepResult,
    Task,
    TaskOutcome,
    TaskStatus,
)
from autodev.improvement.engine import CycleResult, ImprovementEngine
from autodev.modules.base import Capability, ModuleResponse
from autodev.modules.registry import ModuleRegistry
from autodev.observability.audit import AuditLog
from autodev.orchestrator.health_monitor import HealthMonitor
from autodev.orchestrator.metrics import MetricsCollector, TaskRun
from autodev.orchestrator.state_manager import StateManager
from autodev.orchestrator.task_queue import TaskQueue
from autodev.security.commands import ActionTracker
from autodev.security.policy import SafetyValidator

logger = logging.getLogger("autodev.orchestrator.loop")

# Faults that compromise the agent rather than one task.
SYSTEM_FAULTS: tuple[type[AgentCoreError], ...] = (
    ProviderUnavailableError,
    StateCorruptionError,
    InvalidTransition,
    RestoreError,
    CheckpointError,
)


class Orchestrator:
    """Control loop: fetch task → analyze → plan → execute → validate.

    Injected dependencies:
        state_manager: Single writer of AgentState.
        queue: Pending tasks in priority order.
        registry: Capability providers for every module call.
        validator: Safety policy applied to each plan step.
        metrics: AgentMetrics collector.
        health_monitor: Pre-iteration health checks.
        engine: Optional improvement engine, run at safe points.
        config: Application configuration.
        audit: JSONL audit trail.
        modification_lock: Global lock shared with the improvement engine.
    """

    def __init__(
        self,
        state_manager: StateManager,
        queue: TaskQueue,
        registry: ModuleRegistry,
        validator: SafetyValidator,
        metrics: MetricsCollector,
        health_monitor: HealthMonitor,
        config: AppConfig,
        engine: Optional[ImprovementEngine] = None,
        audit: Optional[AuditLog] = None,
        modification_lock: Optional[threading.Lock] = None,
        action_tracker: Optional[ActionTracker] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.state_manager = state_manager
        self.queue = queue
        self.registry = registry
        self.validator = validator
        self.metrics = metrics
        self.health_monitor = health_monitor
        self.config = config
        self.engine = engine
        self.audit = audit or AuditLog()
        if modification_lock is None:
            modification_lock = engine.modification_lock if engine else threading.Lock()
        self.modification_lock = modification_lock
        self.action_tracker = action_tracker or ActionTracker()
        self._clock = clock

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._tasks: dict[str, Task] = {}
        self._outcomes: dict[str, TaskOutcome] = {}
        self._recent_outcomes: deque[TaskOutcome] = deque(maxlen=50)
        self._improvement_requested = False
        self._last_improvement = clock()
        self._current_task_id: Optional[str] = None
        self._executor = ThreadPoolExecutor(
            max_workers=config.agent.max_concurrent_tasks, thread_name_prefix="autodev-step"
        )
        self.last_cycle: Optional[CycleResult] = None

        self.state_manager.add_listener(self._on_transition)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, task: Task) -> str:
        """Enqueue a task without blocking. Returns its id.

        Raises:
            QueueClosedError: After shutdown.
        """
        task_id = self.queue.put(task)
        with self._lock:
            self._tasks[task_id] = task
        self.metrics.record_submitted()
        logger.info("Submitted task %s (%s): %s", task_id, task.priority.value, task.description)
        return task_id

    def trigger_self_improvement(self) -> bool:
        """Request an improvement cycle at the next safe point.

        Returns False when the request is rejected: improvement is
        disabled or halted, shutdown has begun, or a request is already
        pending.
        """
        if self.engine is None or not self.config.self_improvement.enabled:
            logger.warning("Self-improvement requested but disabled")
            return False
        if self.engine.halted:
            logger.warning("Self-improvement requested but halted: %s", self.engine.halt_reason)
            return False
        if self._stop.is_set():
            return False
        with self._lock:
            if self._improvement_requested:
                logger.info("Self-improvement already pending, request rejected")
                return False
            self._improvement_requested = True
        logger.info("Self-improvement requested")
        return True

    def cancel(self, task_id: str) -> bool:
        """Cancel a queued task. Tasks already executing run to completion."""
        task = self.queue.remove(task_id)
        if task is None:
            return False
        task.mark(TaskStatus.CANCELLED)
        outcome = TaskOutcome(task_id=task_id, status=TaskStatus.CANCELLED, diagnostic="cancelled")
        with self._lock:
            self._outcomes[task_id] = outcome
        self.metrics.record_cancelled()
        logger.info("Cancelled queued task %s", task_id)
        return True

    def recover(self, note: str = "manual recovery") -> None:
        """Explicit recovery from Error back to Idle."""
        self.state_manager.recover(note)
        self.audit.emit_event("state_recovered", {"note": note})

    def outcome(self, task_id: str) -> Optional[TaskOutcome]:
        with self._lock:
            return self._outcomes.get(task_id)

    def outcomes(self) -> list[TaskOutcome]:
        with self._lock:
            return list(self._outcomes.values())

    def recent_outcomes(self) -> list[TaskOutcome]:
        """Most recent finished tasks, oldest first; the improvement engine's input."""
        with self._lock:
            return list(self._recent_outcomes)

    @property
    def outcome_window(self) -> int:
        return self._recent_outcomes.maxlen or 0

    def seed_outcomes(self, outcomes: list[TaskOutcome]) -> None:
        """Prime the recent-outcome window with outcomes from an earlier session."""
        with self._lock:
            self._recent_outcomes.extend(outcomes)

    def task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            return self._tasks.get(task_id)

    def metrics_snapshot(self) -> AgentMetrics:
        return self.metrics.snapshot()

    @property
    def improvement_pending(self) -> bool:
        with self._lock:
            return self._improvement_requested

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run_once(self, timeout: float = 0.0) -> Optional[TaskOutcome]:
        """Execute one iteration of the loop.

        Runs health checks, services a due improvement cycle if the agent
        is Idle, then dequeues and processes at most one task.

        Returns:
            The task's outcome, or None if no task was processed.
        """
        state = self.state_manager.current()
        if state.is_error:
            logger.debug("Agent in %s, not dequeuing", state)
            return None

        # 1. Health checks
        checks = self.health_monitor.run_checks()
        fatal = [c for c in checks if c.fatal and not c.passed]
        if fatal:
            self._escalate(f"Health check '{fatal[0].check_name}' failed: {fatal[0].message}")
            return None
        if any(c.check_name == "circuit_breaker" and not c.passed for c in checks):
            logger.warning("Circuit breaker open, skipping this iteration")
            return None

        # 2. Improvement at a safe point
        if state.kind == AgentStateKind.IDLE and self._improvement_due():
            self._service_improvement()
            if self.state_manager.current().is_error:
                return None

        # 3. Fetch next task
        if self._stop.is_set():
            return None
        task = self.queue.get(timeout=timeout)
        if task is None:
            return None

        logger.info("Processing task %s: '%s'", task.id, task.description)
        return self._process_task(task)

    def run(self, stop_when_idle: bool = False, max_iterations: Optional[int] = None) -> int:
        """Run until shutdown (or until idle, for one-shot use).

        In Error state the loop stops dequeuing. With ``stop_when_idle``
        it gives up after ``error_grace_seconds`` without recovery.

        Returns:
            Number of tasks processed.
        """
        poll = self.config.agent.poll_interval_seconds
        grace = self.config.agent.error_grace_seconds
        processed = 0
        iterations = 0
        error_since: Optional[float] = None

        while not self._stop.is_set():
            if max_iterations is not None and iterations >= max_iterations:
                break
            iterations += 1

            if self.state_manager.current().is_error:
                if stop_when_idle:
                    error_since = error_since if error_since is not None else self._clock()
                    if self._clock() - error_since >= grace:
                        logger.error("Still in %s after %.0fs, giving up", self.state_manager.current(), grace)
                        break
                self._stop.wait(poll)
                continue
            error_since = None

            outcome = self.run_once(timeout=poll)
            if outcome is not None:
                processed += 1
                logger.info("Iteration %d complete: task %s → %s", iterations, outcome.task_id, outcome.status.value)
                continue

            if stop_when_idle and len(self.queue) == 0 and not self.improvement_pending:
                if not self.state_manager.current().is_error:
                    logger.info("No more tasks, exiting loop after %d iterations", iterations)
                    break
            elif len(self.queue) > 0:
                self._stop.wait(poll)

        return processed

    def shutdown(self) -> None:
        """Stop dequeuing, deny any pending improvement, and cancel approvals.

        An in-flight task or improvement cycle finishes on the loop thread.
        """
        if self._stop.is_set():
            return
        logger.info("Shutdown requested")
        self._stop.set()
        self.queue.close()
        with self._lock:
            denied = self._improvement_requested
            self._improvement_requested = False
        if denied:
            self.metrics.record_improvement_denied()
            self.audit.emit_event("improvement_denied", {"reason": "shutdown"})
            logger.info("Pending improvement request denied by shutdown")
        if self.engine is not None:
            self.engine.shutdown()

    def close(self, timeout: Optional[float] = None) -> None:
        """Finish shutdown: cancel queued tasks, flush metrics, stop workers.

        Waits (up to ``timeout``) for an in-flight improvement cycle to reach
        a terminal phase first.
        """
        self.shutdown()
        if self.engine is not None and not self.engine.wait_until_idle(timeout):
            logger.warning("Improvement cycle still in flight after %.1fs", timeout)
        for task in self.queue.pending():
            self.cancel(task.id)
        self._executor.shutdown(wait=True)
        self.audit.flush_metrics(self.metrics.snapshot().to_dict())

    # ------------------------------------------------------------------
    # Task processing
    # ------------------------------------------------------------------

    def _process_task(self, task: Task) -> TaskOutcome:
        start = self._clock()
        task.mark(TaskStatus.IN_PROGRESS)
        self._current_task_id = task.id
        run = self.metrics.start_task(task.id)
        steps: list[StepResult] = []
        checkpoint_id: Optional[str] = None

        try:
            with self.modification_lock:
                checkpoint_id = self.state_manager.checkpoint(
                    label=f"task {task.id}", metadata={"task_id": task.id}
                )

                self._transition(AgentState.analyzing(), task)
                failure: Optional[AgentCoreError] = None
                context: dict[str, Any] = {}
                try:
                    context = self._gather_context(task)
                except Exception as e:
                    failure = self._contain(e)

                self._transition(AgentState.planning(), task)
                plan: list[PlanStep] = []
                if failure is None:
                    try:
                        plan = self._build_plan(task, context)
                    except Exception as e:
                        failure = self._contain(e)

                self._transition(AgentState.executing(), task)
                if failure is None:
                    steps, failure = self._execute_plan(task, plan, run)

                self._transition(AgentState.validating(), task)
                if failure is None:
                    failure = self._validate(steps)

                outcome = self._finish(task, run, failure, steps, checkpoint_id, start)
                self._transition(AgentState.idle(), task)
                return outcome
        except SYSTEM_FAULTS as e:
            self._escalate(f"{e.kind}: {e}")
            finished = self.outcome(task.id)
            if finished is not None:
                return finished
            return self._finish(task, run, e, steps, checkpoint_id, start)
        except Exception as e:
            logger.exception("Unexpected error while processing task %s", task.id)
            self._escalate(f"{error_kind(e)} while processing task {task.id}: {e}")
            finished = self.outcome(task.id)
            if finished is not None:
                return finished
            return self._finish(task, run, e, steps, checkpoint_id, start)
        finally:
            self._current_task_id = None

    def _gather_context(self, task: Task) -> dict[str, Any]:
        context: dict[str, Any] = {}
        payload = {
            "task_id": task.id,
            "description": task.description,
            "files": list(task.context.files),
            "metadata": dict(task.context.metadata),
        }
        for capability, operation in (
            (Capability.QUERY_KNOWLEDGE, "query"),
            (Capability.ANALYZE, "analyze_task"),
        ):
            if not self.registry.has(capability):
                continue
            response = self._invoke(capability, operation, payload, task)
            if response.success:
                context[capability.value] = response.data
        return context

    def _build_plan(self, task: Task, context: dict[str, Any]) -> list[PlanStep]:
        """Plan from explicit metadata, else the ``generate`` capability.

        Raises:
            ProviderUnavailableError: Nothing can produce a plan.
            ProviderError: The planner returned an unusable plan.
        """
        metadata = task.context.metadata
        if metadata.get("plan"):
            return _parse_steps(metadata["plan"], "task metadata")

        command = metadata.get("command")
        if command:
            return [
                PlanStep(
                    capability=Capability.EXECUTE_TOOL.value,
                    operation="run",
                    payload={"command": command},
                    command=command if isinstance(command, str) else " ".join(command),
                    paths=list(task.context.files),
                    idempotent=False,
                )
            ]

        if not self.registry.has(Capability.GENERATE):
            raise ProviderUnavailableError(
                Capability.GENERATE.value, "No planner available: register a 'generate' provider"
            )
        response = self._invoke(
            Capability.GENERATE,
            "plan",
            {"task": task.model_dump(mode="json"), "context": context},
            task,
        )
        if not response.success:
            raise ProviderError(response.error or "planner reported failure")
        steps = _parse_steps(response.data.get("steps", []), "planner")
        if not steps:
            raise ProviderError("Planner produced an empty plan")
        return steps

    def _execute_plan(
        self, task: Task, plan: list[PlanStep], run: TaskRun
    ) -> tuple[list[StepResult], Optional[AgentCoreError]]:
        """Run steps in waves; consecutive ``parallel`` steps share a wave.

        Fails fast: no further wave starts after a failed step.
        """
        results: list[StepResult] = []
        for wave in _waves(plan):
            outcomes: list[tuple[StepResult, Optional[AgentCoreError]]]
            if len(wave) == 1:
                index, step = wave[0]
                outcomes = [self._run_step(index, step, task, run)]
            else:
                futures = [
                    self._executor.submit(self._run_step, index, step, task, run)
                    for index, step in wave
                ]
                outcomes = [f.result() for f in futures]

            failure: Optional[AgentCoreError] = None
            for result, error in outcomes:
                results.append(result)
                if error is not None and failure is None:
                    failure = error
            if failure is not None:
                return results, failure
        return results, None

    def _run_step(
        self, index: int, step: PlanStep, task: Task, run: TaskRun
    ) -> tuple[StepResult, Optional[AgentCoreError]]:
        metric = self.metrics.start_step(run, step.capability, step.operation)
        t0 = self._clock()

        def failed(error: AgentCoreError) -> tuple[StepResult, AgentCoreError]:
            self.metrics.complete_step(metric, "failure", str(error))
            return (
                StepResult(
                    index=index,
                    capability=step.capability,
                    operation=step.operation,
                    success=False,
                    error=str(error),
                    error_kind=error.kind,
                    duration_seconds=self._clock() - t0,
                ),
                error,
            )

        report = self.validator.evaluate(step.to_action(recent_actions=self.action_tracker.count()))
        if report.denied:
            self.audit.emit_event(
                "safety_verdict",
                {
                    "task_id": task.id,
                    "step": index,
                    "verdict": report.verdict.value,
                    "violations": [v.model_dump() for v in report.violations],
                },
            )
            return failed(SafetyViolation(report))
        if not report.allowed:
            logger.warning(
                "Step %d of task %s needs approval (%s); tasks cannot wait for approval",
                index, task.id, ", ".join(report.rule_ids),
            )
            return failed(SafetyViolation(report))

        self.action_tracker.record()
        try:
            response = self._invoke(
                step.capability, step.operation, step.payload, task, idempotent=step.idempotent
            )
        except SYSTEM_FAULTS:
            self.metrics.complete_step(metric, "failure", "system fault")
            raise
        except AgentCoreError as e:
            return failed(e)
        except Exception as e:
            return failed(_unexpected(e))

        if not response.success:
            return failed(ProviderError(response.error or f"{step.capability}.{step.operation} failed"))

        try:
            result = StepResult(
                index=index,
                capability=step.capability,
                operation=step.operation,
                success=True,
                output=response.data,
                duration_seconds=self._clock() - t0,
            )
        except ValidationError as e:
            return failed(_unexpected(e))
        self.metrics.complete_step(metric, "success")
        return result, None

    def _validate(self, steps: list[StepResult]) -> Optional[AgentCoreError]:
        """Postconditions: every step ran and reported success."""
        failed = [s for s in steps if not s.success]
        if failed:
            first = failed[0]
            return ProviderError(f"Step {first.index} ({first.capability}.{first.operation}) failed: {first.error}")
        for step in steps:
            rc = step.output.get("return_code")
            if rc not in (None, 0):
                return ProviderError(f"Step {step.index} exited with code {rc}")
        return None

    def _finish(
        self,
        task: Task,
        run: TaskRun,
        failure: Optional[BaseException],
        steps: list[StepResult],
        checkpoint_id: Optional[str],
        start: float,
    ) -> TaskOutcome:
        status = TaskStatus.COMPLETED if failure is None else TaskStatus.FAILED
        task.mark(status)
        outcome = TaskOutcome(
            task_id=task.id,
            status=status,
            error_kind=error_kind(failure) if failure is not None else None,
            diagnostic=str(failure) if failure is not None else None,
            steps=steps,
            checkpoint_id=checkpoint_id,
            duration_seconds=self._clock() - start,
        )
        with self._lock:
            self._outcomes[task.id] = outcome
            self._recent_outcomes.append(outcome)
        self.metrics.complete_task(run, outcome)
        if failure is not None:
            logger.warning("Task %s failed [%s]: %s", task.id, outcome.error_kind, outcome.diagnostic)
        self.audit.emit_event(
            "task_outcome",
            {
                "task_id": task.id,
                "status": status.value,
                "error_kind": outcome.error_kind,
                "diagnostic": outcome.diagnostic,
            },
        )
        return outcome

    # ------------------------------------------------------------------
    # Improvement
    # ------------------------------------------------------------------

    def _improvement_due(self) -> bool:
        if self.engine is None or not self.config.self_improvement.enabled or self.engine.halted:
            return False
        with self._lock:
            if self._improvement_requested:
                return True
        interval = self.config.self_improvement.improvement_interval
        return interval > 0 and self._clock() - self._last_improvement >= interval

    def _service_improvement(self) -> None:
        assert self.engine is not None
        with self._lock:
            self._improvement_requested = False
        self._last_improvement = self._clock()
        try:
            self.last_cycle = self.engine.run_cycle(self.recent_outcomes())
        except RollbackFailure as e:
            logger.critical("Improvement cycle ended in rollback failure: %s", e)
            self.last_cycle = self.engine.last_result
        except (ModificationHaltedError, ImprovementInProgressError) as e:
            logger.warning("Improvement cycle not started: %s", e)
        except SYSTEM_FAULTS as e:
            self._escalate(f"{e.kind} during improvement cycle: {e}")
        except Exception as e:
            logger.exception("Improvement cycle raised unexpectedly")
            self._escalate(f"{error_kind(e)} during improvement cycle: {e}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _invoke(
        self,
        capability: Capability | str,
        operation: str,
        payload: dict[str, Any],
        task: Task,
        idempotent: Optional[bool] = None,
    ) -> ModuleResponse:
        try:
            response = self.registry.invoke(
                capability,
                operation,
                payload,
                task_id=task.id,
                timeout=self.config.agent.module_timeout_seconds,
                idempotent=idempotent,
            )
        except (OperationTimeoutError, ProviderError) as e:
            if not isinstance(e, ProviderUnavailableError):
                self.health_monitor.record_provider_failure()
            raise
        self.health_monitor.record_provider_success()
        return response

    @staticmethod
    def _contain(error: Exception) -> AgentCoreError:
        """Return a task-level error; re-raise system faults."""
        if isinstance(error, SYSTEM_FAULTS):
            raise error
        if isinstance(error, AgentCoreError):
            return error
        logger.warning("Unexpected %s contained as task failure: %s", type(error).__name__, error)
        return _unexpected(error)

    def _transition(self, state: AgentState, task: Task) -> None:
        self.state_manager.transition(state, note=f"task {task.id}")

    def _escalate(self, reason: str) -> None:
        if self.state_manager.escalate(reason):
            self.audit.emit_event("state_escalation", {"reason": reason})

    def _on_transition(self, previous: AgentState, current: AgentState) -> None:
        if current.is_error:
            logger.error("Entered %s (from %s)", current, previous)


def _unexpected(error: Exception) -> ProviderError:
    return ProviderError(f"Unexpected {type(error).__name__}: {error}")


def _parse_steps(raw_steps: Any, source: str) -> list[PlanStep]:
    if not isinstance(raw_steps, list):
        raise ProviderError(f"Plan from {source} is not a list")
    try:
        return [s if isinstance(s, PlanStep) else PlanStep.model_validate(s) for s in raw_steps]
    except ValidationError as e:
        raise ProviderError(f"Malformed plan from {source}: {e}") from e


def _waves(plan: list[PlanStep]) -> list[list[tuple[int, PlanStep]]]:
    waves: list[list[tuple[int, PlanStep]]] = []
    for index, step in enumerate(plan):
        if step.parallel and waves and waves[-1][0][1].parallel:
            waves[-1].append((index, step))
        else:
            waves.append([(index, step)])
    return waves
