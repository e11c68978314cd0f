"""Component factory for the autodev core.

Creates and wires every infrastructure component (checkpoint store, state
manager, safety validator, module registry and its providers, improvement
engine) so the orchestrator receives fully-initialized dependencies.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from autodev.core.config import AppConfig, load_config
from autodev.core.models import AgentMetrics, TaskOutcome
from autodev.improvement.analyzer import HeuristicAnalyzer
from autodev.improvement.approvals import ApprovalGate, ApprovalListener
from autodev.improvement.engine import ImprovementEngine
from autodev.modules.base import Capability
from autodev.modules.llm_gateway import LLMGateway
from autodev.modules.registry import ModuleRegistry, RetryPolicy
from autodev.modules.self_tests import SelfTestRunner
from autodev.modules.shell import ShellToolProvider
from autodev.modules.workspace import WorkspaceModifier
from autodev.observability.audit import AuditLog
from autodev.orchestrator.health_monitor import HealthMonitor
from autodev.orchestrator.loop import Orchestrator
from autodev.orchestrator.metrics import MetricsCollector
from autodev.orchestrator.state_manager import StateManager
from autodev.orchestrator.task_queue import TaskQueue
from autodev.security.commands import ActionTracker, CommandPolicy
from autodev.security.policy import SafetyValidator
from autodev.storage.checkpoint_store import CheckpointStore

logger = logging.getLogger("autodev.core.factory")


@dataclass
class AgentBundle:
    """Container for all initialized components.

    The factory builds the bundle once; callers talk to ``orchestrator``
    and reach the rest for inspection (CLI reporting, tests).
    """

    config: AppConfig
    workspace_dir: Path
    store: CheckpointStore
    state_manager: StateManager
    queue: TaskQueue
    validator: SafetyValidator
    registry: ModuleRegistry
    metrics: MetricsCollector
    health_monitor: HealthMonitor
    gate: ApprovalGate
    engine: ImprovementEngine
    audit: AuditLog
    orchestrator: Orchestrator


class ComponentFactory:
    """Factory for creating and wiring the agent core.

    Usage:
        bundle = ComponentFactory.create(config_dir=Path("config"), workspace_dir=Path("."))
        bundle.orchestrator.submit(Task(description="run the tests"))
        bundle.orchestrator.run(stop_when_idle=True)
        ComponentFactory.close(bundle)
    """

    @staticmethod
    def create(
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        workspace_dir: Optional[Path] = None,
        api_key: Optional[str] = None,
        config: Optional[AppConfig] = None,
        approval_listener: Optional[ApprovalListener] = None,
    ) -> AgentBundle:
        """Create and wire all components.

        Args:
            config_dir: Path to config/ directory. Default: project root/config.
            env: Environment name for config overlay (e.g., "test").
            workspace_dir: Root of the workspace the agent may touch.
                Falls back to Path.cwd().resolve() when not specified.
            api_key: OpenRouter API key. Falls back to OPENROUTER_API_KEY;
                without one no ``generate`` provider is registered.
            config: Pre-built config; skips loading from disk.
            approval_listener: Called when a proposal needs human approval.

        Raises:
            ConfigError: Invalid configuration.
        """
        logger.info("Initializing components...")

        # --- Config ---
        if config is None:
            config = load_config(config_dir=config_dir, env=env)
        workspace = (workspace_dir or Path.cwd()).resolve()

        # --- State ---
        storage_dir = config.checkpoints.storage_dir
        store = CheckpointStore(
            storage_dir=_under(workspace, storage_dir) if storage_dir else None,
            max_checkpoints=config.checkpoints.max_checkpoints,
        )
        state_manager = StateManager(store)
        logger.info("Checkpoint store ready (%d existing)", len(store))

        # --- Safety ---
        validator = SafetyValidator.from_config(config, workspace_root=workspace)
        command_policy = CommandPolicy.from_config(config, workspace_dir=workspace)

        # --- Providers ---
        registry = ModuleRegistry(
            retry_policy=RetryPolicy.from_config(config),
            default_timeout=config.agent.module_timeout_seconds,
            max_workers=config.agent.max_concurrent_tasks * 2,
        )
        registry.register(Capability.SELF_MODIFY, WorkspaceModifier(workspace))
        registry.register(
            Capability.EXECUTE_TOOL,
            ShellToolProvider(command_policy, timeout=config.tools.command_timeout_seconds),
        )
        registry.register(
            Capability.RUN_SELF_TESTS,
            SelfTestRunner(
                workspace,
                command=list(config.self_tests.command),
                timeout=config.self_tests.timeout_seconds,
            ),
        )
        gateway = LLMGateway(config=config.llm, api_key=api_key)
        if gateway.health():
            registry.register(Capability.GENERATE, gateway)
            logger.info("LLM gateway configured (base_url=%s)", config.llm.base_url)
        else:
            gateway.close()
            logger.info("No OpenRouter API key; 'generate' capability not registered")

        # --- Observability ---
        obs = config.observability
        audit = AuditLog(
            jsonl_path=_under(workspace, obs.audit_jsonl_path) if obs.audit_jsonl_path else None,
            metrics_path=_under(workspace, obs.metrics_path) if obs.metrics_path else None,
        )
        metrics = MetricsCollector()
        health_monitor = HealthMonitor(registry, state_manager)

        # --- Improvement ---
        modification_lock = threading.Lock()
        gate = ApprovalGate(listener=approval_listener)
        engine = ImprovementEngine(
            state_manager=state_manager,
            validator=validator,
            registry=registry,
            metrics=metrics,
            analyzer=HeuristicAnalyzer.from_config(config),
            gate=gate,
            config=config.self_improvement,
            checkpoint_config=config.checkpoints,
            audit=audit,
            modification_lock=modification_lock,
            module_timeout=config.agent.module_timeout_seconds,
            test_timeout=config.self_tests.timeout_seconds,
        )

        # --- Orchestrator ---
        queue = TaskQueue()
        orchestrator = Orchestrator(
            state_manager=state_manager,
            queue=queue,
            registry=registry,
            validator=validator,
            metrics=metrics,
            health_monitor=health_monitor,
            config=config,
            engine=engine,
            audit=audit,
            modification_lock=modification_lock,
            action_tracker=ActionTracker(),
        )

        _restore_observations(audit, metrics, orchestrator)

        logger.info("All components initialized (workspace=%s)", workspace)
        return AgentBundle(
            config=config,
            workspace_dir=workspace,
            store=store,
            state_manager=state_manager,
            queue=queue,
            validator=validator,
            registry=registry,
            metrics=metrics,
            health_monitor=health_monitor,
            gate=gate,
            engine=engine,
            audit=audit,
            orchestrator=orchestrator,
        )

    @staticmethod
    def close(bundle: AgentBundle) -> None:
        """Cleanly shut down all components."""
        bundle.orchestrator.close()
        bundle.registry.close()
        logger.info("All components shut down")


def _under(workspace: Path, path: str) -> Path:
    candidate = Path(path)
    return candidate if candidate.is_absolute() else workspace / candidate


def _restore_observations(
    audit: AuditLog, metrics: MetricsCollector, orchestrator: Orchestrator
) -> None:
    """Carry persisted metrics and recent task outcomes into a new session."""
    persisted = audit.load_metrics()
    if persisted:
        for event_type, count in dict(persisted.get("counters", {})).items():
            audit.counters[event_type] = int(count)
        if persisted.get("metrics"):
            try:
                metrics.seed(AgentMetrics.model_validate(persisted["metrics"]))
            except ValidationError as e:
                logger.warning("Ignoring malformed persisted metrics: %s", e)

    outcomes = []
    for record in audit.load_events("task_outcome", limit=orchestrator.outcome_window):
        try:
            outcomes.append(TaskOutcome.model_validate(record["payload"]))
        except (KeyError, ValidationError) as e:
            logger.warning("Skipping malformed task_outcome event: %s", e)
    if outcomes:
        orchestrator.seed_outcomes(outcomes)
        logger.info("Restored %d recent task outcome(s) from the audit log", len(outcomes))
