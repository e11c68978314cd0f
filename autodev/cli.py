"""CLI entrypoint for the autodev core.

Exit codes:
    0  success
    1  a task or improvement cycle failed
    2  invalid configuration or arguments
    3  the agent ended in the unrecoverable Error state
"""

from __future__ import annotations

import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Optional

import click

from autodev.core.exceptions import ConfigError, RollbackFailure
from autodev.core.models import Task, TaskContext, TaskPriority, TaskStatus

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_UNRECOVERABLE = 3

_STATUS_COLORS = {
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.CANCELLED: "yellow",
}


def _setup_logging(verbose: bool = False, config_dir: Optional[Path] = None, env: Optional[str] = None) -> None:
    """Apply logging configuration from config/default.yaml."""
    from autodev.core.config import load_config

    try:
        config = load_config(config_dir=config_dir, env=env)
        level_name = config.logging.level
        fmt = config.logging.format
    except ConfigError:
        level_name = "INFO"
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


def _build_bundle(ctx: click.Context, approval_listener=None):
    from autodev.core.factory import ComponentFactory

    opts = ctx.obj
    try:
        return ComponentFactory.create(
            config_dir=opts["config_dir"],
            env=opts["env"],
            workspace_dir=opts["workspace"],
            approval_listener=approval_listener,
        )
    except ConfigError as exc:
        click.echo(click.style(f"Configuration error: {exc}", fg="red"), err=True)
        ctx.exit(EXIT_CONFIG)


def _close_bundle(bundle) -> None:
    from autodev.core.factory import ComponentFactory

    ComponentFactory.close(bundle)


@click.group()
@click.option(
    "--config-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory holding default.yaml and overlays.",
)
@click.option("--env", default=None, help="Optional config overlay environment.")
@click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Workspace root the agent may modify (default: current directory).",
)
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.pass_context
def cli(
    ctx: click.Context,
    config_dir: Optional[Path],
    env: Optional[str],
    workspace: Optional[Path],
    verbose: bool,
) -> None:
    """Autonomous development agent core."""
    ctx.ensure_object(dict)
    ctx.obj.update(config_dir=config_dir, env=env, workspace=workspace, verbose=verbose)
    _setup_logging(verbose=verbose, config_dir=config_dir, env=env)


@cli.command("run")
@click.argument("descriptions", nargs=-1, required=True)
@click.option(
    "--priority",
    type=click.Choice([p.value for p in TaskPriority], case_sensitive=False),
    default=TaskPriority.NORMAL.value,
    show_default=True,
)
@click.option("--command", "command", default=None, help="Shell command the task runs.")
@click.option("--file", "files", multiple=True, help="Workspace file the task touches (repeatable).")
@click.option("--improve", is_flag=True, default=False, help="Request an improvement cycle afterwards.")
@click.pass_context
def run_tasks(
    ctx: click.Context,
    descriptions: tuple[str, ...],
    priority: str,
    command: Optional[str],
    files: tuple[str, ...],
    improve: bool,
) -> None:
    """Submit one task per DESCRIPTION and run until the queue drains."""
    bundle = _build_bundle(ctx)
    orchestrator = bundle.orchestrator
    chosen = next(p for p in TaskPriority if p.value.lower() == priority.lower())
    metadata: dict[str, Any] = {"command": command} if command else {}

    try:
        task_ids = [
            orchestrator.submit(
                Task(
                    description=description,
                    priority=chosen,
                    context=TaskContext(
                        workspace_path=str(bundle.workspace_dir),
                        files=list(files),
                        metadata=dict(metadata),
                    ),
                )
            )
            for description in descriptions
        ]
        if improve:
            orchestrator.trigger_self_improvement()
        orchestrator.run(stop_when_idle=True)
    finally:
        _close_bundle(bundle)

    failed = 0
    click.echo(click.style("\nTask summary:", bold=True))
    for task_id in task_ids:
        outcome = orchestrator.outcome(task_id)
        if outcome is None:
            click.echo(f"  {task_id}  not processed")
            failed += 1
            continue
        label = click.style(outcome.status.value, fg=_STATUS_COLORS.get(outcome.status))
        detail = f"  [{outcome.error_kind}] {outcome.diagnostic}" if outcome.error_kind else ""
        click.echo(f"  {task_id}  {label}  {outcome.duration_seconds:.2f}s{detail}")
        if outcome.status != TaskStatus.COMPLETED:
            failed += 1

    if orchestrator.last_cycle is not None:
        _echo_cycle(orchestrator.last_cycle)

    state = bundle.state_manager.current()
    if state.is_error:
        click.echo(click.style(f"Agent ended in {state}", fg="red", bold=True), err=True)
        ctx.exit(EXIT_UNRECOVERABLE)
    ctx.exit(EXIT_FAILURE if failed else EXIT_OK)


@cli.command("improve")
@click.option(
    "--interactive/--no-interactive",
    default=True,
    show_default=True,
    help="Prompt for approval when a proposal needs it.",
)
@click.pass_context
def improve(ctx: click.Context, interactive: bool) -> None:
    """Run a single self-improvement cycle."""
    from autodev.improvement.engine import ImprovementPhase

    def _prompt(gate, request) -> None:
        proposal = request.proposal
        click.echo(click.style(f"\nProposal {proposal.id} needs approval", bold=True))
        click.echo(f"  Rationale: {proposal.rationale}")
        click.echo(f"  Targets:   {', '.join(proposal.target_paths)}")
        click.echo(f"  Risk:      {proposal.risk_score:.2f} ({proposal.risk_level.value})")
        click.echo(f"  Rules:     {', '.join(request.report.rule_ids)}")
        if click.confirm("Apply this modification?", default=False):
            gate.approve(proposal.id, actor="cli")
        else:
            gate.reject(proposal.id, actor="cli", reason="declined at prompt")

    bundle = _build_bundle(ctx, approval_listener=_prompt if interactive else None)
    try:
        result = bundle.engine.run_cycle(bundle.orchestrator.recent_outcomes())
    except RollbackFailure as exc:
        click.echo(click.style(f"Rollback failed: {exc}", fg="red", bold=True), err=True)
        ctx.exit(EXIT_UNRECOVERABLE)
    finally:
        _close_bundle(bundle)

    _echo_cycle(result)
    if result.final_phase in (ImprovementPhase.CONFIRMED, ImprovementPhase.NO_OPPORTUNITY):
        ctx.exit(EXIT_OK)
    ctx.exit(EXIT_FAILURE)


@cli.command("metrics")
@click.pass_context
def show_metrics(ctx: click.Context) -> None:
    """Print the last persisted metrics snapshot."""
    from autodev.core.config import load_config
    from autodev.orchestrator.metrics import MetricsCollector

    opts = ctx.obj
    try:
        config = load_config(config_dir=opts["config_dir"], env=opts["env"])
    except ConfigError as exc:
        click.echo(click.style(f"Configuration error: {exc}", fg="red"), err=True)
        ctx.exit(EXIT_CONFIG)

    workspace = (opts["workspace"] or Path.cwd()).resolve()
    metrics_path = config.observability.metrics_path
    path = Path(metrics_path) if metrics_path else None
    if path is not None and not path.is_absolute():
        path = workspace / path

    if path is not None and path.exists():
        data = json.loads(path.read_text(encoding="utf-8"))
    else:
        click.echo("No metrics recorded yet.", err=True)
        data = {"metrics": MetricsCollector().snapshot().to_dict()}
    click.echo(json.dumps(data, indent=2, default=str))


@cli.command("checkpoints")
@click.option("--limit", type=click.IntRange(min=1), default=10, show_default=True)
@click.pass_context
def list_checkpoints(ctx: click.Context, limit: int) -> None:
    """List the most recent checkpoints, newest first."""
    bundle = _build_bundle(ctx)
    try:
        checkpoints = bundle.store.latest(limit)
    finally:
        _close_bundle(bundle)

    if not checkpoints:
        click.echo("No checkpoints.")
        return
    for cp in checkpoints:
        click.echo(
            f"{cp.id}  {cp.created_at.isoformat(timespec='seconds')}  "
            f"{str(cp.state):<12}  {cp.label}"
        )


@cli.command("daemon")
@click.pass_context
def daemon(ctx: click.Context) -> None:
    """Run the orchestrator until SIGINT or SIGTERM."""
    bundle = _build_bundle(ctx)
    orchestrator = bundle.orchestrator

    def _graceful(signum: int, frame: Any) -> None:
        click.echo(click.style("\nShutting down after the current task...", fg="yellow"), err=True)
        orchestrator.shutdown()

    signal.signal(signal.SIGINT, _graceful)
    signal.signal(signal.SIGTERM, _graceful)

    click.echo(click.style(f"autodev running in {bundle.workspace_dir}", bold=True))
    try:
        processed = orchestrator.run()
    finally:
        _close_bundle(bundle)

    click.echo(f"Tasks processed: {processed}")
    if bundle.state_manager.current().is_error:
        ctx.exit(EXIT_UNRECOVERABLE)


def _echo_cycle(result) -> None:
    summary = result.summary()
    click.echo(click.style(f"\nImprovement cycle {summary['cycle_id']}:", bold=True))
    click.echo(f"  Phases:      {' -> '.join(summary['phases'])}")
    if summary["proposal_id"]:
        click.echo(f"  Proposal:    {summary['proposal_id']} ({summary['proposal_status']})")
    if summary["rule_ids"]:
        click.echo(f"  Rules:       {', '.join(summary['rule_ids'])}")
    if summary["checkpoint_id"]:
        click.echo(f"  Checkpoint:  {summary['checkpoint_id']}")
    if summary["reason"]:
        click.echo(f"  Reason:      {summary['reason']}")


def main() -> None:
    """Entry point used by `autodev` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path.cwd() / ".env")
    cli()


if __name__ == "__main__":
    main()
