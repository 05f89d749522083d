"""CLI entrypoint for IssueFlow."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import click

from issueflow.core.config import load_config
from issueflow.core.exceptions import ConfigError, IssueFlowError
from issueflow.core.factory import ComponentBundle, ComponentFactory
from issueflow.core.models import StageStatus, Task, TaskStatus, task_id_for_issue
from issueflow.workflow.watcher import IssueWatcher

_STATUS_COLORS = {
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.AWAITING_APPROVAL: "yellow",
    TaskStatus.AWAITING_CLOSURE_APPROVAL: "yellow",
    TaskStatus.DECOMPOSED: "cyan",
}

_STAGE_ICONS = {
    StageStatus.COMPLETED: "✓",
    StageStatus.FAILED: "✗",
    StageStatus.IN_PROGRESS: "…",
    StageStatus.SKIPPED: "-",
    StageStatus.PENDING: " ",
}


def _setup_logging(config_dir: Optional[Path], env: Optional[str], verbose: bool = False) -> None:
    """Apply logging configuration from config/default.yaml."""
    try:
        config = load_config(config_dir=config_dir, env=env)
        level_name = config.logging.level
        fmt = config.logging.format
    except ConfigError:
        level_name = "INFO"
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


def _open_bundle(ctx: click.Context) -> ComponentBundle:
    try:
        return ComponentFactory.create(config_dir=ctx.obj["config_dir"], env=ctx.obj["env"])
    except IssueFlowError as exc:
        raise click.ClickException(str(exc)) from exc


def _resolve_task_id(ref: str) -> str:
    """Accept either a task id or a bare issue number."""
    ref = ref.strip().lstrip("#")
    return task_id_for_issue(int(ref)) if ref.isdigit() else ref


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _echo_task(task: Task) -> None:
    status = click.style(task.status.value, fg=_STATUS_COLORS.get(task.status), bold=True)
    click.echo(f"{task.task_id}: #{task.issue_number} {task.title}")
    click.echo(f"  Status:  {status}")
    click.echo(f"  Branch:  {task.branch_name}")
    click.echo(f"  Stage:   {min(task.current_stage + 1, len(task.stages))}/{len(task.stages)}")
    if task.pr_url:
        click.echo(f"  PR:      {task.pr_url}")
    if task.error:
        click.echo(f"  Error:   {task.error}")
    if task.child_task_ids:
        click.echo(f"  Children: {', '.join(task.child_task_ids)}")
    for index, stage in enumerate(task.stages):
        icon = _STAGE_ICONS.get(stage.status, " ")
        heals = task.heal_attempts.get(str(index), 0)
        suffix = f" (healed x{heals})" if heals else ""
        click.echo(f"  [{icon}] {index + 1:2d}. {stage.stage_name} ({stage.agent_name}){suffix}")


def _echo_next_steps(task: Task) -> None:
    if task.status == TaskStatus.AWAITING_APPROVAL:
        click.echo(f"\nApprove with: issueflow approve {task.task_id}")
    elif task.status == TaskStatus.AWAITING_CLOSURE_APPROVAL:
        click.echo(
            f"\nClose the issue with:    issueflow approve-closure {task.task_id}\n"
            f"Continue the pipeline with: issueflow override {task.task_id}"
        )


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding default.yaml and environment overlays.",
)
@click.option("--env", default=None, help="Config overlay to apply (e.g. production).")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_dir: Optional[Path], env: Optional[str]) -> None:
    """IssueFlow: run GitHub issues through a multi-agent pipeline."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_dir"] = config_dir
    ctx.obj["env"] = env
    _setup_logging(config_dir, env, verbose=verbose)


@cli.command("start")
@click.argument("issue_number", type=int)
@click.option("--run", "run_all", is_flag=True, default=False, help="Run the pipeline after starting.")
@click.pass_context
def start(ctx: click.Context, issue_number: int, run_all: bool) -> None:
    """Create (or restart) the task for ISSUE_NUMBER."""
    bundle = _open_bundle(ctx)
    try:
        task = bundle.orchestrator.start_task(issue_number)
        click.echo(f"Started {task.task_id} on branch {task.branch_name}")
        if run_all:
            task = bundle.orchestrator.run_pipeline(task.task_id)
        _echo_task(task)
        _echo_next_steps(task)
    except IssueFlowError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        ComponentFactory.close(bundle)


@cli.command("run")
@click.argument("task_ref")
@click.pass_context
def run(ctx: click.Context, task_ref: str) -> None:
    """Run stages of TASK_REF until it halts, fails or completes."""
    bundle = _open_bundle(ctx)
    try:
        task = bundle.orchestrator.run_pipeline(_resolve_task_id(task_ref))
        _echo_task(task)
        _echo_next_steps(task)
    except IssueFlowError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        ComponentFactory.close(bundle)


@cli.command("next")
@click.argument("task_ref")
@click.pass_context
def next_stage(ctx: click.Context, task_ref: str) -> None:
    """Run exactly one stage of TASK_REF."""
    bundle = _open_bundle(ctx)
    try:
        task = bundle.orchestrator.run_next_stage(_resolve_task_id(task_ref))
        _echo_task(task)
        _echo_next_steps(task)
    except IssueFlowError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        ComponentFactory.close(bundle)


@cli.command("approve")
@click.argument("task_ref")
@click.option("--run", "run_all", is_flag=True, default=False, help="Keep running after approval.")
@click.pass_context
def approve(ctx: click.Context, task_ref: str, run_all: bool) -> None:
    """Approve a task waiting at an approval gate."""
    bundle = _open_bundle(ctx)
    try:
        task = bundle.orchestrator.approve_stage(_resolve_task_id(task_ref))
        click.echo(f"Approved {task.task_id} -> {task.status.value}")
        if run_all:
            task = bundle.orchestrator.run_pipeline(task.task_id)
            _echo_task(task)
            _echo_next_steps(task)
    except IssueFlowError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        ComponentFactory.close(bundle)


@cli.command("approve-closure")
@click.argument("task_ref")
@click.pass_context
def approve_closure(ctx: click.Context, task_ref: str) -> None:
    """Accept the recommendation to close the issue."""
    bundle = _open_bundle(ctx)
    try:
        task = bundle.orchestrator.approve_closure(_resolve_task_id(task_ref))
        click.echo(f"Closed issue #{task.issue_number}; {task.task_id} -> {task.status.value}")
    except IssueFlowError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        ComponentFactory.close(bundle)


@cli.command("override")
@click.argument("task_ref")
@click.option("--run", "run_all", is_flag=True, default=False, help="Keep running after the override.")
@click.pass_context
def override(ctx: click.Context, task_ref: str, run_all: bool) -> None:
    """Reject the closure recommendation and continue the pipeline."""
    bundle = _open_bundle(ctx)
    try:
        task = bundle.orchestrator.override_halt(_resolve_task_id(task_ref))
        click.echo(f"Overrode halt for {task.task_id}; continuing at stage {task.current_stage + 1}")
        if run_all:
            task = bundle.orchestrator.run_pipeline(task.task_id)
            _echo_task(task)
            _echo_next_steps(task)
    except IssueFlowError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        ComponentFactory.close(bundle)


@cli.command("status")
@click.argument("task_ref")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the full task record.")
@click.pass_context
def status(ctx: click.Context, task_ref: str, as_json: bool) -> None:
    """Show the persisted state of TASK_REF."""
    bundle = _open_bundle(ctx)
    try:
        task = bundle.orchestrator.get_task_state(_resolve_task_id(task_ref))
        if as_json:
            _echo_json(task.model_dump(mode="json"))
        else:
            _echo_task(task)
            _echo_next_steps(task)
    except IssueFlowError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        ComponentFactory.close(bundle)


@cli.command("list")
@click.pass_context
def list_tasks(ctx: click.Context) -> None:
    """List stored tasks with their status."""
    bundle = _open_bundle(ctx)
    try:
        task_ids = bundle.orchestrator.list_tasks()
        if not task_ids:
            click.echo("No tasks found.")
            return
        for task_id in task_ids:
            task = bundle.orchestrator.get_task_state(task_id)
            color = _STATUS_COLORS.get(task.status)
            click.echo(
                f"{task.task_id:<14} {click.style(task.status.value, fg=color):<26} "
                f"#{task.issue_number} {task.title}"
            )
    except IssueFlowError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        ComponentFactory.close(bundle)


@cli.command("watch")
@click.option("--once", is_flag=True, default=False, help="Check for issues once and exit.")
@click.option("--label", default=None, help="Override the watched label.")
@click.pass_context
def watch(ctx: click.Context, once: bool, label: Optional[str]) -> None:
    """Poll for labeled issues and run each through the pipeline."""
    bundle = _open_bundle(ctx)
    settings = bundle.config.watcher
    watcher = IssueWatcher(
        orchestrator=bundle.orchestrator,
        issue_tracker=bundle.issue_tracker,
        state_file=settings.state_file,
        label=label or settings.label,
        interval_seconds=settings.interval_seconds,
    )
    try:
        if once:
            tasks = watcher.check_once()
            click.echo(f"Processed {len(tasks)} issue(s)")
            for task in tasks:
                click.echo(f"  {task.task_id}: {task.status.value}")
        else:
            watcher.run()
    except KeyboardInterrupt:
        click.echo("\nWatcher stopped.")
    finally:
        ComponentFactory.close(bundle)


def main() -> None:
    """Entry point used by `issueflow` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path(__file__).parent.parent / ".env", override=True)
    cli()


if __name__ == "__main__":
    main()
