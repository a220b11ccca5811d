"""CLI entry point for plan-sync."""

import asyncio
import json
import signal
import sys
from pathlib import Path

import click
import structlog

from plansync.config.settings import SyncOptions, SyncSettings
from plansync.engine.reconciler import sync_plan
from plansync.exceptions import (
    AuthFailedError,
    ConfigurationError,
    PlanParseError,
    PlanSyncError,
    SyncAbortedError,
)
from plansync.models.plan import Plan
from plansync.models.resources import SyncRun
from plansync.planning.dependency import DependencyGraph, resolve
from plansync.planning.desired import derive_desired_resources
from plansync.planning.parser import parse_plan_file
from plansync.providers.factory import create_tracker
from plansync.utils.logging_config import configure_logging
from plansync.utils.status_reporter import summarize

log = structlog.get_logger(__name__)

EXIT_ERROR = 1
EXIT_ABORTED = 2
EXIT_INTERRUPTED = 130


@click.group()
@click.option("--config", default="plansync.yaml", help="Path to configuration file")
@click.option("--log-level", default="INFO", help="Logging level")
@click.option("--json-logs/--console-logs", default=False, help="Emit logs as JSON lines")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str, json_logs: bool) -> None:
    """plan-sync: Synchronize a sprint plan into an issue tracker."""
    configure_logging(log_level, json_output=json_logs)
    ctx.obj = {"config_path": Path(config)}


def _load_settings(ctx: click.Context, required: bool) -> SyncSettings | None:
    config_path: Path = ctx.obj["config_path"]
    if not config_path.exists():
        if required:
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        log.debug("config_not_found", path=str(config_path))
        return None
    return SyncSettings.from_yaml(config_path)


def _load_plan(plan_path: str) -> tuple[Plan, DependencyGraph]:
    try:
        plan = parse_plan_file(plan_path)
    except OSError as e:
        raise PlanSyncError(f"Cannot read plan {plan_path}: {e}") from e
    return plan, resolve(plan)


def _echo_warnings(plan: Plan) -> None:
    for warning in plan.warnings:
        click.echo(f"Warning: {warning}", err=True)


@cli.command()
@click.argument("plan_path", type=click.Path(dir_okay=False))
def validate(plan_path: str) -> None:
    """Parse a plan and check its dependency graph."""
    try:
        plan, graph = _load_plan(plan_path)
    except PlanParseError as e:
        click.echo(f"Error: {e.message}", err=True)
        for warning in e.warnings:
            click.echo(f"Warning: {warning}", err=True)
        sys.exit(EXIT_ERROR)
    except PlanSyncError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(EXIT_ERROR)

    _echo_warnings(plan)
    tasks = sum(len(sprint.tasks) for sprint in plan.sprints)
    click.echo(f"Plan: {plan.title}")
    click.echo(f"Sprints: {len(plan.sprints)}")
    click.echo(f"Tasks: {tasks}")
    click.echo(f"Gates: {len(plan.sprints)}")
    click.echo(f"Critical path: {' -> '.join(graph.critical_path())}")
    click.echo("✅ Plan is valid")


@cli.command(name="plan")
@click.argument("plan_path", type=click.Path(dir_okay=False))
@click.pass_context
def plan_command(ctx: click.Context, plan_path: str) -> None:
    """List the resources a plan requires, without contacting the tracker."""
    try:
        settings = _load_settings(ctx, required=False)
        plan, graph = _load_plan(plan_path)
        options = settings.sync if settings else SyncOptions()
        definitions = settings.sprint_definitions if settings else []
        desired = derive_desired_resources(plan, graph=graph, options=options, sprint_definitions=definitions)
    except PlanSyncError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(EXIT_ERROR)

    _echo_warnings(plan)
    for resource in desired:
        sprint = "-" if resource.sprint is None else resource.sprint
        click.echo(f"{resource.kind.value:<10} {sprint!s:<4} {resource.key}")
    click.echo(f"\n{len(desired)} resources")


@cli.command()
@click.argument("plan_path", type=click.Path(dir_okay=False))
@click.option("--concurrency", type=click.IntRange(1, 32), help="Concurrent creations (overrides config)")
@click.option("--partitions", type=click.IntRange(1, 16), help="Sprint-range partitions (overrides config)")
@click.option("--json", "as_json", is_flag=True, help="Print the summary as JSON")
@click.pass_context
def sync(
    ctx: click.Context,
    plan_path: str,
    concurrency: int | None,
    partitions: int | None,
    as_json: bool,
) -> None:
    """Create the plan's labels, milestones and issues on the tracker."""
    try:
        settings = _load_settings(ctx, required=True)
        overrides = {
            name: value for name, value in (("concurrency", concurrency), ("partitions", partitions)) if value
        }
        if overrides:
            settings = settings.model_copy(update={"sync": settings.sync.model_copy(update=overrides)})

        plan, graph = _load_plan(plan_path)
        _echo_warnings(plan)
        run = asyncio.run(_run_sync(plan, graph, settings))
        summary = summarize(run)

        if as_json:
            click.echo(json.dumps(summary.to_dict(), indent=2))
        else:
            click.echo(summary.render_table())

        if run.aborted:
            raise SyncAbortedError(run.aborted)
    except SyncAbortedError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(EXIT_ABORTED)
    except AuthFailedError as e:
        click.echo(f"Error: Authentication rejected by tracker: {e.message}", err=True)
        sys.exit(EXIT_ABORTED)
    except PlanSyncError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("sync_error", exc_info=True)
        sys.exit(EXIT_ERROR)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(EXIT_INTERRUPTED)

    if run.cancelled:
        sys.exit(EXIT_INTERRUPTED)
    if summary.failures:
        sys.exit(EXIT_ERROR)


async def _run_sync(plan: Plan, graph: DependencyGraph, settings: SyncSettings) -> SyncRun:
    """Run a synchronization, turning SIGINT into a cooperative cancel."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_cancel() -> None:
        log.warning("cancellation_requested")
        click.echo("\nCancelling: waiting for in-flight calls to finish...", err=True)
        cancel_event.set()

    try:
        loop.add_signal_handler(signal.SIGINT, request_cancel)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False

    try:
        async with create_tracker(settings) as tracker:
            return await sync_plan(plan, tracker, settings, cancel_event=cancel_event, graph=graph)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)


if __name__ == "__main__":
    cli()
