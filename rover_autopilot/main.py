"""Rover Autopilot CLI entrypoint."""

import asyncio
import signal
import sys
from pathlib import Path

import click

from .config.loader import ConfigError, create_default_config, load_config
from .pipeline.runtime import AutopilotRuntime
from .utils.logging import setup_logging

CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
}


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "--config",
    "-c",
    default=".rover/autopilot.yml",
    help="Path to configuration file",
    type=click.Path(exists=False, path_type=Path),
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose output",
)
@click.pass_context
def cli(ctx: click.Context, config: Path, verbose: bool) -> None:
    """Rover Autopilot - queue, run, commit and resolve agent tasks."""
    log_level = "DEBUG" if verbose else "INFO"
    setup_logging(level=log_level)

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose


def _load_runtime(ctx: click.Context) -> AutopilotRuntime:
    config_path: Path = ctx.obj["config_path"]
    try:
        config = load_config(config_path)
    except ConfigError as e:
        click.echo(f"✗ Configuration error: {e}", err=True)
        sys.exit(1)

    setup_logging(
        level="DEBUG" if ctx.obj["verbose"] else config.logging.level,
        log_dir=Path(config.project.root) / config.logging.log_dir,
        rotation_mb=config.logging.rotation_mb,
        retention_days=config.logging.retention_days,
    )
    return AutopilotRuntime(config)


@cli.command()
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite existing configuration",
)
@click.pass_context
def init(ctx: click.Context, force: bool) -> None:
    """Initialize Rover Autopilot configuration."""
    config_path: Path = ctx.obj["config_path"]

    if config_path.exists() and not force:
        click.echo(f"Configuration already exists: {config_path}")
        click.echo("Use --force to overwrite")
        sys.exit(1)

    try:
        create_default_config(config_path)
    except OSError as e:
        click.echo(f"✗ Failed to create configuration: {e}", err=True)
        sys.exit(1)

    click.echo(f"✓ Created configuration: {config_path}")
    click.echo("\nNext steps:")
    click.echo(f"  1. Review and customize {config_path}")
    click.echo('  2. Queue work: rover-autopilot enqueue --title "..." --description "..."')
    click.echo("  3. Run: rover-autopilot run")


@cli.command()
@click.option("--title", "-t", required=True, help="Task title")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--workflow", "-w", default="swe", show_default=True, help="Workflow to run")
@click.option(
    "--depends-on",
    "depends_on",
    default=None,
    help="Workflow action id that must complete first (its branch becomes the base)",
)
@click.option(
    "--criteria",
    multiple=True,
    help="Acceptance criterion (repeatable)",
)
@click.pass_context
def enqueue(
    ctx: click.Context,
    title: str,
    description: str,
    workflow: str,
    depends_on: str | None,
    criteria: tuple[str, ...],
) -> None:
    """Queue a workflow for the autopilot."""
    runtime = _load_runtime(ctx)
    action = runtime.enqueue(
        title=title,
        description=description,
        workflow=workflow,
        depends_on_action_id=depends_on,
        acceptance_criteria=list(criteria),
    )
    click.echo(f"✓ Queued workflow: {title}")
    click.echo(f"  action: {action.action_id}")
    click.echo(f"  trace:  {action.trace_id}")


async def _run_forever(runtime: AutopilotRuntime) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runtime.stop)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform; Ctrl-C still raises KeyboardInterrupt.
            pass
    await runtime.run()


@cli.command()
@click.option(
    "--once",
    is_flag=True,
    help="Poll every stage once and exit",
)
@click.pass_context
def run(ctx: click.Context, once: bool) -> None:
    """Run the autopilot pipeline."""
    runtime = _load_runtime(ctx)

    if once:
        results = asyncio.run(runtime.run_once())
        for stage, counts in results.items():
            summary = ", ".join(f"{k}={v}" for k, v in counts.items() if v) or "idle"
            click.echo(f"{stage:10} {summary}")
        return

    click.echo("Autopilot running (Ctrl-C to stop)")
    try:
        asyncio.run(_run_forever(runtime))
    except KeyboardInterrupt:
        click.echo("\nInterrupted")


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show pending actions, traces and tasks."""
    runtime = _load_runtime(ctx)
    snapshot = runtime.status()

    click.echo(f"Project: {snapshot['project_id']}")
    pending = ", ".join(f"{kind}={count}" for kind, count in snapshot["pending"].items())
    click.echo(f"Pending: {pending}")

    traces = snapshot["traces"]
    click.echo(f"\nTraces ({len(traces)}):")
    for trace in traces:
        steps = " → ".join(f"{s.kind.value}:{s.status.value}" for s in trace.steps)
        click.echo(f"  {trace.trace_id[:8]}  retries={trace.retry_count}  {trace.summary}")
        if steps:
            click.echo(f"    {steps}")

    tasks = snapshot["tasks"]
    click.echo(f"\nTasks ({len(tasks)}):")
    for task in tasks:
        click.echo(f"  #{task.id:<4} {task.status.value:12} {task.branch_name or '-':32} {task.title}")
        if task.error:
            click.echo(f"        error: {task.error}")


@cli.command()
@click.option(
    "--lines",
    "-n",
    default=50,
    type=int,
    show_default=True,
    help="Number of entries to show",
)
@click.pass_context
def logs(ctx: click.Context, lines: int) -> None:
    """Show the autopilot audit log."""
    runtime = _load_runtime(ctx)
    entries = runtime.store.read_logs(max_entries=lines)

    if not entries:
        click.echo("No log entries")
        return

    for entry in entries:
        click.echo(f"{entry.ts}  {entry.trace_id[:8]}  {entry.step:8} {entry.action:8} {entry.summary}")


if __name__ == "__main__":
    cli()
