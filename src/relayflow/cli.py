"""CLI entry point for the relayflow engine.

Usage::

    relayflow validate orders.json
    relayflow deploy orders.dot
    relayflow start orders --records seed.json
    relayflow review
    relayflow serve --port 8080
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from pathlib import Path
from typing import Any, NoReturn

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from relayflow.config import EngineConfig
from relayflow.engine import Engine
from relayflow.errors import CompilationError, RelayflowError
from relayflow.pipeline.dot import DotParseError, load_definition, render_dot
from relayflow.pipeline.models import DeadLetterStatus, PipelineDefinition, Run, RunStatus
from relayflow.pipeline.validator import ValidationIssue, ValidationLevel, validate_definition
from relayflow.server import ControlServer

console = Console()

DEFAULT_STATE_DIR = ".relayflow/state"

_STATUS_STYLES = {
    RunStatus.SUCCEEDED: "green",
    RunStatus.FAILED: "red",
    RunStatus.CANCELLED: "yellow",
    RunStatus.PAUSED: "magenta",
    RunStatus.RUNNING: "cyan",
    RunStatus.PENDING: "dim",
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


@click.group()
@click.version_option(package_name="relayflow")
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False),
    default=None,
    help=f"State directory (default: $RELAYFLOW_STATE_DIR or {DEFAULT_STATE_DIR}).",
)
@click.option(
    "--connections",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="JSON file mapping connection codes to settings.",
)
@click.option("--env-file", type=click.Path(dir_okay=False), default=None, help="dotenv file.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(
    ctx: click.Context,
    state_dir: str | None,
    connections: str | None,
    env_file: str | None,
    verbose: bool,
) -> None:
    """relayflow: run published data pipelines."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj.update(state_dir=state_dir, connections=connections, env_file=env_file)


def _engine(ctx: click.Context, log_events: bool = False) -> Engine:
    options = ctx.obj
    config = EngineConfig.from_env(env_file=options.get("env_file"))
    state_dir = options.get("state_dir") or config.state_dir or DEFAULT_STATE_DIR
    config = dataclasses.replace(config, state_dir=state_dir)
    connections = None
    if options.get("connections"):
        connections = json.loads(Path(options["connections"]).read_text())
    return Engine.from_config(config, connections=connections, log_events=log_events)


def _fail(message: str, exc: BaseException | None = None) -> NoReturn:
    console.print(f"[red]{message}[/red]" + (f" {exc}" if exc is not None else ""))
    raise SystemExit(1)


def _load(path: str) -> PipelineDefinition:
    try:
        return load_definition(path)
    except (DotParseError, ValueError, KeyError) as exc:
        _fail("Failed to load definition:", exc)


def _print_issues(issues: list[ValidationIssue], title: str = "Validation Results") -> None:
    table = Table(title=title)
    table.add_column("Reason", style="bold red")
    table.add_column("Step")
    table.add_column("Field")
    table.add_column("Message")
    for issue in issues:
        table.add_row(issue.reason, issue.step_key or "", issue.field or "", issue.message)
    console.print(table)


def _print_runs(runs: list[Run], title: str = "Runs") -> None:
    table = Table(title=title)
    table.add_column("Run", style="cyan")
    table.add_column("Pipeline")
    table.add_column("Status")
    table.add_column("Trigger")
    table.add_column("In", justify="right")
    table.add_column("Loaded", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Detail")
    for run in runs:
        style = _STATUS_STYLES.get(run.status, "")
        detail = run.error or (f"waiting on '{run.waiting_step}'" if run.waiting_step else "")
        table.add_row(
            run.id,
            run.pipeline_code,
            f"[{style}]{run.status.value}[/{style}]",
            run.trigger,
            str(run.metrics.get("records_in", 0)),
            str(run.metrics.get("records_loaded", 0)),
            str(run.metrics.get("records_failed", 0)),
            detail[:120],
        )
    console.print(table)


def _call(coro: Any) -> Any:
    """Run *coro*, turning engine errors into a clean CLI failure."""
    try:
        return asyncio.run(coro)
    except CompilationError as exc:
        _print_issues(exc.issues, "Definition rejected")
        raise SystemExit(1) from exc
    except RelayflowError as exc:
        _fail(f"{type(exc).__name__}:", exc)


@main.command()
@click.argument("definition_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--level",
    type=click.Choice(["quick", "full"]),
    default="full",
    show_default=True,
    help="Validation depth.",
)
@click.pass_context
def validate(ctx: click.Context, definition_file: str, level: str) -> None:
    """Validate a JSON or DOT definition without storing it."""
    definition = _load(definition_file)
    issues = validate_definition(
        definition, _engine(ctx).registry, ValidationLevel(level)
    )
    if not issues:
        console.print(f"[green]Definition '{definition.code}' is valid.[/green]")
        return
    _print_issues(issues)
    raise SystemExit(1)


@main.command()
@click.argument("source")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None)
@click.option("--draft", is_flag=True, help="Render the working draft instead of PUBLISHED.")
@click.pass_context
def graph(ctx: click.Context, source: str, output: str | None, draft: bool) -> None:
    """Render a definition file or a stored pipeline as DOT."""
    if Path(source).is_file():
        definition = _load(source)
    else:
        lifecycle = _engine(ctx).lifecycle
        try:
            definition = (
                lifecycle.draft_definition(source)
                if draft
                else lifecycle.published_definition(source)
            )
        except RelayflowError as exc:
            _fail("Cannot render pipeline:", exc)
    dot = render_dot(definition)
    if output:
        Path(output).write_text(dot)
        console.print(f"[green]Wrote {output}[/green]")
    else:
        click.echo(dot)


@main.command()
@click.argument("definition_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--message", "-m", default="", help="Revision message.")
@click.pass_context
def deploy(ctx: click.Context, definition_file: str, message: str) -> None:
    """Create or update a pipeline and publish it."""
    definition = _load(definition_file)
    engine = _engine(ctx)
    record = _call(engine.deploy(definition, message))
    console.print(
        f"[bold green]Published[/bold green] '{record.code}' "
        f"as revision {record.published_revision}"
    )


@main.command()
@click.argument("pipeline_code")
@click.option(
    "--records",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="JSON file with a list of seed records.",
)
@click.option("--no-resume", is_flag=True, help="Ignore the committed checkpoint.")
@click.pass_context
def start(ctx: click.Context, pipeline_code: str, records: str | None, no_resume: bool) -> None:
    """Run a published pipeline to completion (or until a gate)."""
    seed = json.loads(Path(records).read_text()) if records else None
    if seed is not None and not isinstance(seed, list):
        _fail("--records must contain a JSON list")
    engine = _engine(ctx)
    console.print(f"[bold green]Running pipeline:[/bold green] {pipeline_code}")
    run = _call(
        engine.coordinator.start(
            pipeline_code, trigger="cli", seed_records=seed, resume=not no_resume
        )
    )
    _print_runs([run], "Run")
    if run.status == RunStatus.FAILED:
        raise SystemExit(1)


@main.command()
@click.option("--pipeline", "pipeline_code", default=None, help="Filter by pipeline.")
@click.option(
    "--status",
    type=click.Choice([s.value for s in RunStatus]),
    default=None,
    help="Filter by status.",
)
@click.pass_context
def runs(ctx: click.Context, pipeline_code: str | None, status: str | None) -> None:
    """List runs."""
    found = _engine(ctx).coordinator.list_runs(
        pipeline_code, RunStatus(status) if status else None
    )
    if not found:
        console.print("No runs.")
        return
    _print_runs(found)


@main.command()
@click.argument("run_id")
@click.argument("step_key")
@click.pass_context
def approve(ctx: click.Context, run_id: str, step_key: str) -> None:
    """Approve the gate a paused run waits on and resume it."""
    run = _call(_engine(ctx).coordinator.approve_gate(run_id, step_key))
    _print_runs([run], "Run")


@main.command()
@click.argument("run_id")
@click.argument("step_key")
@click.option("--reason", default="", help="Why the gate was rejected.")
@click.pass_context
def reject(ctx: click.Context, run_id: str, step_key: str, reason: str) -> None:
    """Reject a gate; the run fails."""
    run = _call(_engine(ctx).coordinator.reject_gate(run_id, step_key, reason))
    _print_runs([run], "Run")


@main.command()
@click.argument("run_id")
@click.pass_context
def cancel(ctx: click.Context, run_id: str) -> None:
    """Cancel a run."""
    run = _call(_engine(ctx).coordinator.cancel(run_id))
    _print_runs([run], "Run")


@main.command()
@click.argument("error_id")
@click.option("--patch", default=None, help="JSON object merged over the failed payload.")
@click.option("--confirm", is_flag=True, help="Allow replay through non-pure steps.")
@click.pass_context
def retry(ctx: click.Context, error_id: str, patch: str | None, confirm: bool) -> None:
    """Patch and replay a failed record."""
    overrides = None
    if patch:
        try:
            overrides = json.loads(patch)
        except json.JSONDecodeError as exc:
            _fail("--patch is not valid JSON:", exc)
        if not isinstance(overrides, dict):
            _fail("--patch must be a JSON object")
    run = _call(_engine(ctx).coordinator.retry_record(error_id, overrides, confirm=confirm))
    if run is None:
        console.print(f"Error {error_id} is already resolved.")
        return
    _print_runs([run], "Replay run")


@main.command("dead-letters")
@click.option("--pipeline", "pipeline_code", default=None, help="Filter by pipeline.")
@click.option(
    "--status",
    type=click.Choice([s.value for s in DeadLetterStatus]),
    default=None,
    help="Filter by status.",
)
@click.option("--discard", "discard_id", default=None, help="Discard the entry with this id.")
@click.pass_context
def dead_letters(
    ctx: click.Context,
    pipeline_code: str | None,
    status: str | None,
    discard_id: str | None,
) -> None:
    """List (or discard) dead-lettered records."""
    handler = _engine(ctx).dead_letters
    if discard_id:
        entry = _call(handler.discard(discard_id))
        console.print(f"Dead letter {entry.id} is {entry.status.value}.")
        return

    entries = handler.list_entries(pipeline_code, DeadLetterStatus(status) if status else None)
    if not entries:
        console.print("No dead letters.")
        return
    table = Table(title="Dead Letters")
    table.add_column("Entry", style="cyan")
    table.add_column("Error")
    table.add_column("Pipeline")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Reason")
    for entry in entries:
        table.add_row(
            entry.id,
            entry.error_id,
            entry.pipeline_code,
            entry.step_key,
            entry.status.value,
            entry.reason[:120],
        )
    console.print(table)


@main.command("checkpoint-reset")
@click.argument("pipeline_code")
@click.pass_context
def checkpoint_reset(ctx: click.Context, pipeline_code: str) -> None:
    """Forget a pipeline's committed cursor; the next run starts over."""
    if _engine(ctx).checkpoints.reset(pipeline_code):
        console.print(f"[green]Checkpoint for '{pipeline_code}' reset.[/green]")
    else:
        console.print(f"No checkpoint stored for '{pipeline_code}'.")


@main.command()
@click.option("--pipeline", "pipeline_code", default=None, help="Only review this pipeline.")
@click.pass_context
def review(ctx: click.Context, pipeline_code: str | None) -> None:
    """Interactively approve or reject paused runs."""
    engine = _engine(ctx)
    paused = engine.coordinator.list_runs(pipeline_code, RunStatus.PAUSED)
    if not paused:
        console.print("No runs are waiting on a gate.")
        return

    for run in paused:
        preview = (run.paused_state or {}).get("preview", [])
        body = json.dumps(preview, indent=2, default=str) if preview else "(no records)"
        console.print(
            Panel(
                body,
                title=f"{run.pipeline_code} / {run.id} / gate '{run.waiting_step}'",
                subtitle=f"{run.metrics.get('records_in', 0)} record(s) in so far",
            )
        )
        choice = Prompt.ask(
            "Decision", choices=["approve", "reject", "skip"], default="skip", console=console
        )
        if choice == "approve":
            result = _call(engine.coordinator.approve_gate(run.id, run.waiting_step or ""))
            _print_runs([result], "Run")
        elif choice == "reject":
            reason = Prompt.ask("Reason", default="", console=console)
            result = _call(
                engine.coordinator.reject_gate(run.id, run.waiting_step or "", reason)
            )
            _print_runs([result], "Run")


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8080, show_default=True, type=int)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Run triggers and the HTTP control server until interrupted."""
    engine = _engine(ctx, log_events=True)

    async def _serve() -> None:
        server = ControlServer(engine, host, port)
        await engine.start()
        await server.start()
        console.print(f"[bold green]relayflow listening on {host}:{server.port}[/bold green]")
        try:
            await asyncio.Event().wait()
        finally:
            await server.stop()
            await engine.stop()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        console.print("Stopped.")


if __name__ == "__main__":
    main()
