"""Command line interface for waypoint workflows, triggers and executions."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer

from .config import load_config
from .engine import ExecutionEngine
from .errors import WaypointError
from .loader import load_triggers, load_workflow
from .logging import configure_logging
from .models import ExecutionStatus
from .persistence import get_repository
from .registry import EngineRegistry

app = typer.Typer(help="CLI for waypoint workflow orchestration")

workflow_app = typer.Typer(help="Commands for managing workflow definitions")
trigger_app = typer.Typer(help="Commands for managing triggers")
execution_app = typer.Typer(help="Commands for inspecting and controlling executions")

app.add_typer(workflow_app, name="workflow")
app.add_typer(trigger_app, name="trigger")
app.add_typer(execution_app, name="execution")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Override the configured log level"),
) -> None:
    """Waypoint CLI entry point."""
    if log_level or not logging.getLogger().handlers:
        config = load_config()
        configure_logging(log_level or config.logging.level, config.logging.json_output)


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _engine() -> ExecutionEngine:
    config = load_config()
    return ExecutionEngine(
        get_repository(config=config),
        config=config.engine,
        organization_id=config.organization_id,
    )


@workflow_app.command("validate")
def workflow_validate(path: Path) -> None:
    """
    Check a workflow definition file without publishing it.

    Example:
        waypoint workflow validate ./workflows/expense.yaml
    """
    try:
        definition = load_workflow(path)
    except WaypointError as exc:
        _fail(f"Invalid: {exc}")
    typer.echo(
        f"{definition.id} is valid ({len(definition.steps.nodes)} steps, "
        f"{len(definition.steps.edges)} edges)"
    )


@workflow_app.command("publish")
def workflow_publish(path: Path) -> None:
    """
    Validate a workflow definition and publish it as a new version.

    Executions started afterwards are pinned to the new version; running
    executions keep the version they started with.

    Example:
        waypoint workflow publish ./workflows/expense.yaml
        # Output: Published expense_approval version 3
    """
    try:
        definition = load_workflow(path)
    except WaypointError as exc:
        _fail(f"Invalid: {exc}")
    repo = get_repository()
    published = asyncio.run(repo.publish_workflow(definition))
    typer.echo(f"Published {published.id} version {published.version}")


@workflow_app.command("list")
def workflow_list() -> None:
    """List published workflows with their latest version."""
    repo = get_repository()
    workflows = asyncio.run(repo.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\tv{wf.version}\t{wf.name or ''}")


@workflow_app.command("run")
def workflow_run(
    workflow_id: str,
    context: str = typer.Option("{}", help="Initial context as a JSON object"),
    timeout: Optional[float] = typer.Option(
        None, help="Seconds to wait for the execution to go idle"
    ),
) -> None:
    """
    Start an execution of the published workflow and run it in-process.

    Returns once no step is running: the execution is then finished, paused,
    or waiting on suspended steps.

    Example:
        waypoint workflow run expense_approval --context '{"amount": 600}'
    """
    try:
        initial = json.loads(context)
    except json.JSONDecodeError as exc:
        _fail(f"--context is not valid JSON: {exc}")
    if not isinstance(initial, dict):
        _fail("--context must be a JSON object")

    async def _run():
        engine = _engine()
        execution_id = await engine.start(workflow_id, initial, actor="cli")
        try:
            return await engine.wait_idle(execution_id, timeout)
        finally:
            await engine.shutdown()

    try:
        execution = asyncio.run(_run())
    except asyncio.TimeoutError:
        _fail(f"Execution did not go idle within {timeout}s")
    except WaypointError as exc:
        _fail(str(exc))
    typer.echo(f"Execution {execution.id}: {execution.status.value.upper()}")
    if execution.current_steps:
        typer.echo(f"Waiting on: {', '.join(execution.current_steps)}")
    if execution.error:
        typer.echo(f"Error: {execution.error}")


@trigger_app.command("register")
def trigger_register(path: Path) -> None:
    """
    Register the trigger(s) defined in a YAML or JSON file.

    Example:
        waypoint trigger register ./triggers/nightly.yaml
    """
    config = load_config()

    async def _register():
        registry = EngineRegistry.from_config(config)
        try:
            return [await registry.register_trigger(t, actor="cli") for t in load_triggers(path)]
        finally:
            await registry.stop()

    try:
        stored = asyncio.run(_register())
    except WaypointError as exc:
        _fail(str(exc))
    for trigger in stored:
        state = "active" if trigger.active else "inactive"
        typer.echo(f"Registered {trigger.id} ({trigger.kind.value}, {state})")


@trigger_app.command("list")
def trigger_list() -> None:
    """List triggers of the configured organization."""
    config = load_config()
    repo = get_repository(config=config)
    triggers = asyncio.run(repo.list_triggers(organization_id=config.organization_id))
    if not triggers:
        typer.echo("No triggers found")
        return
    for t in triggers:
        typer.echo(
            f"{t.id}\t{t.kind.value}\t{t.workflow_id}\t"
            f"{'active' if t.active else 'inactive'}\tfired={t.firing_count}\terrors={t.error_count}"
        )


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """
    Show an execution's status and step history.

    Example:
        waypoint execution show 0b6e...
        # Output: Execution 0b6e...: RUNNING (expense_approval v2)
        #         - capture [1.1]: completed
        #         - finance_approval [1.1]: suspended
    """
    repo = get_repository()

    async def _load():
        return await repo.get_execution(execution_id), await repo.list_step_executions(execution_id)

    execution, steps = asyncio.run(_load())
    if execution is None:
        _fail("Execution not found")
    typer.echo(
        f"Execution {execution.id}: {execution.status.value.upper()} "
        f"({execution.workflow_id} v{execution.workflow_version})"
    )
    if execution.error:
        typer.echo(f"Error: {execution.error}")
    if execution.context:
        typer.echo(f"Context: {json.dumps(execution.context, default=str)}")
    for step in sorted(steps, key=lambda s: (s.started_at is None, s.started_at or 0, s.visit)):
        typer.echo(
            f"- {step.step_id} [{step.visit}.{step.attempt}]: {step.status.value}"
            + (f" ({step.error})" if step.error else "")
        )


@execution_app.command("list")
def execution_list(
    status: Optional[List[ExecutionStatus]] = typer.Option(None, help="Filter by status"),
    workflow_id: Optional[str] = typer.Option(None, help="Filter by workflow"),
) -> None:
    """List executions, optionally filtered by status or workflow."""
    config = load_config()
    repo = get_repository(config=config)
    executions = asyncio.run(
        repo.list_executions(
            status=status or None,
            organization_id=config.organization_id,
            workflow_id=workflow_id,
        )
    )
    if not executions:
        typer.echo("No executions found")
        return
    for ex in executions:
        typer.echo(f"{ex.id}\t{ex.workflow_id}\tv{ex.workflow_version}\t{ex.status.value.upper()}")


@execution_app.command("cancel")
def execution_cancel(execution_id: str) -> None:
    """Cancel a running or paused execution."""

    async def _cancel():
        engine = _engine()
        try:
            return await engine.cancel(execution_id, actor="cli")
        finally:
            await engine.shutdown()

    try:
        execution = asyncio.run(_cancel())
    except WaypointError as exc:
        _fail(str(exc))
    typer.echo(f"Execution {execution.id}: {execution.status.value.upper()}")


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Interface to bind"),
    port: int = typer.Option(8000, help="Port to listen on"),
) -> None:
    """Run the HTTP API with trigger monitoring for the configured organization."""
    import uvicorn

    from .server import create_app

    config = load_config()
    registry = EngineRegistry.from_config(config)
    typer.echo(f"Serving organization {config.organization_id} on {host}:{port}")
    uvicorn.run(create_app(registry), host=host, port=port, log_config=None)


if __name__ == "__main__":
    app()
