"""Command line interface for validating and running waypoint workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from .catalog import WorkflowCatalog, load_workflow
from .config import WaypointConfig, load_config
from .engine import WorkflowEngine
from .errors import WaypointError, WorkflowValidationError
from .events import get_event_bus
from .http_tools import HttpToolService
from .integration import PydanticAIChatService
from .models import ExecutionState, ExecutionStatus
from .persistence import get_repository
from .registry import ExecutionRegistry
from .services import LocalToolService, NodeServices

app = typer.Typer(help="CLI for waypoint workflows")

workflow_app = typer.Typer(help="Commands for validating and running workflows")
execution_app = typer.Typer(help="Commands for inspecting and controlling executions")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")


@app.callback()
def main(log_level: Optional[str] = typer.Option(None, help="Override the configured log level")) -> None:
    """waypoint CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=(log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_json(value: Optional[str], option: str) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as exc:
        typer.secho(f"{option} is not valid JSON: {exc.msg}", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    if not isinstance(data, dict):
        typer.secho(f"{option} must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    return data


def _build_engine(config: WaypointConfig, workflows: Optional[Path] = None) -> WorkflowEngine:
    catalog = WorkflowCatalog()
    directory = workflows or (Path(config.workflows_dir) if config.workflows_dir else None)
    if directory is not None and directory.is_dir():
        catalog.load_directory(directory)
    tools = HttpToolService(config.tools_url) if config.tools_url else LocalToolService()
    services = NodeServices(
        llm=PydanticAIChatService(config.engine.default_model_id or config.engine.platform_model_id),
        tools=tools,
    )
    return WorkflowEngine(
        catalog,
        get_repository(config=config),
        event_bus=get_event_bus(config=config),
        services=services,
        config=config,
    )


def _echo_state(state: ExecutionState) -> None:
    color = {
        ExecutionStatus.COMPLETED: typer.colors.GREEN,
        ExecutionStatus.FAILED: typer.colors.RED,
        ExecutionStatus.PAUSED: typer.colors.YELLOW,
    }.get(state.status)
    typer.secho(f"Execution {state.execution_id}: {state.status.value}", fg=color)
    typer.echo(f"Workflow: {state.workflow_id} (owner {state.owner_id})")
    for record in state.history:
        typer.echo(
            f"- {record.step}. {record.node_id} [{record.node_type}]: {record.status.value}"
            + (f" after {record.attempts} attempts" if record.attempts > 1 else "")
        )
    if state.pause_reason:
        typer.echo(f"Paused on request: {state.pause_reason}")
    if state.pending_checkpoint is not None:
        checkpoint = state.pending_checkpoint
        typer.echo(f"Waiting at {checkpoint.node_id}: {checkpoint.message}")
        typer.echo(f"Checkpoint: {checkpoint.id}")
        typer.echo(f"Options: {', '.join(option.value for option in checkpoint.options)}")
    if state.error is not None:
        typer.secho(
            f"Error [{state.error.code}] at {state.error.node_id}: {state.error.message}",
            fg=typer.colors.RED,
        )
    if state.status == ExecutionStatus.COMPLETED:
        typer.echo(f"Output: {json.dumps(state.final_output, default=str, ensure_ascii=False)}")


@workflow_app.command("validate")
def workflow_validate(path: Path) -> None:
    """
    Check a workflow definition file.

    Reports schema errors and structural problems (reachability, branch
    coverage, expressions, templates) without running anything.

    Example:
        waypoint workflow validate ./workflows/review.yaml
    """
    try:
        workflow = load_workflow(path)
    except (OSError, WorkflowValidationError) as exc:
        typer.secho(f"Invalid workflow: {exc}", fg=typer.colors.RED)
        for issue in getattr(exc, "issues", []):
            typer.echo(f"  - {issue}")
        raise typer.Exit(code=1)

    issues = WorkflowCatalog().scheduler.validate(workflow)
    if issues:
        typer.secho(f"Workflow {workflow.id} has {len(issues)} problem(s):", fg=typer.colors.RED)
        for issue in issues:
            typer.echo(f"  - {issue}")
        raise typer.Exit(code=1)
    typer.secho(
        f"Workflow {workflow.id} is valid ({len(workflow.nodes)} nodes, {len(workflow.edges)} edges)",
        fg=typer.colors.GREEN,
    )


@workflow_app.command("run")
def workflow_run(
    path: Path = typer.Argument(..., exists=True, dir_okay=False),
    input: Optional[str] = typer.Option(None, "--input", help="Initial data as a JSON object"),
    owner: str = typer.Option("cli", help="Owner id recorded for the execution"),
) -> None:
    """
    Run a workflow until it completes, fails or pauses at a human node.

    Example:
        waypoint workflow run ./workflows/review.yaml --input '{"topic": "pricing"}'
    """
    initial_data = _parse_json(input, "--input")
    config = load_config()

    async def _run() -> ExecutionState:
        engine = _build_engine(config)
        await engine.start()
        workflow = engine.catalog.load_file(path)
        execution_id = await engine.create_execution(workflow.id, initial_data, owner_id=owner)
        try:
            return await engine.wait(execution_id)
        finally:
            await engine.shutdown()

    try:
        state = asyncio.run(_run())
    except WaypointError as exc:
        typer.secho(f"[{exc.code}] {exc.message}", fg=typer.colors.RED)
        for issue in getattr(exc, "issues", []):
            typer.echo(f"  - {issue}")
        raise typer.Exit(code=1)
    _echo_state(state)
    if state.status == ExecutionStatus.FAILED:
        raise typer.Exit(code=1)


@execution_app.command("list")
def execution_list(
    owner: str = typer.Option("cli", help="Owner whose executions to list"),
    status: Optional[ExecutionStatus] = typer.Option(None, help="Only show this status"),
    limit: Optional[int] = typer.Option(None, help="Maximum number of entries"),
) -> None:
    """
    List executions of an owner, newest first.

    Example:
        waypoint execution list --owner alice --status paused
    """
    config = load_config()

    async def _list():
        registry = ExecutionRegistry(get_repository(config=config))
        await registry.load()
        return registry.list_by_owner(owner, status=status, limit=limit)

    entries = asyncio.run(_list())
    if not entries:
        typer.echo("No executions found")
        return
    for entry in entries:
        typer.echo(
            f"{entry.execution_id}\t{entry.workflow_id}\t{entry.status.value}\t{entry.created_at.isoformat()}"
        )


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """
    Show the latest checkpoint of an execution.

    Example:
        waypoint execution show exec-1234
    """
    config = load_config()
    engine = _build_engine(config)
    try:
        state = asyncio.run(engine.get_execution(execution_id))
    except WaypointError as exc:
        typer.secho(exc.message, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    _echo_state(state)


@execution_app.command("respond")
def execution_respond(
    execution_id: str,
    checkpoint_id: str,
    response: str,
    data: Optional[str] = typer.Option(None, "--data", help="Response data as a JSON object"),
    workflows: Optional[Path] = typer.Option(None, help="Directory of workflow definitions"),
) -> None:
    """
    Answer a paused execution's human checkpoint and continue running it.

    Example:
        waypoint execution respond exec-1234 ckpt-5678 approve --data '{"note": "ok"}'
    """
    payload = _parse_json(data, "--data")
    config = load_config()

    async def _respond() -> ExecutionState:
        engine = _build_engine(config, workflows)
        await engine.start()
        try:
            await engine.respond(execution_id, checkpoint_id, response, payload)
            return await engine.wait(execution_id)
        finally:
            await engine.shutdown()

    try:
        state = asyncio.run(_respond())
    except WaypointError as exc:
        typer.secho(f"[{exc.code}] {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    _echo_state(state)


@execution_app.command("resume")
def execution_resume(
    execution_id: str,
    workflows: Optional[Path] = typer.Option(None, help="Directory of workflow definitions"),
) -> None:
    """
    Continue an execution that was paused on request (not at a human node).

    Example:
        waypoint execution resume exec-1234
    """
    config = load_config()

    async def _resume() -> ExecutionState:
        engine = _build_engine(config, workflows)
        await engine.start()
        try:
            await engine.resume(execution_id)
            return await engine.wait(execution_id)
        finally:
            await engine.shutdown()

    try:
        state = asyncio.run(_resume())
    except WaypointError as exc:
        typer.secho(f"[{exc.code}] {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    _echo_state(state)


@execution_app.command("cancel")
def execution_cancel(
    execution_id: str,
    workflows: Optional[Path] = typer.Option(None, help="Directory of workflow definitions"),
) -> None:
    """
    Cancel a paused or running execution. Terminal executions are left as they are.

    Example:
        waypoint execution cancel exec-1234
    """
    config = load_config()

    async def _cancel() -> ExecutionState:
        engine = _build_engine(config, workflows)
        await engine.start()
        try:
            return await engine.cancel(execution_id, reason="Cancelled from the CLI")
        finally:
            await engine.shutdown()

    try:
        state = asyncio.run(_cancel())
    except WaypointError as exc:
        typer.secho(f"[{exc.code}] {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Execution {state.execution_id}: {state.status.value}")


@execution_app.command("recover")
def execution_recover() -> None:
    """
    Fail executions left running or pending by a process that died.

    Example:
        waypoint execution recover
    """
    config = load_config()

    async def _recover():
        engine = _build_engine(config)
        try:
            return await engine.start()
        finally:
            await engine.shutdown()

    recovered = asyncio.run(_recover())
    if not recovered:
        typer.echo("No interrupted executions")
        return
    for entry in recovered:
        typer.echo(f"{entry.execution_id}\tfailed (was at {entry.current_node or 'start'})")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
