import asyncio
import re

import pytest
import yaml
from typer.testing import CliRunner

import waypoint.persistence as persistence
from tests.fixtures.workflows import linear_workflow, make_engine, make_services, slow_workflow
from waypoint.cli import app
from waypoint.config import load_config

runner = CliRunner()

PASSTHROUGH = {
    "id": "passthrough",
    "name": "Pass through",
    "nodes": [
        {
            "id": "start",
            "type": "start",
            "config": {"inputs": [{"name": "topic", "required": True, "type": "string"}]},
        },
        {"id": "end", "type": "end", "config": {"include_fields": ["topic"]}},
    ],
    "edges": [{"source": "start", "target": "end"}],
}


@pytest.fixture(autouse=True)
def isolated_cli(tmp_path, monkeypatch):
    monkeypatch.setenv("WAYPOINT_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("WAYPOINT_DATABASE_URL", f"sqlite://{tmp_path / 'cli.db'}")
    monkeypatch.delenv("WAYPOINT_EVENT_BACKEND", raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", None)


def write_workflow(tmp_path, definition, name="workflow.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(definition))
    return path


def test_validate_reports_valid_workflow(tmp_path):
    path = write_workflow(tmp_path, linear_workflow())

    result = runner.invoke(app, ["workflow", "validate", str(path)])

    assert result.exit_code == 0, result.output
    assert "Workflow linear is valid (3 nodes, 2 edges)" in result.output


def test_validate_lists_structural_problems(tmp_path):
    definition = linear_workflow()
    definition["edges"].append({"source": "echo", "target": "ghost"})
    path = write_workflow(tmp_path, definition)

    result = runner.invoke(app, ["workflow", "validate", str(path)])

    assert result.exit_code == 1
    assert "ghost" in result.output


def test_validate_reports_schema_errors(tmp_path):
    path = write_workflow(tmp_path, {"id": "broken", "nodes": "nope"})

    result = runner.invoke(app, ["workflow", "validate", str(path)])

    assert result.exit_code == 1
    assert "Invalid workflow" in result.output


def test_run_then_list_executions(tmp_path):
    path = write_workflow(tmp_path, PASSTHROUGH)

    result = runner.invoke(
        app, ["workflow", "run", str(path), "--input", '{"topic": "pricing"}', "--owner", "alice"]
    )

    assert result.exit_code == 0, result.output
    assert ": completed" in result.output
    assert 'Output: {"topic": "pricing"}' in result.output

    listed = runner.invoke(app, ["execution", "list", "--owner", "alice"])
    assert listed.exit_code == 0, listed.output
    assert "passthrough\tcompleted" in listed.output

    empty = runner.invoke(app, ["execution", "list", "--owner", "bob"])
    assert "No executions found" in empty.output


def test_run_reports_missing_input(tmp_path):
    path = write_workflow(tmp_path, PASSTHROUGH)

    result = runner.invoke(app, ["workflow", "run", str(path)])

    assert result.exit_code == 1
    assert "[MISSING_REQUIRED_INPUT]" in result.output


def test_run_rejects_malformed_input(tmp_path):
    path = write_workflow(tmp_path, PASSTHROUGH)

    result = runner.invoke(app, ["workflow", "run", str(path), "--input", "[1, 2]"])

    assert result.exit_code == 2
    assert "--input must be a JSON object" in result.output


def test_resume_continues_execution_paused_on_request(tmp_path):
    write_workflow(tmp_path, slow_workflow())

    async def slow(**kwargs):
        await asyncio.sleep(0.2)
        return {"done": True}

    async def start_and_pause():
        engine = make_engine(
            slow_workflow(),
            services=make_services(slow=slow),
            repository=persistence.get_repository(config=load_config()),
        )
        await engine.start()
        execution_id = await engine.create_execution("slow", {}, owner_id="cli")
        while engine.registry.get(execution_id).current_node != "wait":
            await asyncio.sleep(0.01)
        state = await engine.pause(execution_id, reason="maintenance")
        await engine.shutdown()
        return state

    paused = asyncio.run(start_and_pause())
    assert paused.status.value == "paused"

    shown = runner.invoke(app, ["execution", "show", paused.execution_id])
    assert "Paused on request: maintenance" in shown.output

    result = runner.invoke(
        app, ["execution", "resume", paused.execution_id, "--workflows", str(tmp_path)]
    )

    assert result.exit_code == 0, result.output
    assert f"Execution {paused.execution_id}: completed" in result.output


def test_resume_rejects_completed_execution(tmp_path):
    path = write_workflow(tmp_path, PASSTHROUGH)
    run = runner.invoke(app, ["workflow", "run", str(path), "--input", '{"topic": "x"}'])
    execution_id = re.search(r"Execution (\S+): completed", run.output).group(1)

    result = runner.invoke(app, ["execution", "resume", execution_id, "--workflows", str(tmp_path)])

    assert result.exit_code == 1
    assert "[INVALID_STATE_FOR_RESUME]" in result.output
