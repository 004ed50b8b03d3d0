import json

import pytest
import yaml

from tests.fixtures.workflows import branch_workflow, linear_workflow
from waypoint.catalog import WorkflowCatalog, load_workflow, parse_workflow
from waypoint.errors import WorkflowNotFoundError, WorkflowValidationError


def test_parse_errors_become_issues():
    with pytest.raises(WorkflowValidationError) as exc_info:
        parse_workflow({"id": "broken", "nodes": [{"id": "x", "type": "teleport"}]}, "broken.yaml")

    assert "broken.yaml" in exc_info.value.message
    assert exc_info.value.issues


def test_load_yaml_and_json_files(tmp_path):
    yaml_path = tmp_path / "linear.yaml"
    yaml_path.write_text(yaml.safe_dump(linear_workflow()))
    json_path = tmp_path / "branch.json"
    json_path.write_text(json.dumps(branch_workflow()))

    assert load_workflow(yaml_path).id == "linear"
    assert load_workflow(json_path).start_node.id == "start"


def test_load_rejects_non_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(WorkflowValidationError):
        load_workflow(path)


def test_load_directory_skips_invalid_files(tmp_path):
    (tmp_path / "linear.yaml").write_text(yaml.safe_dump(linear_workflow()))
    broken = linear_workflow("dangling")
    broken["edges"].append({"source": "echo", "target": "ghost"})
    (tmp_path / "dangling.yaml").write_text(yaml.safe_dump(broken))
    (tmp_path / "notes.txt").write_text("not a workflow")

    catalog = WorkflowCatalog()
    loaded = catalog.load_directory(tmp_path)

    assert [workflow.id for workflow in loaded] == ["linear"]
    assert "linear" in catalog
    assert "dangling" not in catalog
    assert len(catalog) == 1


def test_register_replaces_and_get_raises_for_unknown():
    catalog = WorkflowCatalog()
    catalog.register(linear_workflow())
    replacement = linear_workflow()
    replacement["name"] = "Renamed"
    catalog.register(replacement)

    assert catalog.get("linear").name == "Renamed"
    assert [workflow.id for workflow in catalog] == ["linear"]
    with pytest.raises(WorkflowNotFoundError):
        catalog.get("nope")
