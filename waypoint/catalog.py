"""Workflow definitions loaded from YAML or JSON files."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

import yaml
from pydantic import ValidationError

from .contracts import WorkflowDefinition
from .errors import WorkflowNotFoundError, WorkflowValidationError
from .scheduler import DAGScheduler

logger = logging.getLogger(__name__)

WORKFLOW_SUFFIXES = (".yaml", ".yml", ".json")


def parse_workflow(data: Dict[str, Any], source: str = "<data>") -> WorkflowDefinition:
    """Build a ``WorkflowDefinition``, reporting schema errors as validation issues."""
    try:
        return WorkflowDefinition.model_validate(data)
    except ValidationError as exc:
        issues = [
            f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
            for error in exc.errors()
        ]
        raise WorkflowValidationError(
            f"Invalid workflow definition in {source}", issues=issues
        ) from exc


def load_workflow(path: Union[str, Path]) -> WorkflowDefinition:
    """Read one workflow file. JSON is parsed by the YAML loader as well."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise WorkflowValidationError(f"{path} does not contain a workflow mapping")
    return parse_workflow(data, str(path))


class WorkflowCatalog:
    """Validated workflow definitions keyed by id."""

    def __init__(self, scheduler: Optional[DAGScheduler] = None) -> None:
        self.scheduler = scheduler or DAGScheduler()
        self._workflows: Dict[str, WorkflowDefinition] = {}

    def register(self, workflow: Union[WorkflowDefinition, Dict[str, Any]]) -> WorkflowDefinition:
        """Validate the graph and add it, replacing any workflow with the same id."""
        if not isinstance(workflow, WorkflowDefinition):
            workflow = parse_workflow(workflow)
        self.scheduler.ensure_valid(workflow)
        if workflow.id in self._workflows:
            logger.info(f"Replacing workflow {workflow.id}")
        self._workflows[workflow.id] = workflow
        return workflow

    def get(self, workflow_id: str) -> WorkflowDefinition:
        try:
            return self._workflows[workflow_id]
        except KeyError:
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found") from None

    def load_file(self, path: Union[str, Path]) -> WorkflowDefinition:
        return self.register(load_workflow(path))

    def load_directory(self, directory: Union[str, Path]) -> List[WorkflowDefinition]:
        """Register every workflow file in ``directory``.

        Invalid files are logged and skipped so one broken definition does
        not hide the rest.
        """
        loaded = []
        for path in sorted(Path(directory).iterdir()):
            if path.suffix not in WORKFLOW_SUFFIXES:
                continue
            try:
                loaded.append(self.load_file(path))
            except WorkflowValidationError as exc:
                logger.error(f"Skipping {path}: {exc.message} {exc.issues}")
        logger.info(f"Loaded {len(loaded)} workflow(s) from {directory}")
        return loaded

    def __contains__(self, workflow_id: str) -> bool:
        return workflow_id in self._workflows

    def __iter__(self) -> Iterator[WorkflowDefinition]:
        return iter(self._workflows.values())

    def __len__(self) -> int:
        return len(self._workflows)
