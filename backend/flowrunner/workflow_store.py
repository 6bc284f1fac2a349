# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Workflow Sources

Where the engine loads workflow definitions from.
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List

import aiofiles
from pydantic import ValidationError as PydanticValidationError

from flowrunner.core.errors import NotFoundError, ValidationError
from flowrunner.core.logging import get_logger
from flowrunner.engine.models import Workflow

logger = get_logger("flowrunner.workflows")


class WorkflowSource(ABC):
    """Read access to stored workflows"""

    @abstractmethod
    async def load_workflow(self, workflow_id: str) -> Workflow:
        """Return the workflow or raise NotFoundError"""


class InMemoryWorkflowSource(WorkflowSource):
    def __init__(self, workflows: List[Workflow] = None):
        self._workflows: Dict[str, Workflow] = {}
        for workflow in workflows or []:
            self.save(workflow)

    def save(self, workflow: Workflow) -> Workflow:
        self._workflows[workflow.workflow_id] = workflow.snapshot()
        return workflow

    def delete(self, workflow_id: str) -> bool:
        return self._workflows.pop(workflow_id, None) is not None

    def list_workflows(self) -> List[Workflow]:
        return [w.snapshot() for w in self._workflows.values()]

    async def load_workflow(self, workflow_id: str) -> Workflow:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)
        return workflow.snapshot()


class JsonWorkflowSource(WorkflowSource):
    """
    Workflow definitions stored as one JSON file per workflow.

    Responsibilities:
    - CRUD operations for workflow definitions
    - Loading definitions for execution
    """

    def __init__(self, workflows_dir: Path):
        self.workflows_dir = Path(workflows_dir)
        self.workflows_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"JsonWorkflowSource initialized with directory: {self.workflows_dir}")

    def _path_for(self, workflow_id: str) -> Path:
        if not workflow_id or "/" in workflow_id or workflow_id.startswith("."):
            raise ValidationError(f"Invalid workflow_id: {workflow_id!r}", field="workflow_id")
        return self.workflows_dir / f"{workflow_id}.json"

    async def list_workflows(self) -> List[Dict[str, Any]]:
        """List all workflow definitions"""
        workflows = []

        for file in sorted(self.workflows_dir.glob("*.json")):
            try:
                workflow_data = json.loads(file.read_text())
                workflows.append({
                    "workflow_id": workflow_data.get("workflow_id"),
                    "name": workflow_data.get("name"),
                    "description": workflow_data.get("description"),
                    "node_count": len(workflow_data.get("nodes", [])),
                    "filename": file.name
                })
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping invalid workflow file {file.name}: {e}")

        return workflows

    async def load_workflow(self, workflow_id: str) -> Workflow:
        """Get a specific workflow definition"""
        file_path = self._path_for(workflow_id)

        if not file_path.exists():
            raise NotFoundError("Workflow", workflow_id)

        async with aiofiles.open(file_path, "r") as f:
            content = await f.read()

        try:
            return Workflow.model_validate_json(content)
        except PydanticValidationError as e:
            raise ValidationError(f"Workflow '{workflow_id}' is malformed: {e}", field="workflow")

    async def save_workflow(self, workflow_data: Dict[str, Any]) -> Workflow:
        """Create or replace a workflow definition"""
        if "workflow_id" not in workflow_data:
            raise ValidationError("workflow_id is required", field="workflow_id")

        try:
            workflow = Workflow.model_validate(workflow_data)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid workflow definition: {e}", field="workflow")

        file_path = self._path_for(workflow.workflow_id)
        async with aiofiles.open(file_path, "w") as f:
            await f.write(workflow.model_dump_json(by_alias=True, indent=2))

        logger.info(f"Saved workflow: {workflow.workflow_id}")
        return workflow

    async def delete_workflow(self, workflow_id: str) -> None:
        """Delete a workflow definition"""
        file_path = self._path_for(workflow_id)

        if not file_path.exists():
            raise NotFoundError("Workflow", workflow_id)

        file_path.unlink()
        logger.info(f"Deleted workflow: {workflow_id}")
