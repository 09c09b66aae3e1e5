"""In-memory knowledge base for dry runs and tests."""

import itertools
from typing import Any

import structlog

from code_diffusion.enums import WorkflowStage
from code_diffusion.exceptions import ExternalServiceError
from code_diffusion.providers.base import KnowledgeBase, TaskRecord

log = structlog.get_logger(__name__)


class InMemoryKnowledgeBase(KnowledgeBase):
    """Keeps every write in process memory.

    Attributes:
        statuses: Status history per workflow, oldest first
        stage_records: Created stage records, in creation order
        tasks: Subagent tasks by id
    """

    def __init__(self) -> None:
        self.statuses: dict[str, list[WorkflowStage]] = {}
        self.stage_records: list[dict[str, Any]] = []
        self.tasks: dict[str, TaskRecord] = {}
        self._task_parents: dict[str, str] = {}
        self._ids = itertools.count(1)

    def current_status(self, workflow_id: str) -> WorkflowStage | None:
        history = self.statuses.get(workflow_id)
        return history[-1] if history else None

    def add_task(self, workflow_id: str, title: str, status: str = "pending") -> TaskRecord:
        """Register a subagent task under ``workflow_id``."""
        task = TaskRecord(task_id=f"task-{next(self._ids)}", title=title, status=status)
        self.tasks[task.task_id] = task
        self._task_parents[task.task_id] = workflow_id
        return task

    async def update_status(self, workflow_id: str, status: WorkflowStage) -> None:
        self.statuses.setdefault(workflow_id, []).append(WorkflowStage(status))
        log.debug("status_recorded", workflow_id=workflow_id, status=str(status))

    async def create_stage_record(self, workflow_id: str, stage: WorkflowStage, content: str) -> str:
        record_id = f"stage-{next(self._ids)}"
        self.stage_records.append(
            {"id": record_id, "workflow_id": workflow_id, "stage": WorkflowStage(stage), "content": content}
        )
        return record_id

    async def query_tasks(self, workflow_id: str) -> list[TaskRecord]:
        return [self.tasks[task_id] for task_id, parent in self._task_parents.items() if parent == workflow_id]

    async def update_task(
        self,
        task_id: str,
        status: str | None = None,
        output: str | None = None,
        worktree: str | None = None,
        git_refs: str | None = None,
    ) -> None:
        task = self.tasks.get(task_id)
        if task is None:
            raise ExternalServiceError(f"Task not found: {task_id}", status_code=404)
        if status is not None:
            task.status = status
        for key, value in (("output", output), ("worktree", worktree), ("git_refs", git_refs)):
            if value is not None:
                task.properties[key] = value
