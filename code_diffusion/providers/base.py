"""
Abstract base class for the knowledge-base provider.

The knowledge base is the system of record for workflows: it receives
stage status updates and stage output pages, and holds the subagent tasks
that hang off a workflow. The coordinator is its only caller.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from code_diffusion.enums import WorkflowStage


@dataclass
class TaskRecord:
    """A subagent task stored in the knowledge base."""

    task_id: str
    title: str = ""
    status: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)


class KnowledgeBase(ABC):
    """Abstract base class for knowledge-base implementations.

    All methods are async so implementations can use non-blocking HTTP
    clients. Implementations raise ``ExternalServiceError`` (or its
    ``RateLimitedError`` subclass) when the backing service fails.
    """

    async def connect(self) -> None:
        """Open any underlying connections. Optional."""

    async def disconnect(self) -> None:
        """Release any underlying connections. Optional."""

    @abstractmethod
    async def update_status(self, workflow_id: str, status: WorkflowStage) -> None:
        """Record the workflow's current stage.

        Args:
            workflow_id: Knowledge-base id of the workflow record
            status: Stage the workflow has just entered

        Raises:
            ExternalServiceError: If the update fails
        """
        pass

    @abstractmethod
    async def create_stage_record(self, workflow_id: str, stage: WorkflowStage, content: str) -> str:
        """Store the output of a finished stage.

        Args:
            workflow_id: Knowledge-base id of the workflow record
            stage: Stage that produced the output
            content: Serialized stage output (JSON)

        Returns:
            Id of the created record

        Raises:
            ExternalServiceError: If the record cannot be created
        """
        pass

    @abstractmethod
    async def query_tasks(self, workflow_id: str) -> list[TaskRecord]:
        """List the subagent tasks whose parent is ``workflow_id``.

        Raises:
            ExternalServiceError: If the query fails
        """
        pass

    @abstractmethod
    async def update_task(
        self,
        task_id: str,
        status: str | None = None,
        output: str | None = None,
        worktree: str | None = None,
        git_refs: str | None = None,
    ) -> None:
        """Update fields of a subagent task. ``None`` leaves a field unchanged.

        Raises:
            ExternalServiceError: If the update fails
        """
        pass
