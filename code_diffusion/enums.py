"""Enumerations for workflow stages, worker types and lifecycle events."""

from enum import Enum


class WorkflowStage(str, Enum):
    """Stages a workflow run moves through.

    ``COMPLETE`` is terminal. ``BLOCKED`` is the recovery hub: a run lands
    there on failure and leaves it only through an explicit retry.
    """

    PENDING = "pending"
    EXPLORING = "exploring"
    PLANNING = "planning"
    IMPLEMENTING = "implementing"
    COMPLETE = "complete"
    BLOCKED = "blocked"

    def __str__(self) -> str:
        return self.value


class WorkerType(str, Enum):
    """Kinds of worker process the supervisor can launch."""

    EXPLORER = "explorer"
    PLANNER = "planner"
    IMPLEMENTER = "implementer"
    SUBAGENT = "subagent"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def for_stage(cls, stage: WorkflowStage) -> "WorkerType":
        """Return the worker type that executes ``stage``.

        Raises:
            ValueError: If the stage is not executed by a worker
        """
        mapping = {
            WorkflowStage.EXPLORING: cls.EXPLORER,
            WorkflowStage.PLANNING: cls.PLANNER,
            WorkflowStage.IMPLEMENTING: cls.IMPLEMENTER,
        }
        try:
            return mapping[stage]
        except KeyError:
            raise ValueError(f"Stage {stage} has no worker") from None


class EventKind(str, Enum):
    """Kinds of normalized inbound workflow events."""

    STARTED = "started"
    STAGE_STATUS_CHANGED = "stage_status_changed"
    STAGE_COMPLETED = "stage_completed"
    TASK_CREATED = "task_created"

    def __str__(self) -> str:
        return self.value


class WorkerEventKind(str, Enum):
    """Lifecycle events published by the worker supervisor."""

    EXITED = "exited"
    TIMED_OUT = "timed_out"
    KILLED = "killed"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


class RecoveryStrategy(str, Enum):
    """Verdict of the error classifier."""

    RETRY = "retry"
    BLOCK = "block"

    def __str__(self) -> str:
        return self.value


class Complexity(str, Enum):
    """Complexity estimate reported by exploration."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    def __str__(self) -> str:
        return self.value
