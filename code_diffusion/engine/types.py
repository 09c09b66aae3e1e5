"""Type definitions for the orchestration engine.

Dataclasses for in-memory records (workflow runs, transitions, worker
handles, lifecycle events, classifier inputs and verdicts) and TypedDict
snapshots for the JSON-compatible form of a run.

Example:
    Snapshotting a run and restoring it into a fresh state machine::

        snapshot: WorkflowSnapshot = run.to_snapshot()
        other_machine.restore(run.workflow_id, snapshot)
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, NotRequired, TypedDict

from code_diffusion.enums import RecoveryStrategy, WorkerEventKind, WorkerType, WorkflowStage


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


class TransitionSnapshot(TypedDict):
    """JSON-compatible form of a StageTransition."""

    from_stage: str
    to_stage: str
    timestamp: str
    """ISO 8601 timestamp of the transition."""

    metadata: NotRequired[dict[str, Any]]


class WorkflowSnapshot(TypedDict):
    """JSON-compatible form of a WorkflowRun.

    Example::

        snapshot: WorkflowSnapshot = {
            "workflow_id": "wf-42",
            "current_stage": "implementing",
            "previous_stage": "planning",
            "history": [...],
            "created_at": "2025-01-15T10:30:00+00:00",
            "updated_at": "2025-01-15T10:42:12+00:00",
            "metadata": {"output": {...}},
        }
    """

    workflow_id: str
    current_stage: str
    previous_stage: str | None
    history: list[TransitionSnapshot]
    created_at: str
    updated_at: str
    metadata: dict[str, Any]


@dataclass(frozen=True)
class StageTransition:
    """One recorded stage change. Never mutated after creation."""

    from_stage: WorkflowStage
    to_stage: WorkflowStage
    timestamp: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] | None = None

    def to_snapshot(self) -> TransitionSnapshot:
        snapshot: TransitionSnapshot = {
            "from_stage": self.from_stage.value,
            "to_stage": self.to_stage.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.metadata is not None:
            snapshot["metadata"] = dict(self.metadata)
        return snapshot


@dataclass
class WorkflowRun:
    """Bookkeeping for one workflow run, owned by the state machine.

    Attributes:
        workflow_id: Unique run identifier
        current_stage: Stage the run is in now
        previous_stage: Stage before the most recent transition
        history: Append-only list of transitions, oldest first
        created_at: When the run was initialized
        updated_at: When the run last changed
        metadata: Stage outputs, failure reasons and retry counters
    """

    workflow_id: str
    current_stage: WorkflowStage = WorkflowStage.PENDING
    previous_stage: WorkflowStage | None = None
    history: list[StageTransition] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_snapshot(self) -> WorkflowSnapshot:
        """Return a JSON-compatible copy of this run."""
        return {
            "workflow_id": self.workflow_id,
            "current_stage": self.current_stage.value,
            "previous_stage": self.previous_stage.value if self.previous_stage else None,
            "history": [t.to_snapshot() for t in self.history],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "metadata": dict(self.metadata),
        }


@dataclass
class Capabilities:
    """Skills, tool-access tags and worktree forwarded to a worker at launch."""

    skills: list[str] = field(default_factory=list)
    mcps: list[str] = field(default_factory=list)
    worktree: str | None = None


@dataclass
class SpawnRequest:
    """Everything the supervisor needs to launch one worker."""

    worker_type: WorkerType
    workflow_id: str | None = None
    task_id: str | None = None
    parent_page_id: str | None = None
    capabilities: Capabilities = field(default_factory=Capabilities)


@dataclass
class WorkerHandle:
    """A live worker process tracked by the supervisor."""

    worker_id: str
    worker_type: WorkerType
    workflow_id: str | None
    task_id: str | None
    started_at: datetime = field(default_factory=utcnow)
    process: asyncio.subprocess.Process | None = None
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=20))
    kill_requested: bool = False
    timed_out: bool = False

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    @property
    def running_seconds(self) -> float:
        return (utcnow() - self.started_at).total_seconds()


@dataclass
class WorkerEvent:
    """A lifecycle message published by the supervisor."""

    kind: WorkerEventKind
    worker_id: str
    worker_type: WorkerType
    workflow_id: str | None = None
    task_id: str | None = None
    exit_code: int | None = None
    duration: float = 0.0
    stderr_tail: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def failed(self) -> bool:
        """Whether this event reports a failure the coordinator must handle."""
        if self.kind == WorkerEventKind.EXITED:
            return self.exit_code != 0
        return self.kind in (WorkerEventKind.TIMED_OUT, WorkerEventKind.ERROR)

    def describe(self) -> str:
        """Human-readable failure description used for classification."""
        if self.kind == WorkerEventKind.TIMED_OUT:
            return f"Worker {self.worker_id} timed out after {self.duration:.0f}s"
        if self.kind == WorkerEventKind.ERROR:
            return f"Worker {self.worker_id} error: {self.error}"
        detail = self.stderr_tail[-1] if self.stderr_tail else "no stderr output"
        return f"Worker {self.worker_id} exited with code {self.exit_code}: {detail}"


@dataclass
class ErrorContext:
    """Input to the error classifier."""

    workflow_id: str
    stage: WorkflowStage
    failure: BaseException | str
    attempt: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        if isinstance(self.failure, BaseException):
            return f"{type(self.failure).__name__}: {self.failure}"
        return str(self.failure)


@dataclass
class ErrorVerdict:
    """Output of the error classifier."""

    strategy: RecoveryStrategy
    recoverable: bool
    message: str
    retry_delay: float | None = None

    @property
    def should_retry(self) -> bool:
        return self.strategy == RecoveryStrategy.RETRY
