"""Stage state machine for workflow runs.

The state machine owns the legal transition table and the per-run
transition history. It performs no I/O and never awaits; the coordinator
serializes access per workflow.

Transition table::

    pending      -> exploring, blocked
    exploring    -> planning, blocked, pending
    planning     -> implementing, blocked, exploring
    implementing -> complete, blocked, planning
    complete     -> (terminal)
    blocked      -> pending, exploring, planning, implementing
"""

from datetime import datetime
from typing import Any

import structlog

from code_diffusion.engine.types import (
    StageTransition,
    WorkflowRun,
    WorkflowSnapshot,
    utcnow,
)
from code_diffusion.enums import WorkflowStage
from code_diffusion.exceptions import (
    InvalidTransitionError,
    WorkflowExistsError,
    WorkflowNotFoundError,
)

log = structlog.get_logger(__name__)

TRANSITIONS: dict[WorkflowStage, frozenset[WorkflowStage]] = {
    WorkflowStage.PENDING: frozenset({WorkflowStage.EXPLORING, WorkflowStage.BLOCKED}),
    WorkflowStage.EXPLORING: frozenset({WorkflowStage.PLANNING, WorkflowStage.BLOCKED, WorkflowStage.PENDING}),
    WorkflowStage.PLANNING: frozenset({WorkflowStage.IMPLEMENTING, WorkflowStage.BLOCKED, WorkflowStage.EXPLORING}),
    WorkflowStage.IMPLEMENTING: frozenset({WorkflowStage.COMPLETE, WorkflowStage.BLOCKED, WorkflowStage.PLANNING}),
    WorkflowStage.COMPLETE: frozenset(),
    WorkflowStage.BLOCKED: frozenset(
        {
            WorkflowStage.PENDING,
            WorkflowStage.EXPLORING,
            WorkflowStage.PLANNING,
            WorkflowStage.IMPLEMENTING,
        }
    ),
}


class StageStateMachine:
    """Tracks workflow runs and enforces the stage transition table.

    Example:
        >>> machine = StageStateMachine()
        >>> machine.initialize("wf-1")
        >>> machine.transition("wf-1", WorkflowStage.EXPLORING)
        >>> machine.get_current_stage("wf-1")
        <WorkflowStage.EXPLORING: 'exploring'>
    """

    def __init__(self) -> None:
        self._runs: dict[str, WorkflowRun] = {}

    def __contains__(self, workflow_id: object) -> bool:
        return workflow_id in self._runs

    def __len__(self) -> int:
        return len(self._runs)

    def initialize(
        self,
        workflow_id: str,
        initial_stage: WorkflowStage = WorkflowStage.PENDING,
    ) -> WorkflowRun:
        """Start tracking a new run.

        Raises:
            WorkflowExistsError: If the id is already tracked; the existing
                run is left untouched
        """
        if workflow_id in self._runs:
            raise WorkflowExistsError(workflow_id)

        now = utcnow()
        run = WorkflowRun(
            workflow_id=workflow_id,
            current_stage=WorkflowStage(initial_stage),
            created_at=now,
            updated_at=now,
        )
        self._runs[workflow_id] = run
        log.info("workflow_initialized", workflow_id=workflow_id, stage=str(run.current_stage))
        return run

    @staticmethod
    def validate(from_stage: WorkflowStage, to_stage: WorkflowStage) -> bool:
        """Return whether the table allows ``from_stage -> to_stage``."""
        return to_stage in TRANSITIONS.get(from_stage, frozenset())

    @staticmethod
    def allowed_transitions(from_stage: WorkflowStage) -> frozenset[WorkflowStage]:
        return TRANSITIONS.get(from_stage, frozenset())

    def transition(
        self,
        workflow_id: str,
        to_stage: WorkflowStage,
        metadata: dict[str, Any] | None = None,
    ) -> WorkflowRun:
        """Move a run to ``to_stage``.

        On success a StageTransition is appended, current and previous
        stage are updated, ``metadata`` is merged into the run's metadata
        and ``updated_at`` is refreshed.

        Raises:
            WorkflowNotFoundError: If the run is not tracked
            InvalidTransitionError: If the table rejects the change; the run
                is left untouched
        """
        run = self._require(workflow_id)
        from_stage = run.current_stage
        to_stage = WorkflowStage(to_stage)

        if not self.validate(from_stage, to_stage):
            log.warning(
                "transition_rejected",
                workflow_id=workflow_id,
                from_stage=str(from_stage),
                to_stage=str(to_stage),
            )
            raise InvalidTransitionError(workflow_id, from_stage, to_stage)

        now = utcnow()
        run.history.append(
            StageTransition(
                from_stage=from_stage,
                to_stage=to_stage,
                timestamp=now,
                metadata=dict(metadata) if metadata is not None else None,
            )
        )
        run.previous_stage = from_stage
        run.current_stage = to_stage
        run.updated_at = now
        if metadata:
            run.metadata.update(metadata)

        log.info(
            "workflow_transitioned",
            workflow_id=workflow_id,
            from_stage=str(from_stage),
            to_stage=str(to_stage),
        )
        return run

    def get_run(self, workflow_id: str) -> WorkflowRun | None:
        return self._runs.get(workflow_id)

    def get_current_stage(self, workflow_id: str) -> WorkflowStage | None:
        run = self._runs.get(workflow_id)
        return run.current_stage if run else None

    def get_history(self, workflow_id: str) -> list[StageTransition]:
        """Return a copy of the run's transitions, or an empty list if untracked."""
        run = self._runs.get(workflow_id)
        return list(run.history) if run else []

    def is_terminal(self, workflow_id: str) -> bool:
        return self.get_current_stage(workflow_id) == WorkflowStage.COMPLETE

    def is_blocked(self, workflow_id: str) -> bool:
        return self.get_current_stage(workflow_id) == WorkflowStage.BLOCKED

    def get_runs_in_stage(self, stage: WorkflowStage) -> list[WorkflowRun]:
        return [run for run in self._runs.values() if run.current_stage == stage]

    def run_ids(self) -> list[str]:
        return list(self._runs)

    def get_statistics(self) -> dict[str, Any]:
        """Aggregate counts across all tracked runs.

        Returns:
            Dict with ``total``, ``by_stage`` (every stage, zero included)
            and ``average_transitions`` per run.
        """
        by_stage = {stage.value: 0 for stage in WorkflowStage}
        transitions = 0
        for run in self._runs.values():
            by_stage[run.current_stage.value] += 1
            transitions += len(run.history)

        total = len(self._runs)
        return {
            "total": total,
            "by_stage": by_stage,
            "average_transitions": transitions / total if total else 0.0,
        }

    def remove(self, workflow_id: str) -> bool:
        """Stop tracking a run. Returns False if it was not tracked."""
        removed = self._runs.pop(workflow_id, None) is not None
        if removed:
            log.info("workflow_removed", workflow_id=workflow_id)
        return removed

    def restore(self, workflow_id: str, state: WorkflowRun | WorkflowSnapshot) -> WorkflowRun:
        """Rehydrate a run from a snapshot, replacing any tracked run.

        Only the shape of the snapshot is checked; its history is trusted.
        """
        if isinstance(state, WorkflowRun):
            run = WorkflowRun(
                workflow_id=workflow_id,
                current_stage=state.current_stage,
                previous_stage=state.previous_stage,
                history=list(state.history),
                created_at=state.created_at,
                updated_at=state.updated_at,
                metadata=dict(state.metadata),
            )
        else:
            previous = state.get("previous_stage")
            run = WorkflowRun(
                workflow_id=workflow_id,
                current_stage=WorkflowStage(state["current_stage"]),
                previous_stage=WorkflowStage(previous) if previous else None,
                history=[
                    StageTransition(
                        from_stage=WorkflowStage(item["from_stage"]),
                        to_stage=WorkflowStage(item["to_stage"]),
                        timestamp=_parse_timestamp(item["timestamp"]),
                        metadata=item.get("metadata"),
                    )
                    for item in state.get("history", [])
                ],
                created_at=_parse_timestamp(state["created_at"]),
                updated_at=_parse_timestamp(state["updated_at"]),
                metadata=dict(state.get("metadata", {})),
            )

        self._runs[workflow_id] = run
        log.info("workflow_restored", workflow_id=workflow_id, stage=str(run.current_stage))
        return run

    def _require(self, workflow_id: str) -> WorkflowRun:
        run = self._runs.get(workflow_id)
        if run is None:
            raise WorkflowNotFoundError(workflow_id)
        return run


def _parse_timestamp(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
