"""Inbound workflow events.

The coordinator accepts a single normalized event type. Events arrive
either already normalized (``{"kind": ..., "workflow_id": ...}``) or as
Notion-style webhook payloads::

    {"type": "page_updated", "page_id": "...",
     "data": {"workflow_id": "...", "stage": "exploring", "status": "complete",
              "output": {...}}}

``normalize_webhook_payload`` converts both forms and returns ``None`` for
payloads that carry nothing to act on (database events, unknown types,
unrecognised stage names).
"""

import json
from typing import Any

import structlog
from pydantic import BaseModel, model_validator

from code_diffusion.enums import EventKind, WorkflowStage

log = structlog.get_logger(__name__)

STAGE_ALIASES: dict[str, WorkflowStage] = {
    "exploring": WorkflowStage.EXPLORING,
    "exploration": WorkflowStage.EXPLORING,
    "explorer": WorkflowStage.EXPLORING,
    "bootstrapping": WorkflowStage.EXPLORING,
    "bootstrapper": WorkflowStage.EXPLORING,
    "planning": WorkflowStage.PLANNING,
    "planner": WorkflowStage.PLANNING,
    "implementing": WorkflowStage.IMPLEMENTING,
    "implementation": WorkflowStage.IMPLEMENTING,
    "implementer": WorkflowStage.IMPLEMENTING,
}


def parse_stage(label: str | None) -> WorkflowStage | None:
    """Map a stage or worker label to the stage it completes."""
    if not label:
        return None
    return STAGE_ALIASES.get(label.strip().lower())


class WorkflowEvent(BaseModel):
    """A normalized inbound event.

    ``task_created`` events describe a standalone subagent task and carry
    ``task_id`` instead of ``workflow_id``.
    """

    kind: EventKind
    workflow_id: str | None = None
    stage: WorkflowStage | None = None
    status: str | None = None
    payload: Any = None
    task_id: str | None = None
    parent_page_id: str | None = None
    task_type: str | None = None

    @model_validator(mode="after")
    def _check_required(self) -> "WorkflowEvent":
        if self.kind == EventKind.TASK_CREATED:
            if not self.task_id:
                raise ValueError("task_created events require task_id")
        elif not self.workflow_id:
            raise ValueError(f"{self.kind} events require workflow_id")
        if self.kind == EventKind.STAGE_COMPLETED and self.stage is None:
            raise ValueError("stage_completed events require stage")
        return self


def normalize_webhook_payload(raw: dict[str, Any]) -> WorkflowEvent | None:
    """Convert a webhook body into a WorkflowEvent.

    Raises:
        pydantic.ValidationError: If a pre-normalized payload is malformed
    """
    if "kind" in raw:
        return WorkflowEvent.model_validate(raw)

    event_type = raw.get("type")
    data = raw.get("data") or {}
    if not isinstance(data, dict):
        log.warning("webhook_data_invalid", type=event_type, data_type=type(data).__name__)
        return None
    workflow_id = data.get("workflow_id")

    if event_type == "page_created":
        if workflow_id:
            return WorkflowEvent(kind=EventKind.STARTED, workflow_id=workflow_id)
        if data.get("task_type") and raw.get("page_id"):
            return WorkflowEvent(
                kind=EventKind.TASK_CREATED,
                task_id=raw["page_id"],
                parent_page_id=data.get("parent_page_id"),
                task_type=data["task_type"],
            )
        return None

    if event_type == "page_updated":
        status = data.get("status")
        if data.get("stage") and status == "complete":
            stage = parse_stage(data["stage"])
            if stage is None or not workflow_id:
                log.warning("webhook_stage_unrecognised", stage=data["stage"], workflow_id=workflow_id)
                return None
            return WorkflowEvent(
                kind=EventKind.STAGE_COMPLETED,
                workflow_id=workflow_id,
                stage=stage,
                status=status,
                payload=_decode_output(data.get("output")),
            )
        if status and workflow_id:
            return WorkflowEvent(
                kind=EventKind.STAGE_STATUS_CHANGED,
                workflow_id=workflow_id,
                stage=parse_stage(data.get("stage")),
                status=status,
            )
        return None

    log.debug("webhook_ignored", type=event_type)
    return None


def _decode_output(output: Any) -> Any:
    if isinstance(output, str):
        try:
            return json.loads(output)
        except json.JSONDecodeError:
            return output
    return output
