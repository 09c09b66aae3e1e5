"""Per-workflow coordination context.

The coordinator keeps one WorkflowContext per active workflow. It carries
validated stage outputs between stages, the id of the worker currently
executing the workflow and free-form metadata such as the last failure.
"""

from dataclasses import dataclass, field
from typing import Any

from code_diffusion.enums import WorkflowStage


@dataclass
class WorkflowContext:
    """Context carried through a workflow's stages.

    Attributes:
        workflow_id: The workflow this context belongs to
        current_stage: Stage the coordinator last put the workflow in
        stage_outputs: Validated outputs of completed stages
        worker_id: Worker currently executing the workflow, if any
        metadata: Failure reasons, retry bookkeeping and similar notes
    """

    workflow_id: str
    current_stage: WorkflowStage = WorkflowStage.PENDING
    stage_outputs: dict[WorkflowStage, Any] = field(default_factory=dict)
    worker_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def get_stage_output(self, stage: WorkflowStage) -> Any | None:
        """Get output from a previous stage."""
        return self.stage_outputs.get(stage)

    def set_stage_output(self, stage: WorkflowStage, output: Any) -> None:
        """Record output from a completed stage."""
        self.stage_outputs[stage] = output

    def has_stage_completed(self, stage: WorkflowStage) -> bool:
        """Check if a stage has recorded output."""
        return stage in self.stage_outputs
