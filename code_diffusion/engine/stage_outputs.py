"""Typed stage output payloads.

Workers report their results as JSON. Each stage has one tagged variant;
``validate_stage_output`` checks a raw payload against the variant for a
stage and returns a result object instead of raising, so callers can route
invalid output to the block path with the collected errors.

Field names are snake_case; the camelCase names workers commonly emit
(``codebaseAnalysis``, ``testsPassed``, ...) are accepted as aliases.
"""

from dataclasses import dataclass, field
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from code_diffusion.enums import Complexity, WorkflowStage


class BaseStageOutput(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class ExplorationOutput(BaseStageOutput):
    """Result of the exploring stage."""

    kind: Literal["exploration"] = "exploration"
    codebase_analysis: dict[str, Any]
    workflow_spec: dict[str, Any]
    suggested_approach: str
    estimated_complexity: Complexity

    @field_validator("codebase_analysis")
    @classmethod
    def _analysis_not_empty(cls, value: dict[str, Any]) -> dict[str, Any]:
        if not value:
            raise ValueError("codebase analysis summary must not be empty")
        return value

    @field_validator("suggested_approach")
    @classmethod
    def _approach_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("suggested approach must not be blank")
        return value


class PlanningOutput(BaseStageOutput):
    """Result of the planning stage."""

    kind: Literal["planning"] = "planning"
    tasks: list[Any] = Field(default_factory=list)
    dependencies: dict[str, Any] = Field(default_factory=dict)
    estimated_duration: str = ""


class ImplementationOutput(BaseStageOutput):
    """Result of the implementing stage."""

    kind: Literal["implementation"] = "implementation"
    files_modified: list[str] = Field(default_factory=list)
    tests_passed: bool
    summary: str = ""


StageOutput = Annotated[
    ExplorationOutput | PlanningOutput | ImplementationOutput,
    Field(discriminator="kind"),
]

OUTPUT_MODELS: dict[WorkflowStage, type[BaseStageOutput]] = {
    WorkflowStage.EXPLORING: ExplorationOutput,
    WorkflowStage.PLANNING: PlanningOutput,
    WorkflowStage.IMPLEMENTING: ImplementationOutput,
}

OUTPUT_KINDS = frozenset({"exploration", "planning", "implementation"})

_stage_output_adapter: TypeAdapter[Any] = TypeAdapter(StageOutput)


@dataclass
class OutputValidation:
    """Outcome of validating one payload."""

    stage: WorkflowStage
    output: BaseStageOutput | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.output is not None and not self.errors


def validate_stage_output(stage: WorkflowStage, payload: Any) -> OutputValidation:
    """Validate ``payload`` as the output variant for ``stage``.

    A ``kind`` tag in the payload, when present, must match the stage.
    """
    stage = WorkflowStage(stage)
    model = OUTPUT_MODELS.get(stage)
    if model is None:
        return OutputValidation(stage=stage, errors=[f"stage {stage} produces no output"])

    if not isinstance(payload, dict):
        return OutputValidation(stage=stage, errors=["payload must be a JSON object"])

    expected_kind = model.model_fields["kind"].default
    kind = payload.get("kind", expected_kind)
    if kind != expected_kind:
        return OutputValidation(stage=stage, errors=[f"expected kind '{expected_kind}', got '{kind}'"])

    try:
        output = _stage_output_adapter.validate_python({**payload, "kind": expected_kind})
    except ValidationError as e:
        return OutputValidation(stage=stage, errors=_format_errors(e))

    return OutputValidation(stage=stage, output=output)


def _format_errors(error: ValidationError) -> list[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"] if part not in OUTPUT_KINDS)
        messages.append(f"{location}: {item['msg']}" if location else item["msg"])
    return messages

