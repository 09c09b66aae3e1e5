"""Custom exception hierarchy for the code-diffusion orchestration engine.

This module defines a structured exception hierarchy that lets callers
separate caller mistakes (illegal transitions, unknown workflows) from
resource exhaustion (worker ceiling) and from failures of the external
knowledge base.

Exception Hierarchy:
    CodeDiffusionError (base)
    ├── ConfigurationError
    ├── WorkflowError
    │   ├── InvalidTransitionError
    │   ├── WorkflowNotFoundError
    │   ├── WorkflowExistsError
    │   ├── WorkflowNotBlockedError
    │   └── InvalidStageOutputError
    ├── WorkerError
    │   ├── CapacityExceededError
    │   ├── WorkerNotFoundError
    │   └── WorkerLaunchError
    └── ExternalServiceError
        └── RateLimitedError

Example Usage:
    >>> from code_diffusion.exceptions import InvalidTransitionError
    >>> try:
    ...     state_machine.transition("wf-1", WorkflowStage.COMPLETE)
    ... except InvalidTransitionError as e:
    ...     print(e.from_stage, e.to_stage)
"""

from typing import Any


class CodeDiffusionError(Exception):
    """Base exception for all code-diffusion errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(CodeDiffusionError):
    """Configuration-related errors.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Missing environment variable referenced from the config
    """

    pass


class WorkflowError(CodeDiffusionError):
    """Workflow bookkeeping errors.

    Attributes:
        message: Human-readable error description
        workflow_id: Workflow the error relates to, when known
    """

    def __init__(self, message: str, workflow_id: str | None = None) -> None:
        self.workflow_id = workflow_id
        super().__init__(message)


class InvalidTransitionError(WorkflowError):
    """A stage change that the transition table does not allow.

    Attributes:
        from_stage: Stage the workflow was in
        to_stage: Stage that was requested
    """

    def __init__(self, workflow_id: str, from_stage: Any, to_stage: Any) -> None:
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(
            f"Invalid transition for workflow {workflow_id}: {from_stage} -> {to_stage}",
            workflow_id=workflow_id,
        )


class WorkflowNotFoundError(WorkflowError):
    """The workflow id is not tracked."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}", workflow_id=workflow_id)


class WorkflowExistsError(WorkflowError):
    """The workflow id is already tracked."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow already exists: {workflow_id}", workflow_id=workflow_id)


class WorkflowNotBlockedError(WorkflowError):
    """Retry was requested for a workflow that is not blocked."""

    def __init__(self, workflow_id: str, stage: Any) -> None:
        self.stage = stage
        super().__init__(
            f"Workflow {workflow_id} is not blocked (current stage: {stage})",
            workflow_id=workflow_id,
        )


class InvalidStageOutputError(WorkflowError):
    """A stage output payload failed validation.

    Attributes:
        stage: Stage whose output was rejected
        errors: Individual validation problems
    """

    def __init__(
        self,
        stage: Any,
        errors: list[str],
        workflow_id: str | None = None,
    ) -> None:
        self.stage = stage
        self.errors = errors
        detail = "; ".join(errors) if errors else "unknown error"
        super().__init__(f"Invalid {stage} output: {detail}", workflow_id=workflow_id)


class WorkerError(CodeDiffusionError):
    """Worker process supervision errors."""

    pass


class CapacityExceededError(WorkerError):
    """The concurrency ceiling is reached; nothing was spawned.

    Attributes:
        limit: Configured maximum number of concurrent workers
    """

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Maximum concurrent workers ({limit}) reached")


class WorkerNotFoundError(WorkerError):
    """The worker id is not tracked."""

    def __init__(self, worker_id: str) -> None:
        self.worker_id = worker_id
        super().__init__(f"Worker not found: {worker_id}")


class WorkerLaunchError(WorkerError):
    """The operating system refused to start a worker process."""

    def __init__(self, message: str, worker_type: Any = None) -> None:
        self.worker_type = worker_type
        super().__init__(message)


class ExternalServiceError(CodeDiffusionError):
    """Errors from the external knowledge-base service.

    Attributes:
        message: Human-readable error description
        status_code: HTTP status code, when the failure was an HTTP response
        response_text: Raw response body, when available
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.response_text = response_text

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)
        self.message = message


class RateLimitedError(ExternalServiceError):
    """The external service answered with HTTP 429.

    Attributes:
        retry_after: Seconds the service asked us to wait, if it said so
    """

    def __init__(
        self,
        message: str = "Rate limited by external service",
        retry_after: float | None = None,
        response_text: str | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, status_code=429, response_text=response_text)
