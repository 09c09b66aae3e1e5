"""Workflow orchestration engine.

This package holds the core of code-diffusion: the stage state machine,
the worker process supervisor, the error classifier and the flow
coordinator that ties them together.

Key Components:
    - StageStateMachine: Legal stage transitions and per-run history
    - WorkerSupervisor: Worker process launch, timeout and termination
    - ErrorClassifier: Retry-or-block decisions with exponential backoff
    - FlowCoordinator: Drives workflows from start to a terminal stage

Type Definitions:
    - WorkflowRun / StageTransition: State machine records
    - WorkflowSnapshot: JSON-compatible form of a run
    - WorkerHandle / WorkerEvent: Supervisor records and lifecycle messages

Example:
    >>> from code_diffusion.engine.coordinator import FlowCoordinator
    >>> coordinator = FlowCoordinator(settings, knowledge_base)
    >>> await coordinator.start_workflow("wf-42")
"""

from code_diffusion.engine.types import (
    StageTransition,
    WorkerEvent,
    WorkerHandle,
    WorkflowRun,
    WorkflowSnapshot,
)

__all__ = [
    "StageTransition",
    "WorkerEvent",
    "WorkerHandle",
    "WorkflowRun",
    "WorkflowSnapshot",
]
