"""
Flow coordinator for the staged code-generation pipeline.

This module provides the FlowCoordinator class, the control loop that drives
each workflow from initiation to a terminal state. It owns one stage state
machine, one worker supervisor and one error classifier (all injectable),
and it is the only component that talks to the knowledge base.

Stage Lifecycle:
    1. ``start_workflow`` initializes the run at ``pending`` and enters
       ``exploring``, spawning an explorer worker
    2. The worker reports its output through a ``stage_completed`` event;
       the coordinator validates it, stores it and advances
    3. ``planning`` either spawns a planner or passes straight through to
       ``implementing``, depending on ``workflow.planning_enabled``
    4. A passing implementation completes the workflow; failing tests,
       invalid output or a permanent worker failure block it
    5. ``retry_workflow`` moves a blocked workflow back into a stage and
       spawns that stage's worker again

Failure Handling:
    Worker lifecycle events from the supervisor are consumed by a background
    task started with ``start()``. A non-zero exit, a timeout or an observer
    error is classified; transient failures are retried after a backoff
    delay, everything else blocks the workflow with the reason recorded in
    the run's metadata. A status write the knowledge base rejects also
    blocks the workflow.

Concurrency:
    Every operation that advances a workflow holds that workflow's lock for
    its whole duration, persistence awaits included. Operations on different
    workflows interleave freely.

Example:
    >>> coordinator = FlowCoordinator(settings, knowledge_base)
    >>> await coordinator.start()
    >>> await coordinator.start_workflow("wf-42")
    >>> await coordinator.handle_exploration_completion("wf-42", exploration_payload)
"""

import asyncio
from typing import Any

import structlog

from code_diffusion.config.settings import DiffusionSettings
from code_diffusion.engine.context import WorkflowContext
from code_diffusion.engine.error_classifier import ErrorClassifier
from code_diffusion.engine.events import WorkflowEvent
from code_diffusion.engine.stage_outputs import (
    BaseStageOutput,
    ImplementationOutput,
    validate_stage_output,
)
from code_diffusion.engine.state_machine import StageStateMachine
from code_diffusion.engine.supervisor import WorkerSupervisor
from code_diffusion.engine.types import (
    Capabilities,
    ErrorContext,
    SpawnRequest,
    WorkerEvent,
    WorkflowRun,
    WorkflowSnapshot,
    utcnow,
)
from code_diffusion.enums import EventKind, WorkerEventKind, WorkerType, WorkflowStage
from code_diffusion.exceptions import (
    CapacityExceededError,
    ExternalServiceError,
    InvalidTransitionError,
    WorkerLaunchError,
    WorkflowError,
    WorkflowNotBlockedError,
    WorkflowNotFoundError,
)
from code_diffusion.providers.base import KnowledgeBase

log = structlog.get_logger(__name__)

WORKER_STAGES = (WorkflowStage.EXPLORING, WorkflowStage.PLANNING, WorkflowStage.IMPLEMENTING)

OUTPUT_NAMES = {
    WorkflowStage.EXPLORING: "exploration",
    WorkflowStage.PLANNING: "planning",
    WorkflowStage.IMPLEMENTING: "implementation",
}


class FlowCoordinator:
    """Drive workflows through their stages.

    Attributes:
        settings: Engine configuration
        knowledge_base: System of record for workflow status and stage output
        state_machine: Stage bookkeeping for every tracked workflow
        supervisor: Worker process supervisor
        classifier: Failure classifier and retry policy
    """

    def __init__(
        self,
        settings: DiffusionSettings,
        knowledge_base: KnowledgeBase,
        state_machine: StageStateMachine | None = None,
        supervisor: WorkerSupervisor | None = None,
        classifier: ErrorClassifier | None = None,
    ) -> None:
        self.settings = settings
        self.knowledge_base = knowledge_base
        self.state_machine = state_machine or StageStateMachine()
        self.supervisor = supervisor or WorkerSupervisor(settings.supervisor)
        self.classifier = classifier or ErrorClassifier(settings.retry)

        self._contexts: dict[str, WorkflowContext] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()
        self._subagents: dict[str, str] = {}
        self._retry_tasks: dict[str, asyncio.Task[None]] = {}
        self._event_task: asyncio.Task[None] | None = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start consuming worker lifecycle events."""
        if self._event_task is None or self._event_task.done():
            self._event_task = asyncio.create_task(self._consume_worker_events(), name="worker-events")
            log.info("coordinator_started")

    async def shutdown(self) -> None:
        """Stop the event loop, cancel pending retries and terminate all workers."""
        tasks = list(self._retry_tasks.values())
        if self._event_task is not None:
            tasks.append(self._event_task)
            self._event_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._retry_tasks.clear()

        await self.supervisor.shutdown()
        log.info("coordinator_stopped")

    # =========================================================================
    # Workflow operations
    # =========================================================================

    async def start_workflow(self, workflow_id: str) -> WorkflowContext:
        """Initialize a workflow and enter the exploring stage.

        Raises:
            WorkflowExistsError: If the workflow is already tracked
            CapacityExceededError: If no worker slot is free; the workflow
                stays in ``exploring`` without a worker
            ExternalServiceError: If the status cannot be persisted; the
                workflow is blocked and can be retried
        """
        lock = await self._get_lock(workflow_id)
        async with lock:
            self.state_machine.initialize(workflow_id)
            context = WorkflowContext(workflow_id=workflow_id)
            self._contexts[workflow_id] = context
            log.info("workflow_started", workflow_id=workflow_id)

            await self._persist_stage(context, WorkflowStage.PENDING)
            await self._advance(context, WorkflowStage.EXPLORING)
            await self._enter_stage(context, WorkflowStage.EXPLORING)
            return context

    async def handle_exploration_completion(self, workflow_id: str, payload: Any) -> WorkflowStage:
        """Validate exploration output and advance toward implementation.

        Returns:
            The stage the workflow is in afterwards

        Raises:
            WorkflowNotFoundError: If the workflow is not tracked
            InvalidTransitionError: If the workflow is not exploring
        """
        lock = await self._get_lock(workflow_id)
        async with lock:
            context = self._require_stage(workflow_id, WorkflowStage.EXPLORING, WorkflowStage.PLANNING)
            output = await self._accept_output(context, WorkflowStage.EXPLORING, payload)
            if output is None:
                return context.current_stage

            await self._advance(
                context,
                WorkflowStage.PLANNING,
                {"exploration_output": output.model_dump(mode="json")},
            )
            await self._run_planning(context)
            return context.current_stage

    async def handle_planning_completion(self, workflow_id: str, payload: Any) -> WorkflowStage:
        """Validate planning output and enter implementation.

        Raises:
            WorkflowNotFoundError: If the workflow is not tracked
            InvalidTransitionError: If the workflow is not planning
        """
        lock = await self._get_lock(workflow_id)
        async with lock:
            context = self._require_stage(workflow_id, WorkflowStage.PLANNING, WorkflowStage.IMPLEMENTING)
            output = await self._accept_output(context, WorkflowStage.PLANNING, payload)
            if output is None:
                return context.current_stage

            await self._advance(
                context,
                WorkflowStage.IMPLEMENTING,
                {"planning_output": output.model_dump(mode="json")},
            )
            await self._enter_stage(context, WorkflowStage.IMPLEMENTING)
            return context.current_stage

    async def handle_implementation_completion(self, workflow_id: str, payload: Any) -> WorkflowStage:
        """Validate implementation output and complete or block the workflow.

        Raises:
            WorkflowNotFoundError: If the workflow is not tracked
            InvalidTransitionError: If the workflow is not implementing
        """
        lock = await self._get_lock(workflow_id)
        async with lock:
            context = self._require_stage(workflow_id, WorkflowStage.IMPLEMENTING, WorkflowStage.COMPLETE)
            output = await self._accept_output(context, WorkflowStage.IMPLEMENTING, payload)
            if output is None:
                return context.current_stage

            assert isinstance(output, ImplementationOutput)
            if not output.tests_passed:
                await self._settle_tasks(workflow_id, "failed")
                await self._block(context, WorkflowStage.IMPLEMENTING, "tests failed")
                return context.current_stage

            await self._advance(
                context,
                WorkflowStage.COMPLETE,
                {"implementation_output": output.model_dump(mode="json")},
            )
            await self._settle_tasks(workflow_id, "complete")
            log.info("workflow_completed", workflow_id=workflow_id, files=len(output.files_modified))
            return context.current_stage

    async def retry_workflow(self, workflow_id: str, from_stage: WorkflowStage) -> WorkflowStage:
        """Move a blocked workflow back into ``from_stage`` and respawn its worker.

        Retrying from ``planning`` follows the planning policy, so with
        planning disabled the workflow passes through to ``implementing``.

        Raises:
            WorkflowNotFoundError: If the workflow is not tracked
            WorkflowNotBlockedError: If the workflow is not blocked
            WorkflowError: If ``from_stage`` is not a worker stage
        """
        lock = await self._get_lock(workflow_id)
        async with lock:
            current = self.state_machine.get_current_stage(workflow_id)
            if current is None:
                raise WorkflowNotFoundError(workflow_id)
            if current != WorkflowStage.BLOCKED:
                raise WorkflowNotBlockedError(workflow_id, current)

            from_stage = WorkflowStage(from_stage)
            if from_stage not in WORKER_STAGES:
                raise WorkflowError(
                    f"Cannot retry workflow {workflow_id} from stage {from_stage}",
                    workflow_id=workflow_id,
                )

            context = self._require_context(workflow_id)
            log.info("workflow_retry_requested", workflow_id=workflow_id, stage=str(from_stage))

            await self._advance(context, from_stage, {"retried_at": utcnow().isoformat()})
            self.classifier.reset_count(workflow_id, from_stage)
            if from_stage == WorkflowStage.PLANNING:
                await self._run_planning(context)
            else:
                await self._enter_stage(context, from_stage)
            return context.current_stage

    async def restore_workflow(self, workflow_id: str, state: WorkflowRun | WorkflowSnapshot) -> WorkflowContext:
        """Resume tracking a persisted run.

        No worker is spawned; the run waits for its stage's completion event,
        a reported failure or, when blocked, a retry.
        """
        lock = await self._get_lock(workflow_id)
        async with lock:
            previous = self._contexts.pop(workflow_id, None)
            if previous is not None:
                self._reap(previous)
            run = self.state_machine.restore(workflow_id, state)
            context = WorkflowContext(workflow_id=workflow_id, current_stage=run.current_stage)
            self._contexts[workflow_id] = context
            return context

    async def report_stage_failure(self, workflow_id: str, failure: BaseException | str) -> WorkflowStage:
        """Report a failure of the workflow's current stage from outside the supervisor.

        The failure is classified like a failed worker: transient failures
        schedule a retry, anything else blocks the workflow.

        Raises:
            WorkflowNotFoundError: If the workflow is not tracked
            WorkflowError: If the workflow is not in a worker stage
        """
        lock = await self._get_lock(workflow_id)
        async with lock:
            context = self._require_context(workflow_id)
            stage = context.current_stage
            if stage not in WORKER_STAGES:
                raise WorkflowError(f"Workflow {workflow_id} has no running stage ({stage})", workflow_id=workflow_id)
            self._reap(context)
            await self._handle_stage_failure(context, stage, failure)
            return context.current_stage

    async def handle_event(self, event: WorkflowEvent) -> None:
        """Dispatch a normalized inbound event."""
        log.info("event_received", kind=str(event.kind), workflow_id=event.workflow_id, stage=event.stage)

        if event.kind == EventKind.STARTED:
            assert event.workflow_id is not None
            await self.start_workflow(event.workflow_id)
        elif event.kind == EventKind.STAGE_COMPLETED:
            assert event.workflow_id is not None
            handlers = {
                WorkflowStage.EXPLORING: self.handle_exploration_completion,
                WorkflowStage.PLANNING: self.handle_planning_completion,
                WorkflowStage.IMPLEMENTING: self.handle_implementation_completion,
            }
            handler = handlers.get(event.stage) if event.stage else None
            if handler is None:
                raise WorkflowError(f"Stage {event.stage} does not complete", workflow_id=event.workflow_id)
            await handler(event.workflow_id, event.payload)
        elif event.kind == EventKind.TASK_CREATED:
            assert event.task_id is not None
            await self.spawn_subagent(event.task_id, event.parent_page_id, event.task_type)
        else:
            log.info("workflow_status_changed", workflow_id=event.workflow_id, status=event.status)

    async def spawn_subagent(
        self,
        task_id: str,
        parent_page_id: str | None = None,
        task_type: str | None = None,
    ) -> str:
        """Launch a subagent worker for a standalone knowledge-base task.

        The task is marked ``in_progress`` and settled as ``complete`` or
        ``failed`` when the worker exits.

        Raises:
            CapacityExceededError: If no worker slot is free
            WorkerLaunchError: If the worker cannot be started
            ExternalServiceError: If the task cannot be marked ``in_progress``;
                the worker is terminated
        """
        worker_id = await self.supervisor.spawn(
            SpawnRequest(
                worker_type=WorkerType.SUBAGENT,
                task_id=task_id,
                parent_page_id=parent_page_id,
            )
        )
        self._subagents[worker_id] = task_id
        log.info("subagent_spawned", task_id=task_id, task_type=task_type, worker_id=worker_id)
        try:
            await self.knowledge_base.update_task(task_id, status="in_progress")
        except ExternalServiceError as e:
            self._subagents.pop(worker_id, None)
            self.supervisor.kill(worker_id)
            log.error("subagent_start_failed", task_id=task_id, worker_id=worker_id, error=str(e))
            raise
        return worker_id

    async def cleanup_workflow(self, workflow_id: str) -> bool:
        """Forget a workflow entirely, terminating its worker. Irreversible.

        Returns:
            False if the workflow was not tracked
        """
        lock = await self._get_lock(workflow_id)
        async with lock:
            context = self._contexts.pop(workflow_id, None)
            if context is not None:
                self._reap(context)
            self.classifier.clear_workflow(workflow_id)
            removed = self.state_machine.remove(workflow_id)

        async with self._locks_lock:
            self._locks.pop(workflow_id, None)

        if removed:
            log.info("workflow_cleaned_up", workflow_id=workflow_id)
        return removed

    # =========================================================================
    # Queries
    # =========================================================================

    def get_workflow_context(self, workflow_id: str) -> WorkflowContext | None:
        return self._contexts.get(workflow_id)

    def get_active_workflows(self) -> list[str]:
        """Ids of workflows that are neither complete nor blocked."""
        finished = (WorkflowStage.COMPLETE, WorkflowStage.BLOCKED)
        return [
            workflow_id
            for workflow_id in self.state_machine.run_ids()
            if self.state_machine.get_current_stage(workflow_id) not in finished
        ]

    def get_statistics(self) -> dict[str, Any]:
        return {
            "workflows": self.state_machine.get_statistics(),
            "active_workflows": len(self.get_active_workflows()),
            "active_workers": self.supervisor.active_count,
            "pending_retries": len(self._retry_tasks),
            "failures": self.classifier.get_statistics(),
        }

    # =========================================================================
    # Worker events
    # =========================================================================

    async def process_worker_event(self, event: WorkerEvent) -> None:
        """Act on one supervisor lifecycle event."""
        task_id = self._subagents.pop(event.worker_id, None)
        if task_id is not None:
            await self._settle_subagent(task_id, event)
            return

        context = self._contexts.get(event.workflow_id) if event.workflow_id else None
        if context is None or context.worker_id != event.worker_id:
            log.debug("worker_event_ignored", worker_id=event.worker_id, kind=str(event.kind))
            return

        lock = await self._get_lock(context.workflow_id)
        async with lock:
            if context.worker_id != event.worker_id:
                return
            context.worker_id = None

            if not event.failed:
                log.info(
                    "worker_finished",
                    workflow_id=context.workflow_id,
                    worker_id=event.worker_id,
                    kind=str(event.kind),
                    exit_code=event.exit_code,
                )
                return

            stage = context.current_stage
            if stage not in WORKER_STAGES:
                return
            await self._handle_stage_failure(context, stage, event.describe())

    async def _consume_worker_events(self) -> None:
        while True:
            event = await self.supervisor.events.get()
            try:
                await self.process_worker_event(event)
            except Exception as e:
                log.error(
                    "worker_event_failed",
                    worker_id=event.worker_id,
                    workflow_id=event.workflow_id,
                    error=str(e),
                    exc_info=True,
                )

    async def _settle_subagent(self, task_id: str, event: WorkerEvent) -> None:
        if event.failed:
            await self.knowledge_base.update_task(task_id, status="failed", output=event.describe())
        elif event.kind == WorkerEventKind.EXITED:
            await self.knowledge_base.update_task(task_id, status="complete")
        log.info("subagent_settled", task_id=task_id, worker_id=event.worker_id, kind=str(event.kind))

    # =========================================================================
    # Internals (caller holds the workflow lock)
    # =========================================================================

    async def _get_lock(self, workflow_id: str) -> asyncio.Lock:
        async with self._locks_lock:
            if workflow_id not in self._locks:
                self._locks[workflow_id] = asyncio.Lock()
            return self._locks[workflow_id]

    def _require_context(self, workflow_id: str) -> WorkflowContext:
        run = self.state_machine.get_run(workflow_id)
        if run is None:
            raise WorkflowNotFoundError(workflow_id)
        context = self._contexts.get(workflow_id)
        if context is None:
            # Run restored straight into the state machine
            context = WorkflowContext(workflow_id=workflow_id, current_stage=run.current_stage)
            self._contexts[workflow_id] = context
        return context

    def _require_stage(
        self,
        workflow_id: str,
        expected: WorkflowStage,
        next_stage: WorkflowStage,
    ) -> WorkflowContext:
        context = self._require_context(workflow_id)
        current = self.state_machine.get_current_stage(workflow_id)
        if current != expected:
            raise InvalidTransitionError(workflow_id, current, next_stage)
        return context

    async def _persist(self, workflow_id: str, stage: WorkflowStage) -> None:
        await self.knowledge_base.update_status(workflow_id, stage)

    async def _advance(
        self,
        context: WorkflowContext,
        stage: WorkflowStage,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.state_machine.transition(context.workflow_id, stage, metadata)
        context.current_stage = stage
        await self._persist_stage(context, stage)

    async def _persist_stage(self, context: WorkflowContext, stage: WorkflowStage) -> None:
        """Persist ``stage``; on failure block the run so it can be retried, then re-raise."""
        try:
            await self._persist(context.workflow_id, stage)
        except ExternalServiceError as e:
            log.error("workflow_status_persist_failed", workflow_id=context.workflow_id, stage=str(stage), error=str(e))
            self._note(context.workflow_id, persist_error=str(e))
            if stage == WorkflowStage.PENDING or stage in WORKER_STAGES:
                await self._block(context, stage, f"failed to persist status {stage}: {e}")
            raise

    async def _run_planning(self, context: WorkflowContext) -> None:
        """Spawn a planner, or pass straight through to implementing when planning is disabled."""
        if self.settings.workflow.planning_enabled:
            await self._enter_stage(context, WorkflowStage.PLANNING)
            return
        log.info("planning_skipped", workflow_id=context.workflow_id)
        await self._advance(context, WorkflowStage.IMPLEMENTING)
        await self._enter_stage(context, WorkflowStage.IMPLEMENTING)

    async def _accept_output(
        self,
        context: WorkflowContext,
        stage: WorkflowStage,
        payload: Any,
    ) -> BaseStageOutput | None:
        """Validate and store a stage's output; block the workflow if it is invalid."""
        result = validate_stage_output(stage, payload)
        if not result.ok:
            log.warning(
                "stage_output_invalid",
                workflow_id=context.workflow_id,
                stage=str(stage),
                errors=result.errors,
            )
            await self._block(context, stage, f"invalid {OUTPUT_NAMES[stage]} output", result.errors)
            return None

        output = result.output
        assert output is not None
        context.worker_id = None
        context.set_stage_output(stage, output)
        await self.knowledge_base.create_stage_record(context.workflow_id, stage, output.model_dump_json(by_alias=True))
        self.classifier.reset_count(context.workflow_id, stage)
        log.info("stage_completed", workflow_id=context.workflow_id, stage=str(stage))
        return output

    async def _enter_stage(self, context: WorkflowContext, stage: WorkflowStage) -> None:
        """Spawn the worker for ``stage``; the run is already in that stage."""
        workflow_id = context.workflow_id
        capabilities = self.settings.workflow.capabilities_for(stage)
        request = SpawnRequest(
            worker_type=WorkerType.for_stage(stage),
            workflow_id=workflow_id,
            parent_page_id=workflow_id,
            capabilities=Capabilities(
                skills=list(capabilities.skills),
                mcps=list(capabilities.mcps),
                worktree=self.settings.workflow.worktree_for(workflow_id),
            ),
        )

        try:
            context.worker_id = await self.supervisor.spawn(request)
        except CapacityExceededError as e:
            context.metadata["last_spawn_error"] = e.message
            self._note(workflow_id, spawn_error=e.message)
            raise
        except WorkerLaunchError as e:
            await self._handle_stage_failure(context, stage, e)
            return

        log.info("stage_entered", workflow_id=workflow_id, stage=str(stage), worker_id=context.worker_id)

    async def _handle_stage_failure(
        self,
        context: WorkflowContext,
        stage: WorkflowStage,
        failure: BaseException | str,
    ) -> None:
        workflow_id = context.workflow_id
        attempt = self.classifier.get_failure_count(workflow_id, stage)
        verdict = self.classifier.classify(ErrorContext(workflow_id, stage, failure, attempt=attempt))

        if not verdict.should_retry:
            await self._block(context, stage, verdict.message)
            return

        retry_counts = self._note(workflow_id).setdefault("retry_counts", {})
        retry_counts[stage.value] = attempt + 1
        context.metadata["last_failure"] = {"stage": stage.value, "error": verdict.message}
        self._schedule_retry(workflow_id, stage, verdict.retry_delay or 0.0)

    def _schedule_retry(self, workflow_id: str, stage: WorkflowStage, delay: float) -> None:
        previous = self._retry_tasks.pop(workflow_id, None)
        if previous is not None:
            previous.cancel()

        task = asyncio.create_task(self._retry_after(workflow_id, stage, delay), name=f"retry-{workflow_id}")
        self._retry_tasks[workflow_id] = task

        def _forget(done: asyncio.Task[None]) -> None:
            if self._retry_tasks.get(workflow_id) is done:
                del self._retry_tasks[workflow_id]

        task.add_done_callback(_forget)
        log.info("stage_retry_scheduled", workflow_id=workflow_id, stage=str(stage), delay=round(delay, 3))

    async def _retry_after(self, workflow_id: str, stage: WorkflowStage, delay: float) -> None:
        await asyncio.sleep(delay)
        lock = await self._get_lock(workflow_id)
        async with lock:
            context = self._contexts.get(workflow_id)
            if context is None or context.current_stage != stage or context.worker_id is not None:
                log.info("stage_retry_dropped", workflow_id=workflow_id, stage=str(stage))
                return
            try:
                await self._enter_stage(context, stage)
            except CapacityExceededError as e:
                await self._block(context, stage, e.message)

    async def _block(
        self,
        context: WorkflowContext,
        stage: WorkflowStage,
        reason: str,
        errors: list[str] | None = None,
    ) -> None:
        self._reap(context)
        retry = self._retry_tasks.pop(context.workflow_id, None)
        if retry is not None and retry is not asyncio.current_task():
            retry.cancel()

        metadata: dict[str, Any] = {
            "failed_stage": stage.value,
            "worker_type": WorkerType.for_stage(stage).value if stage in WORKER_STAGES else None,
            "reason": reason,
            "failed_at": utcnow().isoformat(),
        }
        if errors:
            metadata["errors"] = errors

        self.state_machine.transition(context.workflow_id, WorkflowStage.BLOCKED, metadata)
        context.current_stage = WorkflowStage.BLOCKED
        context.metadata["last_failure"] = metadata
        log.warning("workflow_blocked", workflow_id=context.workflow_id, stage=str(stage), reason=reason)
        try:
            await self._persist(context.workflow_id, WorkflowStage.BLOCKED)
        except ExternalServiceError as e:
            # The run is blocked in memory and can still be retried
            log.error("workflow_status_persist_failed", workflow_id=context.workflow_id, stage="blocked", error=str(e))
            self._note(context.workflow_id, persist_error=str(e))

    def _reap(self, context: WorkflowContext) -> None:
        if context.worker_id is None:
            return
        worker_id, context.worker_id = context.worker_id, None
        if self.supervisor.kill(worker_id):
            log.info("worker_reaped", workflow_id=context.workflow_id, worker_id=worker_id)

    def _note(self, workflow_id: str, **values: Any) -> dict[str, Any]:
        """Merge ``values`` into the run's metadata and return it."""
        run = self.state_machine.get_run(workflow_id)
        if run is None:
            raise WorkflowNotFoundError(workflow_id)
        run.metadata.update(values)
        return run.metadata

    async def _settle_tasks(self, workflow_id: str, status: str) -> None:
        tasks = await self.knowledge_base.query_tasks(workflow_id)
        for task in tasks:
            if task.status != status:
                await self.knowledge_base.update_task(task.task_id, status=status)
        if tasks:
            log.info("tasks_settled", workflow_id=workflow_id, status=status, count=len(tasks))
