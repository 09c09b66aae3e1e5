"""Worker process supervision.

The supervisor launches one OS process per agent, tracks it by a generated
worker id and enforces two limits: a hard ceiling on concurrently tracked
workers and a per-worker wall-clock timeout. Termination is graceful first
(SIGTERM) and forced after a grace period (SIGKILL).

Each worker gets an observer task that logs its stdout and stderr, keeps a
short stderr tail and waits for the exit. Lifecycle changes are published
as ``WorkerEvent`` messages on ``supervisor.events`` (an ``asyncio.Queue``);
the supervisor never retries anything itself.

Example:
    >>> supervisor = WorkerSupervisor(SupervisorConfig(worker_command=["my-agent"]))
    >>> worker_id = await supervisor.spawn(
    ...     SpawnRequest(worker_type=WorkerType.EXPLORER, workflow_id="wf-1")
    ... )
    >>> event = await supervisor.events.get()
    >>> event.kind, event.exit_code
    (<WorkerEventKind.EXITED: 'exited'>, 0)
"""

import asyncio
import contextlib
import os
import secrets
import time
from collections import deque
from collections.abc import Coroutine
from typing import Any

import structlog

from code_diffusion.config.settings import SupervisorConfig
from code_diffusion.engine.types import SpawnRequest, WorkerEvent, WorkerHandle, utcnow
from code_diffusion.enums import WorkerEventKind
from code_diffusion.exceptions import CapacityExceededError, WorkerLaunchError

log = structlog.get_logger(__name__)

STREAM_LIMIT = 1024 * 1024


def build_worker_args(command: list[str], request: SpawnRequest) -> list[str]:
    """Append the launch arguments for ``request`` to the worker command."""
    args = [*command, "--worker-type", str(request.worker_type)]
    if request.workflow_id:
        args += ["--workflow-id", request.workflow_id]
    if request.task_id:
        args += ["--task-id", request.task_id]
    if request.parent_page_id:
        args += ["--parent-page", request.parent_page_id]
    for skill in request.capabilities.skills:
        args += ["--skill", skill]
    for mcp in request.capabilities.mcps:
        args += ["--mcp", mcp]
    if request.capabilities.worktree:
        args += ["--worktree", request.capabilities.worktree]
    return args


class WorkerSupervisor:
    """Launches, observes and terminates worker processes.

    Args:
        config: Concurrency ceiling, timeout, grace period and launch command
        events: Queue receiving lifecycle events; a new one is created if omitted
    """

    def __init__(
        self,
        config: SupervisorConfig | None = None,
        events: asyncio.Queue[WorkerEvent] | None = None,
    ) -> None:
        self.config = config or SupervisorConfig()
        self.events: asyncio.Queue[WorkerEvent] = events if events is not None else asyncio.Queue()
        self._workers: dict[str, WorkerHandle] = {}
        self._observers: dict[str, asyncio.Task[None]] = {}
        self._timers: set[asyncio.Task[None]] = set()

    @property
    def active_count(self) -> int:
        return len(self._workers)

    def has_capacity(self) -> bool:
        return len(self._workers) < self.config.max_concurrent_workers

    def get(self, worker_id: str) -> WorkerHandle | None:
        return self._workers.get(worker_id)

    def list_active(self) -> list[WorkerHandle]:
        return list(self._workers.values())

    async def spawn(self, request: SpawnRequest) -> str:
        """Launch a worker and start observing it.

        The slot is reserved before the launch is awaited, so concurrent
        spawns can never push the tracked count past the ceiling.

        Returns:
            The new worker id

        Raises:
            CapacityExceededError: If the ceiling is reached; nothing is launched
            WorkerLaunchError: If the operating system refuses to start the process
        """
        limit = self.config.max_concurrent_workers
        if len(self._workers) >= limit:
            log.warning(
                "worker_capacity_exceeded",
                worker_type=str(request.worker_type),
                workflow_id=request.workflow_id,
                limit=limit,
            )
            raise CapacityExceededError(limit)

        worker_id = self._new_worker_id(request)
        handle = WorkerHandle(
            worker_id=worker_id,
            worker_type=request.worker_type,
            workflow_id=request.workflow_id,
            task_id=request.task_id,
            stderr_tail=deque(maxlen=self.config.stderr_tail_lines),
        )
        self._workers[worker_id] = handle

        args = build_worker_args(self.config.worker_command, request)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=self.config.working_directory,
                env={**os.environ, "CODE_DIFFUSION_WORKER_ID": worker_id},
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            self._workers.pop(worker_id, None)
            log.error(
                "worker_launch_failed",
                worker_id=worker_id,
                worker_type=str(request.worker_type),
                workflow_id=request.workflow_id,
                error=str(e),
            )
            raise WorkerLaunchError(
                f"Failed to launch {request.worker_type} worker: {e}",
                worker_type=request.worker_type,
            ) from e

        handle.process = process
        handle.started_at = utcnow()
        self._observers[worker_id] = asyncio.create_task(self._observe(handle), name=f"observe-{worker_id}")

        log.info(
            "worker_spawned",
            worker_id=worker_id,
            worker_type=str(request.worker_type),
            workflow_id=request.workflow_id,
            task_id=request.task_id,
            pid=process.pid,
            active=len(self._workers),
        )

        if handle.kill_requested:
            self._terminate(handle)
        return worker_id

    def kill(self, worker_id: str) -> bool:
        """Request termination of a tracked worker.

        Sends SIGTERM and arms a timer that sends SIGKILL if the worker is
        still tracked once the grace period has passed. Completion is
        reported through ``events``.

        Returns:
            True once SIGTERM has been issued, False if the worker is not
            tracked or has already gone
        """
        handle = self._workers.get(worker_id)
        if handle is None:
            return False
        handle.kill_requested = True
        return self._terminate(handle)

    async def shutdown(self) -> None:
        """Terminate every tracked worker and wait for all of them to exit."""
        worker_ids = list(self._workers)
        if worker_ids:
            log.info("supervisor_shutting_down", active=len(worker_ids))
        for worker_id in worker_ids:
            self.kill(worker_id)

        observers = list(self._observers.values())
        if observers:
            await asyncio.gather(*observers, return_exceptions=True)

        for timer in list(self._timers):
            timer.cancel()

    def _new_worker_id(self, request: SpawnRequest) -> str:
        owner = request.workflow_id or request.task_id or "unknown"
        while True:
            worker_id = f"{request.worker_type}-{owner}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"
            if worker_id not in self._workers:
                return worker_id

    def _terminate(self, handle: WorkerHandle) -> bool:
        process = handle.process
        if process is None:
            # Still launching; spawn terminates it once the process exists.
            return True
        if process.returncode is not None:
            return False

        try:
            process.terminate()
        except ProcessLookupError:
            return False

        log.info("worker_terminating", worker_id=handle.worker_id, pid=process.pid)
        self._start_timer(self._force_kill(handle), f"force-kill-{handle.worker_id}")
        return True

    def _start_timer(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=name)
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)
        return task

    async def _force_kill(self, handle: WorkerHandle) -> None:
        await asyncio.sleep(self.config.kill_grace_period)
        process = handle.process
        if handle.worker_id not in self._workers or process is None or process.returncode is not None:
            return
        log.warning("worker_force_killed", worker_id=handle.worker_id, pid=process.pid)
        with contextlib.suppress(ProcessLookupError):
            process.kill()

    async def _enforce_timeout(self, handle: WorkerHandle) -> None:
        await asyncio.sleep(self.config.worker_timeout)
        if handle.worker_id not in self._workers:
            return
        log.warning(
            "worker_timeout",
            worker_id=handle.worker_id,
            workflow_id=handle.workflow_id,
            timeout=self.config.worker_timeout,
        )
        handle.timed_out = True
        self._terminate(handle)

    async def _pump(self, stream: asyncio.StreamReader | None, handle: WorkerHandle, name: str) -> None:
        if stream is None:
            return
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            if name == "stderr":
                handle.stderr_tail.append(line)
                log.warning("worker_stderr", worker_id=handle.worker_id, line=line)
            else:
                log.debug("worker_stdout", worker_id=handle.worker_id, line=line)

    async def _observe(self, handle: WorkerHandle) -> None:
        process = handle.process
        assert process is not None
        timeout = self._start_timer(self._enforce_timeout(handle), f"timeout-{handle.worker_id}")

        try:
            await asyncio.gather(
                self._pump(process.stdout, handle, "stdout"),
                self._pump(process.stderr, handle, "stderr"),
            )
            exit_code = await process.wait()
        except Exception as e:
            self._workers.pop(handle.worker_id, None)
            log.error(
                "worker_observer_failed",
                worker_id=handle.worker_id,
                workflow_id=handle.workflow_id,
                error=str(e),
                exc_info=True,
            )
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
            self._publish(WorkerEventKind.ERROR, handle, error=f"{type(e).__name__}: {e}")
            return
        finally:
            timeout.cancel()
            self._observers.pop(handle.worker_id, None)

        self._workers.pop(handle.worker_id, None)

        if handle.timed_out:
            kind = WorkerEventKind.TIMED_OUT
        elif handle.kill_requested:
            kind = WorkerEventKind.KILLED
        else:
            kind = WorkerEventKind.EXITED

        log.info(
            "worker_exited",
            worker_id=handle.worker_id,
            workflow_id=handle.workflow_id,
            exit_code=exit_code,
            duration=round(handle.running_seconds, 3),
            outcome=str(kind),
        )
        self._publish(kind, handle, exit_code=exit_code)

    def _publish(
        self,
        kind: WorkerEventKind,
        handle: WorkerHandle,
        exit_code: int | None = None,
        error: str | None = None,
    ) -> None:
        self.events.put_nowait(
            WorkerEvent(
                kind=kind,
                worker_id=handle.worker_id,
                worker_type=handle.worker_type,
                workflow_id=handle.workflow_id,
                task_id=handle.task_id,
                exit_code=exit_code,
                duration=handle.running_seconds,
                stderr_tail=list(handle.stderr_tail),
                error=error,
            )
        )
