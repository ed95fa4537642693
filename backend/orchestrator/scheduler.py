"""Coordinator and worker pool that execute a generation run.

The coordinator is the only code that mutates run state. It dispatches
eligible tasks to a bounded pool of worker tasks through a ready queue and
then blocks on its inbox until a worker (or a cancel request) reports back.
Workers own the per-attempt timeout and the retry budget; they never touch
run state themselves.

Message flow:

    coordinator --DispatchedTask--> ready queue --> worker
    worker --ProgressReported / LogReported / RetryScheduled / TaskFinished--> inbox
    cancel() --CancelRequested--> inbox
"""

import asyncio
import contextlib
from dataclasses import dataclass, replace
from typing import Any, assert_never

import structlog

from agents.base import AgentRequest, AgentResult
from errors import (
    AgentExecutionError,
    AgentTimeoutError,
    DependencyFailure,
    FatalAgentError,
    InvalidFilePathError,
    RecoverableAgentError,
    RunCancelledError,
)
from models.schemas import (
    AgentKind,
    LogSeverity,
    RunSnapshot,
    RunStatus,
    TaskStatus,
)
from orchestrator.context import OrchestrationContext
from orchestrator.emitter import RunEventEmitter
from orchestrator.graph import TaskGraph, build_config_slice
from orchestrator.state import GenerationRun, TaskState

logger = structlog.get_logger(__name__)

_UPSTREAM_FAILURE_STATUSES = (TaskStatus.FAILED, TaskStatus.SKIPPED, TaskStatus.CANCELLED)


# =============================================================================
# Coordinator messages
# =============================================================================


@dataclass(frozen=True)
class DispatchedTask:
    task_id: str
    agent_kind: AgentKind
    request: AgentRequest


@dataclass(frozen=True)
class ProgressReported:
    task_id: str
    percent: float


@dataclass(frozen=True)
class LogReported:
    task_id: str
    severity: LogSeverity
    message: str
    data: dict[str, Any]


@dataclass(frozen=True)
class RetryScheduled:
    task_id: str
    attempt: int
    error: str
    delay: float


@dataclass(frozen=True)
class TaskFinished:
    task_id: str
    attempts: int
    result: AgentResult | None = None
    error: Exception | None = None


@dataclass(frozen=True)
class CancelRequested:
    reason: str = "Cancelled by user"


CoordinatorMessage = (
    ProgressReported | LogReported | RetryScheduled | TaskFinished | CancelRequested
)


# =============================================================================
# Orchestrator
# =============================================================================


class GenerationOrchestrator:
    """Executes one generation run over its task graph.

    Usage:
        >>> orchestrator = GenerationOrchestrator(run, graph, context)
        >>> snapshot = await orchestrator.run()

    ``cancel()`` may be called at any time from the same event loop; the
    run then ends ``cancelled`` and keeps the files already merged.
    """

    def __init__(
        self,
        run: GenerationRun,
        graph: TaskGraph,
        context: OrchestrationContext,
    ) -> None:
        self.generation = run
        self.graph = graph
        self.context = context
        self.emitter = RunEventEmitter(context.event_bus, run)

        self._ready: asyncio.Queue[DispatchedTask] = asyncio.Queue()
        self._inbox: asyncio.Queue[CoordinatorMessage] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._in_flight = 0
        self._cancel_event = asyncio.Event()
        self._cancel_reason = "Cancelled by user"
        self._log = logger.bind(run_id=run.run_id, project_id=run.project_id)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def run_id(self) -> str:
        return self.generation.run_id

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def snapshot(self) -> RunSnapshot:
        return self.generation.snapshot()

    def cancel(self, reason: str = "Cancelled by user") -> bool:
        """Request cancellation of the run.

        Returns:
            False if the run already finished or a cancel is pending.
        """
        if self.generation.status.is_terminal or self._cancel_event.is_set():
            return False
        self._cancel_reason = reason
        self._cancel_event.set()
        self._inbox.put_nowait(CancelRequested(reason=reason))
        self._log.info("generation_cancel_requested", reason=reason)
        return True

    async def run(self) -> RunSnapshot:
        """Execute the run to a terminal state and return its final snapshot."""
        if self.context.metrics is not None:
            self.context.metrics.start(self.run_id)
        self._log.info(
            "generation_started",
            task_count=len(self.graph),
            max_concurrency=self.context.max_concurrency,
        )
        try:
            await self._coordinate()
        except Exception as exc:
            self._log.exception("generation_internal_error", error=str(exc))
            await self._abort(exc)
        finally:
            await self._stop_workers(self.context.cancel_grace)
            if self.context.metrics is not None:
                self.context.metrics.finish(self.run_id)

        self._log.info(
            "generation_finished",
            status=self.generation.status.value,
            files=len(self.generation.aggregate),
            error_summary=self.generation.error_summary,
        )
        return self.generation.snapshot()

    # -------------------------------------------------------------------------
    # Coordinator loop
    # -------------------------------------------------------------------------

    async def _coordinate(self) -> None:
        worker_count = min(self.context.max_concurrency, len(self.graph))
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"{self.run_id}-worker-{i}")
            for i in range(worker_count)
        ]

        while True:
            if self.cancel_requested:
                await self._handle_cancel()
                return

            await self._cascade_skips()
            await self._dispatch_eligible()

            if self._in_flight == 0:
                break

            message = await self._inbox.get()
            if self.cancel_requested:
                await self._handle_cancel()
                return
            await self._handle_message(message)

        await self._finalize()

    async def _cascade_skips(self) -> None:
        # Tasks iterate in topological order, so one pass covers whole chains.
        for task in self.generation.tasks.values():
            if task.status is not TaskStatus.PENDING:
                continue
            blocker = next(
                (
                    self.generation.tasks[dep]
                    for dep in task.dependencies
                    if self.generation.tasks[dep].status in _UPSTREAM_FAILURE_STATUSES
                ),
                None,
            )
            if blocker is None:
                continue
            reason = DependencyFailure(task.task_id, blocker.task_id, blocker.status.value)
            self.generation.tracker.freeze(task.task_id)
            task.transition(TaskStatus.SKIPPED, error=str(reason))
            await self.emitter.task_status_changed(task)
            self._log.info(
                "task_skipped",
                task_id=task.task_id,
                dependency=blocker.task_id,
                dependency_status=blocker.status.value,
            )

    def _is_eligible(self, task: TaskState) -> bool:
        return task.status is TaskStatus.PENDING and all(
            self.generation.tasks[dep].status is TaskStatus.COMPLETED
            for dep in task.dependencies
        )

    async def _dispatch_eligible(self) -> None:
        capacity = self.context.max_concurrency - self._in_flight
        for task in self.generation.tasks.values():
            if capacity <= 0:
                break
            if not self._is_eligible(task):
                continue

            if self.generation.status is RunStatus.PENDING:
                self.generation.transition(RunStatus.RUNNING)
                await self.emitter.run_started()

            task.transition(TaskStatus.RUNNING)
            await self.emitter.task_status_changed(task)

            self._ready.put_nowait(
                DispatchedTask(
                    task_id=task.task_id,
                    agent_kind=task.agent_kind,
                    request=self._build_request(task),
                )
            )
            self._in_flight += 1
            capacity -= 1
            self._log.info(
                "task_dispatched",
                task_id=task.task_id,
                agent_kind=task.agent_kind.value,
                in_flight=self._in_flight,
            )

    def _build_request(self, task: TaskState) -> AgentRequest:
        task_id = task.task_id
        upstream = self.generation.aggregate.files_owned_by(self.graph.ancestors(task_id))

        def on_progress(percent: float) -> None:
            self._inbox.put_nowait(ProgressReported(task_id=task_id, percent=percent))

        def on_log(severity: LogSeverity, message: str, data: dict[str, Any]) -> None:
            self._inbox.put_nowait(
                LogReported(task_id=task_id, severity=severity, message=message, data=data)
            )

        return AgentRequest(
            run_id=self.run_id,
            project_id=self.generation.project_id,
            task_id=task_id,
            agent_kind=task.agent_kind,
            config_slice=build_config_slice(self.generation.config, task.agent_kind),
            upstream_files=upstream,
            cancel_event=self._cancel_event,
            on_progress=on_progress,
            on_log=on_log,
        )

    # -------------------------------------------------------------------------
    # Message handling
    # -------------------------------------------------------------------------

    async def _handle_message(self, message: CoordinatorMessage) -> None:
        match message:
            case ProgressReported(task_id=task_id, percent=percent):
                if self.generation.tasks[task_id].status is not TaskStatus.RUNNING:
                    return
                self.generation.tracker.update(task_id, percent)
                await self._maybe_emit_progress()
            case LogReported(task_id=task_id, severity=severity, message=text, data=data):
                task = self.generation.tasks[task_id]
                await self.emitter.log(severity, task.agent_kind, text, task_id=task_id, data=data)
            case RetryScheduled(task_id=task_id, attempt=attempt, error=error, delay=delay):
                await self._handle_retry(self.generation.tasks[task_id], attempt, error, delay)
            case TaskFinished(task_id=task_id, result=result, error=error):
                self._in_flight -= 1
                task = self.generation.tasks[task_id]
                if result is not None:
                    await self._complete_task(task, result)
                else:
                    await self._fail_task(
                        task, error or FatalAgentError("Task finished without a result")
                    )
            case CancelRequested():
                pass
            case _:
                assert_never(message)

    async def _handle_retry(self, task: TaskState, attempt: int, error: str, delay: float) -> None:
        task.retry_count += 1
        if self.context.metrics is not None:
            self.context.metrics.record_retry(self.run_id)
        # Status stays running; the event carries the new retry_count.
        await self.emitter.task_status_changed(task)
        await self.emitter.log(
            LogSeverity.WARNING,
            task.agent_kind,
            f"Attempt {attempt} failed: {error}. Retrying in {delay:.1f}s",
            task_id=task.task_id,
            data={"attempt": attempt},
        )

    async def _complete_task(self, task: TaskState, result: AgentResult) -> None:
        try:
            merge = self.generation.aggregate.merge(task.task_id, result.files)
        except InvalidFilePathError as exc:
            await self._fail_task(task, exc)
            return

        task.files_generated = self.generation.aggregate.count_owned_by(task.task_id)
        task.usage = result.usage
        self.generation.usage = self.generation.usage + result.usage
        if self.context.metrics is not None:
            self.context.metrics.record_agent_usage(
                self.run_id, task.agent_kind.value, result.usage
            )

        for generated in merge.written:
            await self.emitter.file_generated(task.task_id, generated.path, generated.size)
        for collision in merge.collisions:
            self._log.warning(
                "file_collision",
                path=collision.path,
                previous_task_id=collision.previous_task_id,
                task_id=collision.task_id,
            )
            await self.emitter.file_collision(collision, task.agent_kind)

        self.generation.tracker.complete(task.task_id)
        task.transition(TaskStatus.COMPLETED)
        await self.emitter.task_status_changed(task)
        await self._maybe_emit_progress()
        self._log.info(
            "task_completed",
            task_id=task.task_id,
            files=len(merge.written),
            retries=task.retry_count,
        )

    async def _fail_task(self, task: TaskState, error: Exception) -> None:
        if isinstance(error, RunCancelledError):
            message = "Agent stopped with a cancellation while the run was still active"
        elif isinstance(error, AgentExecutionError):
            message = error.message
        else:
            message = str(error) or type(error).__name__

        self.generation.tracker.freeze(task.task_id)
        task.transition(TaskStatus.FAILED, error=message)
        await self.emitter.task_status_changed(task)
        await self.emitter.log(
            LogSeverity.ERROR,
            task.agent_kind,
            f"Task failed: {message}",
            task_id=task.task_id,
        )
        self._log.warning(
            "task_failed",
            task_id=task.task_id,
            error=message,
            dependents=self.graph.descendants(task.task_id),
        )

    async def _maybe_emit_progress(self) -> None:
        overall = self.generation.tracker.poll_overall_change()
        if overall is not None:
            await self.emitter.run_progress(overall)

    # -------------------------------------------------------------------------
    # Terminal states
    # -------------------------------------------------------------------------

    async def _finalize(self) -> None:
        failed = self.generation.tasks_with_status(TaskStatus.FAILED)
        await self._maybe_emit_progress()

        if failed:
            self.generation.error_summary = "; ".join(
                f"{task.agent_kind.value}: {task.error}" for task in failed
            )
            self.generation.transition(RunStatus.FAILED)
            await self.emitter.log(
                LogSeverity.ERROR,
                AgentKind.ORCHESTRATOR,
                f"Generation failed: {self.generation.error_summary}",
            )
            await self.emitter.run_failed([task.task_id for task in failed])
            return

        unfinished = [
            task.task_id
            for task in self.generation.tasks.values()
            if task.status is not TaskStatus.COMPLETED
        ]
        if unfinished:
            self.generation.error_summary = "Tasks did not complete: " + ", ".join(unfinished)
            self.generation.transition(RunStatus.FAILED)
            await self.emitter.run_failed([])
            return

        self.generation.transition(RunStatus.COMPLETED)
        await self.emitter.log(
            LogSeverity.INFO,
            AgentKind.ORCHESTRATOR,
            f"Generated {len(self.generation.aggregate)} files",
        )
        await self.emitter.run_completed()

    async def _handle_cancel(self) -> None:
        for task in self.generation.tasks.values():
            if task.is_terminal:
                continue
            self.generation.tracker.freeze(task.task_id)
            task.transition(TaskStatus.CANCELLED, error=self._cancel_reason)
            await self.emitter.task_status_changed(task)

        await self._stop_workers(self.context.cancel_grace)

        self.generation.transition(RunStatus.CANCELLED)
        await self.emitter.log(
            LogSeverity.WARNING,
            AgentKind.ORCHESTRATOR,
            f"Generation cancelled: {self._cancel_reason}",
        )
        await self.emitter.run_cancelled(self._cancel_reason)

    async def _abort(self, exc: Exception) -> None:
        """End the run ``failed`` after an unexpected internal error."""
        if self.generation.status.is_terminal:
            return
        self.generation.error_summary = f"Internal orchestration error: {exc}"
        aborted = [task for task in self.generation.tasks.values() if not task.is_terminal]
        for task in aborted:
            self.generation.tracker.freeze(task.task_id)
            task.transition(TaskStatus.CANCELLED, error="Run aborted")
        self.generation.transition(RunStatus.FAILED)
        try:
            for task in aborted:
                await self.emitter.task_status_changed(task)
            await self.emitter.log(
                LogSeverity.ERROR,
                AgentKind.ORCHESTRATOR,
                f"Generation aborted: {self.generation.error_summary}",
            )
            await self.emitter.run_failed(
                [t.task_id for t in self.generation.tasks_with_status(TaskStatus.FAILED)]
            )
        except Exception:
            self._log.exception("generation_abort_emit_failed")

    async def _stop_workers(self, grace: float) -> None:
        workers = [w for w in self._workers if not w.done()]
        self._workers = []
        if not workers:
            return
        for worker in workers:
            worker.cancel()
        _done, pending = await asyncio.wait(workers, timeout=max(grace, 0.01))
        if pending:
            # Results from these are never read; the inbox is abandoned.
            self._log.warning("workers_outlived_grace_period", count=len(pending))

    # -------------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------------

    async def _worker(self, worker_id: int) -> None:
        while True:
            item = await self._ready.get()
            try:
                outcome = await self._execute_with_retries(item)
            except Exception as exc:
                self._log.exception("worker_error", worker_id=worker_id, task_id=item.task_id)
                outcome = TaskFinished(
                    task_id=item.task_id,
                    attempts=item.request.attempt,
                    error=FatalAgentError(f"Worker error: {exc}"),
                )
            self._inbox.put_nowait(outcome)
            self._log.debug(
                "worker_task_finished",
                worker_id=worker_id,
                task_id=item.task_id,
                success=outcome.result is not None,
            )

    async def _execute_with_retries(self, item: DispatchedTask) -> TaskFinished:
        policy = self.context.retry_policy
        timeout = self.context.task_timeout
        attempt = 1

        while True:
            request = replace(item.request, attempt=attempt)
            try:
                capability = self.context.registry.get(item.agent_kind)
                result = await asyncio.wait_for(capability.execute(request), timeout=timeout)
                return TaskFinished(task_id=item.task_id, attempts=attempt, result=result)
            except TimeoutError:
                error: AgentExecutionError = AgentTimeoutError(
                    f"Attempt timed out after {timeout:g}s",
                    agent_kind=item.agent_kind.value,
                )
            except RecoverableAgentError as exc:
                error = exc
            except (FatalAgentError, RunCancelledError) as exc:
                return TaskFinished(task_id=item.task_id, attempts=attempt, error=exc)
            except Exception as exc:
                self._log.exception(
                    "agent_unexpected_error",
                    task_id=item.task_id,
                    attempt=attempt,
                )
                return TaskFinished(
                    task_id=item.task_id,
                    attempts=attempt,
                    error=FatalAgentError(
                        f"Unexpected {type(exc).__name__}: {exc}",
                        agent_kind=item.agent_kind.value,
                    ),
                )

            if not policy.should_retry(attempt):
                return TaskFinished(
                    task_id=item.task_id,
                    attempts=attempt,
                    error=FatalAgentError(
                        f"{error.message} (after {attempt} attempts)",
                        agent_kind=item.agent_kind.value,
                    ),
                )

            delay = policy.delay_for(attempt)
            self._inbox.put_nowait(
                RetryScheduled(
                    task_id=item.task_id,
                    attempt=attempt,
                    error=error.message,
                    delay=delay,
                )
            )
            with contextlib.suppress(TimeoutError):
                # Wake early if the run is cancelled during backoff.
                await asyncio.wait_for(self._cancel_event.wait(), timeout=delay)
            if self._cancel_event.is_set():
                return TaskFinished(
                    task_id=item.task_id,
                    attempts=attempt,
                    error=RunCancelledError(f"Run {self.run_id} was cancelled"),
                )
            attempt += 1
