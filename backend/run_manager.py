"""Run manager for scaffold generation runs.

This module provides the RunManager class that manages the lifecycle of
generation runs: graph construction, conflict checks, background execution,
cancellation, persistence of the final snapshot, and cleanup.

The RunManager coordinates between:
- AgentRegistry: Capabilities for every agent kind in the graph
- EventBus: Real-time event streaming to WebSocket clients
- GenerationOrchestrator: Execution of one run
- RunStore / MetricsCollector: Persistence and usage accounting

Usage:
    >>> manager = RunManager(event_bus, registry, run_store=store)
    >>> run_id = await manager.start_generation("proj_1", config)
    >>> snapshot = await manager.get_run(run_id)
    >>> await manager.cancel_run(run_id)
    >>> await manager.cleanup_all()
"""

import asyncio
import contextlib
from collections import deque

import structlog

from agents.registry import AgentRegistry
from config import Settings, settings as default_settings
from errors import RunConflictError
from events import EventBus
from metrics import MetricsCollector
from models.database import RunStore
from models.schemas import (
    FileSummary,
    GeneratedFile,
    ProjectConfig,
    RunMetricsResponse,
    RunSnapshot,
    RunStatus,
    RunSummaryResponse,
)
from orchestrator import (
    GenerationOrchestrator,
    GenerationRun,
    OrchestrationContext,
    build_task_graph,
)

logger = structlog.get_logger(__name__)


def _summary_from_snapshot(snapshot: RunSnapshot) -> RunSummaryResponse:
    return RunSummaryResponse(
        run_id=snapshot.run_id,
        project_id=snapshot.project_id,
        template=snapshot.config.template.value,
        status=snapshot.status,
        progress=snapshot.progress,
        created_at=snapshot.created_at,
        completed_at=snapshot.completed_at,
        error_summary=snapshot.error_summary,
    )


class RunManager:
    """Manages the lifecycle of generation runs.

    At most one run per project is active (pending or running) at a time.
    The newest ``finished_run_retention`` finished runs stay in memory so
    that their files can still be served. Older ones are evicted together
    with their event history; their final snapshots remain available
    through RunStore when one is configured.

    Thread Safety:
        The project/run registries are guarded by an asyncio.Lock.

    Attributes:
        event_bus: Event bus the runs publish to
        registry: Agent capabilities by kind
        run_store: Optional SQLite store for run persistence
        metrics_collector: Optional collector for token/retry metrics
    """

    def __init__(
        self,
        event_bus: EventBus,
        registry: AgentRegistry,
        *,
        run_store: RunStore | None = None,
        metrics_collector: MetricsCollector | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.event_bus = event_bus
        self.registry = registry
        self.run_store = run_store
        self.metrics_collector = metrics_collector
        self.settings = settings or default_settings
        self._runs: dict[str, GenerationOrchestrator] = {}
        self._active_by_project: dict[str, str] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._finished: deque[str] = deque()
        self._lock = asyncio.Lock()
        logger.info("run_manager_initialized")

    def _build_context(self) -> OrchestrationContext:
        return OrchestrationContext.from_settings(
            self.settings,
            event_bus=self.event_bus,
            registry=self.registry,
            metrics=self.metrics_collector,
        )

    # -------------------------------------------------------------------------
    # Starting runs
    # -------------------------------------------------------------------------

    async def start_generation(
        self,
        project_id: str,
        config: ProjectConfig,
        user_id: str | None = None,
    ) -> str:
        """Validate the configuration and start a generation run in the background.

        Args:
            project_id: The project to generate
            config: Immutable project configuration
            user_id: Optional owner of the project

        Returns:
            The new run id

        Raises:
            GraphValidationError: If the configuration cannot produce a task graph.
            MissingCapabilityError: If an agent kind in the graph has no capability.
            RunConflictError: If the project already has an active run.
        """
        graph = build_task_graph(config)
        self.registry.require(graph.agent_kinds())

        async with self._lock:
            active_run_id = self._active_by_project.get(project_id)
            if active_run_id is not None:
                logger.info(
                    "start_generation_conflict",
                    project_id=project_id,
                    active_run_id=active_run_id,
                )
                raise RunConflictError(project_id, active_run_id)

            run = GenerationRun.create(
                project_id,
                config,
                graph,
                user_id=user_id,
                progress_threshold=self.settings.progress_event_threshold,
            )
            orchestrator = GenerationOrchestrator(run, graph, self._build_context())
            self._runs[run.run_id] = orchestrator
            self._active_by_project[project_id] = run.run_id

        logger.info(
            "start_generation",
            run_id=run.run_id,
            project_id=project_id,
            template=config.template.value,
            task_count=len(graph),
        )

        # Insert the row before the run can finish and update it.
        if self.run_store is not None:
            await self.run_store.save_run(
                run_id=run.run_id,
                project_id=project_id,
                template=config.template.value,
                status=RunStatus.PENDING.value,
                user_id=user_id,
                created_at=run.created_at,
            )

        await self._schedule(orchestrator)
        return run.run_id

    async def _schedule(self, orchestrator: GenerationOrchestrator) -> None:
        run_id = orchestrator.run_id
        async with self._lock:
            background_task = asyncio.create_task(
                self._execute(orchestrator), name=f"generation_{run_id}"
            )
            self._tasks[run_id] = background_task

            def _remove_task(t: asyncio.Task[None], rid: str = run_id) -> None:
                self._tasks.pop(rid, None)

            background_task.add_done_callback(_remove_task)

    async def _execute(self, orchestrator: GenerationOrchestrator) -> None:
        run = orchestrator.generation
        try:
            snapshot = await orchestrator.run()
            await self._persist_final(snapshot)
        finally:
            async with self._lock:
                if self._active_by_project.get(run.project_id) == run.run_id:
                    del self._active_by_project[run.project_id]
                self._finished.append(run.run_id)
                evicted = self._evict_finished()
            await self.event_bus.close_run(run.run_id)
            for run_id in evicted:
                self.event_bus.clear_event_history(run_id)
                if self.metrics_collector is not None:
                    self.metrics_collector.discard(run_id)

    def _evict_finished(self) -> list[str]:
        """Drop the oldest finished runs beyond the retention limit. Caller holds the lock."""
        evicted: list[str] = []
        while len(self._finished) > self.settings.finished_run_retention:
            run_id = self._finished.popleft()
            self._runs.pop(run_id, None)
            evicted.append(run_id)
        if evicted:
            logger.info("finished_runs_evicted", run_ids=evicted, retained=len(self._finished))
        return evicted

    async def _persist_final(self, snapshot: RunSnapshot) -> None:
        """Persist the final snapshot and metrics. Failures are logged only."""
        if self.run_store is None:
            return
        try:
            await self.run_store.save_snapshot(snapshot)
            metrics = (
                self.metrics_collector.get(snapshot.run_id)
                if self.metrics_collector is not None
                else None
            )
            if metrics is not None:
                await self.run_store.save_metrics(snapshot.run_id, metrics.to_dict())
        except Exception as e:
            logger.error(
                "persist_final_snapshot_failed",
                run_id=snapshot.run_id,
                error=str(e),
            )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_run(self, run_id: str) -> RunSnapshot | None:
        """Return the run's snapshot, falling back to the persisted one."""
        orchestrator = self._runs.get(run_id)
        if orchestrator is not None:
            return orchestrator.snapshot()
        if self.run_store is not None:
            return await self.run_store.get_snapshot(run_id)
        return None

    async def get_active_run(self, project_id: str) -> RunSnapshot | None:
        async with self._lock:
            run_id = self._active_by_project.get(project_id)
        if run_id is None:
            return None
        return self._runs[run_id].snapshot()

    async def list_runs(self, project_id: str, limit: int = 50) -> list[RunSummaryResponse]:
        """List a project's runs, newest first, from memory and the store."""
        summaries: dict[str, RunSummaryResponse] = {
            run_id: _summary_from_snapshot(orchestrator.snapshot())
            for run_id, orchestrator in list(self._runs.items())
            if orchestrator.generation.project_id == project_id
        }

        if self.run_store is not None:
            for row in await self.run_store.list_runs(project_id=project_id, limit=limit):
                if row["id"] in summaries:
                    continue
                status = RunStatus(row["status"])
                summaries[row["id"]] = RunSummaryResponse(
                    run_id=row["id"],
                    project_id=row["project_id"],
                    template=row["template"],
                    status=status,
                    progress=row["progress"] or 0,
                    created_at=row["created_at"],
                    completed_at=row["updated_at"] if status.is_terminal else None,
                    error_summary=row["error_summary"],
                )

        ordered = sorted(summaries.values(), key=lambda s: s.created_at, reverse=True)
        return ordered[:limit]

    def list_files(self, run_id: str) -> list[FileSummary] | None:
        orchestrator = self._runs.get(run_id)
        if orchestrator is None:
            return None
        return [
            FileSummary(path=f.path, task_id=f.task_id, size=f.size)
            for f in orchestrator.generation.aggregate.files()
        ]

    def get_file(self, run_id: str, path: str) -> GeneratedFile | None:
        """Return one generated file with its content, if the run is in memory."""
        orchestrator = self._runs.get(run_id)
        if orchestrator is None:
            return None
        return orchestrator.generation.aggregate.get(path)

    async def get_run_metrics(self, run_id: str) -> RunMetricsResponse | None:
        if self.metrics_collector is not None:
            data = self.metrics_collector.get(run_id)
            if data is not None:
                return RunMetricsResponse(
                    run_id=run_id,
                    total_input_tokens=data.input_tokens,
                    total_output_tokens=data.output_tokens,
                    total_llm_calls=data.llm_calls,
                    retries=data.retries,
                    tokens_by_agent=dict(data.tokens_by_agent),
                    execution_time_seconds=round(data.elapsed_seconds, 3),
                )

        if self.run_store is not None:
            row = await self.run_store.get_metrics(run_id)
            if row is not None:
                return RunMetricsResponse(
                    run_id=run_id,
                    total_input_tokens=row["input_tokens"],
                    total_output_tokens=row["output_tokens"],
                    total_llm_calls=row["llm_calls"],
                    retries=row["retries"],
                    execution_time_seconds=row["duration_ms"] / 1000,
                )
        return None

    def active_run_count(self) -> int:
        return len(self._active_by_project)

    async def wait_for_run(self, run_id: str, timeout: float | None = None) -> RunSnapshot | None:
        """Wait until a run's background task finishes and return its snapshot."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return await self.get_run(run_id)

    # -------------------------------------------------------------------------
    # Cancellation and shutdown
    # -------------------------------------------------------------------------

    async def cancel_run(self, run_id: str, reason: str = "Cancelled by user") -> RunSnapshot:
        """Request cancellation of a run.

        Cancelling a run that already finished is a no-op.

        Raises:
            KeyError: If the run is not known to this manager.
        """
        orchestrator = self._runs.get(run_id)
        if orchestrator is None:
            raise KeyError(f"Run '{run_id}' not found")

        if orchestrator.cancel(reason):
            logger.info("cancel_run", run_id=run_id, reason=reason)
        else:
            logger.info(
                "cancel_run_noop",
                run_id=run_id,
                status=orchestrator.generation.status.value,
            )
        return orchestrator.snapshot()

    async def cleanup_all(self, timeout: float = 10.0) -> None:
        """Cancel every active run and wait for background tasks to finish.

        Called during application shutdown.
        """
        async with self._lock:
            active = [self._runs[run_id] for run_id in self._active_by_project.values()]
            tasks = list(self._tasks.values())

        logger.info("cleanup_all_start", active_runs=len(active))

        for orchestrator in active:
            orchestrator.cancel("Server shutting down")

        if tasks:
            _done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            for task in pending:
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        # Nothing streams after shutdown; snapshots stay readable.
        async with self._lock:
            run_ids = list(self._runs)
        for run_id in run_ids:
            self.event_bus.clear_event_history(run_id)

        logger.info("cleanup_all_complete")
