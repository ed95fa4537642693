"""Mutable run state owned by the coordinator.

Only the coordinator mutates these objects. Everything handed to external
readers goes through ``GenerationRun.snapshot()``, which returns frozen
pydantic models.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field

from errors import InvalidTransitionError
from models.schemas import (
    AgentKind,
    FileSummary,
    GenerationLog,
    ProjectConfig,
    RunSnapshot,
    RunStatus,
    TaskSnapshot,
    TaskStatus,
    TokenUsage,
)
from orchestrator.aggregate import FileAggregate
from orchestrator.graph import TaskGraph
from orchestrator.progress import ProgressTracker

ALLOWED_TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {TaskStatus.RUNNING, TaskStatus.SKIPPED, TaskStatus.CANCELLED}
    ),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.SKIPPED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

ALLOWED_RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset(
        {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED}
    ),
    RunStatus.RUNNING: frozenset(
        {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
    ),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


def generate_run_id() -> str:
    """Generate a unique run id of the form ``run_<12 hex chars>``."""
    return f"run_{secrets.token_hex(6)}"


@dataclass
class TaskState:
    """Lifecycle state of one task within a run."""

    task_id: str
    agent_kind: AgentKind
    dependencies: tuple[str, ...] = ()
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = 0
    error: str | None = None
    started_at: float | None = None
    completed_at: float | None = None
    files_generated: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)

    def transition(self, new_status: TaskStatus, *, error: str | None = None) -> None:
        """Move to ``new_status``, stamping timestamps.

        Raises:
            InvalidTransitionError: If the lifecycle does not allow the change.
        """
        if new_status not in ALLOWED_TASK_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.task_id, self.status, new_status)
        now = time.time()
        if new_status is TaskStatus.RUNNING:
            self.started_at = now
        if new_status.is_terminal:
            self.completed_at = now
        if error is not None:
            self.error = error
        self.status = new_status

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class GenerationRun:
    """Aggregate root for one generation attempt of a project."""

    run_id: str
    project_id: str
    config: ProjectConfig
    tasks: dict[str, TaskState]
    tracker: ProgressTracker
    user_id: str | None = None
    status: RunStatus = RunStatus.PENDING
    aggregate: FileAggregate = field(default_factory=FileAggregate)
    logs: list[GenerationLog] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    error_summary: str | None = None

    @classmethod
    def create(
        cls,
        project_id: str,
        config: ProjectConfig,
        graph: TaskGraph,
        *,
        user_id: str | None = None,
        run_id: str | None = None,
        progress_threshold: int = 1,
    ) -> GenerationRun:
        """Create a pending run with one pending task per graph node."""
        tasks = {
            node.task_id: TaskState(
                task_id=node.task_id,
                agent_kind=node.agent_kind,
                dependencies=node.dependencies,
            )
            for node in graph
        }
        return cls(
            run_id=run_id or generate_run_id(),
            project_id=project_id,
            user_id=user_id,
            config=config,
            tasks=tasks,
            tracker=ProgressTracker(tasks, threshold=progress_threshold),
        )

    def transition(self, new_status: RunStatus) -> None:
        if new_status not in ALLOWED_RUN_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.run_id, self.status, new_status)
        now = time.time()
        if new_status is RunStatus.RUNNING:
            self.started_at = now
        if new_status.is_terminal:
            self.completed_at = now
        self.status = new_status

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    def tasks_with_status(self, *statuses: TaskStatus) -> list[TaskState]:
        return [task for task in self.tasks.values() if task.status in statuses]

    def snapshot(self) -> RunSnapshot:
        """Return an immutable view of the run."""
        tasks = tuple(
            TaskSnapshot(
                task_id=task.task_id,
                agent_kind=task.agent_kind,
                dependencies=task.dependencies,
                status=task.status,
                progress=self.tracker.task_progress(task.task_id),
                retry_count=task.retry_count,
                error=task.error,
                started_at=task.started_at,
                completed_at=task.completed_at,
                files_generated=task.files_generated,
                usage=task.usage,
            )
            for task in self.tasks.values()
        )
        files = tuple(
            FileSummary(path=f.path, task_id=f.task_id, size=f.size)
            for f in self.aggregate.files()
        )
        return RunSnapshot(
            run_id=self.run_id,
            project_id=self.project_id,
            user_id=self.user_id,
            config=self.config,
            status=self.status,
            progress=self.tracker.overall_percent(),
            tasks=tasks,
            files=files,
            logs=tuple(self.logs),
            usage=self.usage,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            error_summary=self.error_summary,
        )
