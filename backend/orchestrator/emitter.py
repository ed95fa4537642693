"""Ordered event emission for one generation run."""

from typing import Any

import structlog

from events import EventBus, EventType, GenerationEvent
from models.schemas import AgentKind, GenerationLog, LogSeverity
from orchestrator.aggregate import FileCollision
from orchestrator.state import GenerationRun, TaskState

logger = structlog.get_logger(__name__)


class RunEventEmitter:
    """Publishes a run's events with a per-run monotonically increasing sequence.

    Only the run coordinator calls the emitter, so events reach the bus in
    the order the coordinator observes state changes.
    """

    def __init__(self, event_bus: EventBus, run: GenerationRun) -> None:
        self.event_bus = event_bus
        self.run = run
        self._sequence = 0

    @property
    def last_sequence(self) -> int:
        return self._sequence

    async def emit(self, event_type: EventType, data: dict[str, Any] | None = None) -> GenerationEvent:
        self._sequence += 1
        event = GenerationEvent(
            type=event_type,
            run_id=self.run.run_id,
            project_id=self.run.project_id,
            sequence=self._sequence,
            data=data or {},
        )
        await self.event_bus.publish(event)
        return event

    # -------------------------------------------------------------------------
    # Run lifecycle
    # -------------------------------------------------------------------------

    async def run_started(self) -> None:
        await self.emit(
            EventType.RUN_STARTED,
            {
                "task_count": len(self.run.tasks),
                "tasks": [
                    {
                        "task_id": task.task_id,
                        "agent_kind": task.agent_kind.value,
                        "dependencies": list(task.dependencies),
                    }
                    for task in self.run.tasks.values()
                ],
            },
        )

    async def run_progress(self, overall_percent: int) -> None:
        await self.emit(EventType.RUN_PROGRESS, {"overall_percent": overall_percent})

    async def run_completed(self) -> None:
        usage = self.run.usage
        await self.emit(
            EventType.RUN_COMPLETED,
            {
                "files": len(self.run.aggregate),
                "total_size": self.run.aggregate.total_size(),
                "usage": {
                    "input_tokens": usage.input_tokens,
                    "output_tokens": usage.output_tokens,
                    "llm_calls": usage.llm_calls,
                },
            },
        )

    async def run_failed(self, failed_tasks: list[str]) -> None:
        await self.emit(
            EventType.RUN_FAILED,
            {
                "error_summary": self.run.error_summary,
                "failed_tasks": failed_tasks,
            },
        )

    async def run_cancelled(self, reason: str) -> None:
        await self.emit(
            EventType.RUN_CANCELLED,
            {"reason": reason, "files": len(self.run.aggregate)},
        )

    # -------------------------------------------------------------------------
    # Tasks and files
    # -------------------------------------------------------------------------

    async def task_status_changed(self, task: TaskState) -> None:
        await self.emit(
            EventType.TASK_STATUS_CHANGED,
            {
                "task_id": task.task_id,
                "agent_kind": task.agent_kind.value,
                "status": task.status.value,
                "progress": self.run.tracker.task_progress(task.task_id),
                "retry_count": task.retry_count,
                "error": task.error,
            },
        )

    async def file_generated(self, task_id: str, path: str, size: int) -> None:
        await self.emit(
            EventType.FILE_GENERATED,
            {"task_id": task_id, "path": path, "size": size},
        )

    async def file_collision(self, collision: FileCollision, agent_kind: AgentKind) -> None:
        await self.log(
            LogSeverity.WARNING,
            agent_kind,
            f"File '{collision.path}' from {collision.previous_task_id} "
            f"was overwritten by {collision.task_id}",
            task_id=collision.task_id,
            data={"path": collision.path, "previous_task_id": collision.previous_task_id},
        )

    # -------------------------------------------------------------------------
    # Logs
    # -------------------------------------------------------------------------

    async def log(
        self,
        severity: LogSeverity,
        agent_kind: AgentKind,
        message: str,
        task_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Record a log line on the run, publish it, and mirror it to structlog.

        ``data`` is stored and published unchanged, nested under its own key.
        """
        data = dict(data or {})
        entry = GenerationLog(
            severity=severity,
            agent_kind=agent_kind,
            message=message,
            task_id=task_id,
            data=data,
        )
        self.run.logs.append(entry)

        log_method = {
            LogSeverity.INFO: logger.info,
            LogSeverity.WARNING: logger.warning,
            LogSeverity.ERROR: logger.error,
        }[severity]
        log_method(
            "generation_log",
            run_id=self.run.run_id,
            agent_kind=agent_kind.value,
            task_id=task_id,
            message=message,
            data=data or None,
        )

        await self.emit(
            EventType.LOG,
            {
                "severity": severity.value,
                "agent_kind": agent_kind.value,
                "message": message,
                "task_id": task_id,
                **({"data": data} if data else {}),
            },
        )
