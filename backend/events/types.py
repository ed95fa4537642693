"""Event type definitions for the generation event stream.

This module defines all event types that flow from a generation run to
external subscribers. Every run and task state transition produces exactly
one event; every merged file produces one ``file_generated`` event.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EventType(StrEnum):
    """All event types in the generation stream.

    Events are categorized by:
    - Run lifecycle: Start, progress, and terminal states
    - Task lifecycle: Status transitions of individual agent tasks
    - Artifacts: Files merged into the run aggregate
    - Logs: Forwarded log lines from any component
    """

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_PROGRESS = "run_progress"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"

    # Task lifecycle
    TASK_STATUS_CHANGED = "task_status_changed"

    # Artifacts
    FILE_GENERATED = "file_generated"

    # Logs
    LOG = "log"

    # Sentinel delivered to subscribers when a run stream is closed
    STREAM_CLOSED = "stream_closed"


class GenerationEvent(BaseModel):
    """An event emitted during a generation run.

    Each event includes:
    - type: The category of event (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - run_id: Which run this event belongs to
    - project_id: The project that owns the run
    - sequence: Per-run position of the event in the stream, starting at 1
    - data: Event-specific payload

    Payload schemas by event type:

    RUN_STARTED:
        - task_count: int - Number of tasks in the graph
        - tasks: list - Task ids with their agent kinds and dependencies

    RUN_PROGRESS:
        - overall_percent: int - Equal-weight mean of task progress

    RUN_COMPLETED:
        - files: int - Number of files in the aggregate
        - total_size: int - Sum of file sizes in bytes
        - usage: dict - Token usage totals

    RUN_FAILED:
        - error_summary: str - Every failed task's error, joined
        - failed_tasks: list - Ids of the tasks that failed

    RUN_CANCELLED:
        - reason: str - Why the run stopped
        - files: int - Files retained from tasks completed before the cancel

    TASK_STATUS_CHANGED:
        - task_id: str
        - agent_kind: str
        - status: str - New task status
        - progress: int - Task progress at the time of the transition
        - retry_count: int
        - error: Optional[str]

    FILE_GENERATED:
        - task_id: str - Producing task
        - path: str - Path within the project
        - size: int - Size in bytes

    LOG:
        - severity: str - info, warning or error
        - agent_kind: str - Originating agent kind (or orchestrator)
        - message: str
        - task_id: Optional[str]
    """

    model_config = ConfigDict(frozen=True)

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    run_id: str
    project_id: str | None = None
    sequence: int = 0
    data: dict[str, Any] = Field(default_factory=dict)
