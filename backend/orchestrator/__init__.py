"""Scaffold generation orchestration.

This package turns a project configuration into a task graph and executes
it with a coordinator and a bounded pool of agent workers:

- graph: TaskGraph construction, pruning and validation
- state: Coordinator-owned run and task state
- aggregate: Merged set of generated files
- progress: Monotonic progress tracking
- retry: Backoff policy for recoverable agent errors
- emitter: Ordered event publication
- scheduler: GenerationOrchestrator (coordinator and workers)
"""

from orchestrator.aggregate import FileAggregate, FileCollision, MergeResult, normalize_path
from orchestrator.context import OrchestrationContext
from orchestrator.emitter import RunEventEmitter
from orchestrator.graph import (
    TEMPLATE_TOPOLOGIES,
    TaskGraph,
    TaskNode,
    build_config_slice,
    build_task_graph,
    task_id_for,
)
from orchestrator.progress import ProgressTracker
from orchestrator.retry import RetryPolicy
from orchestrator.scheduler import GenerationOrchestrator
from orchestrator.state import GenerationRun, TaskState, generate_run_id

__all__ = [
    "TEMPLATE_TOPOLOGIES",
    "FileAggregate",
    "FileCollision",
    "GenerationOrchestrator",
    "GenerationRun",
    "MergeResult",
    "OrchestrationContext",
    "ProgressTracker",
    "RetryPolicy",
    "RunEventEmitter",
    "TaskGraph",
    "TaskNode",
    "TaskState",
    "build_config_slice",
    "build_task_graph",
    "generate_run_id",
    "normalize_path",
    "task_id_for",
]
