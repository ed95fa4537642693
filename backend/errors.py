"""Error taxonomy for scaffold generation.

Errors fall into four groups:

- Configuration errors (``GraphValidationError``) are raised while the task
  graph is built, before any run exists.
- Agent execution errors (``RecoverableAgentError``, ``FatalAgentError``)
  are raised by agent capabilities. Recoverable ones are retried by the
  worker that runs the task. Fatal ones fail the task immediately.
- ``DependencyFailure`` describes why a task was skipped without running.
- Run-level errors (``RunConflictError``, ``MissingCapabilityError``,
  ``RunCancelledError``) surface to callers of the run manager.
"""

from __future__ import annotations


class OrchestrationError(Exception):
    """Base class for all generation orchestration errors."""


class GraphValidationError(OrchestrationError):
    """Raised when a project configuration cannot produce a valid task graph."""


class InvalidTransitionError(OrchestrationError):
    """Raised when a task or run status change violates the lifecycle."""

    def __init__(self, entity_id: str, current: str, requested: str) -> None:
        self.entity_id = entity_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Invalid transition for '{entity_id}': {current} -> {requested}"
        )


class RunConflictError(OrchestrationError):
    """Raised when a project already has an active generation run."""

    def __init__(self, project_id: str, active_run_id: str) -> None:
        self.project_id = project_id
        self.active_run_id = active_run_id
        super().__init__(
            f"Project '{project_id}' already has an active generation run "
            f"'{active_run_id}'"
        )


class MissingCapabilityError(OrchestrationError):
    """Raised when no agent capability is registered for a required kind."""

    def __init__(self, agent_kinds: list[str]) -> None:
        self.agent_kinds = agent_kinds
        super().__init__(
            "No agent capability registered for: " + ", ".join(agent_kinds)
        )


class RunCancelledError(OrchestrationError):
    """Raised inside an agent when its run has been cancelled by the user.

    When the run is being cancelled the task ends ``cancelled``. An agent
    that raises it while the run is still active has its task marked
    ``failed``.
    """


class AgentExecutionError(OrchestrationError):
    """Base class for errors raised while an agent executes a task."""

    recoverable: bool = False

    def __init__(self, message: str, *, agent_kind: str | None = None) -> None:
        self.message = message
        self.agent_kind = agent_kind
        super().__init__(message)


class RecoverableAgentError(AgentExecutionError):
    """Transient failure (provider outage, rate limit, malformed output)."""

    recoverable = True


class AgentTimeoutError(RecoverableAgentError):
    """A task attempt exceeded its wall-clock timeout."""


class FatalAgentError(AgentExecutionError):
    """Permanent failure (invalid input, provider rejection, bad output paths)."""


class InvalidFilePathError(FatalAgentError):
    """An agent produced a file path that cannot be placed in the project."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid file path '{path}': {reason}")


class DependencyFailure(OrchestrationError):
    """Reason recorded on a task skipped because an upstream task did not complete.

    Never raised through the scheduler; its message is stored on the
    skipped task so that clients can see which dependency blocked it.
    """

    def __init__(self, task_id: str, dependency_id: str, dependency_status: str) -> None:
        self.task_id = task_id
        self.dependency_id = dependency_id
        self.dependency_status = dependency_status
        super().__init__(
            f"Skipped because dependency '{dependency_id}' ended {dependency_status}"
        )
