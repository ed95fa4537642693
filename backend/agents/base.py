"""Agent capability contract.

An agent capability turns one task's configuration slice (plus the files
produced upstream) into a batch of generated files. Capabilities never touch
run state directly: progress and log lines flow back to the coordinator
through the callbacks on ``AgentRequest``.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from errors import RunCancelledError
from models.schemas import AgentKind, GeneratedFile, LogSeverity, TokenUsage

ProgressCallback = Callable[[float], None]
LogCallback = Callable[[LogSeverity, str, dict[str, Any]], None]


def _ignore_progress(_percent: float) -> None:
    return None


def _ignore_log(_severity: LogSeverity, _message: str, _data: dict[str, Any]) -> None:
    return None


@dataclass
class AgentRequest:
    """Everything an agent needs to execute one task attempt.

    Attributes:
        run_id: Run the task belongs to
        project_id: Project being generated
        task_id: Task being executed
        agent_kind: Responsibility of the agent
        config_slice: The part of the project configuration this agent needs
        upstream_files: Files owned by the task's completed upstream tasks
        attempt: 1-based attempt number
        cancel_event: Set when the run is cancelled
    """

    run_id: str
    task_id: str
    agent_kind: AgentKind
    config_slice: dict[str, Any]
    upstream_files: list[GeneratedFile] = field(default_factory=list)
    project_id: str = ""
    attempt: int = 1
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    on_progress: ProgressCallback = field(default=_ignore_progress, repr=False)
    on_log: LogCallback = field(default=_ignore_log, repr=False)

    def report_progress(self, percent: float) -> None:
        """Report task progress (0 to 100). Values are clamped by the tracker."""
        self.on_progress(percent)

    def log(
        self,
        message: str,
        severity: LogSeverity = LogSeverity.INFO,
        **data: Any,
    ) -> None:
        self.on_log(severity, message, data)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise RunCancelledError if the run has been cancelled."""
        if self.cancel_event.is_set():
            raise RunCancelledError(f"Run {self.run_id} was cancelled")

    def upstream_file(self, path: str) -> GeneratedFile | None:
        for generated in self.upstream_files:
            if generated.path == path:
                return generated
        return None


@dataclass(frozen=True)
class AgentResult:
    """Successful output of one task attempt."""

    files: list[GeneratedFile]
    usage: TokenUsage = field(default_factory=TokenUsage)


@runtime_checkable
class AgentCapability(Protocol):
    """A component able to execute tasks of one agent kind."""

    async def execute(self, request: AgentRequest) -> AgentResult:
        """Produce the files for ``request``.

        Raises:
            RecoverableAgentError: On a transient failure worth retrying.
            FatalAgentError: On a permanent failure.
            RunCancelledError: When the run was cancelled mid-execution.
        """
        ...
