"""Per-run orchestration dependencies."""

from dataclasses import dataclass, field

from agents.registry import AgentRegistry
from config import Settings
from events import EventBus
from metrics import MetricsCollector
from orchestrator.retry import RetryPolicy


@dataclass(frozen=True)
class OrchestrationContext:
    """Services and limits handed to each GenerationOrchestrator.

    Attributes:
        event_bus: Bus that receives the run's events
        registry: Agent capabilities by kind
        max_concurrency: Maximum tasks running at once
        task_timeout: Hard wall-clock limit for one task attempt, in seconds
        retry_policy: Backoff and attempt budget for recoverable errors
        progress_threshold: Minimum overall change that emits run_progress
        cancel_grace: Seconds in-flight agents get to stop after a cancel
        metrics: Optional collector for token usage and retries
    """

    event_bus: EventBus
    registry: AgentRegistry
    max_concurrency: int = 3
    task_timeout: float = 120.0
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    progress_threshold: int = 1
    cancel_grace: float = 5.0
    metrics: MetricsCollector | None = None

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.task_timeout <= 0:
            raise ValueError("task_timeout must be positive")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        event_bus: EventBus,
        registry: AgentRegistry,
        metrics: MetricsCollector | None = None,
    ) -> "OrchestrationContext":
        return cls(
            event_bus=event_bus,
            registry=registry,
            max_concurrency=settings.max_concurrent_tasks,
            task_timeout=settings.task_timeout_seconds,
            retry_policy=RetryPolicy.from_settings(settings),
            progress_threshold=settings.progress_event_threshold,
            cancel_grace=settings.cancel_grace_seconds,
            metrics=metrics,
        )
