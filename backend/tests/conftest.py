"""Shared test fixtures for backend tests.

Provides project configuration factories, a scriptable agent double, and
helpers to build orchestrators so that tests never call a real LLM.
"""

import asyncio
import sys
from collections.abc import Callable, Sequence
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from orchestrator.graph import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.base import AgentRequest, AgentResult  # noqa: E402
from agents.registry import AgentRegistry  # noqa: E402
from events.bus import EventBus  # noqa: E402
from events.types import GenerationEvent  # noqa: E402
from metrics import MetricsCollector  # noqa: E402
from models.schemas import (  # noqa: E402
    SCHEDULABLE_AGENT_KINDS,
    AgentKind,
    GeneratedFile,
    ProjectConfig,
    TokenUsage,
)
from orchestrator import (  # noqa: E402
    GenerationOrchestrator,
    GenerationRun,
    OrchestrationContext,
    RetryPolicy,
    build_task_graph,
)

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    return EventBus()


@pytest.fixture()
def metrics_collector() -> MetricsCollector:
    return MetricsCollector()


# ---------------------------------------------------------------------------
# Project configuration factories
# ---------------------------------------------------------------------------


def make_config(
    template: str = "SAAS",
    *,
    name: str = "acme",
    database: str | None = "postgresql",
    auth_providers: Sequence[str] = ("email",),
    integrations: Sequence[str] = ("stripe",),
    features: Sequence[str] = ("dashboard",),
    deployment: str | None = "docker",
) -> ProjectConfig:
    """Build a ProjectConfig; pass None/() to leave a section unconfigured."""
    payload: dict[str, Any] = {
        "name": name,
        "description": f"{name} test project",
        "template": template,
        "features": [{"name": feature} for feature in features],
        "integrations": [
            {"name": integration.title(), "type": integration} for integration in integrations
        ],
    }
    if database is not None:
        payload["database"] = {"type": database}
    if auth_providers:
        payload["auth"] = {"providers": list(auth_providers)}
    if deployment is not None:
        payload["deployment"] = {"platform": deployment}
    return ProjectConfig.model_validate(payload)


@pytest.fixture()
def saas_config() -> ProjectConfig:
    return make_config("SAAS")


# ---------------------------------------------------------------------------
# Agent doubles
# ---------------------------------------------------------------------------


class ConcurrencyGauge:
    """Records how many agents execute at the same time."""

    def __init__(self) -> None:
        self.current = 0
        self.peak = 0

    def enter(self) -> None:
        self.current += 1
        self.peak = max(self.peak, self.current)

    def leave(self) -> None:
        self.current -= 1


FilesFactory = Callable[[AgentRequest], list[GeneratedFile]]


def default_files(request: AgentRequest) -> list[GeneratedFile]:
    kind = request.agent_kind.value
    return [
        GeneratedFile(
            path=f"{kind}/README.md",
            content=f"# {kind} for {request.config_slice['name']}\n",
            task_id=request.task_id,
        )
    ]


class ScriptedAgent:
    """Agent capability whose outcome per attempt is scripted.

    Each entry of ``script`` is consumed by one attempt: an exception is
    raised, anything else means success. Once the script is exhausted every
    further attempt succeeds.

    Args:
        script: Per-attempt outcomes
        delay: Seconds each attempt takes
        files: Factory for the successful result's files
        usage: Token usage reported on success
        gauge: Optional shared concurrency gauge
        progress: Progress values reported before finishing
        gate: If set, attempts wait for it before finishing
    """

    def __init__(
        self,
        script: Sequence[Any] = (),
        *,
        delay: float = 0.0,
        files: FilesFactory = default_files,
        usage: TokenUsage | None = None,
        gauge: ConcurrencyGauge | None = None,
        progress: Sequence[float] = (50.0,),
        gate: asyncio.Event | None = None,
    ) -> None:
        self.script = list(script)
        self.delay = delay
        self.files = files
        self.usage = usage or TokenUsage(input_tokens=10, output_tokens=20, llm_calls=1)
        self.gauge = gauge
        self.progress = list(progress)
        self.gate = gate
        self.requests: list[AgentRequest] = []
        self.started = asyncio.Event()

    @property
    def attempts(self) -> int:
        return len(self.requests)

    async def execute(self, request: AgentRequest) -> AgentResult:
        self.requests.append(request)
        self.started.set()
        if self.gauge is not None:
            self.gauge.enter()
        try:
            for value in self.progress:
                request.report_progress(value)
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.gate is not None:
                await self.gate.wait()
            request.raise_if_cancelled()
            if self.script:
                outcome = self.script.pop(0)
                if isinstance(outcome, BaseException):
                    raise outcome
            return AgentResult(files=self.files(request), usage=self.usage)
        finally:
            if self.gauge is not None:
                self.gauge.leave()


def make_registry(
    overrides: dict[AgentKind, Any] | None = None,
    **agent_kwargs: Any,
) -> AgentRegistry:
    """Registry with a ScriptedAgent for every schedulable kind."""
    overrides = overrides or {}
    registry = AgentRegistry()
    for kind in SCHEDULABLE_AGENT_KINDS:
        registry.register(kind, overrides.get(kind) or ScriptedAgent(**agent_kwargs))
    return registry


def make_orchestrator(
    config: ProjectConfig,
    registry: AgentRegistry,
    event_bus: EventBus,
    *,
    project_id: str = "proj_test",
    metrics: MetricsCollector | None = None,
    **context_kwargs: Any,
) -> GenerationOrchestrator:
    """Build an orchestrator with fast retries unless overridden."""
    context_kwargs.setdefault(
        "retry_policy", RetryPolicy(max_attempts=3, base_delay=0.01, max_delay=0.05)
    )
    context_kwargs.setdefault("cancel_grace", 0.5)
    graph = build_task_graph(config)
    run = GenerationRun.create(project_id, config, graph)
    context = OrchestrationContext(
        event_bus=event_bus,
        registry=registry,
        metrics=metrics,
        **context_kwargs,
    )
    return GenerationOrchestrator(run, graph, context)


# ---------------------------------------------------------------------------
# Event Collection Helper
# ---------------------------------------------------------------------------


def collect_events(event_bus: EventBus, run_id: str) -> list[GenerationEvent]:
    """Return every event the run has published so far, in order."""
    return event_bus.get_event_history(run_id)
