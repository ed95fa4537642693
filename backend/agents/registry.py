"""Registry of agent capabilities by agent kind."""

from __future__ import annotations

import threading
from collections.abc import Iterable

import structlog

from agents.base import AgentCapability
from agents.llm_agent import LLMAgent
from agents.scaffold_agent import ScaffoldAgent
from agents.utils import LLMClient
from errors import MissingCapabilityError
from models.schemas import SCHEDULABLE_AGENT_KINDS, AgentKind

logger = structlog.get_logger(__name__)


class AgentRegistry:
    """Thread-safe mapping from agent kind to capability.

    The registry never exposes its internal dict; ``list()`` returns a copy.

    Usage:
        >>> registry = AgentRegistry()
        >>> registry.register(AgentKind.BACKEND, ScaffoldAgent(AgentKind.BACKEND))
        >>> registry.require([AgentKind.BACKEND])
        >>> capability = registry.get(AgentKind.BACKEND)
    """

    def __init__(self) -> None:
        self._capabilities: dict[AgentKind, AgentCapability] = {}
        self._lock = threading.Lock()

    def register(
        self,
        agent_kind: AgentKind,
        capability: AgentCapability,
        *,
        replace: bool = False,
    ) -> None:
        """Register the capability for an agent kind.

        Raises:
            ValueError: For the orchestrator kind, or if the kind is already
                registered and ``replace`` is False.
        """
        if agent_kind not in SCHEDULABLE_AGENT_KINDS:
            raise ValueError(f"Agent kind '{agent_kind}' cannot be registered")
        with self._lock:
            if agent_kind in self._capabilities and not replace:
                raise ValueError(f"Agent kind '{agent_kind}' is already registered")
            self._capabilities[agent_kind] = capability
        logger.debug(
            "agent_registered",
            agent_kind=agent_kind.value,
            capability=type(capability).__name__,
        )

    def unregister(self, agent_kind: AgentKind) -> bool:
        with self._lock:
            removed = self._capabilities.pop(agent_kind, None) is not None
        if removed:
            logger.debug("agent_unregistered", agent_kind=agent_kind.value)
        return removed

    def get(self, agent_kind: AgentKind) -> AgentCapability:
        """Return the capability for ``agent_kind``.

        Raises:
            MissingCapabilityError: If nothing is registered for the kind.
        """
        with self._lock:
            capability = self._capabilities.get(agent_kind)
        if capability is None:
            raise MissingCapabilityError([agent_kind.value])
        return capability

    def list(self) -> dict[AgentKind, AgentCapability]:
        with self._lock:
            return dict(self._capabilities)

    def kinds(self) -> list[AgentKind]:
        with self._lock:
            return sorted(self._capabilities, key=lambda kind: kind.value)

    def require(self, agent_kinds: Iterable[AgentKind]) -> None:
        """Check that every kind in ``agent_kinds`` has a capability.

        Raises:
            MissingCapabilityError: Listing every missing kind.
        """
        with self._lock:
            missing = [kind.value for kind in agent_kinds if kind not in self._capabilities]
        if missing:
            raise MissingCapabilityError(sorted(set(missing)))

    def __contains__(self, agent_kind: object) -> bool:
        with self._lock:
            return agent_kind in self._capabilities

    def __len__(self) -> int:
        with self._lock:
            return len(self._capabilities)


def create_agent_registry(
    llm_client: LLMClient | None = None,
    *,
    use_mock: bool = False,
    agent_models: dict[str, str] | None = None,
    stream: bool = False,
    scaffold_step_delay: float = 0.0,
) -> AgentRegistry:
    """Build a registry with a capability for every schedulable agent kind.

    Args:
        llm_client: Client for LLM agents (required unless ``use_mock``)
        use_mock: Register deterministic ScaffoldAgents instead of LLM agents
        agent_models: Optional per-kind model overrides
        stream: Have LLM agents stream completions for live progress
        scaffold_step_delay: Pause between ScaffoldAgent progress steps

    Raises:
        ValueError: If LLM agents are requested without a client.
    """
    registry = AgentRegistry()
    models = agent_models or {}

    for kind in sorted(SCHEDULABLE_AGENT_KINDS, key=lambda k: k.value):
        if use_mock:
            registry.register(kind, ScaffoldAgent(kind, step_delay=scaffold_step_delay))
            continue
        if llm_client is None:
            raise ValueError("An LLM client is required unless use_mock is set")
        registry.register(
            kind, LLMAgent(kind, llm_client, model=models.get(kind.value), stream=stream)
        )

    logger.info(
        "agent_registry_created",
        mode="mock" if use_mock else "llm",
        agents=[kind.value for kind in registry.kinds()],
    )
    return registry
