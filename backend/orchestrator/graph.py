"""Task graph construction for scaffold generation runs.

A project configuration maps to a directed acyclic graph of agent tasks.
Each template has a fixed canonical set of agent kinds; nodes whose feature
is not configured are pruned, and the dependency rules below are applied to
whatever remains:

    backend       <- database (if present)
    frontend      <- backend
    auth          <- database (if present), backend
    integrations  <- backend
    devops        <- every other present node

The graph is built once per run and never mutated afterwards.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, assert_never

import structlog

from errors import GraphValidationError
from models.schemas import AgentKind, ProjectConfig, ProjectTemplate

logger = structlog.get_logger(__name__)

_FULL_STACK: tuple[AgentKind, ...] = (
    AgentKind.DATABASE,
    AgentKind.BACKEND,
    AgentKind.FRONTEND,
    AgentKind.AUTH,
    AgentKind.INTEGRATIONS,
    AgentKind.DEVOPS,
)

TEMPLATE_TOPOLOGIES: dict[ProjectTemplate, tuple[AgentKind, ...]] = {
    ProjectTemplate.SAAS: _FULL_STACK,
    ProjectTemplate.ECOMMERCE: _FULL_STACK,
    ProjectTemplate.BLOG: _FULL_STACK,
    ProjectTemplate.API: (
        AgentKind.DATABASE,
        AgentKind.BACKEND,
        AgentKind.AUTH,
        AgentKind.INTEGRATIONS,
        AgentKind.DEVOPS,
    ),
}


def task_id_for(agent_kind: AgentKind) -> str:
    """Return the stable task identifier for an agent kind within a run."""
    return f"task_{agent_kind.value}"


@dataclass(frozen=True)
class TaskNode:
    """One node of the task graph.

    Attributes:
        task_id: Stable identifier (``task_<agent_kind>``)
        agent_kind: Agent responsible for the task
        dependencies: Ids of tasks that must complete first, in canonical order
    """

    task_id: str
    agent_kind: AgentKind
    dependencies: tuple[str, ...] = ()


@dataclass(frozen=True)
class TaskGraph:
    """Immutable dependency graph of generation tasks.

    ``nodes`` iterates in topological order: every node appears after all
    of its dependencies.
    """

    nodes: Mapping[str, TaskNode]
    _dependents: Mapping[str, tuple[str, ...]] = field(repr=False)

    def __iter__(self) -> Iterator[TaskNode]:
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.nodes

    def node(self, task_id: str) -> TaskNode:
        return self.nodes[task_id]

    def task_ids(self) -> tuple[str, ...]:
        return tuple(self.nodes)

    def agent_kinds(self) -> tuple[AgentKind, ...]:
        return tuple(node.agent_kind for node in self.nodes.values())

    def edges(self) -> list[tuple[str, str]]:
        """Return (dependency, dependent) pairs."""
        return [
            (dep, node.task_id)
            for node in self.nodes.values()
            for dep in node.dependencies
        ]

    def dependents(self, task_id: str) -> tuple[str, ...]:
        """Tasks that directly depend on ``task_id``."""
        return self._dependents.get(task_id, ())

    def descendants(self, task_id: str) -> list[str]:
        """All tasks reachable from ``task_id``, in topological order."""
        reachable: set[str] = set()
        frontier = list(self.dependents(task_id))
        while frontier:
            current = frontier.pop()
            if current in reachable:
                continue
            reachable.add(current)
            frontier.extend(self.dependents(current))
        return [tid for tid in self.nodes if tid in reachable]

    def ancestors(self, task_id: str) -> list[str]:
        """All tasks ``task_id`` transitively depends on, in topological order."""
        reachable: set[str] = set()
        frontier = list(self.nodes[task_id].dependencies)
        while frontier:
            current = frontier.pop()
            if current in reachable:
                continue
            reachable.add(current)
            frontier.extend(self.nodes[current].dependencies)
        return [tid for tid in self.nodes if tid in reachable]

    def layers(self) -> list[list[str]]:
        """Group tasks into layers; every dependency of layer N lives in a layer < N."""
        depth: dict[str, int] = {}
        for node in self.nodes.values():
            depth[node.task_id] = 1 + max(
                (depth[dep] for dep in node.dependencies), default=-1
            )
        layers: list[list[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for task_id, level in depth.items():
            layers[level].append(task_id)
        return layers


def _present_kinds(config: ProjectConfig) -> list[AgentKind]:
    try:
        topology = TEMPLATE_TOPOLOGIES[config.template]
    except KeyError:
        raise GraphValidationError(
            f"Unsupported project template: {config.template!r}"
        ) from None

    present: list[AgentKind] = []
    for kind in topology:
        if kind is AgentKind.DATABASE and config.database is None:
            continue
        if kind is AgentKind.AUTH and not config.auth_providers:
            continue
        if kind is AgentKind.INTEGRATIONS and not config.enabled_integrations:
            continue
        present.append(kind)
    return present


def _dependency_kinds(kind: AgentKind, present: set[AgentKind]) -> list[AgentKind]:
    match kind:
        case AgentKind.DATABASE:
            wanted: list[AgentKind] = []
        case AgentKind.BACKEND:
            wanted = [AgentKind.DATABASE]
        case AgentKind.FRONTEND:
            wanted = [AgentKind.BACKEND]
        case AgentKind.AUTH:
            wanted = [AgentKind.DATABASE, AgentKind.BACKEND]
        case AgentKind.INTEGRATIONS:
            wanted = [AgentKind.BACKEND]
        case AgentKind.DEVOPS:
            wanted = [k for k in _FULL_STACK if k is not AgentKind.DEVOPS]
        case AgentKind.ORCHESTRATOR:
            raise GraphValidationError("The orchestrator kind cannot be scheduled")
        case _:
            assert_never(kind)
    # Edges to pruned nodes are dropped.
    return [dep for dep in wanted if dep in present]


def topological_order(nodes: Mapping[str, TaskNode]) -> list[str]:
    """Order node ids so that dependencies come first (Kahn's algorithm).

    Ties are broken by insertion order, so the result is deterministic.

    Raises:
        GraphValidationError: If a dependency is unknown or the graph is cyclic.
    """
    in_degree: dict[str, int] = {}
    dependents: dict[str, list[str]] = {task_id: [] for task_id in nodes}
    for task_id, node in nodes.items():
        for dep in node.dependencies:
            if dep not in nodes:
                raise GraphValidationError(
                    f"Task '{task_id}' depends on unknown task '{dep}'"
                )
            dependents[dep].append(task_id)
        in_degree[task_id] = len(node.dependencies)

    ready = [task_id for task_id, degree in in_degree.items() if degree == 0]
    order: list[str] = []
    while ready:
        current = ready.pop(0)
        order.append(current)
        for child in dependents[current]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                ready.append(child)

    if len(order) != len(nodes):
        cyclic = sorted(task_id for task_id, degree in in_degree.items() if degree > 0)
        raise GraphValidationError(
            "Task graph contains a dependency cycle involving: " + ", ".join(cyclic)
        )
    return order


def _freeze(nodes: Mapping[str, TaskNode]) -> TaskGraph:
    order = topological_order(nodes)
    ordered = {task_id: nodes[task_id] for task_id in order}
    dependents: dict[str, list[str]] = {task_id: [] for task_id in order}
    for node in ordered.values():
        for dep in node.dependencies:
            dependents[dep].append(node.task_id)
    return TaskGraph(
        nodes=MappingProxyType(ordered),
        _dependents=MappingProxyType(
            {task_id: tuple(children) for task_id, children in dependents.items()}
        ),
    )


def build_task_graph(config: ProjectConfig) -> TaskGraph:
    """Build the task graph for a project configuration.

    Args:
        config: The immutable project configuration

    Returns:
        The task graph, iterating in topological order

    Raises:
        GraphValidationError: If the template is unknown, devops would have
            no upstream work, or the resulting graph is not a DAG.
    """
    present = _present_kinds(config)
    present_set = set(present)

    if AgentKind.DEVOPS not in present_set:
        raise GraphValidationError(
            f"Template {config.template} has no devops stage to package the project"
        )

    nodes: dict[str, TaskNode] = {}
    for kind in present:
        deps = tuple(
            dict.fromkeys(task_id_for(dep) for dep in _dependency_kinds(kind, present_set))
        )
        nodes[task_id_for(kind)] = TaskNode(
            task_id=task_id_for(kind),
            agent_kind=kind,
            dependencies=deps,
        )

    if not nodes[task_id_for(AgentKind.DEVOPS)].dependencies:
        raise GraphValidationError(
            "Pruning left the devops stage with no upstream work to package"
        )

    graph = _freeze(nodes)
    logger.info(
        "task_graph_built",
        template=config.template.value,
        tasks=list(graph.task_ids()),
        edge_count=len(graph.edges()),
    )
    return graph


def build_config_slice(config: ProjectConfig, agent_kind: AgentKind) -> dict[str, Any]:
    """Return the part of the project configuration an agent needs.

    Every slice carries the project identity; the rest depends on the
    agent's responsibility.
    """
    base: dict[str, Any] = {
        "name": config.name,
        "description": config.description,
        "template": config.template.value,
    }
    features = [f.model_dump(mode="json") for f in config.enabled_features]
    database = config.database.model_dump(mode="json") if config.database else None
    providers = [p.value for p in config.auth_providers]
    integrations = [i.model_dump(mode="json") for i in config.enabled_integrations]

    match agent_kind:
        case AgentKind.DATABASE:
            return {**base, "database": database, "features": features}
        case AgentKind.BACKEND:
            return {
                **base,
                "database": database,
                "features": features,
                "auth_providers": providers,
                "integrations": [i["type"] for i in integrations],
            }
        case AgentKind.FRONTEND:
            return {**base, "features": features, "auth_providers": providers}
        case AgentKind.AUTH:
            auth = config.auth.model_dump(mode="json") if config.auth else None
            return {**base, "auth": auth, "database": database}
        case AgentKind.INTEGRATIONS:
            return {**base, "integrations": integrations}
        case AgentKind.DEVOPS:
            deployment = (
                config.deployment.model_dump(mode="json") if config.deployment else None
            )
            return {**base, "deployment": deployment, "database": database}
        case AgentKind.ORCHESTRATOR:
            raise ValueError("The orchestrator kind has no configuration slice")
        case _:
            assert_never(agent_kind)
