"""Tests for run_manager.py -- run lifecycle management.

Covers run creation, the one-active-run-per-project rule, cancellation,
file/metrics queries, persistence through RunStore, and cleanup_all.
Agents are ScriptedAgents; nothing reaches an LLM.
"""

import asyncio
import re
from pathlib import Path
from unittest.mock import patch

import pytest

from config import Settings
from errors import GraphValidationError, MissingCapabilityError, RunConflictError
from events.bus import EventBus
from metrics import MetricsCollector
from models.database import RunStore
from models.schemas import AgentKind, RunStatus
from run_manager import RunManager
from tests.conftest import ScriptedAgent, make_config, make_registry

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

# Short grace so gated agents that ignore cancellation do not stall cleanup.
FAST_SETTINGS = Settings(cancel_grace_seconds=0.2, retry_base_delay_seconds=0.01)


@pytest.fixture()
async def run_store(tmp_path: Path) -> RunStore:
    store = RunStore(str(tmp_path / "generations.db"))
    await store.init()
    return store


def _manager(
    event_bus: EventBus,
    *,
    run_store: RunStore | None = None,
    metrics: MetricsCollector | None = None,
    **agent_kwargs: object,
) -> RunManager:
    return RunManager(
        event_bus,
        make_registry(**agent_kwargs),
        run_store=run_store,
        metrics_collector=metrics,
        settings=FAST_SETTINGS,
    )


# =========================================================================
# Starting runs
# =========================================================================


class TestStartGeneration:
    async def test_returns_run_id_and_completes(self, event_bus: EventBus) -> None:
        manager = _manager(event_bus)
        run_id = await manager.start_generation("proj_1", make_config("SAAS"))

        assert re.fullmatch(r"run_[0-9a-f]{12}", run_id)
        snapshot = await manager.wait_for_run(run_id, timeout=5.0)

        assert snapshot is not None
        assert snapshot.status == RunStatus.COMPLETED
        assert snapshot.progress == 100
        assert manager.active_run_count() == 0

    async def test_second_run_for_active_project_conflicts(self, event_bus: EventBus) -> None:
        gate = asyncio.Event()
        manager = _manager(event_bus, gate=gate)
        run_id = await manager.start_generation("proj_1", make_config("API"))

        with pytest.raises(RunConflictError) as exc_info:
            await manager.start_generation("proj_1", make_config("API"))
        assert exc_info.value.active_run_id == run_id

        # Other projects are unaffected.
        other = await manager.start_generation("proj_2", make_config("API"))
        assert other != run_id

        gate.set()
        await manager.wait_for_run(run_id, timeout=5.0)
        await manager.wait_for_run(other, timeout=5.0)

    async def test_new_run_allowed_after_finish(self, event_bus: EventBus) -> None:
        manager = _manager(event_bus)
        first = await manager.start_generation("proj_1", make_config("API"))
        await manager.wait_for_run(first, timeout=5.0)

        second = await manager.start_generation("proj_1", make_config("API"))
        assert second != first
        await manager.wait_for_run(second, timeout=5.0)

    async def test_missing_capability_rejected_before_start(self, event_bus: EventBus) -> None:
        registry = make_registry()
        registry.unregister(AgentKind.DEVOPS)
        manager = RunManager(event_bus, registry)

        with pytest.raises(MissingCapabilityError):
            await manager.start_generation("proj_1", make_config("SAAS"))
        assert manager.active_run_count() == 0

    async def test_invalid_graph_rejected(self, event_bus: EventBus) -> None:
        manager = _manager(event_bus)
        with (
            patch(
                "run_manager.build_task_graph",
                side_effect=GraphValidationError("no devops stage"),
            ),
            pytest.raises(GraphValidationError),
        ):
            await manager.start_generation("proj_1", make_config("API"))
        assert manager.active_run_count() == 0

    async def test_stream_closed_after_finish(self, event_bus: EventBus) -> None:
        manager = _manager(event_bus)
        run_id = await manager.start_generation("proj_1", make_config("API"))
        queue = event_bus.subscribe(run_id)
        await manager.wait_for_run(run_id, timeout=5.0)

        seen = []
        while not queue.empty():
            seen.append(queue.get_nowait().type.value)
        assert seen[-1] == "stream_closed"
        assert "run_completed" in seen


# =========================================================================
# Queries
# =========================================================================


class TestQueries:
    async def test_active_run(self, event_bus: EventBus) -> None:
        gate = asyncio.Event()
        manager = _manager(event_bus, gate=gate)
        run_id = await manager.start_generation("proj_1", make_config("API"))

        active = await manager.get_active_run("proj_1")
        assert active is not None
        assert active.run_id == run_id
        assert await manager.get_active_run("proj_other") is None

        gate.set()
        await manager.wait_for_run(run_id, timeout=5.0)
        assert await manager.get_active_run("proj_1") is None

    async def test_files(self, event_bus: EventBus) -> None:
        manager = _manager(event_bus)
        run_id = await manager.start_generation("proj_1", make_config("API"))
        await manager.wait_for_run(run_id, timeout=5.0)

        files = manager.list_files(run_id)
        assert files is not None
        paths = {f.path for f in files}
        assert "backend/README.md" in paths

        generated = manager.get_file(run_id, "backend/README.md")
        assert generated is not None
        assert generated.task_id == "task_backend"
        assert manager.get_file(run_id, "nope.txt") is None

    async def test_unknown_run(self, event_bus: EventBus) -> None:
        manager = _manager(event_bus)
        assert await manager.get_run("run_missing") is None
        assert manager.list_files("run_missing") is None
        assert manager.get_file("run_missing", "a") is None
        assert await manager.get_run_metrics("run_missing") is None

    async def test_metrics_from_collector(
        self, event_bus: EventBus, metrics_collector: MetricsCollector
    ) -> None:
        manager = _manager(event_bus, metrics=metrics_collector)
        config = make_config("API")
        run_id = await manager.start_generation("proj_1", config)
        snapshot = await manager.wait_for_run(run_id, timeout=5.0)
        assert snapshot is not None

        metrics = await manager.get_run_metrics(run_id)
        assert metrics is not None
        task_count = len(snapshot.tasks)
        assert metrics.total_llm_calls == task_count
        assert metrics.total_input_tokens == 10 * task_count
        assert metrics.total_output_tokens == 20 * task_count
        assert metrics.tokens_by_agent["backend"] == 30

    async def test_list_runs_newest_first(self, event_bus: EventBus) -> None:
        manager = _manager(event_bus)
        first = await manager.start_generation("proj_1", make_config("API"))
        await manager.wait_for_run(first, timeout=5.0)
        second = await manager.start_generation("proj_1", make_config("API"))
        await manager.wait_for_run(second, timeout=5.0)

        runs = await manager.list_runs("proj_1")
        assert [r.run_id for r in runs] == [second, first]
        assert await manager.list_runs("proj_1", limit=1) == runs[:1]
        assert await manager.list_runs("proj_none") == []


# =========================================================================
# Persistence
# =========================================================================


class TestPersistence:
    async def test_final_snapshot_persisted(
        self,
        event_bus: EventBus,
        run_store: RunStore,
        metrics_collector: MetricsCollector,
    ) -> None:
        manager = _manager(event_bus, run_store=run_store, metrics=metrics_collector)
        run_id = await manager.start_generation("proj_1", make_config("API"))
        await manager.wait_for_run(run_id, timeout=5.0)

        stored = await run_store.get_snapshot(run_id)
        assert stored is not None
        assert stored.status == RunStatus.COMPLETED
        assert stored.files

        metrics_row = await run_store.get_metrics(run_id)
        assert metrics_row is not None
        assert metrics_row["llm_calls"] == len(stored.tasks)

    async def test_restarted_manager_reads_store(
        self, event_bus: EventBus, run_store: RunStore
    ) -> None:
        manager = _manager(event_bus, run_store=run_store)
        run_id = await manager.start_generation("proj_1", make_config("API"))
        await manager.wait_for_run(run_id, timeout=5.0)

        restarted = _manager(EventBus(), run_store=run_store)
        snapshot = await restarted.get_run(run_id)
        assert snapshot is not None
        assert snapshot.status == RunStatus.COMPLETED
        # Files of restored runs come from the snapshot, not the live aggregate.
        assert restarted.list_files(run_id) is None

        runs = await restarted.list_runs("proj_1")
        assert [r.run_id for r in runs] == [run_id]
        assert runs[0].status == RunStatus.COMPLETED

    async def test_oldest_finished_run_is_evicted(
        self,
        event_bus: EventBus,
        run_store: RunStore,
        metrics_collector: MetricsCollector,
    ) -> None:
        manager = RunManager(
            event_bus,
            make_registry(),
            run_store=run_store,
            metrics_collector=metrics_collector,
            settings=FAST_SETTINGS.model_copy(update={"finished_run_retention": 1}),
        )
        first = await manager.start_generation("proj_1", make_config("API"))
        await manager.wait_for_run(first, timeout=5.0)
        assert manager.list_files(first)
        assert event_bus.get_event_history(first)

        second = await manager.start_generation("proj_2", make_config("API"))
        await manager.wait_for_run(second, timeout=5.0)

        # The evicted run is served from the store only.
        assert manager.list_files(first) is None
        assert event_bus.get_event_history(first) == []
        assert metrics_collector.get(first) is None
        snapshot = await manager.get_run(first)
        assert snapshot is not None
        assert snapshot.status == RunStatus.COMPLETED
        metrics = await manager.get_run_metrics(first)
        assert metrics is not None
        assert metrics.total_llm_calls == len(snapshot.tasks)

        assert manager.list_files(second)
        assert event_bus.get_event_history(second)

    async def test_cleanup_all_clears_event_history(self, event_bus: EventBus) -> None:
        manager = _manager(event_bus)
        run_id = await manager.start_generation("proj_1", make_config("API"))
        await manager.wait_for_run(run_id, timeout=5.0)
        assert event_bus.get_event_history(run_id)

        await manager.cleanup_all(timeout=1.0)

        assert event_bus.get_event_history(run_id) == []
        snapshot = await manager.get_run(run_id)
        assert snapshot is not None
        assert snapshot.status == RunStatus.COMPLETED


# =========================================================================
# Cancellation and cleanup
# =========================================================================


class TestCancellation:
    async def test_cancel_running_run(self, event_bus: EventBus) -> None:
        gate = asyncio.Event()
        agent = ScriptedAgent(gate=gate)
        manager = RunManager(
            event_bus, make_registry({AgentKind.DATABASE: agent}, gate=gate),
            settings=FAST_SETTINGS,
        )
        run_id = await manager.start_generation("proj_1", make_config("SAAS"))
        await asyncio.wait_for(agent.started.wait(), timeout=5.0)

        await manager.cancel_run(run_id, reason="user asked")
        gate.set()
        snapshot = await manager.wait_for_run(run_id, timeout=5.0)

        assert snapshot is not None
        assert snapshot.status == RunStatus.CANCELLED
        assert manager.active_run_count() == 0

    async def test_cancel_unknown_run(self, event_bus: EventBus) -> None:
        manager = _manager(event_bus)
        with pytest.raises(KeyError):
            await manager.cancel_run("run_missing")

    async def test_cancel_finished_run_is_noop(self, event_bus: EventBus) -> None:
        manager = _manager(event_bus)
        run_id = await manager.start_generation("proj_1", make_config("API"))
        await manager.wait_for_run(run_id, timeout=5.0)

        snapshot = await manager.cancel_run(run_id)
        assert snapshot.status == RunStatus.COMPLETED

    async def test_cleanup_all_cancels_active_runs(self, event_bus: EventBus) -> None:
        gate = asyncio.Event()
        manager = _manager(event_bus, gate=gate)
        run_ids = [
            await manager.start_generation(f"proj_{i}", make_config("API")) for i in range(3)
        ]
        assert manager.active_run_count() == 3

        await manager.cleanup_all(timeout=5.0)

        assert manager.active_run_count() == 0
        for run_id in run_ids:
            snapshot = await manager.get_run(run_id)
            assert snapshot is not None
            assert snapshot.status == RunStatus.CANCELLED
