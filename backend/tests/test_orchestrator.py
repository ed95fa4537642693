"""Tests for orchestrator/scheduler.py -- coordinator and worker pool.

Every test runs a real GenerationOrchestrator against ScriptedAgent doubles,
so scheduling, retries, timeouts, cascading skips and cancellation are
exercised end to end without an LLM.
"""

import asyncio

from errors import FatalAgentError, RecoverableAgentError, RunCancelledError
from events.bus import EventBus
from events.types import EventType
from metrics import MetricsCollector
from models.schemas import (
    AgentKind,
    GeneratedFile,
    LogSeverity,
    RunStatus,
    TaskStatus,
    TokenUsage,
)
from orchestrator import RetryPolicy
from tests.conftest import (
    ConcurrencyGauge,
    ScriptedAgent,
    collect_events,
    make_config,
    make_orchestrator,
    make_registry,
)


def _statuses(snapshot) -> dict[str, TaskStatus]:
    return {task.agent_kind.value: task.status for task in snapshot.tasks}


# =========================================================================
# End-to-end scenarios
# =========================================================================


class TestScenarios:
    """Whole runs over the canonical template graphs."""

    async def test_api_template_without_auth_or_integrations(
        self, event_bus: EventBus
    ) -> None:
        config = make_config("API", auth_providers=(), integrations=())
        orchestrator = make_orchestrator(config, make_registry(), event_bus)

        snapshot = await orchestrator.run()

        assert [t.task_id for t in snapshot.tasks] == [
            "task_database",
            "task_backend",
            "task_devops",
        ]
        assert snapshot.status == RunStatus.COMPLETED
        assert all(t.status == TaskStatus.COMPLETED for t in snapshot.tasks)
        assert snapshot.progress == 100
        assert snapshot.completed_at is not None
        assert snapshot.error_summary is None

    async def test_saas_auth_failure_skips_devops_only(self, event_bus: EventBus) -> None:
        auth = ScriptedAgent([FatalAgentError("provider rejected", agent_kind="auth")])
        orchestrator = make_orchestrator(
            make_config("SAAS", auth_providers=("email", "google")),
            make_registry({AgentKind.AUTH: auth}),
            event_bus,
        )

        snapshot = await orchestrator.run()

        assert _statuses(snapshot) == {
            "database": TaskStatus.COMPLETED,
            "backend": TaskStatus.COMPLETED,
            "frontend": TaskStatus.COMPLETED,
            "auth": TaskStatus.FAILED,
            "integrations": TaskStatus.COMPLETED,
            "devops": TaskStatus.SKIPPED,
        }
        assert snapshot.status == RunStatus.FAILED
        assert snapshot.error_summary == "auth: provider rejected"
        assert auth.attempts == 1

        devops = snapshot.task_for(AgentKind.DEVOPS)
        assert devops is not None
        assert "task_auth" in (devops.error or "")

        events = collect_events(event_bus, orchestrator.run_id)
        assert events[-1].type == EventType.RUN_FAILED
        assert events[-1].data["failed_tasks"] == ["task_auth"]

    async def test_cancel_while_backend_running(self, event_bus: EventBus) -> None:
        backend = ScriptedAgent(gate=asyncio.Event())
        orchestrator = make_orchestrator(
            make_config("SAAS"),
            make_registry({AgentKind.BACKEND: backend}),
            event_bus,
        )

        run_task = asyncio.create_task(orchestrator.run())
        await asyncio.wait_for(backend.started.wait(), timeout=2.0)
        assert orchestrator.cancel("User pressed stop") is True

        snapshot = await asyncio.wait_for(run_task, timeout=5.0)

        statuses = _statuses(snapshot)
        assert statuses["database"] == TaskStatus.COMPLETED
        assert statuses["backend"] == TaskStatus.CANCELLED
        for kind in ("frontend", "auth", "integrations", "devops"):
            assert statuses[kind] == TaskStatus.CANCELLED
        assert snapshot.status == RunStatus.CANCELLED
        assert {f.task_id for f in snapshot.files} == {"task_database"}

        events = collect_events(event_bus, orchestrator.run_id)
        assert events[-1].type == EventType.RUN_CANCELLED
        assert events[-1].data["reason"] == "User pressed stop"


# =========================================================================
# Scheduling
# =========================================================================


class TestScheduling:
    """Dependency order and the concurrency cap."""

    async def test_dependencies_complete_before_dependents_start(
        self, event_bus: EventBus
    ) -> None:
        orchestrator = make_orchestrator(make_config("SAAS"), make_registry(), event_bus)
        snapshot = await orchestrator.run()

        by_id = {t.task_id: t for t in snapshot.tasks}
        for task in snapshot.tasks:
            for dep in task.dependencies:
                assert by_id[dep].completed_at is not None
                assert task.started_at is not None
                assert by_id[dep].completed_at <= task.started_at

    async def test_concurrency_never_exceeds_cap(self, event_bus: EventBus) -> None:
        gauge = ConcurrencyGauge()
        orchestrator = make_orchestrator(
            make_config("SAAS"),
            make_registry(delay=0.05, gauge=gauge),
            event_bus,
            max_concurrency=2,
        )
        snapshot = await orchestrator.run()

        assert snapshot.status == RunStatus.COMPLETED
        assert gauge.peak == 2

    async def test_independent_tasks_run_in_parallel(self, event_bus: EventBus) -> None:
        gauge = ConcurrencyGauge()
        orchestrator = make_orchestrator(
            make_config("SAAS"),
            make_registry(delay=0.05, gauge=gauge),
            event_bus,
            max_concurrency=3,
        )
        await orchestrator.run()

        # frontend, auth and integrations all wait only on backend.
        assert gauge.peak == 3

    async def test_serial_execution_with_cap_of_one(self, event_bus: EventBus) -> None:
        gauge = ConcurrencyGauge()
        orchestrator = make_orchestrator(
            make_config("SAAS"),
            make_registry(delay=0.01, gauge=gauge),
            event_bus,
            max_concurrency=1,
        )
        snapshot = await orchestrator.run()

        assert snapshot.status == RunStatus.COMPLETED
        assert gauge.peak == 1

    async def test_upstream_files_cover_all_ancestors(self, event_bus: EventBus) -> None:
        frontend = ScriptedAgent()
        devops = ScriptedAgent()
        orchestrator = make_orchestrator(
            make_config("SAAS"),
            make_registry({AgentKind.FRONTEND: frontend, AgentKind.DEVOPS: devops}),
            event_bus,
        )
        await orchestrator.run()

        frontend_upstream = {f.task_id for f in frontend.requests[0].upstream_files}
        assert frontend_upstream == {"task_database", "task_backend"}

        devops_upstream = {f.task_id for f in devops.requests[0].upstream_files}
        assert devops_upstream == {
            "task_database",
            "task_backend",
            "task_frontend",
            "task_auth",
            "task_integrations",
        }

    async def test_request_carries_config_slice(self, event_bus: EventBus) -> None:
        integrations = ScriptedAgent()
        orchestrator = make_orchestrator(
            make_config("SAAS", integrations=("stripe", "sendgrid")),
            make_registry({AgentKind.INTEGRATIONS: integrations}),
            event_bus,
            project_id="proj_slice",
        )
        await orchestrator.run()

        request = integrations.requests[0]
        assert request.project_id == "proj_slice"
        assert request.task_id == "task_integrations"
        assert [i["type"] for i in request.config_slice["integrations"]] == [
            "stripe",
            "sendgrid",
        ]
        assert "auth" not in request.config_slice


# =========================================================================
# Retries and timeouts
# =========================================================================


class TestRetries:
    """Recoverable errors are retried inside the worker."""

    async def test_recoverable_error_is_retried(
        self, event_bus: EventBus, metrics_collector: MetricsCollector
    ) -> None:
        backend = ScriptedAgent([RecoverableAgentError("provider overloaded")])
        orchestrator = make_orchestrator(
            make_config("API", auth_providers=(), integrations=()),
            make_registry({AgentKind.BACKEND: backend}),
            event_bus,
            metrics=metrics_collector,
        )
        snapshot = await orchestrator.run()

        task = snapshot.task_for(AgentKind.BACKEND)
        assert task is not None
        assert task.status == TaskStatus.COMPLETED
        assert task.retry_count == 1
        assert [r.attempt for r in backend.requests] == [1, 2]
        assert snapshot.status == RunStatus.COMPLETED

        warnings = [
            log for log in snapshot.logs
            if log.severity == LogSeverity.WARNING and log.task_id == "task_backend"
        ]
        assert len(warnings) == 1
        assert "provider overloaded" in warnings[0].message

        metrics = metrics_collector.get(orchestrator.run_id)
        assert metrics is not None
        assert metrics.retries == 1

    async def test_retry_budget_exhausted_fails_task(self, event_bus: EventBus) -> None:
        backend = ScriptedAgent([RecoverableAgentError("still down")] * 5)
        orchestrator = make_orchestrator(
            make_config("API", auth_providers=(), integrations=()),
            make_registry({AgentKind.BACKEND: backend}),
            event_bus,
            retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0),
        )
        snapshot = await orchestrator.run()

        task = snapshot.task_for(AgentKind.BACKEND)
        assert task is not None
        assert task.status == TaskStatus.FAILED
        assert task.retry_count == 2
        assert task.error == "still down (after 3 attempts)"
        assert backend.attempts == 3
        assert _statuses(snapshot)["devops"] == TaskStatus.SKIPPED

    async def test_timeout_counts_as_recoverable(self, event_bus: EventBus) -> None:
        backend = ScriptedAgent(delay=1.0)
        orchestrator = make_orchestrator(
            make_config("API", auth_providers=(), integrations=()),
            make_registry({AgentKind.BACKEND: backend}),
            event_bus,
            task_timeout=0.05,
            retry_policy=RetryPolicy(max_attempts=2, base_delay=0.0, max_delay=0.0),
        )
        snapshot = await orchestrator.run()

        task = snapshot.task_for(AgentKind.BACKEND)
        assert task is not None
        assert task.status == TaskStatus.FAILED
        assert "timed out" in (task.error or "")
        assert backend.attempts == 2

    async def test_fatal_error_is_not_retried(self, event_bus: EventBus) -> None:
        database = ScriptedAgent([FatalAgentError("bad schema")])
        orchestrator = make_orchestrator(
            make_config("SAAS"),
            make_registry({AgentKind.DATABASE: database}),
            event_bus,
        )
        snapshot = await orchestrator.run()

        assert database.attempts == 1
        statuses = _statuses(snapshot)
        assert statuses["database"] == TaskStatus.FAILED
        # Every other task sits downstream of database.
        for kind in ("backend", "frontend", "auth", "integrations", "devops"):
            assert statuses[kind] == TaskStatus.SKIPPED

    async def test_unexpected_exception_fails_without_retry(self, event_bus: EventBus) -> None:
        frontend = ScriptedAgent([ValueError("boom")])
        orchestrator = make_orchestrator(
            make_config("SAAS"),
            make_registry({AgentKind.FRONTEND: frontend}),
            event_bus,
        )
        snapshot = await orchestrator.run()

        task = snapshot.task_for(AgentKind.FRONTEND)
        assert task is not None
        assert task.status == TaskStatus.FAILED
        assert task.error == "Unexpected ValueError: boom"
        assert frontend.attempts == 1

    async def test_cancellation_error_from_active_run_fails_task(self, event_bus: EventBus) -> None:
        frontend = ScriptedAgent([RunCancelledError("stopped on its own")])
        orchestrator = make_orchestrator(
            make_config("SAAS"),
            make_registry({AgentKind.FRONTEND: frontend}),
            event_bus,
        )
        snapshot = await orchestrator.run()

        task = snapshot.task_for(AgentKind.FRONTEND)
        assert task is not None
        assert task.status == TaskStatus.FAILED
        assert task.error == "Agent stopped with a cancellation while the run was still active"
        assert frontend.attempts == 1
        assert snapshot.status == RunStatus.FAILED


# =========================================================================
# Files and aggregate
# =========================================================================


class TestFiles:
    """Merging of task outputs into the run aggregate."""

    async def test_cross_task_collision_logs_warning(self, event_bus: EventBus) -> None:
        def shared(content: str):
            def factory(request):
                return [GeneratedFile(path="shared/env.ts", content=content, task_id=request.task_id)]
            return factory

        backend = ScriptedAgent(files=shared("export const a = 1;"))
        auth = ScriptedAgent(files=shared("export const a = 2;"))
        orchestrator = make_orchestrator(
            make_config("API", integrations=()),
            make_registry({AgentKind.BACKEND: backend, AgentKind.AUTH: auth}),
            event_bus,
        )
        snapshot = await orchestrator.run()

        assert snapshot.status == RunStatus.COMPLETED
        owner = orchestrator.generation.aggregate.get("shared/env.ts")
        assert owner is not None
        assert owner.task_id == "task_auth"

        collisions = [log for log in snapshot.logs if log.data.get("path") == "shared/env.ts"]
        assert len(collisions) == 1
        assert collisions[0].severity == LogSeverity.WARNING
        assert collisions[0].data["previous_task_id"] == "task_backend"

    async def test_invalid_path_fails_task_and_keeps_aggregate(
        self, event_bus: EventBus
    ) -> None:
        def escaping(request):
            return [
                GeneratedFile(path="backend/ok.ts", content="ok", task_id=request.task_id),
                GeneratedFile(path="../etc/passwd", content="x", task_id=request.task_id),
            ]

        backend = ScriptedAgent(files=escaping)
        orchestrator = make_orchestrator(
            make_config("API", auth_providers=(), integrations=()),
            make_registry({AgentKind.BACKEND: backend}),
            event_bus,
        )
        snapshot = await orchestrator.run()

        task = snapshot.task_for(AgentKind.BACKEND)
        assert task is not None
        assert task.status == TaskStatus.FAILED
        assert "path traversal" in (task.error or "")
        assert "backend/ok.ts" not in orchestrator.generation.aggregate

    async def test_file_generated_event_per_file(self, event_bus: EventBus) -> None:
        orchestrator = make_orchestrator(
            make_config("API", auth_providers=(), integrations=()),
            make_registry(),
            event_bus,
        )
        snapshot = await orchestrator.run()

        events = collect_events(event_bus, orchestrator.run_id)
        generated = [e.data["path"] for e in events if e.type == EventType.FILE_GENERATED]
        assert sorted(generated) == [f.path for f in snapshot.files]

    async def test_usage_accumulates_across_tasks(
        self, event_bus: EventBus, metrics_collector: MetricsCollector
    ) -> None:
        usage = TokenUsage(input_tokens=100, output_tokens=50, llm_calls=1)
        orchestrator = make_orchestrator(
            make_config("API", auth_providers=(), integrations=()),
            make_registry(usage=usage),
            event_bus,
            metrics=metrics_collector,
        )
        snapshot = await orchestrator.run()

        assert snapshot.usage == TokenUsage(input_tokens=300, output_tokens=150, llm_calls=3)
        metrics = metrics_collector.get(orchestrator.run_id)
        assert metrics is not None
        assert metrics.tokens_by_agent == {"database": 150, "backend": 150, "devops": 150}
        assert metrics.duration_ms >= 1


# =========================================================================
# Events and progress
# =========================================================================


class TestEvents:
    """Ordering and content of the published event stream."""

    async def test_sequence_is_strictly_increasing(self, event_bus: EventBus) -> None:
        orchestrator = make_orchestrator(make_config("SAAS"), make_registry(), event_bus)
        await orchestrator.run()

        sequences = [e.sequence for e in collect_events(event_bus, orchestrator.run_id)]
        assert sequences == list(range(1, len(sequences) + 1))

    async def test_run_started_once_and_terminal_event_last(self, event_bus: EventBus) -> None:
        orchestrator = make_orchestrator(make_config("SAAS"), make_registry(), event_bus)
        await orchestrator.run()

        events = collect_events(event_bus, orchestrator.run_id)
        assert [e.type for e in events].count(EventType.RUN_STARTED) == 1
        assert events[0].type == EventType.RUN_STARTED
        assert events[0].data["task_count"] == 6
        assert events[-1].type == EventType.RUN_COMPLETED
        assert events[-1].data["files"] == 6

    async def test_one_status_event_per_transition(self, event_bus: EventBus) -> None:
        orchestrator = make_orchestrator(
            make_config("API", auth_providers=(), integrations=()),
            make_registry(),
            event_bus,
        )
        await orchestrator.run()

        changes = [
            (e.data["task_id"], e.data["status"])
            for e in collect_events(event_bus, orchestrator.run_id)
            if e.type == EventType.TASK_STATUS_CHANGED
        ]
        assert changes == [
            ("task_database", "running"),
            ("task_database", "completed"),
            ("task_backend", "running"),
            ("task_backend", "completed"),
            ("task_devops", "running"),
            ("task_devops", "completed"),
        ]

    async def test_progress_is_monotonic_and_reaches_100(self, event_bus: EventBus) -> None:
        orchestrator = make_orchestrator(
            make_config("SAAS"),
            make_registry(progress=(30.0, 10.0, 80.0)),
            event_bus,
        )
        await orchestrator.run()

        values = [
            e.data["overall_percent"]
            for e in collect_events(event_bus, orchestrator.run_id)
            if e.type == EventType.RUN_PROGRESS
        ]
        assert values == sorted(values)
        assert values[-1] == 100

    async def test_agent_logs_are_forwarded(self, event_bus: EventBus) -> None:
        class ChattyAgent(ScriptedAgent):
            async def execute(self, request):
                request.log("Rendering schema", tables=3)
                return await super().execute(request)

        orchestrator = make_orchestrator(
            make_config("API", auth_providers=(), integrations=()),
            make_registry({AgentKind.DATABASE: ChattyAgent()}),
            event_bus,
        )
        snapshot = await orchestrator.run()

        log = next(entry for entry in snapshot.logs if entry.message == "Rendering schema")
        assert log.agent_kind == AgentKind.DATABASE
        assert log.task_id == "task_database"
        assert log.data == {"tables": 3}

    async def test_agent_log_data_may_reuse_log_field_names(self, event_bus: EventBus) -> None:
        class ChattyAgent(ScriptedAgent):
            async def execute(self, request):
                request.log("Wired webhook", agent_kind="stripe", task_id="x", severity_hint=1)
                return await super().execute(request)

        orchestrator = make_orchestrator(
            make_config("SAAS"),
            make_registry({AgentKind.INTEGRATIONS: ChattyAgent()}),
            event_bus,
        )
        snapshot = await orchestrator.run()

        assert snapshot.status == RunStatus.COMPLETED
        log = next(entry for entry in snapshot.logs if entry.message == "Wired webhook")
        assert log.agent_kind == AgentKind.INTEGRATIONS
        assert log.task_id == "task_integrations"
        assert log.data == {"agent_kind": "stripe", "task_id": "x", "severity_hint": 1}

        event = next(
            e for e in collect_events(event_bus, orchestrator.run_id)
            if e.type == EventType.LOG and e.data["message"] == "Wired webhook"
        )
        assert event.data["agent_kind"] == "integrations"
        assert event.data["data"]["agent_kind"] == "stripe"

    async def test_retry_publishes_status_with_retry_count(self, event_bus: EventBus) -> None:
        backend = ScriptedAgent([RecoverableAgentError("provider overloaded")])
        orchestrator = make_orchestrator(
            make_config("API", auth_providers=(), integrations=()),
            make_registry({AgentKind.BACKEND: backend}),
            event_bus,
        )
        await orchestrator.run()

        backend_changes = [
            (e.data["status"], e.data["retry_count"])
            for e in collect_events(event_bus, orchestrator.run_id)
            if e.type == EventType.TASK_STATUS_CHANGED and e.data["task_id"] == "task_backend"
        ]
        assert backend_changes == [("running", 0), ("running", 1), ("completed", 1)]

    async def test_internal_error_publishes_cancelled_tasks(self, event_bus: EventBus) -> None:
        orchestrator = make_orchestrator(make_config("SAAS"), make_registry(), event_bus)
        aggregate = orchestrator.generation.aggregate
        real_merge = aggregate.merge

        def merge(task_id, files):
            if task_id == "task_backend":
                raise RuntimeError("aggregate corrupted")
            return real_merge(task_id, files)

        aggregate.merge = merge  # type: ignore[method-assign]
        snapshot = await orchestrator.run()

        assert snapshot.status == RunStatus.FAILED
        assert "aggregate corrupted" in (snapshot.error_summary or "")
        cancelled = {t.task_id for t in snapshot.tasks if t.status == TaskStatus.CANCELLED}
        assert cancelled == {
            "task_backend",
            "task_frontend",
            "task_auth",
            "task_integrations",
            "task_devops",
        }

        events = collect_events(event_bus, orchestrator.run_id)
        cancelled_events = [
            e.data["task_id"]
            for e in events
            if e.type == EventType.TASK_STATUS_CHANGED and e.data["status"] == "cancelled"
        ]
        assert sorted(cancelled_events) == sorted(cancelled)
        assert any(
            e.type == EventType.LOG
            and e.data["severity"] == "error"
            and e.data["agent_kind"] == "orchestrator"
            for e in events
        )
        assert events[-1].type == EventType.RUN_FAILED


# =========================================================================
# Cancellation
# =========================================================================


class TestCancellation:
    """cancel() semantics outside the main scenario."""

    async def test_cancel_before_run_starts(self, event_bus: EventBus) -> None:
        registry = make_registry()
        orchestrator = make_orchestrator(make_config("SAAS"), registry, event_bus)

        assert orchestrator.cancel() is True
        snapshot = await orchestrator.run()

        assert snapshot.status == RunStatus.CANCELLED
        assert all(t.status == TaskStatus.CANCELLED for t in snapshot.tasks)
        assert snapshot.files == ()
        types = [e.type for e in collect_events(event_bus, orchestrator.run_id)]
        assert EventType.RUN_STARTED not in types

    async def test_cancel_twice_is_noop(self, event_bus: EventBus) -> None:
        backend = ScriptedAgent(gate=asyncio.Event())
        orchestrator = make_orchestrator(
            make_config("SAAS"),
            make_registry({AgentKind.BACKEND: backend}),
            event_bus,
        )
        run_task = asyncio.create_task(orchestrator.run())
        await asyncio.wait_for(backend.started.wait(), timeout=2.0)

        assert orchestrator.cancel() is True
        assert orchestrator.cancel() is False
        await asyncio.wait_for(run_task, timeout=5.0)

    async def test_cancel_after_completion_returns_false(self, event_bus: EventBus) -> None:
        orchestrator = make_orchestrator(
            make_config("API", auth_providers=(), integrations=()),
            make_registry(),
            event_bus,
        )
        snapshot = await orchestrator.run()

        assert orchestrator.cancel() is False
        assert orchestrator.snapshot().status == snapshot.status == RunStatus.COMPLETED

    async def test_cancel_during_backoff_stops_retrying(self, event_bus: EventBus) -> None:
        backend = ScriptedAgent([RecoverableAgentError("flaky")] * 3)
        orchestrator = make_orchestrator(
            make_config("API", auth_providers=(), integrations=()),
            make_registry({AgentKind.BACKEND: backend}),
            event_bus,
            retry_policy=RetryPolicy(max_attempts=3, base_delay=5.0, max_delay=5.0),
        )
        run_task = asyncio.create_task(orchestrator.run())
        await asyncio.wait_for(backend.started.wait(), timeout=2.0)
        await asyncio.sleep(0.05)

        orchestrator.cancel()
        snapshot = await asyncio.wait_for(run_task, timeout=2.0)

        assert snapshot.status == RunStatus.CANCELLED
        assert backend.attempts == 1
