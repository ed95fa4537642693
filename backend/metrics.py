"""In-memory metrics collection for active generation runs.

This module provides the MetricsCollector class that accumulates token usage,
retry counts and timing data for running generations. When a run reaches a
terminal state, the final metrics are persisted via RunStore.

All mutations happen on the event loop (from the run coordinator), so no
locking is needed.

Usage:
    >>> from metrics import MetricsCollector
    >>> collector = MetricsCollector()
    >>> collector.start("run_abc123")
    >>> collector.record_agent_usage("run_abc123", "backend", usage)
    >>> collector.record_retry("run_abc123")
    >>> final = collector.finish("run_abc123")
"""

import time
from dataclasses import dataclass, field

import structlog

from models.schemas import TokenUsage

logger = structlog.get_logger(__name__)


@dataclass
class RunMetricsData:
    """Accumulated metrics for a single run.

    Attributes:
        input_tokens: Total input/prompt tokens across all agent calls.
        output_tokens: Total output/completion tokens across all agent calls.
        llm_calls: Number of LLM invocations.
        retries: Number of task attempts that were retried.
        tokens_by_agent: Total tokens keyed by agent kind.
        duration_ms: Total execution time in milliseconds (set by finish()).
        started_at: Unix timestamp when tracking began.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    llm_calls: int = 0
    retries: int = 0
    tokens_by_agent: dict[str, int] = field(default_factory=dict)
    duration_ms: int = 0
    started_at: float = field(default_factory=time.time)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def elapsed_seconds(self) -> float:
        """Duration so far, or the final duration once finished."""
        if self.duration_ms:
            return self.duration_ms / 1000
        return max(0.0, time.time() - self.started_at)

    def to_dict(self) -> dict[str, int]:
        """Convert to a plain dict suitable for RunStore.save_metrics()."""
        return {
            "total_tokens": self.total_tokens,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "llm_calls": self.llm_calls,
            "retries": self.retries,
            "duration_ms": self.duration_ms,
        }


class MetricsCollector:
    """In-memory collector that tracks per-run metrics.

    Each active run gets its own RunMetricsData instance. Finished runs are
    kept so that the metrics endpoint can still report them.

    Attributes:
        _runs: Mapping from run_id to its metrics data.
    """

    def __init__(self) -> None:
        self._runs: dict[str, RunMetricsData] = {}
        logger.info("metrics_collector_initialized")

    def start(self, run_id: str) -> None:
        """Begin tracking metrics for a run. No-op if already tracked."""
        if run_id in self._runs:
            logger.debug("metrics_already_tracking", run_id=run_id)
            return

        self._runs[run_id] = RunMetricsData()
        logger.debug("metrics_tracking_started", run_id=run_id)

    def record_agent_usage(self, run_id: str, agent_kind: str, usage: TokenUsage) -> None:
        """Record token usage reported by one successful agent execution.

        Args:
            run_id: The run the execution belongs to.
            agent_kind: The agent kind that produced the usage.
            usage: Tokens and LLM calls consumed.
        """
        data = self._runs.get(run_id)
        if data is None:
            logger.warning("metrics_record_no_run", run_id=run_id)
            return

        data.input_tokens += usage.input_tokens
        data.output_tokens += usage.output_tokens
        data.llm_calls += usage.llm_calls
        data.tokens_by_agent[agent_kind] = (
            data.tokens_by_agent.get(agent_kind, 0) + usage.total_tokens
        )

        logger.debug(
            "metrics_agent_usage_recorded",
            run_id=run_id,
            agent_kind=agent_kind,
            total_tokens=usage.total_tokens,
            total_llm_calls=data.llm_calls,
        )

    def record_retry(self, run_id: str) -> None:
        """Increment the retry counter for a run."""
        data = self._runs.get(run_id)
        if data is None:
            logger.warning("metrics_retry_no_run", run_id=run_id)
            return

        data.retries += 1

    def finish(self, run_id: str) -> RunMetricsData | None:
        """Finalize metrics for a run, calculating duration.

        Args:
            run_id: The run to finalize.

        Returns:
            The final RunMetricsData, or None if not tracked.
        """
        data = self._runs.get(run_id)
        if data is None:
            logger.warning("metrics_finish_no_run", run_id=run_id)
            return None

        data.duration_ms = max(1, int((time.time() - data.started_at) * 1000))

        logger.info(
            "metrics_run_finished",
            run_id=run_id,
            total_tokens=data.total_tokens,
            llm_calls=data.llm_calls,
            retries=data.retries,
            duration_ms=data.duration_ms,
        )

        return data

    def get(self, run_id: str) -> RunMetricsData | None:
        """Get current metrics for a run."""
        return self._runs.get(run_id)

    def discard(self, run_id: str) -> None:
        self._runs.pop(run_id, None)
