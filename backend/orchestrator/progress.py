"""Monotonic per-task and overall progress tracking."""

import math
from collections.abc import Iterable

import structlog

logger = structlog.get_logger(__name__)


class ProgressTracker:
    """Tracks agent-reported progress for every task in a run.

    Task values are clamped to 0..100 and never decrease. Overall progress
    is the equal-weight mean of all tasks. Skipped and cancelled tasks are
    frozen at their last value, so a run that does not complete may never
    reach 100.
    """

    def __init__(self, task_ids: Iterable[str], threshold: int = 1) -> None:
        self._progress: dict[str, float] = {task_id: 0.0 for task_id in task_ids}
        self._frozen: set[str] = set()
        self._threshold = max(1, threshold)
        self._last_emitted = 0

    def update(self, task_id: str, percent: float) -> float:
        """Record a progress report and return the task's effective value."""
        current = self._progress[task_id]
        if task_id in self._frozen:
            return current
        clamped = min(100.0, max(0.0, float(percent)))
        if clamped < current:
            logger.debug(
                "progress_regression_ignored",
                task_id=task_id,
                current=current,
                reported=percent,
            )
            return current
        self._progress[task_id] = clamped
        return clamped

    def complete(self, task_id: str) -> None:
        self._progress[task_id] = 100.0
        self._frozen.add(task_id)

    def freeze(self, task_id: str) -> None:
        self._frozen.add(task_id)

    def task_progress(self, task_id: str) -> int:
        return math.floor(self._progress[task_id])

    def overall(self) -> float:
        if not self._progress:
            return 0.0
        return sum(self._progress.values()) / len(self._progress)

    def overall_percent(self) -> int:
        return math.floor(self.overall())

    def poll_overall_change(self) -> int | None:
        """Return the new overall percentage if it moved by at least the threshold.

        The returned value becomes the baseline for the next poll.
        """
        current = self.overall_percent()
        if current - self._last_emitted >= self._threshold or (
            current == 100 and self._last_emitted < 100
        ):
            self._last_emitted = current
            return current
        return None
