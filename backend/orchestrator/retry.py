"""Exponential backoff policy for recoverable agent failures."""

from dataclasses import dataclass

from config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for one task.

    ``max_attempts`` counts every attempt, including the first. The delay
    before attempt ``n + 1`` is ``base_delay * multiplier ** (n - 1)``,
    capped at ``max_delay``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays cannot be negative")

    def should_retry(self, attempt: int) -> bool:
        """Whether a failed ``attempt`` (1-based) may be followed by another."""
        return attempt < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Backoff to wait after failed ``attempt`` (1-based)."""
        return min(self.base_delay * (self.multiplier ** max(0, attempt - 1)), self.max_delay)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.task_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )
