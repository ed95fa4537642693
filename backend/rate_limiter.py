"""Sliding-window rate limiter shared by every LLM agent of the process.

Generation tasks run concurrently, so several agents may hit the same
provider at once. The limiter keeps each minute's requests (RPM) and tokens
(TPM) under the configured quotas.

A request first reserves capacity with an estimated token count. Once the
provider reports real usage, the reservation is settled with the actual
number so that later estimates are budgeted against real traffic.

Usage:
    >>> limiter = RateLimiter.from_settings(settings)
    >>> reservation = await limiter.acquire(estimated_tokens=1500)
    >>> limiter.record_usage(1234, reservation)
"""

import asyncio
import itertools
import time
from collections import deque
from dataclasses import dataclass

import structlog

from config import Settings

logger = structlog.get_logger(__name__)

WINDOW_SECONDS = 60.0


class RateLimitExceededError(Exception):
    """Raised when no capacity frees up before the acquire deadline."""


@dataclass(eq=False)
class Reservation:
    """Capacity held in the window for one request."""

    reservation_id: int
    timestamp: float
    tokens: int


class RateLimiter:
    """Requests-per-minute and tokens-per-minute limiter.

    Attributes:
        max_calls_per_minute: Requests allowed in any 60-second window
        max_tokens_per_minute: Tokens allowed in any 60-second window
    """

    def __init__(
        self,
        max_calls_per_minute: int = 30,
        max_tokens_per_minute: int = 100_000,
    ) -> None:
        self.max_calls_per_minute = max_calls_per_minute
        self.max_tokens_per_minute = max_tokens_per_minute
        self._window: deque[Reservation] = deque()
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()
        logger.info(
            "rate_limiter_initialized",
            max_rpm=max_calls_per_minute,
            max_tpm=max_tokens_per_minute,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimiter":
        return cls(
            max_calls_per_minute=settings.llm_rate_limit_rpm,
            max_tokens_per_minute=settings.llm_rate_limit_tpm,
        )

    def _expire(self, now: float) -> None:
        while self._window and self._window[0].timestamp <= now - WINDOW_SECONDS:
            self._window.popleft()

    @property
    def _tokens_in_window(self) -> int:
        return sum(r.tokens for r in self._window)

    def _has_room(self, tokens: int) -> bool:
        return (
            len(self._window) < self.max_calls_per_minute
            and self._tokens_in_window + tokens <= self.max_tokens_per_minute
        )

    async def acquire(
        self,
        estimated_tokens: int = 1000,
        max_wait_seconds: float = 60.0,
    ) -> Reservation:
        """Reserve capacity for one request, waiting while the window is full.

        An estimate larger than the whole TPM budget is clamped to it, so an
        oversized request can still go through once the window is empty.

        Raises:
            RateLimitExceededError: If the window stays full past ``max_wait_seconds``.
        """
        tokens = min(estimated_tokens, self.max_tokens_per_minute)
        deadline = time.monotonic() + max_wait_seconds

        while True:
            async with self._lock:
                now = time.monotonic()
                self._expire(now)
                if self._has_room(tokens):
                    reservation = Reservation(next(self._ids), now, tokens)
                    self._window.append(reservation)
                    logger.debug(
                        "rate_limiter_acquired",
                        reservation_id=reservation.reservation_id,
                        current_rpm=len(self._window),
                        current_tpm=self._tokens_in_window,
                    )
                    return reservation

                remaining = deadline - now
                if remaining <= 0:
                    raise RateLimitExceededError(
                        f"No rate limit capacity within {max_wait_seconds}s"
                    )
                # The oldest entry is the next one to leave the window.
                oldest = self._window[0].timestamp if self._window else now
                pause = min(max(oldest + WINDOW_SECONDS - now, 0.1), remaining)

            logger.info(
                "rate_limiter_waiting",
                wait_seconds=round(pause, 2),
                current_rpm=len(self._window),
                current_tpm=self._tokens_in_window,
            )
            await asyncio.sleep(pause)

    def record_usage(self, tokens_used: int, reservation: Reservation | None = None) -> None:
        """Settle a reservation with the tokens the request actually used.

        Without a reservation the newest entry in the window is settled.
        Reservations that already left the window are ignored.
        """
        if reservation is None:
            if not self._window:
                return
            reservation = self._window[-1]
        elif reservation not in self._window:
            return

        reservation.tokens = tokens_used
        logger.debug(
            "rate_limiter_usage_recorded",
            reservation_id=reservation.reservation_id,
            tokens_used=tokens_used,
            current_tpm=self._tokens_in_window,
        )

    def get_status(self) -> dict[str, int]:
        """Current window usage against the limits."""
        self._expire(time.monotonic())
        return {
            "current_rpm": len(self._window),
            "current_tpm": self._tokens_in_window,
            "max_rpm": self.max_calls_per_minute,
            "max_tpm": self.max_tokens_per_minute,
        }
