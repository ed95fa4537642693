"""In-process pub/sub for generation run events.

Each run gets a channel holding its subscriber queues, a pending list for
events published while nobody listens, and a capped history used to replay
the stream when a client reconnects.

``close_run`` ends a run's live stream: every subscriber receives a
STREAM_CLOSED sentinel and is dropped, while the history stays available.
"""

import asyncio
import contextlib
import threading
from dataclasses import dataclass, field

import structlog

from events.types import EventType, GenerationEvent

logger = structlog.get_logger(__name__)

# A stalled consumer must not hold up the run that publishes to it.
DELIVERY_TIMEOUT_SECONDS = 5.0


@dataclass
class _RunChannel:
    queues: list[asyncio.Queue[GenerationEvent]] = field(default_factory=list)
    pending: list[GenerationEvent] = field(default_factory=list)
    history: list[GenerationEvent] = field(default_factory=list)

    @property
    def is_idle(self) -> bool:
        return not (self.queues or self.pending or self.history)


class EventBus:
    """Fan-out of GenerationEvents to any number of consumers per run.

    Subscription bookkeeping sits behind a ``threading.Lock`` so that
    ``subscribe`` and ``unsubscribe`` are safe from any thread; ``publish``
    must run on the loop that owns the queues.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("run_123")
        >>> await bus.publish(GenerationEvent(type=EventType.RUN_STARTED, run_id="run_123"))
        >>> event = await queue.get()
        >>> await bus.close_run("run_123")
    """

    MAX_HISTORY_PER_RUN = 5000

    def __init__(self) -> None:
        self._channels: dict[str, _RunChannel] = {}
        self._lock = threading.Lock()
        logger.info("event_bus_initialized")

    def _channel(self, run_id: str) -> _RunChannel:
        channel = self._channels.get(run_id)
        if channel is None:
            channel = self._channels[run_id] = _RunChannel()
        return channel

    def _discard_if_idle(self, run_id: str) -> None:
        channel = self._channels.get(run_id)
        if channel is not None and channel.is_idle:
            del self._channels[run_id]

    def subscribe(self, run_id: str) -> asyncio.Queue[GenerationEvent]:
        """Register a new consumer queue for a run.

        Events published before anyone subscribed are handed to this first
        subscriber and then forgotten.
        """
        queue: asyncio.Queue[GenerationEvent] = asyncio.Queue()
        with self._lock:
            channel = self._channel(run_id)
            channel.queues.append(queue)
            pending, channel.pending = channel.pending, []
            subscriber_count = len(channel.queues)

        for event in pending:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            run_id=run_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(pending),
        )
        return queue

    def unsubscribe(self, run_id: str, queue: asyncio.Queue[GenerationEvent]) -> None:
        """Drop a consumer queue. Unknown runs and queues are ignored."""
        with self._lock:
            channel = self._channels.get(run_id)
            if channel is None or queue not in channel.queues:
                logger.debug("unsubscribe_queue_not_found", run_id=run_id)
                return
            channel.queues.remove(queue)
            subscriber_count = len(channel.queues)
            self._discard_if_idle(run_id)

        logger.info("subscriber_removed", run_id=run_id, subscriber_count=subscriber_count)

    async def publish(self, event: GenerationEvent) -> None:
        """Record an event in the run's history and deliver it.

        Without subscribers the event waits in the pending list. Delivery
        failures are logged per queue and never reach the publisher.
        """
        with self._lock:
            channel = self._channel(event.run_id)
            if event.type != EventType.STREAM_CLOSED:
                channel.history.append(event)
                overflow = len(channel.history) - self.MAX_HISTORY_PER_RUN
                if overflow > 0:
                    del channel.history[:overflow]
            queues = list(channel.queues)
            if not queues:
                channel.pending.append(event)

        if not queues:
            logger.debug(
                "event_buffered",
                run_id=event.run_id,
                event_type=event.type.value,
                sequence=event.sequence,
            )
            return

        for queue in queues:
            await self._deliver(queue, event)

        logger.debug(
            "event_published",
            run_id=event.run_id,
            event_type=event.type.value,
            sequence=event.sequence,
            subscriber_count=len(queues),
        )

    async def _deliver(self, queue: asyncio.Queue[GenerationEvent], event: GenerationEvent) -> None:
        try:
            await asyncio.wait_for(queue.put(event), timeout=DELIVERY_TIMEOUT_SECONDS)
        except TimeoutError:
            logger.warning(
                "event_delivery_timeout",
                run_id=event.run_id,
                event_type=event.type.value,
            )
        except Exception as e:
            logger.warning(
                "event_delivery_failed",
                run_id=event.run_id,
                event_type=event.type.value,
                error=str(e),
            )

    def get_event_history(self, run_id: str) -> list[GenerationEvent]:
        """Copy of the run's published events, oldest first."""
        with self._lock:
            channel = self._channels.get(run_id)
            return list(channel.history) if channel is not None else []

    async def close_run(self, run_id: str) -> None:
        """Send STREAM_CLOSED to every subscriber, then drop them.

        Pending events are discarded; history is kept for replay.
        """
        with self._lock:
            channel = self._channels.get(run_id)
            if channel is None:
                queues, dropped = [], 0
            else:
                queues, channel.queues = channel.queues, []
                dropped = len(channel.pending)
                channel.pending = []
                self._discard_if_idle(run_id)

        if not queues and not dropped:
            logger.debug("close_run_no_subscribers", run_id=run_id)
            return

        sentinel = GenerationEvent(
            type=EventType.STREAM_CLOSED,
            run_id=run_id,
            data={"reason": "run_closed"},
        )
        for queue in queues:
            with contextlib.suppress(asyncio.QueueFull):
                queue.put_nowait(sentinel)

        logger.info(
            "run_stream_closed",
            run_id=run_id,
            subscribers_removed=len(queues),
            buffered_events_cleared=dropped,
        )

    def get_subscriber_count(self, run_id: str) -> int:
        with self._lock:
            channel = self._channels.get(run_id)
            return len(channel.queues) if channel is not None else 0

    def get_active_runs(self) -> list[str]:
        """Runs with at least one live subscriber."""
        with self._lock:
            return [run_id for run_id, channel in self._channels.items() if channel.queues]

    def clear_event_history(self, run_id: str) -> None:
        """Forget a run's history once it should no longer be replayed."""
        with self._lock:
            channel = self._channels.get(run_id)
            if channel is not None:
                channel.history = []
                self._discard_if_idle(run_id)
