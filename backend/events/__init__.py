"""Event system for generation run streaming.

This package provides the event infrastructure between the generation
orchestrator and external consumers. The event system is based on an async
pub/sub pattern using asyncio.Queue.

Key Components:
    - EventType: Enum of all event types in the stream
    - GenerationEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation for event distribution

Usage:
    >>> from events import EventBus, EventType, GenerationEvent
    >>>
    >>> bus = EventBus()
    >>> queue = bus.subscribe("run_123")
    >>> await bus.publish(GenerationEvent(
    ...     type=EventType.RUN_STARTED,
    ...     run_id="run_123",
    ...     data={"task_count": 3},
    ... ))
    >>> event = await queue.get()

Event Flow:
    1. The orchestrator's coordinator emits events via RunEventEmitter
    2. RunEventEmitter publishes them on the EventBus in order
    3. The WebSocket handler subscribes to a run's events
    4. Events are forwarded to clients as JSON
"""

from events.bus import EventBus
from events.types import EventType, GenerationEvent

__all__ = [
    "EventType",
    "GenerationEvent",
    "EventBus",
]
