"""Async event bus for decoupled communication between components.

The dispatcher, reconciler and reaper publish task lifecycle events;
metrics, logging bridges and the API subscribe to them without the core
knowing who is listening.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import defaultdict
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from taskwire.core.status import TaskStatus

if TYPE_CHECKING:
    from taskwire.core.correlation import Outcome

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Lifecycle events emitted by the correlation engine."""

    TASK_DISPATCHED = "task.dispatched"
    TASK_PROGRESS = "task.progress"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    TASK_TIMED_OUT = "task.timed_out"
    TASK_CANCELED = "task.canceled"
    MESSAGE_DISCARDED = "message.discarded"


@dataclass(frozen=True)
class Event:
    """An immutable event carrying contextual payload."""

    event_type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


# Subscriber callable type
Subscriber = Callable[[Event], Coroutine[Any, Any, None]]


class EventBus:
    """In-process async event bus.

    Subscribers are invoked concurrently via :func:`asyncio.gather` when
    an event is published.  A failing subscriber does **not** prevent
    other subscribers from executing.
    """

    def __init__(self) -> None:
        self._subscribers: dict[EventType, list[Subscriber]] = defaultdict(list)

    def subscribe(self, event_type: EventType, handler: Subscriber) -> None:
        """Register *handler* for *event_type*."""
        self._subscribers[event_type].append(handler)

    def subscribe_all(self, handler: Subscriber) -> None:
        """Register *handler* for every event type."""
        for event_type in EventType:
            self.subscribe(event_type, handler)

    def unsubscribe(self, event_type: EventType, handler: Subscriber) -> None:
        """Remove a previously registered handler."""
        with contextlib.suppress(ValueError):
            self._subscribers[event_type].remove(handler)

    async def publish(self, event: Event) -> None:
        """Dispatch *event* to all matching subscribers concurrently."""
        handlers = list(self._subscribers.get(event.event_type, []))
        if not handlers:
            return

        results = await asyncio.gather(*(h(event) for h in handlers), return_exceptions=True)
        for idx, result in enumerate(results):
            if isinstance(result, BaseException):
                logger.error(
                    "Subscriber %s raised %s for event %s",
                    handlers[idx].__qualname__,
                    result,
                    event.event_type.value,
                )


_OUTCOME_EVENTS = {
    TaskStatus.COMPLETED: EventType.TASK_COMPLETED,
    TaskStatus.COMPLETED_WITH_ERRORS: EventType.TASK_COMPLETED,
    TaskStatus.FAILED: EventType.TASK_FAILED,
    TaskStatus.FAILED_WITH_TERMINAL_ERROR: EventType.TASK_FAILED,
    TaskStatus.TIMED_OUT: EventType.TASK_TIMED_OUT,
    TaskStatus.CANCELED: EventType.TASK_CANCELED,
}


def outcome_event(outcome: Outcome) -> Event:
    """Build the lifecycle event announcing a terminal *outcome*."""
    return Event(
        _OUTCOME_EVENTS[outcome.status],
        {
            "correlation_id": outcome.correlation_id,
            "task_id": outcome.task_id,
            "status": outcome.status.value,
            "worker_name": outcome.worker_name,
            "reason": outcome.reason,
            "elapsed_seconds": outcome.elapsed_seconds,
        },
    )
