"""Reconciler — consumes response legs and settles them against the table.

Every inbound message is handled on its own: it is decoded, checked
against the processed-message history, and passed to
:meth:`CorrelationTable.resolve`.  The result is classified as a
:class:`Verdict`.  Stale, duplicate, foreign or malformed messages are
counted and logged; they never stop the consumer and never affect other
messages.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import Counter
from typing import TYPE_CHECKING

from taskwire.core.envelope import Leg, MessageEnvelope
from taskwire.core.errors import (
    EnvelopeValidationError,
    RejectedTransitionError,
    UnknownCorrelationError,
)
from taskwire.core.events import Event, EventBus, EventType, outcome_event
from taskwire.transport.base import Delivery, Message, Subject

if TYPE_CHECKING:
    from taskwire.core.correlation import CorrelationTable
    from taskwire.storage.base import MessageHistory
    from taskwire.transport.base import InboundChannel

logger = logging.getLogger(__name__)


class Verdict(enum.Enum):
    """How one inbound message was classified."""

    RESOLVED = "resolved"  # accepted terminal transition, waiter signalled
    PROGRESS = "progress"  # accepted non-terminal update
    UNKNOWN = "unknown"  # no such correlation in flight
    REJECTED = "rejected"  # out-of-order or duplicate terminal reply
    DUPLICATE_MESSAGE = "duplicate_message"  # redelivery of a processed message id
    MALFORMED = "malformed"
    IGNORED = "ignored"  # not a response leg
    ERROR = "error"

    @property
    def accepted(self) -> bool:
        return self in (Verdict.RESOLVED, Verdict.PROGRESS)


class ReconcilerStats:
    """Per-verdict counters."""

    def __init__(self) -> None:
        self._counts: Counter[Verdict] = Counter()

    def record(self, verdict: Verdict) -> None:
        self._counts[verdict] += 1

    def __getitem__(self, verdict: Verdict) -> int:
        return self._counts[verdict]

    @property
    def total(self) -> int:
        return sum(self._counts.values())

    @property
    def discarded(self) -> int:
        return sum(n for v, n in self._counts.items() if not v.accepted)

    def as_dict(self) -> dict[str, int]:
        return {v.value: self._counts[v] for v in Verdict}


class Reconciler:
    """Matches response legs to in-flight executions.

    Args:
        table: The shared correlation table.
        event_bus: Receives progress, outcome and discard events.
        history: Optional processed-message store for redelivery detection.
        max_concurrency: Upper bound on messages handled at once by :meth:`run`.
        topic: Name under which message ids are recorded in *history*.
    """

    def __init__(
        self,
        table: CorrelationTable,
        event_bus: EventBus | None = None,
        history: MessageHistory | None = None,
        max_concurrency: int = 32,
        topic: str = "replies",
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._table = table
        self._event_bus = event_bus or EventBus()
        self._history = history
        self._max_concurrency = max_concurrency
        self._topic = topic
        self._stats = ReconcilerStats()

    @property
    def stats(self) -> ReconcilerStats:
        return self._stats

    async def handle(self, message: Message | MessageEnvelope | str | bytes) -> Verdict:
        """Reconcile one inbound message.  Never raises."""
        try:
            verdict = await self._handle(message)
        except Exception:
            logger.exception("Unexpected error while reconciling inbound message")
            verdict = Verdict.ERROR
        self._stats.record(verdict)
        return verdict

    async def run(self, inbound: InboundChannel) -> None:
        """Consume *inbound* until it is exhausted or closed.

        Messages are handled concurrently, at most ``max_concurrency`` at
        a time.  Each delivery is acknowledged only after it was handled;
        one that ended in :attr:`Verdict.ERROR` is left unacknowledged so
        the channel can deliver it again.  Returns once every started
        handler has finished.
        """
        semaphore = asyncio.Semaphore(self._max_concurrency)
        in_flight: set[asyncio.Task[Verdict]] = set()

        async def _bounded(delivery: Delivery) -> Verdict:
            try:
                verdict = await self.handle(delivery.payload)
                if verdict is not Verdict.ERROR:
                    await self._ack(inbound, delivery)
                return verdict
            finally:
                semaphore.release()

        try:
            async for delivery in inbound.deliveries():
                await semaphore.acquire()
                task = asyncio.create_task(_bounded(delivery))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)
        finally:
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
        logger.info("Inbound channel exhausted; reconciler stopped")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _handle(self, message: Message | MessageEnvelope | str | bytes) -> Verdict:
        try:
            if isinstance(message, Message):
                incoming = message
            elif isinstance(message, MessageEnvelope):
                incoming = Message.response(message)
            else:
                incoming = Message.from_json(message)
        except EnvelopeValidationError as exc:
            logger.warning("Discarding malformed message: %s", exc)
            return await self._discard(Verdict.MALFORMED, None, str(exc))

        envelope = incoming.content
        correlation_id = envelope.correlation_id
        if incoming.subject != Subject.FINISH_TASK or envelope.leg is not Leg.RESPONSE:
            logger.warning(
                "Ignoring %s message %s: not a response leg",
                incoming.subject,
                incoming.message_id,
                extra={"correlation_id": correlation_id},
            )
            return await self._discard(Verdict.IGNORED, correlation_id, "not a response leg")

        if self._history is None:
            return await self._settle(envelope)

        if not await self._history.put(incoming.message_id, self._topic):
            logger.warning(
                "Message %s already processed",
                incoming.message_id,
                extra={"correlation_id": correlation_id},
            )
            return await self._discard(Verdict.DUPLICATE_MESSAGE, correlation_id, "redelivery")
        try:
            return await self._settle(envelope)
        except Exception:
            await self._history.forget(incoming.message_id, self._topic)
            raise

    async def _settle(self, envelope: MessageEnvelope) -> Verdict:
        correlation_id = envelope.correlation_id
        try:
            resolution = self._table.resolve(correlation_id, envelope)
        except UnknownCorrelationError:
            logger.info(
                "No in-flight task for reply from %s; stale, duplicate or foreign",
                envelope.worker_name,
                extra={"correlation_id": correlation_id},
            )
            return await self._discard(Verdict.UNKNOWN, correlation_id, "unknown correlation")
        except RejectedTransitionError as exc:
            logger.warning(
                "Rejected %s reply from %s: %s",
                envelope.task_status.value,
                envelope.worker_name,
                exc.rejection.reason,
                extra={"correlation_id": correlation_id},
            )
            return await self._discard(Verdict.REJECTED, correlation_id, exc.rejection.reason)

        if resolution.outcome is None:
            await self._event_bus.publish(
                Event(
                    EventType.TASK_PROGRESS,
                    {
                        "correlation_id": correlation_id,
                        "task_id": envelope.task_id,
                        "worker_name": envelope.worker_name,
                    },
                )
            )
            return Verdict.PROGRESS

        if resolution.rejection is not None:
            logger.warning(
                "Task %s reported %s without outputs %s; recorded as %s",
                envelope.task_id,
                envelope.task_status.value,
                list(resolution.rejection.missing),
                resolution.status.value,
                extra={"correlation_id": correlation_id},
            )
        else:
            logger.info(
                "Task %s finished with %s by %s",
                envelope.task_id,
                resolution.status.value,
                envelope.worker_name,
                extra={"correlation_id": correlation_id},
            )
        await self._event_bus.publish(outcome_event(resolution.outcome))
        return Verdict.RESOLVED

    async def _ack(self, inbound: InboundChannel, delivery: Delivery) -> None:
        try:
            await inbound.ack(delivery)
        except Exception:
            logger.exception("Failed to acknowledge delivery %s", delivery.receipt)

    async def _discard(self, verdict: Verdict, correlation_id: str | None, reason: str) -> Verdict:
        await self._event_bus.publish(
            Event(
                EventType.MESSAGE_DISCARDED,
                {"verdict": verdict.value, "correlation_id": correlation_id, "reason": reason},
            )
        )
        return verdict
