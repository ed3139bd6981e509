"""Dispatcher — emits request legs and hands back a pending result.

For every call the dispatcher builds a ``SCHEDULED`` request leg,
registers it in the :class:`CorrelationTable` *before* sending it (so a
fast reply can never overtake its own registration), emits exactly one
outbound message and returns a :class:`PendingResult`.  No retries are
performed here.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import logging
from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any

from taskwire.core.correlation import CorrelationTable, Outcome
from taskwire.core.envelope import MessageEnvelope, RequestLegBuilder, new_correlation_id
from taskwire.core.errors import DispatchError, UnknownCorrelationError
from taskwire.core.events import Event, EventBus, EventType, outcome_event
from taskwire.core.status import TaskStatus
from taskwire.transport.base import Message

if TYPE_CHECKING:
    from taskwire.transport.base import OutboundChannel

logger = logging.getLogger(__name__)


class PendingResult:
    """Handle on a dispatched task that completes exactly once.

    Event-loop callers ``await pending.wait()``; threads may block on
    :meth:`result`.  The outcome is a normal value for every terminal
    status, including ``TIMED_OUT`` and ``CANCELED``.
    """

    def __init__(
        self,
        correlation_id: str,
        waiter: concurrent.futures.Future[Outcome],
        table: CorrelationTable,
    ) -> None:
        self._correlation_id = correlation_id
        self._waiter = waiter
        self._table = table
        waiter.add_done_callback(self._on_done)

    @property
    def correlation_id(self) -> str:
        return self._correlation_id

    def done(self) -> bool:
        return self._waiter.done()

    async def wait(self) -> Outcome:
        """Suspend until the task is resolved, timed out or canceled.

        Cancelling the awaiting asyncio task withdraws the dispatch.
        """
        return await asyncio.wrap_future(self._waiter)

    def result(self, timeout: float | None = None) -> Outcome:
        """Block the calling thread until the outcome is known."""
        return self._waiter.result(timeout)

    def cancel(self, reason: str = "canceled") -> Outcome | None:
        """Withdraw the dispatch.

        Returns the ``CANCELED`` outcome, or ``None`` if the task had
        already reached another terminal outcome.
        """
        try:
            return self._table.cancel(self._correlation_id, reason)
        except UnknownCorrelationError:
            return None

    def _on_done(self, waiter: concurrent.futures.Future[Outcome]) -> None:
        if waiter.cancelled():
            logger.info("Waiter for %s cancelled; withdrawing dispatch", self._correlation_id)
            with contextlib.suppress(UnknownCorrelationError):
                self._table.cancel(self._correlation_id, "waiter cancelled")


class Dispatcher:
    """Builds, registers and emits request legs."""

    def __init__(
        self,
        table: CorrelationTable,
        outbound: OutboundChannel,
        event_bus: EventBus | None = None,
        id_factory: Callable[[], str] = new_correlation_id,
    ) -> None:
        self._table = table
        self._outbound = outbound
        self._event_bus = event_bus or EventBus()
        self._id_factory = id_factory

    @property
    def table(self) -> CorrelationTable:
        return self._table

    async def dispatch(
        self,
        workflow_definition_name: str,
        task_definition_name: str,
        task_id: int,
        input_parameters: Mapping[str, Any] | None = None,
        required_output_parameters: Iterable[str] = (),
        *,
        timeout: float,
    ) -> tuple[str, PendingResult]:
        """Send one task to the workers.

        *timeout* (seconds) is mandatory; there is no engine-wide default.
        Raises :class:`EnvelopeValidationError` for malformed input,
        :class:`DuplicateCorrelationError` / :class:`TableFullError` if
        registration fails and :class:`DispatchError` if the outbound
        channel refuses the message.
        """
        envelope = (
            RequestLegBuilder(
                workflow_definition_name,
                task_definition_name,
                task_id,
                correlation_id=self._id_factory(),
            )
            .inputs(input_parameters)
            .require(*required_output_parameters)
            .build()
        )
        pending = await self.submit(envelope, timeout=timeout)
        return pending.correlation_id, pending

    async def submit(self, envelope: MessageEnvelope, *, timeout: float) -> PendingResult:
        """Register and emit a request leg that was built by the caller."""
        if timeout is None or timeout <= 0:
            raise ValueError("timeout must be a positive number of seconds")

        waiter: concurrent.futures.Future[Outcome] = concurrent.futures.Future()
        correlation_id = self._table.register(envelope, timeout, waiter)
        pending = PendingResult(correlation_id, waiter, self._table)

        try:
            await self._outbound.send(Message.request(envelope))
        except Exception as exc:
            logger.error(
                "Failed to emit request leg %s: %s",
                correlation_id,
                exc,
                extra={"correlation_id": correlation_id},
            )
            with contextlib.suppress(UnknownCorrelationError):
                outcome = self._table.abort(
                    correlation_id, TaskStatus.FAILED, f"dispatch failed: {exc}"
                )
                await self._event_bus.publish(outcome_event(outcome))
            raise DispatchError(correlation_id, f"Could not dispatch {correlation_id}") from exc

        logger.info(
            "Dispatched %s/%s task %s",
            envelope.workflow_definition_name,
            envelope.task_definition_name,
            envelope.task_id,
            extra={"correlation_id": correlation_id},
        )
        await self._event_bus.publish(
            Event(
                EventType.TASK_DISPATCHED,
                {
                    "correlation_id": correlation_id,
                    "task_id": envelope.task_id,
                    "workflow": envelope.workflow_definition_name,
                    "task_definition": envelope.task_definition_name,
                    "timeout_seconds": timeout,
                },
            )
        )
        return pending
