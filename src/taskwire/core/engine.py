"""Correlation engine — the central wiring point.

Ties together the correlation table, dispatcher, reconciler, reaper and
event bus, and owns their background tasks:

* the **reaper** loop expiring overdue entries;
* the **consumer** loop feeding the inbound channel to the reconciler.

Usage::

    channel = InMemoryChannel()
    replies = InMemoryChannel()
    async with CorrelationEngine(outbound=channel, inbound=replies) as engine:
        correlation_id, pending = await engine.dispatch(
            "orders", "charge-card", 7, {"amount": 120}, ["receipt_id"], timeout=30
        )
        outcome = await pending.wait()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from taskwire.core.correlation import CorrelationTable, Outcome
from taskwire.core.dispatcher import Dispatcher, PendingResult
from taskwire.core.envelope import new_correlation_id
from taskwire.core.errors import UnknownCorrelationError
from taskwire.core.events import EventBus, outcome_event
from taskwire.core.reaper import Reaper, ReaperConfig
from taskwire.core.reconciler import Reconciler

if TYPE_CHECKING:
    from taskwire.storage.base import MessageHistory
    from taskwire.transport.base import InboundChannel, OutboundChannel

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """Sizing of the engine's components."""

    shards: int = 16
    max_in_flight: int | None = None
    max_concurrency: int = 32
    shutdown_grace_seconds: float = 5.0
    cancel_in_flight_on_stop: bool = True
    reaper: ReaperConfig = field(default_factory=ReaperConfig)


class CorrelationEngine:
    """Owns one correlation table and the components that operate on it."""

    def __init__(
        self,
        outbound: OutboundChannel,
        inbound: InboundChannel | None = None,
        config: EngineConfig | None = None,
        event_bus: EventBus | None = None,
        history: MessageHistory | None = None,
        id_factory: Callable[[], str] = new_correlation_id,
    ) -> None:
        self._config = config or EngineConfig()
        self._event_bus = event_bus or EventBus()
        self._outbound = outbound
        self._inbound = inbound
        self._history = history
        self._table = CorrelationTable(
            shards=self._config.shards, max_entries=self._config.max_in_flight
        )
        self._dispatcher = Dispatcher(self._table, outbound, self._event_bus, id_factory)
        self._reconciler = Reconciler(
            self._table,
            self._event_bus,
            history=history,
            max_concurrency=self._config.max_concurrency,
        )
        self._reaper = Reaper(self._table, self._event_bus, self._config.reaper)
        self._consumer: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def table(self) -> CorrelationTable:
        return self._table

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    @property
    def reaper(self) -> Reaper:
        return self._reaper

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def running(self) -> bool:
        if not self._reaper.running:
            return False
        return self._consumer is None or not self._consumer.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the reaper and, if an inbound channel is set, the consumer."""
        self._reaper.start()
        if self._inbound is not None and self._consumer is None:
            self._consumer = asyncio.create_task(
                self._reconciler.run(self._inbound), name="taskwire-reconciler"
            )
        logger.info("Correlation engine started")

    async def stop(self) -> None:
        """Stop background loops and settle whatever is still in flight."""
        await self._reaper.stop()

        if self._consumer is not None:
            if self._inbound is not None:
                await self._inbound.close()
            try:
                await asyncio.wait_for(self._consumer, self._config.shutdown_grace_seconds)
            except TimeoutError:
                logger.warning("Reconciler did not drain in time; cancelling")
                self._consumer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._consumer
            except Exception:
                logger.exception("Reconciler stopped with an error")
            self._consumer = None

        if self._config.cancel_in_flight_on_stop:
            for record in self._table.in_flight():
                with contextlib.suppress(UnknownCorrelationError):
                    await self.cancel(record.correlation_id, "engine stopped")

        await self._outbound.close()
        if self._history is not None:
            await self._history.close()
        logger.info("Correlation engine stopped")

    async def __aenter__(self) -> CorrelationEngine:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

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
        return await self._dispatcher.dispatch(
            workflow_definition_name,
            task_definition_name,
            task_id,
            input_parameters,
            required_output_parameters,
            timeout=timeout,
        )

    async def cancel(self, correlation_id: str, reason: str = "canceled") -> Outcome:
        """Cancel one pending dispatch.

        Raises :class:`UnknownCorrelationError` if it is no longer in flight.
        """
        outcome = self._table.cancel(correlation_id, reason)
        logger.info(
            "Canceled task %s: %s",
            outcome.task_id,
            reason,
            extra={"correlation_id": correlation_id},
        )
        await self._event_bus.publish(outcome_event(outcome))
        return outcome
