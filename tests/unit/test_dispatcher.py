"""Unit tests for the dispatcher and pending results."""

from __future__ import annotations

import asyncio

import pytest

from taskwire.core.correlation import CorrelationTable
from taskwire.core.dispatcher import Dispatcher
from taskwire.core.envelope import ResponseLegBuilder
from taskwire.core.errors import DispatchError, EnvelopeValidationError, TableFullError
from taskwire.core.events import Event, EventBus, EventType
from taskwire.core.status import TaskStatus
from taskwire.transport.base import Message, OutboundChannel, Subject
from taskwire.transport.memory import InMemoryChannel


class RecordingChannel(OutboundChannel):
    """Checks that every message is registered before it leaves."""

    def __init__(self, table: CorrelationTable) -> None:
        self.table = table
        self.sent: list[Message] = []
        self.registered_at_send: list[bool] = []

    async def send(self, message: Message) -> None:
        self.registered_at_send.append(message.content.correlation_id in self.table)
        self.sent.append(message)


class BrokenChannel(OutboundChannel):
    async def send(self, message: Message) -> None:
        raise ConnectionError("broker unreachable")


class TestDispatch:
    @pytest.mark.asyncio
    async def test_registers_before_send(self) -> None:
        table = CorrelationTable()
        channel = RecordingChannel(table)
        dispatcher = Dispatcher(table, channel)

        correlation_id, pending = await dispatcher.dispatch(
            "orders", "charge-card", 7, {"amount": 120}, ["receipt_id"], timeout=30
        )

        assert channel.registered_at_send == [True]
        [message] = channel.sent
        assert message.subject == Subject.EXECUTE_TASK
        assert message.content.correlation_id == correlation_id
        assert message.content.task_status is TaskStatus.SCHEDULED
        assert message.content.required_output_parameters == ("receipt_id",)
        assert pending.correlation_id == correlation_id
        assert not pending.done()

    @pytest.mark.asyncio
    async def test_uses_id_factory(self) -> None:
        table = CorrelationTable()
        ids = iter(["first", "second"])
        dispatcher = Dispatcher(table, RecordingChannel(table), id_factory=lambda: next(ids))

        first, _ = await dispatcher.dispatch("wf", "t", 1, timeout=5)
        second, _ = await dispatcher.dispatch("wf", "t", 2, timeout=5)

        assert (first, second) == ("first", "second")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("timeout", [0, -5, None])
    async def test_timeout_is_mandatory(self, timeout: float | None) -> None:
        table = CorrelationTable()
        channel = RecordingChannel(table)
        dispatcher = Dispatcher(table, channel)

        with pytest.raises(ValueError, match="timeout"):
            await dispatcher.dispatch("wf", "t", 1, timeout=timeout)  # type: ignore[arg-type]

        assert len(table) == 0
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_invalid_input_is_not_sent(self) -> None:
        table = CorrelationTable()
        channel = RecordingChannel(table)
        dispatcher = Dispatcher(table, channel)

        with pytest.raises(EnvelopeValidationError):
            await dispatcher.dispatch("", "t", 1, timeout=5)

        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_table_full_propagates(self) -> None:
        table = CorrelationTable(max_entries=1)
        channel = RecordingChannel(table)
        dispatcher = Dispatcher(table, channel)

        await dispatcher.dispatch("wf", "t", 1, timeout=5)
        with pytest.raises(TableFullError):
            await dispatcher.dispatch("wf", "t", 2, timeout=5)
        assert len(channel.sent) == 1

    @pytest.mark.asyncio
    async def test_send_failure_fails_entry(self, event_bus: EventBus) -> None:
        table = CorrelationTable()
        failed: list[Event] = []

        async def handler(event: Event) -> None:
            failed.append(event)

        event_bus.subscribe(EventType.TASK_FAILED, handler)
        dispatcher = Dispatcher(table, BrokenChannel(), event_bus, id_factory=lambda: "c-9")

        with pytest.raises(DispatchError) as exc_info:
            await dispatcher.dispatch("wf", "t", 1, timeout=5)

        assert exc_info.value.correlation_id == "c-9"
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert "c-9" not in table
        assert failed[0].payload["correlation_id"] == "c-9"
        assert "broker unreachable" in failed[0].payload["reason"]

    @pytest.mark.asyncio
    async def test_publishes_dispatched_event(self, event_bus: EventBus) -> None:
        table = CorrelationTable()
        received: list[Event] = []

        async def handler(event: Event) -> None:
            received.append(event)

        event_bus.subscribe(EventType.TASK_DISPATCHED, handler)
        dispatcher = Dispatcher(table, RecordingChannel(table), event_bus)
        correlation_id, _ = await dispatcher.dispatch("wf", "t", 3, timeout=2.5)

        assert received[0].payload["correlation_id"] == correlation_id
        assert received[0].payload["timeout_seconds"] == 2.5


class TestPendingResult:
    @pytest.mark.asyncio
    async def test_wait_returns_outcome(self, channel: InMemoryChannel) -> None:
        table = CorrelationTable()
        dispatcher = Dispatcher(table, channel)
        correlation_id, pending = await dispatcher.dispatch("wf", "t", 1, timeout=5)

        request = (await channel.receive_message()).content  # type: ignore[union-attr]
        reply = ResponseLegBuilder.reply_to(request, "w").status(TaskStatus.COMPLETED).build()
        table.resolve(correlation_id, reply)

        outcome = await asyncio.wait_for(pending.wait(), timeout=1)
        assert outcome.status is TaskStatus.COMPLETED
        assert pending.done()
        assert pending.result() is outcome

    @pytest.mark.asyncio
    async def test_cancel(self, channel: InMemoryChannel) -> None:
        table = CorrelationTable()
        dispatcher = Dispatcher(table, channel)
        correlation_id, pending = await dispatcher.dispatch("wf", "t", 1, timeout=5)

        outcome = pending.cancel("no longer needed")

        assert outcome is not None
        assert outcome.canceled
        assert (await pending.wait()) is outcome
        assert correlation_id not in table
        assert pending.cancel() is None

    @pytest.mark.asyncio
    async def test_cancelling_waiting_task_withdraws_dispatch(
        self, channel: InMemoryChannel
    ) -> None:
        table = CorrelationTable()
        dispatcher = Dispatcher(table, channel)
        correlation_id, pending = await dispatcher.dispatch("wf", "t", 1, timeout=5)

        waiter = asyncio.create_task(pending.wait())
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert correlation_id not in table
