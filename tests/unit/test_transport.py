"""Unit tests for transport messages and channels."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from taskwire.core.correlation import CorrelationTable
from taskwire.core.envelope import MessageEnvelope, RequestLegBuilder, ResponseLegBuilder
from taskwire.core.errors import EnvelopeValidationError
from taskwire.core.reconciler import Reconciler, Verdict
from taskwire.core.status import TaskStatus
from taskwire.transport.base import Delivery, Message, Subject
from taskwire.transport.memory import InMemoryChannel
from taskwire.transport.redis import RedisStreamChannel


def _request():
    return RequestLegBuilder("orders", "charge", 3, correlation_id="c1").build()


class TestMessage:
    def test_wire_shape(self) -> None:
        message = Message.request(_request())
        data = json.loads(message.to_json())

        assert set(data) == {"messageId", "subject", "content"}
        assert data["subject"] == Subject.EXECUTE_TASK
        assert data["content"]["correlationId"] == "c1"
        assert message.key == "orders:c1"

    def test_from_json_restores_message(self) -> None:
        original = Message.request(_request())
        parsed = Message.from_json(original.to_json())
        assert parsed == original

    def test_subject_inferred_when_absent(self) -> None:
        reply = ResponseLegBuilder.reply_to(_request(), "w").status(TaskStatus.FAILED).build()
        data = json.loads(Message.response(reply).to_json())
        del data["subject"]
        del data["messageId"]

        parsed = Message.from_json(json.dumps(data))

        assert parsed.subject == Subject.FINISH_TASK
        assert parsed.message_id

    @pytest.mark.parametrize("raw", ["", "[]", '{"content": 5}', '{"subject": "X"}'])
    def test_from_json_rejects(self, raw: str) -> None:
        with pytest.raises(EnvelopeValidationError):
            Message.from_json(raw)


class TestInMemoryChannel:
    @pytest.mark.asyncio
    async def test_fifo_and_close(self) -> None:
        channel = InMemoryChannel()
        await channel.send(Message.request(_request()))
        await channel.send_raw("raw")
        await channel.close()

        received = [item async for item in channel]

        assert len(received) == 2
        assert received[1] == "raw"
        assert channel.sent_count == 2
        assert await channel.receive() is None

    @pytest.mark.asyncio
    async def test_send_after_close(self) -> None:
        channel = InMemoryChannel()
        await channel.close()
        with pytest.raises(RuntimeError):
            await channel.send_raw("x")

    @pytest.mark.asyncio
    async def test_close_wakes_blocked_reader(self) -> None:
        channel = InMemoryChannel()
        reader = asyncio.create_task(channel.receive())
        await asyncio.sleep(0)
        await channel.close()
        assert await asyncio.wait_for(reader, timeout=1) is None


class FakeStreamRedis:
    """The slice of redis.asyncio.Redis used by the stream channel."""

    def __init__(self) -> None:
        self.streams: dict[str, list[tuple[str, dict[str, str]]]] = {}
        self.groups: set[tuple[str, str]] = set()
        self.acked: list[str] = []
        self.delivered = 0
        self.closed = False
        self.owner: RedisStreamChannel | None = None
        self.reads = 0
        self.fail_reads = 0

    async def xgroup_create(self, stream: str, group: str, id: str, mkstream: bool) -> None:
        if (stream, group) in self.groups:
            raise RuntimeError("BUSYGROUP Consumer Group name already exists")
        self.groups.add((stream, group))
        self.streams.setdefault(stream, [])

    async def xadd(self, stream: str, fields: dict[str, str], **kwargs: Any) -> str:
        entries = self.streams.setdefault(stream, [])
        entry_id = f"{len(entries) + 1}-0"
        entries.append((entry_id, fields))
        return entry_id

    async def xreadgroup(self, group: str, consumer: str, streams: dict[str, str], **kw: Any):
        self.reads += 1
        if self.fail_reads:
            self.fail_reads -= 1
            raise ConnectionError("connection reset by peer")
        [stream] = streams
        pending = self.streams.get(stream, [])[self.delivered :]
        if not pending:
            # Nothing left: let the reader loop terminate.
            assert self.owner is not None
            await self.owner.close()
            return []
        self.delivered += len(pending)
        return [(stream, pending)]

    async def xack(self, stream: str, group: str, entry_id: str) -> int:
        self.acked.append(entry_id)
        return 1

    async def aclose(self) -> None:
        self.closed = True


class TestRedisStreamChannel:
    @pytest.mark.asyncio
    async def test_send_then_consume(self) -> None:
        client = FakeStreamRedis()
        writer = RedisStreamChannel("replies", redis_client=client)  # type: ignore[arg-type]
        reader = RedisStreamChannel("replies", redis_client=client, group="engine")  # type: ignore[arg-type]
        client.owner = reader

        message = Message.request(_request())
        await writer.send(message)
        client.streams["replies"].append(("2-0", {"key": "x"}))

        received = [raw async for raw in reader]

        assert received == [message.to_json()]
        assert client.acked == ["1-0", "2-0"]
        assert client.streams["replies"][0][1]["key"] == "orders:c1"
        assert client.closed

    @pytest.mark.asyncio
    async def test_existing_group_is_reused(self) -> None:
        client = FakeStreamRedis()
        client.groups.add(("replies", "taskwire"))
        reader = RedisStreamChannel("replies", redis_client=client)  # type: ignore[arg-type]
        client.owner = reader

        assert [raw async for raw in reader] == []

    @pytest.mark.asyncio
    async def test_deliveries_are_not_acked_until_asked(self) -> None:
        client = FakeStreamRedis()
        reader = RedisStreamChannel("replies", redis_client=client)  # type: ignore[arg-type]
        client.owner = reader
        await client.xadd("replies", {"data": "one"})
        await client.xadd("replies", {"data": "two"})

        received = [delivery async for delivery in reader.deliveries()]

        assert received == [Delivery("one", receipt="1-0"), Delivery("two", receipt="2-0")]
        assert client.acked == []

        await reader.ack(received[1])
        await reader.ack(Delivery("untracked"))
        assert client.acked == ["2-0"]

    @pytest.mark.asyncio
    async def test_read_error_is_retried(self) -> None:
        client = FakeStreamRedis()
        client.fail_reads = 2
        reader = RedisStreamChannel("replies", redis_client=client, retry_delay=0)  # type: ignore[arg-type]
        client.owner = reader
        await client.xadd("replies", {"data": "payload"})

        received = [raw async for raw in reader]

        assert received == ["payload"]
        assert client.reads == 4
        assert client.acked == ["1-0"]


class TestRedisReconciliation:
    @pytest.mark.asyncio
    async def test_reply_survives_read_error_and_is_acked_after_resolve(
        self, clock, make_request
    ) -> None:
        client = FakeStreamRedis()
        client.fail_reads = 1
        replies = RedisStreamChannel("replies", redis_client=client, retry_delay=0)  # type: ignore[arg-type]
        client.owner = replies
        acked_during_resolve: list[list[str]] = []

        class RecordingTable(CorrelationTable):
            def resolve(self, correlation_id: str, response: MessageEnvelope):
                acked_during_resolve.append(list(client.acked))
                return super().resolve(correlation_id, response)

        table = RecordingTable(clock=clock)
        request = make_request("c1")
        table.register(request, timeout=5)
        reply = ResponseLegBuilder.reply_to(request, "w").status(TaskStatus.COMPLETED).build()
        await replies.send(Message.response(reply))

        reconciler = Reconciler(table)
        await asyncio.wait_for(reconciler.run(replies), timeout=2)

        assert "c1" not in table
        assert reconciler.stats[Verdict.RESOLVED] == 1
        assert acked_during_resolve == [[]]
        assert client.acked == ["1-0"]
