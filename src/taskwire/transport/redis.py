"""Redis Streams channel.

Request legs are appended to one stream with ``XADD``; response legs are
read from another through a consumer group with ``XREADGROUP`` and
acknowledged with ``XACK`` once the consumer has processed them.  Entries
that are never acknowledged stay in the group's pending list.  A failed
read is logged and retried until the channel is closed.  Requires redis-py
(asyncio support).

Usage:
    requests = RedisStreamChannel("taskwire:requests")
    replies = RedisStreamChannel("taskwire:replies", group="engine", consumer="engine-1")
    engine = CorrelationEngine(outbound=requests, inbound=replies)
"""

from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from taskwire.transport.base import Delivery, InboundChannel, Message, OutboundChannel

if TYPE_CHECKING:
    from redis.asyncio import Redis


logger = logging.getLogger(__name__)

_PAYLOAD_FIELD = "data"


class RedisStreamChannel(OutboundChannel, InboundChannel):
    """Redis Streams-backed channel.

    Args:
        stream: Stream key to write to / read from.
        redis_url: Redis connection URL (e.g., redis://localhost:6379/0)
        redis_client: Optional pre-configured Redis client
        group: Consumer group used when reading.
        consumer: Consumer name inside the group; defaults to the host name.
        block_ms: How long one ``XREADGROUP`` call blocks.
        max_len: Approximate cap on stream length when writing.
        retry_delay: Seconds to wait after a failed read before retrying.
    """

    def __init__(
        self,
        stream: str,
        redis_url: str = "redis://localhost:6379/0",
        redis_client: Redis[Any] | None = None,
        group: str = "taskwire",
        consumer: str | None = None,
        block_ms: int = 1_000,
        max_len: int | None = 100_000,
        retry_delay: float = 1.0,
    ) -> None:
        self._stream = stream
        self._redis_url = redis_url
        self._redis: Redis[Any] | None = redis_client
        self._group = group
        self._consumer = consumer or socket.gethostname()
        self._block_ms = block_ms
        self._max_len = max_len
        self._retry_delay = retry_delay
        self._group_ready = False
        self._closed = False

    async def _ensure_initialized(self) -> Redis[Any]:
        """Lazy initialization of Redis connection."""
        if self._redis is None:
            try:
                from redis.asyncio import from_url
            except ImportError as exc:
                raise RuntimeError(
                    "redis package not installed. Install with: pip install 'taskwire[redis]'"
                ) from exc

            self._redis = from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def _ensure_group(self, client: Redis[Any]) -> None:
        if self._group_ready:
            return
        try:
            await client.xgroup_create(self._stream, self._group, id="0", mkstream=True)
        except Exception as exc:
            # BUSYGROUP means another consumer created it first.
            if "BUSYGROUP" not in str(exc):
                raise
        self._group_ready = True

    async def send(self, message: Message) -> None:
        client = await self._ensure_initialized()
        fields = {_PAYLOAD_FIELD: message.to_json(), "key": message.key}
        if self._max_len:
            await client.xadd(self._stream, fields, maxlen=self._max_len, approximate=True)
        else:
            await client.xadd(self._stream, fields)
        logger.debug("XADD %s message %s", self._stream, message.message_id)

    async def deliveries(self) -> AsyncIterator[Delivery]:
        client = await self._ensure_initialized()
        await self._ensure_group(client)

        while not self._closed:
            try:
                response = await client.xreadgroup(
                    self._group,
                    self._consumer,
                    {self._stream: ">"},
                    count=32,
                    block=self._block_ms,
                )
            except Exception as exc:
                if self._closed:
                    break
                logger.error("XREADGROUP on %s failed; retrying", self._stream, exc_info=exc)
                await asyncio.sleep(self._retry_delay)
                continue
            if not response:
                continue
            for _stream, entries in response:
                for entry_id, fields in entries:
                    payload = fields.get(_PAYLOAD_FIELD)
                    if payload is None:
                        logger.warning("Stream entry %s has no payload field", entry_id)
                        await client.xack(self._stream, self._group, entry_id)
                        continue
                    yield Delivery(payload, receipt=entry_id)

    async def __aiter__(self) -> AsyncIterator[str | bytes]:
        # Plain iteration acks each entry when the next one is requested.
        async for delivery in self.deliveries():
            yield delivery.payload
            await self.ack(delivery)

    async def ack(self, delivery: Delivery) -> None:
        if delivery.receipt is None:
            return
        client = await self._ensure_initialized()
        await client.xack(self._stream, self._group, delivery.receipt)

    async def close(self) -> None:
        self._closed = True
        if self._redis is not None:
            await self._redis.aclose()
