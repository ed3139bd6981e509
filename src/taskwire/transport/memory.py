"""In-process channel backed by an :class:`asyncio.Queue`.

Suitable for development, testing, and single-process deployments where
workers live in the same event loop.  Messages are queued in their
serialised form so that the wire codec is exercised end to end.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from taskwire.transport.base import InboundChannel, Message, OutboundChannel

_CLOSED = object()


class InMemoryChannel(OutboundChannel, InboundChannel):
    """Loopback channel: whatever is sent can be received or iterated."""

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize)
        self._closed = False
        self.sent_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def send(self, message: Message) -> None:
        await self.send_raw(message.to_json())

    async def send_raw(self, payload: str | bytes) -> None:
        """Enqueue an already-serialised payload (used to inject foreign traffic)."""
        if self._closed:
            raise RuntimeError("Channel is closed")
        await self._queue.put(payload)
        self.sent_count += 1

    async def receive(self) -> str | bytes | None:
        """Return the next payload, or ``None`` once the channel is closed and drained."""
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any other consumer.
            self._queue.put_nowait(_CLOSED)
            return None
        return item  # type: ignore[return-value]

    async def receive_message(self) -> Message | None:
        raw = await self.receive()
        return Message.from_json(raw) if raw is not None else None

    async def __aiter__(self) -> AsyncIterator[str | bytes]:
        while True:
            item = await self.receive()
            if item is None:
                return
            yield item

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)
