"""Abstract channel interfaces (ports-and-adapters / hexagonal pattern).

The correlation core never touches a broker directly.  It emits request
legs through an :class:`OutboundChannel` and consumes response legs from
an :class:`InboundChannel`; any substrate (in-process queue, Redis
Streams, ...) plugs in behind these two ports.

Delivery is assumed at-least-once and unordered: inbound channels may
redeliver or reorder messages.
"""

from __future__ import annotations

import json
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from taskwire.core.envelope import MessageEnvelope, decode, to_document
from taskwire.core.errors import EnvelopeValidationError


class Subject:
    """Message subjects used on the task topics."""

    EXECUTE_TASK = "EXECUTE_TASK"
    FINISH_TASK = "FINISH_TASK"


@dataclass(frozen=True)
class Message:
    """Transport wrapper around one envelope.

    ``message_id`` identifies this particular delivery attempt and is what
    redelivery detection keys on; ``content.correlation_id`` identifies the
    logical task execution.
    """

    subject: str
    content: MessageEnvelope
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def key(self) -> str:
        return self.content.routing_key

    def to_json(self) -> str:
        return json.dumps(
            {
                "messageId": self.message_id,
                "subject": self.subject,
                "content": to_document(self.content),
            }
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> Message:
        """Parse a wire document.

        Raises :class:`EnvelopeValidationError` on malformed input.
        """
        try:
            data: Any = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise EnvelopeValidationError(f"Message is not valid JSON: {exc}") from exc
        if not isinstance(data, dict) or "content" not in data:
            raise EnvelopeValidationError("Message must be an object with a 'content' field")
        content = data["content"]
        if not isinstance(content, dict):
            raise EnvelopeValidationError("Message content must be an object")
        envelope = decode(content)
        subject = data.get("subject") or (
            Subject.FINISH_TASK if envelope.worker_name else Subject.EXECUTE_TASK
        )
        message_id = data.get("messageId") or uuid.uuid4().hex
        return cls(subject=str(subject), content=envelope, message_id=str(message_id))

    @classmethod
    def request(cls, envelope: MessageEnvelope) -> Message:
        return cls(subject=Subject.EXECUTE_TASK, content=envelope)

    @classmethod
    def response(cls, envelope: MessageEnvelope) -> Message:
        return cls(subject=Subject.FINISH_TASK, content=envelope)


class OutboundChannel(ABC):
    """Where request legs go."""

    @abstractmethod
    async def send(self, message: Message) -> None: ...

    async def close(self) -> None:  # noqa: B027
        """Release resources held by the channel."""


@dataclass(frozen=True)
class Delivery:
    """One inbound payload plus whatever the channel needs to acknowledge it."""

    payload: str | bytes
    receipt: str | None = None


class InboundChannel(ABC):
    """Where response legs come from.

    Iterating yields raw wire payloads so that one malformed message can
    be rejected without breaking the stream.  Iteration ends when the
    channel is closed.

    Channels that support acknowledgement also expose :meth:`deliveries`
    and :meth:`ack`: a delivery that is never acked stays pending in the
    broker and can be redelivered.
    """

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[str | bytes]: ...

    async def deliveries(self) -> AsyncIterator[Delivery]:
        """Yield payloads without acknowledging them."""
        async for payload in self:
            yield Delivery(payload)

    async def ack(self, delivery: Delivery) -> None:  # noqa: B027
        """Acknowledge *delivery* once it has been processed."""

    async def close(self) -> None:  # noqa: B027
        """Stop delivering messages."""
