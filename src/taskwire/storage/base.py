"""Abstract message-history interface.

Inbound channels deliver at least once, so the same response leg can
arrive several times.  A :class:`MessageHistory` remembers which message
ids have already been processed so that redeliveries are dropped before
they reach the correlation table.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class MessageHistory(ABC):
    """Abstract repository of processed message ids."""

    @abstractmethod
    async def put(self, message_id: str, topic: str) -> bool:
        """Record *message_id*; return ``False`` if it was already recorded."""
        ...

    @abstractmethod
    async def contains(self, message_id: str, topic: str) -> bool: ...

    @abstractmethod
    async def forget(self, message_id: str, topic: str) -> None:
        """Drop *message_id* so that a redelivery is processed again."""
        ...

    async def close(self) -> None:  # noqa: B027
        """Release resources held by the store."""
