"""Redis-based message history.

Each processed message id is stored as its own key with an expiry, set
atomically with ``SET NX EX`` so concurrent consumers agree on who saw a
message first.  Requires redis-py (asyncio support).

Usage:
    history = RedisMessageHistory(redis_url="redis://localhost:6379/0")
    reconciler = Reconciler(table, history=history)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from taskwire.storage.base import MessageHistory

if TYPE_CHECKING:
    from redis.asyncio import Redis


logger = logging.getLogger(__name__)


class RedisMessageHistory(MessageHistory):
    """Redis-backed processed-message history.

    Keys: ``taskwire:history:{topic}:{message_id}``.

    Args:
        redis_url: Redis connection URL (e.g., redis://localhost:6379/0)
        redis_client: Optional pre-configured Redis client
        ttl_seconds: How long a message id is remembered.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        redis_client: Redis[Any] | None = None,
        ttl_seconds: int = 86_400,
        prefix: str = "taskwire:history",
    ) -> None:
        self._redis_url = redis_url
        self._redis: Redis[Any] | None = redis_client
        self._ttl_seconds = ttl_seconds
        self._prefix = prefix

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

    def _key(self, message_id: str, topic: str) -> str:
        return f"{self._prefix}:{topic}:{message_id}"

    async def put(self, message_id: str, topic: str) -> bool:
        client = await self._ensure_initialized()
        created = await client.set(self._key(message_id, topic), "1", nx=True, ex=self._ttl_seconds)
        if not created:
            logger.debug("Message %s on %s already processed", message_id, topic)
        return bool(created)

    async def contains(self, message_id: str, topic: str) -> bool:
        client = await self._ensure_initialized()
        return bool(await client.exists(self._key(message_id, topic)))

    async def forget(self, message_id: str, topic: str) -> None:
        client = await self._ensure_initialized()
        await client.delete(self._key(message_id, topic))

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
