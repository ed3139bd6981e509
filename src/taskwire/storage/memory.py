"""In-memory implementation of :class:`MessageHistory`.

Suitable for development, testing, and single-process deployments.
Bounded: once ``max_size`` ids are stored the oldest are forgotten.
"""

from __future__ import annotations

import threading
from collections import OrderedDict

from taskwire.storage.base import MessageHistory


class InMemoryMessageHistory(MessageHistory):
    """LRU-bounded set of ``(topic, message_id)`` pairs."""

    def __init__(self, max_size: int = 10_000) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._max_size = max_size
        self._seen: OrderedDict[tuple[str, str], None] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._seen)

    async def put(self, message_id: str, topic: str) -> bool:
        key = (topic, message_id)
        with self._lock:
            if key in self._seen:
                self._seen.move_to_end(key)
                return False
            self._seen[key] = None
            if len(self._seen) > self._max_size:
                self._seen.popitem(last=False)
            return True

    async def contains(self, message_id: str, topic: str) -> bool:
        with self._lock:
            return (topic, message_id) in self._seen

    async def forget(self, message_id: str, topic: str) -> None:
        with self._lock:
            self._seen.pop((topic, message_id), None)
