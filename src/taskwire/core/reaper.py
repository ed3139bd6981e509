"""Background reaper that times out expired correlation entries.

Runs independently of reply arrival: on every tick it drains
:meth:`CorrelationTable.reap` and announces each ``TIMED_OUT`` outcome.
A tick that fails is logged and the loop carries on.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from taskwire.core.events import EventBus, outcome_event

if TYPE_CHECKING:
    from taskwire.core.correlation import CorrelationTable, Outcome

logger = logging.getLogger(__name__)


@dataclass
class ReaperConfig:
    """Tuning knobs for the reaper."""

    interval_seconds: float = 0.5


class Reaper:
    """Periodically expires entries whose deadline has passed."""

    def __init__(
        self,
        table: CorrelationTable,
        event_bus: EventBus | None = None,
        config: ReaperConfig | None = None,
    ) -> None:
        self._table = table
        self._event_bus = event_bus or EventBus()
        self._config = config or ReaperConfig()
        if self._config.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._task: asyncio.Task[None] | None = None
        self.reaped_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self, now: float | None = None) -> list[Outcome]:
        """Reap once and publish a timeout event per expired entry."""
        outcomes = list(self._table.reap(now))
        for outcome in outcomes:
            logger.warning(
                "Task %s timed out after %.3fs",
                outcome.task_id,
                outcome.elapsed_seconds,
                extra={"correlation_id": outcome.correlation_id},
            )
            await self._event_bus.publish(outcome_event(outcome))
        self.reaped_count += len(outcomes)
        return outcomes

    def start(self) -> None:
        """Start the background loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="taskwire-reaper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.interval_seconds)
            try:
                await self.tick()
            except Exception:
                logger.exception("Reaper tick failed")
