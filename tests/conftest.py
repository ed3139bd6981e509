"""Shared test fixtures."""

from __future__ import annotations

import pytest

from taskwire.core.correlation import CorrelationTable
from taskwire.core.envelope import MessageEnvelope, RequestLegBuilder
from taskwire.core.events import EventBus
from taskwire.storage.memory import InMemoryMessageHistory
from taskwire.transport.memory import InMemoryChannel


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def table(clock: FakeClock) -> CorrelationTable:
    return CorrelationTable(shards=4, clock=clock)


@pytest.fixture()
def channel() -> InMemoryChannel:
    return InMemoryChannel()


@pytest.fixture()
def history() -> InMemoryMessageHistory:
    return InMemoryMessageHistory()


def _make_request(
    correlation_id: str = "c1",
    task_id: int = 1,
    required: tuple[str, ...] = (),
    **inputs: object,
) -> MessageEnvelope:
    return (
        RequestLegBuilder("orders", "charge-card", task_id, correlation_id=correlation_id)
        .inputs(inputs)
        .require(*required)
        .build()
    )


@pytest.fixture()
def make_request():
    return _make_request

