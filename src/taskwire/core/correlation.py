"""Correlation table — the in-flight registry behind the matching protocol.

Maps a correlation identifier to the execution record of one dispatched
task until that task reaches a terminal outcome.  Four operations remove
an entry: :meth:`CorrelationTable.resolve` (terminal reply),
:meth:`~CorrelationTable.reap` (deadline passed),
:meth:`~CorrelationTable.cancel` and :meth:`~CorrelationTable.abort`.
Whichever of them removes the entry first is the only one allowed to
signal its waiter, so every waiter fires at most once.

The table is sharded: each shard owns a plain dict and a
:class:`threading.Lock`, and a correlation identifier always hashes to
the same shard.  Unrelated executions therefore never contend on a
common lock, and the table is safe to use from worker threads as well as
from the event loop.  Critical sections never await.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from taskwire.core.envelope import Leg, MessageEnvelope
from taskwire.core.errors import (
    DuplicateCorrelationError,
    RejectedTransitionError,
    TableFullError,
    UnknownCorrelationError,
)
from taskwire.core.status import RejectedTransition, TaskStatus, transition

logger = logging.getLogger(__name__)

TASK_MISMATCH = "task mismatch"


@dataclass(frozen=True)
class Outcome:
    """Terminal result delivered to the waiter of one correlation identifier."""

    correlation_id: str
    task_id: int
    status: TaskStatus
    output_parameters: Mapping[str, Any] = field(default_factory=dict)
    worker_name: str | None = None
    reason: str | None = None
    elapsed_seconds: float = 0.0

    @property
    def successful(self) -> bool:
        return self.status.successful

    @property
    def timed_out(self) -> bool:
        return self.status is TaskStatus.TIMED_OUT

    @property
    def canceled(self) -> bool:
        return self.status is TaskStatus.CANCELED


@dataclass
class ExecutionRecord:
    """Authoritative state of one in-flight execution."""

    envelope: MessageEnvelope
    registered_at: float
    deadline: float
    waiter: concurrent.futures.Future[Outcome]
    status: TaskStatus = TaskStatus.SCHEDULED
    worker_name: str | None = None
    last_update: float | None = None
    dispatched_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def correlation_id(self) -> str:
        return self.envelope.correlation_id

    def snapshot(self) -> ExecutionRecord:
        """Shallow copy safe to hand out of the table."""
        return replace(self)


@dataclass(frozen=True)
class Resolution:
    """Accepted result of :meth:`CorrelationTable.resolve`.

    ``rejection`` is set when the requested success was converted to
    ``FAILED`` because required outputs were missing.
    """

    correlation_id: str
    status: TaskStatus
    outcome: Outcome | None = None
    rejection: RejectedTransition | None = None

    @property
    def terminal(self) -> bool:
        return self.status.terminal


class _Shard:
    __slots__ = ("entries", "lock")

    def __init__(self) -> None:
        self.entries: dict[str, ExecutionRecord] = {}
        self.lock = threading.Lock()


def _signal(record: ExecutionRecord, outcome: Outcome) -> None:
    """Complete the waiter.  Callers must have removed *record* from its shard."""
    try:
        record.waiter.set_result(outcome)
    except concurrent.futures.InvalidStateError:
        # The caller already cancelled its handle; nobody is listening.
        logger.debug("Waiter for %s was already done", outcome.correlation_id)


class CorrelationTable:
    """Concurrent map from correlation identifier to :class:`ExecutionRecord`.

    Args:
        shards: Number of independently locked partitions.
        max_entries: Upper bound on in-flight entries; ``None`` means
            unbounded.  Exceeding it raises :class:`TableFullError`.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        shards: int = 16,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if shards < 1:
            raise ValueError("shards must be >= 1")
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._shards = [_Shard() for _ in range(shards)]
        self._max_entries = max_entries
        self._capacity = threading.BoundedSemaphore(max_entries) if max_entries else None
        self._clock = clock

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return sum(len(shard.entries) for shard in self._shards)

    def __contains__(self, correlation_id: object) -> bool:
        if not isinstance(correlation_id, str):
            return False
        shard = self._shard(correlation_id)
        with shard.lock:
            return correlation_id in shard.entries

    def get(self, correlation_id: str) -> ExecutionRecord | None:
        """Return a snapshot of the record, or ``None`` if not in flight."""
        shard = self._shard(correlation_id)
        with shard.lock:
            record = shard.entries.get(correlation_id)
            return record.snapshot() if record else None

    def in_flight(self) -> list[ExecutionRecord]:
        records: list[ExecutionRecord] = []
        for shard in self._shards:
            with shard.lock:
                records.extend(r.snapshot() for r in shard.entries.values())
        return records

    @property
    def max_entries(self) -> int | None:
        return self._max_entries

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def register(
        self,
        envelope: MessageEnvelope,
        timeout: float,
        waiter: concurrent.futures.Future[Outcome] | None = None,
    ) -> str:
        """Start tracking the request leg *envelope* for *timeout* seconds.

        Raises :class:`DuplicateCorrelationError` if the identifier is
        already in flight and :class:`TableFullError` when the table is at
        capacity.  In both cases the table is left unchanged.
        """
        if envelope.leg is not Leg.REQUEST:
            raise ValueError("Only request legs can be registered")
        if timeout <= 0:
            raise ValueError("timeout must be a positive number of seconds")

        correlation_id = envelope.correlation_id
        shard = self._shard(correlation_id)
        with shard.lock:
            if correlation_id in shard.entries:
                raise DuplicateCorrelationError(correlation_id)
            if self._capacity is not None and not self._capacity.acquire(blocking=False):
                raise TableFullError(correlation_id, self._max_entries or 0)
            now = self._clock()
            shard.entries[correlation_id] = ExecutionRecord(
                envelope=envelope,
                registered_at=now,
                deadline=now + timeout,
                waiter=waiter if waiter is not None else concurrent.futures.Future(),
                status=envelope.task_status,
            )

        logger.debug(
            "Registered %s (task %s, timeout %.3fs)", correlation_id, envelope.task_id, timeout
        )
        return correlation_id

    def resolve(self, correlation_id: str, response: MessageEnvelope) -> Resolution:
        """Apply the response leg *response* to the entry for *correlation_id*.

        Raises :class:`UnknownCorrelationError` when nothing is in flight
        under that identifier and :class:`RejectedTransitionError` when the
        state machine refuses the move (the entry is left untouched).

        A successful terminal status whose required outputs are missing is
        recorded as ``FAILED``; the returned :class:`Resolution` carries
        the rejection that caused the conversion.
        """
        shard = self._shard(correlation_id)
        with shard.lock:
            record = shard.entries.get(correlation_id)
            if record is None:
                raise UnknownCorrelationError(correlation_id)

            requested = response.task_status
            if response.task_id != record.envelope.task_id:
                raise RejectedTransitionError(
                    correlation_id,
                    RejectedTransition(record.status, requested, TASK_MISMATCH),
                )

            result = transition(
                record.status,
                requested,
                required_outputs=record.envelope.required_output_parameters,
                outputs=response.output_parameters,
            )
            rejection: RejectedTransition | None = None
            if isinstance(result, RejectedTransition):
                if not result.missing:
                    raise RejectedTransitionError(correlation_id, result)
                # Missing outputs are only reported for a non-terminal current status.
                rejection = result
                result = TaskStatus.FAILED

            now = self._clock()
            record.status = result
            record.worker_name = response.worker_name
            record.last_update = now
            if not result.terminal:
                return Resolution(correlation_id, result)

            del shard.entries[correlation_id]

        self._release()
        outcome = Outcome(
            correlation_id=correlation_id,
            task_id=record.envelope.task_id,
            status=result,
            output_parameters=response.output_parameters,
            worker_name=response.worker_name,
            reason=rejection.reason if rejection else None,
            elapsed_seconds=now - record.registered_at,
        )
        _signal(record, outcome)
        return Resolution(correlation_id, result, outcome, rejection)

    def reap(self, now: float | None = None) -> Iterator[Outcome]:
        """Lazily time out every entry whose deadline is before *now*.

        Entries are claimed shard by shard as the iterator advances.  An
        entry resolved concurrently is simply no longer there to reap.
        """
        cutoff = self._clock() if now is None else now
        for shard in self._shards:
            with shard.lock:
                expired = [
                    shard.entries.pop(cid)
                    for cid, record in list(shard.entries.items())
                    if record.deadline < cutoff
                ]
            outcomes: list[Outcome] = []
            for record in expired:
                self._release()
                outcomes.append(
                    self._finish(record, TaskStatus.TIMED_OUT, "deadline exceeded", cutoff)
                )
            yield from outcomes

    def cancel(self, correlation_id: str, reason: str = "canceled") -> Outcome:
        """Withdraw a pending execution and signal its waiter with ``CANCELED``."""
        return self.abort(correlation_id, TaskStatus.CANCELED, reason)

    def abort(self, correlation_id: str, status: TaskStatus, reason: str) -> Outcome:
        """Remove the entry and complete its waiter with a terminal *status*.

        Raises :class:`UnknownCorrelationError` if the entry is gone.
        """
        if not status.terminal:
            raise ValueError("abort() requires a terminal status")
        shard = self._shard(correlation_id)
        with shard.lock:
            record = shard.entries.pop(correlation_id, None)
        if record is None:
            raise UnknownCorrelationError(correlation_id)
        self._release()
        return self._finish(record, status, reason, self._clock())

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _shard(self, correlation_id: str) -> _Shard:
        return self._shards[hash(correlation_id) % len(self._shards)]

    def _release(self) -> None:
        if self._capacity is not None:
            self._capacity.release()

    def _finish(
        self, record: ExecutionRecord, status: TaskStatus, reason: str, now: float
    ) -> Outcome:
        """Terminate a record that the caller has already removed."""
        result = transition(record.status, status)
        final = result if isinstance(result, TaskStatus) else status
        outcome = Outcome(
            correlation_id=record.correlation_id,
            task_id=record.envelope.task_id,
            status=final,
            worker_name=record.worker_name,
            reason=reason,
            elapsed_seconds=now - record.registered_at,
        )
        _signal(record, outcome)
        return outcome
