"""Task lifecycle states and the transition function that guards them.

A task starts ``SCHEDULED``, may report ``IN_PROGRESS`` any number of
times, and ends in exactly one terminal state.  Terminal states are
absorbing: a late or duplicated reply can never overwrite an outcome
that has already been recorded.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

ALREADY_TERMINAL = "already terminal"
MISSING_REQUIRED_OUTPUTS = "missing required outputs"
ILLEGAL_TRANSITION = "illegal transition"


class TaskStatus(enum.Enum):
    """Lifecycle states of a dispatched task."""

    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    COMPLETED_WITH_ERRORS = "COMPLETED_WITH_ERRORS"
    FAILED = "FAILED"
    # No retries even if the caller has a retry policy.
    FAILED_WITH_TERMINAL_ERROR = "FAILED_WITH_TERMINAL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CANCELED = "CANCELED"

    @property
    def terminal(self) -> bool:
        return self not in (TaskStatus.SCHEDULED, TaskStatus.IN_PROGRESS)

    @property
    def successful(self) -> bool:
        return self in (
            TaskStatus.SCHEDULED,
            TaskStatus.IN_PROGRESS,
            TaskStatus.COMPLETED,
            TaskStatus.COMPLETED_WITH_ERRORS,
        )


TERMINAL_STATES = frozenset(s for s in TaskStatus if s.terminal)


@dataclass(frozen=True)
class RejectedTransition:
    """Why a requested transition was refused."""

    current: TaskStatus
    requested: TaskStatus
    reason: str
    missing: tuple[str, ...] = field(default_factory=tuple)


def missing_outputs(
    required_outputs: Iterable[str], outputs: Mapping[str, Any] | None
) -> tuple[str, ...]:
    """Return the required names that are not keys of *outputs*, in order."""
    present = outputs or {}
    return tuple(name for name in required_outputs if name not in present)


def transition(
    current: TaskStatus,
    requested: TaskStatus,
    *,
    required_outputs: Iterable[str] = (),
    outputs: Mapping[str, Any] | None = None,
) -> TaskStatus | RejectedTransition:
    """Apply *requested* to *current*.

    Returns the new status, or a :class:`RejectedTransition` describing
    why the move is not allowed.  Successful terminal states additionally
    require every name in *required_outputs* to be present in *outputs*.
    """
    if current.terminal:
        return RejectedTransition(current, requested, ALREADY_TERMINAL)

    if requested is TaskStatus.SCHEDULED:
        return RejectedTransition(current, requested, ILLEGAL_TRANSITION)

    if requested.terminal and requested.successful:
        missing = missing_outputs(required_outputs, outputs)
        if missing:
            return RejectedTransition(current, requested, MISSING_REQUIRED_OUTPUTS, missing)

    return requested
