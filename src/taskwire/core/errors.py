"""Exception hierarchy shared by the correlation components."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskwire.core.status import RejectedTransition


class TaskwireError(Exception):
    """Base class for every error raised by taskwire."""


class EnvelopeValidationError(TaskwireError, ValueError):
    """Raised when a message envelope violates its leg's invariants."""


class CorrelationError(TaskwireError):
    """Base class for correlation-table failures."""

    def __init__(self, correlation_id: str, message: str) -> None:
        super().__init__(message)
        self.correlation_id = correlation_id


class DuplicateCorrelationError(CorrelationError):
    """Raised by ``register`` when the identifier is already in flight."""

    def __init__(self, correlation_id: str) -> None:
        super().__init__(correlation_id, f"Correlation '{correlation_id}' is already registered")


class UnknownCorrelationError(CorrelationError):
    """The identifier is not in flight: reaped, resolved, or never registered."""

    def __init__(self, correlation_id: str) -> None:
        super().__init__(correlation_id, f"Correlation '{correlation_id}' is not in flight")


class RejectedTransitionError(CorrelationError):
    """The state machine refused the transition; the entry is unchanged."""

    def __init__(self, correlation_id: str, rejection: RejectedTransition) -> None:
        super().__init__(
            correlation_id,
            f"Correlation '{correlation_id}': {rejection.current.value} -> "
            f"{rejection.requested.value} rejected ({rejection.reason})",
        )
        self.rejection = rejection


class TableFullError(CorrelationError):
    """No room for another in-flight entry."""

    def __init__(self, correlation_id: str, capacity: int) -> None:
        super().__init__(
            correlation_id,
            f"Correlation table is full ({capacity} entries); cannot register '{correlation_id}'",
        )
        self.capacity = capacity


class DispatchError(TaskwireError):
    """Raised when a request leg could not be emitted to the outbound channel."""

    def __init__(self, correlation_id: str, message: str) -> None:
        super().__init__(message)
        self.correlation_id = correlation_id
