"""The message envelope exchanged between the engine and its workers.

One envelope travels per leg.  The *request leg* (engine → worker) carries
the task inputs and the names of the outputs the engine expects back; the
*response leg* (worker → engine) carries the worker's identity, the
reported status and the produced outputs.  Both legs share the same
``correlation_id``.

Envelopes are immutable.  Parameter values are restricted to JSON values
(validated with :data:`pydantic.JsonValue`) and are exposed as read-only
views once the envelope is built.  The role-specific builders
(:class:`RequestLegBuilder`, :class:`ResponseLegBuilder`) are the intended
construction paths; direct construction goes through the same checks.

Wire format keys follow the engine's existing topics::

    {"correlationId": "...", "workflowDefName": "...", "taskId": 7,
     "taskDefName": "...", "inputParameters": {...},
     "requiredOutputParameters": [...], "outputParameters": {...},
     "taskStatus": "COMPLETED", "workerName": "..."}
"""

from __future__ import annotations

import enum
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, JsonValue, TypeAdapter, ValidationError

from taskwire.core.errors import EnvelopeValidationError
from taskwire.core.status import TaskStatus

_PARAMETERS = TypeAdapter(dict[str, JsonValue])


class Leg(enum.Enum):
    REQUEST = "request"
    RESPONSE = "response"


def new_correlation_id() -> str:
    """Return a fresh, opaque correlation identifier."""
    return uuid.uuid4().hex


def freeze(value: Any) -> Any:
    """Recursively turn mappings into read-only proxies and lists into tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of :func:`freeze`: plain dicts and lists, safe to mutate or serialise."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(v) for v in value]
    return value


def _validate_parameters(name: str, params: Mapping[str, Any] | None) -> Mapping[str, Any]:
    if params is None:
        return MappingProxyType({})
    if not isinstance(params, Mapping):
        raise EnvelopeValidationError(f"{name} must be a mapping, got {type(params).__name__}")
    try:
        validated = _PARAMETERS.validate_python(thaw(params))
    except ValidationError as exc:
        raise EnvelopeValidationError(f"{name} must hold JSON values only: {exc}") from exc
    return freeze(validated)


def _require_text(name: str, value: Any) -> None:
    if not isinstance(value, str) or not value.strip():
        raise EnvelopeValidationError(f"{name} must be a non-empty string")


@dataclass(frozen=True)
class MessageEnvelope:
    """Immutable record of one leg of a task execution."""

    correlation_id: str
    workflow_definition_name: str
    task_id: int
    task_definition_name: str
    input_parameters: Mapping[str, Any] = field(default_factory=dict)
    required_output_parameters: tuple[str, ...] = ()
    output_parameters: Mapping[str, Any] = field(default_factory=dict)
    task_status: TaskStatus = TaskStatus.SCHEDULED
    worker_name: str | None = None

    def __post_init__(self) -> None:
        _require_text("correlation_id", self.correlation_id)
        _require_text("workflow_definition_name", self.workflow_definition_name)
        _require_text("task_definition_name", self.task_definition_name)

        if isinstance(self.task_id, bool) or not isinstance(self.task_id, int):
            raise EnvelopeValidationError("task_id must be an integer")
        if self.task_id < 0:
            raise EnvelopeValidationError("task_id must not be negative")

        status = self.task_status
        if not isinstance(status, TaskStatus):
            try:
                status = TaskStatus(status)
            except ValueError as exc:
                raise EnvelopeValidationError(f"Unknown task status {status!r}") from exc
            object.__setattr__(self, "task_status", status)

        required = tuple(self.required_output_parameters or ())
        for name in required:
            _require_text("required output parameter", name)
        if len(set(required)) != len(required):
            raise EnvelopeValidationError("required_output_parameters contains duplicates")
        object.__setattr__(self, "required_output_parameters", required)

        object.__setattr__(
            self, "input_parameters", _validate_parameters("input_parameters", self.input_parameters)
        )
        object.__setattr__(
            self,
            "output_parameters",
            _validate_parameters("output_parameters", self.output_parameters),
        )

        if self.worker_name is None:
            if status is not TaskStatus.SCHEDULED:
                raise EnvelopeValidationError(
                    f"A request leg must be SCHEDULED, got {status.value}"
                )
            if self.output_parameters:
                raise EnvelopeValidationError("A request leg cannot carry output parameters")
        else:
            _require_text("worker_name", self.worker_name)
            if status is TaskStatus.SCHEDULED:
                raise EnvelopeValidationError("A response leg cannot report SCHEDULED")

    @property
    def leg(self) -> Leg:
        return Leg.REQUEST if self.worker_name is None else Leg.RESPONSE

    @property
    def routing_key(self) -> str:
        """``<workflow>:<correlation>`` partition key used on the broker."""
        return f"{self.workflow_definition_name}:{self.correlation_id}"


class RequestLegBuilder:
    """Builds the engine → worker leg.

    Example::

        envelope = (
            RequestLegBuilder("order-flow", "charge-card", task_id=7)
            .inputs(amount=120, currency="EUR")
            .require("receipt_id")
            .build()
        )
    """

    def __init__(
        self,
        workflow_definition_name: str,
        task_definition_name: str,
        task_id: int,
        correlation_id: str | None = None,
    ) -> None:
        self.correlation_id = correlation_id or new_correlation_id()
        self.workflow_definition_name = workflow_definition_name
        self.task_definition_name = task_definition_name
        self.task_id = task_id
        self.input_parameters: dict[str, Any] = {}
        self.required_output_parameters: list[str] = []

    def inputs(self, params: Mapping[str, Any] | None = None, **kwargs: Any) -> RequestLegBuilder:
        if params:
            self.input_parameters.update(params)
        self.input_parameters.update(kwargs)
        return self

    def require(self, *names: str) -> RequestLegBuilder:
        for name in names:
            if name not in self.required_output_parameters:
                self.required_output_parameters.append(name)
        return self

    def build(self) -> MessageEnvelope:
        return MessageEnvelope(
            correlation_id=self.correlation_id,
            workflow_definition_name=self.workflow_definition_name,
            task_id=self.task_id,
            task_definition_name=self.task_definition_name,
            input_parameters=self.input_parameters,
            required_output_parameters=tuple(self.required_output_parameters),
            task_status=TaskStatus.SCHEDULED,
        )


class ResponseLegBuilder:
    """Builds the worker → engine leg.

    Usually started from the request that is being answered::

        reply = (
            ResponseLegBuilder.reply_to(request, worker_name="billing-1")
            .status(TaskStatus.COMPLETED)
            .outputs(receipt_id="r-991")
            .build()
        )
    """

    def __init__(
        self,
        correlation_id: str,
        workflow_definition_name: str,
        task_definition_name: str,
        task_id: int,
        worker_name: str,
    ) -> None:
        self.correlation_id = correlation_id
        self.workflow_definition_name = workflow_definition_name
        self.task_definition_name = task_definition_name
        self.task_id = task_id
        self.worker_name = worker_name
        self.required_output_parameters: tuple[str, ...] = ()
        self.output_parameters: dict[str, Any] = {}
        self.task_status: TaskStatus | None = None

    @classmethod
    def reply_to(cls, request: MessageEnvelope, worker_name: str) -> ResponseLegBuilder:
        if request.leg is not Leg.REQUEST:
            raise EnvelopeValidationError("reply_to() expects a request leg")
        builder = cls(
            correlation_id=request.correlation_id,
            workflow_definition_name=request.workflow_definition_name,
            task_definition_name=request.task_definition_name,
            task_id=request.task_id,
            worker_name=worker_name,
        )
        builder.required_output_parameters = request.required_output_parameters
        return builder

    def status(self, status: TaskStatus) -> ResponseLegBuilder:
        self.task_status = status
        return self

    def outputs(self, params: Mapping[str, Any] | None = None, **kwargs: Any) -> ResponseLegBuilder:
        if params:
            self.output_parameters.update(params)
        self.output_parameters.update(kwargs)
        return self

    def build(self) -> MessageEnvelope:
        if self.task_status is None:
            raise EnvelopeValidationError("A response leg needs an explicit task status")
        return MessageEnvelope(
            correlation_id=self.correlation_id,
            workflow_definition_name=self.workflow_definition_name,
            task_id=self.task_id,
            task_definition_name=self.task_definition_name,
            required_output_parameters=self.required_output_parameters,
            output_parameters=self.output_parameters,
            task_status=self.task_status,
            worker_name=self.worker_name,
        )


# ----------------------------------------------------------------------
# Wire codec
# ----------------------------------------------------------------------


class EnvelopeDocument(BaseModel):
    """JSON shape of an envelope on the wire."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    correlation_id: str = Field(alias="correlationId")
    workflow_definition_name: str = Field(alias="workflowDefName")
    input_parameters: dict[str, JsonValue] | None = Field(default=None, alias="inputParameters")
    task_id: int = Field(alias="taskId")
    task_definition_name: str = Field(alias="taskDefName")
    required_output_parameters: list[str] | None = Field(
        default=None, alias="requiredOutputParameters"
    )
    output_parameters: dict[str, JsonValue] | None = Field(default=None, alias="outputParameters")
    task_status: TaskStatus = Field(alias="taskStatus")
    worker_name: str | None = Field(default=None, alias="workerName")

    @classmethod
    def from_envelope(cls, envelope: MessageEnvelope) -> EnvelopeDocument:
        return cls(
            correlation_id=envelope.correlation_id,
            workflow_definition_name=envelope.workflow_definition_name,
            input_parameters=thaw(envelope.input_parameters),
            task_id=envelope.task_id,
            task_definition_name=envelope.task_definition_name,
            required_output_parameters=list(envelope.required_output_parameters),
            output_parameters=thaw(envelope.output_parameters),
            task_status=envelope.task_status,
            worker_name=envelope.worker_name,
        )

    def to_envelope(self) -> MessageEnvelope:
        return MessageEnvelope(
            correlation_id=self.correlation_id,
            workflow_definition_name=self.workflow_definition_name,
            task_id=self.task_id,
            task_definition_name=self.task_definition_name,
            input_parameters=self.input_parameters or {},
            required_output_parameters=tuple(self.required_output_parameters or ()),
            output_parameters=self.output_parameters or {},
            task_status=self.task_status,
            worker_name=self.worker_name,
        )


def to_document(envelope: MessageEnvelope) -> dict[str, Any]:
    """Return the JSON-ready dict form of *envelope* (camelCase keys)."""
    return EnvelopeDocument.from_envelope(envelope).model_dump(mode="json", by_alias=True)


def encode(envelope: MessageEnvelope) -> str:
    """Serialise *envelope* to its JSON wire form."""
    return EnvelopeDocument.from_envelope(envelope).model_dump_json(by_alias=True)


def decode(raw: str | bytes | Mapping[str, Any]) -> MessageEnvelope:
    """Parse and validate a wire document.

    Raises :class:`EnvelopeValidationError` for malformed JSON, missing
    fields, non-JSON parameter values, or leg invariant violations.
    """
    try:
        if isinstance(raw, Mapping):
            document = EnvelopeDocument.model_validate(raw)
        else:
            document = EnvelopeDocument.model_validate_json(raw)
    except ValidationError as exc:
        raise EnvelopeValidationError(f"Malformed envelope: {exc}") from exc
    return document.to_envelope()
