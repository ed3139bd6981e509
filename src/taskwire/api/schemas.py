"""Pydantic schemas for request / response serialisation."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, JsonValue

from taskwire.core.envelope import thaw

if TYPE_CHECKING:
    from taskwire.core.correlation import ExecutionRecord, Outcome


class DispatchRequest(BaseModel):
    """Schema for dispatching one task to the workers."""

    workflow_definition_name: str = Field(..., min_length=1, max_length=256)
    task_definition_name: str = Field(..., min_length=1, max_length=256)
    task_id: int = Field(..., ge=0)
    input_parameters: dict[str, JsonValue] = Field(default_factory=dict)
    required_output_parameters: list[str] = Field(default_factory=list)
    timeout_seconds: float = Field(..., gt=0)
    wait: bool = False


class OutcomeResponse(BaseModel):
    correlation_id: str
    task_id: int
    status: str
    successful: bool
    output_parameters: dict[str, Any] = Field(default_factory=dict)
    worker_name: str | None = None
    reason: str | None = None
    elapsed_seconds: float

    @classmethod
    def from_outcome(cls, outcome: Outcome) -> OutcomeResponse:
        return cls(
            correlation_id=outcome.correlation_id,
            task_id=outcome.task_id,
            status=outcome.status.value,
            successful=outcome.successful,
            output_parameters=thaw(outcome.output_parameters),
            worker_name=outcome.worker_name,
            reason=outcome.reason,
            elapsed_seconds=round(outcome.elapsed_seconds, 6),
        )


class DispatchResponse(BaseModel):
    correlation_id: str
    status: str
    outcome: OutcomeResponse | None = None


class TaskRecordResponse(BaseModel):
    correlation_id: str
    workflow_definition_name: str
    task_definition_name: str
    task_id: int
    status: str
    worker_name: str | None = None
    required_output_parameters: list[str] = Field(default_factory=list)
    dispatched_at: datetime
    remaining_seconds: float

    @classmethod
    def from_record(cls, record: ExecutionRecord, now: float) -> TaskRecordResponse:
        envelope = record.envelope
        return cls(
            correlation_id=record.correlation_id,
            workflow_definition_name=envelope.workflow_definition_name,
            task_definition_name=envelope.task_definition_name,
            task_id=envelope.task_id,
            status=record.status.value,
            worker_name=record.worker_name,
            required_output_parameters=list(envelope.required_output_parameters),
            dispatched_at=record.dispatched_at,
            remaining_seconds=round(max(0.0, record.deadline - now), 3),
        )


class ReplyResponse(BaseModel):
    verdict: str
    accepted: bool


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    uptime_seconds: float
    running: bool


class StatsResponse(BaseModel):
    in_flight: int
    max_in_flight: int | None = None
    reaped: int
    verdicts: dict[str, int] = Field(default_factory=dict)
