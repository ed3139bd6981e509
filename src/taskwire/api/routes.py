"""API route definitions — separated from the app factory for testability."""

from __future__ import annotations

import logging
import time

from fastapi import APIRouter, HTTPException, Request, Response, status

from taskwire import __version__
from taskwire.api.schemas import (
    DispatchRequest,
    DispatchResponse,
    HealthResponse,
    OutcomeResponse,
    ReplyResponse,
    StatsResponse,
    TaskRecordResponse,
)
from taskwire.core.engine import CorrelationEngine
from taskwire.core.errors import (
    DispatchError,
    DuplicateCorrelationError,
    EnvelopeValidationError,
    TableFullError,
    UnknownCorrelationError,
)
from taskwire.core.reconciler import Verdict
from taskwire.core.status import TaskStatus
from taskwire.observability import CorrelationMetrics

logger = logging.getLogger(__name__)

router = APIRouter()

# Injected by the app factory via ``configure``
_engine: CorrelationEngine | None = None
_metrics: CorrelationMetrics | None = None
_start_time: float = time.monotonic()


def configure(engine: CorrelationEngine, metrics: CorrelationMetrics | None = None) -> None:
    """Wire the engine and metrics exporter into the router (poor-man's DI)."""
    global _engine, _metrics
    _engine = engine
    if metrics is None:
        metrics = CorrelationMetrics(table=engine.table)
        metrics.attach(engine.event_bus)
    _metrics = metrics


def _get_engine() -> CorrelationEngine:
    if _engine is None:
        raise RuntimeError("Engine not configured")
    return _engine


def _get_metrics() -> CorrelationMetrics:
    if _metrics is None:
        raise RuntimeError("Metrics not configured")
    return _metrics


# ------------------------------------------------------------------
# Health, stats & metrics
# ------------------------------------------------------------------


@router.get("/health", response_model=HealthResponse, tags=["ops"])
async def health() -> HealthResponse:
    return HealthResponse(
        version=__version__,
        uptime_seconds=round(time.monotonic() - _start_time, 2),
        running=_get_engine().running,
    )


@router.get("/stats", response_model=StatsResponse, tags=["ops"])
async def stats() -> StatsResponse:
    engine = _get_engine()
    return StatsResponse(
        in_flight=len(engine.table),
        max_in_flight=engine.table.max_entries,
        reaped=engine.reaper.reaped_count,
        verdicts=engine.reconciler.stats.as_dict(),
    )


@router.get("/metrics", tags=["ops"])
async def metrics() -> Response:
    return Response(content=_get_metrics().export(), media_type="text/plain; version=0.0.4")


# ------------------------------------------------------------------
# Dispatch & control
# ------------------------------------------------------------------


@router.post(
    "/tasks",
    response_model=DispatchResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["tasks"],
)
async def dispatch_task(body: DispatchRequest, response: Response) -> DispatchResponse:
    """Emit a request leg.

    With ``wait`` set the call blocks until the task is resolved, times
    out or is canceled, and the outcome is returned inline.
    """
    engine = _get_engine()
    try:
        correlation_id, pending = await engine.dispatch(
            body.workflow_definition_name,
            body.task_definition_name,
            body.task_id,
            body.input_parameters,
            body.required_output_parameters,
            timeout=body.timeout_seconds,
        )
    except EnvelopeValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)
        ) from exc
    except DuplicateCorrelationError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except TableFullError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc
    except DispatchError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    if not body.wait:
        return DispatchResponse(correlation_id=correlation_id, status=TaskStatus.SCHEDULED.value)

    outcome = await pending.wait()
    response.status_code = status.HTTP_200_OK
    return DispatchResponse(
        correlation_id=correlation_id,
        status=outcome.status.value,
        outcome=OutcomeResponse.from_outcome(outcome),
    )


@router.get("/tasks", response_model=list[TaskRecordResponse], tags=["tasks"])
async def list_tasks(limit: int = 100) -> list[TaskRecordResponse]:
    table = _get_engine().table
    now = table.now()
    records = sorted(table.in_flight(), key=lambda r: r.registered_at)[:limit]
    return [TaskRecordResponse.from_record(r, now) for r in records]


@router.get("/tasks/{correlation_id}", response_model=TaskRecordResponse, tags=["tasks"])
async def get_task(correlation_id: str) -> TaskRecordResponse:
    table = _get_engine().table
    record = table.get(correlation_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Task not in flight")
    return TaskRecordResponse.from_record(record, table.now())


@router.delete("/tasks/{correlation_id}", response_model=OutcomeResponse, tags=["tasks"])
async def cancel_task(correlation_id: str) -> OutcomeResponse:
    """Cancel a pending dispatch; its waiter receives a ``CANCELED`` outcome."""
    try:
        outcome = await _get_engine().cancel(correlation_id, "canceled via API")
    except UnknownCorrelationError as exc:
        raise HTTPException(status_code=404, detail="Task not in flight") from exc
    return OutcomeResponse.from_outcome(outcome)


# ------------------------------------------------------------------
# Inbound replies
# ------------------------------------------------------------------


@router.post("/replies", response_model=ReplyResponse, tags=["replies"])
async def post_reply(request: Request, response: Response) -> ReplyResponse:
    """Feed one serialized response-leg message to the reconciler."""
    verdict = await _get_engine().reconciler.handle(await request.body())
    if verdict is Verdict.MALFORMED:
        response.status_code = status.HTTP_422_UNPROCESSABLE_CONTENT
    return ReplyResponse(verdict=verdict.value, accepted=verdict.accepted)
