"""Prometheus metrics exporter for taskwire observability.

Exposes dispatch and reconciliation metrics in Prometheus format.

Metrics exposed:
- taskwire_dispatched_total: Request legs emitted
- taskwire_outcomes_total: Terminal outcomes by status
- taskwire_discarded_total: Inbound messages discarded by verdict
- taskwire_in_flight: Entries currently in the correlation table
- taskwire_resolution_seconds: Time from dispatch to terminal outcome

Usage:
    from taskwire.observability import CorrelationMetrics

    metrics = CorrelationMetrics(table=engine.table)
    metrics.attach(engine.event_bus)

    # Expose via HTTP endpoint
    from fastapi import Response

    @app.get("/metrics")
    async def metrics_endpoint():
        return Response(content=metrics.export(), media_type="text/plain")
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import TYPE_CHECKING

from taskwire.core.events import Event, EventBus, EventType

if TYPE_CHECKING:
    from taskwire.core.correlation import CorrelationTable

_OUTCOME_TYPES = (
    EventType.TASK_COMPLETED,
    EventType.TASK_FAILED,
    EventType.TASK_TIMED_OUT,
    EventType.TASK_CANCELED,
)


class CorrelationMetrics:
    """Collects and exports Prometheus-format metrics for one engine.

    Counters are fed from the event bus; the in-flight gauge is read from
    the correlation table at export time.
    """

    def __init__(
        self,
        table: CorrelationTable | None = None,
        buckets: tuple[float, ...] = (0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0),
    ) -> None:
        self._table = table
        self._lock = threading.Lock()

        # Counters
        self._dispatched = 0
        self._outcomes: dict[str, int] = defaultdict(int)
        self._discarded: dict[str, int] = defaultdict(int)

        # Histogram (buckets in seconds)
        self._buckets = sorted(buckets)
        self._observations: dict[str, list[float]] = defaultdict(list)

    def attach(self, event_bus: EventBus) -> None:
        """Subscribe to the lifecycle events this exporter counts."""
        event_bus.subscribe(EventType.TASK_DISPATCHED, self._on_dispatched)
        event_bus.subscribe(EventType.MESSAGE_DISCARDED, self._on_discarded)
        for event_type in _OUTCOME_TYPES:
            event_bus.subscribe(event_type, self._on_outcome)

    def detach(self, event_bus: EventBus) -> None:
        event_bus.unsubscribe(EventType.TASK_DISPATCHED, self._on_dispatched)
        event_bus.unsubscribe(EventType.MESSAGE_DISCARDED, self._on_discarded)
        for event_type in _OUTCOME_TYPES:
            event_bus.unsubscribe(event_type, self._on_outcome)

    def record_dispatched(self) -> None:
        with self._lock:
            self._dispatched += 1

    def record_outcome(self, status: str, elapsed_seconds: float) -> None:
        """Record a terminal outcome and its resolution latency."""
        with self._lock:
            self._outcomes[status] += 1
            self._observations[status].append(elapsed_seconds)

    def record_discarded(self, verdict: str) -> None:
        with self._lock:
            self._discarded[verdict] += 1

    @property
    def dispatched(self) -> int:
        return self._dispatched

    def outcomes(self, status: str) -> int:
        return self._outcomes.get(status, 0)

    def discarded(self, verdict: str) -> int:
        return self._discarded.get(verdict, 0)

    def export(self) -> str:
        """Export metrics in Prometheus text format.

        Returns:
            Prometheus-formatted metrics string
        """
        with self._lock:
            dispatched = self._dispatched
            outcomes = dict(self._outcomes)
            discarded = dict(self._discarded)
            observations = {k: list(v) for k, v in self._observations.items()}

        lines = [
            "# HELP taskwire_dispatched_total Total number of request legs emitted",
            "# TYPE taskwire_dispatched_total counter",
            f"taskwire_dispatched_total {dispatched}",
            "",
            "# HELP taskwire_outcomes_total Total number of terminal outcomes by status",
            "# TYPE taskwire_outcomes_total counter",
        ]
        for status, count in sorted(outcomes.items()):
            lines.append(f'taskwire_outcomes_total{{status="{status}"}} {count}')

        lines.extend(
            [
                "",
                "# HELP taskwire_discarded_total Inbound messages discarded by verdict",
                "# TYPE taskwire_discarded_total counter",
            ]
        )
        for verdict, count in sorted(discarded.items()):
            lines.append(f'taskwire_discarded_total{{verdict="{verdict}"}} {count}')

        if self._table is not None:
            lines.extend(
                [
                    "",
                    "# HELP taskwire_in_flight Number of dispatched tasks awaiting an outcome",
                    "# TYPE taskwire_in_flight gauge",
                    f"taskwire_in_flight {len(self._table)}",
                ]
            )

        lines.extend(
            [
                "",
                "# HELP taskwire_resolution_seconds Time from dispatch to terminal outcome",
                "# TYPE taskwire_resolution_seconds histogram",
            ]
        )
        for status, values in sorted(observations.items()):
            if not values:
                continue

            # Cumulative buckets
            for bucket in self._buckets:
                count = sum(1 for v in values if v <= bucket)
                lines.append(
                    f'taskwire_resolution_seconds_bucket{{status="{status}",le="{bucket}"}} {count}'
                )
            lines.append(
                f'taskwire_resolution_seconds_bucket{{status="{status}",le="+Inf"}} {len(values)}'
            )
            lines.append(f'taskwire_resolution_seconds_sum{{status="{status}"}} {sum(values):.4f}')
            lines.append(f'taskwire_resolution_seconds_count{{status="{status}"}} {len(values)}')

        return "\n".join(lines) + "\n"

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_dispatched(self, event: Event) -> None:
        self.record_dispatched()

    async def _on_outcome(self, event: Event) -> None:
        self.record_outcome(
            event.payload["status"], float(event.payload.get("elapsed_seconds") or 0.0)
        )

    async def _on_discarded(self, event: Event) -> None:
        self.record_discarded(event.payload["verdict"])
