"""Example: dispatching tasks to an in-process worker pool.

Demonstrates the request/response legs, heartbeats, a task that never
answers (and is timed out by the reaper), a reply missing a required
output, and a late reply that arrives after the task was settled.
"""

import asyncio
import logging

from taskwire.core.engine import CorrelationEngine, EngineConfig
from taskwire.core.envelope import ResponseLegBuilder
from taskwire.core.events import Event, EventBus, EventType
from taskwire.core.reaper import ReaperConfig
from taskwire.core.status import TaskStatus
from taskwire.transport.base import Message
from taskwire.transport.memory import InMemoryChannel

logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(message)s")
log = logging.getLogger(__name__)


# ── Worker ───────────────────────────────────────────────────────────


async def worker(name: str, requests: InMemoryChannel, replies: InMemoryChannel) -> None:
    """Pull request legs and answer them according to the task definition."""
    while (message := await requests.receive_message()) is not None:
        request = message.content
        reply = ResponseLegBuilder.reply_to(request, worker_name=name)

        await replies.send(Message.response(reply.status(TaskStatus.IN_PROGRESS).build()))

        if request.task_definition_name == "hang":
            continue  # never answers; the reaper will time it out

        await asyncio.sleep(0.1)
        if request.task_definition_name == "sloppy":
            reply.status(TaskStatus.COMPLETED)  # forgets the required output
        else:
            amount = request.input_parameters.get("amount", 0)
            reply.status(TaskStatus.COMPLETED).outputs(
                receipt_id=f"r-{request.task_id}", total=amount
            )
        await replies.send(Message.response(reply.build()))

        if request.task_definition_name == "sloppy":
            # Redelivered by a confused broker after the fact.
            await replies.send(Message.response(reply.status(TaskStatus.FAILED).build()))


# ── Event listener ───────────────────────────────────────────────────


async def on_event(event: Event) -> None:
    log.info("  [event] %-18s %s", event.event_type.value, event.payload.get("correlation_id"))


# ── Main ─────────────────────────────────────────────────────────────


async def main() -> None:
    requests, replies = InMemoryChannel(), InMemoryChannel()
    bus = EventBus()
    bus.subscribe_all(on_event)

    config = EngineConfig(reaper=ReaperConfig(interval_seconds=0.05))
    async with CorrelationEngine(requests, replies, config, event_bus=bus) as engine:
        workers = [
            asyncio.create_task(worker(f"worker-{i}", requests, replies)) for i in range(2)
        ]

        dispatches = await asyncio.gather(
            engine.dispatch("orders", "charge", 1, {"amount": 120}, ["receipt_id"], timeout=2),
            engine.dispatch("orders", "sloppy", 2, {"amount": 80}, ["receipt_id"], timeout=2),
            engine.dispatch("orders", "hang", 3, timeout=0.5),
        )
        outcomes = await asyncio.gather(*(pending.wait() for _, pending in dispatches))

        print("\n" + "=" * 60)
        for outcome in outcomes:
            print(
                f"  task {outcome.task_id}: {outcome.status.value:<10} "
                f"worker={outcome.worker_name} reason={outcome.reason} "
                f"outputs={dict(outcome.output_parameters)}"
            )
        await asyncio.sleep(0.2)
        print(f"  reconciler verdicts: {engine.reconciler.stats.as_dict()}")
        print("=" * 60)

        for task in workers:
            task.cancel()


if __name__ == "__main__":
    asyncio.run(main())
