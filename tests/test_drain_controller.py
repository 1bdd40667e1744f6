from __future__ import annotations

import asyncio

from manufacturing_orchestrator.control_plane.drain_controller import DrainController
from manufacturing_orchestrator.control_plane.job_orchestrator import BatchOrchestrator, JobSelection
from manufacturing_orchestrator.control_plane.models import QueueItemStatus
from manufacturing_orchestrator.control_plane.state_manager import JobState

from .fakes import build_item, open_database


class HangingExecutor:
    async def execute(self, token, item, sub_order_number):
        await asyncio.Event().wait()


def _run(settings, fishbowl, scenario, **kwargs):
    async def main():
        db = await open_database(settings)
        orchestrator = BatchOrchestrator(db, fishbowl, **kwargs)
        try:
            return await scenario(orchestrator)
        finally:
            await db.dispose()

    return asyncio.run(main())


async def _queue(orchestrator, fishbowl, count):
    items = []
    for index in range(count):
        fishbowl.add_serials([f"S{index}"])
        items.append(build_item(f"FG-{index}", [f"S{index}"]))
    await orchestrator.queue_manager.enqueue_many(items)


def test_idle_drain_runs_closers(settings, fishbowl):
    closed = []

    async def scenario(orchestrator):
        drain = DrainController(orchestrator)

        async def close_one():
            closed.append("one")

        async def close_broken():
            raise RuntimeError("already closed")

        async def close_two():
            closed.append("two")

        drain.add_closer(close_one)
        drain.add_closer(close_broken)
        drain.add_closer(close_two)
        return await drain.drain()

    assert _run(settings, fishbowl, scenario) is True
    assert closed == ["one", "two"]


def test_running_job_is_stopped_at_item_boundary_before_closing(settings, fishbowl):
    observed = []

    async def scenario(orchestrator):
        await _queue(orchestrator, fishbowl, 3)
        orchestrator.start(JobSelection(), "token")
        drain = DrainController(orchestrator, timeout_seconds=10, poll_interval_seconds=0.01)

        async def record_state():
            observed.append(orchestrator.is_running)

        drain.add_closer(record_state)
        drained = await drain.drain()
        return drained, orchestrator.status(), await orchestrator.queue_manager.pending_count()

    drained, snapshot, pending = _run(settings, fishbowl, scenario)

    assert drained is True
    assert observed == [False]
    assert snapshot.state == JobState.STOPPED
    assert snapshot.processed_items == 1
    assert pending == 2


def test_drain_timeout_cancels_job_before_closing_and_keeps_item_resumable(settings, fishbowl):
    observed = []

    async def scenario(orchestrator):
        await _queue(orchestrator, fishbowl, 1)
        orchestrator.start(JobSelection(), "token")
        drain = DrainController(orchestrator, timeout_seconds=0.2, poll_interval_seconds=0.01)

        async def close():
            observed.append(orchestrator._task.done())

        drain.add_closer(close)
        drained = await drain.drain()
        [row] = await orchestrator.queue_manager.select_ready()
        return drained, orchestrator.status(), row, await orchestrator.queue_manager.attempts_for(row.id)

    drained, snapshot, row, attempts = _run(settings, fishbowl, scenario, executor=HangingExecutor())

    assert drained is False
    assert observed == [True]
    assert snapshot.state == JobState.STOPPED
    assert snapshot.failed_items == 0
    assert row.status == QueueItemStatus.PENDING
    assert row.parent_order_number is not None
    assert row.sub_order_number is not None
    assert row.error_message is None
    assert attempts == []
