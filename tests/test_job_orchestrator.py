from __future__ import annotations

import asyncio
from datetime import date

import pytest

from manufacturing_orchestrator.control_plane.exceptions import JobAlreadyRunningError, RemoteCallError
from manufacturing_orchestrator.control_plane.job_orchestrator import BatchOrchestrator, JobSelection
from manufacturing_orchestrator.control_plane.models import (
    FINISHED_GOOD,
    RAW_GOOD,
    ComponentSnapshot,
    OperationType,
    QueueItem,
    QueueItemStatus,
)
from manufacturing_orchestrator.control_plane.state_manager import JobState, TriggeredBy
from manufacturing_orchestrator.fishbowl import queries

from .fakes import FG_PART_ID, RAW_PART_ID, FakeFishbowl, build_item, open_database

TODAY = queries.parent_order_date(date.today())


def _run(settings, fishbowl: FakeFishbowl, scenario, **kwargs):
    async def main():
        db = await open_database(settings)
        orchestrator = BatchOrchestrator(db, fishbowl, **kwargs)
        try:
            return await scenario(orchestrator)
        finally:
            await db.dispose()

    return asyncio.run(main())


async def _queue_builds(orchestrator: BatchOrchestrator, fishbowl: FakeFishbowl, count: int):
    items = []
    for index in range(count):
        serials = [f"S{index}-a", f"S{index}-b"]
        fishbowl.add_serials(serials, location_id=1 + index % 2)
        items.append(build_item(f"FG-{index:04d}", serials))
    await orchestrator.queue_manager.enqueue_many(items)
    return await orchestrator.queue_manager.select_ready()


def test_empty_queue_completes_without_remote_calls(settings, fishbowl):
    async def scenario(orchestrator):
        return await orchestrator.run_job(JobSelection(), "token")

    snapshot = _run(settings, fishbowl, scenario)
    assert snapshot.state == JobState.COMPLETED
    assert sum(fishbowl.calls.values()) == 0


def test_each_batch_shares_one_parent_order(settings, fishbowl):
    async def scenario(orchestrator):
        queued = await _queue_builds(orchestrator, fishbowl, 5)
        snapshot = await orchestrator.run_job(JobSelection(), "token")
        rows = [await orchestrator.queue_manager.get(item.id) for item in queued]
        return snapshot, rows

    snapshot, rows = _run(settings, fishbowl, scenario, batch_size=2)

    assert snapshot.state == JobState.COMPLETED
    assert snapshot.total_batches == 3
    assert snapshot.success_items == 5
    assert fishbowl.calls["create_manufacture_order"] == 3
    assert fishbowl.calls["issue_manufacture_order"] == 3
    assert [row.parent_order_number for row in rows] == [
        f"BOM-A|{TODAY}|001",
        f"BOM-A|{TODAY}|001",
        f"BOM-A|{TODAY}|002",
        f"BOM-A|{TODAY}|002",
        f"BOM-A|{TODAY}|003",
    ]
    assert rows[0].sub_order_number == f"BOM-A|{TODAY}|001:001"
    assert rows[1].sub_order_number == f"BOM-A|{TODAY}|001:002"
    assert len({row.sub_order_number for row in rows}) == 5
    assert {row.status for row in rows} == {QueueItemStatus.SUCCESS}


def test_parent_order_sequence_is_numeric(settings, fishbowl):
    fishbowl.extra_parent_order_numbers = [f"BOM-A|{TODAY}|9", f"BOM-A|{TODAY}|10", f"BOM-B|{TODAY}|50"]

    async def scenario(orchestrator):
        preview = await orchestrator.preview_next_parent_order("token", "BOM-A")
        await _queue_builds(orchestrator, fishbowl, 1)
        await orchestrator.run_job(JobSelection(), "token")
        return preview

    preview = _run(settings, fishbowl, scenario)
    assert preview == f"BOM-A|{TODAY}|011"
    assert f"BOM-A|{TODAY}|011" in fishbowl.parent_orders


def test_transient_failure_is_retried_once(settings, fishbowl):
    fishbowl.fail("save_work_order", RemoteCallError("SaveWorkOrderRq", "HTTP 503", 503))

    async def scenario(orchestrator):
        [item] = await _queue_builds(orchestrator, fishbowl, 1)
        snapshot = await orchestrator.run_job(JobSelection(), "token")
        row = await orchestrator.queue_manager.get(item.id)
        return snapshot, row, await orchestrator.queue_manager.attempts_for(item.id)

    snapshot, row, attempts = _run(settings, fishbowl, scenario)
    wo = row.sub_order_number

    assert row.status == QueueItemStatus.SUCCESS
    assert row.retry_count == 1
    assert [a.status for a in attempts] == ["failed", "success"]
    assert snapshot.results[0].status == "success-retry"
    # the retry resumed after the split instead of repeating it
    assert fishbowl.calls_by_order[wo]["save_pick"] == 2


def test_item_never_retried_more_than_once(settings, fishbowl):
    fishbowl.fail("save_work_order", RemoteCallError("SaveWorkOrderRq", "HTTP 503", 503), times=5)

    async def scenario(orchestrator):
        [item] = await _queue_builds(orchestrator, fishbowl, 1)
        snapshot = await orchestrator.run_job(JobSelection(), "token")
        row = await orchestrator.queue_manager.get(item.id)
        return snapshot, row, await orchestrator.queue_manager.attempts_for(item.id)

    snapshot, row, attempts = _run(settings, fishbowl, scenario, max_retries=1)

    assert row.status == QueueItemStatus.FAILED
    assert row.retry_count == 1
    assert "HTTP 503" in row.error_message
    assert len(attempts) == 2
    assert fishbowl.calls["save_work_order"] == 2
    assert snapshot.failed_items == 1
    assert snapshot.state == JobState.COMPLETED


def test_data_errors_are_not_retried(settings, fishbowl):
    async def scenario(orchestrator):
        fishbowl.add_serials(["OK-1"])
        await orchestrator.queue_manager.enqueue_many(
            [build_item("FG-BAD", ["MISSING"]), build_item("FG-OK", ["OK-1"])]
        )
        await orchestrator.run_job(JobSelection(), "token")
        return await orchestrator.queue_manager.select_ready(), await orchestrator.queue_manager.failed_items()

    pending, failed = _run(settings, fishbowl, scenario)
    assert pending == []
    [bad] = failed
    assert bad.barcode == "FG-BAD"
    assert bad.retry_count == 0
    assert bad.error_message == "No serial locations found"


def test_parent_order_failure_fails_whole_batch(settings, fishbowl):
    fishbowl.fail("create_manufacture_order", RemoteCallError("create_parent_order", "HTTP 500", 500))

    async def scenario(orchestrator):
        queued = await _queue_builds(orchestrator, fishbowl, 3)
        snapshot = await orchestrator.run_job(JobSelection(), "token")
        rows = [await orchestrator.queue_manager.get(item.id) for item in queued]
        return snapshot, rows

    snapshot, rows = _run(settings, fishbowl, scenario, batch_size=2)

    assert [row.status for row in rows] == [
        QueueItemStatus.FAILED,
        QueueItemStatus.FAILED,
        QueueItemStatus.SUCCESS,
    ]
    assert rows[0].error_message.startswith("MO creation failed")
    assert rows[0].parent_order_number == rows[1].parent_order_number
    assert rows[0].sub_order_number is None
    assert snapshot.failed_items == 2
    assert snapshot.success_items == 1


def test_stop_takes_effect_at_item_boundary_and_resume_reuses_parent_order(settings, fishbowl):
    async def scenario(orchestrator):
        def stop_after_first(number):
            if not orchestrator.state.stop_requested and orchestrator.status().processed_items == 0:
                orchestrator.stop()

        queued = await _queue_builds(orchestrator, fishbowl, 3)
        fishbowl.hooks["save_work_order"] = stop_after_first
        orchestrator.state.start(TriggeredBy.INTERACTIVE)
        stopped = await orchestrator.run_job(JobSelection(), "token")
        pending_after_stop = await orchestrator.queue_manager.pending_count()

        fishbowl.hooks.clear()
        resumed = await orchestrator.run_job(JobSelection(), "token")
        rows = [await orchestrator.queue_manager.get(item.id) for item in queued]
        return stopped, pending_after_stop, resumed, rows

    stopped, pending_after_stop, resumed, rows = _run(settings, fishbowl, scenario)

    assert stopped.state == JobState.STOPPED
    assert stopped.processed_items == 1
    assert pending_after_stop == 2
    assert resumed.state == JobState.COMPLETED
    assert resumed.success_items == 2
    assert fishbowl.calls["create_manufacture_order"] == 1
    assert fishbowl.calls["issue_manufacture_order"] == 1
    assert len({row.parent_order_number for row in rows}) == 1
    assert {row.status for row in rows} == {QueueItemStatus.SUCCESS}


def test_resume_after_crash_does_not_repeat_remote_work(settings, fishbowl):
    async def scenario(orchestrator):
        [item] = await _queue_builds(orchestrator, fishbowl, 1)
        await orchestrator.run_job(JobSelection(), "token")
        # crash between the remote completion and the local status write
        await orchestrator.queue_manager._update(item.id, {"status": QueueItemStatus.PENDING, "completed_at": None})

        snapshot = await orchestrator.run_job(JobSelection(), "token")
        return snapshot, await orchestrator.queue_manager.get(item.id)

    snapshot, row = _run(settings, fishbowl, scenario)

    wo = row.sub_order_number
    assert row.status == QueueItemStatus.SUCCESS
    assert snapshot.success_items == 1
    assert fishbowl.calls["create_manufacture_order"] == 1
    assert fishbowl.calls_by_order[wo]["save_work_order"] == 1
    assert fishbowl.calls_by_order[wo]["save_pick"] == 2


def test_remote_failure_during_planning_ends_in_error(settings, fishbowl):
    fishbowl.fail("query", RemoteCallError("query", "Fishbowl unreachable"))

    async def scenario(orchestrator):
        await _queue_builds(orchestrator, fishbowl, 2)
        snapshot = await orchestrator.run_job(JobSelection(), "token")
        return snapshot, await orchestrator.queue_manager.pending_count()

    snapshot, pending = _run(settings, fishbowl, scenario)
    assert snapshot.state == JobState.ERROR
    assert "Fishbowl unreachable" in snapshot.error
    assert pending == 2


def test_concurrent_sub_orders_within_a_batch(settings, fishbowl):
    async def scenario(orchestrator):
        queued = await _queue_builds(orchestrator, fishbowl, 4)
        snapshot = await orchestrator.run_job(JobSelection(), "token")
        return snapshot, [await orchestrator.queue_manager.get(item.id) for item in queued]

    snapshot, rows = _run(settings, fishbowl, scenario, concurrent_wo_limit=2)
    assert snapshot.success_items == 4
    assert all(fishbowl.calls_by_order[row.sub_order_number]["save_work_order"] == 1 for row in rows)


def test_disassembly_parent_order_reverses_component_roles(settings, fishbowl):
    snapshot = [
        ComponentSnapshot(part_id=FG_PART_ID, item_type=FINISHED_GOOD, quantity=1, serial_numbers=["FG-0001"]),
        ComponentSnapshot(part_id=RAW_PART_ID, item_type=RAW_GOOD, quantity=2, serial_numbers=["S1", "S2"]),
    ]

    async def scenario(orchestrator):
        await orchestrator.queue_manager.enqueue(
            build_item(
                "FG-0001",
                ["S1", "S2"],
                operation_type=OperationType.DISASSEMBLE,
                bom_snapshot=QueueItem.encode_snapshot(snapshot),
                raw_goods_part_id=None,
            )
        )
        return await orchestrator.run_job(JobSelection(), "token")

    result = _run(settings, fishbowl, scenario)

    assert result.success_items == 1
    [order] = fishbowl.parent_orders.values()
    [configuration] = order["payload"]["configurations"]
    assert configuration["description"] == "Disassemble FG-0001"
    lines = {line["part"]["id"]: line for line in configuration["items"]}
    assert lines[FG_PART_ID]["type"] == RAW_GOOD
    assert lines[FG_PART_ID]["description"] == "Consume FG-1"
    assert lines[RAW_PART_ID]["type"] == FINISHED_GOOD
    assert lines[RAW_PART_ID]["quantity"] == "2"


def test_start_runs_in_background_and_rejects_second_start(settings, fishbowl):
    async def scenario(orchestrator):
        await _queue_builds(orchestrator, fishbowl, 2)
        orchestrator.start(JobSelection(), "token")
        with pytest.raises(JobAlreadyRunningError):
            orchestrator.start(JobSelection(), "token")
        return await orchestrator.wait(timeout=10)

    snapshot = _run(settings, fishbowl, scenario)
    assert snapshot.state == JobState.COMPLETED
    assert snapshot.triggered_by == TriggeredBy.INTERACTIVE
    assert snapshot.success_items == 2


def test_close_short_marks_open_work(settings, fishbowl):
    async def scenario(orchestrator):
        def stop_now(number):
            if not orchestrator.state.stop_requested:
                orchestrator.stop()

        await _queue_builds(orchestrator, fishbowl, 3)
        fishbowl.hooks["save_work_order"] = stop_now
        await orchestrator.run_job(JobSelection(), "token")
        result = await orchestrator.close_short("token")
        cleared = await orchestrator.clear("token")
        return result, cleared

    result, cleared = _run(settings, fishbowl, scenario)

    assert result.closed_short_count == 1
    assert result.marked_count == 2
    assert result.failed_parent_orders == []
    assert all(order["closed_short"] for order in fishbowl.parent_orders.values())
    assert cleared["deleted"] == 2


def test_reupload_during_run_does_not_build_twice(settings, fishbowl):
    async def scenario(orchestrator):
        reuploads = []

        def reupload_last(number):
            if not reuploads:
                item = build_item("FG-0002", ["S2-a", "S2-b"])
                reuploads.append(asyncio.ensure_future(orchestrator.queue_manager.enqueue_many([item])))

        queued = await _queue_builds(orchestrator, fishbowl, 3)
        fishbowl.hooks["save_work_order"] = reupload_last
        first = await orchestrator.run_job(JobSelection(), "token")
        inserted = await asyncio.gather(*reuploads)

        fishbowl.hooks.clear()
        second = await orchestrator.run_job(JobSelection(), "token")
        rows = [await orchestrator.queue_manager.get(item.id) for item in queued]
        return first, inserted, second, rows

    first, inserted, second, rows = _run(settings, fishbowl, scenario)

    assert inserted == [0]
    assert first.success_items == 3
    assert second.total_items == 0
    assert {row.status for row in rows} == {QueueItemStatus.SUCCESS}
    assert len(fishbowl.parent_orders) == 1
    assert fishbowl.calls["save_work_order"] == 3


def test_selection_and_batches_respect_location_group(settings, fishbowl):
    async def scenario(orchestrator):
        fishbowl.add_serials(["S1", "S2", "S3"])
        await orchestrator.queue_manager.enqueue_many(
            [
                build_item("FG-1", ["S1"]),
                build_item("FG-2", ["S2"], location_group_id=4),
                build_item("FG-3", ["S3"]),
            ]
        )
        only_four = await orchestrator.run_job(JobSelection(bom_num="BOM-A", location_group_id=4), "token")
        groups_after_first = [order["payload"]["locationGroup"]["id"] for order in fishbowl.parent_orders.values()]
        rest = await orchestrator.run_job(JobSelection(), "token")
        return only_four, groups_after_first, rest

    only_four, groups_after_first, rest = _run(settings, fishbowl, scenario)

    assert only_four.total_items == 1
    assert groups_after_first == [4]
    assert rest.total_items == 2
    assert rest.total_batches == 1
    assert [order["payload"]["locationGroup"]["id"] for order in fishbowl.parent_orders.values()] == [4, 3]


def test_mixed_location_groups_get_separate_parent_orders(settings, fishbowl):
    async def scenario(orchestrator):
        fishbowl.add_serials(["S1", "S2"])
        await orchestrator.queue_manager.enqueue_many(
            [build_item("FG-1", ["S1"]), build_item("FG-2", ["S2"], location_group_id=4)]
        )
        return await orchestrator.run_job(JobSelection(), "token")

    snapshot = _run(settings, fishbowl, scenario)

    assert snapshot.total_batches == 2
    assert snapshot.success_items == 2
    assert sorted(order["payload"]["locationGroup"]["id"] for order in fishbowl.parent_orders.values()) == [3, 4]
