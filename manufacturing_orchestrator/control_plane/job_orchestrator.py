"""
Job Orchestrator

Runs the single active job: selects ready queue items, groups them into
batches that share one remote parent order, makes sure the parent order
exists and is issued, then drives every item's sub-order through the
executor with a single immediate retry.

Stop requests are honoured at item boundaries; whatever has not been
processed stays pending and is picked up by the next run.
"""
import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from ..fishbowl import queries
from ..fishbowl.client import FishbowlClient
from ..fishbowl.records import format_quantity
from .exceptions import (
    JobAlreadyRunningError,
    OrchestratorError,
    ParentOrderError,
    RemoteCallError,
)
from .models import OperationType, QueueItem, QueueItemStatus, utc_now
from .queue_manager import QueueManager
from .state_manager import ItemResult, JobSnapshot, JobStateMachine, TriggeredBy
from .work_order_executor import WorkOrderExecutor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobSelection:
    """Which ready items a job should process; an empty selection takes everything ready."""
    bom_num: Optional[str] = None
    bom_id: Optional[int] = None
    location_group_id: Optional[int] = None


@dataclass
class Batch:
    """Items that share one parent order."""
    items: List[QueueItem]
    parent_order_number: Optional[str] = None
    resumed: bool = False

    @property
    def head(self) -> QueueItem:
        return self.items[0]

    @property
    def operation_type(self) -> OperationType:
        return self.head.operation_type

    @property
    def item_ids(self) -> List[int]:
        return [item.id for item in self.items]


@dataclass
class CloseShortResult:
    closed_short_count: int = 0
    marked_count: int = 0
    failed_parent_orders: List[Dict[str, str]] = field(default_factory=list)


class BatchOrchestrator:
    """
    Owns the job lifecycle for this process.

    Only one job runs at a time; the state machine rejects a second start.
    """

    def __init__(
        self,
        db,
        client: FishbowlClient,
        batch_size: int = 100,
        max_retries: int = 1,
        concurrent_wo_limit: int = 1,
        state: Optional[JobStateMachine] = None,
        executor: Optional[WorkOrderExecutor] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            db: Database instance
            client: Fishbowl client
            batch_size: Maximum items per parent order
            max_retries: Immediate retries per item (at most one is ever used)
            concurrent_wo_limit: Sub-orders executed concurrently within a batch
        """
        self.db = db
        self.client = client
        self.batch_size = max(1, batch_size)
        self.max_retries = max_retries
        self.concurrent_wo_limit = max(1, concurrent_wo_limit)

        self.queue_manager = QueueManager(db)
        self.state = state or JobStateMachine()
        self.executor = executor or WorkOrderExecutor(client)

        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    def start(
        self,
        selection: JobSelection,
        token: str,
        triggered_by: TriggeredBy = TriggeredBy.INTERACTIVE,
    ) -> JobSnapshot:
        """Start a job in the background and return immediately."""
        snapshot = self.state.start(triggered_by)
        logger.info(f"Starting job (triggered by {triggered_by.value}, BOM {selection.bom_num or 'any'})")
        self._task = asyncio.create_task(self.run_job(selection, token))
        return snapshot

    def stop(self) -> JobSnapshot:
        return self.state.request_stop()

    def status(self) -> JobSnapshot:
        return self.state.snapshot()

    def reset(self) -> JobSnapshot:
        return self.state.reset()

    @property
    def is_running(self) -> bool:
        return self.state.is_running

    async def wait(self, timeout: Optional[float] = None) -> JobSnapshot:
        """Wait for the background job task, if any."""
        if self._task is not None and not self._task.done():
            await asyncio.wait_for(asyncio.shield(self._task), timeout)
        return self.state.snapshot()

    async def cancel(self) -> JobSnapshot:
        """
        Cancel the background job task and wait for it to unwind.

        The interrupted item keeps its pending status and order numbers.
        """
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        return self.state.snapshot()

    async def close_short(self, token: str) -> CloseShortResult:
        """
        Close short every parent order that still has pending items, then
        mark all pending items closed_short.
        """
        if self.is_running:
            raise JobAlreadyRunningError("Cannot close short while a job is running")

        result = CloseShortResult()
        parent_orders = await self.queue_manager.open_parent_orders()
        logger.info(f"Close short: {len(parent_orders)} parent order(s) with pending items")

        for number in parent_orders:
            try:
                rows = await self.client.query(token, queries.parent_order_id(number))
                if not rows:
                    logger.warning(f"Close short: MO {number} not found in Fishbowl (may not have been created)")
                    continue
                await self.client.close_short_manufacture_order(token, rows[0]["id"])
                result.closed_short_count += 1
                logger.info(f"Close short: MO {number} closed short")
            except RemoteCallError as e:
                logger.error(f"Close short: failed for MO {number}: {e}")
                result.failed_parent_orders.append({"parent_order_number": number, "error": str(e)})

        result.marked_count = await self.queue_manager.mark_pending_closed_short()
        logger.info(f"Close short: marked {result.marked_count} queue item(s) as closed_short")
        return result

    async def clear(self, token: str) -> Dict[str, Any]:
        """Close short open work, delete pending/closed_short rows and reset the job."""
        close_short = await self.close_short(token)
        deleted = await self.queue_manager.delete_pending_and_closed_short()
        self.state.reset()
        logger.info(f"Queue cleared: {deleted} row(s) deleted")
        return {
            "deleted": deleted,
            "closed_short_count": close_short.closed_short_count,
            "marked_count": close_short.marked_count,
            "failed_parent_orders": close_short.failed_parent_orders,
        }

    async def preview_next_parent_order(self, token: str, bom_num: str, day: Optional[date] = None) -> str:
        day = day or date.today()
        sequence = await self._next_sequence(token, bom_num, day, [])
        return queries.build_parent_order_number(bom_num, day, sequence)

    # ------------------------------------------------------------------
    # Job body
    # ------------------------------------------------------------------

    async def run_job(
        self,
        selection: JobSelection,
        token: str,
        triggered_by: TriggeredBy = TriggeredBy.INTERACTIVE,
    ) -> JobSnapshot:
        """
        Process every ready item matching the selection.

        Ends Completed when the ready set is exhausted, Stopped on a stop
        request, Error on an unexpected failure.
        """
        if not self.state.is_running:
            self.state.start(triggered_by)

        try:
            items = await self.queue_manager.select_ready(
                bom_num=selection.bom_num,
                bom_id=selection.bom_id,
                location_group_id=selection.location_group_id,
            )
            if not items:
                logger.info("No pending items")
                return self.state.mark_completed()

            batches = self._plan_batches(items)
            await self._number_batches(token, batches)
            self.state.update(total_items=len(items), total_batches=len(batches))
            logger.info(f"Job found {len(items)} ready item(s) in {len(batches)} batch(es)")

            for index, batch in enumerate(batches, start=1):
                self.state.update(current_batch=index, current_parent_order=batch.parent_order_number)
                logger.info(
                    f"Batch {index}/{len(batches)}: MO {batch.parent_order_number} "
                    f"({len(batch.items)} item(s), {batch.operation_type.value})"
                )
                if await self._run_batch(token, batch):
                    logger.info("Stop requested - job paused, remaining items stay pending")
                    return self.state.mark_stopped()

            snapshot = self.state.mark_completed()
            logger.info(
                f"Job complete: {snapshot.total_items} total, "
                f"{snapshot.success_items} succeeded, {snapshot.failed_items} failed"
            )
            return snapshot

        except asyncio.CancelledError:
            logger.warning("Job task cancelled - remaining items stay pending")
            self.state.mark_stopped()
            raise
        except Exception as e:
            logger.error(f"Job failed: {e}", exc_info=True)
            return self.state.mark_error(str(e))

    def _plan_batches(self, items: List[QueueItem]) -> List[Batch]:
        """
        Group ready items into batches.

        Items already carrying a parent order resume under it; the rest are
        grouped by operation type, BOM and location group (everything the
        parent order payload takes from the batch head) and cut into
        batch_size chunks, in id order.
        """
        resumed: "OrderedDict[str, List[QueueItem]]" = OrderedDict()
        fresh: "OrderedDict[Tuple[OperationType, str, int, int], List[QueueItem]]" = OrderedDict()
        for item in items:
            if item.parent_order_number:
                resumed.setdefault(item.parent_order_number, []).append(item)
            else:
                key = (item.operation_type, item.bom_num, item.bom_id, item.location_group_id)
                fresh.setdefault(key, []).append(item)

        batches = [Batch(group, parent_order_number=number, resumed=True) for number, group in resumed.items()]
        for group in fresh.values():
            for start in range(0, len(group), self.batch_size):
                batches.append(Batch(group[start:start + self.batch_size]))
        return batches

    async def _next_sequence(self, token: str, bom_num: str, day: date, reserved: List[str]) -> int:
        pattern = queries.parent_order_pattern(bom_num, day)
        rows = await self.client.query(token, queries.parent_orders_like(pattern))
        existing = [row["num"] for row in rows if row.get("num")]
        return queries.next_parent_order_sequence(existing + reserved)

    async def _number_batches(self, token: str, batches: List[Batch]) -> None:
        """Assign parent order numbers to new batches, continuing today's sequence per BOM."""
        day = date.today()
        reserved = [b.parent_order_number for b in batches if b.parent_order_number]
        sequences: Dict[str, int] = {}
        for batch in batches:
            if batch.parent_order_number:
                continue
            bom_num = batch.head.bom_num
            if bom_num not in sequences:
                prefix = queries.parent_order_pattern(bom_num, day)[:-1]
                sequences[bom_num] = await self._next_sequence(
                    token, bom_num, day, [n for n in reserved if n.startswith(prefix)]
                )
                logger.info(f"MO sequence for {bom_num} starts at {sequences[bom_num]}")
            batch.parent_order_number = queries.build_parent_order_number(bom_num, day, sequences[bom_num])
            sequences[bom_num] += 1

    async def _run_batch(self, token: str, batch: Batch) -> bool:
        """
        Process one batch.

        Returns:
            True if the job should stop
        """
        number = batch.parent_order_number
        try:
            await self.queue_manager.assign_parent_order(batch.item_ids, number)
            sub_orders = await self._ensure_parent_order(token, batch)
        except (ParentOrderError, RemoteCallError) as e:
            message = f"MO creation failed: {e}"
            logger.error(f"MO {number} - {message}")
            await self.queue_manager.mark_batch_failed(batch.item_ids, number, message)
            for item in batch.items:
                self.state.record_result(
                    ItemResult(item.id, item.barcode, QueueItemStatus.FAILED.value, error=message[:500]),
                    succeeded=False,
                )
            return self.state.stop_requested

        rows = await self.queue_manager.select_by_parent_order(number)
        if len(sub_orders) < len(rows):
            logger.warning(f"MO {number} - {len(sub_orders)} sub-order(s) for {len(rows)} item(s)")

        ready_ids = set(batch.item_ids)
        work: List[Tuple[QueueItem, str]] = []
        for index, row in enumerate(rows):
            if row.id not in ready_ids or row.status != QueueItemStatus.PENDING:
                continue
            if index >= len(sub_orders):
                error = f"No sub-order generated for item in MO {number}"
                await self.queue_manager.mark_failed(row.id, error)
                self.state.record_result(
                    ItemResult(row.id, row.barcode, QueueItemStatus.FAILED.value, error=error), succeeded=False
                )
                continue
            sub_order = row.sub_order_number or sub_orders[index]
            if row.sub_order_number is None:
                await self.queue_manager.assign_sub_order(row.id, sub_order)
                row.sub_order_number = sub_order
            work.append((row, sub_order))

        for start in range(0, len(work), self.concurrent_wo_limit):
            chunk = work[start:start + self.concurrent_wo_limit]
            self.state.update(current_sub_order=chunk[-1][1])
            await asyncio.gather(*(self._process_item(token, row, sub_order) for row, sub_order in chunk))
            if self.state.stop_requested:
                logger.info(f"Stop requested - last completed WO: {chunk[-1][1]}")
                return True
        return self.state.stop_requested

    # ------------------------------------------------------------------
    # Parent orders
    # ------------------------------------------------------------------

    async def _sub_orders(self, token: str, number: str) -> List[str]:
        rows = await self.client.query(token, queries.sub_orders_for_parent(number))
        return [row["num"] for row in rows]

    async def _ensure_parent_order(self, token: str, batch: Batch) -> List[str]:
        """Create and issue the parent order unless that already happened; returns sub-orders by creation order."""
        number = batch.parent_order_number
        rows = await self.client.query(token, queries.parent_order_id(number))
        if rows:
            mo_id = rows[0]["id"]
            logger.info(f"MO {number} already exists (ID: {mo_id})")
        else:
            payload = await self._parent_order_payload(token, batch)
            mo_id = await self.client.create_manufacture_order(token, payload)

        sub_orders = await self._sub_orders(token, number)
        if not sub_orders:
            await self.client.issue_manufacture_order(token, mo_id)
            sub_orders = await self._sub_orders(token, number)
        logger.info(f"MO {number} - Found {len(sub_orders)} WOs")
        return sub_orders

    async def _parent_order_payload(self, token: str, batch: Batch) -> Dict[str, Any]:
        scheduled = utc_now().isoformat()
        if batch.operation_type == OperationType.DISASSEMBLE:
            configurations = await self._disassembly_configurations(token, batch, scheduled)
        else:
            configurations = [
                {
                    "bom": {"id": int(item.bom_id)},
                    "quantity": 1,
                    "sortId": index,
                    "dateScheduled": scheduled,
                }
                for index, item in enumerate(batch.items, start=1)
            ]
        return {
            "locationGroup": {"id": int(batch.head.location_group_id)},
            "dateScheduled": scheduled,
            "number": batch.parent_order_number,
            "configurations": configurations,
        }

    async def _disassembly_configurations(self, token: str, batch: Batch, scheduled: str) -> List[Dict[str, Any]]:
        """One configuration per item, built from its captured structure with roles reversed."""
        part_ids = sorted({entry.part_id for item in batch.items for entry in item.snapshot})
        if not part_ids:
            raise ParentOrderError("No original work order structure found for batch")
        parts = {int(row["part_id"]): row for row in await self.client.query(token, queries.part_details(part_ids))}

        configurations = []
        for index, item in enumerate(batch.items, start=1):
            snapshot = item.snapshot
            if not snapshot:
                raise ParentOrderError(f"No original work order structure found for {item.barcode}")
            lines = []
            for sort_id, entry in enumerate(snapshot, start=1):
                part = parts.get(entry.part_id)
                if part is None:
                    raise ParentOrderError(f"Part {entry.part_id} not found in part details")
                reversed_type = entry.reversed_type
                verb = "Consume" if reversed_type == "Raw Good" else "Produce"
                lines.append(
                    {
                        "description": f"{verb} {part['part_num']}",
                        "part": {"id": entry.part_id},
                        "quantity": format_quantity(entry.quantity),
                        "type": reversed_type,
                        "sortId": sort_id,
                        "uom": {"id": part["uom_id"]},
                    }
                )
            configurations.append(
                {
                    "description": f"Disassemble {item.barcode}",
                    "quantity": 1,
                    "sortId": index,
                    "dateScheduled": scheduled,
                    "items": lines,
                }
            )
        return configurations

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    async def _process_item(self, token: str, item: QueueItem, sub_order: str) -> None:
        """Run one item with at most one immediate retry and persist the outcome."""
        attempt = item.retry_count + 1
        started = utc_now()
        logger.info(f"Processing WO {sub_order} | Barcode {item.barcode}")
        try:
            await self.executor.execute(token, item, sub_order)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.error(f"Failed: {sub_order} | {item.barcode}: {error}", exc_info=not isinstance(e, OrchestratorError))
            await self.queue_manager.record_attempt(item.id, attempt, "failed", sub_order, started, error)

            retryable = getattr(e, "retryable", False)
            if not retryable or item.retry_count >= self.max_retries:
                await self.queue_manager.mark_failed(item.id, error)
                self._record(item, sub_order, QueueItemStatus.FAILED.value, error)
                return

            await self._retry(token, item, sub_order, attempt + 1)
            return

        await self.queue_manager.record_attempt(item.id, attempt, "success", sub_order, started)
        await self.queue_manager.mark_success(item.id)
        self._record(item, sub_order, QueueItemStatus.SUCCESS.value)
        logger.info(f"Success: {sub_order} | {item.barcode}")

    async def _retry(self, token: str, item: QueueItem, sub_order: str, attempt: int) -> None:
        retry_count = item.retry_count + 1
        started = utc_now()
        logger.info(f"Retrying {sub_order}")
        try:
            await self.executor.execute(token, item, sub_order)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.error(f"Failed on retry: {sub_order} | {item.barcode}: {error}")
            await self.queue_manager.record_attempt(item.id, attempt, "failed", sub_order, started, error)
            await self.queue_manager.mark_failed(item.id, error, retry_count=retry_count)
            self._record(item, sub_order, QueueItemStatus.FAILED.value, error)
            return

        await self.queue_manager.record_attempt(item.id, attempt, "success", sub_order, started)
        await self.queue_manager.mark_success(item.id, retry_count=retry_count)
        self._record(item, sub_order, "success-retry")
        logger.info(f"Success on retry: {sub_order}")

    def _record(self, item: QueueItem, sub_order: str, status: str, error: Optional[str] = None) -> None:
        self.state.record_result(
            ItemResult(item.id, item.barcode, status, sub_order_number=sub_order, error=error),
            succeeded=error is None,
        )
