"""
Work Order Executor

Drives one queue item's sub-order through the remote transaction sequence:
check, fetch pick, open pick, split/finish pick, complete work order.

None of these steps is transactional on the remote side. Each attempt
derives the current progress first and skips the steps already applied, so
re-running an item after a crash or stop never duplicates work.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..fishbowl import queries
from ..fishbowl.client import FishbowlClient
from ..fishbowl.records import LocationRef, Pick, WorkOrder
from .exceptions import RemoteCallError, WorkOrderDataError
from .idempotency_engine import (
    PICK_ITEM_FINISHED_STATUS,
    WO_FINISH_STATUS,
    WorkOrderProgress,
    derive_progress,
    is_work_order_complete,
)
from .models import FINISHED_GOOD, RAW_GOOD, OperationType, QueueItem, utc_now

logger = logging.getLogger(__name__)

PICK_LINE_LOCATION_TYPE = 20


@dataclass(frozen=True)
class ExecutionResult:
    """What an executor run found and did."""
    sub_order_number: str
    starting_progress: WorkOrderProgress
    already_complete: bool = False


def _timestamp() -> str:
    return utc_now().strftime("%Y-%m-%dT%H:%M:%S")


class WorkOrderExecutor:
    """
    Executes single sub-orders against Fishbowl.

    The executor holds no state between calls; everything it needs to resume
    is either on the queue item or on the remote side.
    """

    def __init__(self, client: FishbowlClient):
        self.client = client

    async def execute(self, token: str, item: QueueItem, sub_order_number: str) -> ExecutionResult:
        """
        Drive one item's sub-order to completion.

        Raises:
            RemoteCallError: A remote call failed (retryable)
            WorkOrderDataError: The item's data cannot drive the transaction
        """
        if item.operation_type == OperationType.DISASSEMBLE:
            return await self._disassemble(token, item, sub_order_number)
        return await self._build(token, item, sub_order_number)

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _check_completed(self, token: str, sub_order_number: str) -> Optional[WorkOrder]:
        """Fetch the work order for the idempotency check; an unreadable order is treated as not started."""
        try:
            return await self.client.get_work_order(token, sub_order_number)
        except RemoteCallError as e:
            logger.warning(f"WO {sub_order_number} - Idempotency check could not read work order: {e}")
            return None

    async def _open_pick(self, token: str, sub_order_number: str, pick: Pick, progress: WorkOrderProgress) -> Pick:
        if progress >= WorkOrderProgress.TRANSACTION_OPEN:
            logger.info(f"WO {sub_order_number} - Pick already open (Status: {pick.status}), skipping open step")
            return pick
        pick.set_dates(_timestamp())
        saved = await self.client.save_pick(token, pick)
        logger.info(f"WO {sub_order_number} - Pick opened")
        return saved

    async def _lookup_location(self, token: str, location: Optional[str]) -> Optional[LocationRef]:
        if not location:
            return None
        rows = await self.client.query(token, queries.location_lookup(location))
        if not rows:
            logger.warning(f"Location not found: {location}")
            return None
        found = LocationRef.from_row(rows[0])
        logger.info(f"Destination location {found.label} (ID: {found.location_id})")
        return found

    async def _begin(self, token: str, sub_order_number: str) -> Tuple[Optional[Pick], WorkOrderProgress]:
        work_order = await self._check_completed(token, sub_order_number)
        if is_work_order_complete(work_order):
            logger.info(
                f"WO {sub_order_number} - Already completed (Status: {work_order.status_id}), skipping processing"
            )
            return None, WorkOrderProgress.COMPLETED

        pick = await self.client.get_pick(token, sub_order_number)
        return pick, derive_progress(work_order, pick)

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    async def _build(self, token: str, item: QueueItem, sub_order_number: str) -> ExecutionResult:
        pick, progress = await self._begin(token, sub_order_number)
        if progress == WorkOrderProgress.COMPLETED:
            return ExecutionResult(sub_order_number, progress, already_complete=True)

        pick = await self._open_pick(token, sub_order_number, pick, progress)

        if progress >= WorkOrderProgress.SPLIT:
            logger.info(f"WO {sub_order_number} - Pick already split in a previous run, skipping split step")
        else:
            await self._split_pick(token, item, sub_order_number, pick)

        work_order = await self.client.get_work_order(token, sub_order_number)
        work_order.mark_finished(WO_FINISH_STATUS, _timestamp())

        finished_goods = work_order.finished_good_items()
        if finished_goods:
            line = finished_goods[0]
            line.set_quantity_used(1)
            barcode_tracking = line.barcode_tracking()
            if barcode_tracking:
                line.set_tracking(barcode_tracking, [item.barcode])
            destination = await self._lookup_location(token, item.location)
            if destination:
                line.set_destination(destination)

        await self.client.save_work_order(token, work_order)
        logger.info(f"WO {sub_order_number} - Completed with barcode {item.barcode}")
        return ExecutionResult(sub_order_number, progress)

    async def _split_pick(self, token: str, item: QueueItem, sub_order_number: str, pick: Pick) -> None:
        """Rewrite the pick to one finished line per physical location of the item's serials."""
        serials = item.serials
        if not serials:
            raise WorkOrderDataError(f"No serial numbers queued for barcode {item.barcode}")
        if item.raw_goods_part_id is None:
            raise WorkOrderDataError(f"No raw goods part selected for barcode {item.barcode}")

        rows = await self.client.query(
            token, queries.serial_locations(item.bom_num, item.raw_goods_part_id, serials)
        )
        if not rows:
            raise WorkOrderDataError("No serial locations found")

        groups: Dict[int, Tuple[LocationRef, List[str]]] = OrderedDict()
        for row in rows:
            location_id = row["location_id"]
            if location_id not in groups:
                groups[location_id] = (LocationRef.from_row(row, default_type_id=PICK_LINE_LOCATION_TYPE), [])
            groups[location_id][1].append(row["serial"])

        first = pick.first_item()
        if first is None:
            raise WorkOrderDataError(f"Pick for {sub_order_number} has no lines")
        serial_tracking = first.serial_tracking()
        if serial_tracking is None:
            raise WorkOrderDataError("Could not find serial tracking")

        lines = [
            first.split_copy(
                first.pick_item_id if index == 0 else 0,
                location,
                location_serials,
                serial_tracking,
                PICK_ITEM_FINISHED_STATUS,
            )
            for index, (location, location_serials) in enumerate(groups.values())
        ]
        pick.replace_items(lines)
        await self.client.save_pick(token, pick)
        logger.info(f"WO {sub_order_number} - Pick split across {len(lines)} location(s)")

    # ------------------------------------------------------------------
    # Disassembly
    # ------------------------------------------------------------------

    async def _disassemble(self, token: str, item: QueueItem, sub_order_number: str) -> ExecutionResult:
        snapshot = item.snapshot
        if not snapshot:
            raise WorkOrderDataError(f"No original work order structure found for {item.barcode}")
        consumed = next((entry for entry in snapshot if entry.item_type == FINISHED_GOOD), None)
        if consumed is None:
            raise WorkOrderDataError("No Finished Good found in original work order structure")

        pick, progress = await self._begin(token, sub_order_number)
        if progress == WorkOrderProgress.COMPLETED:
            return ExecutionResult(sub_order_number, progress, already_complete=True)

        pick = await self._open_pick(token, sub_order_number, pick, progress)

        line = pick.item_for_part(consumed.part_id)
        if line is None:
            logger.warning(f"DISASSEMBLY - WO {sub_order_number} has no pick line for part {consumed.part_id}")
        elif line.has_tracking():
            logger.info(f"DISASSEMBLY - WO {sub_order_number} pick already tracked, skipping pick step")
        else:
            line.finish(PICK_ITEM_FINISHED_STATUS, 1)
            barcode_tracking = line.barcode_tracking()
            if barcode_tracking:
                line.set_tracking(barcode_tracking, [item.barcode])
            await self.client.save_pick(token, pick)

        work_order = await self.client.get_work_order(token, sub_order_number)
        destination = await self._lookup_location(token, item.location)
        work_order.mark_finished(WO_FINISH_STATUS, _timestamp())

        for produced in work_order.finished_good_items():
            original = next(
                (e for e in snapshot if e.part_id == produced.part_id and e.item_type == RAW_GOOD),
                None,
            )
            if original is None:
                logger.warning(
                    f"DISASSEMBLY - No original line for part {produced.part_num}, skipping tracking"
                )
                continue
            produced.set_quantity_used(original.quantity)
            serial_tracking = produced.serial_tracking()
            if original.serial_numbers and serial_tracking:
                produced.set_tracking(serial_tracking, original.serial_numbers)
            if destination:
                produced.set_destination(destination)

        await self.client.save_work_order(token, work_order)
        logger.info(f"DISASSEMBLY - WO {sub_order_number} completed for barcode {item.barcode}")
        return ExecutionResult(sub_order_number, progress)
