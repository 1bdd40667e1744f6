"""
Intake

Turns operator input into queue items.

Builds come from (barcode, serial) rows: rows are grouped per barcode and
validated against Fishbowl before queueing. Disassemblies are selected
from finished goods on hand that this service built, and carry a snapshot
of the original work order so the build can be reversed exactly.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ..fishbowl import queries
from ..fishbowl.client import FishbowlClient
from .models import FINISHED_GOOD, ComponentSnapshot, OperationType, QueueItem
from .queue_manager import QueueManager

logger = logging.getLogger(__name__)

Row = Union[Tuple[str, str], Dict[str, Any]]


@dataclass
class ExcludedChunk:
    barcode: str
    serials: List[str]
    reason: str
    missing_serials: List[str] = field(default_factory=list)


@dataclass
class ValidationResult:
    valid: "OrderedDict[str, List[str]]"
    excluded_barcode_exists: List[ExcludedChunk] = field(default_factory=list)
    excluded_missing_serials: List[ExcludedChunk] = field(default_factory=list)

    @property
    def excluded(self) -> List[ExcludedChunk]:
        return self.excluded_barcode_exists + self.excluded_missing_serials


def group_serial_rows(rows: Iterable[Row]) -> "OrderedDict[str, List[str]]":
    """
    Group (barcode, serial) rows into barcode -> serials, keeping first-seen order.

    Rows may be tuples or dicts with "barcode" and "serial" keys; rows with
    an empty barcode or serial are dropped.
    """
    chunks: "OrderedDict[str, List[str]]" = OrderedDict()
    for row in rows:
        if isinstance(row, dict):
            barcode, serial = row.get("barcode"), row.get("serial")
        else:
            barcode, serial = row
        barcode = str(barcode or "").strip()
        serial = str(serial or "").strip()
        if not barcode or not serial:
            continue
        chunks.setdefault(barcode, []).append(serial)
    return chunks


async def _column_values(client: FishbowlClient, token: str, values: Sequence[str], builder, column: str) -> set:
    found = set()
    for chunk in queries.chunked(sorted(set(values))):
        for row in await client.query(token, builder(chunk)):
            found.add(str(row.get(column, "")).strip())
    return found


async def validate_build_chunks(
    client: FishbowlClient,
    token: str,
    chunks: "OrderedDict[str, List[str]]",
) -> ValidationResult:
    """
    Drop chunks that cannot be built.

    A barcode that already exists in Fishbowl is excluded, as is any chunk
    with a serial Fishbowl does not know.
    """
    result = ValidationResult(valid=OrderedDict())
    if not chunks:
        return result

    all_serials = [serial for serials in chunks.values() for serial in serials]
    found_serials = await _column_values(client, token, all_serials, queries.existing_serials, "serial")
    existing_barcodes = await _column_values(client, token, list(chunks), queries.existing_barcodes, "barcode")
    logger.info(
        f"Validated {len(chunks)} barcode(s): {len(found_serials)} serial(s) found, "
        f"{len(existing_barcodes)} barcode(s) already exist"
    )

    for barcode, serials in chunks.items():
        if barcode in existing_barcodes:
            result.excluded_barcode_exists.append(
                ExcludedChunk(barcode, serials, "Barcode already exists in Fishbowl")
            )
            logger.warning(f"Excluding barcode {barcode}: already exists in Fishbowl")
            continue
        missing = [serial for serial in serials if serial not in found_serials]
        if missing:
            result.excluded_missing_serials.append(
                ExcludedChunk(barcode, serials, f"{len(missing)} serial(s) not found in Fishbowl", missing)
            )
            logger.warning(f"Excluding barcode {barcode}: {len(missing)} serial(s) not found")
            continue
        result.valid[barcode] = serials
    return result


def build_queue_items(
    chunks: "OrderedDict[str, List[str]]",
    *,
    bom_num: str,
    bom_id: int,
    location_group_id: int,
    location: str,
    raw_goods_part_id: int,
    fg_part_id: Optional[int] = None,
    scheduled_for: Optional[datetime] = None,
) -> List[QueueItem]:
    return [
        QueueItem(
            operation_type=OperationType.BUILD,
            barcode=barcode,
            serial_numbers=QueueItem.encode_serials(serials),
            location=location,
            raw_goods_part_id=raw_goods_part_id,
            fg_part_id=fg_part_id,
            bom_num=bom_num,
            bom_id=bom_id,
            location_group_id=location_group_id,
            scheduled_for=scheduled_for,
        )
        for barcode, serials in chunks.items()
    ]


def snapshot_from_structure(rows: Iterable[Dict[str, Any]]) -> List[ComponentSnapshot]:
    """Convert work-order-structure query rows into component snapshots."""
    snapshot = []
    for row in rows:
        serials = row.get("serial_numbers") or ""
        snapshot.append(
            ComponentSnapshot(
                part_id=int(row["partid"]),
                item_type=row["woitem_type"],
                quantity=float(row.get("woitem_qty") or 1),
                serial_numbers=[s.strip() for s in str(serials).split(",") if s.strip()],
            )
        )
    return snapshot


async def finished_goods_on_hand(
    client: FishbowlClient,
    token: str,
    queue_manager: QueueManager,
    bom_num: str,
    bom_id: int,
) -> List[Dict[str, Any]]:
    """On-hand finished goods of a BOM that have a successful build record, newest build first."""
    rows = await client.query(token, queries.finished_good_part(bom_num, bom_id))
    if not rows:
        raise ValueError(f"BOM {bom_num} not found or has no finished good item")
    fg_part_id = rows[0]["partid"]

    on_hand = await client.query(token, queries.finished_goods_on_hand(fg_part_id))
    if not on_hand:
        logger.info("No on-hand finished goods found")
        return []

    builds = await queue_manager.latest_successful_builds(bom_num)
    results = []
    for row in on_hand:
        build = builds.get(row["barcode"])
        if build is None:
            continue
        results.append(
            {
                **row,
                "serial_numbers": build.serials,
                "sub_order_number": build.sub_order_number,
                "build_date": build.completed_at or build.created_at,
            }
        )
    results.sort(key=lambda r: r["build_date"], reverse=True)
    logger.info(f"Found {len(results)} on-hand finished good(s) for disassembly")
    return results


async def queue_finished_goods_for_disassembly(
    client: FishbowlClient,
    token: str,
    queue_manager: QueueManager,
    barcodes: Sequence[str],
    *,
    bom_num: str,
    bom_id: int,
    location_group_id: int,
    return_location: Optional[str] = None,
    scheduled_for: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Queue disassemblies for the selected barcodes.

    Each barcode's most recent successful build supplies the sub-order whose
    structure is captured as the item's snapshot.
    """
    builds = await queue_manager.latest_successful_builds(bom_num)
    items: List[QueueItem] = []
    skipped: List[Dict[str, str]] = []

    for barcode in barcodes:
        build = builds.get(barcode)
        if build is None or not build.sub_order_number:
            skipped.append({"barcode": barcode, "reason": "No successful build record"})
            continue

        rows = await client.query(token, queries.work_order_structure(build.sub_order_number))
        snapshot = snapshot_from_structure(rows)
        finished = next((entry for entry in snapshot if entry.item_type == FINISHED_GOOD), None)
        if finished is None:
            skipped.append({"barcode": barcode, "reason": f"No finished good in {build.sub_order_number}"})
            continue

        items.append(
            QueueItem(
                operation_type=OperationType.DISASSEMBLE,
                barcode=barcode,
                serial_numbers=build.serial_numbers,
                bom_snapshot=QueueItem.encode_snapshot(snapshot),
                location=return_location,
                fg_part_id=finished.part_id,
                bom_num=bom_num,
                bom_id=bom_id,
                location_group_id=location_group_id,
            )
        )
        logger.info(f"Disassembly {barcode}: {len(snapshot)} original line(s) from {build.sub_order_number}")

    queued = await queue_manager.enqueue_many(items, scheduled_for=scheduled_for)
    return {"queued": queued, "skipped": skipped}
