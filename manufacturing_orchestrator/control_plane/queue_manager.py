"""
Queue Manager

Persistent work queue on top of the mo_queue table.
Every mutation commits on its own so that a crash at any point leaves the
queue in a state a later run can resume from.
"""
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, func, update
from sqlmodel import col, select

from .exceptions import QueueItemNotFoundError
from .models import ItemAttempt, OperationType, QueueItem, QueueItemStatus, as_utc, utc_now

logger = logging.getLogger(__name__)


class QueueManager:
    """
    Reads and writes queue items.

    Only the batch orchestrator mutates items while they are being processed;
    intake inserts them and operator actions delete or close them.
    """

    def __init__(self, db):
        """
        Initialize queue manager.

        Args:
            db: Database instance (provides async sessions)
        """
        self.db = db

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def enqueue(self, item: QueueItem) -> QueueItem:
        """Insert a single queue item."""
        item.scheduled_for = as_utc(item.scheduled_for)
        async with self.db.session() as session:
            session.add(item)
            await session.commit()
            await session.refresh(item)
        logger.info(f"Queued {item.operation_type.value} for barcode {item.barcode} (id {item.id})")
        return item

    async def enqueue_many(
        self,
        items: Sequence[QueueItem],
        scheduled_for: Optional[datetime] = None,
        replace_pending: bool = True,
    ) -> int:
        """
        Insert a batch of queue items in one transaction.

        Stale pending rows for the same barcodes are removed first so a
        re-uploaded barcode is never queued twice. A pending row that already
        belongs to a parent order is kept and the new item for its barcode
        is dropped instead; that row is resumed under its parent order.

        Returns:
            Number of inserted rows
        """
        if not items:
            return 0
        scheduled_for = as_utc(scheduled_for)

        async with self.db.session() as session:
            if replace_pending:
                barcodes = [item.barcode for item in items]
                result = await session.execute(
                    select(QueueItem.barcode).where(
                        QueueItem.status == QueueItemStatus.PENDING,
                        col(QueueItem.barcode).in_(barcodes),
                        col(QueueItem.parent_order_number).is_not(None),
                    )
                )
                assigned = set(result.scalars().all())
                if assigned:
                    logger.warning(
                        f"Skipping {len(assigned)} barcode(s) already pending under a parent order: "
                        f"{', '.join(sorted(assigned))}"
                    )
                    items = [item for item in items if item.barcode not in assigned]

                result = await session.execute(
                    delete(QueueItem).where(
                        QueueItem.status == QueueItemStatus.PENDING,
                        col(QueueItem.barcode).in_(barcodes),
                        col(QueueItem.parent_order_number).is_(None),
                    )
                )
                if result.rowcount:
                    logger.info(f"Removed {result.rowcount} stale pending record(s) before queueing")

            for item in items:
                item.scheduled_for = scheduled_for if scheduled_for is not None else as_utc(item.scheduled_for)
                session.add(item)
            await session.commit()

        logger.info(
            f"Queued {len(items)} item(s)"
            + (f" for {scheduled_for.isoformat()}" if scheduled_for else " (immediate)")
        )
        return len(items)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _ready_clause(self, now: datetime):
        return (
            QueueItem.status == QueueItemStatus.PENDING,
            (col(QueueItem.scheduled_for).is_(None)) | (col(QueueItem.scheduled_for) <= now),
        )

    async def select_ready(
        self,
        now: Optional[datetime] = None,
        bom_num: Optional[str] = None,
        bom_id: Optional[int] = None,
        location_group_id: Optional[int] = None,
    ) -> List[QueueItem]:
        """
        Get pending items whose scheduled time is unset or has arrived, in insertion order.

        Args:
            now: Reference time (defaults to current UTC)
            bom_num: Restrict to one BOM when given
            bom_id: Restrict to one BOM id when given
            location_group_id: Restrict to one location group when given
        """
        now = as_utc(now) or utc_now()
        statement = select(QueueItem).where(*self._ready_clause(now))
        if bom_num:
            statement = statement.where(QueueItem.bom_num == bom_num)
        if bom_id is not None:
            statement = statement.where(QueueItem.bom_id == bom_id)
        if location_group_id is not None:
            statement = statement.where(QueueItem.location_group_id == location_group_id)
        statement = statement.order_by(QueueItem.id)

        async with self.db.session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def count_due_scheduled(self, now: Optional[datetime] = None) -> int:
        """Count pending items with a scheduled time that has arrived."""
        now = as_utc(now) or utc_now()
        statement = select(func.count()).select_from(QueueItem).where(
            QueueItem.status == QueueItemStatus.PENDING,
            col(QueueItem.scheduled_for).is_not(None),
            col(QueueItem.scheduled_for) <= now,
        )
        async with self.db.session() as session:
            result = await session.execute(statement)
            return int(result.scalar_one())

    async def first_due_scheduled(self, now: Optional[datetime] = None) -> Optional[QueueItem]:
        """Get the oldest due scheduled item (used to derive the scheduler's selection)."""
        now = as_utc(now) or utc_now()
        statement = (
            select(QueueItem)
            .where(
                QueueItem.status == QueueItemStatus.PENDING,
                col(QueueItem.scheduled_for).is_not(None),
                col(QueueItem.scheduled_for) <= now,
            )
            .order_by(QueueItem.id)
            .limit(1)
        )
        async with self.db.session() as session:
            result = await session.execute(statement)
            return result.scalars().first()

    async def pending_count(self) -> int:
        """Count all pending items regardless of schedule."""
        statement = select(func.count()).select_from(QueueItem).where(
            QueueItem.status == QueueItemStatus.PENDING
        )
        async with self.db.session() as session:
            result = await session.execute(statement)
            return int(result.scalar_one())

    async def pending_job_info(self) -> Optional[Dict[str, Any]]:
        """BOM and location group of the first pending item, for resuming from the UI."""
        statement = (
            select(QueueItem)
            .where(QueueItem.status == QueueItemStatus.PENDING)
            .order_by(QueueItem.id)
            .limit(1)
        )
        async with self.db.session() as session:
            result = await session.execute(statement)
            item = result.scalars().first()
        if item is None:
            return None
        return {
            "bom_num": item.bom_num,
            "bom_id": item.bom_id,
            "location_group_id": item.location_group_id,
        }

    async def select_by_parent_order(self, parent_order_number: str) -> List[QueueItem]:
        """All items of one batch, in insertion order (the order sub-orders are zipped against)."""
        statement = (
            select(QueueItem)
            .where(QueueItem.parent_order_number == parent_order_number)
            .order_by(QueueItem.id)
        )
        async with self.db.session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def get(self, item_id: int) -> Optional[QueueItem]:
        async with self.db.session() as session:
            return await session.get(QueueItem, item_id)

    async def open_parent_orders(self) -> List[str]:
        """Distinct parent orders that still have un-terminated items."""
        statement = (
            select(QueueItem.parent_order_number)
            .where(
                QueueItem.status == QueueItemStatus.PENDING,
                col(QueueItem.parent_order_number).is_not(None),
            )
            .distinct()
        )
        async with self.db.session() as session:
            result = await session.execute(statement)
            return [row for row in result.scalars().all() if row]

    # ------------------------------------------------------------------
    # Processing updates
    # ------------------------------------------------------------------

    async def assign_parent_order(self, item_ids: Iterable[int], parent_order_number: str) -> None:
        """Persist the batch's parent order on rows that do not have one yet."""
        ids = list(item_ids)
        if not ids:
            return
        async with self.db.session() as session:
            await session.execute(
                update(QueueItem)
                .where(col(QueueItem.id).in_(ids), col(QueueItem.parent_order_number).is_(None))
                .values(parent_order_number=parent_order_number)
            )
            await session.commit()

    async def assign_sub_order(self, item_id: int, sub_order_number: str) -> None:
        """Persist a generated sub-order number; an already assigned number is kept."""
        async with self.db.session() as session:
            await session.execute(
                update(QueueItem)
                .where(QueueItem.id == item_id, col(QueueItem.sub_order_number).is_(None))
                .values(sub_order_number=sub_order_number)
            )
            await session.commit()

    async def mark_success(self, item_id: int, retry_count: Optional[int] = None) -> None:
        values: Dict[str, Any] = {
            "status": QueueItemStatus.SUCCESS,
            "error_message": None,
            "completed_at": utc_now(),
        }
        if retry_count is not None:
            values["retry_count"] = retry_count
        await self._update(item_id, values)

    async def mark_failed(self, item_id: int, error: str, retry_count: Optional[int] = None) -> None:
        values: Dict[str, Any] = {
            "status": QueueItemStatus.FAILED,
            "error_message": error,
            "completed_at": utc_now(),
        }
        if retry_count is not None:
            values["retry_count"] = retry_count
        await self._update(item_id, values)

    async def mark_batch_failed(self, item_ids: Iterable[int], parent_order_number: str, error: str) -> None:
        """Structural failure: every item of the batch fails with the same message."""
        ids = list(item_ids)
        if not ids:
            return
        async with self.db.session() as session:
            await session.execute(
                update(QueueItem)
                .where(col(QueueItem.id).in_(ids))
                .values(
                    status=QueueItemStatus.FAILED,
                    parent_order_number=parent_order_number,
                    error_message=error[:500],
                    completed_at=utc_now(),
                )
            )
            await session.commit()

    async def _update(self, item_id: int, values: Dict[str, Any]) -> None:
        async with self.db.session() as session:
            result = await session.execute(update(QueueItem).where(QueueItem.id == item_id).values(**values))
            await session.commit()
        if not result.rowcount:
            raise QueueItemNotFoundError(f"Queue item {item_id} no longer exists")

    async def record_attempt(
        self,
        item_id: int,
        attempt: int,
        status: str,
        sub_order_number: Optional[str],
        started_at: datetime,
        error: Optional[str] = None,
    ) -> None:
        """Record one executor attempt."""
        completed_at = utc_now()
        execution = ItemAttempt(
            queue_item_id=item_id,
            attempt=attempt,
            status=status,
            sub_order_number=sub_order_number,
            started_at=started_at,
            completed_at=completed_at,
            execution_time_ms=int((completed_at - started_at).total_seconds() * 1000),
            error=error,
        )
        async with self.db.session() as session:
            session.add(execution)
            await session.commit()

    async def attempts_for(self, item_id: int) -> List[ItemAttempt]:
        statement = select(ItemAttempt).where(ItemAttempt.queue_item_id == item_id).order_by(ItemAttempt.id)
        async with self.db.session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def mark_pending_closed_short(self) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                update(QueueItem)
                .where(QueueItem.status == QueueItemStatus.PENDING)
                .values(status=QueueItemStatus.CLOSED_SHORT, completed_at=utc_now())
            )
            await session.commit()
            return result.rowcount or 0

    async def delete_pending_and_closed_short(self) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                delete(QueueItem).where(
                    col(QueueItem.status).in_([QueueItemStatus.PENDING, QueueItemStatus.CLOSED_SHORT])
                )
            )
            await session.commit()
            return result.rowcount or 0

    async def find_pending_barcodes(self, barcodes: Sequence[str]) -> List[str]:
        if not barcodes:
            return []
        statement = select(QueueItem.barcode).where(
            QueueItem.status == QueueItemStatus.PENDING,
            col(QueueItem.barcode).in_(list(barcodes)),
        )
        async with self.db.session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def delete_pending_barcodes(self, barcodes: Sequence[str]) -> List[str]:
        """
        Delete pending rows for the given barcodes; returns the barcodes that were deleted.

        Rows already assigned to a parent order are kept: their sub-orders
        exist remotely and are paired with rows by position.
        """
        if not barcodes:
            return []
        unassigned = (
            QueueItem.status == QueueItemStatus.PENDING,
            col(QueueItem.barcode).in_(list(barcodes)),
            col(QueueItem.parent_order_number).is_(None),
        )
        async with self.db.session() as session:
            result = await session.execute(select(QueueItem.barcode).where(*unassigned))
            found = list(result.scalars().all())
            if not found:
                return []
            await session.execute(delete(QueueItem).where(*unassigned))
            await session.commit()
        return found

    async def failed_items(self, limit: int = 500) -> List[QueueItem]:
        statement = (
            select(QueueItem)
            .where(QueueItem.status == QueueItemStatus.FAILED)
            .order_by(col(QueueItem.completed_at).desc())
            .limit(limit)
        )
        async with self.db.session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def scheduled_groups(self) -> List[Dict[str, Any]]:
        """Pending scheduled items grouped by scheduled time and BOM."""
        statement = (
            select(QueueItem.scheduled_for, QueueItem.bom_num, QueueItem.operation_type, func.count())
            .where(
                QueueItem.status == QueueItemStatus.PENDING,
                col(QueueItem.scheduled_for).is_not(None),
            )
            .group_by(QueueItem.scheduled_for, QueueItem.bom_num, QueueItem.operation_type)
            .order_by(QueueItem.scheduled_for)
        )
        async with self.db.session() as session:
            result = await session.execute(statement)
            rows = result.all()
        return [
            {
                "scheduled_for": as_utc(row[0]),
                "bom_num": row[1],
                "operation_type": row[2],
                "count": row[3],
            }
            for row in rows
        ]

    async def delete_scheduled(self, scheduled_for: datetime) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                delete(QueueItem).where(
                    QueueItem.status == QueueItemStatus.PENDING,
                    QueueItem.scheduled_for == as_utc(scheduled_for),
                    col(QueueItem.parent_order_number).is_(None),
                )
            )
            await session.commit()
            return result.rowcount or 0

    async def latest_successful_builds(self, bom_num: str) -> Dict[str, QueueItem]:
        """Most recent successful build per barcode, newest first."""
        statement = (
            select(QueueItem)
            .where(
                QueueItem.status == QueueItemStatus.SUCCESS,
                QueueItem.operation_type == OperationType.BUILD,
                QueueItem.bom_num == bom_num,
            )
            .order_by(col(QueueItem.created_at).desc(), col(QueueItem.id).desc())
        )
        async with self.db.session() as session:
            result = await session.execute(statement)
            items = result.scalars().all()

        builds: "OrderedDict[str, QueueItem]" = OrderedDict()
        for item in items:
            builds.setdefault(item.barcode, item)
        return builds
