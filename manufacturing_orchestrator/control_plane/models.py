"""
Work Queue Data Models

Defines the persistent QueueItem and ItemAttempt tables.
The queue table is the source of truth across process restarts; the
in-memory job descriptor lives in state_manager.py.
"""
import json
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field
from typing import List, Optional
from datetime import datetime, timezone
from enum import Enum as PyEnum


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timezone-aware UTC; naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class OperationType(str, PyEnum):
    """Kind of manufacturing transaction a queue item drives."""
    BUILD = "build"
    DISASSEMBLE = "disassemble"


class QueueItemStatus(str, PyEnum):
    """Queue item lifecycle status."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CLOSED_SHORT = "closed_short"


TERMINAL_STATUSES = (QueueItemStatus.SUCCESS, QueueItemStatus.FAILED, QueueItemStatus.CLOSED_SHORT)

FINISHED_GOOD = "Finished Good"
RAW_GOOD = "Raw Good"


class ComponentSnapshot(SQLModel):
    """
    One line of a previously completed build, captured so the build can be reversed.

    item_type is the line's role in the original build ("Finished Good" or
    "Raw Good"); a disassembly swaps the roles.
    """
    part_id: int
    item_type: str
    quantity: float = 1
    serial_numbers: List[str] = Field(default_factory=list)

    @property
    def reversed_type(self) -> str:
        return RAW_GOOD if self.item_type == FINISHED_GOOD else FINISHED_GOOD


class QueueItem(SQLModel, table=True):
    """
    One unit of work: a single finished good to build or disassemble.

    parent_order_number is shared by every item of a batch and is never
    reassigned; sub_order_number is assigned once the remote system has
    generated the work order and stays stable across resume.
    """
    __tablename__ = "mo_queue"

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utc_now, index=True, sa_type=DateTime(timezone=True))
    operation_type: OperationType = Field(default=OperationType.BUILD, index=True)

    # Payload
    barcode: str = Field(index=True, description="Finished good barcode")
    serial_numbers: str = Field(default="[]", description="JSON-encoded list of component serials")
    bom_snapshot: Optional[str] = Field(default=None, description="JSON-encoded list of ComponentSnapshot")
    location: Optional[str] = Field(
        default=None, description="FG destination (build) or raw goods return location (disassemble)"
    )
    raw_goods_part_id: Optional[int] = Field(default=None)
    fg_part_id: Optional[int] = Field(default=None)
    bom_num: str = Field(index=True)
    bom_id: int
    location_group_id: int

    # Lifecycle
    status: QueueItemStatus = Field(default=QueueItemStatus.PENDING, index=True)
    scheduled_for: Optional[datetime] = Field(default=None, index=True, sa_type=DateTime(timezone=True))

    # Outcome
    parent_order_number: Optional[str] = Field(default=None, index=True)
    sub_order_number: Optional[str] = Field(default=None)
    error_message: Optional[str] = Field(default=None)
    retry_count: int = Field(default=0)
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    @property
    def serials(self) -> List[str]:
        return json.loads(self.serial_numbers) if self.serial_numbers else []

    @property
    def snapshot(self) -> List[ComponentSnapshot]:
        if not self.bom_snapshot:
            return []
        return [ComponentSnapshot.model_validate(entry) for entry in json.loads(self.bom_snapshot)]

    @staticmethod
    def encode_serials(serials: List[str]) -> str:
        return json.dumps(list(serials))

    @staticmethod
    def encode_snapshot(components: List[ComponentSnapshot]) -> str:
        return json.dumps([component.model_dump() for component in components])


class ItemAttempt(SQLModel, table=True):
    """
    Execution history record.

    Tracks each executor attempt for a queue item, including the retry.
    """
    __tablename__ = "mo_queue_attempts"

    id: Optional[int] = Field(default=None, primary_key=True)
    queue_item_id: int = Field(index=True, description="Reference to QueueItem.id")
    attempt: int = Field(description="Attempt number (1, 2)")
    status: str = Field(description="Execution status: 'success' or 'failed'")
    sub_order_number: Optional[str] = Field(default=None)
    started_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    execution_time_ms: Optional[int] = Field(default=None)
    error: Optional[str] = Field(default=None)
