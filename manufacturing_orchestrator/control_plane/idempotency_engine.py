"""
Idempotency Engine

Derives how far a work order has already progressed on the remote side.

The remote system has no transactional rollback, so every attempt first
asks Fishbowl where the work order stands and then enters the step
sequence at the matching point instead of repeating finished steps.
"""
import logging
from enum import IntEnum
from typing import Optional

from ..fishbowl.records import Pick, WorkOrder

logger = logging.getLogger(__name__)

# Fishbowl status codes
WO_COMPLETE_STATUS = 50
WO_FINISH_STATUS = 40
PICK_IN_PROGRESS_STATUS = 40
PICK_ITEM_FINISHED_STATUS = 40


class WorkOrderProgress(IntEnum):
    """Remote progress of one sub-order, ordered so later steps compare greater."""
    NOT_STARTED = 0
    TRANSACTION_OPEN = 1
    SPLIT = 2
    COMPLETED = 3


def is_work_order_complete(work_order: Optional[WorkOrder]) -> bool:
    return work_order is not None and work_order.status_id >= WO_COMPLETE_STATUS


def derive_progress(work_order: Optional[WorkOrder], pick: Optional[Pick] = None) -> WorkOrderProgress:
    """
    Map remote state to a progress step.

    Args:
        work_order: Work order as currently stored remotely (None if it could not be read)
        pick: The work order's pick, if already fetched

    Returns:
        WorkOrderProgress
    """
    if is_work_order_complete(work_order):
        return WorkOrderProgress.COMPLETED
    if pick is None or pick.status < PICK_IN_PROGRESS_STATUS:
        return WorkOrderProgress.NOT_STARTED
    first = pick.first_item()
    if first is not None and first.has_tracking():
        return WorkOrderProgress.SPLIT
    return WorkOrderProgress.TRANSACTION_OPEN
