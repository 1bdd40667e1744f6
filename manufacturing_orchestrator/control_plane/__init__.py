"""
Control Plane Core

Core orchestration components: models, queue, state, exceptions.
"""

from .exceptions import (
    JobAlreadyRunningError,
    NoJobRunningError,
    OrchestratorError,
    RemoteCallError,
    WorkOrderDataError,
)
from .models import ItemAttempt, OperationType, QueueItem, QueueItemStatus
from .queue_manager import QueueManager
from .state_manager import JobSnapshot, JobState, JobStateMachine, TriggeredBy

__all__ = [
    "ItemAttempt",
    "OperationType",
    "QueueItem",
    "QueueItemStatus",
    "QueueManager",
    "JobSnapshot",
    "JobState",
    "JobStateMachine",
    "TriggeredBy",
    "OrchestratorError",
    "RemoteCallError",
    "WorkOrderDataError",
    "JobAlreadyRunningError",
    "NoJobRunningError",
]
