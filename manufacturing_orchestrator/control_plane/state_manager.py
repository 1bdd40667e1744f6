"""
State Manager

In-process job state machine.

The descriptor is an immutable JobSnapshot that is swapped on every
transition, so status polling always reads a consistent view without a
lock. Only the single worker task (and the stop/reset control surface)
writes it.
"""
import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .exceptions import InvalidTransitionError, JobAlreadyRunningError, NoJobRunningError

logger = logging.getLogger(__name__)

MAX_RESULTS = 500


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
    COMPLETED = "completed"
    ERROR = "error"


class TriggeredBy(str, Enum):
    INTERACTIVE = "interactive"
    SCHEDULER = "scheduler"


ALLOWED_TRANSITIONS = {
    JobState.IDLE: {JobState.RUNNING, JobState.IDLE},
    JobState.RUNNING: {JobState.STOPPED, JobState.COMPLETED, JobState.ERROR},
    JobState.STOPPED: {JobState.RUNNING, JobState.IDLE},
    JobState.COMPLETED: {JobState.RUNNING, JobState.IDLE},
    JobState.ERROR: {JobState.RUNNING, JobState.IDLE},
}


@dataclass(frozen=True)
class ItemResult:
    """Outcome of one processed queue item, kept for the status view."""
    item_id: int
    barcode: str
    status: str
    sub_order_number: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class JobSnapshot:
    """Read-only view of the current job."""
    state: JobState = JobState.IDLE
    stop_requested: bool = False
    triggered_by: Optional[TriggeredBy] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    total_items: int = 0
    processed_items: int = 0
    success_items: int = 0
    failed_items: int = 0
    current_batch: int = 0
    total_batches: int = 0
    current_parent_order: Optional[str] = None
    current_sub_order: Optional[str] = None
    error: Optional[str] = None
    results: Tuple[ItemResult, ...] = field(default_factory=tuple)

    @property
    def is_running(self) -> bool:
        return self.state == JobState.RUNNING

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["triggered_by"] = self.triggered_by.value if self.triggered_by else None
        data["start_time"] = self.start_time.isoformat() if self.start_time else None
        data["end_time"] = self.end_time.isoformat() if self.end_time else None
        data["results"] = [asdict(result) for result in self.results]
        return data


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobStateMachine:
    """
    Owns the single job descriptor for this process.

    Idle -> Running -> Stopped | Completed | Error, and from any of those
    back to Running (resume) or Idle (reset). Only one Running job exists.
    """

    def __init__(self):
        self._snapshot = JobSnapshot()

    def snapshot(self) -> JobSnapshot:
        return self._snapshot

    @property
    def state(self) -> JobState:
        return self._snapshot.state

    @property
    def is_running(self) -> bool:
        return self._snapshot.is_running

    @property
    def stop_requested(self) -> bool:
        return self._snapshot.stop_requested

    def _transition(self, target: JobState, **changes) -> JobSnapshot:
        current = self._snapshot.state
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(f"Cannot move job from {current.value} to {target.value}")
        self._snapshot = replace(self._snapshot, state=target, **changes)
        logger.info(f"Job state {current.value} -> {target.value}")
        return self._snapshot

    def start(self, triggered_by: TriggeredBy) -> JobSnapshot:
        """Begin a new run; counters are reset, previous results dropped."""
        if self.is_running:
            raise JobAlreadyRunningError()
        fresh = JobSnapshot()
        self._snapshot = replace(fresh, state=self._snapshot.state)
        return self._transition(JobState.RUNNING, triggered_by=triggered_by, start_time=_now())

    def request_stop(self) -> JobSnapshot:
        if not self.is_running:
            raise NoJobRunningError()
        self._snapshot = replace(self._snapshot, stop_requested=True)
        logger.info("Stop requested - job will pause after the current item completes")
        return self._snapshot

    def mark_stopped(self) -> JobSnapshot:
        return self._transition(JobState.STOPPED, stop_requested=False, end_time=_now())

    def mark_completed(self) -> JobSnapshot:
        return self._transition(JobState.COMPLETED, stop_requested=False, end_time=_now())

    def mark_error(self, error: str) -> JobSnapshot:
        return self._transition(JobState.ERROR, stop_requested=False, error=error, end_time=_now())

    def reset(self) -> JobSnapshot:
        if self.is_running:
            raise JobAlreadyRunningError("Cannot reset while a job is running")
        self._transition(JobState.IDLE)
        self._snapshot = JobSnapshot()
        return self._snapshot

    # Progress updates (worker only)

    def update(self, **changes) -> JobSnapshot:
        if "state" in changes:
            raise InvalidTransitionError("Use the transition methods to change state")
        self._snapshot = replace(self._snapshot, **changes)
        return self._snapshot

    def record_result(self, result: ItemResult, succeeded: bool) -> JobSnapshot:
        current = self._snapshot
        results = (current.results + (result,))[-MAX_RESULTS:]
        self._snapshot = replace(
            current,
            processed_items=current.processed_items + 1,
            success_items=current.success_items + (1 if succeeded else 0),
            failed_items=current.failed_items + (0 if succeeded else 1),
            results=results,
        )
        return self._snapshot
