"""
Scheduler

Starts deferred work when its scheduled time arrives.

A single ticker task, aligned to interval boundaries, checks for due items
and starts a job with a service login. It never competes with a person: a
running job or an active interactive session skips the tick.
"""
import asyncio
from datetime import datetime
from typing import Any, Dict, Optional, Set

import structlog

from ..fishbowl.auth import AuthService
from .exceptions import JobAlreadyRunningError, OrchestratorError
from .job_orchestrator import BatchOrchestrator, JobSelection
from .queue_manager import QueueManager
from .session_store import SessionStore
from .state_manager import TriggeredBy

logger = structlog.get_logger(__name__)


def seconds_until_next_boundary(interval_seconds: float, now: Optional[datetime] = None) -> float:
    """Delay until the next multiple of the interval within the current hour (a full interval when exactly on one)."""
    now = now or datetime.now()
    into_hour = now.minute * 60 + now.second + now.microsecond / 1_000_000
    remainder = into_hour % interval_seconds
    return interval_seconds if remainder == 0 else interval_seconds - remainder


class JobScheduler:
    """Periodic checker that launches scheduled jobs unattended."""

    def __init__(
        self,
        orchestrator: BatchOrchestrator,
        queue_manager: QueueManager,
        auth: AuthService,
        sessions: SessionStore,
        interval_seconds: float = 60,
    ):
        self.orchestrator = orchestrator
        self.queue_manager = queue_manager
        self.auth = auth
        self.sessions = sessions
        self.interval_seconds = interval_seconds

        self._task: Optional[asyncio.Task] = None
        self._checking = False
        self._watchers: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.warning("scheduler_already_running")
            return
        self._task = asyncio.create_task(self._run())
        logger.info("scheduler_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop ticking; a job the scheduler already started keeps running."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("scheduler_stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "checking": self._checking,
            "interval_seconds": self.interval_seconds,
        }

    async def _run(self) -> None:
        while True:
            delay = seconds_until_next_boundary(self.interval_seconds)
            await asyncio.sleep(delay)
            try:
                await self.check()
            except Exception as e:
                logger.error("scheduler_check_error", error=str(e), exc_info=True)

    async def check(self, now: Optional[datetime] = None) -> bool:
        """
        Run one scheduling check.

        Returns:
            True if a job was started
        """
        if self._checking:
            logger.warning("scheduler_check_overlap_skipped")
            return False

        self._checking = True
        try:
            if self.orchestrator.is_running:
                logger.info("scheduler_skip_job_running")
                return False

            if await self.sessions.is_interactive_active():
                logger.info("scheduler_skip_interactive_session")
                return False

            count = await self.queue_manager.count_due_scheduled(now)
            if count == 0:
                return False

            first = await self.queue_manager.first_due_scheduled(now)
            if first is None:
                logger.warning("scheduler_no_pending_after_count")
                return False

            selection = JobSelection(
                bom_num=first.bom_num,
                bom_id=first.bom_id,
                location_group_id=first.location_group_id,
            )
            logger.info("scheduler_due_items_found", count=count, bom_num=first.bom_num)

            token = await self.auth.service_token()
            try:
                self.orchestrator.start(selection, token, TriggeredBy.SCHEDULER)
            except JobAlreadyRunningError:
                logger.info("scheduler_lost_race_to_interactive_start")
                await self.auth.logout(token)
                return False

            watcher = asyncio.create_task(self._logout_when_done(token))
            self._watchers.add(watcher)
            watcher.add_done_callback(self._watchers.discard)
            logger.info("scheduler_job_started", bom_num=first.bom_num, count=count)
            return True

        except OrchestratorError as e:
            logger.error("scheduler_check_failed", error=str(e))
            return False
        finally:
            self._checking = False

    async def _logout_when_done(self, token: str) -> None:
        try:
            snapshot = await self.orchestrator.wait()
            logger.info("scheduler_job_finished", state=snapshot.state.value)
        finally:
            await self.auth.logout(token)
