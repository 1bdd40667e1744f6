"""
Drain Controller

Graceful shutdown: stop taking new work, let the running job reach an item
boundary, then release connections.
"""
import asyncio
import time
from typing import Awaitable, Callable, List, Optional

import structlog

from .exceptions import NoJobRunningError
from .job_orchestrator import BatchOrchestrator
from .scheduler import JobScheduler

logger = structlog.get_logger(__name__)


class DrainController:
    """
    Runs the shutdown sequence.

    The running job is asked to stop and given drain_timeout_seconds to
    reach an item boundary. Past that the job task is cancelled, and only
    once it has unwound are connections closed. An item interrupted
    mid-transaction stays pending and is resumed from remote state on the
    next start.
    """

    def __init__(
        self,
        orchestrator: BatchOrchestrator,
        scheduler: Optional[JobScheduler] = None,
        timeout_seconds: float = 30.0,
        poll_interval_seconds: float = 0.5,
    ):
        self.orchestrator = orchestrator
        self.scheduler = scheduler
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._closers: List[Callable[[], Awaitable[None]]] = []

    def add_closer(self, closer: Callable[[], Awaitable[None]]) -> None:
        """Register a resource release to run after the job has drained."""
        self._closers.append(closer)

    async def drain(self) -> bool:
        """
        Execute the shutdown sequence.

        Returns:
            True if no job was left running
        """
        logger.info("drain_started")
        if self.scheduler is not None:
            await self.scheduler.stop()

        drained = await self._wait_for_job()

        for closer in self._closers:
            try:
                await closer()
            except Exception as e:
                logger.error("drain_close_failed", error=str(e))

        logger.info("drain_complete", drained=drained)
        return drained

    async def _wait_for_job(self) -> bool:
        if not self.orchestrator.is_running:
            return True

        try:
            self.orchestrator.stop()
        except NoJobRunningError:
            return True
        logger.info("drain_stop_requested", timeout_seconds=self.timeout_seconds)

        deadline = time.monotonic() + self.timeout_seconds
        while self.orchestrator.is_running:
            if time.monotonic() >= deadline:
                snapshot = self.orchestrator.status()
                logger.error(
                    "drain_timeout_job_still_running",
                    timeout_seconds=self.timeout_seconds,
                    current_parent_order=snapshot.current_parent_order,
                    current_sub_order=snapshot.current_sub_order,
                    note="in-flight item will be resumed from remote state on next start",
                )
                snapshot = await self.orchestrator.cancel()
                logger.warning("drain_job_cancelled", state=snapshot.state.value)
                return False
            await asyncio.sleep(self.poll_interval_seconds)

        logger.info("drain_job_stopped", state=self.orchestrator.status().state.value)
        return True
