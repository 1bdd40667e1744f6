"""
Orchestrator exceptions.

Per-item failures carry a ``retryable`` flag that the batch orchestrator
consults before its single immediate retry.
"""
from typing import Optional


class OrchestratorError(Exception):
    """Base class for every error raised by the orchestrator."""

    retryable = False


class RemoteCallError(OrchestratorError):
    """A Fishbowl call failed at the HTTP level or returned a non-success status code."""

    retryable = True

    def __init__(self, step: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.step = step
        self.status_code = status_code


class WorkOrderDataError(OrchestratorError):
    """The queued data cannot drive the remote transaction (missing serials, snapshot, tracking)."""


class ParentOrderError(OrchestratorError):
    """Creating or issuing a batch's parent order failed."""


class AuthenticationError(OrchestratorError):
    """Login to Fishbowl failed or returned no token."""


class ConfigurationError(OrchestratorError):
    """Required settings are missing."""


class JobAlreadyRunningError(OrchestratorError):
    """A job is already running in this process."""

    def __init__(self, message: str = "A job is already running"):
        super().__init__(message)


class NoJobRunningError(OrchestratorError):
    """A stop was requested while no job is running."""

    def __init__(self, message: str = "No job is currently running"):
        super().__init__(message)


class InvalidTransitionError(OrchestratorError):
    """The job state machine does not allow the requested transition."""


class QueueItemNotFoundError(OrchestratorError):
    """A queue row being updated was removed underneath the running job."""
