"""
Error taxonomy for the repose pipeline.

Task-level errors (validation, transient, terminal) stay attached to a single
output. Stall and persistence errors are about run rows and store writes.
"""

from typing import Optional


class PipelineError(Exception):
    """Base error for the repose pipeline."""


class ValidationError(PipelineError):
    """A required input view is missing; the task is skipped, the run is not failed."""

    def __init__(self, message: str, *, shot_type: Optional[str] = None):
        super().__init__(message)
        self.shot_type = shot_type


class TransientServiceError(PipelineError):
    """Rate limited or temporarily unavailable; retried within the task's budget."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class TerminalServiceError(PipelineError):
    """The generation service rejected the task; no automatic retry."""


class StallError(PipelineError):
    """A running run stopped sending heartbeats."""

    MESSAGE = "Job stalled - no heartbeat"

    def __init__(self, run_id: str, message: str = MESSAGE):
        super().__init__(message)
        self.run_id = run_id


class PersistenceError(PipelineError):
    """A store write or read failed. Treat the write as not having happened."""


class LedgerError(PipelineError):
    pass


class InvalidTransitionError(LedgerError):
    def __init__(self, current, target):
        super().__init__(f"Illegal job status transition {current} -> {target}")
        self.current = current
        self.target = target


class NotFoundError(PipelineError):
    pass
