"""
Job Ledger — persistent record and state machine for pipeline jobs.

Progress is only ever changed by additive deltas applied with a
compare-and-set against the stored counters, so updates from concurrent
workers compose no matter what order they arrive in.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Optional

from .errors import InvalidTransitionError, LedgerError, NotFoundError
from .models import (
    JobEventLevel,
    PipelineJob,
    PipelineJobEvent,
    PipelineJobStatus,
    PipelineJobType,
    TERMINAL_JOB_STATUSES,
    utcnow,
)
from .store import Store

logger = logging.getLogger(__name__)

S = PipelineJobStatus

# FAILED → QUEUED is additionally gated on supports_retry
TRANSITIONS: dict[PipelineJobStatus, frozenset] = {
    S.QUEUED: frozenset({S.RUNNING}),
    S.RUNNING: frozenset({S.PAUSED, S.COMPLETED, S.FAILED, S.CANCELED}),
    S.PAUSED: frozenset({S.RUNNING}),
    S.FAILED: frozenset({S.QUEUED}),
    S.COMPLETED: frozenset(),
    S.CANCELED: frozenset(),
}

MAX_CAS_ATTEMPTS = 20


def can_transition(job: PipelineJob, target: PipelineJobStatus) -> bool:
    if target not in TRANSITIONS[job.status]:
        return False
    if job.status == S.FAILED and target == S.QUEUED:
        return job.supports_retry
    return True


class JobLedger:
    """Create jobs, apply progress deltas and move jobs through their lifecycle."""

    def __init__(self, store: Store, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def create(
        self,
        type: PipelineJobType,
        total: int,
        context: Optional[dict[str, Any]] = None,
        *,
        title: str = "",
        origin_route: str = "",
        supports_pause: bool = False,
        supports_retry: bool = False,
        supports_restart: bool = True,
        created_by: Optional[str] = None,
    ) -> str:
        if total < 0:
            raise LedgerError(f"progress_total must be >= 0, got {total}")
        now = self.clock()
        job = PipelineJob(
            id=str(uuid.uuid4()),
            type=type,
            title=title or type.value.replace("_", " ").title(),
            status=S.QUEUED,
            progress_total=total,
            origin_route=origin_route,
            origin_context=context or {},
            supports_pause=supports_pause,
            supports_retry=supports_retry,
            supports_restart=supports_restart,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert_job(job)
        logger.info(f"Created pipeline job {job.id} ({type.value}, total={total})")
        return job.id

    async def get(self, job_id: str) -> PipelineJob:
        job = await self.store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Pipeline job {job_id} not found")
        return job

    async def update_progress(
        self,
        job_id: str,
        done_delta: int = 0,
        failed_delta: int = 0,
        message: Optional[str] = None,
    ) -> PipelineJob:
        """
        Add `done_delta` / `failed_delta` to the job's counters.

        Raises LedgerError for negative deltas or when the result would exceed
        progress_total; the stored row is left untouched in that case.
        """
        if done_delta < 0 or failed_delta < 0:
            raise LedgerError("Progress deltas must be non-negative")

        for _ in range(MAX_CAS_ATTEMPTS):
            job = await self.get(job_id)
            new_done = job.progress_done + done_delta
            new_failed = job.progress_failed + failed_delta
            if new_done + new_failed > job.progress_total:
                raise LedgerError(
                    f"Progress for job {job_id} would exceed total "
                    f"({new_done} done + {new_failed} failed > {job.progress_total})"
                )

            values: dict[str, Any] = {
                "progress_done": new_done,
                "progress_failed": new_failed,
            }
            if message is not None:
                values["progress_message"] = message

            updated = await self.store.update_job(
                job_id,
                values,
                expected={
                    "progress_done": job.progress_done,
                    "progress_failed": job.progress_failed,
                    "progress_total": job.progress_total,
                },
            )
            if updated is not None:
                return updated
            logger.debug(f"Progress write for job {job_id} lost a race, retrying")

        raise LedgerError(f"Could not apply progress to job {job_id} after {MAX_CAS_ATTEMPTS} attempts")

    async def expand_total(self, job_id: str, delta: int) -> PipelineJob:
        """Grow progress_total when more work is fed into an active job."""
        if delta < 0:
            raise LedgerError("Total can only grow")
        for _ in range(MAX_CAS_ATTEMPTS):
            job = await self.get(job_id)
            updated = await self.store.update_job(
                job_id,
                {"progress_total": job.progress_total + delta},
                expected={"progress_total": job.progress_total},
            )
            if updated is not None:
                return updated
        raise LedgerError(f"Could not expand total of job {job_id}")

    async def set_status(
        self,
        job_id: str,
        status: PipelineJobStatus,
        message: Optional[str] = None,
    ) -> PipelineJob:
        job = await self.get(job_id)
        if not can_transition(job, status):
            raise InvalidTransitionError(job.status.value, status.value)

        now = self.clock()
        values: dict[str, Any] = {"status": status}
        if status == S.RUNNING and job.started_at is None:
            values["started_at"] = now
        if status in TERMINAL_JOB_STATUSES:
            values["completed_at"] = now
        if job.status == S.FAILED and status == S.QUEUED:
            values["completed_at"] = None
        if message is not None:
            values["progress_message"] = message

        # Guard on the status we validated against
        updated = await self.store.update_job(job_id, values, expected={"status": job.status})
        if updated is None:
            current = await self.get(job_id)
            raise InvalidTransitionError(current.status.value, status.value)

        logger.info(f"Pipeline job {job_id}: {job.status.value} → {status.value}")
        return updated

    async def pause(self, job_id: str) -> PipelineJob:
        job = await self.get(job_id)
        if not job.supports_pause:
            raise LedgerError(f"Pipeline job {job_id} does not support pause")
        return await self.set_status(job_id, S.PAUSED)

    async def resume(self, job_id: str) -> PipelineJob:
        return await self.set_status(job_id, S.RUNNING)

    async def log_event(
        self,
        job_id: str,
        level: JobEventLevel,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append to the job's event log. Failures are logged, never raised."""
        event = PipelineJobEvent(
            id=str(uuid.uuid4()),
            job_id=job_id,
            level=level,
            message=message,
            metadata=metadata or {},
        )
        try:
            await self.store.insert_job_event(event)
        except Exception as e:
            logger.error(f"Failed to log job event for {job_id}: {e}")
