"""
Active Jobs Aggregator — the read model behind the job tracker.

Read-only over the ledger, except for `mark_job_stalled`, which an operator
invokes explicitly and which goes through the ledger's state machine.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .. import config
from .change_feed import ChangeEvent
from .ledger import JobLedger
from .models import (
    ACTIVE_JOB_STATUSES,
    ActiveJobsSnapshot,
    PipelineJob,
    PipelineJobStatus,
    ProgressTotals,
    RunStatus,
    TERMINAL_JOB_STATUSES,
    TrackedJob,
    utcnow,
)
from .store import JOBS_TABLE, Store

logger = logging.getLogger(__name__)

STALLED_BY_OPERATOR_MESSAGE = "Stalled - marked by operator"


def track(job: PipelineJob, now: datetime, stall_threshold: float, abandoned_threshold: float) -> TrackedJob:
    age = (now - job.updated_at).total_seconds()
    return TrackedJob(
        **job.model_dump(),
        is_stalled=job.status == PipelineJobStatus.RUNNING and age > stall_threshold,
        is_abandoned=job.status == PipelineJobStatus.PAUSED and age > abandoned_threshold,
    )


class ActiveJobsAggregator:
    def __init__(
        self,
        store: Store,
        ledger: JobLedger,
        *,
        clock: Callable[[], datetime] = utcnow,
        stall_threshold: float = config.STALL_THRESHOLD_SECONDS,
        abandoned_threshold: float = config.ABANDONED_THRESHOLD_SECONDS,
        recent_window_hours: int = config.RECENT_JOBS_WINDOW_HOURS,
        recent_limit: int = config.RECENT_JOBS_LIMIT,
    ):
        self.store = store
        self.ledger = ledger
        self.clock = clock
        self.stall_threshold = stall_threshold
        self.abandoned_threshold = abandoned_threshold
        self.recent_window_hours = recent_window_hours
        self.recent_limit = recent_limit

        self.snapshot = ActiveJobsSnapshot()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._refetch_task: Optional[asyncio.Task] = None

    async def fetch(self, batch_id: Optional[str] = None) -> ActiveJobsSnapshot:
        now = self.clock()
        active = await self.store.list_jobs(ACTIVE_JOB_STATUSES)
        recent = await self.store.list_jobs(
            TERMINAL_JOB_STATUSES,
            completed_since=now - timedelta(hours=self.recent_window_hours),
            limit=self.recent_limit,
        )
        runs = await self.store.list_runs(batch_id=batch_id)

        active_jobs = [track(j, now, self.stall_threshold, self.abandoned_threshold) for j in active]
        recent_jobs = [track(j, now, self.stall_threshold, self.abandoned_threshold) for j in recent]

        # Progress is summed over everything not paused, stalled or not
        in_progress = [
            j for j in active_jobs
            if j.status in (PipelineJobStatus.QUEUED, PipelineJobStatus.RUNNING)
        ]
        run_counts = {s.value: 0 for s in RunStatus}
        for run in runs:
            run_counts[run.status.value] += 1

        self.snapshot = ActiveJobsSnapshot(
            active_jobs=active_jobs,
            recent_jobs=recent_jobs,
            active_count=len(active_jobs),
            running_count=sum(1 for j in in_progress if not j.is_stalled),
            paused_count=sum(1 for j in active_jobs if j.status == PipelineJobStatus.PAUSED),
            stalled_count=sum(1 for j in active_jobs if j.is_stalled),
            total_progress=ProgressTotals(
                done=sum(j.progress_done for j in in_progress),
                total=sum(j.progress_total for j in in_progress),
            ),
            run_counts=run_counts,
        )
        return self.snapshot

    async def mark_job_stalled(self, job_id: str) -> PipelineJob:
        """Fail a job an operator has judged dead. Only RUNNING jobs can be marked."""
        job = await self.ledger.set_status(job_id, PipelineJobStatus.FAILED, STALLED_BY_OPERATOR_MESSAGE)
        logger.warning(f"Pipeline job {job_id} marked stalled by operator")
        await self.fetch()
        return job

    # ── Live refresh ─────────────────────────────────────────────────────

    def _on_job_change(self, event: ChangeEvent):
        if self._refetch_task is not None and not self._refetch_task.done():
            return
        self._refetch_task = asyncio.get_running_loop().create_task(self._refetch())

    async def _refetch(self):
        try:
            await self.fetch()
        except Exception as e:
            logger.error(f"Failed to refetch jobs: {e}")

    def attach(self):
        """Refetch whenever a pipeline_jobs row changes."""
        if self._unsubscribe is None:
            self._unsubscribe = self.store.feed.subscribe(JOBS_TABLE, self._on_job_change)

    def detach(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
