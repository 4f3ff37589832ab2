"""Tests for the active jobs aggregator."""

import asyncio

import pytest

from repose_workers.pipeline.active_jobs import STALLED_BY_OPERATOR_MESSAGE, ActiveJobsAggregator
from repose_workers.pipeline.errors import InvalidTransitionError, NotFoundError
from repose_workers.pipeline.ledger import JobLedger
from repose_workers.pipeline.models import PipelineJobStatus, PipelineJobType
from repose_workers.pipeline.store import MemoryStore

S = PipelineJobStatus


@pytest.fixture
def clocked_store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def clocked_ledger(clocked_store):
    return JobLedger(clocked_store, clock=clocked_store.clock)


@pytest.fixture
def aggregator(clocked_store, clocked_ledger, clock):
    return ActiveJobsAggregator(clocked_store, clocked_ledger, clock=clock)


async def _job(ledger, status=S.RUNNING, total=10, done=0, **kwargs):
    job_id = await ledger.create(PipelineJobType.REPOSE_GENERATION, total, **kwargs)
    if status != S.QUEUED:
        await ledger.set_status(job_id, S.RUNNING)
    if done:
        await ledger.update_progress(job_id, done_delta=done)
    if status == S.PAUSED:
        await ledger.pause(job_id)
    elif status not in (S.QUEUED, S.RUNNING):
        await ledger.set_status(job_id, status)
    return job_id


class TestSnapshot:
    async def test_counts_and_progress(self, aggregator, clocked_ledger):
        await _job(clocked_ledger, S.QUEUED, total=4)
        await _job(clocked_ledger, S.RUNNING, total=10, done=3)
        await _job(clocked_ledger, S.PAUSED, total=5, done=1, supports_pause=True)
        await _job(clocked_ledger, S.COMPLETED, total=2, done=2)

        snapshot = await aggregator.fetch()
        assert snapshot.active_count == 3
        assert snapshot.running_count == 2
        assert snapshot.paused_count == 1
        assert snapshot.stalled_count == 0
        assert snapshot.total_progress.done == 3
        assert snapshot.total_progress.total == 14
        assert [j.status for j in snapshot.recent_jobs] == [S.COMPLETED]

    async def test_quiet_running_job_is_stalled(self, aggregator, clocked_ledger, clock):
        await _job(clocked_ledger, S.RUNNING, total=10, done=4)
        clock.advance(301)

        snapshot = await aggregator.fetch()
        assert snapshot.active_jobs[0].is_stalled
        assert snapshot.stalled_count == 1
        assert snapshot.running_count == 0
        # Stalled jobs still contribute to aggregate progress
        assert snapshot.total_progress.done == 4

    async def test_paused_job_is_abandoned_after_an_hour(self, aggregator, clocked_ledger, clock):
        await _job(clocked_ledger, S.PAUSED, supports_pause=True)
        clock.advance(1800)
        assert not (await aggregator.fetch()).active_jobs[0].is_abandoned
        clock.advance(1801)
        job = (await aggregator.fetch()).active_jobs[0]
        assert job.is_abandoned
        assert not job.is_stalled

    async def test_recent_window_and_cap(self, aggregator, clocked_ledger, clock):
        await _job(clocked_ledger, S.COMPLETED)
        clock.advance(25 * 3600)
        for _ in range(12):
            await _job(clocked_ledger, S.FAILED)

        recent = (await aggregator.fetch()).recent_jobs
        assert len(recent) == 10
        assert all(j.status == S.FAILED for j in recent)

    async def test_fetch_does_not_write(self, aggregator, clocked_ledger, clocked_store, clock):
        job_id = await _job(clocked_ledger, S.RUNNING)
        clock.advance(600)
        await aggregator.fetch()
        assert (await clocked_ledger.get(job_id)).status == S.RUNNING


class TestMarkStalled:
    async def test_marks_running_job_failed(self, aggregator, clocked_ledger):
        job_id = await _job(clocked_ledger, S.RUNNING)
        job = await aggregator.mark_job_stalled(job_id)
        assert job.status == S.FAILED
        assert job.progress_message == STALLED_BY_OPERATOR_MESSAGE
        assert job.completed_at is not None
        assert aggregator.snapshot.active_count == 0

    async def test_only_running_jobs_can_be_marked(self, aggregator, clocked_ledger):
        job_id = await _job(clocked_ledger, S.QUEUED)
        with pytest.raises(InvalidTransitionError):
            await aggregator.mark_job_stalled(job_id)

    async def test_unknown_job(self, aggregator):
        with pytest.raises(NotFoundError):
            await aggregator.mark_job_stalled("missing")


async def test_attach_refetches_on_job_changes(aggregator, clocked_ledger):
    aggregator.attach()
    await _job(clocked_ledger, S.RUNNING)
    await asyncio.sleep(0.01)
    assert aggregator.snapshot.active_count == 1

    aggregator.detach()
    await _job(clocked_ledger, S.RUNNING)
    await asyncio.sleep(0.01)
    assert aggregator.snapshot.active_count == 1
