"""Tests for the job ledger and its state machine."""

import asyncio

import pytest

from repose_workers.pipeline.errors import (
    InvalidTransitionError,
    LedgerError,
    NotFoundError,
    PersistenceError,
)
from repose_workers.pipeline.models import JobEventLevel, PipelineJobStatus, PipelineJobType

S = PipelineJobStatus


async def _running_job(ledger, total=10, **kwargs):
    job_id = await ledger.create(PipelineJobType.REPOSE_GENERATION, total, **kwargs)
    await ledger.set_status(job_id, S.RUNNING)
    return job_id


# ── Creation ─────────────────────────────────────────────────────────────────

class TestCreate:
    async def test_new_job_is_queued_with_zero_progress(self, ledger):
        job_id = await ledger.create(
            PipelineJobType.REPOSE_GENERATION, 4, {"batch_id": "b1"}, origin_route="/queue/b1"
        )
        job = await ledger.get(job_id)
        assert job.status == S.QUEUED
        assert job.progress_total == 4
        assert job.progress_done == job.progress_failed == 0
        assert job.origin_context == {"batch_id": "b1"}
        assert job.title == "Repose Generation"
        assert job.started_at is None

    async def test_negative_total_rejected(self, ledger):
        with pytest.raises(LedgerError):
            await ledger.create(PipelineJobType.OTHER, -1)

    async def test_get_unknown_job(self, ledger):
        with pytest.raises(NotFoundError):
            await ledger.get("missing")


# ── Progress ─────────────────────────────────────────────────────────────────

class TestProgress:
    async def test_deltas_accumulate(self, ledger):
        job_id = await _running_job(ledger, total=10)
        for done, failed in [(1, 0), (2, 1), (0, 2), (3, 0)]:
            await ledger.update_progress(job_id, done_delta=done, failed_delta=failed)
        job = await ledger.get(job_id)
        assert job.progress_done == 6
        assert job.progress_failed == 3

    async def test_concurrent_deltas_all_land(self, ledger):
        job_id = await _running_job(ledger, total=10)
        await asyncio.gather(*[ledger.update_progress(job_id, done_delta=1) for _ in range(10)])
        job = await ledger.get(job_id)
        assert job.progress_done == 10

    async def test_overflow_rejected_and_row_untouched(self, ledger):
        job_id = await _running_job(ledger, total=3)
        await ledger.update_progress(job_id, done_delta=2, message="two done")
        with pytest.raises(LedgerError):
            await ledger.update_progress(job_id, done_delta=1, failed_delta=1)
        job = await ledger.get(job_id)
        assert job.progress_done == 2
        assert job.progress_failed == 0
        assert job.progress_message == "two done"

    async def test_negative_delta_rejected(self, ledger):
        job_id = await _running_job(ledger)
        with pytest.raises(LedgerError):
            await ledger.update_progress(job_id, done_delta=-1)

    async def test_expand_total(self, ledger):
        job_id = await _running_job(ledger, total=2)
        await ledger.update_progress(job_id, done_delta=2)
        await ledger.expand_total(job_id, 3)
        job = await ledger.update_progress(job_id, done_delta=3)
        assert job.progress_total == 5
        assert job.progress_done == 5


# ── State machine ────────────────────────────────────────────────────────────

class TestTransitions:
    async def test_started_at_set_once(self, ledger):
        job_id = await ledger.create(PipelineJobType.REPOSE_GENERATION, 1, supports_pause=True)
        first = await ledger.set_status(job_id, S.RUNNING)
        await ledger.pause(job_id)
        resumed = await ledger.resume(job_id)
        assert resumed.started_at == first.started_at
        assert resumed.status == S.RUNNING

    async def test_terminal_sets_completed_at(self, ledger):
        job_id = await _running_job(ledger)
        job = await ledger.set_status(job_id, S.COMPLETED, "done")
        assert job.completed_at is not None
        assert job.progress_message == "done"

    @pytest.mark.parametrize("start,target", [
        (S.QUEUED, S.COMPLETED),
        (S.QUEUED, S.PAUSED),
        (S.COMPLETED, S.RUNNING),
    ])
    async def test_illegal_transitions(self, ledger, start, target):
        job_id = await ledger.create(PipelineJobType.OTHER, 1)
        if start == S.COMPLETED:
            await ledger.set_status(job_id, S.RUNNING)
            await ledger.set_status(job_id, S.COMPLETED)
        with pytest.raises(InvalidTransitionError):
            await ledger.set_status(job_id, target)
        job = await ledger.get(job_id)
        assert job.status == start

    async def test_failed_requeue_needs_supports_retry(self, ledger):
        job_id = await _running_job(ledger, supports_retry=False)
        await ledger.set_status(job_id, S.FAILED)
        with pytest.raises(InvalidTransitionError):
            await ledger.set_status(job_id, S.QUEUED)

    async def test_failed_requeue_clears_completed_at(self, ledger):
        job_id = await _running_job(ledger, supports_retry=True)
        await ledger.set_status(job_id, S.FAILED)
        job = await ledger.set_status(job_id, S.QUEUED)
        assert job.status == S.QUEUED
        assert job.completed_at is None

    async def test_pause_requires_support(self, ledger):
        job_id = await _running_job(ledger, supports_pause=False)
        with pytest.raises(LedgerError):
            await ledger.pause(job_id)


# ── Event log ────────────────────────────────────────────────────────────────

class TestEvents:
    async def test_log_event_appends(self, ledger, store):
        job_id = await _running_job(ledger)
        await ledger.log_event(job_id, JobEventLevel.ERROR, "Run 1 failed", {"run_id": "r1"})
        events = await store.list_job_events(job_id)
        assert len(events) == 1
        assert events[0].level == JobEventLevel.ERROR
        assert events[0].metadata == {"run_id": "r1"}

    async def test_log_event_failure_is_not_raised(self, ledger, store, monkeypatch):
        job_id = await _running_job(ledger)

        async def broken(event):
            raise PersistenceError("insert failed")

        monkeypatch.setattr(store, "insert_job_event", broken)
        await ledger.log_event(job_id, JobEventLevel.INFO, "hello")
