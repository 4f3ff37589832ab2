"""Tests for the generation tracker projection and refresh behaviour."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from repose_workers.pipeline.models import BatchItem, Output, OutputStatus, Stage, Subject
from repose_workers.pipeline.tracker import (
    GenerationTracker,
    filter_subjects,
    project,
    summarize,
    views_needing_generation,
)
from tests.conftest import BATCH_ID, seed_subject

T0 = datetime(2026, 3, 1, tzinfo=timezone.utc)
FRONT_SHOTS = ["FRONT_FULL", "FRONT_CROPPED", "DETAIL"]

_seq = iter(range(10_000))


def _subject(subject_id, created_at=T0, stage=Stage.GENERATE):
    return Subject(id=subject_id, name=f"Look {subject_id}", batch_id=BATCH_ID, stage=stage, created_at=created_at)


def _images(subject_id, views=("Front View",)):
    return [
        BatchItem(id=f"{subject_id}-{v}", batch_id=BATCH_ID, subject_id=subject_id, view=v,
                  source_url="https://cdn.test/src.jpg")
        for v in views
    ]


def _out(subject_id, view, status=OutputStatus.COMPLETED, created_at=T0, **kwargs):
    return Output(
        id=f"o{next(_seq)}",
        run_id="r1",
        batch_id=BATCH_ID,
        subject_id=subject_id,
        view=view,
        status=status,
        created_at=created_at,
        **kwargs,
    )


class TestProjection:
    def test_view_complete_once_required_options_reached(self):
        outputs = [_out("A", "FRONT_FULL") for _ in range(3)]
        outputs += [_out("A", "FRONT_CROPPED") for _ in range(2)]
        outputs += [_out("A", "FRONT_CROPPED", OutputStatus.PENDING)]
        [stats] = project([_subject("A")], _images("A"), outputs, required_options=3)

        views = {v.view: v for v in stats.views}
        assert views["FRONT_FULL"].is_complete
        assert views["FRONT_FULL"].pending_count == 0
        assert not views["FRONT_CROPPED"].is_complete
        assert views["FRONT_CROPPED"].pending_count == 1
        assert views["DETAIL"].completed_count == 0
        assert stats.views_complete == 1
        assert stats.views_partial == 1
        assert stats.views_missing == 1
        assert stats.needs_generation
        assert not stats.is_fully_complete

    def test_fully_complete(self):
        outputs = [_out("A", v) for v in FRONT_SHOTS]
        [stats] = project([_subject("A")], _images("A"), outputs, required_options=1)
        assert stats.is_fully_complete
        assert not stats.needs_generation
        assert not stats.needs_action
        assert stats.total_completed_outputs == 3

    def test_counts_by_status(self):
        outputs = [
            _out("A", "FRONT_FULL", OutputStatus.FAILED),
            _out("A", "FRONT_FULL", OutputStatus.GENERATING),
            _out("A", "FRONT_FULL", OutputStatus.COMPLETED, is_selected=True),
        ]
        [stats] = project([_subject("A")], _images("A"), outputs, required_options=2)
        front = stats.views[0]
        assert (front.failed_count, front.running_count, front.completed_count, front.selected_count) == (1, 1, 1, 1)
        assert front.has_any_output

    def test_subjects_without_views_are_dropped(self):
        subjects = [_subject("A"), _subject("side-only"), _subject("nothing")]
        images = _images("A") + _images("side-only", views=("Side View",))
        assert [s.subject_id for s in project(subjects, images, [], 1)] == ["A"]

    def test_outputs_for_unplanned_views_are_ignored(self):
        outputs = [_out("A", "BACK_FULL")]
        [stats] = project([_subject("A")], _images("A"), outputs, 1)
        assert stats.total_completed_outputs == 0
        assert [v.view for v in stats.views] == FRONT_SHOTS

    def test_last_generated_at_and_new_since_last_run(self):
        later = T0 + timedelta(hours=2)
        subjects = [_subject("old"), _subject("fresh", created_at=later), _subject("done", created_at=later)]
        images = _images("old") + _images("fresh") + _images("done")
        outputs = [
            _out("done", "FRONT_FULL", created_at=T0 + timedelta(hours=3)),
            _out("done", "FRONT_FULL", created_at=T0 + timedelta(hours=4)),
            _out("done", "DETAIL", OutputStatus.FAILED, created_at=T0 + timedelta(hours=5)),
        ]
        stats = {s.subject_id: s for s in project(subjects, images, outputs, 1, last_run_at=T0 + timedelta(hours=1))}

        assert stats["done"].last_generated_at == T0 + timedelta(hours=4)
        assert not stats["old"].is_new_since_last_run
        assert stats["fresh"].is_new_since_last_run
        assert not stats["done"].is_new_since_last_run

        without_last_run = project(subjects, images, outputs, 1)
        assert [s.is_new_since_last_run for s in without_last_run] == [True, True, False]

    def test_projection_is_deterministic(self):
        subjects = [_subject("A"), _subject("B")]
        images = _images("A") + _images("B", views=("Back View",))
        outputs = [_out("A", "FRONT_FULL"), _out("B", "BACK_FULL", OutputStatus.FAILED)]
        first = project(subjects, images, outputs, 2)
        second = project(subjects, images, outputs, 2)
        assert first == second


class TestFilters:
    @pytest.fixture
    def subjects(self):
        subjects = [_subject("complete"), _subject("partial"), _subject("failed"), _subject("untouched")]
        images = [img for s in subjects for img in _images(s.id)]
        outputs = [_out("complete", v) for v in FRONT_SHOTS]
        outputs += [_out("partial", "FRONT_FULL")]
        outputs += [_out("failed", "DETAIL", OutputStatus.FAILED)]
        return project(subjects, images, outputs, 1)

    @pytest.mark.parametrize("tag,expected", [
        ("all", ["complete", "partial", "failed", "untouched"]),
        ("needs_generation", ["partial", "failed", "untouched"]),
        ("complete", ["complete"]),
        ("failed", ["failed"]),
        ("new", ["failed", "untouched"]),
    ])
    def test_tags(self, subjects, tag, expected):
        assert [s.subject_id for s in filter_subjects(subjects, tag)] == expected

    def test_unknown_tag(self, subjects):
        with pytest.raises(ValueError):
            filter_subjects(subjects, "everything")

    def test_summary(self, subjects):
        summary = summarize(subjects)
        assert summary.total_subjects == 4
        assert summary.subjects_complete == 1
        assert summary.subjects_need_generation == 3
        assert summary.total_views == 12
        assert summary.views_complete == 4
        assert summary.total_outputs == 4

    def test_views_needing_generation(self, subjects):
        shortfalls = views_needing_generation(subjects, 1, subject_id="partial")
        assert [(s.view, s.missing) for s in shortfalls] == [("FRONT_CROPPED", 1), ("DETAIL", 1)]
        assert len(views_needing_generation(subjects, 1)) == 2 + 3 + 3


class TestGenerationTracker:
    @pytest.fixture
    def tracked_store(self, store):
        seed_subject(store, "A", views=("Front View",))
        return store

    async def test_start_loads_and_stop_unsubscribes(self, tracked_store):
        tracker = GenerationTracker(tracked_store, BATCH_ID, 1, poll_interval=10)
        subjects = await tracker.start()
        assert [s.subject_id for s in subjects] == ["A"]
        assert tracker.resync_count == 1

        await tracker.stop()
        await tracked_store.insert_outputs([_out("A", "FRONT_FULL")])
        await asyncio.sleep(0.05)
        assert tracker.resync_count == 1

    async def test_change_bursts_are_debounced(self, tracked_store):
        tracker = GenerationTracker(tracked_store, BATCH_ID, 1, debounce=0.02, poll_interval=10)
        await tracker.start()
        for view in FRONT_SHOTS:
            await tracked_store.insert_outputs([_out("A", view)])
        await asyncio.sleep(0.1)

        assert tracker.resync_count == 2
        assert tracker.subjects[0].is_fully_complete
        await tracker.stop()

    async def test_changes_for_other_batches_are_ignored(self, tracked_store):
        tracker = GenerationTracker(tracked_store, BATCH_ID, 1, debounce=0.01, poll_interval=10)
        await tracker.start()
        other = _out("A", "FRONT_FULL")
        other.batch_id = "other-batch"
        await tracked_store.insert_outputs([other])
        await asyncio.sleep(0.05)
        assert tracker.resync_count == 1
        await tracker.stop()

    async def test_concurrent_resyncs_coalesce(self, tracked_store):
        tracker = GenerationTracker(tracked_store, BATCH_ID, 1)
        results = await asyncio.gather(tracker.resync(), tracker.resync(), tracker.resync())
        assert tracker.resync_count == 1
        assert results[0] == results[1] == results[2]

    async def test_poll_only_while_generation_active(self, tracked_store):
        tracker = GenerationTracker(tracked_store, BATCH_ID, 1, poll_interval=0.01)
        tracker.notify = lambda event=None: None  # poll only
        await tracker.start()
        await asyncio.sleep(0.05)
        assert tracker.resync_count == 1

        await tracked_store.insert_outputs([_out("A", "FRONT_FULL", OutputStatus.GENERATING)])
        await tracker.resync()
        before = tracker.resync_count
        await asyncio.sleep(0.05)
        assert tracker.resync_count > before
        await tracker.stop()

    def test_required_options_must_be_positive(self, store):
        with pytest.raises(ValueError):
            GenerationTracker(store, BATCH_ID, 0)
