"""
Generation Tracker — derived completion state per subject and shot type.

The projection functions are pure: the same subjects, batch items, outputs
and `required_options` always give the same result. `GenerationTracker`
keeps a cached projection fresh from the store, recomputing on output
changes (debounced) and on a poll that only runs while work is in flight.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable, Iterable, Optional

from .. import config
from .change_feed import ChangeEvent
from .models import (
    BatchItem,
    GenerationSummary,
    Output,
    OutputStatus,
    Subject,
    SubjectGenerationStats,
    ViewOutputStats,
    ViewShortfall,
)
from .pairing import planned_shot_types
from .stages import needs_action
from .store import OUTPUTS_TABLE, Store

logger = logging.getLogger(__name__)

FILTER_TAGS = ("all", "needs_generation", "new", "complete", "failed")


def build_view_stats(view: str, outputs: list[Output], required_options: int) -> ViewOutputStats:
    completed = sum(1 for o in outputs if o.status == OutputStatus.COMPLETED)
    return ViewOutputStats(
        view=view,
        completed_count=completed,
        failed_count=sum(1 for o in outputs if o.status == OutputStatus.FAILED),
        pending_count=sum(1 for o in outputs if o.status == OutputStatus.PENDING),
        running_count=sum(1 for o in outputs if o.status == OutputStatus.GENERATING),
        selected_count=sum(1 for o in outputs if o.is_selected),
        has_any_output=completed > 0,
        is_complete=completed >= required_options,
    )


def build_subject_stats(
    subject: Subject,
    images: list[BatchItem],
    outputs: list[Output],
    required_options: int,
    last_run_at: Optional[datetime] = None,
) -> SubjectGenerationStats:
    """Completion stats for one subject. Outputs for shot types it cannot produce are ignored."""
    views = planned_shot_types([img.view for img in images])

    by_view: dict[str, list[Output]] = defaultdict(list)
    for output in outputs:
        by_view[output.view].append(output)
    view_stats = [build_view_stats(view, by_view[view], required_options) for view in views]

    views_complete = sum(1 for v in view_stats if v.is_complete)
    views_missing = sum(1 for v in view_stats if v.completed_count == 0)
    views_partial = sum(1 for v in view_stats if v.has_any_output and not v.is_complete)

    completed_at = [o.created_at for o in outputs if o.status == OutputStatus.COMPLETED]
    last_generated_at = max(completed_at) if completed_at else None

    if last_run_at is not None:
        is_new = subject.created_at > last_run_at and last_generated_at is None
    else:
        is_new = last_generated_at is None

    return SubjectGenerationStats(
        subject_id=subject.id,
        subject_name=subject.name,
        stage=subject.stage,
        total_views=len(views),
        total_completed_outputs=sum(v.completed_count for v in view_stats),
        views_with_outputs=sum(1 for v in view_stats if v.has_any_output),
        views_complete=views_complete,
        views_missing=views_missing,
        views_partial=views_partial,
        is_fully_complete=bool(views) and views_complete == len(views),
        needs_generation=views_missing > 0 or views_partial > 0,
        needs_action=needs_action(subject.stage, images, outputs),
        views=view_stats,
        last_generated_at=last_generated_at,
        is_new_since_last_run=is_new,
    )


def project(
    subjects: list[Subject],
    batch_items: list[BatchItem],
    outputs: list[Output],
    required_options: int,
    last_run_at: Optional[datetime] = None,
) -> list[SubjectGenerationStats]:
    """Stats for every subject that has at least one producible shot type, in input order."""
    images: dict[str, list[BatchItem]] = defaultdict(list)
    for item in batch_items:
        images[item.subject_id].append(item)
    produced: dict[str, list[Output]] = defaultdict(list)
    for output in outputs:
        produced[output.subject_id].append(output)

    stats = [
        build_subject_stats(s, images[s.id], produced[s.id], required_options, last_run_at)
        for s in subjects
    ]
    return [s for s in stats if s.total_views > 0]


def filter_subjects(subjects: list[SubjectGenerationStats], tag: str) -> list[SubjectGenerationStats]:
    if tag == "needs_generation":
        return [s for s in subjects if s.needs_generation]
    if tag == "new":
        return [s for s in subjects if s.is_new_since_last_run]
    if tag == "complete":
        return [s for s in subjects if s.is_fully_complete]
    if tag == "failed":
        return [s for s in subjects if any(v.failed_count > 0 for v in s.views)]
    if tag == "all":
        return list(subjects)
    raise ValueError(f"Unknown filter tag: {tag!r} (expected one of {', '.join(FILTER_TAGS)})")


def summarize(subjects: list[SubjectGenerationStats]) -> GenerationSummary:
    return GenerationSummary(
        total_subjects=len(subjects),
        subjects_complete=sum(1 for s in subjects if s.is_fully_complete),
        subjects_need_generation=sum(1 for s in subjects if s.needs_generation),
        subjects_new=sum(1 for s in subjects if s.is_new_since_last_run),
        total_views=sum(s.total_views for s in subjects),
        views_complete=sum(s.views_complete for s in subjects),
        total_outputs=sum(s.total_completed_outputs for s in subjects),
    )


def views_needing_generation(
    subjects: list[SubjectGenerationStats],
    required_options: int,
    subject_id: Optional[str] = None,
) -> list[ViewShortfall]:
    shortfalls = []
    for subject in subjects:
        if subject_id is not None and subject.subject_id != subject_id:
            continue
        for view in subject.views:
            if not view.is_complete:
                shortfalls.append(ViewShortfall(
                    subject_id=subject.subject_id,
                    subject_name=subject.subject_name,
                    view=view.view,
                    missing=required_options - view.completed_count,
                ))
    return shortfalls


def has_active_generation(subjects: Iterable[SubjectGenerationStats]) -> bool:
    return any(v.running_count > 0 or v.pending_count > 0 for s in subjects for v in s.views)


class GenerationTracker:
    """Cached, self-refreshing projection of one batch's generation state."""

    def __init__(
        self,
        store: Store,
        batch_id: str,
        required_options: int,
        *,
        last_run_at: Optional[datetime] = None,
        subject_ids: Optional[set[str]] = None,
        debounce: float = config.TRACKER_DEBOUNCE_SECONDS,
        poll_interval: float = config.TRACKER_POLL_INTERVAL_SECONDS,
        on_change: Optional[Callable[[list[SubjectGenerationStats]], None]] = None,
    ):
        if required_options < 1:
            raise ValueError("required_options must be >= 1")
        self.store = store
        self.batch_id = batch_id
        self.required_options = required_options
        self.last_run_at = last_run_at
        self.subject_ids = subject_ids
        self.debounce = debounce
        self.poll_interval = poll_interval
        self.on_change = on_change

        self.subjects: list[SubjectGenerationStats] = []
        self.resync_count = 0
        self._inflight: Optional[asyncio.Task] = None
        self._dirty = False
        self._debounce_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def summary(self) -> GenerationSummary:
        return summarize(self.subjects)

    @property
    def has_active_generation(self) -> bool:
        return has_active_generation(self.subjects)

    def filtered(self, tag: str) -> list[SubjectGenerationStats]:
        return filter_subjects(self.subjects, tag)

    def views_needing_generation(self, subject_id: Optional[str] = None) -> list[ViewShortfall]:
        return views_needing_generation(self.subjects, self.required_options, subject_id)

    # ── Refresh ──────────────────────────────────────────────────────────

    async def resync(self) -> list[SubjectGenerationStats]:
        """
        Recompute from storage. Calls made while a recompute is running wait
        for it, and it runs once more afterwards so their request is honoured.
        """
        if self._inflight is not None and not self._inflight.done():
            self._dirty = True
            return await asyncio.shield(self._inflight)
        self._inflight = asyncio.create_task(self._resync_loop())
        return await asyncio.shield(self._inflight)

    async def _resync_loop(self) -> list[SubjectGenerationStats]:
        while True:
            self._dirty = False
            subjects = await self._load()
            if not self._dirty:
                break
        self.subjects = subjects
        self.resync_count += 1
        if self.on_change is not None:
            self.on_change(subjects)
        return subjects

    async def _load(self) -> list[SubjectGenerationStats]:
        subjects = await self.store.list_subjects(self.batch_id)
        if self.subject_ids:
            subjects = [s for s in subjects if s.id in self.subject_ids]
        if not subjects:
            return []
        batch_items = await self.store.list_batch_items(self.batch_id)
        outputs = await self.store.list_outputs(subject_ids=[s.id for s in subjects])
        return project(subjects, batch_items, outputs, self.required_options, self.last_run_at)

    def notify(self, event: Optional[ChangeEvent] = None):
        """Schedule a debounced resync; bursts of notifications collapse into one."""
        if event is not None and event.row.get("batch_id") not in (None, self.batch_id):
            return
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = asyncio.get_running_loop().create_task(self._debounced())

    async def _debounced(self):
        await asyncio.sleep(self.debounce)
        try:
            await self.resync()
        except Exception as e:
            logger.error(f"Tracker resync for batch {self.batch_id} failed: {e}")

    async def _poll_loop(self):
        while True:
            await asyncio.sleep(self.poll_interval)
            if not self.has_active_generation:
                continue
            logger.debug(f"Batch {self.batch_id}: active generation, polling")
            try:
                await self.resync()
            except Exception as e:
                logger.error(f"Tracker poll for batch {self.batch_id} failed: {e}")

    async def start(self) -> list[SubjectGenerationStats]:
        if self._unsubscribe is None:
            self._unsubscribe = self.store.feed.subscribe(OUTPUTS_TABLE, self.notify)
        subjects = await self.resync()
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_loop())
        return subjects

    async def stop(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in (self._debounce_task, self._poll_task, self._inflight):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._debounce_task = self._poll_task = self._inflight = None
