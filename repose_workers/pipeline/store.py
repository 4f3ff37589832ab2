"""
Persistence for the repose pipeline.

`Store` is the typed set of row operations the orchestrator needs. Two
implementations ship:
  - SupabaseStore — service-role Supabase client (bypasses RLS)
  - MemoryStore   — in-process tables for local runs and tests

Every status change is a single-row or id-filtered field update; there are no
cross-row transactions. Every write publishes a ChangeEvent.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from pydantic import BaseModel

from .. import config
from .change_feed import ChangeEvent, ChangeFeed
from .errors import PersistenceError
from .models import (
    BatchItem,
    Output,
    OutputStatus,
    PipelineJob,
    PipelineJobEvent,
    PipelineJobStatus,
    Pose,
    RunItem,
    RunStatus,
    Subject,
    utcnow,
)

logger = logging.getLogger(__name__)

JOBS_TABLE = "pipeline_jobs"
JOB_EVENTS_TABLE = "pipeline_job_events"
RUNS_TABLE = "repose_runs"
OUTPUTS_TABLE = "repose_outputs"
BATCH_ITEMS_TABLE = "repose_batch_items"
POSES_TABLE = "library_poses"
SUBJECTS_TABLE = "talent_looks"


def _serialize(values: dict[str, Any]) -> dict[str, Any]:
    """Convert datetimes and enums into JSON-safe column values."""
    out = {}
    for key, value in values.items():
        if isinstance(value, datetime):
            out[key] = value.isoformat()
        elif isinstance(value, Enum):
            out[key] = value.value
        else:
            out[key] = value
    return out


def _raw(value):
    return value.value if isinstance(value, Enum) else value


def _values(items: Optional[Iterable]) -> Optional[list]:
    if items is None:
        return None
    return [_raw(i) for i in items]


class Store(ABC):
    """Typed row operations over jobs, runs, outputs and source material."""

    def __init__(self, feed: Optional[ChangeFeed] = None):
        self.feed = feed or ChangeFeed()

    def _emit(self, table: str, event_type: str, row: BaseModel) -> None:
        self.feed.publish(ChangeEvent(
            table=table,
            event_type=event_type,
            row=row.model_dump(mode="json"),
        ))

    # ── Jobs ─────────────────────────────────────────────────────────────

    @abstractmethod
    async def insert_job(self, job: PipelineJob) -> PipelineJob: ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[PipelineJob]: ...

    @abstractmethod
    async def update_job(
        self,
        job_id: str,
        values: dict[str, Any],
        *,
        expected: Optional[dict[str, Any]] = None,
    ) -> Optional[PipelineJob]:
        """
        Update one job row. With `expected`, the write only lands if every
        listed column still holds that value (compare-and-set). Returns the
        updated row, or None when nothing matched.
        """

    @abstractmethod
    async def list_jobs(
        self,
        statuses: Iterable[PipelineJobStatus],
        *,
        completed_since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[PipelineJob]: ...

    @abstractmethod
    async def insert_job_event(self, event: PipelineJobEvent) -> PipelineJobEvent: ...

    @abstractmethod
    async def list_job_events(self, job_id: str) -> list[PipelineJobEvent]: ...

    # ── Runs ─────────────────────────────────────────────────────────────

    @abstractmethod
    async def insert_runs(self, runs: list[RunItem]) -> list[RunItem]: ...

    @abstractmethod
    async def get_run(self, run_id: str) -> Optional[RunItem]: ...

    @abstractmethod
    async def update_runs(
        self,
        run_ids: Iterable[str],
        values: dict[str, Any],
        *,
        statuses: Optional[Iterable[RunStatus]] = None,
    ) -> list[RunItem]:
        """Set `values` on the given runs, optionally only where status is in `statuses`."""

    @abstractmethod
    async def list_runs(
        self,
        *,
        batch_id: Optional[str] = None,
        statuses: Optional[Iterable[RunStatus]] = None,
    ) -> list[RunItem]: ...

    @abstractmethod
    async def list_stale_runs(self, cutoff: datetime) -> list[RunItem]:
        """Running runs whose heartbeat is older than `cutoff`."""

    @abstractmethod
    async def max_run_index(self, batch_id: str, subject_id: str) -> int: ...

    # ── Outputs ──────────────────────────────────────────────────────────

    @abstractmethod
    async def insert_outputs(self, outputs: list[Output]) -> list[Output]: ...

    @abstractmethod
    async def update_output(self, output_id: str, values: dict[str, Any]) -> Optional[Output]: ...

    @abstractmethod
    async def list_outputs(
        self,
        *,
        run_id: Optional[str] = None,
        subject_ids: Optional[Iterable[str]] = None,
        statuses: Optional[Iterable[OutputStatus]] = None,
    ) -> list[Output]: ...

    # ── Source material ──────────────────────────────────────────────────

    @abstractmethod
    async def list_batch_items(
        self, batch_id: str, subject_id: Optional[str] = None
    ) -> list[BatchItem]: ...

    @abstractmethod
    async def list_approved_poses(self) -> list[Pose]: ...

    @abstractmethod
    async def list_subjects(self, batch_id: str) -> list[Subject]: ...


# ═════════════════════════════════════════════════════════════════════════════
# In-memory implementation
# ═════════════════════════════════════════════════════════════════════════════

class MemoryStore(Store):
    """
    Dict-backed tables. Every operation yields to the event loop once so
    concurrent callers interleave the way they would against a real database.
    """

    def __init__(
        self,
        feed: Optional[ChangeFeed] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(feed)
        self.clock = clock
        self.jobs: dict[str, dict] = {}
        self.job_events: list[dict] = []
        self.runs: dict[str, dict] = {}
        self.outputs: dict[str, dict] = {}
        self.batch_items: dict[str, dict] = {}
        self.poses: dict[str, dict] = {}
        self.subjects: dict[str, dict] = {}

    async def _yield(self):
        await asyncio.sleep(0)

    # ── Seeding (source material is owned by other parts of the system) ──

    def add_subjects(self, subjects: Iterable[Subject]) -> None:
        for s in subjects:
            self.subjects[s.id] = s.model_dump()

    def add_batch_items(self, items: Iterable[BatchItem]) -> None:
        for item in items:
            self.batch_items[item.id] = item.model_dump()

    def add_poses(self, poses: Iterable[Pose]) -> None:
        for pose in poses:
            self.poses[pose.id] = pose.model_dump()

    # ── Jobs ─────────────────────────────────────────────────────────────

    async def insert_job(self, job: PipelineJob) -> PipelineJob:
        await self._yield()
        self.jobs[job.id] = job.model_dump()
        saved = PipelineJob.model_validate(copy.deepcopy(self.jobs[job.id]))
        self._emit(JOBS_TABLE, "insert", saved)
        return saved

    async def get_job(self, job_id: str) -> Optional[PipelineJob]:
        await self._yield()
        row = self.jobs.get(job_id)
        return PipelineJob.model_validate(copy.deepcopy(row)) if row else None

    async def update_job(self, job_id, values, *, expected=None):
        await self._yield()
        row = self.jobs.get(job_id)
        if row is None:
            return None
        if expected and any(row.get(k) != v for k, v in expected.items()):
            return None
        row.update(values)
        row["updated_at"] = self.clock()
        saved = PipelineJob.model_validate(copy.deepcopy(row))
        self._emit(JOBS_TABLE, "update", saved)
        return saved

    async def list_jobs(self, statuses, *, completed_since=None, limit=None):
        await self._yield()
        wanted = set(_values(statuses))
        rows = [r for r in self.jobs.values() if _raw(r["status"]) in wanted]
        if completed_since is not None:
            rows = [r for r in rows if r.get("completed_at") and r["completed_at"] >= completed_since]
            rows.sort(key=lambda r: r["completed_at"], reverse=True)
        else:
            rows.sort(key=lambda r: r["created_at"], reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [PipelineJob.model_validate(copy.deepcopy(r)) for r in rows]

    async def insert_job_event(self, event: PipelineJobEvent) -> PipelineJobEvent:
        await self._yield()
        self.job_events.append(event.model_dump())
        self._emit(JOB_EVENTS_TABLE, "insert", event)
        return event

    async def list_job_events(self, job_id: str) -> list[PipelineJobEvent]:
        await self._yield()
        return [PipelineJobEvent.model_validate(e) for e in self.job_events if e["job_id"] == job_id]

    # ── Runs ─────────────────────────────────────────────────────────────

    async def insert_runs(self, runs: list[RunItem]) -> list[RunItem]:
        await self._yield()
        saved = []
        for run in runs:
            self.runs[run.id] = run.model_dump()
            item = RunItem.model_validate(copy.deepcopy(self.runs[run.id]))
            self._emit(RUNS_TABLE, "insert", item)
            saved.append(item)
        return saved

    async def get_run(self, run_id: str) -> Optional[RunItem]:
        await self._yield()
        row = self.runs.get(run_id)
        return RunItem.model_validate(copy.deepcopy(row)) if row else None

    async def update_runs(self, run_ids, values, *, statuses=None):
        await self._yield()
        allowed = set(_values(statuses)) if statuses is not None else None
        updated = []
        for run_id in run_ids:
            row = self.runs.get(run_id)
            if row is None:
                continue
            if allowed is not None and _raw(row["status"]) not in allowed:
                continue
            row.update(values)
            item = RunItem.model_validate(copy.deepcopy(row))
            self._emit(RUNS_TABLE, "update", item)
            updated.append(item)
        return updated

    async def list_runs(self, *, batch_id=None, statuses=None):
        await self._yield()
        allowed = set(_values(statuses)) if statuses is not None else None
        rows = [
            r for r in self.runs.values()
            if (batch_id is None or r["batch_id"] == batch_id)
            and (allowed is None or _raw(r["status"]) in allowed)
        ]
        rows.sort(key=lambda r: r["created_at"])
        return [RunItem.model_validate(copy.deepcopy(r)) for r in rows]

    async def list_stale_runs(self, cutoff: datetime) -> list[RunItem]:
        await self._yield()
        return [
            RunItem.model_validate(copy.deepcopy(r))
            for r in self.runs.values()
            if r["status"] == RunStatus.RUNNING
            and r.get("heartbeat_at") is not None
            and r["heartbeat_at"] < cutoff
        ]

    async def max_run_index(self, batch_id: str, subject_id: str) -> int:
        await self._yield()
        indexes = [
            r["run_index"] for r in self.runs.values()
            if r["batch_id"] == batch_id and r["subject_id"] == subject_id
        ]
        return max(indexes, default=0)

    # ── Outputs ──────────────────────────────────────────────────────────

    async def insert_outputs(self, outputs: list[Output]) -> list[Output]:
        await self._yield()
        saved = []
        for output in outputs:
            self.outputs[output.id] = output.model_dump()
            item = Output.model_validate(copy.deepcopy(self.outputs[output.id]))
            self._emit(OUTPUTS_TABLE, "insert", item)
            saved.append(item)
        return saved

    async def update_output(self, output_id, values):
        await self._yield()
        row = self.outputs.get(output_id)
        if row is None:
            return None
        row.update(values)
        item = Output.model_validate(copy.deepcopy(row))
        self._emit(OUTPUTS_TABLE, "update", item)
        return item

    async def list_outputs(self, *, run_id=None, subject_ids=None, statuses=None):
        await self._yield()
        subjects = set(subject_ids) if subject_ids is not None else None
        allowed = set(_values(statuses)) if statuses is not None else None
        rows = [
            r for r in self.outputs.values()
            if (run_id is None or r["run_id"] == run_id)
            and (subjects is None or r["subject_id"] in subjects)
            and (allowed is None or _raw(r["status"]) in allowed)
        ]
        rows.sort(key=lambda r: r["created_at"])
        return [Output.model_validate(copy.deepcopy(r)) for r in rows]

    # ── Source material ──────────────────────────────────────────────────

    async def list_batch_items(self, batch_id, subject_id=None):
        await self._yield()
        return [
            BatchItem.model_validate(copy.deepcopy(r))
            for r in self.batch_items.values()
            if r["batch_id"] == batch_id and (subject_id is None or r["subject_id"] == subject_id)
        ]

    async def list_approved_poses(self) -> list[Pose]:
        await self._yield()
        return [Pose.model_validate(copy.deepcopy(r)) for r in self.poses.values()]

    async def list_subjects(self, batch_id: str) -> list[Subject]:
        await self._yield()
        rows = [r for r in self.subjects.values() if r.get("batch_id") == batch_id]
        rows.sort(key=lambda r: r["created_at"])
        return [Subject.model_validate(copy.deepcopy(r)) for r in rows]


# ═════════════════════════════════════════════════════════════════════════════
# Supabase implementation
# ═════════════════════════════════════════════════════════════════════════════

class SupabaseStore(Store):
    """
    Store backed by Supabase tables via the service-role client.

    supabase-py's table API is synchronous, so each query runs in a worker
    thread to keep the event loop free while the HTTP round-trip is in flight.
    """

    def __init__(self, client=None, feed: Optional[ChangeFeed] = None):
        super().__init__(feed)
        self._client = client

    def _get_client(self):
        """Lazy-init Supabase client using service role key."""
        if self._client is None:
            from supabase import create_client

            if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_ROLE_KEY:
                raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
            self._client = create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE_KEY)
        return self._client

    async def _execute(self, build: Callable[[Any], Any]) -> list[dict]:
        def _run():
            return build(self._get_client()).execute()

        try:
            response = await asyncio.to_thread(_run)
        except RuntimeError:
            raise
        except Exception as e:
            logger.error(f"Supabase query failed: {e}")
            raise PersistenceError(str(e)) from e
        data = response.data
        if data is None:
            return []
        return data if isinstance(data, list) else [data]

    # ── Jobs ─────────────────────────────────────────────────────────────

    async def insert_job(self, job: PipelineJob) -> PipelineJob:
        rows = await self._execute(
            lambda sb: sb.table(JOBS_TABLE).insert(job.model_dump(mode="json"))
        )
        saved = PipelineJob.model_validate(rows[0]) if rows else job
        self._emit(JOBS_TABLE, "insert", saved)
        return saved

    async def get_job(self, job_id: str) -> Optional[PipelineJob]:
        rows = await self._execute(
            lambda sb: sb.table(JOBS_TABLE).select("*").eq("id", job_id).limit(1)
        )
        return PipelineJob.model_validate(rows[0]) if rows else None

    async def update_job(self, job_id, values, *, expected=None):
        payload = _serialize({**values, "updated_at": utcnow()})

        def _build(sb):
            query = sb.table(JOBS_TABLE).update(payload).eq("id", job_id)
            for column, value in _serialize(expected or {}).items():
                query = query.eq(column, value)
            return query

        rows = await self._execute(_build)
        if not rows:
            return None
        saved = PipelineJob.model_validate(rows[0])
        self._emit(JOBS_TABLE, "update", saved)
        return saved

    async def list_jobs(self, statuses, *, completed_since=None, limit=None):
        def _build(sb):
            query = sb.table(JOBS_TABLE).select("*").in_("status", _values(statuses))
            if completed_since is not None:
                query = query.gte("completed_at", completed_since.isoformat())
                query = query.order("completed_at", desc=True)
            else:
                query = query.order("created_at", desc=True)
            if limit is not None:
                query = query.limit(limit)
            return query

        rows = await self._execute(_build)
        return [PipelineJob.model_validate(r) for r in rows]

    async def insert_job_event(self, event: PipelineJobEvent) -> PipelineJobEvent:
        await self._execute(
            lambda sb: sb.table(JOB_EVENTS_TABLE).insert(event.model_dump(mode="json"))
        )
        self._emit(JOB_EVENTS_TABLE, "insert", event)
        return event

    async def list_job_events(self, job_id: str) -> list[PipelineJobEvent]:
        rows = await self._execute(
            lambda sb: sb.table(JOB_EVENTS_TABLE).select("*").eq("job_id", job_id).order("timestamp")
        )
        return [PipelineJobEvent.model_validate(r) for r in rows]

    # ── Runs ─────────────────────────────────────────────────────────────

    async def insert_runs(self, runs: list[RunItem]) -> list[RunItem]:
        if not runs:
            return []
        rows = await self._execute(
            lambda sb: sb.table(RUNS_TABLE).insert([r.model_dump(mode="json") for r in runs])
        )
        saved = [RunItem.model_validate(r) for r in rows]
        for item in saved:
            self._emit(RUNS_TABLE, "insert", item)
        return saved

    async def get_run(self, run_id: str) -> Optional[RunItem]:
        rows = await self._execute(
            lambda sb: sb.table(RUNS_TABLE).select("*").eq("id", run_id).limit(1)
        )
        return RunItem.model_validate(rows[0]) if rows else None

    async def update_runs(self, run_ids, values, *, statuses=None):
        ids = list(run_ids)
        if not ids:
            return []
        payload = _serialize(values)

        def _build(sb):
            query = sb.table(RUNS_TABLE).update(payload).in_("id", ids)
            if statuses is not None:
                query = query.in_("status", _values(statuses))
            return query

        rows = await self._execute(_build)
        saved = [RunItem.model_validate(r) for r in rows]
        for item in saved:
            self._emit(RUNS_TABLE, "update", item)
        return saved

    async def list_runs(self, *, batch_id=None, statuses=None):
        def _build(sb):
            query = sb.table(RUNS_TABLE).select("*")
            if batch_id is not None:
                query = query.eq("batch_id", batch_id)
            if statuses is not None:
                query = query.in_("status", _values(statuses))
            return query.order("created_at")

        rows = await self._execute(_build)
        return [RunItem.model_validate(r) for r in rows]

    async def list_stale_runs(self, cutoff: datetime) -> list[RunItem]:
        rows = await self._execute(
            lambda sb: sb.table(RUNS_TABLE)
            .select("*")
            .eq("status", RunStatus.RUNNING.value)
            .lt("heartbeat_at", cutoff.isoformat())
        )
        return [RunItem.model_validate(r) for r in rows]

    async def max_run_index(self, batch_id: str, subject_id: str) -> int:
        rows = await self._execute(
            lambda sb: sb.table(RUNS_TABLE)
            .select("run_index")
            .eq("batch_id", batch_id)
            .eq("subject_id", subject_id)
            .order("run_index", desc=True)
            .limit(1)
        )
        return rows[0]["run_index"] if rows else 0

    # ── Outputs ──────────────────────────────────────────────────────────

    async def insert_outputs(self, outputs: list[Output]) -> list[Output]:
        if not outputs:
            return []
        rows = await self._execute(
            lambda sb: sb.table(OUTPUTS_TABLE).insert([o.model_dump(mode="json") for o in outputs])
        )
        saved = [Output.model_validate(r) for r in rows]
        for item in saved:
            self._emit(OUTPUTS_TABLE, "insert", item)
        return saved

    async def update_output(self, output_id, values):
        rows = await self._execute(
            lambda sb: sb.table(OUTPUTS_TABLE).update(_serialize(values)).eq("id", output_id)
        )
        if not rows:
            return None
        item = Output.model_validate(rows[0])
        self._emit(OUTPUTS_TABLE, "update", item)
        return item

    async def list_outputs(self, *, run_id=None, subject_ids=None, statuses=None):
        def _build(sb):
            query = sb.table(OUTPUTS_TABLE).select("*")
            if run_id is not None:
                query = query.eq("run_id", run_id)
            if subject_ids is not None:
                query = query.in_("subject_id", list(subject_ids))
            if statuses is not None:
                query = query.in_("status", _values(statuses))
            return query.order("created_at")

        rows = await self._execute(_build)
        return [Output.model_validate(r) for r in rows]

    # ── Source material ──────────────────────────────────────────────────

    async def list_batch_items(self, batch_id, subject_id=None):
        def _build(sb):
            query = sb.table(BATCH_ITEMS_TABLE).select("*").eq("batch_id", batch_id)
            if subject_id is not None:
                query = query.eq("subject_id", subject_id)
            return query

        rows = await self._execute(_build)
        return [BatchItem.model_validate(r) for r in rows]

    async def list_approved_poses(self) -> list[Pose]:
        rows = await self._execute(
            lambda sb: sb.table(POSES_TABLE)
            .select("id, slot, stored_url")
            .eq("curation_status", "approved")
            .not_.is_("stored_url", "null")
        )
        return [Pose.model_validate(r) for r in rows]

    async def list_subjects(self, batch_id: str) -> list[Subject]:
        rows = await self._execute(
            lambda sb: sb.table(SUBJECTS_TABLE).select("*").eq("batch_id", batch_id).order("created_at")
        )
        return [Subject.model_validate(r) for r in rows]


def create_store(feed: Optional[ChangeFeed] = None) -> Store:
    """SupabaseStore when credentials are configured, MemoryStore otherwise."""
    if config.SUPABASE_URL and config.SUPABASE_SERVICE_ROLE_KEY:
        return SupabaseStore(feed=feed)
    logger.warning("Supabase not configured — using in-memory store (state is lost on restart)")
    return MemoryStore(feed=feed)
