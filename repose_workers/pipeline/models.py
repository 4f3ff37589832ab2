"""
Pydantic models and enums for the repose generation pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from .. import config


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Pipeline Job (ledger) ────────────────────────────────────────────────────

class PipelineJobType(str, Enum):
    SCRAPE_BRAND = "SCRAPE_BRAND"
    SCRAPE_FACES = "SCRAPE_FACES"
    FACE_SCRAPE = "FACE_SCRAPE"
    CLAY_GENERATION = "CLAY_GENERATION"
    POSE_GENERATION = "POSE_GENERATION"
    FACE_GENERATION = "FACE_GENERATION"
    FACE_PAIRING = "FACE_PAIRING"
    CROP_GENERATION = "CROP_GENERATION"
    ORGANIZE_IMAGES = "ORGANIZE_IMAGES"
    REPOSE_GENERATION = "REPOSE_GENERATION"
    OTHER = "OTHER"


class PipelineJobStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


ACTIVE_JOB_STATUSES = (
    PipelineJobStatus.QUEUED,
    PipelineJobStatus.RUNNING,
    PipelineJobStatus.PAUSED,
)
TERMINAL_JOB_STATUSES = (
    PipelineJobStatus.COMPLETED,
    PipelineJobStatus.FAILED,
    PipelineJobStatus.CANCELED,
)


class PipelineJob(BaseModel):
    id: str
    type: PipelineJobType = PipelineJobType.OTHER
    title: str = ""
    status: PipelineJobStatus = PipelineJobStatus.QUEUED
    progress_total: int = 0
    progress_done: int = 0
    progress_failed: int = 0
    progress_message: Optional[str] = None
    origin_route: str = ""
    origin_context: dict[str, Any] = Field(default_factory=dict)
    supports_pause: bool = False
    supports_retry: bool = False
    supports_restart: bool = True
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobEventLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class PipelineJobEvent(BaseModel):
    id: str
    job_id: str
    level: JobEventLevel = JobEventLevel.INFO
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


# ── Run items ────────────────────────────────────────────────────────────────

class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunItem(BaseModel):
    """Persisted record of one attempt to push a subject through generation."""
    id: str
    batch_id: str
    subject_id: str
    run_index: int
    status: RunStatus = RunStatus.QUEUED
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    outputs_generated: int = 0
    config_snapshot: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class QueueItem(BaseModel):
    """A coordinator's local view of a RunItem."""
    run_id: str
    subject_id: str
    subject_name: str = "Unknown"
    run_index: int
    status: RunStatus = RunStatus.QUEUED
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    outputs_generated: int = 0


# ── Outputs ──────────────────────────────────────────────────────────────────

class OutputStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class Output(BaseModel):
    id: str
    run_id: str
    batch_id: str
    subject_id: str
    batch_item_id: Optional[str] = None
    view: str  # output shot type
    pose_id: Optional[str] = None
    attempt_index: int = 0
    status: OutputStatus = OutputStatus.PENDING
    result_url: Optional[str] = None
    is_selected: bool = False
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class GenerationTask(BaseModel):
    """One dispatch to the generation service. Never stored on its own."""
    output_id: str = ""
    run_id: str
    batch_item_id: str
    source_view: str
    source_url: str
    shot_type: str
    pose_id: Optional[str] = None
    pose_url: Optional[str] = None
    attempt_index: int = 0
    model: str = config.DEFAULT_MODEL


# ── Subjects and source material ─────────────────────────────────────────────

class Stage(str, Enum):
    UPLOAD = "upload"
    CROP = "crop"
    MATCH = "match"
    GENERATE = "generate"
    REVIEW = "review"


class Subject(BaseModel):
    """A look: the unit of production work."""
    id: str
    name: str = "Unknown"
    batch_id: Optional[str] = None
    stage: Stage = Stage.GENERATE
    created_at: datetime = Field(default_factory=utcnow)


class BatchItem(BaseModel):
    """An uploaded source image for one view of a subject."""
    id: str
    batch_id: str
    subject_id: str
    view: str
    source_url: str
    head_cropped_url: Optional[str] = None
    digital_talent_id: Optional[str] = None


class Pose(BaseModel):
    id: str
    slot: Optional[str] = None
    stored_url: Optional[str] = None


class BatchConfig(BaseModel):
    model: str = config.DEFAULT_MODEL
    poses_per_shot_type: int = Field(config.DEFAULT_POSES_PER_SHOT_TYPE, ge=1)
    attempts_per_pose: int = Field(config.DEFAULT_ATTEMPTS_PER_POSE, ge=1)


# ── Tracking projections ────────────────────────────────────────────────────

class ViewOutputStats(BaseModel):
    view: str
    completed_count: int = 0
    failed_count: int = 0
    pending_count: int = 0
    running_count: int = 0
    selected_count: int = 0
    has_any_output: bool = False
    is_complete: bool = False


class SubjectGenerationStats(BaseModel):
    subject_id: str
    subject_name: str
    stage: Stage = Stage.GENERATE
    total_views: int = 0
    total_completed_outputs: int = 0
    views_with_outputs: int = 0
    views_complete: int = 0
    views_missing: int = 0
    views_partial: int = 0
    is_fully_complete: bool = False
    needs_generation: bool = False
    needs_action: bool = False
    views: list[ViewOutputStats] = Field(default_factory=list)
    last_generated_at: Optional[datetime] = None
    is_new_since_last_run: bool = False


class GenerationSummary(BaseModel):
    total_subjects: int = 0
    subjects_complete: int = 0
    subjects_need_generation: int = 0
    subjects_new: int = 0
    total_views: int = 0
    views_complete: int = 0
    total_outputs: int = 0


class ViewShortfall(BaseModel):
    subject_id: str
    subject_name: str
    view: str
    missing: int


# ── Active jobs projection ──────────────────────────────────────────────────

class TrackedJob(PipelineJob):
    is_stalled: bool = False
    is_abandoned: bool = False


class ProgressTotals(BaseModel):
    done: int = 0
    total: int = 0


class ActiveJobsSnapshot(BaseModel):
    active_jobs: list[TrackedJob] = Field(default_factory=list)
    recent_jobs: list[TrackedJob] = Field(default_factory=list)
    active_count: int = 0
    running_count: int = 0
    paused_count: int = 0
    stalled_count: int = 0
    total_progress: ProgressTotals = Field(default_factory=ProgressTotals)
    run_counts: dict[str, int] = Field(default_factory=dict)


# ── API request / response models ───────────────────────────────────────────

class SubjectRef(BaseModel):
    id: str
    name: str = "Unknown"


class EnqueueRequest(BaseModel):
    subjects: list[SubjectRef]
    runs_per_subject: int = Field(1, ge=1)
    config: Optional[BatchConfig] = None
    concurrency: Optional[int] = Field(None, ge=1)


class QueueStatusResponse(BaseModel):
    batch_id: str
    job_id: Optional[str] = None
    is_processing: bool = False
    queued: int = 0
    running: int = 0
    complete: int = 0
    failed: int = 0
    total: int = 0
    items: list[QueueItem] = Field(default_factory=list)


class TrackingResponse(BaseModel):
    batch_id: str
    required_options: int
    summary: GenerationSummary
    subjects: list[SubjectGenerationStats]
