"""
FastAPI routes for the repose pipeline.

Queue Endpoints:
  GET    /queue/{batch_id}                       — Queue items and counts
  POST   /queue/{batch_id}/enqueue               — Add N runs per subject
  POST   /queue/{batch_id}/start                 — Start processing
  POST   /queue/{batch_id}/stop                  — Stop at the next task boundary
  POST   /queue/{batch_id}/retry-failed          — Re-queue every failed run
  POST   /queue/{batch_id}/runs/{run_id}/retry   — Re-queue one run
  POST   /queue/{batch_id}/clear-completed       — Drop finished items from the queue view
  DELETE /queue/{batch_id}                       — Drop every item from the queue view

Job Endpoints:
  GET  /jobs/active                  — Active + recent jobs with stall flags
  GET  /jobs/{id}                    — One job
  GET  /jobs/{id}/events             — Job event log
  POST /jobs/{id}/mark-stalled       — Operator: fail a dead job

Tracking Endpoints:
  GET  /tracking/{batch_id}          — Per-subject completion for a batch
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from .active_jobs import ActiveJobsAggregator
from .coordinator import QueueCoordinator
from .errors import LedgerError, NotFoundError, PersistenceError, PipelineError
from .ledger import JobLedger
from .models import (
    ActiveJobsSnapshot,
    EnqueueRequest,
    PipelineJob,
    PipelineJobEvent,
    QueueStatusResponse,
    TrackingResponse,
)
from .tracker import FILTER_TAGS, GenerationTracker, filter_subjects, summarize

logger = logging.getLogger(__name__)


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, LedgerError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, PersistenceError):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    logger.error(f"Unhandled pipeline error: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Queue Router
# ═════════════════════════════════════════════════════════════════════════════

queue_router = APIRouter(prefix="/queue", tags=["queue"])

# One coordinator per batch for the life of the process
_coordinators: dict[str, QueueCoordinator] = {}


async def get_coordinator(request: Request, batch_id: str) -> QueueCoordinator:
    coordinator = _coordinators.get(batch_id)
    if coordinator is None:
        state = request.app.state
        coordinator = QueueCoordinator(
            state.store,
            state.generation_client,
            state.ledger,
            batch_id=batch_id,
        )
        _coordinators[batch_id] = coordinator
        await coordinator.load_existing()
    return coordinator


def reset_coordinators():
    """Stop every coordinator and forget them."""
    for coordinator in _coordinators.values():
        coordinator.stop()
    _coordinators.clear()


def _status(coordinator: QueueCoordinator) -> QueueStatusResponse:
    counts = coordinator.counts()
    return QueueStatusResponse(
        batch_id=coordinator.batch_id,
        job_id=coordinator.job_id,
        is_processing=coordinator.is_processing,
        queued=counts["queued"],
        running=counts["running"],
        complete=counts["complete"],
        failed=counts["failed"],
        total=counts["total"],
        items=coordinator.items,
    )


@queue_router.get("/{batch_id}", response_model=QueueStatusResponse)
async def queue_status(batch_id: str, request: Request):
    try:
        coordinator = await get_coordinator(request, batch_id)
    except PipelineError as e:
        raise _http_error(e)
    return _status(coordinator)


@queue_router.post("/{batch_id}/enqueue", response_model=QueueStatusResponse)
async def enqueue(batch_id: str, body: EnqueueRequest, request: Request):
    """Persist new runs. Config and concurrency only apply while the queue is idle."""
    try:
        coordinator = await get_coordinator(request, batch_id)
        if not coordinator.is_processing:
            if body.config is not None:
                coordinator.batch_config = body.config
            if body.concurrency is not None:
                coordinator.concurrency = body.concurrency
        await coordinator.enqueue(body.subjects, body.runs_per_subject)
    except (PipelineError, ValueError) as e:
        raise _http_error(e)
    return _status(coordinator)


@queue_router.post("/{batch_id}/start")
async def start(batch_id: str, request: Request):
    try:
        coordinator = await get_coordinator(request, batch_id)
        job_id = await coordinator.start()
    except PipelineError as e:
        raise _http_error(e)
    if job_id is None:
        return {"status": "processing" if coordinator.is_processing else "idle", "job_id": coordinator.job_id}
    return {"status": "started", "job_id": job_id}


@queue_router.post("/{batch_id}/stop")
async def stop(batch_id: str, request: Request):
    coordinator = _coordinators.get(batch_id)
    if coordinator is None:
        raise HTTPException(status_code=404, detail=f"No queue for batch {batch_id}")
    coordinator.stop()
    return {"status": "stopping" if coordinator.is_processing else "idle", "job_id": coordinator.job_id}


@queue_router.post("/{batch_id}/retry-failed")
async def retry_failed(batch_id: str, request: Request):
    try:
        coordinator = await get_coordinator(request, batch_id)
        requeued = await coordinator.retry_failed()
    except PipelineError as e:
        raise _http_error(e)
    return {"requeued": requeued, "job_id": coordinator.job_id}


@queue_router.post("/{batch_id}/runs/{run_id}/retry")
async def retry_single(batch_id: str, run_id: str, request: Request):
    try:
        coordinator = await get_coordinator(request, batch_id)
        requeued = await coordinator.retry_single(run_id)
    except PipelineError as e:
        raise _http_error(e)
    if not requeued:
        raise HTTPException(status_code=409, detail=f"Run {run_id} is not failed or cancelled")
    return {"requeued": 1, "job_id": coordinator.job_id}


@queue_router.post("/{batch_id}/clear-completed")
async def clear_completed(batch_id: str, request: Request):
    coordinator = _coordinators.get(batch_id)
    cleared = coordinator.clear_completed() if coordinator else 0
    return {"cleared": cleared}


@queue_router.delete("/{batch_id}")
async def clear_queue(batch_id: str):
    coordinator = _coordinators.get(batch_id)
    cleared = coordinator.clear_queue() if coordinator else 0
    return {"cleared": cleared}


# ═════════════════════════════════════════════════════════════════════════════
# Jobs Router
# ═════════════════════════════════════════════════════════════════════════════

jobs_router = APIRouter(prefix="/jobs", tags=["jobs"])


@jobs_router.get("/active", response_model=ActiveJobsSnapshot)
async def active_jobs(request: Request, batch_id: Optional[str] = Query(None)):
    aggregator: ActiveJobsAggregator = request.app.state.aggregator
    try:
        return await aggregator.fetch(batch_id=batch_id)
    except PipelineError as e:
        raise _http_error(e)


@jobs_router.get("/{job_id}", response_model=PipelineJob)
async def get_job(job_id: str, request: Request):
    ledger: JobLedger = request.app.state.ledger
    try:
        return await ledger.get(job_id)
    except PipelineError as e:
        raise _http_error(e)


@jobs_router.get("/{job_id}/events", response_model=list[PipelineJobEvent])
async def job_events(job_id: str, request: Request):
    try:
        await request.app.state.ledger.get(job_id)
        return await request.app.state.store.list_job_events(job_id)
    except PipelineError as e:
        raise _http_error(e)


@jobs_router.post("/{job_id}/mark-stalled", response_model=PipelineJob)
async def mark_stalled(job_id: str, request: Request):
    aggregator: ActiveJobsAggregator = request.app.state.aggregator
    try:
        return await aggregator.mark_job_stalled(job_id)
    except PipelineError as e:
        raise _http_error(e)


# ═════════════════════════════════════════════════════════════════════════════
# Tracking Router
# ═════════════════════════════════════════════════════════════════════════════

tracking_router = APIRouter(prefix="/tracking", tags=["tracking"])


@tracking_router.get("/{batch_id}", response_model=TrackingResponse)
async def tracking(
    batch_id: str,
    request: Request,
    required_options: int = Query(1, ge=1),
    filter: str = Query("all"),
    last_run_at: Optional[datetime] = Query(None),
):
    if filter not in FILTER_TAGS:
        raise HTTPException(status_code=400, detail=f"filter must be one of {', '.join(FILTER_TAGS)}")
    tracker = GenerationTracker(
        request.app.state.store,
        batch_id,
        required_options,
        last_run_at=last_run_at,
    )
    try:
        subjects = await tracker.resync()
    except PipelineError as e:
        raise _http_error(e)
    return TrackingResponse(
        batch_id=batch_id,
        required_options=required_options,
        summary=summarize(subjects),
        subjects=filter_subjects(subjects, filter),
    )
