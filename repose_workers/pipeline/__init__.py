"""
Repose Generation Pipeline

Orchestration for bulk repose runs:
  Ledger      — persistent job records, progress and lifecycle
  Coordinator — bounded-concurrency run execution per batch
  Monitor     — heartbeats and stall reclamation
  Tracker     — per-subject completion derived from output rows
  Active jobs — aggregate job view for operators
"""

from .active_jobs import ActiveJobsAggregator
from .coordinator import QueueCoordinator
from .ledger import JobLedger
from .monitor import HeartbeatMonitor
from .routes import jobs_router, queue_router, tracking_router
from .tracker import GenerationTracker

__all__ = [
    "ActiveJobsAggregator",
    "GenerationTracker",
    "HeartbeatMonitor",
    "JobLedger",
    "QueueCoordinator",
    "jobs_router",
    "queue_router",
    "tracking_router",
]
