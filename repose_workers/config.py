"""
Environment-driven settings for the repose worker.

Values are read once at import time. `load_dotenv()` runs first so a local
`.env` file can supply anything not exported in the shell.
"""

import os

from dotenv import load_dotenv

load_dotenv()

# ── Persistence ──────────────────────────────────────────────────────────────

SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")

# Optional: enables cross-process change notifications
REDIS_URL = os.getenv("REDIS_URL", "")
CHANGE_CHANNEL = os.getenv("CHANGE_CHANNEL", "pipeline:changes")

# ── Generation service ──────────────────────────────────────────────────────

GENERATION_API_URL = os.getenv("GENERATION_API_URL", "")
GENERATION_API_KEY = os.getenv("GENERATION_API_KEY", "")
GENERATION_TIMEOUT_SECONDS = float(os.getenv("GENERATION_TIMEOUT_SECONDS", "380"))
DEFAULT_MODEL = os.getenv("DEFAULT_REPOSE_MODEL", "google/gemini-3-pro-image-preview")

# Transient-error retry policy (per generation task)
MAX_TRANSIENT_RETRIES = int(os.getenv("MAX_TRANSIENT_RETRIES", "3"))
BACKOFF_BASE_SECONDS = float(os.getenv("BACKOFF_BASE_SECONDS", "2.0"))  # 2, 4, 8
BACKOFF_JITTER_SECONDS = float(os.getenv("BACKOFF_JITTER_SECONDS", "1.0"))

# ── Queue coordinator ───────────────────────────────────────────────────────

DEFAULT_CONCURRENCY = int(os.getenv("QUEUE_CONCURRENCY", "3"))
DEFAULT_POSES_PER_SHOT_TYPE = 2
DEFAULT_ATTEMPTS_PER_POSE = 1

# ── Liveness ─────────────────────────────────────────────────────────────────

HEARTBEAT_INTERVAL_SECONDS = float(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "30"))
STALL_SCAN_INTERVAL_SECONDS = float(os.getenv("STALL_SCAN_INTERVAL_SECONDS", "60"))
STALL_THRESHOLD_SECONDS = float(os.getenv("STALL_THRESHOLD_SECONDS", "300"))  # 5 minutes
ABANDONED_THRESHOLD_SECONDS = float(os.getenv("ABANDONED_THRESHOLD_SECONDS", "3600"))

# ── Tracking / observability ────────────────────────────────────────────────

TRACKER_DEBOUNCE_SECONDS = 0.5
TRACKER_POLL_INTERVAL_SECONDS = 5.0
RECENT_JOBS_WINDOW_HOURS = 24
RECENT_JOBS_LIMIT = 10
