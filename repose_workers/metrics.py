"""
Thread-safe in-memory metrics for the repose worker.

  - counters:  tasks dispatched/completed/failed, runs reclaimed, retries
  - latency:   generation-service call durations
  - gauges:    active workers, queued runs
  - errors:    last few failures for triage

Everything resets on restart; durable history lives in the job ledger.
"""

import threading
import time
from collections import defaultdict
from typing import Dict, List

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = defaultdict(float)

# Last 100 samples per operation
_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

# Last 50 errors
_recent_errors: List[dict] = []
MAX_ERRORS = 50


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'tasks.completed', 'errors.transient')."""
    with _lock:
        _counters[name] += amount


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_latency(operation: str, duration_ms: float):
    with _lock:
        samples = _latency_samples[operation]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            _latency_samples[operation] = samples[-MAX_SAMPLES:]


def record_error(operation: str, error_type: str, message: str, run_id: str = ""):
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "operation": operation,
            "error_type": error_type,
            "message": message[:300],
            "run_id": run_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def get_snapshot() -> dict:
    """Consistent copy of everything collected so far, for the /metrics endpoint."""
    now = time.time()
    with _lock:
        latency = {}
        for operation, samples in _latency_samples.items():
            if not samples:
                continue
            ordered = sorted(samples)
            n = len(ordered)
            latency[operation] = {
                "p50": ordered[n // 2],
                "p95": ordered[int(n * 0.95)] if n >= 20 else ordered[-1],
                "avg": sum(ordered) / n,
                "count": n,
            }

        patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            patterns[f"{err['operation']}:{err['error_type']}"] += 1

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": latency,
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(patterns),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }


def reset():
    """Clear all collected data."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _latency_samples.clear()
        _recent_errors.clear()
