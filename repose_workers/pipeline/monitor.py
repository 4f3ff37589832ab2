"""
Heartbeat & stall monitor for repose runs.

Two independent fixed-interval loops:
  - liveness writer: stamps heartbeat_at on every run the owner is executing
  - stall scanner:   fails running runs whose heartbeat went quiet

A run is only ever failed through a conditional update that requires it to
still be running, so a rescan of a run that is already failed, complete or
re-queued writes nothing.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .. import config
from .. import metrics
from .errors import StallError
from .models import RunStatus, utcnow
from .store import Store

logger = logging.getLogger(__name__)


class HeartbeatMonitor:
    def __init__(
        self,
        store: Store,
        *,
        running_ids: Callable[[], list[str]] = lambda: [],
        on_stalled: Optional[Callable[[list[StallError]], None]] = None,
        heartbeat_interval: float = config.HEARTBEAT_INTERVAL_SECONDS,
        scan_interval: float = config.STALL_SCAN_INTERVAL_SECONDS,
        stall_threshold: float = config.STALL_THRESHOLD_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.running_ids = running_ids
        self.on_stalled = on_stalled
        self.heartbeat_interval = heartbeat_interval
        self.scan_interval = scan_interval
        self.stall_threshold = stall_threshold
        self.clock = clock
        self._tasks: list[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    async def beat_once(self) -> int:
        """Stamp heartbeat_at on the owner's running runs. Returns how many were touched."""
        run_ids = self.running_ids()
        if not run_ids:
            return 0
        updated = await self.store.update_runs(
            run_ids, {"heartbeat_at": self.clock()}, statuses=[RunStatus.RUNNING]
        )
        return len(updated)

    async def scan_once(self) -> list[StallError]:
        """
        Fail every running run whose heartbeat is older than the stall threshold.

        Safe to call from any process at any time; returns one StallError per
        run this call actually moved to failed.
        """
        now = self.clock()
        cutoff = now - timedelta(seconds=self.stall_threshold)
        stale = await self.store.list_stale_runs(cutoff)
        if not stale:
            return []

        updated = await self.store.update_runs(
            [run.id for run in stale],
            {
                "status": RunStatus.FAILED,
                "error": StallError.MESSAGE,
                "completed_at": now,
            },
            statuses=[RunStatus.RUNNING],
        )

        stalls = [StallError(run.id) for run in updated]
        for stall in stalls:
            logger.warning(f"Run {stall.run_id} stalled - no heartbeat since before {cutoff.isoformat()}")
            metrics.record_error("stall_scan", "StallError", str(stall), run_id=stall.run_id)
        if stalls:
            metrics.inc_counter("runs.stalled", len(stalls))
            if self.on_stalled is not None:
                self.on_stalled(stalls)
        return stalls

    # ── Loops ────────────────────────────────────────────────────────────

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not self.running_ids():
                continue
            try:
                await self.beat_once()
            except Exception as e:
                logger.error(f"Heartbeat write failed: {e}")

    async def _scan_loop(self):
        while True:
            await asyncio.sleep(self.scan_interval)
            if not self.running_ids():
                continue
            try:
                await self.scan_once()
            except Exception as e:
                logger.error(f"Stall scan failed: {e}")

    def start(self):
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._heartbeat_loop()),
            asyncio.create_task(self._scan_loop()),
        ]
        logger.debug("Heartbeat monitor started")

    async def stop(self):
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if tasks:
            logger.debug("Heartbeat monitor stopped")


async def reclaim_stalled_runs(store: Store) -> list[str]:
    """One-off stall scan, run at service start to pick up runs abandoned by a crashed process."""
    stalls = await HeartbeatMonitor(store).scan_once()
    if stalls:
        logger.info(f"Reclaimed {len(stalls)} stalled run(s) on startup")
    return [s.run_id for s in stalls]
