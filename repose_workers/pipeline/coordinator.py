"""
Queue Coordinator — bounded-concurrency execution of repose runs for one batch.

  enqueue → persisted run rows (queued) + local QueueItems
  start   → ledger job + heartbeat monitor + min(concurrency, queued) workers
  worker  → claim next queued item → process run → repeat until empty or stopped

The local queue is a projection of the run rows. Claiming flips an item to
running in one synchronous step, so two workers on the same event loop can
never pick up the same run. Every store write is keyed by run id and guarded
on the status it expects, so replays are harmless.
"""

import asyncio
import logging
import random
import time
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional

from .. import config
from .. import metrics
from .errors import (
    LedgerError,
    NotFoundError,
    PersistenceError,
    PipelineError,
    StallError,
    TerminalServiceError,
    TransientServiceError,
)
from .ledger import JobLedger
from .models import (
    BatchConfig,
    GenerationTask,
    JobEventLevel,
    Output,
    OutputStatus,
    PipelineJobStatus,
    PipelineJobType,
    QueueItem,
    RunItem,
    RunStatus,
    SubjectRef,
    utcnow,
)
from .monitor import HeartbeatMonitor
from .pairing import expand_tasks
from .store import Store

if TYPE_CHECKING:
    from ..generation import GenerationClient

logger = logging.getLogger(__name__)

STOPPED_MESSAGE = "Stopped before any output was generated"
ABANDONED_ON_STOP = "Not dispatched: queue stopped"


class QueueCoordinator:
    def __init__(
        self,
        store: Store,
        client: "GenerationClient",
        ledger: JobLedger,
        *,
        batch_id: str,
        batch_config: Optional[BatchConfig] = None,
        concurrency: int = config.DEFAULT_CONCURRENCY,
        max_retries: int = config.MAX_TRANSIENT_RETRIES,
        backoff_base: float = config.BACKOFF_BASE_SECONDS,
        backoff_jitter: float = config.BACKOFF_JITTER_SECONDS,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
        monitor: Optional[HeartbeatMonitor] = None,
        created_by: Optional[str] = None,
        on_run_finished: Optional[Callable[[QueueItem], None]] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.store = store
        self.client = client
        self.ledger = ledger
        self.batch_id = batch_id
        self.batch_config = batch_config or BatchConfig()
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_jitter = backoff_jitter
        self._sleep = sleep
        self.clock = clock
        self.created_by = created_by
        self.on_run_finished = on_run_finished
        self.monitor = monitor or HeartbeatMonitor(
            store,
            running_ids=self._running_ids,
            on_stalled=self._on_stalled,
            clock=clock,
        )

        self._items: list[QueueItem] = []
        self._in_flight: set[str] = set()
        self._active_workers = 0
        self._is_processing = False
        self._closing = False
        self._restart_pending = False
        self._cancel = asyncio.Event()
        self._job_id: Optional[str] = None
        self._supervisor: Optional[asyncio.Task] = None

    # ── Accessors ────────────────────────────────────────────────────────

    @property
    def items(self) -> list[QueueItem]:
        return [item.model_copy() for item in self._items]

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    @property
    def job_id(self) -> Optional[str]:
        return self._job_id

    @property
    def active_workers(self) -> int:
        return self._active_workers

    def counts(self) -> dict[str, int]:
        counts = {s.value: 0 for s in RunStatus}
        for item in self._items:
            counts[item.status.value] += 1
        counts["total"] = len(self._items)
        return counts

    def _running_ids(self) -> list[str]:
        # Runs executing here only; rows loaded from another process are left to stall
        return [i.run_id for i in self._items if i.run_id in self._in_flight]

    def _find(self, run_id: str) -> Optional[QueueItem]:
        return next((i for i in self._items if i.run_id == run_id), None)

    # ── Queue management ─────────────────────────────────────────────────

    async def enqueue(self, subjects: list[SubjectRef], runs_per_subject: int) -> list[QueueItem]:
        """Persist `runs_per_subject` new runs per subject and add them to the queue."""
        if runs_per_subject < 1:
            raise ValueError("runs_per_subject must be >= 1")

        runs: list[RunItem] = []
        names: dict[str, str] = {}
        snapshot = self.batch_config.model_dump()

        for subject in subjects:
            names[subject.id] = subject.name
            start_index = await self.store.max_run_index(self.batch_id, subject.id) + 1
            for offset in range(runs_per_subject):
                run_index = start_index + offset
                duplicate = any(
                    i.subject_id == subject.id
                    and i.run_index == run_index
                    and i.status in (RunStatus.QUEUED, RunStatus.RUNNING)
                    for i in self._items
                )
                if duplicate:
                    continue
                runs.append(RunItem(
                    id=str(uuid.uuid4()),
                    batch_id=self.batch_id,
                    subject_id=subject.id,
                    run_index=run_index,
                    config_snapshot=snapshot,
                ))

        if not runs:
            return []

        saved = await self.store.insert_runs(runs)
        new_items = [
            QueueItem(
                run_id=run.id,
                subject_id=run.subject_id,
                subject_name=names.get(run.subject_id, "Unknown"),
                run_index=run.run_index,
            )
            for run in saved
        ]
        self._items.extend(new_items)
        logger.info(f"Batch {self.batch_id}: queued {len(new_items)} run(s) for {len(subjects)} subject(s)")

        if self._is_processing and self._job_id:
            await self.ledger.expand_total(self._job_id, len(new_items))
        return [item.model_copy() for item in new_items]

    async def load_existing(self) -> int:
        """Pick up queued and running runs of this batch that are already in the store."""
        runs = await self.store.list_runs(
            batch_id=self.batch_id, statuses=[RunStatus.QUEUED, RunStatus.RUNNING]
        )
        names = {s.id: s.name for s in await self.store.list_subjects(self.batch_id)}
        known = {i.run_id for i in self._items}
        loaded = 0
        for run in runs:
            if run.id in known:
                continue
            self._items.append(QueueItem(
                run_id=run.id,
                subject_id=run.subject_id,
                subject_name=names.get(run.subject_id, "Unknown"),
                run_index=run.run_index,
                status=run.status,
                error=run.error,
                started_at=run.started_at,
            ))
            loaded += 1
        if loaded:
            logger.info(f"Batch {self.batch_id}: loaded {loaded} existing run(s)")
        return loaded

    def clear_completed(self) -> int:
        finished = (RunStatus.COMPLETE, RunStatus.FAILED, RunStatus.CANCELLED)
        before = len(self._items)
        self._items = [i for i in self._items if i.status not in finished]
        return before - len(self._items)

    def clear_queue(self) -> int:
        if self._is_processing:
            self.stop()
        cleared = len(self._items)
        self._items = []
        return cleared

    async def retry_failed(self) -> int:
        """Re-queue every failed run and make sure processing is going."""
        failed = [i for i in self._items if i.status == RunStatus.FAILED]
        if not failed:
            return 0
        reset = await self._reset_runs([i.run_id for i in failed], [RunStatus.FAILED])
        await self._after_requeue(reset)
        return reset

    async def retry_single(self, run_id: str) -> bool:
        """Re-queue one failed or cancelled run. Returns False if it was not retryable."""
        item = self._find(run_id)
        if item is None:
            raise NotFoundError(f"Run {run_id} is not in the queue for batch {self.batch_id}")
        if item.status not in (RunStatus.FAILED, RunStatus.CANCELLED):
            return False
        reset = await self._reset_runs([run_id], [RunStatus.FAILED, RunStatus.CANCELLED])
        await self._after_requeue(reset)
        return reset > 0

    async def _reset_runs(self, run_ids: list[str], statuses: list[RunStatus]) -> int:
        updated = await self.store.update_runs(
            run_ids,
            {
                "status": RunStatus.QUEUED,
                "error": None,
                "started_at": None,
                "completed_at": None,
                "heartbeat_at": None,
            },
            statuses=statuses,
        )
        for run in updated:
            item = self._find(run.id)
            if item is not None:
                item.status = RunStatus.QUEUED
                item.error = None
                item.started_at = None
                item.completed_at = None
        if updated:
            logger.info(f"Batch {self.batch_id}: re-queued {len(updated)} run(s)")
        return len(updated)

    async def _after_requeue(self, count: int):
        if not count:
            return
        if self._closing:
            # Picked up by a fresh job once the closing one is settled
            self._restart_pending = True
        elif self._is_processing and self._job_id:
            await self.ledger.expand_total(self._job_id, count)
        else:
            await self.start()

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> Optional[str]:
        """Start processing queued runs. Returns the ledger job id, or None if there was nothing to do."""
        queued = sum(1 for i in self._items if i.status == RunStatus.QUEUED)
        if self._is_processing or not queued:
            return None

        self._is_processing = True
        self._cancel.clear()
        try:
            job_id = await self.ledger.create(
                PipelineJobType.REPOSE_GENERATION,
                queued,
                {"batch_id": self.batch_id, "model": self.batch_config.model},
                title=f"Repose generation ({queued} run{'s' if queued != 1 else ''})",
                origin_route=f"/queue/{self.batch_id}",
                supports_retry=True,
                created_by=self.created_by,
            )
            await self.ledger.set_status(job_id, PipelineJobStatus.RUNNING, "Processing runs")
        except Exception:
            self._is_processing = False
            raise

        self._job_id = job_id
        self.monitor.start()
        self._supervisor = asyncio.create_task(self._supervise())
        logger.info(f"Batch {self.batch_id}: started job {job_id} with {queued} queued run(s)")
        return job_id

    def stop(self):
        """Ask workers to stop at the next task boundary. In-flight calls finish."""
        if not self._cancel.is_set():
            logger.info(f"Batch {self.batch_id}: stop requested")
        self._cancel.set()

    async def wait(self):
        """Block until processing has finished, including any round restarted on close."""
        while self._supervisor is not None and not self._supervisor.done():
            await self._supervisor

    async def _supervise(self):
        try:
            while True:
                queued = sum(1 for i in self._items if i.status == RunStatus.QUEUED)
                if self._cancel.is_set() or not queued:
                    break
                workers = [
                    asyncio.create_task(self._worker(n))
                    for n in range(min(self.concurrency, queued))
                ]
                await asyncio.gather(*workers)
        finally:
            await self._finish()

        if self._restart_pending:
            self._restart_pending = False
            logger.info(f"Batch {self.batch_id}: runs were re-queued while closing, starting a new job")
            try:
                await self.start()
            except PipelineError as e:
                logger.error(f"Batch {self.batch_id}: could not restart processing: {e}")

    async def _worker(self, worker_id: int):
        self._active_workers += 1
        metrics.set_gauge("workers.active", self._active_workers)
        try:
            while not self._cancel.is_set():
                item = self._claim_next()
                if item is None:
                    break
                await self._process_run(item)
        finally:
            self._active_workers -= 1
            metrics.set_gauge("workers.active", self._active_workers)

    def _claim_next(self) -> Optional[QueueItem]:
        # No await between the check and the flip
        for item in self._items:
            if item.status == RunStatus.QUEUED:
                item.status = RunStatus.RUNNING
                item.started_at = self.clock()
                item.error = None
                self._in_flight.add(item.run_id)
                return item
        return None

    async def _finish(self):
        self._closing = True
        job_id = self._job_id
        try:
            await self.monitor.stop()
            if job_id is None:
                return
            job = await self.ledger.get(job_id)
            still_queued = any(i.status == RunStatus.QUEUED for i in self._items)
            if self._cancel.is_set() and still_queued:
                status = PipelineJobStatus.CANCELED
            elif job.progress_failed > 0:
                status = PipelineJobStatus.FAILED
            else:
                status = PipelineJobStatus.COMPLETED
            message = f"{job.progress_done} complete, {job.progress_failed} failed"
            await self.ledger.set_status(job_id, status, message)
            logger.info(f"Batch {self.batch_id}: job {job_id} finished as {status.value} ({message})")
        except LedgerError as e:
            # e.g. an observer already marked the job stalled
            logger.warning(f"Could not close job {job_id}: {e}")
        except PipelineError as e:
            logger.error(f"Could not close job {job_id}: {e}")
        finally:
            self._is_processing = False
            self._closing = False
            metrics.set_gauge("workers.active", 0)

    # ── Run processing ───────────────────────────────────────────────────

    async def _process_run(self, item: QueueItem):
        start = time.time()
        successes = failures = 0
        stopped = False
        outstanding: list[GenerationTask] = []
        try:
            now = self.clock()
            claimed = await self.store.update_runs(
                [item.run_id],
                {"status": RunStatus.RUNNING, "started_at": now, "heartbeat_at": now, "error": None},
                statuses=[RunStatus.QUEUED],
            )
            if not claimed:
                self._in_flight.discard(item.run_id)
                await self._sync_from_store(item)
                logger.warning(f"Run {item.run_id} is no longer claimable ({item.status.value}), skipping")
                return

            batch_items = await self.store.list_batch_items(self.batch_id, item.subject_id)
            poses = await self.store.list_approved_poses()
            tasks, skipped = expand_tasks(item.run_id, batch_items, poses, self.batch_config)
            for err in skipped:
                logger.info(f"Run {item.run_id}: skipping {err.shot_type}: {err}")
                await self._log_event(JobEventLevel.WARN, str(err), {
                    "run_id": item.run_id, "subject_id": item.subject_id, "shot_type": err.shot_type,
                })

            outputs = []
            for task in tasks:
                task.output_id = str(uuid.uuid4())
                outputs.append(Output(
                    id=task.output_id,
                    run_id=item.run_id,
                    batch_id=self.batch_id,
                    subject_id=item.subject_id,
                    batch_item_id=task.batch_item_id,
                    view=task.shot_type,
                    pose_id=task.pose_id,
                    attempt_index=task.attempt_index,
                ))
            await self.store.insert_outputs(outputs)
            outstanding = list(tasks)

            # A task stays outstanding until its output has been settled
            while outstanding:
                if self._cancel.is_set():
                    stopped = True
                    await self._abandon_outputs(outstanding, ABANDONED_ON_STOP)
                    outstanding = []
                    break
                if await self._dispatch(outstanding[0]):
                    successes += 1
                else:
                    failures += 1
                outstanding.pop(0)
                await self._heartbeat(item)

            if successes:
                status, error = RunStatus.COMPLETE, None
            elif stopped:
                status, error = RunStatus.CANCELLED, STOPPED_MESSAGE
            elif not tasks:
                status, error = RunStatus.FAILED, "No generation tasks: required input views or slot poses are missing"
            else:
                status, error = RunStatus.FAILED, f"All {failures} generation task(s) failed"
        except PipelineError as e:
            logger.error(f"Run {item.run_id} failed: {e}")
            status, error = RunStatus.FAILED, str(e)
        except Exception as e:
            logger.error(f"Run {item.run_id} crashed: {e}", exc_info=True)
            status, error = RunStatus.FAILED, str(e)

        if outstanding:
            await self._abandon_outputs(outstanding, f"Not dispatched: {error}")
        await self._finalize_run(item, status, error, successes)
        metrics.record_latency("run.total", (time.time() - start) * 1000)

    async def _dispatch(self, task: GenerationTask) -> bool:
        """Run one task. A failed store write fails that task's output only."""
        try:
            return await self._run_task(task)
        except PersistenceError as e:
            logger.error(f"Output {task.output_id}: store write failed: {e}")
            metrics.inc_counter("tasks.failed")
            metrics.record_error("generate", "PersistenceError", str(e), run_id=task.run_id)
            await self._abandon_outputs([task], f"Store write failed: {e}")
            return False

    async def _run_task(self, task: GenerationTask) -> bool:
        """Dispatch one task, retrying transient failures. True if an image came back."""
        await self.store.update_output(task.output_id, {"status": OutputStatus.GENERATING})
        metrics.inc_counter("tasks.dispatched")

        attempt = 0
        while True:
            try:
                result_url = await self.client.generate(task)
            except TransientServiceError as e:
                if attempt >= self.max_retries:
                    logger.error(f"Output {task.output_id}: giving up after {attempt + 1} attempts: {e}")
                    await self._fail_output(task, f"{e} (after {attempt + 1} attempts)", "TransientServiceError")
                    return False
                if e.retry_after is not None:
                    delay = e.retry_after
                else:
                    delay = self.backoff_base * (2 ** attempt) + random.uniform(0, self.backoff_jitter)
                logger.warning(
                    f"Output {task.output_id}: {e} on attempt {attempt + 1}/{self.max_retries + 1} "
                    f"- retrying in {delay:.1f}s"
                )
                metrics.inc_counter("tasks.retried")
                attempt += 1
                await self._sleep(delay)
            except TerminalServiceError as e:
                logger.error(f"Output {task.output_id}: {e}")
                await self._fail_output(task, str(e), "TerminalServiceError")
                return False
            except PipelineError:
                raise
            except Exception as e:
                logger.error(f"Output {task.output_id}: unexpected generation error: {e}", exc_info=True)
                await self._fail_output(task, str(e), type(e).__name__)
                return False
            else:
                await self.store.update_output(task.output_id, {
                    "status": OutputStatus.COMPLETED,
                    "result_url": result_url,
                    "error": None,
                })
                metrics.inc_counter("tasks.completed")
                return True

    async def _fail_output(self, task: GenerationTask, error: str, error_type: str):
        await self.store.update_output(task.output_id, {"status": OutputStatus.FAILED, "error": error})
        metrics.inc_counter("tasks.failed")
        metrics.record_error("generate", error_type, error, run_id=task.run_id)

    async def _abandon_outputs(self, tasks: list[GenerationTask], error: str):
        for task in tasks:
            try:
                await self.store.update_output(task.output_id, {"status": OutputStatus.FAILED, "error": error})
            except PersistenceError as e:
                logger.warning(f"Could not mark output {task.output_id} failed: {e}")

    async def _heartbeat(self, item: QueueItem):
        try:
            await self.store.update_runs(
                [item.run_id], {"heartbeat_at": self.clock()}, statuses=[RunStatus.RUNNING]
            )
        except PipelineError as e:
            logger.warning(f"Heartbeat for run {item.run_id} failed: {e}")

    async def _finalize_run(
        self,
        item: QueueItem,
        status: RunStatus,
        error: Optional[str],
        successes: int,
    ):
        now = self.clock()
        try:
            updated = await self.store.update_runs(
                [item.run_id],
                {
                    "status": status,
                    "error": error,
                    "completed_at": now,
                    "outputs_generated": successes,
                },
                statuses=[RunStatus.RUNNING],
            )
            if updated:
                item.status, item.error = status, error
                item.completed_at, item.outputs_generated = now, successes
            else:
                # Lost to the stall scanner (or an external reset); the stored row wins
                await self._sync_from_store(item)
                item.outputs_generated = successes
                logger.warning(
                    f"Run {item.run_id} was already {item.status.value} when it finished; "
                    f"keeping stored state"
                )
        except PipelineError as e:
            logger.error(f"Could not persist result of run {item.run_id}: {e}")
            item.status, item.error = RunStatus.FAILED, str(e)
        finally:
            self._in_flight.discard(item.run_id)

        await self._record_outcome(item)
        if self.on_run_finished is not None:
            try:
                self.on_run_finished(item.model_copy())
            except Exception as e:
                logger.error(f"on_run_finished callback failed for run {item.run_id}: {e}", exc_info=True)

    async def _sync_from_store(self, item: QueueItem):
        run = await self.store.get_run(item.run_id)
        if run is None:
            item.status, item.error = RunStatus.FAILED, "Run row missing"
            return
        item.status, item.error = run.status, run.error
        item.completed_at = run.completed_at

    async def _record_outcome(self, item: QueueItem):
        if item.status == RunStatus.COMPLETE:
            metrics.inc_counter("runs.completed")
            delta = {"done_delta": 1}
        elif item.status == RunStatus.FAILED:
            metrics.inc_counter("runs.failed")
            delta = {"failed_delta": 1}
            await self._log_event(
                JobEventLevel.ERROR,
                f"Run {item.run_index} for {item.subject_name} failed: {item.error}",
                {"run_id": item.run_id, "subject_id": item.subject_id},
            )
        else:
            return

        if self._job_id is None:
            return
        try:
            counts = self.counts()
            await self.ledger.update_progress(
                self._job_id,
                message=f"{counts['complete']} complete, {counts['failed']} failed, {counts['queued']} queued",
                **delta,
            )
        except PipelineError as e:
            logger.error(f"Progress update for job {self._job_id} failed: {e}")

    async def _log_event(self, level: JobEventLevel, message: str, metadata: dict):
        if self._job_id is not None:
            await self.ledger.log_event(self._job_id, level, message, metadata)

    def _on_stalled(self, stalls: list[StallError]):
        for stall in stalls:
            item = self._find(stall.run_id)
            # Runs a worker still holds are reconciled when that worker finishes
            if item is None or stall.run_id in self._in_flight:
                continue
            item.status, item.error = RunStatus.FAILED, str(stall)
