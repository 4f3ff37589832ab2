"""Shared test fixtures for repose worker tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import pytest

from repose_workers import metrics
from repose_workers.pipeline.coordinator import QueueCoordinator
from repose_workers.pipeline.ledger import JobLedger
from repose_workers.pipeline.models import BatchItem, GenerationTask, Pose, Subject
from repose_workers.pipeline.store import MemoryStore

BATCH_ID = "batch-1"


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


class FakeGenerationClient:
    """
    Stand-in for GenerationClient.

    `fail_when(task)` may return an exception to raise for that call;
    `on_call(task, n)` runs before each call with the 1-based call number.
    """

    def __init__(
        self,
        fail_when: Optional[Callable[[GenerationTask], Optional[Exception]]] = None,
        delay: float = 0,
    ):
        self.fail_when = fail_when
        self.delay = delay
        self.on_call: Optional[Callable[[GenerationTask, int], None]] = None
        self.calls: list[GenerationTask] = []
        self.active_runs: set[str] = set()
        self.max_active_runs = 0

    async def generate(self, task: GenerationTask) -> str:
        self.calls.append(task.model_copy())
        if self.on_call is not None:
            self.on_call(task, len(self.calls))
        self.active_runs.add(task.run_id)
        self.max_active_runs = max(self.max_active_runs, len(self.active_runs))
        try:
            await asyncio.sleep(self.delay)
            error = self.fail_when(task) if self.fail_when else None
            if error is not None:
                raise error
            return f"https://cdn.test/outputs/{task.output_id}.jpg"
        finally:
            self.active_runs.discard(task.run_id)

    async def aclose(self):
        return None


def seed_subject(store: MemoryStore, subject_id: str, views=("Front View", "Back View"), name=None):
    store.add_subjects([Subject(id=subject_id, name=name or f"Look {subject_id}", batch_id=BATCH_ID)])
    store.add_batch_items([
        BatchItem(
            id=f"{subject_id}-item-{i}",
            batch_id=BATCH_ID,
            subject_id=subject_id,
            view=view,
            source_url=f"https://cdn.test/{subject_id}/{view.split()[0].lower()}.jpg",
            head_cropped_url=f"https://cdn.test/{subject_id}/crop-{i}.jpg",
        )
        for i, view in enumerate(views)
    ])


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def ledger(store):
    return JobLedger(store)


@pytest.fixture
def client():
    return FakeGenerationClient()


@pytest.fixture
def seeded_store(store):
    """Two subjects with front and back uploads, and one approved pose per slot."""
    seed_subject(store, "A")
    seed_subject(store, "B")
    store.add_poses([
        Pose(id="pose-a", slot="A", stored_url="https://cdn.test/poses/a.png"),
        Pose(id="pose-b", slot="B", stored_url="https://cdn.test/poses/b.png"),
        Pose(id="pose-c", slot="C", stored_url="https://cdn.test/poses/c.png"),
        Pose(id="pose-d", slot="D", stored_url="https://cdn.test/poses/d.png"),
    ])
    return store


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_coordinator(seeded_store, client, ledger, sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)
        await asyncio.sleep(0)

    def _make(**kwargs) -> QueueCoordinator:
        kwargs.setdefault("batch_id", BATCH_ID)
        kwargs.setdefault("sleep", fake_sleep)
        return QueueCoordinator(seeded_store, client, ledger, **kwargs)

    return _make
