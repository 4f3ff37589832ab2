"""HTTP-level tests for the queue, jobs and tracking routes."""

import httpx
import pytest
import pytest_asyncio

from repose_workers.main import app
from repose_workers.pipeline import routes
from repose_workers.pipeline.active_jobs import ActiveJobsAggregator
from repose_workers.pipeline.models import PipelineJobStatus, PipelineJobType
from tests.conftest import BATCH_ID, FakeGenerationClient

SUBJECTS = [{"id": "A", "name": "Look A"}, {"id": "B", "name": "Look B"}]


@pytest_asyncio.fixture
async def api(seeded_store, ledger):
    app.state.feed = seeded_store.feed
    app.state.store = seeded_store
    app.state.ledger = ledger
    app.state.generation_client = FakeGenerationClient()
    app.state.aggregator = ActiveJobsAggregator(seeded_store, ledger)
    routes.reset_coordinators()

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    routes.reset_coordinators()


class TestQueueRoutes:
    async def test_enqueue_then_status(self, api):
        resp = await api.post(f"/queue/{BATCH_ID}/enqueue", json={"subjects": SUBJECTS, "runs_per_subject": 2})
        assert resp.status_code == 200
        body = resp.json()
        assert body["queued"] == 4
        assert body["is_processing"] is False
        assert {i["subject_name"] for i in body["items"]} == {"Look A", "Look B"}

        status = (await api.get(f"/queue/{BATCH_ID}")).json()
        assert status["total"] == 4

    async def test_enqueue_validates_runs_per_subject(self, api):
        resp = await api.post(f"/queue/{BATCH_ID}/enqueue", json={"subjects": SUBJECTS, "runs_per_subject": 0})
        assert resp.status_code == 422

    async def test_start_processes_the_queue(self, api):
        await api.post(f"/queue/{BATCH_ID}/enqueue", json={"subjects": SUBJECTS})

        resp = await api.post(f"/queue/{BATCH_ID}/start")
        assert resp.json()["status"] == "started"
        job_id = resp.json()["job_id"]
        await routes._coordinators[BATCH_ID].wait()

        job = (await api.get(f"/jobs/{job_id}")).json()
        assert job["status"] == PipelineJobStatus.COMPLETED.value
        assert job["progress_done"] == 2
        status = (await api.get(f"/queue/{BATCH_ID}")).json()
        assert status["complete"] == 2

        again = await api.post(f"/queue/{BATCH_ID}/start")
        assert again.json()["status"] == "idle"

    async def test_status_reloads_persisted_runs(self, api):
        await api.post(f"/queue/{BATCH_ID}/enqueue", json={"subjects": SUBJECTS})
        routes.reset_coordinators()
        status = (await api.get(f"/queue/{BATCH_ID}")).json()
        assert status["queued"] == 2

    async def test_stop_unknown_queue(self, api):
        assert (await api.post("/queue/nope/stop")).status_code == 404

    async def test_retry_unknown_run(self, api):
        resp = await api.post(f"/queue/{BATCH_ID}/runs/missing/retry")
        assert resp.status_code == 404

    async def test_retry_queued_run_conflicts(self, api):
        body = (await api.post(f"/queue/{BATCH_ID}/enqueue", json={"subjects": SUBJECTS[:1]})).json()
        run_id = body["items"][0]["run_id"]
        resp = await api.post(f"/queue/{BATCH_ID}/runs/{run_id}/retry")
        assert resp.status_code == 409

    async def test_clear_queue(self, api):
        await api.post(f"/queue/{BATCH_ID}/enqueue", json={"subjects": SUBJECTS})
        assert (await api.delete(f"/queue/{BATCH_ID}")).json() == {"cleared": 2}
        assert (await api.post(f"/queue/{BATCH_ID}/clear-completed")).json() == {"cleared": 0}


class TestJobRoutes:
    async def test_active_jobs(self, api, ledger):
        job_id = await ledger.create(PipelineJobType.REPOSE_GENERATION, 3)
        body = (await api.get("/jobs/active")).json()
        assert body["active_count"] == 1
        assert body["active_jobs"][0]["id"] == job_id
        assert body["active_jobs"][0]["is_stalled"] is False

    async def test_unknown_job(self, api):
        assert (await api.get("/jobs/missing")).status_code == 404
        assert (await api.get("/jobs/missing/events")).status_code == 404
        assert (await api.post("/jobs/missing/mark-stalled")).status_code == 404

    async def test_mark_stalled(self, api, ledger):
        job_id = await ledger.create(PipelineJobType.REPOSE_GENERATION, 3)
        assert (await api.post(f"/jobs/{job_id}/mark-stalled")).status_code == 409

        await ledger.set_status(job_id, PipelineJobStatus.RUNNING)
        resp = await api.post(f"/jobs/{job_id}/mark-stalled")
        assert resp.status_code == 200
        assert resp.json()["status"] == PipelineJobStatus.FAILED.value


class TestTrackingRoutes:
    async def test_tracking_summary(self, api):
        body = (await api.get(f"/tracking/{BATCH_ID}?required_options=2")).json()
        assert body["required_options"] == 2
        assert body["summary"]["total_subjects"] == 2
        assert [s["subject_id"] for s in body["subjects"]] == ["A", "B"]

    async def test_unknown_filter(self, api):
        resp = await api.get(f"/tracking/{BATCH_ID}?filter=everything")
        assert resp.status_code == 400


async def test_health_and_metrics(api):
    assert (await api.get("/health")).json()["status"] == "ok"
    assert "counters" in (await api.get("/metrics")).json()
