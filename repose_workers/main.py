import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from . import config
from . import metrics
from .generation import GenerationClient
from .pipeline.active_jobs import ActiveJobsAggregator
from .pipeline.change_feed import create_change_feed
from .pipeline.ledger import JobLedger
from .pipeline.monitor import reclaim_stalled_runs
from .pipeline.routes import jobs_router, queue_router, reset_coordinators, tracking_router
from .pipeline.store import create_store

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Repose worker starting up...")
    metrics.set_gauge("start_time", time.time())

    feed = create_change_feed()
    await feed.start()
    store = create_store(feed)
    ledger = JobLedger(store)
    client = GenerationClient()
    aggregator = ActiveJobsAggregator(store, ledger)
    aggregator.attach()

    app.state.feed = feed
    app.state.store = store
    app.state.ledger = ledger
    app.state.generation_client = client
    app.state.aggregator = aggregator

    # Runs left running by a crashed process
    try:
        reclaimed = await reclaim_stalled_runs(store)
        if reclaimed:
            logger.info(f"Recovered {len(reclaimed)} stalled run(s) from a previous session")
    except Exception as e:
        logger.error(f"Startup stall scan failed: {e}")

    yield

    logger.info("Repose worker shutting down...")
    aggregator.detach()
    reset_coordinators()
    await client.aclose()
    await feed.close()


app = FastAPI(title="Repose Workers", lifespan=lifespan)
app.include_router(queue_router)
app.include_router(jobs_router)
app.include_router(tracking_router)


@app.get("/health")
def health_check():
    """Verify the worker is running and which backends are configured."""
    return {
        "status": "ok",
        "supabase_configured": bool(config.SUPABASE_URL and config.SUPABASE_SERVICE_ROLE_KEY),
        "redis_configured": bool(config.REDIS_URL),
        "generation_api_configured": bool(config.GENERATION_API_URL),
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all worker metrics."""
    return metrics.get_snapshot()


if __name__ == "__main__":
    uvicorn.run("repose_workers.main:app", host="0.0.0.0", port=8000)
