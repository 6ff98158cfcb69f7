import os
import time
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

# Environment must be populated before the pipeline modules are imported
load_dotenv()

from . import metrics  # noqa: E402
from .pipeline import routes as pipeline_routes  # noqa: E402
from .pipeline.routes import pipeline_router  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Worker starting up...")
    metrics.set_gauge("start_time", time.time())
    service = pipeline_routes.get_service()
    logger.info(f"Progress store backend: {service.store.name}")
    yield
    logger.info("Worker shutting down...")
    await service.shutdown()


app = FastAPI(title="avatarflow", lifespan=lifespan)
app.include_router(pipeline_router)


@app.get("/health")
def health_check():
    service = pipeline_routes.get_service()
    return {
        "status": "ok",
        "active_jobs": service.active_jobs,
        "store": service.store.name,
    }


@app.get("/metrics")
def get_metrics():
    return metrics.get_snapshot()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8080")))
