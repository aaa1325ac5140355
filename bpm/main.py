import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from database import init_db
from routers import admin, status
from worker import start_worker, stop_worker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)

WORKER_ENABLED = os.environ.get("WORKER_ENABLED", "true").lower() == "true"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting BPM worker")
    init_db()
    if WORKER_ENABLED:
        start_worker()
    else:
        logger.info("WORKER_ENABLED is false; serving status endpoints only")
    yield
    logger.info("Shutting down BPM worker")
    stop_worker()


app = FastAPI(title="BPM Worker", lifespan=lifespan)

app.include_router(status.router)
app.include_router(admin.router)


@app.get("/health")
def health():
    return {"ok": True}


def run():
    uvicorn.run(
        app,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8001")),
    )


if __name__ == "__main__":
    run()
