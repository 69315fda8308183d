import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api import jobs as jobs_api
from .config import LOG_LEVEL, START_PROCESSOR
from .deps import Services
from .executors import load_executor
from .job_processor import JobProcessor
from .metrics import metrics_response, request_latency_seconds
from .redis_helper import get_redis

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = Services(await get_redis())
    app.state.services = services
    if START_PROCESSOR:
        services.processor = JobProcessor(services.queue, services.storage, load_executor())
        await services.processor.start()
    try:
        yield
    finally:
        if services.processor is not None:
            result = await services.processor.stop()
            logger.info("processor stopped: %s", result)
        await services.cache.wait_for_background(timeout=5)


app = FastAPI(title="VM Perf Batch Control Plane", lifespan=lifespan)

app.include_router(jobs_api.router)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    try:
        response = await call_next(request)
        return response
    finally:
        request_latency_seconds.observe(time.time() - start)


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/readyz")
async def readyz(request: Request):
    services = getattr(request.app.state, "services", None)
    client = services.redis if services is not None else await get_redis()
    try:
        await client.ping()
    except Exception as exc:
        logger.warning("readiness check failed: %s", exc)
        return JSONResponse(status_code=503, content={"ready": False})
    return {"ready": True}


@app.get("/metrics")
async def metrics():
    return metrics_response()
