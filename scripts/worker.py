#!/usr/bin/env python3
"""Batch worker: runs a JobProcessor against the Redis batch queue until interrupted.

Usage:
  REDIS_URL=redis://localhost:6379/0 python scripts/worker.py

Environment variables:
- BATCH_EXECUTOR=module:function to plug in the real batch executor
  (defaults to the simulated executor)
- MAX_CONCURRENT_WORKERS, POLL_INTERVAL_SECONDS, IDLE_POLL_INTERVAL_SECONDS,
  STOP_GRACE_SECONDS (optional)
- TESTING=1 to use the in-memory redis double
"""
import asyncio
import logging
import signal

from vmperf.batch_queue import BatchQueueService
from vmperf.batch_storage import BatchStorageService
from vmperf.config import LOG_LEVEL, TESTING
from vmperf.executors import load_executor
from vmperf.job_processor import JobProcessor
from vmperf.redis_helper import get_redis

logger = logging.getLogger("worker")


async def run_worker():
    redis_client = await get_redis()
    processor = JobProcessor(BatchQueueService(redis_client), BatchStorageService(redis_client), load_executor())
    await processor.start()
    logger.info("worker: connected, testing=%s", TESTING)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    try:
        await stop.wait()
    finally:
        result = await processor.stop()
        if result.abandoned_workers:
            logger.warning("worker: abandoned %d in-flight batches", result.abandoned_workers)
        logger.info("worker: exiting")


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL)
    asyncio.run(run_worker())
