#!/usr/bin/env python3
"""Maintenance scheduler that periodically sweeps expired batch results and cache entries.

Usage:
  python scripts/scheduler.py

Environment variables:
- REDIS_URL (optional)
- TESTING=1 to use in-memory redis
- CLEANUP_INTERVAL_SECONDS (optional, default 86400)
"""
import asyncio
import logging

from vmperf.batch_storage import BatchStorageService
from vmperf.cache import CacheService
from vmperf.config import CLEANUP_INTERVAL_SECONDS, LOG_LEVEL
from vmperf.redis_helper import get_redis

logger = logging.getLogger("scheduler")


async def run_cleanup_once(storage: BatchStorageService, cache: CacheService):
    try:
        results = await storage.cleanup_expired()
        entries = await cache.cleanup_expired()
        logger.info("scheduler: removed %d expired results, %d expired cache entries", results, entries)
    except Exception as exc:
        logger.error("scheduler: cleanup failed: %s", exc)


async def run_scheduler(interval: float = CLEANUP_INTERVAL_SECONDS):
    redis_client = await get_redis()
    storage = BatchStorageService(redis_client)
    cache = CacheService(redis_client)
    logger.info("scheduler: connected")
    try:
        while True:
            await run_cleanup_once(storage, cache)
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        pass


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL)
    try:
        asyncio.run(run_scheduler())
    except KeyboardInterrupt:
        logger.info("scheduler: exiting")
