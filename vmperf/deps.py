"""Service wiring for the control plane.

Each app owns one set of services, built from a redis client on first use and
kept on ``app.state``.
"""
from typing import Optional

from fastapi import Request

from .batch_queue import BatchQueueService
from .batch_storage import BatchStorageService
from .cache import CacheService
from .job_processor import JobProcessor
from .jobs import JobService
from .redis_helper import get_redis


class Services:
    def __init__(self, redis_client):
        self.redis = redis_client
        self.queue = BatchQueueService(redis_client)
        self.storage = BatchStorageService(redis_client)
        self.cache = CacheService(redis_client)
        self.jobs = JobService(self.queue, self.storage)
        self.processor: Optional[JobProcessor] = None


async def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = Services(await get_redis())
        request.app.state.services = services
    return services
