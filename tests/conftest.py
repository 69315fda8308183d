import os

import pytest
from httpx import ASGITransport, AsyncClient

os.environ["TESTING"] = "1"

from vmperf.batch_queue import BatchQueueService
from vmperf.batch_storage import BatchStorageService
from vmperf.cache import CacheService
from vmperf.deps import Services, get_services
from vmperf.main import app as fastapi_app
from vmperf.redis_helper import AsyncInMemoryRedis


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def redis_client():
    return AsyncInMemoryRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(redis_client, clock):
    return BatchQueueService(redis_client, clock=clock)


@pytest.fixture
def storage(redis_client, clock):
    return BatchStorageService(redis_client, clock=clock)


@pytest.fixture
def cache(redis_client, clock):
    return CacheService(redis_client, clock=clock)


@pytest.fixture
def services(redis_client):
    return Services(redis_client)


@pytest.fixture
async def client(services):
    fastapi_app.dependency_overrides[get_services] = lambda: services
    try:
        async with AsyncClient(transport=ASGITransport(app=fastapi_app), base_url="http://testserver") as ac:
            yield ac
    finally:
        fastapi_app.dependency_overrides.clear()
