import pytest
import pytest_asyncio

from src.relay.infra.broker.memory import InMemoryBroker
from src.relay.infra.broker.topology import default_topology
from src.relay.runtime.retry import RetryManager
from src.tests.helpers import FakeRedisClient, RecordingSleep, make_settings


@pytest.fixture
def settings():
    return make_settings()


@pytest_asyncio.fixture
async def broker(settings):
    b = InMemoryBroker(block_ms=50, poll_interval_s=0.005)
    await b.declare_topology(default_topology(settings))
    yield b
    await b.close()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def retry_manager(sleeper):
    return RetryManager(sleep=sleeper)


@pytest.fixture
def fake_redis_client():
    return FakeRedisClient()
