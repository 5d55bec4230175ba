"""
Shared fixtures: an in-memory Redis and the test model registry.
"""

import fakeredis
import pytest

from core.storage import RedisStoreClient
from tests.fixtures.models import build_registry


@pytest.fixture
def fake_server():
    return fakeredis.FakeServer()


@pytest.fixture
def fake_redis(fake_server):
    return fakeredis.FakeAsyncRedis(server=fake_server, decode_responses=True)


@pytest.fixture
def client(fake_redis):
    return RedisStoreClient(redis=fake_redis)


@pytest.fixture
def registry(client):
    return build_registry(client)


@pytest.fixture
def customers(registry):
    return registry["customer"]


@pytest.fixture
def members(registry):
    return registry["member"]


@pytest.fixture
def teams(registry):
    return registry["team"]
