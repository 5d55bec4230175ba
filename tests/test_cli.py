"""
Unit tests for CLI functionality.

Tests the kvr command-line interface commands: status, audit, repair, rebuild.
Commands run against an in-memory Redis shared through a FakeServer.
"""

import asyncio
import json

import click
import fakeredis
import pytest
from click.testing import CliRunner

import kv_relations.cli as cli
from kv_relations.cli import main, _load_registry_factory
from core.storage import RedisStoreClient
from tests.fixtures.models import Customer, build_registry


@pytest.fixture
def server():
    return fakeredis.FakeServer()


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for env_var in ("KVR_REDIS_URL", "KVR_BATCH_SIZE", "KVR_SAMPLE_SIZE", "KVR_LOG_LEVEL", "KVR_REGISTRY",
                    "KVR_DEFAULT_BATCH_SIZE", "KVR_DEFAULT_TIMEOUT", "KVR_KEY_DELIMITER"):
        monkeypatch.delenv(env_var, raising=False)
    return CliRunner()


@pytest.fixture
def fake_factory(server, monkeypatch):
    """Patch registry loading to build the test registry on the shared server"""
    def factory(client):
        fake = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
        return build_registry(RedisStoreClient(redis=fake))

    monkeypatch.setattr(cli, "_load_registry_factory", lambda path: factory)
    return factory


def seed(server, drift=False):
    async def run():
        registry = build_registry(RedisStoreClient(
            redis=fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
        ))
        customers = registry["customer"]
        await customers.save(Customer(custid="c1", email="a@example.com"))
        await customers.save(Customer(custid="c2", email="b@example.com"))
        if drift:
            await customers.redis.delete("customer:c2:object")
        await registry.client.close()

    asyncio.run(run())


class TestRegistryFactoryLoading:
    """Test module:callable resolution"""

    def test_loads_callable(self):
        factory = _load_registry_factory("tests.fixtures.models:build_registry")

        assert factory is build_registry

    @pytest.mark.parametrize("path", ["no_colon", "tests.fixtures.models:", "missing.module:x",
                                      "tests.fixtures.models:Customer_nope"])
    def test_bad_paths(self, path):
        with pytest.raises(click.BadParameter):
            _load_registry_factory(path)


class TestStatusCommand:
    """Test the kvr status command"""

    def test_status_healthy(self, runner, monkeypatch):
        async def fake_status(config):
            return {"status": "healthy", "response_time_ms": 0.4, "keys": 12, "url": config.redis.url}

        monkeypatch.setattr(cli, "_run_status", fake_status)
        result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "Connected" in result.output
        assert "Redis" in result.output

    def test_status_unavailable(self, runner, monkeypatch):
        async def fake_status(config):
            return {"status": "unhealthy", "error": "Connection refused", "url": config.redis.url}

        monkeypatch.setattr(cli, "_run_status", fake_status)
        result = runner.invoke(main, ["--redis-url", "redis://nowhere:6379/0", "status"])

        assert result.exit_code == 1
        assert "Not available" in result.output

    def test_missing_config_file(self, runner):
        result = runner.invoke(main, ["--config", "missing.json", "status"])

        assert result.exit_code == 2

    def test_invalid_redis_url_option(self, runner, monkeypatch):
        async def fake_status(config):
            raise AssertionError("status must not run with a rejected URL")

        monkeypatch.setattr(cli, "_run_status", fake_status)
        result = runner.invoke(main, ["--redis-url", "http://bad-host:6379", "status"])

        assert result.exit_code == 2
        assert "redis://" in result.output
        assert result.exception is None or isinstance(result.exception, SystemExit)


class TestAuditCommand:
    """Test the kvr audit command"""

    def test_audit_healthy(self, runner, server, fake_factory):
        seed(server)

        result = runner.invoke(main, ["audit", "customer", "--registry", "x:y"])

        assert result.exit_code == 0
        assert "healthy" in result.output

    def test_audit_unhealthy_json(self, runner, server, fake_factory):
        seed(server, drift=True)

        result = runner.invoke(main, ["audit", "customer", "--registry", "x:y", "--json"])

        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["healthy"] is False
        assert data["instances"]["phantoms"] == ["c2"]

    def test_audit_unknown_model(self, runner, server, fake_factory):
        result = runner.invoke(main, ["audit", "nope", "--registry", "x:y"])

        assert result.exit_code == 2

    def test_audit_requires_registry(self, runner):
        result = runner.invoke(main, ["audit", "customer"])

        assert result.exit_code == 2
        assert "--registry" in result.output


class TestRepairCommand:
    """Test the kvr repair and rebuild commands"""

    def test_repair_restores_health(self, runner, server, fake_factory):
        seed(server, drift=True)

        result = runner.invoke(main, ["repair", "customer", "--registry", "x:y", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["instances"]["phantoms_removed"] == 1
        assert data["indexes"]["rebuilt"] == ["email_index"]
        assert data["report"]["healthy"] is True

        follow_up = runner.invoke(main, ["audit", "customer", "--registry", "x:y"])
        assert follow_up.exit_code == 0

    def test_repair_with_threshold_patches(self, runner, server, fake_factory):
        seed(server, drift=True)

        result = runner.invoke(main, ["repair", "customer", "--registry", "x:y", "--threshold", "10", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.stdout)["indexes"]["patched"] == {"email_index": 1}

    def test_rebuild(self, runner, server, fake_factory):
        seed(server, drift=True)

        result = runner.invoke(main, ["rebuild", "customer", "--registry", "x:y"])

        assert result.exit_code == 0
        assert "1 identifiers" in result.output
