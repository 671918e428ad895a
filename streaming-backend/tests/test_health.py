import pytest
from pymongo.errors import ServerSelectionTimeoutError

from app.api.endpoints import health
from app.server import app


class _Admin:
    def __init__(self, error=None):
        self.error = error

    async def command(self, name):
        if self.error:
            raise self.error
        return {"ok": 1.0}


class FakeMongoClient:
    def __init__(self, error=None):
        self.admin = _Admin(error)


@pytest.fixture
def use_checker():
    def install(checker):
        app.dependency_overrides[health.get_health_checker] = lambda: checker
    return install


async def test_checker_reports_each_store(fake_redis):
    assert await health.HealthChecker(FakeMongoClient(), fake_redis).mongo_ok() is True
    assert await health.HealthChecker(FakeMongoClient(), fake_redis).redis_ok() is True
    failing = health.HealthChecker(FakeMongoClient(ServerSelectionTimeoutError("down")), None)
    assert await failing.mongo_ok() is False
    assert await failing.redis_ok() is False


async def test_health_ok(client, use_checker, fake_redis):
    use_checker(health.HealthChecker(FakeMongoClient(), fake_redis))
    response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "mongodb": True, "redis": True}


async def test_health_degraded_without_redis(client, use_checker):
    use_checker(health.HealthChecker(FakeMongoClient(), None))
    response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "degraded"


async def test_health_unavailable_without_mongodb(client, use_checker, fake_redis):
    use_checker(health.HealthChecker(FakeMongoClient(ServerSelectionTimeoutError("down")), fake_redis))
    response = await client.get("/api/health")
    assert response.status_code == 503
    assert response.json() == {"status": "unavailable", "mongodb": False, "redis": True}


async def test_root(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert "message" in response.json()


async def test_store_dependencies_answer_503_when_unavailable(monkeypatch, fake_redis):
    from fastapi import HTTPException

    from app.api import deps

    monkeypatch.setattr(deps, "redis_client", None)
    monkeypatch.setattr(deps, "media_db", None)
    for dependency in (deps.get_redis, deps.get_media_db):
        with pytest.raises(HTTPException) as exc_info:
            await dependency().__anext__()
        assert exc_info.value.status_code == 503
    assert await deps.get_cache() is None

    monkeypatch.setattr(deps, "redis_client", fake_redis)
    assert await deps.get_redis().__anext__() is fake_redis
