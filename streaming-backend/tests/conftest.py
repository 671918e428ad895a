import os

os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("MOBILE_JWT_SECRET", "test-mobile-secret")
os.environ.setdefault("ADMIN_USER_EMAILS", "admin@example.com")
os.environ.setdefault("VALID_WEBHOOK_IDS", "hook-123")

from datetime import datetime, timezone

import pytest
from bson import ObjectId
from fakeredis import FakeAsyncRedis
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from app.api import deps
from app.data_access.redis_client import CacheRepository, HttpCacheRepository, RateLimiter
from app.server import app
from app.services.auth_session_service import build_session_user

USER_ID = ObjectId()
OTHER_USER_ID = ObjectId()
ADMIN_ID = ObjectId()


class AuthState:
    """Who the test client is signed in as; None means anonymous."""

    def __init__(self):
        self.user = None


@pytest.fixture
def mongo_client():
    return AsyncMongoMockClient()


@pytest.fixture
def media_db(mongo_client):
    return mongo_client["Media"]


@pytest.fixture
def users_db(mongo_client):
    return mongo_client["Users"]


@pytest.fixture
def fake_redis():
    return FakeAsyncRedis(decode_responses=True)


@pytest.fixture
def cache(fake_redis):
    return CacheRepository(fake_redis)


@pytest.fixture
def http_cache(fake_redis):
    return HttpCacheRepository(fake_redis, ttl_seconds=60)


@pytest.fixture
async def users(users_db):
    """Inserts a regular user, a second user and an admin."""
    docs = [
        {"_id": USER_ID, "email": "viewer@example.com", "name": "Viewer", "image": None,
         "approved": True, "createdAt": datetime(2024, 1, 1, tzinfo=timezone.utc)},
        {"_id": OTHER_USER_ID, "email": "friend@example.com", "name": "Friend", "approved": True},
        {"_id": ADMIN_ID, "email": "Admin@Example.com", "name": "Admin", "approved": False},
    ]
    await users_db["AuthenticatedUsers"].insert_many(docs)
    return {
        "viewer": build_session_user(docs[0]),
        "friend": build_session_user(docs[1]),
        "admin": build_session_user(docs[2]),
    }


@pytest.fixture
def rate_limiter(fake_redis):
    return RateLimiter(fake_redis)


@pytest.fixture
def auth_state():
    return AuthState()


@pytest.fixture
async def client(media_db, users_db, cache, http_cache, rate_limiter, auth_state):
    async def override_media_db():
        yield media_db

    async def override_users_db():
        yield users_db

    async def override_optional_user():
        return auth_state.user

    app.dependency_overrides[deps.get_media_db] = override_media_db
    app.dependency_overrides[deps.get_users_db] = override_users_db
    app.dependency_overrides[deps.get_cache] = lambda: cache
    app.dependency_overrides[deps.get_http_cache] = lambda: http_cache
    app.dependency_overrides[deps.get_rate_limiter] = lambda: rate_limiter
    app.dependency_overrides[deps.get_optional_user] = override_optional_user

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as test_client:
        yield test_client

    app.dependency_overrides.clear()
