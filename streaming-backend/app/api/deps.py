# FastAPI dependencies (database handles, cache, current user)
# backend/app/api/deps.py

import logging
from typing import AsyncGenerator, Dict, Any, Optional

import redis.asyncio as redis
from fastapi import Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from redis.exceptions import RedisError
from pymongo.errors import ConnectionFailure

from app.core.config import settings
from app.core.security import (
    CredentialsException,
    MissingTokenException,
    token_bearer_scheme,
)
from app.data_access.mongo_client import ensure_indexes
from app.data_access.redis_client import CacheRepository, HttpCacheRepository, RateLimiter
from app.services.auth_session_service import AuthSessionService

logger = logging.getLogger(__name__)

# --- Global Clients (Initialized once in the lifespan) ---

mongo_client: Optional[AsyncIOMotorClient] = None
media_db: Optional[AsyncIOMotorDatabase] = None
users_db: Optional[AsyncIOMotorDatabase] = None
redis_client: Optional[redis.Redis] = None


async def initialize_connections():
    """
    Initializes MongoDB and Redis connections.
    Call this during FastAPI startup using lifespan events.
    """
    global mongo_client, media_db, users_db, redis_client
    logger.info("Initializing external connections...")

    # --- MongoDB Initialization ---
    try:
        logger.info(f"Attempting to connect to MongoDB: {settings.MONGODB_URI.get_secret_value()[:15]}...")
        mongo_client = AsyncIOMotorClient(settings.MONGODB_URI.get_secret_value())
        await mongo_client.admin.command('ping')

        media_db = mongo_client[settings.MEDIA_DB_NAME]
        users_db = mongo_client[settings.USERS_DB_NAME]
        logger.info(f"MongoDB client initialized. Media DB: '{settings.MEDIA_DB_NAME}', Users DB: '{settings.USERS_DB_NAME}'")
        await ensure_indexes(media_db, users_db)

    except ConnectionFailure as e:
        logger.error(f"MongoDB connection failed during initialization: {e}", exc_info=True)
        mongo_client = None
        media_db = None
        users_db = None
    except Exception as e:
        logger.error(f"Unexpected error initializing MongoDB client: {e}", exc_info=True)
        mongo_client = None
        media_db = None
        users_db = None

    # --- Redis Initialization ---
    try:
        logger.info(f"Attempting to connect to Redis: {settings.REDIS_URL.get_secret_value()[:15]}...")
        redis_client = redis.from_url(
            settings.REDIS_URL.get_secret_value(),
            encoding="utf-8",
            decode_responses=True,
        )
        await redis_client.ping()
        logger.info("Redis client initialized successfully.")

    except RedisError as e:
        logger.error(f"Redis connection failed during initialization: {e}", exc_info=True)
        redis_client = None
    except Exception as e:
        logger.error(f"Unexpected error initializing Redis client: {e}", exc_info=True)
        redis_client = None


async def close_connections():
    """
    Closes MongoDB and Redis connections.
    Call this during FastAPI shutdown using lifespan events.
    """
    global mongo_client, redis_client
    logger.info("Closing external connections...")
    if mongo_client:
        mongo_client.close()
        logger.info("MongoDB client closed.")
    if redis_client:
        await redis_client.aclose()
        logger.info("Redis client closed.")


# --- Database Dependencies ---

async def get_media_db() -> AsyncGenerator[AsyncIOMotorDatabase, None]:
    """
    Yields the Media database (flat media, playback, watchlists, notifications).

    Raises:
        HTTPException 503: If the database instance is not available.
    """
    if media_db is None:
        logger.critical("Media database instance is not available. Check initialization.")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database service not available.",
        )
    yield media_db


async def get_users_db() -> AsyncGenerator[AsyncIOMotorDatabase, None]:
    """
    Yields the Users database (accounts, sessions, sign-in flows).

    Raises:
        HTTPException 503: If the database instance is not available.
    """
    if users_db is None:
        logger.critical("Users database instance is not available. Check initialization.")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database service not available.",
        )
    yield users_db


# --- Cache Dependencies ---

async def get_redis() -> AsyncGenerator[redis.Redis, None]:
    """
    FastAPI dependency that yields an async Redis client instance.

    Raises:
        HTTPException 503: If the Redis client instance is not available.
    """
    if redis_client is None:
        logger.critical("Redis client instance is not available. Check initialization.")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cache service not available.",
        )
    yield redis_client


async def get_cache() -> Optional[CacheRepository]:
    """Optional cache: endpoints keep working without Redis, just uncached."""
    if redis_client is None:
        return None
    return CacheRepository(redis_client)


async def get_http_cache() -> Optional[HttpCacheRepository]:
    if redis_client is None:
        return None
    return HttpCacheRepository(redis_client, ttl_seconds=settings.HTTP_CACHE_TTL_SECONDS)


async def get_rate_limiter() -> Optional[RateLimiter]:
    """Requests go unlimited while Redis is down."""
    if redis_client is None or not settings.RATE_LIMIT_ENABLED:
        return None
    return RateLimiter(redis_client)


# --- Authentication Dependencies ---

def get_auth_session_service(
    users_db: AsyncIOMotorDatabase = Depends(get_users_db),
) -> AuthSessionService:
    return AuthSessionService(users_db=users_db)


def _read_session_cookie(request: Request) -> Optional[str]:
    for name in settings.SESSION_COOKIE_NAMES:
        value = request.cookies.get(name)
        if value:
            return value
    return None


async def get_optional_user(
    request: Request,
    auth_credentials: Optional[HTTPAuthorizationCredentials] = Depends(token_bearer_scheme),
    auth_service: AuthSessionService = Depends(get_auth_session_service),
) -> Optional[Dict[str, Any]]:
    """Resolves the caller from the web session cookie or a mobile Bearer token."""
    session_token = _read_session_cookie(request)
    if session_token:
        user = await auth_service.get_user_by_web_session(session_token)
        if user:
            return user

    if auth_credentials and auth_credentials.credentials:
        user = await auth_service.get_user_by_mobile_token(auth_credentials.credentials)
        if user:
            return user
    return None


async def get_current_user(
    user: Optional[Dict[str, Any]] = Depends(get_optional_user),
) -> Dict[str, Any]:
    """
    Dependency that ensures the caller is signed in and returns the session user
    ``{id, email, name, image, approved, limitedAccess, admin}``.

    Raises:
        MissingTokenException: 401 when neither credential resolves to a user.
    """
    if user is None:
        logger.info("Rejected unauthenticated request.")
        raise MissingTokenException()
    return user


async def require_admin(
    user: Optional[Dict[str, Any]] = Depends(get_optional_user),
) -> Dict[str, Any]:
    if user is None or not user.get("admin"):
        raise CredentialsException(detail="You must be signed in as an admin.")
    return user


async def require_admin_or_webhook(
    request: Request,
    user: Optional[Dict[str, Any]] = Depends(get_optional_user),
) -> Dict[str, Any]:
    """
    Admits admins, or automation presenting a known ``X-Webhook-ID``.

    Returns the admin user, or ``{"webhook": True, "webhookId": ...}``.
    """
    if user is not None and user.get("admin"):
        return user

    webhook_id = request.headers.get("x-webhook-id") or request.query_params.get("webhookId")
    if webhook_id:
        if webhook_id in settings.VALID_WEBHOOK_IDS:
            return {"webhook": True, "webhookId": webhook_id}
        logger.warning("Rejected request with unknown webhook identifier.")
        raise CredentialsException(detail="Invalid webhook identifier.")

    raise CredentialsException(detail="You must be signed in as an admin.")


# --- Rate Limiting ---

class RateLimitExceeded(HTTPException):
    """429 rendered as ``{"error", "retryAfter"}`` by the app's exception handler."""

    def __init__(self, detail: str, retry_after: int, headers: Dict[str, str]):
        super().__init__(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=detail, headers=headers)
        self.retry_after = retry_after


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    return request.client.host if request.client else "unknown"


def rate_limit(bucket: str, max_requests: int, message: str, window_seconds: int = 3600, per_user: bool = False):
    """
    Builds a dependency that counts the call against ``bucket`` and raises
    RateLimitExceeded once ``max_requests`` calls fall inside the window.

    Callers are keyed by client IP, or by user id when ``per_user`` is set
    and someone is signed in. Allowed responses carry the X-RateLimit headers.
    """
    async def dependency(
        request: Request,
        response: Response,
        limiter: Optional[RateLimiter] = Depends(get_rate_limiter),
        user: Optional[Dict[str, Any]] = Depends(get_optional_user),
    ) -> None:
        if limiter is None:
            return
        caller = user["id"] if per_user and user else get_client_ip(request)
        result = await limiter.hit(f"{bucket}_{caller}", max_requests, window_seconds)
        if result.is_limited:
            raise RateLimitExceeded(message, result.retry_after, result.headers())
        response.headers.update(result.headers())

    return dependency
