# /health endpoint

# backend/app/api/endpoints/health.py

import logging
from typing import Optional

import redis.asyncio as redis
from fastapi import APIRouter, Depends, Response, status
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from pymongo.errors import PyMongoError
from redis.exceptions import RedisError

from app.api import deps

logger = logging.getLogger(__name__)
router = APIRouter()


class HealthResponse(BaseModel):
    status: str = "ok"
    mongodb: bool
    redis: bool


class HealthChecker:
    """Pings the shared MongoDB and Redis clients."""

    def __init__(self, mongo_client: Optional[AsyncIOMotorClient], redis_client: Optional[redis.Redis]):
        self.mongo_client = mongo_client
        self.redis_client = redis_client

    async def mongo_ok(self) -> bool:
        if self.mongo_client is None:
            return False
        try:
            await self.mongo_client.admin.command("ping")
            return True
        except PyMongoError as e:
            logger.warning(f"MongoDB health check failed: {e}")
            return False

    async def redis_ok(self) -> bool:
        if self.redis_client is None:
            return False
        try:
            return bool(await self.redis_client.ping())
        except RedisError as e:
            logger.warning(f"Redis health check failed: {e}")
            return False


def get_health_checker() -> HealthChecker:
    return HealthChecker(deps.mongo_client, deps.redis_client)


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Perform a Health Check",
    response_description="Reachability of MongoDB and Redis.",
)
async def health_check(response: Response, checker: HealthChecker = Depends(get_health_checker)):
    """
    Reports whether the API can reach its backing stores.
    MongoDB is required (503 when unreachable); Redis only degrades caching.
    """
    mongodb = await checker.mongo_ok()
    cache = await checker.redis_ok()
    if not mongodb:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="unavailable", mongodb=mongodb, redis=cache)
    return HealthResponse(status="ok" if cache else "degraded", mongodb=mongodb, redis=cache)
