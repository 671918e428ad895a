"""
API Router Module - Aggregates all endpoint routers
"""
from fastapi import APIRouter

from app.api.endpoints import (
    account,
    admin,
    auth,
    calendar,
    health,
    media,
    notifications,
    playback,
    recommendations,
    watchlist,
)

# Create the main API router
api_router = APIRouter()

# Include all endpoint routers with appropriate prefixes and tags
api_router.include_router(health.router, prefix="/health", tags=["Health"])
api_router.include_router(auth.router, prefix="/auth", tags=["Auth"])
api_router.include_router(media.router, prefix="/media", tags=["Media"])
api_router.include_router(playback.router, prefix="/playback", tags=["Playback"])
api_router.include_router(watchlist.router, prefix="/watchlist", tags=["Watchlist"])
api_router.include_router(calendar.router, prefix="/calendar", tags=["Calendar"])
api_router.include_router(recommendations.router, prefix="/recommendations", tags=["Recommendations"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["Notifications"])
api_router.include_router(account.router, prefix="/account", tags=["Account"])
api_router.include_router(admin.router, prefix="/admin", tags=["Admin"])
api_router.include_router(admin.user_router, prefix="/user", tags=["User"])
