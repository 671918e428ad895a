# backend/app/api/endpoints/recommendations.py

import logging
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.api.deps import get_cache, get_current_user, get_media_db
from app.data_access.redis_client import CacheRepository
from app.services.recommendation_service import RecommendationService, RecommendationServiceError

logger = logging.getLogger(__name__)
router = APIRouter()


# --- Dependency to get the service ---
def get_recommendation_service(
    media_db: AsyncIOMotorDatabase = Depends(get_media_db),
    cache: Optional[CacheRepository] = Depends(get_cache),
) -> RecommendationService:
    return RecommendationService(media_db=media_db, cache=cache)
# --- ---


@router.get(
    "",
    summary="Personal Recommendations",
    description="Unwatched library media in the caller's favourite genres, including next episodes of started shows.",
)
async def genre_recommendations(
    page: int = Query(0, ge=0, description="0-based page number."),
    limit: int = Query(30, ge=1, le=100),
    user: Dict[str, Any] = Depends(get_current_user),
    rec_service: RecommendationService = Depends(get_recommendation_service),
):
    try:
        return await rec_service.get_genre_based_recommendations(user["id"], page=page, limit=limit)
    except RecommendationServiceError as e:
        logger.error(f"Recommendation service error for user {user['id']}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to generate recommendations.")
    except Exception as e:
        logger.error(f"Unexpected error generating recommendations for user {user['id']}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="An internal server error occurred.")


@router.get("/popular", summary="Most Watched Media", dependencies=[Depends(get_current_user)])
async def popular_content(
    page: int = Query(0, ge=0, description="0-based page number."),
    limit: int = Query(30, ge=1, le=100),
    rec_service: RecommendationService = Depends(get_recommendation_service),
):
    try:
        return await rec_service.get_most_popular_content(page=page, limit=limit)
    except RecommendationServiceError as e:
        logger.error(f"Error computing popular content: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to compute popular content.")
