# backend/app/api/endpoints/media.py

import logging
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.api.deps import get_cache, get_current_user, get_media_db, get_users_db
from app.data_access.redis_client import CacheRepository
from app.models.media import (
    CountResponse,
    GenreContentResponse,
    LastUpdatedResponse,
    MediaCounts,
    TmdbCollection,
    ViewerCountResponse,
)
from app.services.media_service import (
    MediaNotFoundError,
    MediaService,
    UserNotFoundError,
    merge_collection_with_ownership,
)

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(get_current_user)])

MEDIA_TYPE_PATTERN = "^(movie|tv)$"
GENRE_TYPE_PATTERN = "^(all|movie|tv)$"


# --- Dependency to get the service ---
def get_media_service(
    media_db: AsyncIOMotorDatabase = Depends(get_media_db),
    users_db: AsyncIOMotorDatabase = Depends(get_users_db),
    cache: Optional[CacheRepository] = Depends(get_cache),
) -> MediaService:
    return MediaService(media_db=media_db, users_db=users_db, cache=cache)
# --- ---


def _server_error(action: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"An error occurred while {action}.",
    )


@router.get("/posters/{media_type}", summary="Poster Cards")
async def list_posters(
    media_type: str = Path(..., pattern=MEDIA_TYPE_PATTERN),
    page: int = Query(0, ge=0, description="0-based page number."),
    limit: int = Query(0, ge=0, le=500, description="Items per page; 0 returns everything."),
    countOnly: bool = Query(False),
    media_service: MediaService = Depends(get_media_service),
):
    try:
        result = await media_service.get_flat_posters(media_type, count_only=countOnly, page=page, limit=limit)
        return {"count": result} if countOnly else result
    except Exception as e:
        logger.error(f"Error listing {media_type} posters: {e}", exc_info=True)
        raise _server_error("retrieving posters")


@router.get("/recently-watched", summary="Recently Watched by the Current User")
async def recently_watched(
    page: int = Query(0, ge=0, description="0-based page number."),
    limit: int = Query(15, ge=1, le=100),
    countOnly: bool = Query(False),
    user: Dict[str, Any] = Depends(get_current_user),
    media_service: MediaService = Depends(get_media_service),
):
    try:
        result = await media_service.get_flat_recently_watched_for_user(
            user["id"], page=page, limit=limit, count_only=countOnly
        )
        return {"count": result} if countOnly else result
    except UserNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found.")
    except Exception as e:
        logger.error(f"Error fetching recently watched for user {user['id']}: {e}", exc_info=True)
        raise _server_error("retrieving recently watched media")


@router.get("/recently-added", summary="Recently Added Media")
async def recently_added(
    page: int = Query(0, ge=0, description="0-based page number."),
    limit: int = Query(15, ge=1, le=100),
    countOnly: bool = Query(False),
    media_service: MediaService = Depends(get_media_service),
):
    try:
        result = await media_service.get_flat_recently_added_media(page=page, limit=limit, count_only=countOnly)
        return {"count": result} if countOnly else result
    except Exception as e:
        logger.error(f"Error fetching recently added media: {e}", exc_info=True)
        raise _server_error("retrieving recently added media")


@router.get("/banner", summary="Home Banner Media")
async def banner(media_service: MediaService = Depends(get_media_service)):
    try:
        return await media_service.get_flat_banner_media()
    except MediaNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No media found")
    except Exception as e:
        logger.error(f"Error fetching banner media: {e}", exc_info=True)
        raise _server_error("retrieving banner media")


@router.get("/banner/random", summary="Random Banner Item")
async def random_banner(media_service: MediaService = Depends(get_media_service)):
    try:
        return await media_service.get_flat_random_banner()
    except MediaNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No media found")
    except Exception as e:
        logger.error(f"Error fetching random banner: {e}", exc_info=True)
        raise _server_error("retrieving banner media")


@router.get("/counts", response_model=MediaCounts, summary="Library Totals")
async def media_counts(media_service: MediaService = Depends(get_media_service)):
    try:
        return await media_service.get_media_counts()
    except Exception as e:
        logger.error(f"Error computing media counts: {e}", exc_info=True)
        raise _server_error("counting media")


@router.get("/last-updated/{media_type}", response_model=LastUpdatedResponse, summary="Last Library Change")
async def last_updated(
    media_type: str = Path(..., pattern=MEDIA_TYPE_PATTERN),
    media_service: MediaService = Depends(get_media_service),
):
    return {"type": media_type, "lastUpdated": await media_service.get_last_updated(media_type)}


@router.get("/viewers/{normalized_video_id}", response_model=ViewerCountResponse, summary="Unique Viewers")
async def unique_viewers(
    normalized_video_id: str,
    media_service: MediaService = Depends(get_media_service),
):
    viewers = await media_service.count_unique_viewers_by_normalized_id(normalized_video_id)
    return {"normalizedVideoId": normalized_video_id, "viewers": viewers}


@router.get("/genres", summary="Available Genres")
async def available_genres(
    type: str = Query("all", pattern=GENRE_TYPE_PATTERN),
    includeCounts: bool = Query(True),
    countOnly: bool = Query(False),
    media_service: MediaService = Depends(get_media_service),
):
    try:
        result = await media_service.get_flat_available_genres(type, include_counts=includeCounts, count_only=countOnly)
        return {"count": result} if countOnly else result
    except Exception as e:
        logger.error(f"Error listing genres: {e}", exc_info=True)
        raise _server_error("retrieving genres")


@router.get("/genres/statistics", summary="Genre Statistics")
async def genre_statistics(
    type: str = Query("all", pattern=GENRE_TYPE_PATTERN),
    genres: Optional[str] = Query(None, description="Comma-separated genre names to restrict the breakdown."),
    media_service: MediaService = Depends(get_media_service),
):
    genre_list = [g.strip() for g in genres.split(",") if g.strip()] if genres else None
    try:
        return await media_service.get_flat_genre_statistics(type, genre_list)
    except Exception as e:
        logger.error(f"Error computing genre statistics: {e}", exc_info=True)
        raise _server_error("computing genre statistics")


@router.get("/genres/content", response_model=GenreContentResponse, summary="Content by Genre")
async def content_by_genres(
    genres: str = Query(..., description="Comma-separated genre names."),
    type: str = Query("all", pattern=GENRE_TYPE_PATTERN),
    page: int = Query(0, ge=0, description="0-based page number."),
    limit: int = Query(30, ge=1, le=100),
    sort: str = Query("newest", pattern="^(newest|oldest|title|rating)$"),
    sortOrder: str = Query("desc", pattern="^(asc|desc)$"),
    includeWatchHistory: bool = Query(False),
    user: Dict[str, Any] = Depends(get_current_user),
    media_service: MediaService = Depends(get_media_service),
):
    genre_list: List[str] = [g.strip() for g in genres.split(",") if g.strip()]
    try:
        result = await media_service.get_flat_content_by_genres(
            genre_list, media_type=type, page=page, limit=limit, sort_by=sort, sort_order=sortOrder
        )
        if includeWatchHistory:
            result["items"] = await media_service.augment_with_watch_history(result["items"], user["id"])
        return result
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Error fetching content for genres {genre_list}: {e}", exc_info=True)
        raise _server_error("retrieving content by genre")


@router.get("/collections/{collection_id}", summary="Owned Movies of a Collection")
async def collection_movies(
    collection_id: int,
    media_service: MediaService = Depends(get_media_service),
):
    try:
        return await media_service.get_flat_movies_by_collection_id(collection_id)
    except Exception as e:
        logger.error(f"Error fetching collection {collection_id}: {e}", exc_info=True)
        raise _server_error("retrieving the collection")


@router.post("/collections/{collection_id}/ownership", summary="Merge a TMDB Collection with Library Ownership")
async def collection_ownership(
    collection_id: int,
    body: TmdbCollection,
    media_service: MediaService = Depends(get_media_service),
):
    try:
        owned = await media_service.get_flat_movies_by_collection_id(collection_id)
        return merge_collection_with_ownership(owned, body.model_dump())
    except Exception as e:
        logger.error(f"Error merging collection {collection_id}: {e}", exc_info=True)
        raise _server_error("merging the collection")


@router.get("/tv/{show_title}/seasons/{season_number}", summary="Season with Episodes")
async def season_with_episodes(
    show_title: str,
    season_number: int,
    media_service: MediaService = Depends(get_media_service),
):
    try:
        season = await media_service.get_flat_tv_season_with_episodes(show_title, season_number)
    except Exception as e:
        logger.error(f"Error fetching '{show_title}' season {season_number}: {e}", exc_info=True)
        raise _server_error("retrieving the season")
    if season is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Season not found.")
    return season


@router.get(
    "/details/{media_type}",
    summary="Media Details",
    description="Resolves a movie, show, season or episode by title (or id) and optional season/episode.",
    responses={404: {"description": "Media not found"}},
)
async def media_details(
    media_type: str = Path(..., pattern=MEDIA_TYPE_PATTERN),
    title: Optional[str] = Query(None),
    season: Optional[str] = Query(None, description='e.g. "Season 1" or "1".'),
    episode: Optional[str] = Query(None, description='e.g. "Episode 3" or "3".'),
    id: Optional[str] = Query(None),
    includeWatchHistory: bool = Query(False),
    user: Dict[str, Any] = Depends(get_current_user),
    media_service: MediaService = Depends(get_media_service),
):
    try:
        media = await media_service.get_flat_requested_media(
            media_type, title=title, season=season, episode=episode, media_id=id
        )
        if media is not None and includeWatchHistory:
            media = (await media_service.augment_with_watch_history([media], user["id"]))[0]
    except Exception as e:
        logger.error(f"Error resolving {media_type} details: {e}", exc_info=True)
        raise _server_error("retrieving media details")
    if media is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found.")
    return media
