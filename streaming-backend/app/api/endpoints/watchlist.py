# backend/app/api/endpoints/watchlist.py

import logging
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.api.deps import get_current_user, get_media_db, get_users_db, rate_limit
from app.models.watchlist import (
    BulkUpdateRequest,
    ItemIdsRequest,
    MoveItemsRequest,
    PlaylistCreateRequest,
    PlaylistOrderRequest,
    PlaylistSortingRequest,
    PlaylistUpdateRequest,
    PlaylistVisibilityRequest,
    ShareRequest,
    ShareResponse,
    ToggleResponse,
    WatchlistItemRequest,
    WatchlistStats,
)
from app.services.watchlist_service import (
    DefaultPlaylistError,
    ItemAlreadyExistsError,
    PlaylistNotFoundError,
    PlaylistPermissionError,
    WatchlistService,
)
from app.utils.validation import WatchlistValidationError, validate_watchlist_query, validation_error_response

logger = logging.getLogger(__name__)
router = APIRouter()

# Per-user calls per hour, by operation.
WATCHLIST_RATE_LIMITS = {
    "list": 10000,
    "add": 30,
    "remove": 50,
    "status": 200,
    "toggle": 30,
    "bulkRemove": 10,
    "bulkUpdate": 10,
    "moveItems": 20,
    "createPlaylist": 10,
    "updatePlaylist": 100,
    "deletePlaylist": 5,
    "sharePlaylist": 10,
    "updateSorting": 200,
}


def _limit(operation: str):
    return Depends(rate_limit(
        f"watchlist_{operation}",
        WATCHLIST_RATE_LIMITS[operation],
        f"Too many {operation} requests. Please try again later.",
        per_user=True,
    ))


# --- Dependency to get the service ---
def get_watchlist_service(
    media_db: AsyncIOMotorDatabase = Depends(get_media_db),
    users_db: AsyncIOMotorDatabase = Depends(get_users_db),
) -> WatchlistService:
    return WatchlistService(media_db=media_db, users_db=users_db)
# --- ---


def _validation_failed(e: WatchlistValidationError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=validation_error_response(e))


def _internal_error() -> HTTPException:
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal Server Error")


# --- Items ---

@router.get("", summary="List Watchlist Items", dependencies=[_limit("list")])
async def list_watchlist(
    page: Optional[int] = Query(None, description="0-based page number."),
    limit: Optional[int] = Query(None),
    mediaType: Optional[str] = Query(None),
    playlistId: Optional[str] = Query(None, description='Playlist id, or "default".'),
    sortBy: Optional[str] = Query(None, pattern="^(dateAdded|title|releaseDate|custom)$"),
    sortOrder: Optional[str] = Query(None, pattern="^(asc|desc)$"),
    internalOnly: bool = Query(False),
    countOnly: bool = Query(False),
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    try:
        params = validate_watchlist_query(
            {"page": page, "limit": limit, "mediaType": mediaType, "playlistId": playlistId}
        )
        result = await watchlist_service.get_user_watchlist(
            user["id"],
            page=params["page"],
            limit=params["limit"],
            media_type=params.get("mediaType"),
            playlist_id=params.get("playlistId"),
            count_only=countOnly,
            sort_by=sortBy,
            sort_order=sortOrder,
            internal_only=internalOnly,
        )
        return {"count": result} if countOnly else result
    except WatchlistValidationError as e:
        return _validation_failed(e)
    except Exception as e:
        logger.error(f"Error fetching watchlist for user {user['id']}: {e}", exc_info=True)
        raise _internal_error()


@router.post("", status_code=status.HTTP_201_CREATED, summary="Add to Watchlist", dependencies=[_limit("add")])
async def add_to_watchlist(
    body: WatchlistItemRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    try:
        return await watchlist_service.add_to_watchlist(user["id"], body.model_dump(exclude_none=True))
    except WatchlistValidationError as e:
        return _validation_failed(e)
    except ItemAlreadyExistsError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except Exception as e:
        logger.error(f"Error adding to watchlist for user {user['id']}: {e}", exc_info=True)
        raise _internal_error()


@router.post("/toggle", response_model=ToggleResponse, summary="Toggle Watchlist Membership", dependencies=[_limit("toggle")])
async def toggle_watchlist(
    body: WatchlistItemRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    try:
        return await watchlist_service.toggle_watchlist(user["id"], body.model_dump(exclude_none=True))
    except WatchlistValidationError as e:
        return _validation_failed(e)
    except Exception as e:
        logger.error(f"Error toggling watchlist item for user {user['id']}: {e}", exc_info=True)
        raise _internal_error()


@router.get("/status", summary="Watchlist Status of a Title", dependencies=[_limit("status")])
async def watchlist_status(
    mediaId: Optional[str] = Query(None),
    tmdbId: Optional[int] = Query(None),
    playlistId: Optional[str] = Query(None),
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    if not mediaId and not tmdbId:
        return _validation_failed(WatchlistValidationError("Either mediaId or tmdbId is required"))
    try:
        item = await watchlist_service.check_watchlist_status(user["id"], mediaId, tmdbId, playlistId)
        return {"inWatchlist": item is not None, "item": item}
    except WatchlistValidationError as e:
        return _validation_failed(e)
    except Exception as e:
        logger.error(f"Error checking watchlist status for user {user['id']}: {e}", exc_info=True)
        raise _internal_error()


@router.get("/stats", response_model=WatchlistStats, summary="Watchlist Statistics", dependencies=[_limit("list")])
async def watchlist_stats(
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    try:
        return await watchlist_service.get_watchlist_stats(user["id"])
    except Exception as e:
        logger.error(f"Error computing watchlist stats for user {user['id']}: {e}", exc_info=True)
        raise _internal_error()


@router.post("/bulk/update", summary="Bulk Update Items", dependencies=[_limit("bulkUpdate")])
async def bulk_update(
    body: BulkUpdateRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    try:
        return await watchlist_service.bulk_update_watchlist(user["id"], [u.model_dump() for u in body.updates])
    except WatchlistValidationError as e:
        return _validation_failed(e)
    except Exception as e:
        logger.error(f"Error bulk updating watchlist for user {user['id']}: {e}", exc_info=True)
        raise _internal_error()


@router.post("/bulk/remove", summary="Bulk Remove Items", dependencies=[_limit("bulkRemove")])
async def bulk_remove(
    body: ItemIdsRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    try:
        return {"deletedCount": await watchlist_service.bulk_remove_from_watchlist(user["id"], body.itemIds)}
    except WatchlistValidationError as e:
        return _validation_failed(e)
    except Exception as e:
        logger.error(f"Error bulk removing watchlist items for user {user['id']}: {e}", exc_info=True)
        raise _internal_error()


@router.post("/move", summary="Move Items to Another Playlist", dependencies=[_limit("moveItems")])
async def move_items(
    body: MoveItemsRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    try:
        moved = await watchlist_service.move_items_to_playlist(user["id"], body.itemIds, body.targetPlaylistId)
        return {"movedCount": moved}
    except WatchlistValidationError as e:
        return _validation_failed(e)
    except Exception as e:
        logger.error(f"Error moving watchlist items for user {user['id']}: {e}", exc_info=True)
        raise _internal_error()


@router.delete("/{item_id}", summary="Remove from Watchlist", dependencies=[_limit("remove")])
async def remove_from_watchlist(
    item_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    try:
        removed = await watchlist_service.remove_from_watchlist(user["id"], item_id)
    except WatchlistValidationError as e:
        return _validation_failed(e)
    except Exception as e:
        logger.error(f"Error removing watchlist item {item_id}: {e}", exc_info=True)
        raise _internal_error()
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Item not found")
    return {"success": True}


# --- Playlists ---

@router.get("/playlists", summary="List Playlists", dependencies=[_limit("list")])
async def list_playlists(
    includeShared: bool = Query(True),
    includePublic: bool = Query(True),
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    try:
        await watchlist_service.ensure_default_playlist(user["id"])
        return await watchlist_service.get_user_playlists(user, include_shared=includeShared, include_public=includePublic)
    except Exception as e:
        logger.error(f"Error listing playlists for user {user['id']}: {e}", exc_info=True)
        raise _internal_error()


@router.post("/playlists", status_code=status.HTTP_201_CREATED, summary="Create Playlist", dependencies=[_limit("createPlaylist")])
async def create_playlist(
    body: PlaylistCreateRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    try:
        return await watchlist_service.create_playlist(user["id"], body.model_dump(exclude_none=True))
    except WatchlistValidationError as e:
        return _validation_failed(e)
    except Exception as e:
        logger.error(f"Error creating playlist for user {user['id']}: {e}", exc_info=True)
        raise _internal_error()


@router.get("/playlists/visible", summary="Playlists Shown in the Apps", dependencies=[_limit("list")])
async def visible_playlists(
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    return await watchlist_service.list_visible_playlists(user["id"])


@router.get("/playlists/{playlist_id}", summary="Playlist Details", dependencies=[_limit("list")])
async def get_playlist(
    playlist_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    try:
        return await watchlist_service.get_playlist_by_id(user, playlist_id)
    except WatchlistValidationError as e:
        return _validation_failed(e)
    except PlaylistNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Playlist not found")
    except Exception as e:
        logger.error(f"Error fetching playlist {playlist_id}: {e}", exc_info=True)
        raise _internal_error()


async def _edit_playlist(action, playlist_id: str):
    """Runs a playlist mutation, mapping its failures onto HTTP responses."""
    try:
        updated = await action()
    except WatchlistValidationError as e:
        return _validation_failed(e)
    except PlaylistNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Playlist not found")
    except PlaylistPermissionError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except DefaultPlaylistError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Error updating playlist {playlist_id}: {e}", exc_info=True)
        raise _internal_error()
    return {"success": bool(updated)}


@router.patch("/playlists/{playlist_id}", summary="Update Playlist", dependencies=[_limit("updatePlaylist")])
async def update_playlist(
    playlist_id: str,
    body: PlaylistUpdateRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    return await _edit_playlist(
        lambda: watchlist_service.update_playlist(user["id"], playlist_id, body.model_dump(exclude_none=True)),
        playlist_id,
    )


@router.put("/playlists/{playlist_id}/sorting", summary="Update Playlist Sorting", dependencies=[_limit("updateSorting")])
async def update_playlist_sorting(
    playlist_id: str,
    body: PlaylistSortingRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    return await _edit_playlist(
        lambda: watchlist_service.update_playlist_sorting(user["id"], playlist_id, body.sortBy, body.sortOrder),
        playlist_id,
    )


@router.put("/playlists/{playlist_id}/order", summary="Set Custom Item Order", dependencies=[_limit("updatePlaylist")])
async def update_playlist_order(
    playlist_id: str,
    body: PlaylistOrderRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    return await _edit_playlist(
        lambda: watchlist_service.update_playlist_order(user["id"], playlist_id, body.itemIds),
        playlist_id,
    )


@router.delete("/playlists/{playlist_id}", summary="Delete Playlist", dependencies=[_limit("deletePlaylist")])
async def delete_playlist(
    playlist_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    result = await _edit_playlist(lambda: watchlist_service.delete_playlist(user["id"], playlist_id), playlist_id)
    if isinstance(result, dict) and not result["success"]:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Playlist not found")
    return result


@router.post("/playlists/{playlist_id}/share", response_model=ShareResponse, summary="Share Playlist", dependencies=[_limit("sharePlaylist")])
async def share_playlist(
    playlist_id: str,
    body: ShareRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    try:
        return await watchlist_service.share_playlist(
            user["id"], playlist_id, [c.model_dump(exclude_none=True) for c in body.collaborators]
        )
    except WatchlistValidationError as e:
        return _validation_failed(e)
    except PlaylistNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Playlist not found")
    except Exception as e:
        logger.error(f"Error sharing playlist {playlist_id}: {e}", exc_info=True)
        raise _internal_error()


@router.get("/playlists/{playlist_id}/visibility", summary="Playlist App Visibility", dependencies=[_limit("list")])
async def get_visibility(
    playlist_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    try:
        visibility = await watchlist_service.get_playlist_visibility(user["id"], playlist_id)
    except WatchlistValidationError as e:
        return _validation_failed(e)
    return visibility or {
        "playlistId": playlist_id,
        "showInApp": False,
        "appOrder": 0,
        "appTitle": None,
        "hideUnavailable": False,
    }


@router.put("/playlists/{playlist_id}/visibility", summary="Set Playlist App Visibility", dependencies=[_limit("updatePlaylist")])
async def set_visibility(
    playlist_id: str,
    body: PlaylistVisibilityRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    watchlist_service: WatchlistService = Depends(get_watchlist_service),
):
    try:
        return await watchlist_service.set_playlist_visibility(
            user["id"], playlist_id, body.model_dump(exclude_unset=True)
        )
    except WatchlistValidationError as e:
        return _validation_failed(e)
    except Exception as e:
        logger.error(f"Error saving visibility for playlist {playlist_id}: {e}", exc_info=True)
        raise _internal_error()
