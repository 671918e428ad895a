# backend/app/models/watchlist.py

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field


class WatchlistItemRequest(BaseModel):
    """Watchlist item payload; field rules are enforced by the watchlist validators."""
    mediaId: Optional[str] = None
    tmdbId: Optional[Any] = None
    mediaType: Optional[str] = None
    title: Optional[str] = None
    posterURL: Optional[str] = None
    playlistId: Optional[str] = None
    isExternal: Optional[bool] = None
    tmdbData: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None
    rating: Optional[float] = None


class ToggleResponse(BaseModel):
    action: str
    item: Optional[Dict[str, Any]] = None


class WatchlistStats(BaseModel):
    total: int
    movieCount: int
    tvCount: int


class BulkUpdateEntry(BaseModel):
    id: str
    updates: Dict[str, Any] = Field(default_factory=dict)


class BulkUpdateRequest(BaseModel):
    updates: List[BulkUpdateEntry]


class ItemIdsRequest(BaseModel):
    itemIds: List[str] = Field(..., min_length=1)


class MoveItemsRequest(ItemIdsRequest):
    targetPlaylistId: Optional[str] = Field(None, description="Defaults to the user's default playlist.")


class PlaylistCreateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    privacy: Optional[str] = None


class PlaylistUpdateRequest(PlaylistCreateRequest):
    pass


class PlaylistSortingRequest(BaseModel):
    sortBy: str = Field(..., pattern="^(dateAdded|title|releaseDate|custom)$")
    sortOrder: str = Field("desc", pattern="^(asc|desc)$")


class PlaylistOrderRequest(BaseModel):
    itemIds: List[str]


class Collaborator(BaseModel):
    email: Optional[str] = None
    permission: Optional[str] = None


class ShareRequest(BaseModel):
    collaborators: List[Collaborator]


class ShareResponse(BaseModel):
    shared: int
    notFound: List[str] = Field(default_factory=list)


class PlaylistVisibilityRequest(BaseModel):
    showInApp: Optional[bool] = None
    appOrder: Optional[int] = None
    appTitle: Optional[str] = None
    hideUnavailable: Optional[bool] = None
