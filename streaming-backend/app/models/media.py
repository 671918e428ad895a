# backend/app/models/media.py

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field


class CountResponse(BaseModel):
    count: int


class MediaCounts(BaseModel):
    """Library totals shown on the home page"""
    moviesCount: int = 0
    tvShowsCount: int = 0
    total: int = 0
    movieHours: int = 0
    tvHours: int = 0
    totalHours: int = 0


class LastUpdatedResponse(BaseModel):
    type: str
    lastUpdated: int = Field(..., description="Epoch milliseconds of the newest media change.")


class ViewerCountResponse(BaseModel):
    normalizedVideoId: str
    viewers: int


class GenreContentResponse(BaseModel):
    items: List[Dict[str, Any]]
    totalResults: int
    currentPage: int
    totalPages: int


class TmdbCollection(BaseModel):
    """TMDB collection payload to merge with library ownership"""
    id: Optional[int] = None
    name: Optional[str] = None
    overview: Optional[str] = None
    parts: List[Dict[str, Any]] = Field(default_factory=list)

    model_config = {"extra": "allow"}
