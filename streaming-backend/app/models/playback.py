# backend/app/models/playback.py

from typing import Optional, Union
from pydantic import BaseModel, Field


class MediaMetadata(BaseModel):
    mediaType: Optional[str] = Field(None, pattern="^(movie|tv)$")
    mediaId: Optional[str] = None
    showId: Optional[str] = None
    seasonNumber: Optional[int] = None
    episodeNumber: Optional[int] = None


class PlaybackUpdateRequest(BaseModel):
    videoId: str = Field(..., min_length=1, description="The video URL being played.")
    playbackTime: Union[int, float] = Field(..., ge=0)
    mediaMetadata: Optional[MediaMetadata] = None


class ValidationStatusRequest(BaseModel):
    videoId: str = Field(..., min_length=1, description="Video URL or normalized video id.")
    isValid: bool
    userId: Optional[str] = Field(None, description="Restrict the update to one user's history.")


class ValidationStatusResponse(BaseModel):
    message: str
    videoId: str
    isValid: bool
