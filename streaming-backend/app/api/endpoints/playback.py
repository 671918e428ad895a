# backend/app/api/endpoints/playback.py

import logging
from typing import Dict, Any

from fastapi import APIRouter, Depends, HTTPException, status
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.api.deps import get_current_user, get_media_db, require_admin_or_webhook
from app.models.playback import PlaybackUpdateRequest, ValidationStatusRequest, ValidationStatusResponse
from app.services.playback_service import InvalidUserIdError, PlaybackService

logger = logging.getLogger(__name__)
router = APIRouter()


def get_playback_service(db: AsyncIOMotorDatabase = Depends(get_media_db)) -> PlaybackService:
    return PlaybackService(db=db)


@router.post("", summary="Update Playback Position")
async def update_playback(
    body: PlaybackUpdateRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    playback_service: PlaybackService = Depends(get_playback_service),
):
    """Stores the current position of a video in the caller's watch history."""
    metadata = body.mediaMetadata.model_dump() if body.mediaMetadata else None
    try:
        return await playback_service.update_playback(user["id"], body.videoId, body.playbackTime, metadata)
    except InvalidUserIdError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Error updating playback for user {user['id']}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal Server Error")


@router.post("/validation", response_model=ValidationStatusResponse, summary="Set Video Validation Status")
async def update_validation_status(
    body: ValidationStatusRequest,
    caller: Dict[str, Any] = Depends(require_admin_or_webhook),
    playback_service: PlaybackService = Depends(get_playback_service),
):
    try:
        return await playback_service.update_validation_status(body.videoId, body.isValid, user_id=body.userId)
    except InvalidUserIdError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Error updating validation status for {body.videoId}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal Server Error")
