# backend/app/services/playback_service.py

import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional, Dict, Any

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError
from bson import ObjectId

from app.utils.helpers import ensure_utc, generate_normalized_video_id, utc_now
from app.utils.http_client import validate_url

logger = logging.getLogger(__name__)

PLAYBACK_STATUS = "PlaybackStatus"
REVALIDATE_AFTER = timedelta(hours=24)
METADATA_FIELDS = ("mediaType", "mediaId", "showId", "seasonNumber", "episodeNumber")
TV_ONLY_FIELDS = ("showId", "seasonNumber", "episodeNumber")
ID_FIELDS = ("mediaId", "showId")


class InvalidUserIdError(Exception):
    pass


def extract_playback_metadata(media_metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keeps the metadata fields stored on watch entries, with falsy values as None and ids as strings."""
    media_metadata = media_metadata or {}
    metadata = {field: media_metadata.get(field) or None for field in METADATA_FIELDS}
    for field in ID_FIELDS:
        if metadata[field] is not None:
            metadata[field] = str(metadata[field])
    return metadata


def _metadata_fields_to_store(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Metadata fields worth persisting: mediaType/mediaId always, TV fields only for tv."""
    if not metadata.get("mediaType"):
        return {}
    fields = {"mediaType": metadata["mediaType"]}
    if metadata.get("mediaId"):
        fields["mediaId"] = metadata["mediaId"]
    if metadata["mediaType"] == "tv":
        for field in TV_ONLY_FIELDS:
            if metadata.get(field):
                fields[field] = metadata[field]
    return fields


class PlaybackService:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        url_validator: Callable[[str], Awaitable[bool]] = validate_url,
    ):
        self.db = db
        self.collection = db[PLAYBACK_STATUS]
        self.url_validator = url_validator

    @staticmethod
    def _user_oid(user_id: str) -> ObjectId:
        if not ObjectId.is_valid(str(user_id)):
            raise InvalidUserIdError(f"Invalid user ID: {user_id}")
        return ObjectId(str(user_id))

    async def update_playback(
        self,
        user_id: str,
        video_id: str,
        playback_time: float,
        media_metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, str]:
        """
        Records the playback position for a video in the user's watch history.

        Existing entries are updated in place; the URL is rechecked when the
        entry is invalid or was last scanned more than 24 hours ago. New entries
        are validated and appended, creating the PlaybackStatus document if needed.

        Raises:
            InvalidUserIdError: If the user id is not an ObjectId.
            PyMongoError: If a database error occurs.
        """
        user_oid = self._user_oid(user_id)
        metadata = extract_playback_metadata(media_metadata)
        now = utc_now()

        try:
            status_doc = await self.collection.find_one({"userId": user_oid, "videosWatched.videoId": video_id})
            if status_doc:
                existing = next(v for v in status_doc["videosWatched"] if v.get("videoId") == video_id)
                updates: Dict[str, Any] = {
                    "videosWatched.$.playbackTime": playback_time,
                    "videosWatched.$.lastUpdated": now,
                }

                last_scanned = ensure_utc(existing.get("lastScanned"))
                if not existing.get("isValid") or last_scanned is None or last_scanned < now - REVALIDATE_AFTER:
                    updates["videosWatched.$.isValid"] = await self.url_validator(video_id)
                    updates["videosWatched.$.lastScanned"] = now

                if not existing.get("normalizedVideoId"):
                    updates["videosWatched.$.normalizedVideoId"] = generate_normalized_video_id(video_id)

                needs_metadata = (
                    not existing.get("mediaType")
                    or not existing.get("mediaId")
                    or (metadata["mediaType"] and existing.get("mediaType") != metadata["mediaType"])
                    or (metadata["showId"] and existing.get("showId") != metadata["showId"])
                )
                if needs_metadata:
                    for field, value in _metadata_fields_to_store(metadata).items():
                        updates[f"videosWatched.$.{field}"] = value

                await self.collection.update_one(
                    {"userId": user_oid, "videosWatched.videoId": video_id},
                    {"$set": updates},
                )
                logger.debug(f"Updated playback for user {user_id}: {video_id} at {playback_time}")
            else:
                entry = {
                    "videoId": video_id,
                    "normalizedVideoId": generate_normalized_video_id(video_id),
                    "playbackTime": playback_time,
                    "lastUpdated": now,
                    "isValid": await self.url_validator(video_id),
                    "lastScanned": now,
                    **_metadata_fields_to_store(metadata),
                }
                await self.collection.update_one(
                    {"userId": user_oid},
                    {"$push": {"videosWatched": entry}},
                    upsert=True,
                )
                logger.info(f"Added {video_id} to watch history of user {user_id}")
        except PyMongoError as e:
            logger.error(f"Database error updating playback for user {user_id}: {e}", exc_info=True)
            raise

        return {"message": "Playback status updated"}

    async def update_validation_status(
        self, video_id: str, is_valid: bool, user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Sets ``isValid`` on watch entries for a video, matching by videoId and
        falling back to normalizedVideoId. Scoped to one user when ``user_id`` is given.
        """
        base_query: Dict[str, Any] = {}
        if user_id:
            base_query["userId"] = self._user_oid(user_id)
        update = {"$set": {"videosWatched.$.isValid": is_valid, "videosWatched.$.lastScanned": utc_now()}}

        try:
            result = await self.collection.update_many({**base_query, "videosWatched.videoId": video_id}, update)
            if result.modified_count == 0:
                result = await self.collection.update_many(
                    {**base_query, "videosWatched.normalizedVideoId": video_id}, update
                )
        except PyMongoError as e:
            logger.error(f"Database error updating validation status for {video_id}: {e}", exc_info=True)
            raise

        logger.info(f"Validation status for {video_id} set to {is_valid} ({result.modified_count} entries)")
        return {"message": "Validation status updated", "videoId": video_id, "isValid": is_valid}
