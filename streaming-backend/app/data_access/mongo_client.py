# MongoDB repository logic for user and session documents
# backend/app/data_access/mongo_client.py

import logging
from datetime import datetime
from typing import List, Optional, Dict, Any

from motor.motor_asyncio import AsyncIOMotorDatabase, AsyncIOMotorCollection
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError
from bson import ObjectId

from app.core.config import settings
from app.utils.helpers import ensure_utc

logger = logging.getLogger(__name__)

# Collection names
AUTHENTICATED_USERS = "AuthenticatedUsers"
WEB_SESSIONS = "session"
AUTH_SESSIONS = "authSessions"
QR_AUTH_SESSIONS = "qrAuthSessions"


# --- Base Repository ---
class BaseRepository:
    """Base class for common repository logic."""
    def __init__(self, db: AsyncIOMotorDatabase, collection_name: str):
        self.db = db
        self.collection: AsyncIOMotorCollection = db[collection_name]
        logger.debug(f"Initialized repository for collection: {collection_name}")

    def _check_db(self):
        """Helper to check if DB instance is available."""
        if self.db is None or self.collection is None:
            logger.critical("Database not available for repository.")
            raise ConnectionError("Database connection not available")

    def _validate_object_id(self, id_str: Any) -> Optional[ObjectId]:
        """Validates a string as a MongoDB ObjectId."""
        if isinstance(id_str, ObjectId):
            return id_str
        if isinstance(id_str, str) and ObjectId.is_valid(id_str):
            return ObjectId(id_str)
        logger.warning(f"Invalid ObjectId format: {id_str}")
        return None


# --- Users ---
class UserRepository(BaseRepository):
    def __init__(self, db: AsyncIOMotorDatabase):
        super().__init__(db, collection_name=AUTHENTICATED_USERS)

    async def find_by_id(self, user_id: Any) -> Optional[Dict[str, Any]]:
        self._check_db()
        obj_id = self._validate_object_id(user_id)
        if not obj_id:
            return None
        try:
            return await self.collection.find_one({"_id": obj_id})
        except PyMongoError as e:
            logger.error(f"DB error finding user by ID {user_id}: {e}", exc_info=True)
            raise

    async def find_by_emails(self, emails: List[str]) -> List[Dict[str, Any]]:
        self._check_db()
        if not emails:
            return []
        try:
            cursor = self.collection.find({"email": {"$in": emails}}, {"_id": 1, "email": 1, "name": 1})
            return await cursor.to_list(length=len(emails))
        except PyMongoError as e:
            logger.error(f"DB error finding users by email list: {e}", exc_info=True)
            raise


# --- Web sessions ---
class WebSessionRepository(BaseRepository):
    def __init__(self, db: AsyncIOMotorDatabase):
        super().__init__(db, collection_name=WEB_SESSIONS)

    async def find_by_token(self, session_token: str) -> Optional[Dict[str, Any]]:
        self._check_db()
        try:
            return await self.collection.find_one({"sessionToken": session_token})
        except PyMongoError as e:
            logger.error(f"DB error looking up web session: {e}", exc_info=True)
            raise


# --- Sign-in sessions (device code and QR flows) ---
class SignInSessionRepository(BaseRepository):
    """Shared access for the authSessions and qrAuthSessions collections."""

    def __init__(self, db: AsyncIOMotorDatabase, collection_name: str, id_field: str):
        super().__init__(db, collection_name=collection_name)
        self.id_field = id_field

    async def insert(self, session_doc: Dict[str, Any]) -> Dict[str, Any]:
        self._check_db()
        try:
            await self.collection.insert_one(session_doc)
            return session_doc
        except PyMongoError as e:
            logger.error(f"DB error inserting {self.collection.name} document: {e}", exc_info=True)
            raise

    async def find(self, session_id: str) -> Optional[Dict[str, Any]]:
        self._check_db()
        try:
            return await self.collection.find_one({self.id_field: session_id})
        except PyMongoError as e:
            logger.error(f"DB error finding session {session_id}: {e}", exc_info=True)
            raise

    async def update(self, session_id: str, fields: Dict[str, Any]) -> bool:
        self._check_db()
        try:
            result = await self.collection.update_one({self.id_field: session_id}, {"$set": fields})
            return result.matched_count > 0
        except PyMongoError as e:
            logger.error(f"DB error updating session {session_id}: {e}", exc_info=True)
            raise

    async def find_complete_by_mobile_token(self, token: str) -> Optional[Dict[str, Any]]:
        self._check_db()
        try:
            return await self.collection.find_one({"tokens.mobileSessionToken": token, "status": "complete"})
        except PyMongoError as e:
            logger.error(f"DB error finding session by mobile token: {e}", exc_info=True)
            raise

    async def delete_for_user(self, user_id: str) -> int:
        self._check_db()
        try:
            result = await self.collection.delete_many({"tokens.user.id": user_id})
            return result.deleted_count
        except PyMongoError as e:
            logger.error(f"DB error deleting sessions for user {user_id}: {e}", exc_info=True)
            raise


def auth_session_repository(db: AsyncIOMotorDatabase) -> SignInSessionRepository:
    return SignInSessionRepository(db, AUTH_SESSIONS, "sessionId")


def qr_session_repository(db: AsyncIOMotorDatabase) -> SignInSessionRepository:
    return SignInSessionRepository(db, QR_AUTH_SESSIONS, "qrSessionId")


# --- Indexes ---
async def ensure_indexes(media_db: AsyncIOMotorDatabase, users_db: AsyncIOMotorDatabase) -> None:
    """Creates the indexes the query paths rely on. Safe to call on every startup."""
    specs = [
        (users_db, AUTH_SESSIONS, [("sessionId", ASCENDING)], {"unique": True}),
        (users_db, AUTH_SESSIONS, [("tokens.mobileSessionToken", ASCENDING)], {}),
        (users_db, QR_AUTH_SESSIONS, [("qrSessionId", ASCENDING)], {"unique": True}),
        (users_db, QR_AUTH_SESSIONS, [("expiresAt", ASCENDING)], {"expireAfterSeconds": settings.QR_SESSION_EXPIRED_GRACE_SECONDS}),
        (users_db, "usedTokens", [("jti", ASCENDING)], {"unique": True}),
        (users_db, "usedTokens", [("expiresAt", ASCENDING)], {"expireAfterSeconds": 0}),
        (users_db, WEB_SESSIONS, [("sessionToken", ASCENDING)], {}),
        (users_db, "DeletionVerificationTokens", [("token", ASCENDING)], {"unique": True}),
        (users_db, "DeletionRequests", [("userId", ASCENDING), ("status", ASCENDING)], {}),
        (media_db, "PlaybackStatus", [("userId", ASCENDING)], {"unique": True}),
        (media_db, "PlaybackStatus", [("videosWatched.normalizedVideoId", ASCENDING)], {}),
        (media_db, "FlatMovies", [("title", ASCENDING)], {}),
        (media_db, "FlatMovies", [("normalizedVideoId", ASCENDING)], {}),
        (media_db, "FlatMovies", [("mediaLastModified", DESCENDING)], {}),
        (media_db, "FlatTVShows", [("title", ASCENDING)], {}),
        (media_db, "FlatSeasons", [("showId", ASCENDING), ("seasonNumber", ASCENDING)], {}),
        (media_db, "FlatEpisodes", [("seasonId", ASCENDING), ("episodeNumber", ASCENDING)], {}),
        (media_db, "FlatEpisodes", [("normalizedVideoId", ASCENDING)], {}),
        (media_db, "Watchlist", [("userId", ASCENDING), ("playlistId", ASCENDING), ("tmdbId", ASCENDING)], {}),
        (media_db, "Playlists", [("ownerId", ASCENDING)], {}),
        (media_db, "Notifications", [("userId", ASCENDING), ("createdAt", DESCENDING)], {}),
    ]
    for db, collection, keys, options in specs:
        try:
            await db[collection].create_index(keys, **options)
        except PyMongoError as e:
            logger.warning(f"Could not ensure index {keys} on {collection}: {e}")
    logger.info(f"Ensured {len(specs)} indexes.")


def is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    aware = ensure_utc(expires_at)
    return aware is not None and aware < now
