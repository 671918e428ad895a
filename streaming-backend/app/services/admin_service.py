# backend/app/services/admin_service.py

import logging
from typing import List, Optional, Dict, Any

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from app.data_access.mongo_client import AUTHENTICATED_USERS
from app.services.media_service import MediaService, UserNotFoundError
from app.utils.helpers import calculate_skip, calculate_total_pages, escape_regex

logger = logging.getLogger(__name__)

RECENTLY_WATCHED_PER_USER = 4
MAX_PAGE_SIZE = 100


class AdminService:
    def __init__(self, media_db: AsyncIOMotorDatabase, users_db: AsyncIOMotorDatabase):
        self.media_db = media_db
        self.users_db = users_db
        self.users = users_db[AUTHENTICATED_USERS]
        self.media_service = MediaService(media_db=media_db, users_db=users_db)

    async def find_users_for_admin(self, search: Optional[str] = None, page: int = 0, limit: int = 20) -> Dict[str, Any]:
        """
        Searches accounts by name or email (case-insensitive substring).

        ``page`` is 0-based; ``limit`` is clamped to 1..100.
        """
        page = max(0, page)
        limit = min(max(1, limit), MAX_PAGE_SIZE)
        query: Dict[str, Any] = {}
        if search and search.strip():
            pattern = {"$regex": escape_regex(search.strip()), "$options": "i"}
            query = {"$or": [{"name": pattern}, {"email": pattern}]}

        try:
            total = await self.users.count_documents(query)
            users = await self.users.find(query, {"name": 1, "email": 1}).sort("name", ASCENDING) \
                .skip(calculate_skip(page, limit, zero_based=True)).limit(limit).to_list(length=limit)
        except PyMongoError as e:
            logger.error(f"Database error searching users for '{search}': {e}", exc_info=True)
            raise

        return {
            "users": [
                {"userId": str(u["_id"]), "name": u.get("name"), "email": u.get("email")}
                for u in users
            ],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": calculate_total_pages(total, limit),
                "hasMore": (page + 1) * limit < total,
            },
        }

    async def get_recently_watched_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        """The user's latest watched items, resolved through the flat media layer."""
        return await self.media_service.get_flat_recently_watched_for_user(
            user_id, page=0, limit=RECENTLY_WATCHED_PER_USER
        )

    async def get_all_users_recently_watched(self) -> List[Dict[str, Any]]:
        """Recently watched items of every user with a watch history."""
        users = await self.users.find({}, {"name": 1, "email": 1, "image": 1}).to_list(length=None)
        results = []
        for user in users:
            try:
                videos = await self.get_recently_watched_for_user(str(user["_id"]))
            except UserNotFoundError:
                continue
            if not videos:
                continue
            results.append({
                "user": {
                    "id": str(user["_id"]),
                    "name": user.get("name"),
                    "email": user.get("email"),
                    "image": user.get("image"),
                },
                "videos": videos,
            })
        logger.info(f"Collected recently watched media for {len(results)} users")
        return results
