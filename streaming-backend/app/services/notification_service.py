# backend/app/services/notification_service.py

import hashlib
import logging
from datetime import timedelta
from typing import List, Optional, Dict, Any

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING
from pymongo.errors import PyMongoError
from bson import ObjectId

from app.utils.helpers import calculate_skip, calculate_total_pages, serialize_document, to_millis, utc_now

logger = logging.getLogger(__name__)

NOTIFICATIONS = "Notifications"
DEFAULT_PAGE_SIZE = 20
CLEANUP_AFTER_DAYS = 30


class InvalidNotificationIdError(ValueError):
    pass


def _oid(value: Any) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not ObjectId.is_valid(str(value)):
        raise InvalidNotificationIdError(f"Invalid id: {value}")
    return ObjectId(str(value))


class NotificationService:
    """Per-user notifications stored in Media.Notifications."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db[NOTIFICATIONS]

    async def create_notification(self, data: Dict[str, Any]) -> Dict[str, Any]:
        now = utc_now()
        notification = {
            **data,
            "userId": _oid(data["userId"]),
            "read": False,
            "createdAt": now,
            "updatedAt": now,
        }
        result = await self.collection.insert_one(notification)
        notification["_id"] = result.inserted_id
        return serialize_document(notification)

    async def create_bulk_notifications(self, notifications: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Inserts one notification per entry, e.g. a broadcast to many users."""
        if not notifications:
            return []
        now = utc_now()
        docs = [
            {**n, "userId": _oid(n["userId"]), "read": False, "createdAt": now, "updatedAt": now}
            for n in notifications
        ]
        try:
            result = await self.collection.insert_many(docs)
        except PyMongoError as e:
            logger.error(f"Database error creating {len(docs)} notifications: {e}", exc_info=True)
            raise
        for doc, inserted_id in zip(docs, result.inserted_ids):
            doc["_id"] = inserted_id
        logger.info(f"Created {len(docs)} notifications")
        return serialize_document(docs)

    async def get_user_notifications(
        self,
        user_id: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        unread_only: bool = False,
        category: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Lists a user's notifications, newest first. ``page`` is 1-based.

        Returns:
            ``{"notifications": [...], "pagination": {...}, "unreadCount": int}``
        """
        user_oid = _oid(user_id)
        query: Dict[str, Any] = {"userId": user_oid}
        if unread_only:
            query["read"] = False
        if category:
            query["category"] = category
        if priority:
            query["priority"] = priority

        try:
            notifications = await self.collection.find(query).sort("createdAt", DESCENDING) \
                .skip(calculate_skip(page, limit)).limit(limit).to_list(length=limit)
            total_count = await self.collection.count_documents(query)
            unread_count = await self.collection.count_documents({"userId": user_oid, "read": False})
        except PyMongoError as e:
            logger.error(f"Database error fetching notifications for user {user_id}: {e}", exc_info=True)
            raise

        total_pages = calculate_total_pages(total_count, limit)
        return {
            "notifications": serialize_document(notifications),
            "pagination": {
                "page": page,
                "limit": limit,
                "totalCount": total_count,
                "totalPages": total_pages,
                "hasNext": page < total_pages,
                "hasPrev": page > 1,
            },
            "unreadCount": unread_count,
        }

    async def get_notification_by_id(self, notification_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one({"_id": _oid(notification_id), "userId": _oid(user_id)})
        return serialize_document(doc) if doc else None

    def _read_update(self) -> Dict[str, Any]:
        now = utc_now()
        return {"$set": {"read": True, "readAt": now, "updatedAt": now}}

    async def mark_as_read(self, notification_id: str, user_id: str) -> bool:
        result = await self.collection.update_one(
            {"_id": _oid(notification_id), "userId": _oid(user_id)}, self._read_update()
        )
        return result.matched_count > 0

    async def mark_many_as_read(self, notification_ids: List[str], user_id: str) -> int:
        result = await self.collection.update_many(
            {"_id": {"$in": [_oid(i) for i in notification_ids]}, "userId": _oid(user_id)},
            self._read_update(),
        )
        return result.modified_count

    async def mark_all_as_read(self, user_id: str) -> int:
        result = await self.collection.update_many({"userId": _oid(user_id), "read": False}, self._read_update())
        return result.modified_count

    async def delete_notification(self, notification_id: str, user_id: str) -> bool:
        result = await self.collection.delete_one({"_id": _oid(notification_id), "userId": _oid(user_id)})
        return result.deleted_count > 0

    async def get_unread_count(self, user_id: str) -> int:
        return await self.collection.count_documents({"userId": _oid(user_id), "read": False})

    async def replace_by_group_key(self, user_id: str, group_key: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replaces the user's unread notification sharing ``group_key`` (keeping its
        id and recording it in ``replaces``), or creates a new one.
        """
        user_oid = _oid(user_id)
        existing = await self.collection.find_one({"userId": user_oid, "groupKey": group_key, "read": False})
        if not existing:
            return await self.create_notification({**data, "userId": user_oid, "groupKey": group_key})

        now = utc_now()
        replacement = {
            **data,
            "userId": user_oid,
            "groupKey": group_key,
            "read": False,
            "createdAt": now,
            "updatedAt": now,
            "replaces": existing["_id"],
        }
        await self.collection.replace_one({"_id": existing["_id"]}, replacement)
        return serialize_document({**replacement, "_id": existing["_id"]})

    async def cleanup_old_notifications(self, days_old: int = CLEANUP_AFTER_DAYS) -> int:
        """Deletes read notifications created more than ``days_old`` days ago."""
        cutoff = utc_now() - timedelta(days=days_old)
        result = await self.collection.delete_many({"read": True, "createdAt": {"$lt": cutoff}})
        logger.info(f"Removed {result.deleted_count} notifications older than {days_old} days")
        return result.deleted_count

    async def generate_etag(self, user_id: str) -> str:
        """Weak ETag over the newest update time and the unread count."""
        user_oid = _oid(user_id)
        latest = await self.collection.find_one({"userId": user_oid}, sort=[("updatedAt", DESCENDING)])
        unread = await self.collection.count_documents({"userId": user_oid, "read": False})
        last_modified = to_millis(latest.get("updatedAt")) if latest else 0
        digest = hashlib.sha1(f"{user_oid}-{last_modified}-{unread}".encode("utf-8")).hexdigest()[:16]
        return f'W/"{digest}"'
