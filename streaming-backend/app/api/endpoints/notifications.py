# backend/app/api/endpoints/notifications.py

import logging
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.api.deps import get_current_user, get_media_db, require_admin, require_admin_or_webhook
from app.models.notification import DismissRequest, MarkReadRequest, NotificationCreateRequest, UnreadCountResponse
from app.services.notification_service import InvalidNotificationIdError, NotificationService

logger = logging.getLogger(__name__)
router = APIRouter()

NO_CACHE = "no-cache"


def get_notification_service(db: AsyncIOMotorDatabase = Depends(get_media_db)) -> NotificationService:
    return NotificationService(db=db)


def _internal_error() -> HTTPException:
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error")


@router.get("", summary="List Notifications")
async def list_notifications(
    request: Request,
    page: int = Query(1, ge=1, description="1-based page number."),
    limit: int = Query(20, ge=1, le=100),
    unreadOnly: bool = Query(False),
    category: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    user: Dict[str, Any] = Depends(get_current_user),
    notification_service: NotificationService = Depends(get_notification_service),
):
    """Answers 304 when the client's If-None-Match still matches the user's notification state."""
    try:
        etag = await notification_service.generate_etag(user["id"])
        headers = {"ETag": etag, "Cache-Control": NO_CACHE}
        if request.headers.get("if-none-match") == etag:
            return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers=headers)

        result = await notification_service.get_user_notifications(
            user["id"], page=page, limit=limit, unread_only=unreadOnly, category=category, priority=priority
        )
        return JSONResponse(content=jsonable_encoder(result), headers=headers)
    except Exception as e:
        logger.error(f"Error fetching notifications for user {user['id']}: {e}", exc_info=True)
        raise _internal_error()


@router.get("/unread-count", response_model=UnreadCountResponse, summary="Unread Notification Count")
async def unread_count(
    response: Response,
    user: Dict[str, Any] = Depends(get_current_user),
    notification_service: NotificationService = Depends(get_notification_service),
):
    count = await notification_service.get_unread_count(user["id"])
    response.headers["X-Unread-Count"] = str(count)
    response.headers["ETag"] = await notification_service.generate_etag(user["id"])
    response.headers["Cache-Control"] = NO_CACHE
    return {"unreadCount": count}


@router.post("/mark-read", summary="Mark Notifications as Read")
async def mark_read(
    body: MarkReadRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    notification_service: NotificationService = Depends(get_notification_service),
):
    try:
        if body.all:
            affected = await notification_service.mark_all_as_read(user["id"])
            message = f"Marked {affected} notifications as read"
        elif body.ids is not None:
            affected = await notification_service.mark_many_as_read(body.ids, user["id"])
            message = f"Marked {affected} notifications as read"
        elif body.id:
            affected = await notification_service.mark_as_read(body.id, user["id"])
            message = "Notification marked as read" if affected else "Notification not found"
        else:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid request body. Provide id, ids, or all.",
            )
    except InvalidNotificationIdError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {"success": True, "message": message, "affected": affected}


@router.post("/dismiss", summary="Dismiss a Notification")
async def dismiss(
    body: DismissRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    notification_service: NotificationService = Depends(get_notification_service),
):
    try:
        deleted = await notification_service.delete_notification(body.id, user["id"])
    except InvalidNotificationIdError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found or already dismissed")
    return {"success": True, "message": "Notification dismissed successfully"}


@router.post("", status_code=status.HTTP_201_CREATED, summary="Send Notifications")
async def send_notifications(
    body: NotificationCreateRequest,
    caller: Dict[str, Any] = Depends(require_admin_or_webhook),
    notification_service: NotificationService = Depends(get_notification_service),
):
    """Creates the notification for every listed user; a groupKey replaces their unread notification in that group."""
    payload = body.model_dump(exclude={"userIds"}, exclude_none=True)
    try:
        if body.groupKey:
            created = [
                await notification_service.replace_by_group_key(user_id, body.groupKey, payload)
                for user_id in body.userIds
            ]
        else:
            created = await notification_service.create_bulk_notifications(
                [{**payload, "userId": user_id} for user_id in body.userIds]
            )
    except InvalidNotificationIdError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Error sending notifications: {e}", exc_info=True)
        raise _internal_error()
    return {"created": len(created), "notifications": created}


@router.post("/cleanup", summary="Remove Old Read Notifications", dependencies=[Depends(require_admin)])
async def cleanup(
    days: int = Query(30, ge=1),
    notification_service: NotificationService = Depends(get_notification_service),
):
    return {"deletedCount": await notification_service.cleanup_old_notifications(days)}


@router.get("/{notification_id}", summary="Notification Details")
async def get_notification(
    notification_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    notification_service: NotificationService = Depends(get_notification_service),
):
    try:
        notification = await notification_service.get_notification_by_id(notification_id, user["id"])
    except InvalidNotificationIdError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if notification is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return notification
