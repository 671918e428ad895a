# backend/app/api/endpoints/admin.py

import logging
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.api.deps import get_media_db, get_optional_user, get_users_db, require_admin
from app.core.config import settings
from app.core.security import CredentialsException
from app.services.admin_service import AdminService
from app.services.media_service import UserNotFoundError

logger = logging.getLogger(__name__)
router = APIRouter()


# --- Dependency to get the service ---
def get_admin_service(
    media_db: AsyncIOMotorDatabase = Depends(get_media_db),
    users_db: AsyncIOMotorDatabase = Depends(get_users_db),
) -> AdminService:
    return AdminService(media_db=media_db, users_db=users_db)
# --- ---


async def resolve_target_user_id(
    request: Request,
    user: Optional[Dict[str, Any]] = Depends(get_optional_user),
) -> str:
    """
    The signed-in user's id, or the ``X-Webhook-User-ID`` named by automation
    presenting a known ``X-Webhook-ID``.
    """
    if user is not None:
        return user["id"]
    webhook_id = request.headers.get("x-webhook-id")
    target = request.headers.get("x-webhook-user-id")
    if webhook_id and webhook_id in settings.VALID_WEBHOOK_IDS and target:
        return target
    raise CredentialsException(detail="Authentication required.")


@router.get("/users", summary="Search Users", dependencies=[Depends(require_admin)])
async def search_users(
    search: Optional[str] = Query(None),
    page: int = Query(0, description="0-based page number."),
    limit: int = Query(20),
    admin_service: AdminService = Depends(get_admin_service),
):
    try:
        return await admin_service.find_users_for_admin(search, page=page, limit=limit)
    except Exception as e:
        logger.error(f"Error searching users: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to search users.")


@router.get("/recently-watched", summary="Recently Watched by All Users", dependencies=[Depends(require_admin)])
async def all_users_recently_watched(admin_service: AdminService = Depends(get_admin_service)):
    try:
        return await admin_service.get_all_users_recently_watched()
    except Exception as e:
        logger.error(f"Error collecting recently watched media: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to load recently watched media.")


@router.get("/recently-watched/{user_id}", summary="Recently Watched by a User", dependencies=[Depends(require_admin)])
async def user_recently_watched_for_admin(
    user_id: str,
    admin_service: AdminService = Depends(get_admin_service),
):
    try:
        return await admin_service.get_recently_watched_for_user(user_id)
    except UserNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found.")


# Mounted outside /admin: available to the user themself or to a webhook.
user_router = APIRouter()


@user_router.get("/recently-watched", summary="Latest Watched Items")
async def own_recently_watched(
    user_id: str = Depends(resolve_target_user_id),
    admin_service: AdminService = Depends(get_admin_service),
):
    try:
        return await admin_service.get_recently_watched_for_user(user_id)
    except UserNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found.")
    except Exception as e:
        logger.error(f"Error fetching recently watched for user {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal Server Error")
