# backend/app/api/endpoints/account.py

import logging
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.api.deps import (
    get_client_ip,
    get_current_user,
    get_media_db,
    get_users_db,
    rate_limit,
    require_admin,
    require_admin_or_webhook,
)
from app.core.config import settings
from app.models.account import DeletionCancelRequest, DeletionRequestCreate, PublicDeletionRequestCreate
from app.services.account_deletion_service import (
    ACTIVE_STATUSES,
    STATUS_PENDING,
    STATUS_PENDING_VERIFICATION,
    AccountDeletionService,
    AccountNotFoundError,
    DeletionAlreadyPendingError,
    DeletionRateLimitError,
    DeletionRequestNotFoundError,
    InvalidDeletionRequestError,
    InvalidVerificationTokenError,
)
from app.utils.helpers import serialize_document

logger = logging.getLogger(__name__)
router = APIRouter()

RATE_LIMIT_RETRY_AFTER = 3600

# Route-level limits run before any account lookup.
deletion_request_limit = rate_limit(
    "deletion",
    settings.DELETION_REQUESTS_PER_IP_PER_HOUR,
    "Too many deletion requests from this IP address. Please try again later.",
)
status_check_limit = rate_limit(
    "status",
    settings.DELETION_STATUS_CHECKS_PER_IP_PER_HOUR,
    "Too many status check requests from this IP address. Please try again later.",
)
verification_limit = rate_limit(
    "verify_deletion",
    settings.DELETION_VERIFICATIONS_PER_IP_PER_HOUR,
    "Too many verification attempts from this IP address. Please try again later.",
)


# --- Dependency to get the service ---
def get_account_deletion_service(
    users_db: AsyncIOMotorDatabase = Depends(get_users_db),
    media_db: AsyncIOMotorDatabase = Depends(get_media_db),
) -> AccountDeletionService:
    return AccountDeletionService(users_db=users_db, media_db=media_db)
# --- ---


def _request_summary(request: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(request["_id"]),
        "status": request.get("status"),
        "requestType": request.get("requestType"),
        "requestedAt": request.get("requestedAt"),
        "scheduledDeletionAt": request.get("scheduledDeletionAt"),
        "reason": request.get("reason"),
        "canCancel": request.get("status") in ACTIVE_STATUSES,
    }


# --- Signed-in user ---

@router.post("/delete-request", summary="Request Account Deletion")
async def create_deletion_request(
    body: DeletionRequestCreate,
    user: Dict[str, Any] = Depends(get_current_user),
    deletion_service: AccountDeletionService = Depends(get_account_deletion_service),
):
    try:
        request = await deletion_service.create_authenticated_request(user["id"], body.reason)
    except AccountNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User account not found")
    except DeletionAlreadyPendingError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A deletion request is already pending for your account",
        )
    except InvalidDeletionRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Error creating deletion request for user {user['id']}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create deletion request")

    return {
        "success": True,
        "message": "Account deletion request created successfully",
        "data": {
            "requestId": str(request["_id"]),
            "status": request["status"],
            "scheduledDeletionAt": request["scheduledDeletionAt"],
            "requestedAt": request["requestedAt"],
        },
    }


@router.get("/delete-request", summary="Account Deletion Status")
async def deletion_request_status(
    user: Dict[str, Any] = Depends(get_current_user),
    deletion_service: AccountDeletionService = Depends(get_account_deletion_service),
):
    request = await deletion_service.get_latest_request(user_id=user["id"])
    if not request:
        return {"success": True, "data": {"hasActiveRequest": False, "request": None}}
    return {
        "success": True,
        "data": {
            "hasActiveRequest": request.get("status") in ACTIVE_STATUSES,
            "request": _request_summary(request),
        },
    }


@router.delete("/delete-request", summary="Cancel Account Deletion")
async def cancel_own_deletion_request(
    requestId: str = Query(...),
    reason: Optional[str] = Query(None),
    user: Dict[str, Any] = Depends(get_current_user),
    deletion_service: AccountDeletionService = Depends(get_account_deletion_service),
):
    try:
        request = await deletion_service.cancel_deletion_request(
            requestId, performed_by=user["id"], reason=(reason or "").strip() or "Cancelled by user", user_id=user["id"]
        )
    except DeletionRequestNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Deletion request not found or cannot be cancelled")
    return {
        "success": True,
        "message": "Deletion request cancelled successfully",
        "data": {"requestId": str(request["_id"]), "status": request["status"], "cancelledAt": request.get("cancelledAt")},
    }


# --- Public (email verified) ---

@router.post(
    "/public/delete-request",
    summary="Request Account Deletion by Email",
    dependencies=[Depends(deletion_request_limit)],
)
async def create_public_deletion_request(
    body: PublicDeletionRequestCreate,
    request: Request,
    deletion_service: AccountDeletionService = Depends(get_account_deletion_service),
):
    try:
        result = await deletion_service.create_public_request(body.email, body.reason, client_ip=get_client_ip(request))
    except InvalidDeletionRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except AccountNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except DeletionAlreadyPendingError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A deletion request is already pending for this email address",
        )
    except DeletionRateLimitError as e:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"error": str(e), "retryAfter": RATE_LIMIT_RETRY_AFTER},
            headers={"Retry-After": str(RATE_LIMIT_RETRY_AFTER)},
        )
    except Exception as e:
        logger.error(f"Error creating public deletion request: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create deletion request")

    deletion_request = result["deletionRequest"]
    return {
        "success": True,
        "message": "Account deletion request created. Please check your email to verify the request.",
        "data": {
            "requestId": str(deletion_request["_id"]),
            "status": deletion_request["status"],
            "email": deletion_request["email"],
            "verificationRequired": True,
            "verificationExpiresAt": result["verificationToken"]["expiresAt"],
        },
    }


@router.get(
    "/public/delete-request",
    summary="Deletion Status by Email",
    dependencies=[Depends(status_check_limit)],
)
async def public_deletion_status(
    email: str = Query(..., min_length=3),
    deletion_service: AccountDeletionService = Depends(get_account_deletion_service),
):
    """Limited status information for an email address."""
    request = await deletion_service.get_latest_request(email=email)
    if not request:
        return {
            "success": True,
            "data": {"hasActiveRequest": False, "message": "No deletion request found for this email address"},
        }
    return {
        "success": True,
        "data": {
            "hasActiveRequest": request.get("status") in ACTIVE_STATUSES,
            "status": request.get("status"),
            "requestedAt": request.get("requestedAt"),
            "scheduledDeletionAt": request.get("scheduledDeletionAt") if request.get("status") == STATUS_PENDING else None,
            "requiresVerification": request.get("status") == STATUS_PENDING_VERIFICATION,
        },
    }


@router.get(
    "/public/verify-deletion",
    summary="Verify a Deletion Request",
    dependencies=[Depends(verification_limit)],
)
async def verify_deletion(
    token: str = Query(..., min_length=1),
    deletion_service: AccountDeletionService = Depends(get_account_deletion_service),
):
    try:
        request = await deletion_service.verify_deletion_token(token)
    except (InvalidVerificationTokenError, DeletionRequestNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {
        "success": True,
        "message": "Deletion request verified",
        "data": {
            "requestId": str(request["_id"]),
            "status": request["status"],
            "scheduledDeletionAt": request.get("scheduledDeletionAt"),
        },
    }


# --- Admin ---

@router.get("/admin/deletion-requests", summary="List Deletion Requests", dependencies=[Depends(require_admin)])
async def list_deletion_requests(
    status_filter: Optional[str] = Query(None, alias="status"),
    email: Optional[str] = Query(None),
    requestType: Optional[str] = Query(None),
    page: int = Query(0, ge=0, description="0-based page number."),
    limit: int = Query(20, ge=1, le=100),
    deletion_service: AccountDeletionService = Depends(get_account_deletion_service),
):
    result = await deletion_service.get_deletion_requests(
        {"status": status_filter, "email": email, "requestType": requestType}, page=page, limit=limit
    )
    return serialize_document(result)


@router.post("/admin/deletion-requests/{request_id}/execute", summary="Execute an Account Deletion")
async def execute_deletion(
    request_id: str,
    admin: Dict[str, Any] = Depends(require_admin),
    deletion_service: AccountDeletionService = Depends(get_account_deletion_service),
):
    try:
        return await deletion_service.execute_account_deletion(request_id, performed_by=admin["id"])
    except DeletionRequestNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidDeletionRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Error executing deletion request {request_id}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to delete account")


@router.post("/admin/deletion-requests/{request_id}/cancel", summary="Cancel a Deletion Request")
async def admin_cancel_deletion(
    request_id: str,
    body: DeletionCancelRequest,
    admin: Dict[str, Any] = Depends(require_admin),
    deletion_service: AccountDeletionService = Depends(get_account_deletion_service),
):
    try:
        request = await deletion_service.cancel_deletion_request(request_id, performed_by=admin["id"], reason=body.reason)
    except DeletionRequestNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return serialize_document(request)


@router.get("/admin/deletion-requests/{request_id}/audit", summary="Deletion Audit Trail", dependencies=[Depends(require_admin)])
async def deletion_audit(
    request_id: str,
    deletion_service: AccountDeletionService = Depends(get_account_deletion_service),
):
    try:
        return serialize_document(await deletion_service.get_deletion_audit_logs(request_id))
    except DeletionRequestNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/admin/deletion-requests/process", summary="Run Scheduled Deletions")
async def process_scheduled_deletions(
    caller: Dict[str, Any] = Depends(require_admin_or_webhook),
    deletion_service: AccountDeletionService = Depends(get_account_deletion_service),
):
    """For cron or webhook automation: reminders, due deletions and expired token cleanup."""
    result = await deletion_service.process_scheduled_deletions(performed_by=caller.get("id"))
    return {"success": True, "data": result}
