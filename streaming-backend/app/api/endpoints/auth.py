# backend/app/api/endpoints/auth.py

import logging
from typing import Dict, Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from app.api.deps import get_auth_session_service, get_current_user
from app.core.config import settings
from app.core.security import InvalidMobileTokenError
from app.models.auth import (
    ApproveQrSessionRequest,
    AuthenticateQrSessionRequest,
    CreateAuthSessionRequest,
    RefreshTokenRequest,
    RefreshTokenResponse,
    RegisterQrSessionRequest,
    SessionUser,
    VerifyMobileTokenRequest,
)
from app.services.auth_session_service import AuthSessionError, AuthSessionService
from app.utils.helpers import to_millis

logger = logging.getLogger(__name__)
router = APIRouter()


def _error(e: AuthSessionError) -> JSONResponse:
    return JSONResponse(status_code=e.status_code, content={"error": e.message})


@router.post(
    "/sessions",
    status_code=status.HTTP_201_CREATED,
    summary="Create Device Sign-in Session",
)
async def create_auth_session(
    body: CreateAuthSessionRequest,
    auth_service: AuthSessionService = Depends(get_auth_session_service),
):
    if not body.clientId:
        return JSONResponse(status_code=400, content={"error": "Client ID is required"})
    try:
        session = await auth_service.create_auth_session(body.clientId)
        return {
            "sessionId": session["sessionId"],
            "status": session["status"],
            "expiresAt": to_millis(session["expiresAt"]),
        }
    except Exception as e:
        logger.error(f"Error creating auth session: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create session")


@router.post("/register-qr-session", summary="Register QR Sign-in Session")
async def register_qr_session(
    body: RegisterQrSessionRequest,
    request: Request,
    auth_service: AuthSessionService = Depends(get_auth_session_service),
):
    """A TV registers a session and renders the returned qrData as a QR code."""
    try:
        return await auth_service.register_qr_session(
            client_id=body.clientId,
            device_type=body.deviceType,
            host=body.host,
            device_info=body.deviceInfo,
            request_host=request.headers.get("host"),
        )
    except AuthSessionError as e:
        return _error(e)
    except Exception as e:
        logger.error(f"Error registering QR session: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Failed to register QR session"})


@router.post("/authenticate-qr-session", summary="Start Provider Sign-in for a QR Session")
async def authenticate_qr_session(
    body: AuthenticateQrSessionRequest,
    request: Request,
    auth_service: AuthSessionService = Depends(get_auth_session_service),
):
    host = request.headers.get("host") or settings.PUBLIC_HOST
    proto = request.headers.get("x-forwarded-proto") or "http"
    try:
        return await auth_service.authenticate_qr_session(body.qrSessionId, body.provider, proto, host)
    except AuthSessionError as e:
        return _error(e)
    except Exception as e:
        logger.error(f"Error initiating QR authentication: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Failed to initiate QR authentication"})


@router.post("/approve-qr-session", summary="Approve a TV QR Sign-in")
async def approve_qr_session(
    body: ApproveQrSessionRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    auth_service: AuthSessionService = Depends(get_auth_session_service),
):
    try:
        return await auth_service.approve_qr_session(body.qrSessionId, user)
    except AuthSessionError as e:
        return _error(e)
    except Exception as e:
        logger.error(f"Error approving QR session: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Failed to approve QR session"})


@router.get("/check-qr-token", summary="Poll QR Session Status")
async def check_qr_token(
    qrSessionId: str = Query(None, description="The QR session being polled."),
    auth_service: AuthSessionService = Depends(get_auth_session_service),
):
    try:
        return await auth_service.check_qr_token(qrSessionId)
    except AuthSessionError as e:
        return _error(e)
    except Exception as e:
        logger.error(f"Error checking QR session {qrSessionId}: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Failed to check QR session"})


@router.post(
    "/refresh-token",
    response_model=RefreshTokenResponse,
    response_model_exclude_none=True,
    summary="Refresh Mobile Session Token",
)
async def refresh_token(
    body: RefreshTokenRequest,
    x_session_id: str = Header(None, alias="x-session-id"),
    auth_service: AuthSessionService = Depends(get_auth_session_service),
):
    try:
        return await auth_service.refresh_token(body.clientId, body.sessionId or x_session_id)
    except AuthSessionError as e:
        logger.info(f"Token refresh rejected: {e.message}")
        return JSONResponse(status_code=e.status_code, content={"success": False, "error": e.message})
    except Exception as e:
        logger.error(f"Error refreshing token: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"success": False, "error": "Failed to refresh token"})


@router.get("/user-status", summary="Mobile Session Status")
async def user_status(
    authorization: str = Header(None),
    auth_service: AuthSessionService = Depends(get_auth_session_service),
):
    if not authorization or not authorization.startswith("Bearer "):
        return JSONResponse(
            status_code=401,
            content={"authenticated": False, "error": "Authentication token is required", "sessionExpired": True},
        )
    token = authorization.split(" ", 1)[1]
    try:
        user = await auth_service.get_user_by_mobile_token(token)
    except Exception as e:
        logger.error(f"Error checking user status: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"authenticated": False, "error": "Failed to check authentication status"})

    if user is None:
        return JSONResponse(
            status_code=401,
            content={"authenticated": False, "error": "User not found or token invalid", "sessionExpired": True},
        )
    return {"authenticated": True, "user": SessionUser(**user).model_dump()}


@router.post("/verify-mobile-token", response_model=SessionUser, summary="Consume a One-time Mobile Token")
async def verify_mobile_token(
    body: VerifyMobileTokenRequest,
    auth_service: AuthSessionService = Depends(get_auth_session_service),
):
    try:
        return await auth_service.exchange_mobile_token(body.token)
    except InvalidMobileTokenError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except AuthSessionError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"Error verifying mobile token: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="An internal error occurred.")


@router.get("/me", response_model=SessionUser, summary="Current User")
async def read_current_user(user: Dict[str, Any] = Depends(get_current_user)):
    return user
