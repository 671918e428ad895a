# backend/app/services/auth_session_service.py

import logging
import secrets
import string
from datetime import timedelta
from typing import Optional, Dict, Any

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.core.config import settings
from app.core.security import generate_mobile_token, verify_mobile_token
from app.data_access.mongo_client import (
    UserRepository,
    WebSessionRepository,
    auth_session_repository,
    is_expired,
    qr_session_repository,
)
from app.utils.helpers import to_millis, utc_now

logger = logging.getLogger(__name__)

SESSION_ID_ALPHABET = string.ascii_letters + string.digits + "_-"
VALID_DEVICE_TYPES = {"tv", "mobile", "tablet", "desktop"}
VALID_PROVIDERS = {"google", "discord"}
REQUIRED_DEVICE_INFO_FIELDS = ("brand", "model", "platform")


class SessionStatus:
    PENDING = "pending"
    AUTHENTICATING = "authenticating"
    COMPLETE = "complete"
    FAILED = "failed"
    EXPIRED = "expired"


class AuthSessionError(Exception):
    """Sign-in flow failure carrying the HTTP status it maps to."""
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _new_session_id(length: int = 24) -> str:
    return "".join(secrets.choice(SESSION_ID_ALPHABET) for _ in range(length))


def is_admin_email(email: Optional[str]) -> bool:
    return bool(email) and email.lower() in settings.ADMIN_USER_EMAILS


def build_session_user(user_doc: Dict[str, Any]) -> Dict[str, Any]:
    """Shapes an AuthenticatedUsers document into the user object handed to clients."""
    admin = is_admin_email(user_doc.get("email"))
    return {
        "id": str(user_doc["_id"]),
        "email": user_doc.get("email"),
        "name": user_doc.get("name"),
        "image": user_doc.get("image"),
        "approved": True if admin else bool(user_doc.get("approved", False)),
        "limitedAccess": bool(user_doc.get("limitedAccess", False)),
        "admin": admin,
    }


class AuthSessionService:
    def __init__(self, users_db: AsyncIOMotorDatabase):
        self.users_db = users_db
        self.users = UserRepository(users_db)
        self.web_sessions = WebSessionRepository(users_db)
        self.auth_sessions = auth_session_repository(users_db)
        self.qr_sessions = qr_session_repository(users_db)

    # --- Users ---

    async def get_user_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        user_doc = await self.users.find_by_id(user_id)
        return build_session_user(user_doc) if user_doc else None

    async def get_user_by_web_session(self, session_token: str) -> Optional[Dict[str, Any]]:
        """Resolves a browser session cookie to a user, ignoring expired sessions."""
        session = await self.web_sessions.find_by_token(session_token)
        if not session:
            return None
        if is_expired(session.get("expires"), utc_now()):
            logger.debug("Web session found but expired.")
            return None
        return await self.get_user_by_id(session.get("userId"))

    async def get_user_by_mobile_token(self, token: str) -> Optional[Dict[str, Any]]:
        """
        Finds the completed sign-in session that issued ``token`` and returns
        fresh user data for it. Checks device-code sessions first, then QR sessions.
        """
        session = await self.auth_sessions.find_complete_by_mobile_token(token)
        if session is None:
            session = await self.qr_sessions.find_complete_by_mobile_token(token)
        tokens = (session or {}).get("tokens") or {}
        user_id = (tokens.get("user") or {}).get("id")
        if not user_id:
            return None
        return await self.get_user_by_id(user_id)

    async def exchange_mobile_token(self, token: str) -> Dict[str, Any]:
        """Consumes a one-time mobile token and returns its user."""
        payload = await verify_mobile_token(token, self.users_db)
        user = await self.get_user_by_id(payload.get("userId"))
        if user is None:
            raise AuthSessionError("User not found in database", 404)
        return user

    # --- Device-code sessions (authSessions) ---

    async def create_auth_session(self, client_id: str) -> Dict[str, Any]:
        now = utc_now()
        session = {
            "sessionId": _new_session_id(),
            "clientId": client_id,
            "status": SessionStatus.PENDING,
            "createdAt": now,
            "expiresAt": now + timedelta(minutes=settings.AUTH_SESSION_TTL_MINUTES),
        }
        await self.auth_sessions.insert(session)
        logger.info(f"Created auth session {session['sessionId']} for client {client_id}")
        return session

    async def get_auth_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        return await self.auth_sessions.find(session_id)

    async def store_session_tokens(self, session_id: str, tokens: Dict[str, Any]) -> bool:
        return await self.auth_sessions.update(session_id, {
            "status": SessionStatus.COMPLETE,
            "tokens": tokens,
            "updatedAt": utc_now(),
        })

    async def mark_session_failed(self, session_id: str, error: str) -> bool:
        updated = await self.auth_sessions.update(session_id, {
            "status": SessionStatus.FAILED,
            "error": error,
            "updatedAt": utc_now(),
        })
        if not updated:
            updated = await self.qr_sessions.update(session_id, {
                "status": SessionStatus.FAILED,
                "error": error,
                "updatedAt": utc_now(),
            })
        return updated

    # --- QR sessions ---

    async def register_qr_session(
        self,
        client_id: Optional[str],
        device_type: Optional[str],
        host: Optional[str] = None,
        device_info: Optional[Dict[str, Any]] = None,
        request_host: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not client_id:
            raise AuthSessionError("Client ID is required")
        if not device_type:
            raise AuthSessionError("Device type is required")
        if device_type not in VALID_DEVICE_TYPES:
            raise AuthSessionError("Invalid device type")
        if device_info is not None:
            if not isinstance(device_info, dict) or not all(device_info.get(f) for f in REQUIRED_DEVICE_INFO_FIELDS):
                raise AuthSessionError("Invalid device info structure")

        now = utc_now()
        resolved_host = host or request_host or settings.PUBLIC_HOST
        session = {
            "qrSessionId": _new_session_id(),
            "clientId": client_id,
            "deviceType": device_type,
            "host": resolved_host,
            "deviceInfo": device_info,
            "status": SessionStatus.PENDING,
            "createdAt": now,
            "expiresAt": now + timedelta(minutes=settings.QR_SESSION_TTL_MINUTES),
        }
        await self.qr_sessions.insert(session)
        logger.info(f"Registered QR session {session['qrSessionId']} for {device_type} client {client_id}")

        return {
            "qrSessionId": session["qrSessionId"],
            "expiresAt": to_millis(session["expiresAt"]),
            "qrData": {
                "qrSessionId": session["qrSessionId"],
                "host": resolved_host,
                "deviceType": device_type,
            },
        }

    async def _get_live_qr_session(self, qr_session_id: str) -> Dict[str, Any]:
        session = await self.qr_sessions.find(qr_session_id)
        if not session or is_expired(session.get("expiresAt"), utc_now()):
            raise AuthSessionError("QR session not found or expired", 404)
        return session

    async def authenticate_qr_session(
        self, qr_session_id: Optional[str], provider: Optional[str], proto: str, host: str
    ) -> Dict[str, Any]:
        """Moves a pending QR session to 'authenticating' and returns the provider sign-in URL."""
        if not qr_session_id:
            raise AuthSessionError("QR session ID is required")
        if not provider:
            raise AuthSessionError("Authentication provider is required")
        if provider not in VALID_PROVIDERS:
            raise AuthSessionError("Invalid authentication provider")

        session = await self._get_live_qr_session(qr_session_id)
        if session.get("status") != SessionStatus.PENDING:
            raise AuthSessionError("QR session is not in pending state")

        await self.qr_sessions.update(qr_session_id, {
            "status": SessionStatus.AUTHENTICATING,
            "provider": provider,
            "updatedAt": utc_now(),
        })
        return {
            "authUrl": f"{proto}://{host}/native-signin/{provider}?qrSessionId={qr_session_id}",
            "qrSessionId": qr_session_id,
            "provider": provider,
            "status": SessionStatus.AUTHENTICATING,
        }

    async def approve_qr_session(self, qr_session_id: Optional[str], user: Dict[str, Any]) -> Dict[str, Any]:
        """Signed-in user approves a TV's QR session; the TV picks the tokens up by polling."""
        if not qr_session_id:
            raise AuthSessionError("QR session ID is required")

        session = await self._get_live_qr_session(qr_session_id)
        if session.get("status") != SessionStatus.PENDING:
            raise AuthSessionError("QR session is not in pending state")

        mobile_token = generate_mobile_token(user["id"], user["id"])
        tokens = {
            "user": {k: user.get(k) for k in ("id", "email", "name", "image", "approved", "limitedAccess", "admin")},
            "mobileSessionToken": mobile_token,
            "sessionId": qr_session_id,
        }
        now = utc_now()
        await self.qr_sessions.update(qr_session_id, {
            "status": SessionStatus.COMPLETE,
            "tokens": tokens,
            "updatedAt": now,
            "expiresAt": now + timedelta(days=settings.QR_SESSION_COMPLETE_TTL_DAYS),
        })
        logger.info(f"QR session {qr_session_id} approved by user {user['id']}")
        return {"success": True, "message": "TV sign-in approved successfully"}

    async def check_qr_token(self, qr_session_id: Optional[str]) -> Dict[str, Any]:
        if not qr_session_id:
            raise AuthSessionError("QR session ID is required")
        session = await self.qr_sessions.find(qr_session_id)
        if not session:
            raise AuthSessionError("QR session not found", 404)

        if is_expired(session.get("expiresAt"), utc_now()):
            return {"status": SessionStatus.EXPIRED}

        result = {
            "qrSessionId": qr_session_id,
            "status": session.get("status"),
            "expiresAt": to_millis(session.get("expiresAt")),
        }
        if session.get("status") == SessionStatus.COMPLETE and session.get("tokens"):
            result["tokens"] = session["tokens"]
        if session.get("status") == SessionStatus.FAILED:
            result["error"] = session.get("error") or "Authentication failed"
        return result

    # --- Token refresh ---

    async def refresh_token(self, client_id: Optional[str], session_id: Optional[str]) -> Dict[str, Any]:
        """
        Issues a fresh mobile token for a completed device-code or QR session.

        Raises:
            AuthSessionError: 400/401/403/404 depending on which check fails.
        """
        if not session_id:
            raise AuthSessionError("Session ID is required", 400)
        if not client_id:
            raise AuthSessionError("Client ID is required", 400)

        repository = self.auth_sessions
        session = await repository.find(session_id)
        if session is None:
            repository = self.qr_sessions
            session = await repository.find(session_id)
        if session is None:
            raise AuthSessionError("Session not found", 404)

        if is_expired(session.get("expiresAt"), utc_now()):
            raise AuthSessionError("Session expired", 401)
        if session.get("status") != SessionStatus.COMPLETE or not session.get("tokens"):
            raise AuthSessionError("Session not authenticated", 401)
        if session.get("clientId") != client_id:
            raise AuthSessionError("Invalid client ID", 403)

        existing_user = session["tokens"].get("user") or {}
        if not existing_user.get("id"):
            raise AuthSessionError("User data not found in session", 404)

        user_doc = await self.users.find_by_id(existing_user["id"])
        if not user_doc:
            raise AuthSessionError("User not found in database", 404)

        fresh_user = build_session_user(user_doc)
        new_token = generate_mobile_token(fresh_user["id"], session_id)
        await repository.update(session_id, {
            "status": SessionStatus.COMPLETE,
            "tokens": {
                "user": fresh_user,
                "mobileSessionToken": new_token,
                "sessionId": session["tokens"].get("sessionId"),
            },
            "updatedAt": utc_now(),
        })
        logger.info(f"Refreshed mobile token for session {session_id}")
        return {"success": True, "mobileSessionToken": new_token, "user": fresh_user}
