# Mobile/TV token issuing and verification
# backend/app/core/security.py

import logging
import secrets
import time
from datetime import timedelta
from typing import Dict, Any

from fastapi import HTTPException, status
from fastapi.security import HTTPBearer
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.core.config import settings
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

MOBILE_TOKEN_TYPE = "mobile-auth"
USED_TOKENS_COLLECTION = "usedTokens"

# Scheme for extracting "Bearer <token>" from Authorization header
# auto_error=False means we handle the error manually if token is missing/malformed
token_bearer_scheme = HTTPBearer(auto_error=False)


# --- Custom Exceptions ---
class CredentialsException(HTTPException):
    def __init__(self, detail: str = "Could not validate credentials", status_code: int = status.HTTP_401_UNAUTHORIZED):
        super().__init__(
            status_code=status_code,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )

class TokenExpiredException(CredentialsException):
    def __init__(self, detail: str = "Token has expired"):
        super().__init__(detail=detail, status_code=status.HTTP_401_UNAUTHORIZED)

class InvalidTokenException(CredentialsException):
    def __init__(self, detail: str = "Invalid token signature or format"):
        super().__init__(detail=detail, status_code=status.HTTP_401_UNAUTHORIZED)

class MissingTokenException(CredentialsException):
    def __init__(self, detail: str = "You must be signed in."):
        super().__init__(detail=detail, status_code=status.HTTP_401_UNAUTHORIZED)

class InsufficientPermissionsException(CredentialsException):
    def __init__(self, detail: str = "Insufficient permissions"):
        super().__init__(detail=detail, status_code=status.HTTP_403_FORBIDDEN)


class InvalidMobileTokenError(Exception):
    """Raised for any mobile token that fails verification or was already consumed."""
    def __init__(self, message: str = "Invalid or expired token"):
        super().__init__(message)


# --- Token issuing ---

def generate_mobile_token(user_id: str, session_id: str) -> str:
    """
    Issues a short-lived HS256 token for the mobile/TV sign-in flow.

    The payload carries ``userId``, ``sessionId``, ``type='mobile-auth'``, a
    random ``jti`` and ``iat``/``exp`` (iat + MOBILE_TOKEN_TTL_SECONDS).
    """
    issued_at = int(time.time())
    payload = {
        "userId": user_id,
        "sessionId": session_id,
        "type": MOBILE_TOKEN_TYPE,
        "jti": secrets.token_urlsafe(16),
        "iat": issued_at,
        "exp": issued_at + settings.MOBILE_TOKEN_TTL_SECONDS,
    }
    return jwt.encode(
        payload,
        settings.MOBILE_JWT_SECRET.get_secret_value(),
        algorithm=settings.JWT_ALGORITHM,
    )


# --- Core Verification Logic ---

def decode_mobile_token(token: str) -> Dict[str, Any]:
    """
    Checks signature, expiry and token type without consuming the token.

    Raises:
        TokenExpiredException: If the token has expired.
        InvalidTokenException: If the signature, claims or type are invalid.
    """
    try:
        payload = jwt.decode(
            token,
            settings.MOBILE_JWT_SECRET.get_secret_value(),
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_aud": False},
        )
    except ExpiredSignatureError:
        logger.warning("Mobile token rejected: expired.")
        raise TokenExpiredException()
    except JWTClaimsError as e:
        logger.warning(f"Mobile token rejected: invalid claims - {e}")
        raise InvalidTokenException(detail=f"Invalid token claims: {e}")
    except JWTError as e:
        logger.warning(f"Mobile token rejected: invalid format or signature - {e}")
        raise InvalidTokenException(detail=f"Invalid token: {e}")

    if payload.get("type") != MOBILE_TOKEN_TYPE:
        logger.warning(f"Mobile token rejected: unexpected type {payload.get('type')!r}")
        raise InvalidTokenException(detail="Invalid token type")
    return payload


async def verify_mobile_token(token: str, users_db: AsyncIOMotorDatabase) -> Dict[str, Any]:
    """
    Verifies a mobile token and consumes it so it cannot be replayed.

    Used token ids are recorded in ``usedTokens`` with an ``expiresAt``
    after which they may be purged.

    Raises:
        InvalidMobileTokenError: For any invalid, expired or reused token.
    """
    try:
        payload = decode_mobile_token(token)
    except CredentialsException as e:
        raise InvalidMobileTokenError() from e

    jti = payload.get("jti")
    if not jti:
        raise InvalidMobileTokenError()

    used_tokens = users_db[USED_TOKENS_COLLECTION]
    if await used_tokens.find_one({"jti": jti}):
        logger.warning(f"Mobile token replay detected for user {payload.get('userId')}")
        raise InvalidMobileTokenError()

    now = utc_now()
    await used_tokens.insert_one({
        "jti": jti,
        "userId": payload.get("userId"),
        "usedAt": now,
        "expiresAt": now + timedelta(hours=settings.USED_TOKEN_RETENTION_HOURS),
    })
    return payload
