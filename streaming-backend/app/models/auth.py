# backend/app/models/auth.py

from typing import Optional, Dict, Any
from pydantic import BaseModel, Field


class SessionUser(BaseModel):
    """User data handed to signed-in clients"""
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    image: Optional[str] = None
    approved: bool = False
    limitedAccess: bool = False
    admin: bool = False


# Fields are optional so the service can answer with its own 400 messages.
class CreateAuthSessionRequest(BaseModel):
    clientId: Optional[str] = None


class RegisterQrSessionRequest(BaseModel):
    clientId: Optional[str] = None
    deviceType: Optional[str] = None
    host: Optional[str] = None
    deviceInfo: Optional[Dict[str, Any]] = Field(None, description="Must contain brand, model and platform when present.")


class AuthenticateQrSessionRequest(BaseModel):
    qrSessionId: Optional[str] = None
    provider: Optional[str] = None


class ApproveQrSessionRequest(BaseModel):
    qrSessionId: Optional[str] = None


class RefreshTokenRequest(BaseModel):
    clientId: Optional[str] = None
    sessionId: Optional[str] = None


class VerifyMobileTokenRequest(BaseModel):
    token: str


class RefreshTokenResponse(BaseModel):
    success: bool
    mobileSessionToken: Optional[str] = None
    user: Optional[SessionUser] = None
    error: Optional[str] = None
