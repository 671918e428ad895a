import time

import pytest
from jose import jwt

from app.core.config import settings
from app.core.security import (
    InvalidMobileTokenError,
    InvalidTokenException,
    TokenExpiredException,
    decode_mobile_token,
    generate_mobile_token,
    verify_mobile_token,
)


def _sign(payload):
    return jwt.encode(payload, settings.MOBILE_JWT_SECRET.get_secret_value(), algorithm=settings.JWT_ALGORITHM)


def test_generated_token_carries_session_claims():
    payload = decode_mobile_token(generate_mobile_token("user-1", "session-1"))
    assert payload["userId"] == "user-1"
    assert payload["sessionId"] == "session-1"
    assert payload["type"] == "mobile-auth"
    assert payload["exp"] - payload["iat"] == settings.MOBILE_TOKEN_TTL_SECONDS
    assert payload["jti"]


def test_expired_token_is_rejected():
    now = int(time.time())
    token = _sign({"userId": "u", "type": "mobile-auth", "jti": "j", "iat": now - 600, "exp": now - 300})
    with pytest.raises(TokenExpiredException):
        decode_mobile_token(token)


def test_wrong_type_or_signature_is_rejected():
    now = int(time.time())
    with pytest.raises(InvalidTokenException):
        decode_mobile_token(_sign({"userId": "u", "type": "refresh", "jti": "j", "exp": now + 60}))

    forged = jwt.encode({"userId": "u", "type": "mobile-auth", "exp": now + 60}, "other-secret", algorithm="HS256")
    with pytest.raises(InvalidTokenException):
        decode_mobile_token(forged)


async def test_verify_consumes_token_once(users_db):
    token = generate_mobile_token("user-1", "session-1")

    payload = await verify_mobile_token(token, users_db)
    assert payload["userId"] == "user-1"
    assert await users_db["usedTokens"].count_documents({"jti": payload["jti"]}) == 1

    with pytest.raises(InvalidMobileTokenError):
        await verify_mobile_token(token, users_db)


async def test_verify_rejects_garbage(users_db):
    with pytest.raises(InvalidMobileTokenError):
        await verify_mobile_token("not-a-jwt", users_db)
