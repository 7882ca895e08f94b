"""Token helpers for API access and realtime subscriptions."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt
from fastapi import HTTPException, status

from app.config import get_settings

settings = get_settings()

STREAM_TOKEN_TYPE = "stream"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _sign(claims: Dict[str, Any], lifetime: timedelta) -> str:
    issued_at = datetime.now(timezone.utc)
    payload = {**claims, "iat": issued_at, "exp": issued_at + lifetime}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def create_access_token(data: Dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Sign API access claims; the default lifetime comes from settings."""

    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)
    return _sign(data, expires_delta)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Verify signature and expiry, mapping failures to HTTP 401."""

    try:
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise _unauthorized("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise _unauthorized("Could not validate credentials") from exc


def create_stream_token(user_id: int, email: str | None = None) -> str:
    """Issue a long-lived token accepted only by realtime subscribe endpoints."""

    claims: Dict[str, Any] = {"sub": str(user_id), "type": STREAM_TOKEN_TYPE}
    if email:
        claims["email"] = email
    return _sign(claims, timedelta(minutes=settings.stream_token_expire_minutes))


def decode_stream_token(token: str) -> Dict[str, Any]:
    payload = decode_access_token(token)
    if payload.get("type") != STREAM_TOKEN_TYPE:
        raise _unauthorized("Invalid stream token")
    return payload
