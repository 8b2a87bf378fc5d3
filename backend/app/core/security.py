"""Signing and reading the JWT access tokens handed to staff and customers."""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from jwt.exceptions import PyJWTError

from app.core.config import settings

logger = logging.getLogger(__name__)


def token_claims(user_id: int, role: str, restaurant_id: int | None = None,
                 email: str | None = None) -> dict[str, Any]:
    """Claims understood by ``app.core.rbac``; optional ones are left out when unset."""
    claims: dict[str, Any] = {"sub": str(user_id), "role": role}
    if restaurant_id is not None:
        claims["restaurant_id"] = restaurant_id
    if email:
        claims["email"] = email
    return claims


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    issued = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=settings.access_token_expire_minutes)

    payload = dict(data)
    payload.update(exp=issued + lifetime, iat=issued, jti=secrets.token_urlsafe(16))
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Verified claims, or None for a bad signature, a malformed token or an expired one."""
    try:
        return jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            options={"require": ["exp", "sub"]},
        )
    except PyJWTError as e:
        logger.debug("Rejected access token: %s", e)
        return None
