"""Security utilities: session JWTs, refresh tokens, token hashing, linking tokens."""

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

import jwt

from identity_service.core.config import settings
from identity_service.core.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
LINKING_PURPOSE = "account_linking"


def _require_secret() -> str:
    if not settings.JWT_SECRET:
        raise ValueError("JWT_SECRET must be set")
    return settings.JWT_SECRET


def create_access_token(user_id: str, email: str | None, name: str | None, session_id: str) -> str:
    """Create a JWT access token bound to a session."""
    secret = _require_secret()

    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    payload = {
        "sub": str(user_id),
        "email": email,
        "name": name,
        "session_id": session_id,
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "iat": now,
        "exp": expire,
        "jti": str(uuid4()),
        "type": ACCESS_TOKEN_TYPE,
    }

    return jwt.encode(payload, secret, algorithm=settings.JWT_ALG)


def access_token_ttl_seconds() -> int:
    """Lifetime of an access token, as reported to clients in ``expires_in``."""
    return settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60


def verify_access_token(token: str) -> dict[str, Any]:
    """Verify and decode a JWT access token."""
    secret = _require_secret()

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[settings.JWT_ALG],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
        )
    except jwt.ExpiredSignatureError:
        raise jwt.InvalidTokenError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise jwt.InvalidTokenError(f"Invalid token: {e}")
    if payload.get("type") != ACCESS_TOKEN_TYPE:
        raise jwt.InvalidTokenError("Token is not an access token")
    return payload


def create_refresh_token() -> str:
    """Create an opaque refresh token (random string)."""
    return secrets.token_urlsafe(32)


def hash_token(token: str) -> str:
    """Hash a token using SHA256 with pepper."""
    if not settings.TOKEN_PEPPER:
        raise ValueError("TOKEN_PEPPER must be set")

    combined = f"{settings.TOKEN_PEPPER}:{token}"
    return hashlib.sha256(combined.encode()).hexdigest()


def create_linking_token(claims: dict[str, Any], ttl_seconds: int) -> str:
    """Sign a short-lived account-linking capability token."""
    secret = _require_secret()

    now = datetime.now(timezone.utc)
    payload = {
        **claims,
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "iat": now,
        "exp": now + timedelta(seconds=ttl_seconds),
        "purpose": LINKING_PURPOSE,
    }
    return jwt.encode(payload, secret, algorithm=settings.JWT_ALG)


def decode_linking_token(token: str) -> dict[str, Any]:
    """
    Verify the signature and expiry of an account-linking token.

    Raises:
        jwt.ExpiredSignatureError: the token is past its expiry
        jwt.InvalidTokenError: any other signature or claim failure
    """
    secret = _require_secret()
    payload = jwt.decode(
        token,
        secret,
        algorithms=[settings.JWT_ALG],
        audience=settings.JWT_AUDIENCE,
        issuer=settings.JWT_ISSUER,
    )
    if payload.get("purpose") != LINKING_PURPOSE:
        raise jwt.InvalidTokenError("Token is not an account-linking token")
    return payload
