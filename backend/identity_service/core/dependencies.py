"""FastAPI dependency providers."""

from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, Request, status
from sqlalchemy.orm import Session

from identity_service.core.app_exceptions import raise_app_error
from identity_service.core.apple_keys import AppleKeyCache
from identity_service.core.config import settings
from identity_service.core.encryption import CryptoEnvelope, build_crypto_envelope
from identity_service.core.oauth import VerifierRegistry, build_verifier_registry
from identity_service.db.session import get_db
from identity_service.services.auth_orchestrator import AuthOrchestrator


def build_key_cache() -> AppleKeyCache:
    return AppleKeyCache(
        keys_url=settings.APPLE_KEYS_URL,
        ttl_seconds=settings.APPLE_KEYS_CACHE_TTL_SECONDS,
        timeout_seconds=settings.OAUTH_HTTP_TIMEOUT_SECONDS,
    )


def get_key_cache(request: Request) -> AppleKeyCache:
    """The process-wide Apple key cache, created at startup."""
    key_cache = getattr(request.app.state, "apple_key_cache", None)
    if key_cache is None:
        key_cache = build_key_cache()
        request.app.state.apple_key_cache = key_cache
    return key_cache


def get_verifier_registry(key_cache: AppleKeyCache = Depends(get_key_cache)) -> VerifierRegistry:
    return build_verifier_registry(key_cache)


@lru_cache
def get_crypto_envelope() -> CryptoEnvelope:
    """Shared envelope; its data key cache lives for the process."""
    return build_crypto_envelope(settings)


def get_auth_orchestrator(
    db: Session = Depends(get_db),
    verifiers: VerifierRegistry = Depends(get_verifier_registry),
    crypto: CryptoEnvelope = Depends(get_crypto_envelope),
) -> AuthOrchestrator:
    return AuthOrchestrator(db, verifiers, crypto)


def get_bearer_token(authorization: Annotated[str | None, Header()] = None) -> str:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        raise_app_error(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="UNAUTHORIZED",
            message="Authorization header missing",
            user_message="Please sign in again.",
        )

    # Extract token from "Bearer <token>"
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Invalid authorization scheme")
    except ValueError:
        raise_app_error(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="UNAUTHORIZED",
            message="Invalid authorization header format. Expected: Bearer <token>",
            user_message="Please sign in again.",
        )
    return token
