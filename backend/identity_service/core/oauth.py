"""Federated identity token verification for Google and Apple sign-in.

Verifiers never raise to their caller: every outcome is a ``VerificationResult``
carrying either a normalized ``OAuthIdentity`` or an error code.
"""

import base64
import json
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicNumbers
from jose import jwt
from jose.exceptions import JWTError

from identity_service.core.apple_keys import AppleKeyCache, KeySetUnavailableError
from identity_service.core.audit import sanitize_error
from identity_service.core.config import Settings, settings
from identity_service.core.logging import get_logger

logger = get_logger(__name__)


class OAuthProvider(str, Enum):
    """Supported sign-in providers."""

    GOOGLE = "google"
    APPLE = "apple"


class VerificationErrorCode(str, Enum):
    """Reasons a provider token was rejected."""

    # Google failures are deliberately undifferentiated
    INVALID_TOKEN = "INVALID_TOKEN"

    INVALID_TOKEN_STRUCTURE = "INVALID_TOKEN_STRUCTURE"
    INVALID_ISSUER = "INVALID_ISSUER"
    INVALID_AUDIENCE = "INVALID_AUDIENCE"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    APPLE_KEYS_UNAVAILABLE = "APPLE_KEYS_UNAVAILABLE"
    PUBLIC_KEY_NOT_FOUND = "PUBLIC_KEY_NOT_FOUND"
    KEY_CONVERSION_FAILED = "KEY_CONVERSION_FAILED"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    SIGNATURE_VERIFICATION_FAILED = "SIGNATURE_VERIFICATION_FAILED"
    MISSING_CLAIMS = "MISSING_CLAIMS"


@dataclass(frozen=True)
class OAuthIdentity:
    """Provider-neutral identity extracted from a verified token."""

    provider: OAuthProvider
    subject_id: str
    email: str
    email_verified: bool
    display_name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    is_private_email: bool = False
    picture_url: str | None = None
    auth_time: int | None = None


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of a provider verification."""

    identity: OAuthIdentity | None = None
    error_code: VerificationErrorCode | None = None
    details: str | None = None

    @property
    def ok(self) -> bool:
        return self.identity is not None

    @classmethod
    def success(cls, identity: OAuthIdentity) -> "VerificationResult":
        return cls(identity=identity)

    @classmethod
    def failure(cls, code: VerificationErrorCode, details: str | None = None) -> "VerificationResult":
        return cls(error_code=code, details=details)


def _as_bool(value: Any, default: bool) -> bool:
    """Providers send booleans either as JSON booleans or as "true"/"false" strings."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def base64url_decode(segment: str) -> bytes:
    """Decode an unpadded base64url string."""
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def decode_jwt_unverified(token: str) -> tuple[dict[str, Any], dict[str, Any]] | None:
    """Split a compact JWT into (header, payload) without checking the signature."""
    if not isinstance(token, str):
        return None
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        return None
    try:
        header = json.loads(base64url_decode(parts[0]))
        payload = json.loads(base64url_decode(parts[1]))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(header, dict) or not isinstance(payload, dict):
        return None
    return header, payload


def jwk_to_pem(jwk: dict[str, Any]) -> str:
    """Convert an RSA JWK (modulus ``n``, exponent ``e``) to a PEM public key."""
    if jwk.get("kty") != "RSA":
        raise ValueError(f"Unsupported JWK key type: {jwk.get('kty')}")
    modulus = int.from_bytes(base64url_decode(jwk["n"]), "big")
    exponent = int.from_bytes(base64url_decode(jwk["e"]), "big")
    public_key = RSAPublicNumbers(exponent, modulus).public_key()
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


class ProviderVerifier(ABC):
    """Base class for provider token verifiers."""

    provider: OAuthProvider

    @abstractmethod
    async def verify(self, token: str, auth_code: str | None = None) -> VerificationResult:
        """Verify a provider-issued token."""
        raise NotImplementedError


class GoogleVerifier(ProviderVerifier):
    """Verifies Google ID tokens through Google's token-introspection endpoint."""

    provider = OAuthProvider.GOOGLE

    def __init__(
        self,
        client_ids: list[str],
        tokeninfo_url: str,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.client_ids = frozenset(client_ids)
        self.tokeninfo_url = tokeninfo_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._clock = clock

    def _reject(self, reason: str) -> VerificationResult:
        logger.warning("Google token rejected", extra={"reason": reason})
        return VerificationResult.failure(VerificationErrorCode.INVALID_TOKEN)

    async def verify(self, token: str, auth_code: str | None = None) -> VerificationResult:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self._transport
            ) as client:
                response = await client.get(self.tokeninfo_url, params={"id_token": token})
            if response.status_code != 200:
                return self._reject(f"tokeninfo_status_{response.status_code}")
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "Google token introspection failed",
                extra={"error": sanitize_error(e)[:100], "error_type": type(e).__name__},
            )
            return VerificationResult.failure(VerificationErrorCode.INVALID_TOKEN)

        if not isinstance(data, dict):
            return self._reject("malformed_response")

        if data.get("aud") not in self.client_ids:
            return self._reject("audience")

        try:
            expires_at = int(data.get("exp"))
        except (TypeError, ValueError):
            return self._reject("expiry_missing")
        if expires_at <= self._clock():
            return self._reject("expired")

        if not _as_bool(data.get("email_verified"), default=False):
            return self._reject("email_unverified")

        subject = data.get("sub")
        email = data.get("email")
        if not subject or not email:
            return self._reject("claims_missing")

        return VerificationResult.success(
            OAuthIdentity(
                provider=self.provider,
                subject_id=str(subject),
                email=email,
                email_verified=True,
                display_name=data.get("name"),
                given_name=data.get("given_name"),
                family_name=data.get("family_name"),
                picture_url=data.get("picture"),
            )
        )


class AppleVerifier(ProviderVerifier):
    """Verifies Sign in with Apple ID tokens against Apple's published keys.

    Checks run in a fixed order and the first failure wins: structure, issuer,
    audience, expiry, key lookup, signature.
    """

    provider = OAuthProvider.APPLE

    def __init__(
        self,
        client_id: str | None,
        key_cache: AppleKeyCache,
        issuer: str = "https://appleid.apple.com",
        clock: Callable[[], float] = time.time,
    ):
        self.client_id = client_id
        self.key_cache = key_cache
        self.issuer = issuer
        self._clock = clock

    async def verify(self, token: str, auth_code: str | None = None) -> VerificationResult:
        decoded = decode_jwt_unverified(token)
        if decoded is None:
            return VerificationResult.failure(
                VerificationErrorCode.INVALID_TOKEN_STRUCTURE,
                "Apple ID token has invalid JWT structure",
            )
        header, claims = decoded

        if claims.get("iss") != self.issuer:
            return VerificationResult.failure(
                VerificationErrorCode.INVALID_ISSUER, "Unexpected token issuer"
            )

        audience = claims.get("aud")
        audiences = audience if isinstance(audience, list) else [audience]
        if not self.client_id or self.client_id not in audiences:
            return VerificationResult.failure(
                VerificationErrorCode.INVALID_AUDIENCE,
                "Apple ID token audience does not match client ID",
            )

        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or exp <= self._clock():
            return VerificationResult.failure(VerificationErrorCode.TOKEN_EXPIRED, "Token expired")

        signature_failure = await self._verify_signature(token, header.get("kid"))
        if signature_failure is not None:
            return signature_failure

        return self._extract_identity(claims)

    async def _verify_signature(self, token: str, kid: str | None) -> VerificationResult | None:
        try:
            key_set = await self.key_cache.get_keys()
        except KeySetUnavailableError:
            return VerificationResult.failure(
                VerificationErrorCode.APPLE_KEYS_UNAVAILABLE,
                "Unable to retrieve Apple public keys for verification",
            )

        jwk = key_set.find(kid)
        if jwk is None:
            return VerificationResult.failure(
                VerificationErrorCode.PUBLIC_KEY_NOT_FOUND, "No Apple public key for key id"
            )

        try:
            pem_key = jwk_to_pem(jwk)
        except (ValueError, KeyError, TypeError) as e:
            return VerificationResult.failure(
                VerificationErrorCode.KEY_CONVERSION_FAILED, sanitize_error(e)
            )

        try:
            jwt.decode(
                token,
                pem_key,
                algorithms=["RS256"],
                issuer=self.issuer,
                options={
                    "verify_aud": False,
                    "verify_at_hash": False,
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                },
            )
        except JWTError as e:
            return VerificationResult.failure(VerificationErrorCode.SIGNATURE_INVALID, sanitize_error(e))
        except Exception as e:
            logger.warning(
                "Apple signature verification error",
                extra={"error_type": type(e).__name__},
            )
            return VerificationResult.failure(
                VerificationErrorCode.SIGNATURE_VERIFICATION_FAILED, sanitize_error(e)
            )
        return None

    def _extract_identity(self, claims: dict[str, Any]) -> VerificationResult:
        subject = claims.get("sub")
        email = claims.get("email")
        if not subject or not email:
            return VerificationResult.failure(
                VerificationErrorCode.MISSING_CLAIMS, "Apple ID token lacks sub or email"
            )

        # Apple only sends the user's name on the very first sign-in
        display_name = None
        name = claims.get("name")
        if isinstance(name, dict):
            display_name = f"{name.get('firstName') or ''} {name.get('lastName') or ''}".strip() or None

        auth_time = claims.get("auth_time")
        return VerificationResult.success(
            OAuthIdentity(
                provider=self.provider,
                subject_id=str(subject),
                email=email,
                email_verified=_as_bool(claims.get("email_verified"), default=True),
                display_name=display_name,
                is_private_email=_as_bool(claims.get("is_private_email"), default=False),
                auth_time=auth_time if isinstance(auth_time, int) else None,
            )
        )


class UnsupportedProviderError(ValueError):
    """Raised for a provider name outside ``OAuthProvider``."""


class VerifierRegistry:
    """Maps each provider to its verifier."""

    def __init__(self, verifiers: list[ProviderVerifier]):
        self._verifiers = {verifier.provider: verifier for verifier in verifiers}

    def get(self, provider: str | OAuthProvider) -> ProviderVerifier:
        try:
            return self._verifiers[OAuthProvider(provider)]
        except (ValueError, KeyError):
            raise UnsupportedProviderError(f"Unsupported provider: {provider}") from None


def build_verifier_registry(
    key_cache: AppleKeyCache,
    config: Settings = settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> VerifierRegistry:
    """Create the verifiers configured for this deployment."""
    return VerifierRegistry(
        [
            GoogleVerifier(
                client_ids=config.google_client_ids,
                tokeninfo_url=config.GOOGLE_TOKENINFO_URL,
                timeout_seconds=config.OAUTH_HTTP_TIMEOUT_SECONDS,
                transport=transport,
            ),
            AppleVerifier(
                client_id=config.APPLE_CLIENT_ID,
                key_cache=key_cache,
                issuer=config.APPLE_ISSUER,
            ),
        ]
    )
