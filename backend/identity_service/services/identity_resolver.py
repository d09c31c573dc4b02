"""Maps verified provider identities to accounts and arbitrates cross-provider collisions."""

from dataclasses import dataclass
from enum import Enum
from typing import Any

import jwt

from identity_service.core.config import settings
from identity_service.core.logging import get_logger
from identity_service.core.oauth import OAuthIdentity
from identity_service.core.security import create_linking_token, decode_linking_token
from identity_service.models.user import User
from identity_service.services.consents import ConsentService
from identity_service.services.users import UserNotFoundError, UserService

logger = get_logger(__name__)

LINKING_CLAIMS = ("existing_user_id", "new_provider", "new_provider_sub")


class ResolutionKind(str, Enum):
    EXISTING_USER = "existing_user"
    NEW_USER = "new_user"
    LINKING_REQUIRED = "linking_required"


@dataclass
class Resolution:
    """Outcome of resolving an identity. ``user`` is None only when linking is required."""

    kind: ResolutionKind
    user: User | None = None
    existing_provider: str | None = None
    linking_token: str | None = None
    expires_in: int | None = None

    @property
    def created(self) -> bool:
        return self.kind == ResolutionKind.NEW_USER


class LinkingTokenError(Exception):
    """A linking token failed verification. Terminal; never retried."""

    INVALID = "INVALID_LINKING_TOKEN"
    EXPIRED = "LINKING_TOKEN_EXPIRED"

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


class AccountLinker:
    """Issues and redeems account-linking capability tokens.

    A token is stateless: validity is its signature, purpose and expiry. The
    same token may be redeemed more than once within its lifetime; redeeming
    an already-linked identity is a no-op.
    """

    def __init__(self, users: UserService, ttl_seconds: int | None = None):
        self.users = users
        self.ttl_seconds = ttl_seconds or settings.ACCOUNT_LINKING_TTL_SECONDS

    def issue_token(self, existing_user: User, identity: OAuthIdentity) -> str:
        return create_linking_token(
            {
                "existing_user_id": str(existing_user.id),
                "new_provider": identity.provider.value,
                "new_provider_sub": identity.subject_id,
                "new_provider_email": identity.email,
            },
            self.ttl_seconds,
        )

    def verify_token(self, token: str) -> dict[str, Any]:
        """
        Verify a linking token and return its claims.

        Raises:
            LinkingTokenError: bad signature, wrong purpose, missing claims or expired
        """
        try:
            claims = decode_linking_token(token)
        except jwt.ExpiredSignatureError:
            raise LinkingTokenError(LinkingTokenError.EXPIRED, "Linking token has expired") from None
        except jwt.InvalidTokenError:
            raise LinkingTokenError(LinkingTokenError.INVALID, "Invalid linking token") from None

        if any(not claims.get(claim) for claim in LINKING_CLAIMS):
            raise LinkingTokenError(LinkingTokenError.INVALID, "Linking token is missing claims")
        return claims

    def confirm(self, token: str) -> tuple[User, dict[str, Any], bool]:
        """
        Attach the token's provider identity to its existing user.

        Returns:
            (user, claims, newly_linked)

        Raises:
            LinkingTokenError: the token is invalid or expired
            UserNotFoundError: the target account is gone or inactive
        """
        claims = self.verify_token(token)
        user = self.users.get_active(claims["existing_user_id"])
        try:
            linked = self.users.add_linked_provider(
                user,
                claims["new_provider"],
                claims["new_provider_sub"],
                claims.get("new_provider_email"),
            )
        except ValueError:
            raise LinkingTokenError(
                LinkingTokenError.INVALID, "Identity is linked to another account"
            ) from None
        return user, claims, linked


class IdentityResolver:
    """Resolves a verified identity to an existing, new, or to-be-linked account."""

    def __init__(
        self,
        users: UserService,
        linker: AccountLinker,
        consents: ConsentService | None = None,
    ):
        self.users = users
        self.linker = linker
        self.consents = consents

    def resolve(
        self, identity: OAuthIdentity, consent_acknowledgments: dict[str, Any] | None = None
    ) -> Resolution:
        user = self.users.find_by_external_id(identity.provider.value, identity.subject_id)
        if user is not None:
            if not user.is_active:
                raise UserNotFoundError(str(user.id))
            self.users.update_last_login(user)
            return Resolution(kind=ResolutionKind.EXISTING_USER, user=user)

        existing = self.users.find_by_email_hash(self.users.crypto.hash_email(identity.email))
        if existing is not None:
            # Same email under another credential: never create a second account
            logger.info(
                "Account linking required",
                extra={
                    "existing_user_id": str(existing.id),
                    "existing_provider": existing.auth_provider,
                    "attempted_provider": identity.provider.value,
                },
            )
            return Resolution(
                kind=ResolutionKind.LINKING_REQUIRED,
                existing_provider=existing.auth_provider,
                linking_token=self.linker.issue_token(existing, identity),
                expires_in=self.linker.ttl_seconds,
            )

        user = self.users.create(identity)
        if self.consents is not None:
            self.consents.record_acknowledgments(user.id, consent_acknowledgments)
        return Resolution(kind=ResolutionKind.NEW_USER, user=user)

    def confirm_link(self, linking_token: str) -> tuple[User, dict[str, Any], bool]:
        return self.linker.confirm(linking_token)
