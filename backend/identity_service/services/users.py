"""User persistence with encrypted PII."""

import uuid
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from identity_service.common.clock import utcnow
from identity_service.core.encryption import CryptoEnvelope
from identity_service.core.logging import get_logger
from identity_service.core.oauth import OAuthIdentity, OAuthProvider
from identity_service.models.oauth import LinkedIdentity
from identity_service.models.user import AccountStatus, User

logger = get_logger(__name__)

PII_FIELDS = ("email", "name", "given_name", "family_name")
PII_DATA_TYPE = "user_pii"


class UserNotFoundError(Exception):
    """The user does not exist or is no longer active."""


def pii_context(user_id: UUID | str) -> dict[str, str]:
    """Encryption context binding a user's PII to that user."""
    return {"user_id": str(user_id), "data_type": PII_DATA_TYPE}


def email_local_part(email: str | None) -> str:
    return (email or "").split("@")[0]


def _as_uuid(value: UUID | str) -> UUID | None:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


class UserService:
    """Reads and writes ``users`` and ``user_linked_identities`` rows.

    Never commits: the caller owns the transaction.
    """

    def __init__(self, db: Session, crypto: CryptoEnvelope):
        self.db = db
        self.crypto = crypto

    def find_by_external_id(self, provider: str, subject_id: str) -> User | None:
        """Find a user by primary or linked provider identity."""
        user = (
            self.db.query(User)
            .filter(User.external_id == subject_id, User.auth_provider == provider)
            .first()
        )
        if user is not None:
            return user

        linked = (
            self.db.query(LinkedIdentity)
            .filter(
                LinkedIdentity.provider == provider,
                LinkedIdentity.provider_subject == subject_id,
            )
            .first()
        )
        return linked.user if linked else None

    def find_by_email_hash(self, email_hash: str | None) -> User | None:
        if not email_hash:
            return None
        return self.db.query(User).filter(User.email_hash == email_hash).first()

    def get(self, user_id: UUID | str) -> User | None:
        parsed = _as_uuid(user_id)
        if parsed is None:
            return None
        return self.db.query(User).filter(User.id == parsed).first()

    def get_active(self, user_id: UUID | str) -> User:
        """
        Load an active user.

        Raises:
            UserNotFoundError: no such user, or the account is not active
        """
        user = self.get(user_id)
        if user is None or not user.is_active:
            raise UserNotFoundError(str(user_id))
        return user

    def create(self, identity: OAuthIdentity) -> User:
        """Create a user from a verified identity, encrypting all PII fields."""
        user_id = uuid.uuid4()
        is_google = identity.provider == OAuthProvider.GOOGLE
        is_apple = identity.provider == OAuthProvider.APPLE

        plain = {
            "email": identity.email,
            "name": identity.display_name or email_local_part(identity.email),
            "given_name": identity.given_name if is_google else None,
            "family_name": identity.family_name if is_google else None,
        }
        encrypted = self.crypto.encrypt_fields(plain, PII_FIELDS, context=pii_context(user_id))

        now = utcnow()
        user = User(
            id=user_id,
            external_id=identity.subject_id,
            auth_provider=identity.provider.value,
            email=encrypted["email"],
            email_hash=self.crypto.hash_email(identity.email),
            email_verified=identity.email_verified,
            name=encrypted["name"],
            given_name=encrypted["given_name"],
            family_name=encrypted["family_name"],
            is_private_email=identity.is_private_email if is_apple else False,
            account_status=AccountStatus.ACTIVE.value,
            created_at=now,
            last_login_at=now,
        )
        self.db.add(user)
        self.db.flush()

        logger.info(
            "User created",
            extra={"user_id": str(user.id), "provider": user.auth_provider},
        )
        return user

    def profile(self, user: User) -> dict[str, Any]:
        """Decrypted PII of a user."""
        record = {field: getattr(user, field) for field in PII_FIELDS}
        return self.crypto.decrypt_fields(record, PII_FIELDS, context=pii_context(user.id))

    def update_last_login(self, user: User) -> None:
        user.last_login_at = utcnow()
        self.db.flush()

    def add_linked_provider(
        self, user: User, provider: str, subject_id: str, email: str | None = None
    ) -> bool:
        """
        Attach an alternate provider identity to ``user``.

        Returns:
            True if a new link was stored, False if it already existed.

        Raises:
            ValueError: the identity already belongs to a different user
        """
        if user.auth_provider == provider and user.external_id == subject_id:
            return False

        existing = (
            self.db.query(LinkedIdentity)
            .filter(
                LinkedIdentity.provider == provider,
                LinkedIdentity.provider_subject == subject_id,
            )
            .first()
        )
        if existing is not None:
            if existing.user_id != user.id:
                raise ValueError("Provider identity is linked to another account")
            return False

        self.db.add(
            LinkedIdentity(
                user_id=user.id,
                provider=provider,
                provider_subject=subject_id,
                email_hash=self.crypto.hash_email(email),
            )
        )
        self.db.flush()
        logger.info("Provider linked", extra={"user_id": str(user.id), "provider": provider})
        return True

    def linked_providers(self, user: User) -> list[str]:
        """Primary provider first, then linked providers in link order."""
        providers = [user.auth_provider]
        linked = (
            self.db.query(LinkedIdentity)
            .filter(LinkedIdentity.user_id == user.id)
            .order_by(LinkedIdentity.linked_at)
            .all()
        )
        for identity in linked:
            if identity.provider not in providers:
                providers.append(identity.provider)
        return providers

    def deactivate(self, user: User, status: AccountStatus = AccountStatus.DEACTIVATED) -> None:
        """Soft-delete a user account."""
        user.account_status = status.value
        user.deactivated_at = utcnow()
        self.db.flush()
