"""User model.

PII columns (email, name, given_name, family_name) hold envelope-encrypted
payloads; ``email_hash`` is the deterministic lookup hash of the email.
"""

import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from identity_service.common.clock import utcnow
from identity_service.db.base import Base


class AccountStatus(str, Enum):
    """Account lifecycle status. Accounts are soft-deleted, never removed."""

    ACTIVE = "active"
    DEACTIVATED = "deactivated"
    DELETED = "deleted"


class User(Base):
    """User model."""

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    external_id = Column(String(255), nullable=False)  # provider 'sub' claim
    auth_provider = Column(String(32), nullable=False)
    email = Column(Text, nullable=False)
    email_hash = Column(String(64), unique=True, nullable=True, index=True)
    email_verified = Column(Boolean, default=False, nullable=False)
    name = Column(Text, nullable=True)
    given_name = Column(Text, nullable=True)
    family_name = Column(Text, nullable=True)
    is_private_email = Column(Boolean, default=False, nullable=False)
    account_status = Column(String(32), default=AccountStatus.ACTIVE.value, nullable=False)
    created_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("external_id", "auth_provider", name="uq_users_external_identity"),
    )

    # Relationships
    linked_identities = relationship(
        "LinkedIdentity", back_populates="user", cascade="all, delete-orphan"
    )
    devices = relationship("Device", back_populates="user", cascade="all, delete-orphan")
    sessions = relationship("UserSession", back_populates="user", cascade="all, delete-orphan")
    consent_records = relationship(
        "ConsentRecord", back_populates="user", cascade="all, delete-orphan"
    )

    @property
    def is_active(self) -> bool:
        return self.account_status == AccountStatus.ACTIVE.value
