"""Linked provider identities (alternate sign-in credentials of a user)."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from identity_service.common.clock import utcnow
from identity_service.db.base import Base


class LinkedIdentity(Base):
    """A provider identity attached to an existing user through account linking."""

    __tablename__ = "user_linked_identities"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    provider_subject = Column(String(255), nullable=False)  # provider 'sub' claim
    email_hash = Column(String(64), nullable=True)
    linked_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    # Relationships
    user = relationship("User", back_populates="linked_identities")

    # One identity per provider+subject
    __table_args__ = (
        UniqueConstraint("provider", "provider_subject", name="uq_linked_provider_subject"),
    )
