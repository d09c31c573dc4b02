"""User session model: one row per issued refresh token."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, String, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from identity_service.common.clock import ensure_utc, utcnow
from identity_service.db.base import Base


class SessionStatus(str, Enum):
    """Session status."""

    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class UserSession(Base):
    """Session model for refresh-token rotation and revocation.

    Only the SHA-256 hash of the refresh token is stored.
    """

    __tablename__ = "user_sessions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    device_id = Column(Uuid, ForeignKey("user_devices.id"), nullable=True, index=True)
    session_id = Column(String(36), unique=True, nullable=False, index=True)
    refresh_token_hash = Column(String(64), unique=True, nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    user_agent = Column(String(512), nullable=True)
    source_ip = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default=SessionStatus.ACTIVE.value)
    replaced_by_id = Column(Uuid, ForeignKey("user_sessions.id"), nullable=True)
    created_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    last_accessed_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    user = relationship("User", back_populates="sessions")
    device = relationship("Device", back_populates="sessions")
    replaced_by = relationship("UserSession", remote_side=[id], foreign_keys=[replaced_by_id])

    def is_active(self, now: datetime | None = None) -> bool:
        """Check if session is active (not revoked and not expired)."""
        if self.status != SessionStatus.ACTIVE.value:
            return False
        return (now or utcnow()) < ensure_utc(self.expires_at)
