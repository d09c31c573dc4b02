"""Device model."""

import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from identity_service.common.clock import utcnow
from identity_service.db.base import Base


class DeviceStatus(str, Enum):
    """Device status. Devices are revoked, never deleted."""

    ACTIVE = "active"
    REVOKED = "revoked"


class Device(Base):
    """An app installation a user has signed in from."""

    __tablename__ = "user_devices"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    platform = Column(String(32), nullable=False, default="unknown")
    app_installation_id = Column(String(255), nullable=False)
    fingerprint = Column(String(255), nullable=True)
    app_version = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default=DeviceStatus.ACTIVE.value)
    last_active_at = Column(DateTime(timezone=True), default=utcnow, nullable=True)
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

    # Relationships
    user = relationship("User", back_populates="devices")
    sessions = relationship("UserSession", back_populates="device")

    __table_args__ = (
        UniqueConstraint("user_id", "app_installation_id", name="uq_device_user_installation"),
    )
