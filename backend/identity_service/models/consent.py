"""Consent record model."""

import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from identity_service.common.clock import utcnow
from identity_service.db.base import Base


class ConsentType(str, Enum):
    """Consent types a user can acknowledge during onboarding."""

    MEDICAL_DISCLAIMERS = "medical_disclaimers"
    TERMS_OF_SERVICE = "terms_of_service"
    PRIVACY_POLICY = "privacy_policy"
    HEALTHCARE_CONSULTATION = "healthcare_consultation"
    EMERGENCY_CARE_LIMITATION = "emergency_care_limitation"


REQUIRED_CONSENTS = (
    ConsentType.MEDICAL_DISCLAIMERS,
    ConsentType.TERMS_OF_SERVICE,
    ConsentType.PRIVACY_POLICY,
)


class ConsentRecord(Base):
    """A user's answer for one consent type."""

    __tablename__ = "consent_records"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    consent_type = Column(String(64), nullable=False)
    consent_given = Column(Boolean, nullable=False)
    consent_version = Column(String(32), nullable=False)
    consent_method = Column(String(32), nullable=False, default="bundled_consent")
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
    withdrawn_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    user = relationship("User", back_populates="consent_records")

    __table_args__ = (UniqueConstraint("user_id", "consent_type", name="uq_consent_user_type"),)
