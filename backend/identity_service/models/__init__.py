"""Database models."""

from identity_service.models.consent import REQUIRED_CONSENTS, ConsentRecord, ConsentType
from identity_service.models.device import Device, DeviceStatus
from identity_service.models.oauth import LinkedIdentity
from identity_service.models.session import SessionStatus, UserSession
from identity_service.models.user import AccountStatus, User

__all__ = [
    "AccountStatus",
    "ConsentRecord",
    "ConsentType",
    "Device",
    "DeviceStatus",
    "LinkedIdentity",
    "REQUIRED_CONSENTS",
    "SessionStatus",
    "User",
    "UserSession",
]
