"""Device registration and session issuance with refresh-token rotation."""

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from identity_service.common.clock import utcnow
from identity_service.core.config import settings
from identity_service.core.logging import get_logger
from identity_service.core.security import (
    access_token_ttl_seconds,
    create_access_token,
    create_refresh_token,
    hash_token,
)
from identity_service.models.device import Device, DeviceStatus
from identity_service.models.session import SessionStatus, UserSession
from identity_service.models.user import User
from identity_service.schemas.auth import DeviceInfo
from identity_service.services.users import UserService

logger = get_logger(__name__)

DEFAULT_PLATFORM = "unknown"
DEFAULT_APP_VERSION = "1.0.0"


class InvalidRefreshTokenError(Exception):
    """Refresh token unknown, expired, revoked or already rotated."""


@dataclass
class IssuedSession:
    """Tokens handed to the client. ``refresh_token`` exists only here, never in the DB."""

    access_token: str
    refresh_token: str
    session: UserSession
    expires_in: int


class DeviceService:
    """Find-or-create and revocation of ``user_devices`` rows. Never commits."""

    def __init__(self, db: Session):
        self.db = db

    def find_or_create(self, user_id: UUID, device_info: DeviceInfo | None) -> Device | None:
        """Register the device a request came from; ``None`` when no device info was sent."""
        if device_info is None:
            return None

        installation_id = device_info.app_installation_id or f"fallback-{user_id}"
        now = utcnow()
        device = (
            self.db.query(Device)
            .filter(Device.user_id == user_id, Device.app_installation_id == installation_id)
            .first()
        )
        if device is None:
            device = Device(user_id=user_id, app_installation_id=installation_id)
            self.db.add(device)

        device.platform = device_info.platform or DEFAULT_PLATFORM
        device.fingerprint = device_info.device_fingerprint
        device.app_version = device_info.app_version or DEFAULT_APP_VERSION
        device.status = DeviceStatus.ACTIVE.value
        device.last_active_at = now
        self.db.flush()
        return device

    def touch(self, device_id: UUID | None) -> None:
        if device_id is None:
            return
        device = self.db.query(Device).filter(Device.id == device_id).first()
        if device is not None:
            device.last_active_at = utcnow()

    def revoke_device(self, device: Device) -> int:
        """Revoke a device and all of its active sessions. Returns the number of sessions revoked."""
        now = utcnow()
        device.status = DeviceStatus.REVOKED.value
        revoked = (
            self.db.query(UserSession)
            .filter(
                UserSession.device_id == device.id,
                UserSession.status == SessionStatus.ACTIVE.value,
            )
            .update({"status": SessionStatus.REVOKED.value, "revoked_at": now})
        )
        self.db.flush()
        logger.info(
            "Device revoked",
            extra={"device_id": str(device.id), "sessions_revoked": revoked},
        )
        return revoked


class SessionIssuer:
    """Mints access/refresh token pairs and persists one session row per refresh token.

    Never commits: rotation relies on the caller committing the revoke-old and
    create-new writes together.
    """

    def __init__(
        self,
        db: Session,
        users: UserService,
        refresh_ttl: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.users = users
        self.refresh_ttl = refresh_ttl or timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
        self._clock = clock

    def _new_session(
        self,
        user_id: UUID,
        device_id: UUID | None,
        user_agent: str | None,
        source_ip: str | None,
    ) -> tuple[UserSession, str]:
        refresh_token = create_refresh_token()
        now = self._clock()
        session = UserSession(
            id=uuid.uuid4(),
            user_id=user_id,
            device_id=device_id,
            session_id=str(uuid.uuid4()),
            refresh_token_hash=hash_token(refresh_token),
            expires_at=now + self.refresh_ttl,
            user_agent=(user_agent or "")[:512] or None,
            source_ip=source_ip,
            status=SessionStatus.ACTIVE.value,
            created_at=now,
            last_accessed_at=now,
        )
        self.db.add(session)
        self.db.flush()
        return session, refresh_token

    def _tokens_for(self, user: User, session: UserSession, refresh_token: str) -> IssuedSession:
        profile = self.users.profile(user)
        access_token = create_access_token(
            str(user.id), profile["email"], profile["name"], session.session_id
        )
        return IssuedSession(
            access_token=access_token,
            refresh_token=refresh_token,
            session=session,
            expires_in=access_token_ttl_seconds(),
        )

    def issue(
        self,
        user: User,
        device: Device | None = None,
        user_agent: str | None = None,
        source_ip: str | None = None,
    ) -> IssuedSession:
        """Start a new session for ``user``."""
        session, refresh_token = self._new_session(
            user.id, device.id if device else None, user_agent, source_ip
        )
        logger.info(
            "Session issued",
            extra={"user_id": str(user.id), "session_id": session.session_id},
        )
        return self._tokens_for(user, session, refresh_token)

    def refresh(
        self,
        refresh_token: str,
        user_agent: str | None = None,
        source_ip: str | None = None,
        device_id: str | None = None,
    ) -> IssuedSession:
        """
        Rotate a refresh token: revoke its session and start a successor.

        Raises:
            InvalidRefreshTokenError: the token is not an active, unexpired session
            UserNotFoundError: the session's user is gone or inactive
        """
        now = self._clock()
        old = (
            self.db.query(UserSession)
            .filter(UserSession.refresh_token_hash == hash_token(refresh_token))
            .with_for_update()
            .first()
        )
        if old is None or not old.is_active(now):
            raise InvalidRefreshTokenError("Invalid or expired refresh token")

        user = self.users.get_active(old.user_id)

        new, new_refresh_token = self._new_session(
            user.id, old.device_id, user_agent or old.user_agent, source_ip
        )

        # Conditional on the row still being active so concurrent refreshes yield one successor
        rotated = (
            self.db.query(UserSession)
            .filter(
                UserSession.id == old.id,
                UserSession.status == SessionStatus.ACTIVE.value,
            )
            .update(
                {
                    "status": SessionStatus.REVOKED.value,
                    "revoked_at": now,
                    "replaced_by_id": new.id,
                }
            )
        )
        if rotated != 1:
            raise InvalidRefreshTokenError("Refresh token already rotated")

        if device_id and old.device_id and str(old.device_id) == device_id:
            DeviceService(self.db).touch(old.device_id)

        self.db.flush()
        logger.info(
            "Session rotated",
            extra={
                "user_id": str(user.id),
                "old_session_id": old.session_id,
                "session_id": new.session_id,
            },
        )
        return self._tokens_for(user, new, new_refresh_token)

    def revoke(self, session_id: str, user_id: UUID | None = None) -> bool:
        """Revoke one active session. Returns False if nothing was active under that id."""
        query = self.db.query(UserSession).filter(
            UserSession.session_id == session_id,
            UserSession.status == SessionStatus.ACTIVE.value,
        )
        if user_id is not None:
            query = query.filter(UserSession.user_id == user_id)
        revoked = query.update({"status": SessionStatus.REVOKED.value, "revoked_at": self._clock()})
        self.db.flush()
        return revoked > 0

    def revoke_all_for_user(self, user_id: UUID) -> int:
        """Revoke every active session of a user. Returns the number revoked."""
        revoked = (
            self.db.query(UserSession)
            .filter(
                UserSession.user_id == user_id,
                UserSession.status == SessionStatus.ACTIVE.value,
            )
            .update({"status": SessionStatus.REVOKED.value, "revoked_at": self._clock()})
        )
        self.db.flush()
        logger.info("All sessions revoked", extra={"user_id": str(user_id), "count": revoked})
        return revoked
