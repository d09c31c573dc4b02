"""Authentication schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# Request schemas
class DeviceInfo(BaseModel):
    """Device information sent by the mobile app."""

    platform: str | None = None
    app_installation_id: str | None = None
    device_fingerprint: str | None = None
    app_version: str | None = None


class OnboardingRequest(BaseModel):
    """Onboarding (sign-in/sign-up) request schema.

    Presence checks on the token and provider fields are done by the auth
    flow so that they produce their own error codes.
    """

    model_config = ConfigDict(extra="ignore")

    provider: str | None = None
    id_token: str | None = None
    google_id_token: str | None = None
    apple_id_token: str | None = None
    apple_authorization_code: str | None = None
    consent_acknowledgments: dict[str, Any] | None = None
    device_info: DeviceInfo | None = None

    def provider_token(self) -> str | None:
        """The ID token for the requested provider, honoring legacy field names."""
        if self.provider == "apple":
            return self.apple_id_token or self.id_token
        return self.id_token or self.google_id_token


class ConfirmLinkingRequest(BaseModel):
    """Account-linking confirmation request schema."""

    linking_token: str | None = None
    confirmation: str | None = None


class RefreshRequest(BaseModel):
    """Refresh token request schema."""

    refresh_token: str | None = None
    device_id: str | None = None


# Response schemas
class UserProfile(BaseModel):
    """User object returned after authentication."""

    user_id: str
    email: str
    display_name: str
    profile_picture: str | None = None
    timezone: str = "UTC"
    created_at: datetime | None = None
    last_login_at: datetime | None = None
    preferences: dict[str, Any] | None = None
    auth_provider: str
    is_private_email: bool = False
    is_new_user: bool = False


class LinkedUserProfile(UserProfile):
    """User object returned after account linking."""

    linked_providers: list[str] = Field(default_factory=list)


class AuthResponse(BaseModel):
    """Onboarding response schema."""

    access_token: str
    refresh_token: str
    user: UserProfile
    expires_in: int


class LinkingResponse(BaseModel):
    """Account-linking confirmation response schema."""

    access_token: str
    refresh_token: str
    user: LinkedUserProfile
    expires_in: int
    account_linked: bool = True


class SessionInfo(BaseModel):
    """Session summary schema."""

    session_id: str
    expires_at: datetime


class RefreshResponse(BaseModel):
    """Refresh token response schema."""

    access_token: str
    refresh_token: str
    session: SessionInfo


class StatusResponse(BaseModel):
    """Generic status response schema."""

    status: str = "ok"
