"""Top-level authentication flows: onboarding, account-linking confirmation, refresh, logout.

Each flow validates its input, runs the domain components, maps their typed
failures onto ``AppError`` codes, and commits once. Every outcome is audit
logged with the request's correlation id.
"""

from dataclasses import dataclass

import jwt
from fastapi import Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from identity_service.common.request_id import get_request_id
from identity_service.core.app_exceptions import AppError
from identity_service.core.audit import audit_log, get_client_ip, get_user_agent, sanitize_error
from identity_service.core.config import Settings, settings
from identity_service.core.encryption import CryptoEnvelope, EncryptionError
from identity_service.core.logging import get_logger
from identity_service.core.oauth import (
    OAuthIdentity,
    OAuthProvider,
    UnsupportedProviderError,
    VerificationErrorCode,
    VerificationResult,
    VerifierRegistry,
)
from identity_service.core.security import verify_access_token
from identity_service.models.user import User
from identity_service.schemas.auth import (
    AuthResponse,
    ConfirmLinkingRequest,
    LinkedUserProfile,
    LinkingResponse,
    OnboardingRequest,
    RefreshRequest,
    RefreshResponse,
    SessionInfo,
    StatusResponse,
    UserProfile,
)
from identity_service.services.consents import ConsentService, missing_required_consents
from identity_service.services.identity_resolver import (
    AccountLinker,
    IdentityResolver,
    LinkingTokenError,
    ResolutionKind,
)
from identity_service.services.session_issuer import (
    DeviceService,
    InvalidRefreshTokenError,
    IssuedSession,
    SessionIssuer,
)
from identity_service.services.users import UserNotFoundError, UserService, email_local_part

logger = get_logger(__name__)

LINKING_CONFIRMED = "confirmed"

_SIGNATURE_FAILURES = frozenset(
    {
        VerificationErrorCode.SIGNATURE_INVALID,
        VerificationErrorCode.SIGNATURE_VERIFICATION_FAILED,
    }
)


@dataclass(frozen=True)
class ClientContext:
    """Per-request caller metadata used for sessions and audit records."""

    request_id: str | None = None
    user_agent: str | None = None
    source_ip: str | None = None

    @classmethod
    def from_request(cls, request: Request) -> "ClientContext":
        return cls(
            request_id=get_request_id(request),
            user_agent=get_user_agent(request),
            source_ip=get_client_ip(request),
        )


def _internal_error() -> AppError:
    return AppError(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        code="INTERNAL_SERVER_ERROR",
        message="An unexpected error occurred",
        user_message="Something went wrong. Please try again later.",
    )


def _unauthorized() -> AppError:
    return AppError(
        status_code=status.HTTP_401_UNAUTHORIZED,
        code="UNAUTHORIZED",
        message="Invalid or expired access token",
        user_message="Please sign in again.",
    )


def verification_error(provider: OAuthProvider, result: VerificationResult) -> AppError:
    """Map a failed provider verification onto the client-facing error."""
    if provider == OAuthProvider.GOOGLE:
        return AppError(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="INVALID_GOOGLE_TOKEN",
            message="Google token verification failed",
            user_message="Google sign-in failed. Please try again.",
        )

    code = result.error_code
    if code == VerificationErrorCode.APPLE_KEYS_UNAVAILABLE:
        return AppError(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="APPLE_SERVICE_UNAVAILABLE",
            message="Apple authentication service temporarily unavailable",
            user_message="Apple sign-in is temporarily unavailable. Please try again shortly.",
        )
    if code == VerificationErrorCode.TOKEN_EXPIRED:
        return AppError(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="APPLE_TOKEN_EXPIRED",
            message="Apple ID token has expired",
            user_message="Your Apple sign-in has expired. Please sign in again.",
        )
    if code in _SIGNATURE_FAILURES:
        return AppError(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="APPLE_SIGNATURE_INVALID",
            message="Apple ID token signature verification failed",
            user_message="Apple sign-in failed. Please try again.",
        )
    return AppError(
        status_code=status.HTTP_401_UNAUTHORIZED,
        code="INVALID_APPLE_TOKEN",
        message="Apple token verification failed",
        user_message="Apple sign-in failed. Please try again.",
    )


class AuthOrchestrator:
    """Composes verification, resolution and session issuance per request."""

    def __init__(
        self,
        db: Session,
        verifiers: VerifierRegistry,
        crypto: CryptoEnvelope,
        config: Settings = settings,
    ):
        self.db = db
        self.verifiers = verifiers
        self.users = UserService(db, crypto)
        self.linker = AccountLinker(self.users, config.ACCOUNT_LINKING_TTL_SECONDS)
        self.resolver = IdentityResolver(
            self.users, self.linker, ConsentService(db, config.CONSENT_VERSION)
        )
        self.devices = DeviceService(db)
        self.sessions = SessionIssuer(db, self.users)

    def _fail(
        self, app_error: AppError, action: str, context: ClientContext, user_id=None, **metadata
    ) -> AppError:
        audit_log(
            action,
            user_id,
            request_id=context.request_id,
            error_code=app_error.code,
            **metadata,
        )
        return app_error

    def _rollback_internal(self, action: str, context: ClientContext, exc: Exception) -> AppError:
        self.db.rollback()
        logger.error(
            "Authentication flow failed",
            extra={"action": action, "error_type": type(exc).__name__, "request_id": context.request_id},
        )
        audit_log(action, None, request_id=context.request_id, error=exc)
        return _internal_error()

    def _profile(
        self,
        user: User,
        profile_picture: str | None = None,
        is_new_user: bool = False,
    ) -> dict:
        pii = self.users.profile(user)
        return {
            "user_id": str(user.id),
            "email": pii["email"],
            "display_name": pii["name"] or email_local_part(pii["email"]),
            "profile_picture": profile_picture,
            "timezone": "UTC",
            "created_at": user.created_at,
            "last_login_at": user.last_login_at,
            "preferences": None,
            "auth_provider": user.auth_provider,
            "is_private_email": bool(user.is_private_email),
            "is_new_user": is_new_user,
        }

    async def onboarding(self, payload: OnboardingRequest, context: ClientContext) -> AuthResponse:
        """Verify a provider token and sign the user in, creating the account when new.

        Raises:
            AppError: validation, verification or linking failure (409 on collision)
        """
        try:
            verifier = self.verifiers.get(payload.provider or "")
        except UnsupportedProviderError:
            raise self._fail(
                AppError(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    code="INVALID_PROVIDER",
                    message="Provider must be 'google' or 'apple'",
                    user_message="Unsupported sign-in method",
                ),
                "authentication_failed",
                context,
                provider=payload.provider,
            ) from None
        provider = verifier.provider

        token = payload.provider_token()
        if not token:
            raise self._fail(
                AppError(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    code="MISSING_REQUIRED_FIELD",
                    message=f"{provider.value} ID token is required",
                    user_message="Sign-in information is incomplete. Please try again.",
                    details={"field": "id_token"},
                ),
                "authentication_failed",
                context,
                provider=provider.value,
            )

        missing = missing_required_consents(payload.consent_acknowledgments)
        if missing:
            raise self._fail(
                AppError(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    code="MISSING_CONSENT",
                    message="Required consents not provided",
                    user_message="Please accept the required agreements to continue.",
                    details={"missing_consents": missing},
                ),
                "authentication_failed",
                context,
                provider=provider.value,
                missing_consents=missing,
            )

        result = await verifier.verify(token, payload.apple_authorization_code)
        if not result.ok:
            raise self._fail(
                verification_error(provider, result),
                "authentication_failed",
                context,
                provider=provider.value,
                verification_error=result.error_code.value if result.error_code else None,
                error=result.details,
            )
        identity: OAuthIdentity = result.identity

        try:
            resolution = self.resolver.resolve(identity, payload.consent_acknowledgments)
            if resolution.kind == ResolutionKind.LINKING_REQUIRED:
                self.db.rollback()
                linking_details = {
                    "existing_provider": resolution.existing_provider,
                    "attempted_provider": provider.value,
                    "linking_available": True,
                    "linking_token": resolution.linking_token,
                    "expires_in": resolution.expires_in,
                }
                audit_log(
                    "account_linking_required",
                    None,
                    request_id=context.request_id,
                    existing_provider=resolution.existing_provider,
                    attempted_provider=provider.value,
                )
                raise AppError(
                    status_code=status.HTTP_409_CONFLICT,
                    code="ACCOUNT_LINKING_REQUIRED",
                    message="An account with this email already exists with a different sign-in method",
                    user_message=(
                        f"You already have an account using {resolution.existing_provider} sign-in. "
                        f"Link your {provider.value} account or sign in with "
                        f"{resolution.existing_provider}."
                    ),
                    details=linking_details,
                    extra={
                        "linking_token": resolution.linking_token,
                        "expires_in": resolution.expires_in,
                    },
                )

            user = resolution.user
            device = self.devices.find_or_create(user.id, payload.device_info)
            issued = self.sessions.issue(user, device, context.user_agent, context.source_ip)
            profile = self._profile(user, identity.picture_url, is_new_user=resolution.created)
            self.db.commit()
        except AppError:
            raise
        except UserNotFoundError:
            self.db.rollback()
            raise self._fail(
                AppError(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    code="USER_NOT_FOUND",
                    message="User account is not active",
                    user_message="This account is no longer active.",
                ),
                "authentication_failed",
                context,
                provider=provider.value,
            ) from None
        except (EncryptionError, SQLAlchemyError) as e:
            raise self._rollback_internal("authentication_error", context, e) from e

        audit_log(
            "authentication_success",
            user.id,
            request_id=context.request_id,
            provider=provider.value,
            is_new_user=resolution.created,
            has_device_info=device is not None,
            session_id=issued.session.session_id,
        )
        return AuthResponse(
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            user=UserProfile(**profile),
            expires_in=issued.expires_in,
        )

    def confirm_linking(self, payload: ConfirmLinkingRequest, context: ClientContext) -> LinkingResponse:
        """Redeem a linking token and sign the existing user in with the linked provider."""
        if not payload.linking_token:
            raise self._fail(
                AppError(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    code="MISSING_LINKING_TOKEN",
                    message="Linking token is required",
                    user_message="Account linking information is missing. Please try again.",
                ),
                "account_linking_failed",
                context,
            )
        if payload.confirmation != LINKING_CONFIRMED:
            raise self._fail(
                AppError(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    code="LINKING_NOT_CONFIRMED",
                    message="Account linking must be explicitly confirmed",
                    user_message="Please confirm that you want to link your accounts.",
                ),
                "account_linking_failed",
                context,
            )

        try:
            user, claims, newly_linked = self.resolver.confirm_link(payload.linking_token)
            self.users.update_last_login(user)
            issued: IssuedSession = self.sessions.issue(
                user, None, context.user_agent, context.source_ip
            )
            profile = self._profile(user)
            profile["linked_providers"] = self.users.linked_providers(user)
            self.db.commit()
        except LinkingTokenError as e:
            self.db.rollback()
            expired = e.code == LinkingTokenError.EXPIRED
            raise self._fail(
                AppError(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    code=e.code,
                    message=str(e),
                    user_message=(
                        "The account linking request has expired. Please sign in again."
                        if expired
                        else "The account linking request is invalid. Please sign in again."
                    ),
                ),
                "account_linking_failed",
                context,
            ) from None
        except UserNotFoundError:
            self.db.rollback()
            raise self._fail(
                AppError(
                    status_code=status.HTTP_404_NOT_FOUND,
                    code="USER_NOT_FOUND",
                    message="Account to link was not found",
                    user_message="The account to link no longer exists.",
                ),
                "account_linking_failed",
                context,
            ) from None
        except (EncryptionError, SQLAlchemyError) as e:
            raise self._rollback_internal("account_linking_error", context, e) from e

        audit_log(
            "account_linked",
            user.id,
            request_id=context.request_id,
            new_provider=claims["new_provider"],
            newly_linked=newly_linked,
            session_id=issued.session.session_id,
        )
        return LinkingResponse(
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            user=LinkedUserProfile(**profile),
            expires_in=issued.expires_in,
            account_linked=True,
        )

    def refresh(self, payload: RefreshRequest, context: ClientContext) -> RefreshResponse:
        """Rotate a refresh token."""
        if not payload.refresh_token:
            raise self._fail(
                AppError(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    code="MISSING_REQUIRED_FIELD",
                    message="Refresh token is required",
                    user_message="Your session could not be refreshed. Please sign in again.",
                    details={"field": "refresh_token"},
                ),
                "token_refresh_failed",
                context,
            )

        try:
            issued = self.sessions.refresh(
                payload.refresh_token,
                user_agent=context.user_agent,
                source_ip=context.source_ip,
                device_id=payload.device_id,
            )
            self.db.commit()
        except InvalidRefreshTokenError:
            self.db.rollback()
            raise self._fail(
                AppError(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    code="INVALID_REFRESH_TOKEN",
                    message="Invalid or expired refresh token",
                    user_message="Your session has expired. Please sign in again.",
                ),
                "token_refresh_failed",
                context,
            ) from None
        except UserNotFoundError:
            self.db.rollback()
            raise self._fail(
                AppError(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    code="USER_NOT_FOUND",
                    message="User not found or inactive",
                    user_message="Your session has expired. Please sign in again.",
                ),
                "token_refresh_failed",
                context,
            ) from None
        except (EncryptionError, SQLAlchemyError) as e:
            raise self._rollback_internal("token_refresh_error", context, e) from e

        session = issued.session
        audit_log(
            "token_refreshed",
            session.user_id,
            request_id=context.request_id,
            session_id=session.session_id,
        )
        return RefreshResponse(
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            session=SessionInfo(session_id=session.session_id, expires_at=session.expires_at),
        )

    def logout(self, access_token: str, context: ClientContext) -> StatusResponse:
        """Revoke the session an access token belongs to."""
        try:
            claims = verify_access_token(access_token)
        except jwt.InvalidTokenError as e:
            raise self._fail(
                _unauthorized(), "logout_failed", context, error=sanitize_error(e)
            ) from None

        user = self.users.get(claims["sub"])
        if user is None:
            raise self._fail(_unauthorized(), "logout_failed", context, error="unknown user")

        try:
            revoked = self.sessions.revoke(claims.get("session_id", ""), user.id)
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._rollback_internal("logout_error", context, e) from e

        audit_log(
            "logout",
            claims["sub"],
            request_id=context.request_id,
            session_id=claims.get("session_id"),
            revoked=revoked,
        )
        return StatusResponse(status="ok")
