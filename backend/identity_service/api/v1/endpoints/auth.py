"""Authentication endpoints."""

from fastapi import APIRouter, Depends, Request, status

from identity_service.core.dependencies import get_auth_orchestrator, get_bearer_token
from identity_service.core.errors import ErrorResponse
from identity_service.schemas.auth import (
    AuthResponse,
    ConfirmLinkingRequest,
    LinkingResponse,
    OnboardingRequest,
    RefreshRequest,
    RefreshResponse,
    StatusResponse,
)
from identity_service.services.auth_orchestrator import AuthOrchestrator, ClientContext

router = APIRouter(tags=["Auth"])

_ERRORS = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
}


@router.post(
    "/onboarding",
    response_model=AuthResponse,
    status_code=status.HTTP_200_OK,
    summary="Sign in with Google or Apple",
    description=(
        "Verify a Google or Apple ID token and return session tokens. Creates the "
        "account on first sign-in. Returns 409 with a linking token when the email "
        "already belongs to an account using another provider."
    ),
    responses={**_ERRORS, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def onboarding(
    request_data: OnboardingRequest,
    request: Request,
    orchestrator: AuthOrchestrator = Depends(get_auth_orchestrator),
) -> AuthResponse:
    return await orchestrator.onboarding(request_data, ClientContext.from_request(request))


@router.post(
    "/confirm-linking",
    response_model=LinkingResponse,
    status_code=status.HTTP_200_OK,
    summary="Confirm account linking",
    description="Attach a second sign-in provider to an existing account using a linking token.",
    responses={**_ERRORS, 404: {"model": ErrorResponse}},
)
async def confirm_linking(
    request_data: ConfirmLinkingRequest,
    request: Request,
    orchestrator: AuthOrchestrator = Depends(get_auth_orchestrator),
) -> LinkingResponse:
    return orchestrator.confirm_linking(request_data, ClientContext.from_request(request))


@router.post(
    "/refresh",
    response_model=RefreshResponse,
    status_code=status.HTTP_200_OK,
    summary="Refresh session tokens",
    description="Exchange a refresh token for a new token pair. The old refresh token is revoked.",
    responses=_ERRORS,
)
async def refresh(
    request_data: RefreshRequest,
    request: Request,
    orchestrator: AuthOrchestrator = Depends(get_auth_orchestrator),
) -> RefreshResponse:
    return orchestrator.refresh(request_data, ClientContext.from_request(request))


@router.post(
    "/logout",
    response_model=StatusResponse,
    status_code=status.HTTP_200_OK,
    summary="Log out",
    description="Revoke the session of the presented access token.",
    responses={401: {"model": ErrorResponse}},
)
async def logout(
    request: Request,
    token: str = Depends(get_bearer_token),
    orchestrator: AuthOrchestrator = Depends(get_auth_orchestrator),
) -> StatusResponse:
    return orchestrator.logout(token, ClientContext.from_request(request))
