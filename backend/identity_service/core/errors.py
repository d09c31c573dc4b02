"""Error handling and consistent error response format."""

from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from identity_service.common.request_id import get_request_id
from identity_service.core.audit import audit_log, sanitize_error
from identity_service.core.logging import get_logger

logger = get_logger(__name__)


class ErrorResponse(BaseModel):
    """Mobile-safe error response envelope.

    Format: {error_code, message, user_message, details}
    Compatible with mobile clients requiring stable error codes.
    """

    error_code: str
    message: str
    user_message: str
    details: Any | None = None
    request_id: str | None = None


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request validation errors (400)."""
    request_id = get_request_id(request)
    errors = exc.errors()

    if any(error.get("type") == "json_invalid" for error in errors):
        body = ErrorResponse(
            error_code="INVALID_JSON",
            message="Invalid request format",
            user_message="Please check your request and try again",
            request_id=request_id,
        )
    else:
        details = [
            {
                "field": ".".join(str(loc) for loc in error.get("loc", [])),
                "issue": error.get("msg", "Validation error"),
                "type": error.get("type", "validation_error"),
            }
            for error in errors
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Invalid request data",
            user_message="Please check your request and try again",
            details=details,
            request_id=request_id,
        )

    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body.model_dump())


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions."""
    from identity_service.core.app_exceptions import AppError

    request_id = get_request_id(request)

    if isinstance(exc, AppError):
        content = ErrorResponse(
            error_code=exc.code,
            message=exc.message,
            user_message=exc.user_message,
            details=exc.details,
            request_id=request_id,
        ).model_dump()
        content.update(exc.extra)
        return JSONResponse(status_code=exc.status_code, content=content)

    message = exc.detail if isinstance(exc.detail, str) else "An error occurred"
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error_code="HTTP_ERROR",
            message=message,
            user_message=message,
            request_id=request_id,
        ).model_dump(),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions (500). Internal details never reach the client."""
    request_id = get_request_id(request)
    audit_log(
        "unhandled_error",
        None,
        request_id=request_id,
        path=request.url.path,
        error=sanitize_error(exc),
    )
    logger.error(
        "Unhandled exception",
        extra={"request_id": request_id, "error_type": type(exc).__name__},
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error_code="INTERNAL_SERVER_ERROR",
            message="Internal server error occurred",
            user_message="Something went wrong. Please try again.",
            request_id=request_id,
        ).model_dump(),
    )
