"""Application-specific exceptions for consistent error handling."""

from typing import Any

from fastapi import HTTPException


class AppError(HTTPException):
    """Application error with standardized error code.

    ``user_message`` is safe to show in the mobile client; ``message`` is the
    developer-facing description. ``extra`` keys are merged into the top level
    of the response body (used by the account-linking conflict).
    """

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        user_message: str | None = None,
        details: dict[str, Any] | list[Any] | None = None,
        extra: dict[str, Any] | None = None,
    ):
        """Initialize application error."""
        super().__init__(
            status_code=status_code,
            detail={
                "code": code,
                "message": message,
                "user_message": user_message,
                "details": details,
            },
        )
        self.code = code
        self.message = message
        self.user_message = user_message or message
        self.details = details
        self.extra = extra or {}


def raise_app_error(
    status_code: int,
    code: str,
    message: str,
    user_message: str | None = None,
    details: dict[str, Any] | list[Any] | None = None,
    extra: dict[str, Any] | None = None,
) -> None:
    """Raise an application error with standardized format."""
    raise AppError(
        status_code=status_code,
        code=code,
        message=message,
        user_message=user_message,
        details=details,
        extra=extra,
    )
