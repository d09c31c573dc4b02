"""Audit logging and error sanitization.

Audit events are emitted as structured log records on a dedicated logger so
the log pipeline can route them separately. Nothing that can identify a
patient is allowed into an audit record: PHI-bearing metadata keys are
dropped and error strings pass through ``sanitize_error`` first.
"""

import re
from typing import Any

from fastapi import Request

from identity_service.core.logging import get_logger

audit_logger = get_logger("identity_service.audit")

ANONYMOUS = "anonymous"
MAX_AUDIT_ERROR_LENGTH = 100

# Metadata keys that must never reach an audit record
_PHI_KEYS = frozenset(
    {
        "email",
        "name",
        "given_name",
        "family_name",
        "file_name",
        "file_content",
        "id_token",
        "refresh_token",
        "access_token",
        "linking_token",
    }
)

_REDACTIONS = (
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[SSN-REDACTED]"),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL-REDACTED]"),
    (re.compile(r"\b\d{4}\s?\d{4}\s?\d{4}\s?\d{4}\b"), "[CARD-REDACTED]"),
)


def sanitize_error(error: BaseException | str) -> str:
    """Return an error description with PHI-shaped substrings redacted."""
    message = error if isinstance(error, str) else (str(error) or type(error).__name__)
    for pattern, replacement in _REDACTIONS:
        message = pattern.sub(replacement, message)
    return message


def get_client_ip(request: Request) -> str:
    """Extract client IP from request."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    if request.client:
        return request.client.host
    return "unknown"


def get_user_agent(request: Request) -> str | None:
    """Extract user agent from request."""
    return request.headers.get("User-Agent")


def audit_log(
    action: str,
    user_id: Any | None,
    request_id: str | None = None,
    **metadata: Any,
) -> dict[str, Any]:
    """
    Emit an audit event.

    Args:
        action: Event name (e.g. "auth_success", "token_refresh_failed")
        user_id: Acting user id, or None for unauthenticated callers
        request_id: Correlation id of the request
        **metadata: Additional non-PHI fields; an ``error`` value is truncated

    Returns:
        The record that was logged.
    """
    entry: dict[str, Any] = {
        "action": action,
        "user_id": str(user_id) if user_id else ANONYMOUS,
        "request_id": request_id,
    }
    for key, value in metadata.items():
        if key in _PHI_KEYS:
            continue
        if key == "error" and value is not None:
            value = sanitize_error(value)[:MAX_AUDIT_ERROR_LENGTH]
        entry[key] = value

    audit_logger.info("Audit event", extra={"audit": entry})
    return entry
