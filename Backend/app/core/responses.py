"""
Error envelope shared by every exception handler.

    {
        "error": {
            "code": "SLOT_TAKEN",
            "message": "That time is no longer available.",
            "details": {...}  # only when there is extra context
        },
        "status": "error"
    }

Successful responses are plain response models; only failures are wrapped.
"""

from typing import Optional


class ErrorCodes:
    """Machine-readable codes clients can switch on."""

    # 401
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"

    # 403
    AUTHORIZATION_DENIED = "AUTHORIZATION_DENIED"
    INSUFFICIENT_ROLE = "INSUFFICIENT_ROLE"
    NOT_TENANT_MEMBER = "NOT_TENANT_MEMBER"
    GUEST_CHECKOUT_DISABLED = "GUEST_CHECKOUT_DISABLED"

    # 404 / 423
    NOT_FOUND = "NOT_FOUND"
    TENANT_SUSPENDED = "TENANT_SUSPENDED"

    # 400 / 422
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    LOYALTY_ERROR = "LOYALTY_ERROR"

    # 409
    CONFLICT = "CONFLICT"
    SLOT_TAKEN = "SLOT_TAKEN"
    STATE_CONFLICT = "STATE_CONFLICT"

    # 429
    RATE_LIMITED = "RATE_LIMITED"

    # 500
    INTERNAL_ERROR = "INTERNAL_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"


HTTP_STATUS_CODES = {
    400: ErrorCodes.INVALID_INPUT,
    401: ErrorCodes.AUTHENTICATION_REQUIRED,
    403: ErrorCodes.AUTHORIZATION_DENIED,
    404: ErrorCodes.NOT_FOUND,
    409: ErrorCodes.CONFLICT,
    422: ErrorCodes.VALIDATION_ERROR,
    423: ErrorCodes.TENANT_SUSPENDED,
    429: ErrorCodes.RATE_LIMITED,
}


def error_response(code: str, message: str, details: Optional[dict] = None) -> dict:
    response = {
        "error": {
            "code": code,
            "message": message,
        },
        "status": "error",
    }
    if details:
        response["error"]["details"] = details
    return response


def code_for_status(status_code: int) -> str:
    """Default error code for an HTTP status raised without a domain error."""
    if status_code >= 500:
        return ErrorCodes.INTERNAL_ERROR
    return HTTP_STATUS_CODES.get(status_code, ErrorCodes.INVALID_INPUT)
