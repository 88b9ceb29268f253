"""
Core: settings, database engine, request authentication and the error envelope.
"""
from .config import get_settings
from .db import AsyncSessionLocal, Base, UTCDateTime, engine, get_session
from .request_context import (
    AuthenticationError,
    AuthorizationError,
    RequestContext,
    require_roles,
    resolve_request_context,
    verify_bearer_token,
)
from .responses import ErrorCodes, code_for_status, error_response

__all__ = [
    "get_settings",
    "get_session",
    "Base",
    "UTCDateTime",
    "engine",
    "AsyncSessionLocal",
    "RequestContext",
    "resolve_request_context",
    "require_roles",
    "verify_bearer_token",
    "AuthenticationError",
    "AuthorizationError",
    "ErrorCodes",
    "code_for_status",
    "error_response",
]
