"""
Request Context Resolution Module

This module is the single source of truth for identity resolution.
All authenticated routes go through resolve_request_context().

ARCHITECTURE:
    1. resolve_request_context() extracts the caller's identity
    2. Bearer tokens are verified with PyJWT (HS256, shared secret)
    3. The caller's profile in the current tenant is loaded
    4. Authorization checks (require_roles) read the resolved context

AUTH METHODS:
    - JWT Bearer token signed with JWT_SECRET (audience JWT_AUDIENCE)
    - X-User-Id header, only when DISABLE_AUTH_CHECKS=true (development)
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import jwt
from fastapi.requests import HTTPConnection
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    """
    Resolved identity for one request inside one tenant.

    profile_id and role are None when the user is authenticated but has no
    profile in the tenant being accessed.
    """
    user_id: str
    auth_method: str  # 'jwt', 'header', 'none'
    is_authenticated: bool = True

    tenant_id: Optional[int] = None
    profile_id: Optional[int] = None
    role: Optional[str] = None

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def is_member(self) -> bool:
        return self.profile_id is not None


class AuthenticationError(Exception):
    """Raised when authentication fails."""
    def __init__(self, message: str, status_code: int = 401, code: str = "AUTHENTICATION_REQUIRED"):
        self.message = message
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class AuthorizationError(Exception):
    """Raised when authorization fails."""
    def __init__(self, message: str, tenant_id: Optional[int] = None, code: str = "AUTHORIZATION_DENIED"):
        self.message = message
        self.tenant_id = tenant_id
        self.code = code
        super().__init__(message)


def verify_bearer_token(token: str) -> dict:
    """
    Verify an HS256 access token and return its claims.

    Raises:
        AuthenticationError: expired, malformed or wrongly-signed token
    """
    settings = get_settings()
    if not settings.jwt_secret:
        logger.error("JWT_SECRET is not configured; bearer tokens cannot be verified")
        raise AuthenticationError("Token verification is not configured.", code="INVALID_TOKEN")

    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired. Please sign in again.", code="TOKEN_EXPIRED")
    except jwt.InvalidTokenError as e:
        logger.warning(f"JWT verification failed: {e}")
        raise AuthenticationError("Invalid token. Please sign in again.", code="INVALID_TOKEN")


def _extract_user_id(request: HTTPConnection) -> tuple[Optional[str], str]:
    settings = get_settings()

    auth_header = request.headers.get("Authorization", "")
    token = auth_header[7:] if auth_header.startswith("Bearer ") else None
    if token is None and request.scope.get("type") == "websocket":
        # Browser WebSocket handshakes cannot set headers
        token = request.query_params.get("token")
    if token:
        claims = verify_bearer_token(token)
        user_id = claims.get("sub")
        if not user_id:
            raise AuthenticationError("Invalid token: missing user identifier", code="INVALID_TOKEN")
        return user_id, "jwt"

    if settings.disable_auth_checks:
        header_user = request.headers.get("X-User-Id")
        if header_user:
            logger.warning(f"DEVELOPMENT MODE: trusting X-User-Id header ({header_user})")
            return header_user, "header"

    return None, "none"


async def resolve_request_context(
    request: HTTPConnection,
    session: AsyncSession,
    tenant_id: Optional[int] = None,
    require_auth: bool = True,
) -> RequestContext:
    """
    Resolve the caller's identity and, when tenant_id is given, their
    profile and role in that tenant.

    Raises:
        AuthenticationError: require_auth=True and no valid identity found
    """
    user_id, auth_method = _extract_user_id(request)

    if not user_id:
        if require_auth:
            raise AuthenticationError("Authentication required. Please sign in.")
        return RequestContext(user_id="", auth_method="none", is_authenticated=False, tenant_id=tenant_id)

    ctx = RequestContext(
        user_id=user_id,
        auth_method=auth_method,
        tenant_id=tenant_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )
    if tenant_id is not None:
        await _populate_profile(ctx, session)
    return ctx


async def _populate_profile(ctx: RequestContext, session: AsyncSession) -> None:
    from ..models import Profile

    result = await session.execute(
        select(Profile).where(
            Profile.tenant_id == ctx.tenant_id,
            Profile.user_id == ctx.user_id,
            Profile.is_active.is_(True),
        )
    )
    profile = result.scalar_one_or_none()
    if profile:
        ctx.profile_id = profile.id
        ctx.role = profile.role.value
    logger.debug(f"User {ctx.user_id} in tenant {ctx.tenant_id}: role={ctx.role}")


def require_roles(ctx: RequestContext, allowed_roles: Iterable) -> str:
    """
    Check that the caller holds one of allowed_roles in ctx.tenant_id.

    Returns:
        The caller's role

    Raises:
        AuthorizationError: not a member, or role not allowed
    """
    allowed = [getattr(r, "value", r) for r in allowed_roles]

    if not ctx.is_member:
        logger.warning(f"Authorization failed: {ctx.user_id} has no profile in tenant {ctx.tenant_id}")
        raise AuthorizationError(
            "Access denied. You are not a member of this business.",
            tenant_id=ctx.tenant_id,
            code="NOT_TENANT_MEMBER",
        )
    if ctx.role not in allowed:
        logger.warning(
            f"Authorization failed: {ctx.user_id} has role {ctx.role}, "
            f"needs one of {allowed} in tenant {ctx.tenant_id}"
        )
        raise AuthorizationError(
            f"Access denied. Required role: {', '.join(allowed)}. Your role: {ctx.role}.",
            tenant_id=ctx.tenant_id,
            code="INSUFFICIENT_ROLE",
        )
    return ctx.role
