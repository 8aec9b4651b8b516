"""FastAPI dependencies: bearer principal, current user, roles, per-user rate limits, CSRF."""

from __future__ import annotations

import logging
from typing import Annotated, Callable

from fastapi import Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ums.config import settings
from ums.core.auth import TokenClaims, TokenError, TokenExpiredError, verify_token
from ums.core.csrf import get_csrf_guard
from ums.core.errors import (
    AuthenticationError,
    AuthorizationError,
    CSRFError,
    ErrorMessages,
    RateLimitExceededError,
)
from ums.core.metrics import CSRF_FAILURES
from ums.core.rate_limit import RateLimitPolicy, get_rate_limiter
from ums.db.session import get_db
from ums.models.user import User, UserRole, UserStatus
from ums.services.audit import RequestInfo

logger = logging.getLogger(__name__)

CSRF_HEADER = "X-CSRF-Token"
CSRF_FIELD = "_csrf"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:].strip() or None


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _json_field(request: Request, name: str) -> str | None:
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    try:
        body = await request.json()
    except ValueError:
        return None
    value = body.get(name) if isinstance(body, dict) else None
    return value if isinstance(value, str) and value else None


def request_info(request: Request) -> RequestInfo:
    return RequestInfo(ip=_client_ip(request), user_agent=request.headers.get("user-agent"))


async def get_request_principal(request: Request) -> TokenClaims | None:
    """Claims of a valid access token on the request, or None. Never raises."""
    token = _bearer_token(request)
    if not token:
        return None
    try:
        return verify_token(token, "access")
    except TokenError:
        return None


async def get_current_user(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    token = _bearer_token(request)
    if not token:
        raise AuthenticationError(ErrorMessages.NOT_AUTHORIZED)
    try:
        claims = verify_token(token, "access")
    except TokenExpiredError as e:
        raise AuthenticationError(ErrorMessages.TOKEN_EXPIRED) from e
    except TokenError as e:
        raise AuthenticationError(ErrorMessages.TOKEN_INVALID) from e
    user = await session.get(User, claims.user_id)
    if user is None:
        raise AuthenticationError(ErrorMessages.USER_NOT_FOUND)
    if user.status != UserStatus.ACTIVE:
        raise AuthenticationError(ErrorMessages.ACCOUNT_NOT_ACTIVE)
    return user


def require_roles(*roles: UserRole) -> Callable:
    async def dependency(user: Annotated[User, Depends(get_current_user)]) -> User:
        if user.role not in roles:
            logger.warning("Role %s denied on role-restricted route user_id=%s", user.role.value, user.id)
            raise AuthorizationError(ErrorMessages.ROLE_FORBIDDEN)
        return user

    return dependency


def user_rate_limit(policy_factory: Callable[[], RateLimitPolicy]) -> Callable:
    """
    Dependency counting the request against a policy. Authenticated callers are keyed by user id
    (policy-prefixed except for the general policy); the auth policy keys anonymous callers by
    the submitted email, falling back to the client address.
    """

    async def dependency(
        request: Request,
        response: Response,
        principal: Annotated[TokenClaims | None, Depends(get_request_principal)],
    ) -> None:
        policy = policy_factory()
        if policy.name == "auth":
            email = await _json_field(request, "email")
            key = f"auth:{email.strip().lower() if email else _client_ip(request)}"
        elif principal is None:
            return
        elif policy.name == "general":
            key = str(principal.user_id)
        else:
            key = f"{policy.name}:{principal.user_id}"

        result = await get_rate_limiter().check(key, policy)
        if not result.allowed:
            raise RateLimitExceededError(policy.message, result.retry_after, result.limit, result.reset_iso)
        headers = result.headers()
        # error handlers build their own response and replay these
        request.state.rate_limit_headers = {**getattr(request.state, "rate_limit_headers", {}), **headers}
        for name, value in headers.items():
            response.headers[name] = value

    return dependency


async def csrf_protect(
    request: Request,
    principal: Annotated[TokenClaims | None, Depends(get_request_principal)],
) -> None:
    if request.method in SAFE_METHODS or request.url.path in settings.csrf_skip_route_list:
        return
    if principal is None:
        return
    token = (
        request.headers.get(CSRF_HEADER)
        or request.query_params.get(CSRF_FIELD)
        or await _json_field(request, CSRF_FIELD)
    )
    if not token:
        CSRF_FAILURES.labels(reason="missing").inc()
        logger.warning("CSRF token missing user_id=%s path=%s", principal.user_id, request.url.path)
        raise CSRFError("CSRF token missing", "CSRF_TOKEN_MISSING")
    if not await get_csrf_guard().validate(principal.user_id, token):
        CSRF_FAILURES.labels(reason="invalid").inc()
        logger.warning("CSRF token invalid user_id=%s path=%s", principal.user_id, request.url.path)
        raise CSRFError("Invalid CSRF token", "CSRF_TOKEN_INVALID")


def set_csrf_token(response: Response, token: str) -> None:
    """Hand a CSRF token to the client in the response header and a script-readable cookie."""
    response.headers[CSRF_HEADER] = token
    response.set_cookie(
        settings.csrf_cookie_name,
        token,
        max_age=settings.csrf_token_max_age_seconds,
        httponly=False,
        samesite="strict",
        secure=settings.is_production,
    )


async def provide_csrf_token(
    request: Request,
    response: Response,
    principal: Annotated[TokenClaims | None, Depends(get_request_principal)],
    _checked: Annotated[None, Depends(csrf_protect)],
) -> None:
    """Issue a fresh CSRF token on authenticated requests once the presented one has been checked."""
    if principal is None or not settings.csrf_refresh_on_response:
        return
    token = await get_csrf_guard().issue_for_user(principal.user_id)
    # the previous token is gone now, so error responses must carry this one too
    request.state.csrf_token = token
    set_csrf_token(response, token)
