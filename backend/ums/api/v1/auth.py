"""Auth: register, login, email verification, password reset, refresh, logout, CSRF token."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ums.api.deps import CSRF_HEADER, get_current_user, request_info, set_csrf_token, user_rate_limit
from ums.config import settings
from ums.core.csrf import get_csrf_guard
from ums.core.rate_limit import auth_policy
from ums.db.session import get_db
from ums.models.user import User
from ums.schemas.auth import EmailBody, LoginBody, RefreshBody, RegisterBody, ResetPasswordBody, ok
from ums.services import auth_service, security_service
from ums.services.audit import RequestInfo

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])

auth_limit = Depends(user_rate_limit(auth_policy))


@router.post(
    "/register",
    status_code=201,
    summary="Register a new user",
    dependencies=[auth_limit],
    responses={409: {"description": "Email already registered"}, 400: {"description": "Validation failed"}},
)
async def register(
    session: Annotated[AsyncSession, Depends(get_db)],
    info: Annotated[RequestInfo, Depends(request_info)],
    body: RegisterBody,
) -> dict:
    user = await auth_service.register(session, body, info)
    return ok(user, "User registered successfully. Please check your email to verify your account.")


@router.post(
    "/login",
    summary="Log in with email and password",
    dependencies=[auth_limit],
    responses={401: {"description": "Unknown account, wrong password, inactive or unverified"}},
)
async def login(
    session: Annotated[AsyncSession, Depends(get_db)],
    info: Annotated[RequestInfo, Depends(request_info)],
    response: Response,
    body: LoginBody,
) -> dict:
    result = await auth_service.login(session, body.email, body.password, info)
    csrf_token = await get_csrf_guard().issue_for_user(result["user"].id)
    set_csrf_token(response, csrf_token)
    return ok(
        {
            "user": result["user"].model_dump(mode="json"),
            "accessToken": result["accessToken"],
            "refreshToken": result["refreshToken"],
            "csrfToken": csrf_token,
        },
        "Login successful",
    )


@router.get("/verify-email/{token}", summary="Verify email address")
async def verify_email(
    session: Annotated[AsyncSession, Depends(get_db)],
    info: Annotated[RequestInfo, Depends(request_info)],
    token: str,
) -> dict:
    return ok(message=await auth_service.verify_email(session, token, info))


@router.post("/resend-verification", summary="Resend the verification email", dependencies=[auth_limit])
async def resend_verification(
    session: Annotated[AsyncSession, Depends(get_db)],
    info: Annotated[RequestInfo, Depends(request_info)],
    body: EmailBody,
) -> dict:
    return ok(message=await auth_service.resend_verification_email(session, body.email, info))


@router.post("/forgot-password", summary="Request a password reset email", dependencies=[auth_limit])
async def forgot_password(
    session: Annotated[AsyncSession, Depends(get_db)],
    info: Annotated[RequestInfo, Depends(request_info)],
    body: EmailBody,
) -> dict:
    return ok(message=await auth_service.forgot_password(session, body.email, info))


@router.post("/reset-password/{token}", summary="Set a new password with a reset token", dependencies=[auth_limit])
async def reset_password(
    session: Annotated[AsyncSession, Depends(get_db)],
    info: Annotated[RequestInfo, Depends(request_info)],
    token: str,
    body: ResetPasswordBody,
) -> dict:
    return ok(message=await auth_service.reset_password(session, token, body.password, info))


@router.get("/me", summary="Current user profile")
async def me(
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
) -> dict:
    return ok(await auth_service.get_profile(session, user.id))


@router.get("/csrf-token", summary="Issue a CSRF token for the current user")
async def csrf_token(
    session: Annotated[AsyncSession, Depends(get_db)],
    info: Annotated[RequestInfo, Depends(request_info)],
    response: Response,
    user: Annotated[User, Depends(get_current_user)],
) -> dict:
    token = await security_service.generate_csrf_token(session, user.id, info)
    set_csrf_token(response, token)
    return ok({"csrfToken": token}, "CSRF token generated")


@router.post(
    "/refresh-token",
    summary="Rotate the refresh token and issue a new access token",
    responses={401: {"description": "Refresh token invalid, expired, reused or revoked"}},
)
async def refresh_token(
    session: Annotated[AsyncSession, Depends(get_db)],
    info: Annotated[RequestInfo, Depends(request_info)],
    response: Response,
    body: RefreshBody,
) -> dict:
    result = await auth_service.refresh_tokens(session, body.refresh_token, info)
    csrf = await get_csrf_guard().issue_for_user(result["user"]["id"])
    set_csrf_token(response, csrf)
    return ok({**result, "csrfToken": csrf}, "Token refreshed successfully")


@router.post("/logout", summary="Revoke the refresh token and CSRF token")
async def logout(
    session: Annotated[AsyncSession, Depends(get_db)],
    info: Annotated[RequestInfo, Depends(request_info)],
    response: Response,
    user: Annotated[User, Depends(get_current_user)],
) -> dict:
    message = await auth_service.logout(session, user.id, info)
    await security_service.clear_csrf_token(session, user.id, info)
    _forget_csrf(response)
    return ok(message=message)


@router.post("/logout-all", summary="Revoke sessions on all devices")
async def logout_all(
    session: Annotated[AsyncSession, Depends(get_db)],
    info: Annotated[RequestInfo, Depends(request_info)],
    response: Response,
    user: Annotated[User, Depends(get_current_user)],
) -> dict:
    message = await auth_service.logout_all(session, user.id, info)
    await security_service.clear_csrf_token(session, user.id, info)
    _forget_csrf(response)
    return ok(message=message)


def _forget_csrf(response: Response) -> None:
    # drop the token issued earlier in this request
    if CSRF_HEADER in response.headers:
        del response.headers[CSRF_HEADER]
    response.delete_cookie(settings.csrf_cookie_name)
