"""
Session and account lifecycle: registration, login, email verification, password reset,
refresh-token rotation and logout.

Every function takes the request's AsyncSession (committed by the get_db dependency) and the
caller's RequestInfo for the audit trail. Email sending is best-effort: failures are logged and
never fail the operation.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ums.config import settings
from ums.core.auth import (
    TokenExpiredError,
    TokenInvalidError,
    generate_opaque_token,
    hash_password,
    hash_token,
    issue_access_token,
    issue_refresh_token,
    verify_password,
    verify_token,
)
from ums.core.errors import (
    AuthenticationError,
    ConflictError,
    ErrorMessages,
    NotFoundError,
    ValidationError,
)
from ums.core.metrics import AUTH_EVENTS
from ums.models.user import User, UserStatus
from ums.schemas.auth import ChangePasswordBody, RegisterBody, UserPublic
from ums.services.audit import RequestInfo, log_activity, log_activity_detached
from ums.services.email import get_email_service, redact_email

logger = logging.getLogger(__name__)

RESET_INSTRUCTIONS_SENT = "Password reset instructions sent to your email"
VERIFICATION_SENT = "Verification email sent successfully. Please check your inbox."


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _refresh_slot_expiry() -> datetime:
    return _now() + timedelta(days=settings.refresh_token_expire_days)


def _issue_pair(user_id: int, email: str, role: str) -> tuple[str, str]:
    return issue_access_token(user_id, email, role), issue_refresh_token(user_id, email, role)


async def _send_best_effort(action: str, user: User, sending: Awaitable[bool]) -> None:
    try:
        sent = await sending
    except Exception:
        logger.exception("%s: error sending email user_id=%s", action, user.id)
        return
    if sent:
        logger.info("%s: email sent user_id=%s to=%s", action, user.id, redact_email(user.email))
    else:
        logger.error("%s: email failed user_id=%s to=%s", action, user.id, redact_email(user.email))


async def find_by_email(session: AsyncSession, email: str) -> User | None:
    r = await session.execute(select(User).where(User.email == email.strip().lower()))
    return r.scalar_one_or_none()


async def register(session: AsyncSession, body: RegisterBody, info: RequestInfo) -> UserPublic:
    if await find_by_email(session, body.email) is not None:
        raise ConflictError(ErrorMessages.USER_EXISTS)

    verification_token = generate_opaque_token()
    user = User(
        name=body.name.strip(),
        email=body.email,
        password_hash=hash_password(body.password),
        phone=(body.phone or "").strip() or None,
        email_verification_token=verification_token,
    )
    try:
        session.add(user)
        await session.flush()
        await session.refresh(user)
    except IntegrityError as e:
        # lost a race with a concurrent registration of the same email
        logger.warning("Register IntegrityError: %s", e)
        raise ConflictError(ErrorMessages.USER_EXISTS) from e

    await log_activity(session, user.id, "User registered", {"email": user.email}, info)
    logger.info("User registered user_id=%s email=%s", user.id, redact_email(user.email))
    AUTH_EVENTS.labels(event="register", outcome="success").inc()

    await _send_best_effort(
        "Verification email",
        user,
        get_email_service().send_email_verification(user.email, user.name, verification_token),
    )
    return UserPublic.from_user(user)


async def login(session: AsyncSession, email: str, password: str, info: RequestInfo) -> dict:
    """Check credentials, account status and verification; issue and persist a new token pair."""
    uniform = settings.uniform_auth_responses
    user = await find_by_email(session, email)
    if user is None:
        AUTH_EVENTS.labels(event="login", outcome="no_account").inc()
        raise AuthenticationError(ErrorMessages.INVALID_CREDENTIALS if uniform else ErrorMessages.NO_ACCOUNT)

    if not verify_password(password, user.password_hash):
        AUTH_EVENTS.labels(event="login", outcome="bad_password").inc()
        await log_activity_detached(user.id, "Login failed", {"reason": "bad_password"}, info)
        raise AuthenticationError(ErrorMessages.INVALID_CREDENTIALS if uniform else ErrorMessages.WRONG_PASSWORD)

    if user.status != UserStatus.ACTIVE:
        AUTH_EVENTS.labels(event="login", outcome="not_active").inc()
        await log_activity_detached(user.id, "Login failed", {"reason": f"status_{user.status.value}"}, info)
        if user.status == UserStatus.INACTIVE:
            raise AuthenticationError(ErrorMessages.USER_INACTIVE)
        if user.status == UserStatus.SUSPENDED:
            raise AuthenticationError(ErrorMessages.USER_SUSPENDED)
        raise AuthenticationError(ErrorMessages.USER_NOT_ACTIVE)

    if not user.email_verified:
        AUTH_EVENTS.labels(event="login", outcome="unverified").inc()
        raise AuthenticationError(ErrorMessages.EMAIL_NOT_VERIFIED)

    access_token, refresh_token = _issue_pair(user.id, user.email, user.role.value)
    # replaces whatever refresh token the user had before
    user.refresh_token_hash = hash_token(refresh_token)
    user.refresh_token_expires = _refresh_slot_expiry()
    await log_activity(session, user.id, "User logged in", {"email": user.email}, info)
    await session.refresh(user)
    logger.info("User logged in user_id=%s", user.id)
    AUTH_EVENTS.labels(event="login", outcome="success").inc()
    return {
        "user": UserPublic.from_user(user),
        "accessToken": access_token,
        "refreshToken": refresh_token,
    }


async def verify_email(session: AsyncSession, token: str, info: RequestInfo) -> str:
    r = await session.execute(select(User).where(User.email_verification_token == token))
    user = r.scalar_one_or_none()
    if not token or user is None:
        raise ValidationError(
            ErrorMessages.TOKEN_INVALID,
            {"token": ["Email verification token is invalid or has expired"]},
        )
    user.email_verified = True
    user.email_verification_token = None
    await log_activity(session, user.id, "Email verified", {"email": user.email}, info)
    logger.info("Email verified user_id=%s", user.id)
    AUTH_EVENTS.labels(event="verify_email", outcome="success").inc()

    await _send_best_effort("Welcome email", user, get_email_service().send_welcome_email(user.email, user.name))
    return "Email verified successfully. You can now log in to your account."


async def resend_verification_email(session: AsyncSession, email: str, info: RequestInfo) -> str:
    user = await find_by_email(session, email)
    if user is None:
        if settings.uniform_auth_responses:
            return VERIFICATION_SENT
        raise NotFoundError(ErrorMessages.USER_NOT_FOUND)
    if user.email_verified:
        raise ValidationError(
            ErrorMessages.EMAIL_ALREADY_VERIFIED,
            {"email": [ErrorMessages.EMAIL_ALREADY_VERIFIED]},
        )

    verification_token = generate_opaque_token()
    user.email_verification_token = verification_token
    await _send_best_effort(
        "Verification email resend",
        user,
        get_email_service().send_email_verification(user.email, user.name, verification_token),
    )
    await log_activity(session, user.id, "Verification email resent", {"email": user.email}, info)
    return VERIFICATION_SENT


async def forgot_password(session: AsyncSession, email: str, info: RequestInfo) -> str:
    user = await find_by_email(session, email)
    if user is None:
        if settings.uniform_auth_responses:
            return RESET_INSTRUCTIONS_SENT
        raise NotFoundError(ErrorMessages.USER_NOT_FOUND)

    reset_token = generate_opaque_token()
    user.password_reset_token = reset_token
    user.password_reset_expires = _now() + timedelta(minutes=settings.password_reset_expire_minutes)
    await _send_best_effort(
        "Password reset email",
        user,
        get_email_service().send_password_reset(user.email, user.name, reset_token),
    )
    await log_activity(session, user.id, "Password reset requested", {"email": user.email}, info)
    logger.info("Password reset requested user_id=%s", user.id)
    return RESET_INSTRUCTIONS_SENT


async def reset_password(session: AsyncSession, token: str, new_password: str, info: RequestInfo) -> str:
    # expiry compared in SQL so stored timestamps never meet Python-side timezone handling
    r = await session.execute(
        select(User).where(
            User.password_reset_token == token,
            User.password_reset_expires > _now(),
        )
    )
    user = r.scalar_one_or_none()
    if not token or user is None:
        raise ValidationError(
            ErrorMessages.PASSWORD_RESET_INVALID,
            {"token": ["Reset token is invalid or has expired"]},
        )
    user.password_hash = hash_password(new_password)
    user.password_reset_token = None
    user.password_reset_expires = None
    await log_activity(session, user.id, "Password reset completed", {"email": user.email}, info)
    logger.info("Password reset completed user_id=%s", user.id)
    AUTH_EVENTS.labels(event="reset_password", outcome="success").inc()
    return "Password has been reset successfully"


async def refresh_tokens(session: AsyncSession, refresh_token: str, info: RequestInfo) -> dict:
    """
    Exchange a refresh token for a new pair (rotation).

    The stored slot is swapped with a single conditional UPDATE that only matches while the slot
    still holds the presented token, is unexpired and the account is active. Of two concurrent
    calls with the same token exactly one matches; the other gets AuthenticationError.
    """
    try:
        claims = verify_token(refresh_token, "refresh")
    except TokenExpiredError as e:
        AUTH_EVENTS.labels(event="refresh", outcome="expired").inc()
        raise AuthenticationError(ErrorMessages.TOKEN_EXPIRED) from e
    except TokenInvalidError as e:
        AUTH_EVENTS.labels(event="refresh", outcome="invalid").inc()
        raise AuthenticationError(ErrorMessages.REFRESH_TOKEN_INVALID) from e

    # sign first; the slot swap below is the commit point of the rotation
    access_token, new_refresh_token = _issue_pair(claims.user_id, claims.email, claims.role)
    now = _now()
    result = await session.execute(
        update(User)
        .where(
            User.id == claims.user_id,
            User.refresh_token_hash == hash_token(refresh_token),
            User.refresh_token_expires > now,
            User.status == UserStatus.ACTIVE,
        )
        .values(
            refresh_token_hash=hash_token(new_refresh_token),
            refresh_token_expires=now + timedelta(days=settings.refresh_token_expire_days),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        AUTH_EVENTS.labels(event="refresh", outcome="rejected").inc()
        logger.warning("Refresh token rejected user_id=%s", claims.user_id)
        raise AuthenticationError(ErrorMessages.REFRESH_TOKEN_INVALID)

    user = await session.get(User, claims.user_id, populate_existing=True)
    if user.email != claims.email or user.role.value != claims.role:
        # identity changed since the old token was signed; we already own the slot, re-sign with fresh claims
        access_token, new_refresh_token = _issue_pair(user.id, user.email, user.role.value)
        user.refresh_token_hash = hash_token(new_refresh_token)

    await log_activity(session, user.id, "Token refreshed", {"email": user.email}, info)
    logger.info("Token refreshed user_id=%s", user.id)
    AUTH_EVENTS.labels(event="refresh", outcome="success").inc()
    return {
        "accessToken": access_token,
        "refreshToken": new_refresh_token,
        "user": {"id": user.id, "name": user.name, "email": user.email, "role": user.role.value},
    }


async def _clear_refresh_slot(session: AsyncSession, user_id: int) -> None:
    await session.execute(
        update(User)
        .where(User.id == user_id)
        .values(refresh_token_hash=None, refresh_token_expires=None)
        .execution_options(synchronize_session=False)
    )


async def logout(session: AsyncSession, user_id: int, info: RequestInfo) -> str:
    """Revoke the stored refresh token. Issued access tokens stay valid until they expire."""
    await _clear_refresh_slot(session, user_id)
    await log_activity(session, user_id, "User logged out", {"userId": user_id}, info)
    logger.info("User logged out user_id=%s", user_id)
    AUTH_EVENTS.labels(event="logout", outcome="success").inc()
    return "Logged out successfully"


async def logout_all(session: AsyncSession, user_id: int, info: RequestInfo) -> str:
    # one refresh slot per user, so this revokes the same state as logout()
    await _clear_refresh_slot(session, user_id)
    await log_activity(session, user_id, "User logged out from all devices", {"userId": user_id}, info)
    logger.info("User logged out from all devices user_id=%s", user_id)
    AUTH_EVENTS.labels(event="logout_all", outcome="success").inc()
    return "Logged out from all devices successfully"


async def change_password(session: AsyncSession, user: User, body: ChangePasswordBody, info: RequestInfo) -> str:
    if not verify_password(body.current_password, user.password_hash):
        raise ValidationError(
            ErrorMessages.PASSWORD_MISMATCH,
            {"currentPassword": [ErrorMessages.PASSWORD_MISMATCH]},
        )
    user.password_hash = hash_password(body.new_password)
    # sessions established with the old password must log in again
    user.refresh_token_hash = None
    user.refresh_token_expires = None
    await log_activity(session, user.id, "Password changed", None, info)
    logger.info("Password changed user_id=%s", user.id)
    return "Password changed successfully"


async def get_profile(session: AsyncSession, user_id: int) -> UserPublic:
    user = await session.get(User, user_id)
    if user is None:
        raise NotFoundError(ErrorMessages.USER_NOT_FOUND)
    return UserPublic.from_user(user)
