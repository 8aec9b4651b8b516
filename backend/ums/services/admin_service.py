"""Administrative user changes: role/status transitions and gated deletion."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ums.core.errors import AuthorizationError, NotFoundError, ValidationError
from ums.core.transitions import allowed_role_transition, allowed_status_transition
from ums.models.user import User, UserRole, UserStatus
from ums.schemas.auth import UserPublic
from ums.services.audit import RequestInfo, log_activity

logger = logging.getLogger(__name__)


async def _get_target(session: AsyncSession, user_id: int) -> User:
    user = await session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


async def update_user(
    session: AsyncSession,
    admin: User,
    user_id: int,
    role: UserRole | None,
    status: UserStatus | None,
    info: RequestInfo,
) -> UserPublic:
    user = await _get_target(session, user_id)
    changes: dict[str, dict[str, str]] = {}

    if role is not None and role != user.role:
        if user.id == admin.id:
            raise ValidationError("You cannot change your own role", {"role": ["Cannot change own role"]})
        if not allowed_role_transition(user.role, role):
            raise ValidationError(
                f"Role change from {user.role.value} to {role.value} is not allowed",
                {"role": ["Transition not allowed"]},
            )
        changes["role"] = {"from": user.role.value, "to": role.value}
        user.role = role

    if status is not None and status != user.status:
        if not allowed_status_transition(user.status, status):
            raise ValidationError(
                f"Status change from {user.status.value} to {status.value} is not allowed",
                {"status": ["Transition not allowed"]},
            )
        changes["status"] = {"from": user.status.value, "to": status.value}
        user.status = status
        if status != UserStatus.ACTIVE:
            # a deactivated account must not be able to refresh its session
            user.refresh_token_hash = None
            user.refresh_token_expires = None

    if changes:
        await log_activity(
            session,
            admin.id,
            "User updated by admin",
            {"targetUserId": user.id, "changes": changes},
            info,
        )
        await session.refresh(user)
        logger.info("User updated by admin user_id=%s admin_id=%s changes=%s", user.id, admin.id, changes)
    return UserPublic.from_user(user)


async def delete_user(session: AsyncSession, admin: User, user_id: int, info: RequestInfo) -> None:
    """Hard-delete an INACTIVE non-admin user other than the caller. Their activity logs cascade."""
    user = await _get_target(session, user_id)
    if user.role == UserRole.ADMIN:
        raise AuthorizationError("Admin users cannot be deleted")
    if user.id == admin.id:
        raise ValidationError("You cannot delete your own account", {"userId": ["Cannot delete self"]})
    if user.status != UserStatus.INACTIVE:
        raise ValidationError(
            "Only inactive users can be deleted",
            {"status": ["User must be INACTIVE before deletion"]},
        )

    email = user.email
    await session.delete(user)
    await session.flush()
    await log_activity(
        session,
        admin.id,
        "User deleted by admin",
        {"targetUserId": user_id, "email": email},
        info,
    )
    logger.info("User deleted by admin user_id=%s admin_id=%s", user_id, admin.id)
