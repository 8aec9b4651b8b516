"""Admin: user management, activity logs and security administration."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ums.api.deps import request_info, require_roles, user_rate_limit
from ums.core.errors import NotFoundError
from ums.core.rate_limit import admin_policy
from ums.db.session import get_db
from ums.models.user import User, UserRole
from ums.schemas.auth import AdminUserUpdateBody, ok
from ums.services import admin_service, security_service
from ums.services.audit import RequestInfo, list_activities, serialize_activity

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(user_rate_limit(admin_policy))],
)

require_admin = require_roles(UserRole.ADMIN)
require_staff = require_roles(UserRole.ADMIN, UserRole.DEVELOPER, UserRole.MODERATOR)


@router.get("/activity-logs", summary="Recent activity across all users")
async def activity_logs(
    session: Annotated[AsyncSession, Depends(get_db)],
    _user: Annotated[User, Depends(require_staff)],
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> dict:
    entries = await list_activities(session, limit=limit)
    return ok({"activities": [serialize_activity(e) for e in entries]})


@router.patch(
    "/users/{user_id}",
    summary="Change a user's role or status",
    responses={400: {"description": "Transition not allowed"}, 404: {"description": "User not found"}},
)
async def update_user(
    session: Annotated[AsyncSession, Depends(get_db)],
    info: Annotated[RequestInfo, Depends(request_info)],
    admin: Annotated[User, Depends(require_admin)],
    user_id: int,
    body: AdminUserUpdateBody,
) -> dict:
    user = await admin_service.update_user(session, admin, user_id, body.role, body.status, info)
    return ok(user, "User updated successfully")


@router.delete(
    "/users/{user_id}",
    summary="Delete an inactive user",
    responses={
        400: {"description": "User is active or is the caller"},
        403: {"description": "Target is an admin"},
        404: {"description": "User not found"},
    },
)
async def delete_user(
    session: Annotated[AsyncSession, Depends(get_db)],
    info: Annotated[RequestInfo, Depends(request_info)],
    admin: Annotated[User, Depends(require_admin)],
    user_id: int,
) -> dict:
    await admin_service.delete_user(session, admin, user_id, info)
    return ok(message="User deleted successfully")


@router.get("/security/rate-limits", summary="All live rate-limit counters")
async def rate_limit_entries(_admin: Annotated[User, Depends(require_admin)]) -> dict:
    return ok({"entries": await security_service.get_all_rate_limit_entries()})


@router.get("/security/rate-limits/{user_id}", summary="Rate-limit counter for one user")
async def rate_limit_status(
    _admin: Annotated[User, Depends(require_admin)],
    user_id: int,
) -> dict:
    return ok({"userId": user_id, "status": await security_service.get_user_rate_limit_status(user_id)})


@router.delete("/security/rate-limits/{user_id}", summary="Reset a user's rate-limit counter")
async def reset_rate_limit(
    session: Annotated[AsyncSession, Depends(get_db)],
    info: Annotated[RequestInfo, Depends(request_info)],
    admin: Annotated[User, Depends(require_admin)],
    user_id: int,
) -> dict:
    if not await security_service.reset_user_rate_limit(session, user_id, admin.id, info):
        raise NotFoundError("No rate limit entry for this user")
    return ok(message="Rate limit reset successfully")


@router.get("/security/audit/{user_id}", summary="Security audit for one user")
async def security_audit(
    session: Annotated[AsyncSession, Depends(get_db)],
    _admin: Annotated[User, Depends(require_admin)],
    user_id: int,
) -> dict:
    if await session.get(User, user_id) is None:
        raise NotFoundError("User not found")
    audit = await security_service.perform_security_audit(session, user_id)
    audit["attack"] = await security_service.check_for_attack(session, user_id)
    if audit["attack"]["isUnderAttack"]:
        await security_service.log_security_event(
            session,
            user_id,
            "Possible brute-force attack",
            {"failedAttempts": audit["attack"]["failedAttempts"]},
            RequestInfo(),
            severity="HIGH",
        )
    return ok(audit)
