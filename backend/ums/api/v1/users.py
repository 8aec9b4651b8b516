"""User endpoints for the signed-in account."""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ums.api.deps import get_current_user, request_info, user_rate_limit
from ums.core.rate_limit import sensitive_policy
from ums.db.session import get_db
from ums.models.user import User
from ums.schemas.auth import ChangePasswordBody, ok
from ums.services import auth_service
from ums.services.audit import RequestInfo

router = APIRouter(prefix="/users", tags=["users"])


@router.put(
    "/change-password",
    summary="Change the current user's password",
    dependencies=[Depends(user_rate_limit(sensitive_policy))],
    responses={
        400: {"description": "Current password is incorrect or new password invalid"},
        401: {"description": "Not authenticated"},
    },
)
async def change_password(
    session: Annotated[AsyncSession, Depends(get_db)],
    info: Annotated[RequestInfo, Depends(request_info)],
    user: Annotated[User, Depends(get_current_user)],
    body: ChangePasswordBody,
) -> dict:
    """Changing the password also revokes the stored refresh token."""
    return ok(message=await auth_service.change_password(session, user, body, info))
