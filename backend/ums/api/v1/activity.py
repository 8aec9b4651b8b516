"""Activity log: the caller's own recent activity."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ums.api.deps import get_current_user
from ums.db.session import get_db
from ums.models.user import User
from ums.schemas.auth import ok
from ums.services.audit import list_user_activities, serialize_activity

router = APIRouter(prefix="/activity", tags=["activity"])


@router.get("/me", summary="Recent activity of the current user")
async def my_activity(
    session: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> dict:
    entries = await list_user_activities(session, user.id, limit=limit)
    return ok({"activities": [serialize_activity(e) for e in entries]})
