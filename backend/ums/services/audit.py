from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ums.db.session import async_session_maker
from ums.models.activity_log import ActivityLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestInfo:
    ip: str | None = None
    user_agent: str | None = None


async def log_activity(
    session: AsyncSession,
    user_id: int,
    activity: str,
    details: dict | None = None,
    info: RequestInfo | None = None,
) -> None:
    """Append an activity row in the caller's transaction."""
    info = info or RequestInfo()
    session.add(
        ActivityLog(
            user_id=user_id,
            activity=activity,
            details=details,
            ip_address=info.ip,
            user_agent=info.user_agent or "Unknown",
        )
    )
    await session.flush()


async def log_activity_detached(
    user_id: int,
    activity: str,
    details: dict | None = None,
    info: RequestInfo | None = None,
) -> None:
    """
    Append an activity row in its own transaction, for events recorded on a request that is
    about to fail (the request session is rolled back). Errors are logged, not raised.
    """
    try:
        async with async_session_maker() as session:
            await log_activity(session, user_id, activity, details, info)
            await session.commit()
    except Exception:
        logger.exception("Failed to record activity %r for user_id=%s", activity, user_id)


async def list_user_activities(session: AsyncSession, user_id: int, limit: int = 50) -> list[ActivityLog]:
    r = await session.execute(
        select(ActivityLog)
        .where(ActivityLog.user_id == user_id)
        .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
        .limit(limit)
    )
    return list(r.scalars().all())


async def list_activities(session: AsyncSession, limit: int = 100) -> list[ActivityLog]:
    r = await session.execute(
        select(ActivityLog).order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit)
    )
    return list(r.scalars().all())


async def list_recent_activities(
    session: AsyncSession, user_id: int, since: timedelta, limit: int = 50
) -> list[ActivityLog]:
    cutoff = datetime.now(timezone.utc) - since
    r = await session.execute(
        select(ActivityLog)
        .where(ActivityLog.user_id == user_id, ActivityLog.created_at >= cutoff)
        .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
        .limit(limit)
    )
    return list(r.scalars().all())


async def count_activities_matching(
    session: AsyncSession, user_id: int, contains: str, since: timedelta
) -> tuple[int, datetime | None]:
    """Number of activities whose label contains the text within `since`, and the latest such timestamp overall."""
    cutoff = datetime.now(timezone.utc) - since
    pattern = f"%{contains.lower()}%"
    r_count = await session.execute(
        select(func.count(ActivityLog.id)).where(
            ActivityLog.user_id == user_id,
            func.lower(ActivityLog.activity).like(pattern),
            ActivityLog.created_at >= cutoff,
        )
    )
    r_last = await session.execute(
        select(func.max(ActivityLog.created_at)).where(
            ActivityLog.user_id == user_id,
            func.lower(ActivityLog.activity).like(pattern),
        )
    )
    return int(r_count.scalar_one()), r_last.scalar_one_or_none()


def serialize_activity(entry: ActivityLog) -> dict:
    return {
        "id": entry.id,
        "userId": entry.user_id,
        "activity": entry.activity,
        "details": entry.details,
        "ipAddress": entry.ip_address,
        "userAgent": entry.user_agent,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }
