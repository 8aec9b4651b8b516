"""Security administration over the CSRF and rate-limit registries and the activity log."""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from ums.core.csrf import get_csrf_guard
from ums.core.rate_limit import get_rate_limiter
from ums.services.audit import (
    RequestInfo,
    count_activities_matching,
    list_recent_activities,
    log_activity,
    serialize_activity,
)

logger = logging.getLogger(__name__)

HIGH_RISK_COUNT = 800
MEDIUM_RISK_COUNT = 500
MEDIUM_RISK_ACTIVITIES = 100
ATTACK_THRESHOLD = 10


async def generate_csrf_token(session: AsyncSession, user_id: int, info: RequestInfo) -> str:
    token = await get_csrf_guard().issue_for_user(user_id)
    await log_activity(session, user_id, "CSRF token generated", {"userId": user_id}, info)
    return token


async def clear_csrf_token(session: AsyncSession, user_id: int, info: RequestInfo) -> None:
    await get_csrf_guard().clear_for_user(user_id)
    await log_activity(session, user_id, "CSRF token cleared", {"userId": user_id}, info)


async def get_user_rate_limit_status(user_id: int) -> dict | None:
    return await get_rate_limiter().status(str(user_id))


async def reset_user_rate_limit(session: AsyncSession, user_id: int, admin_id: int, info: RequestInfo) -> bool:
    removed = await get_rate_limiter().reset(str(user_id))
    if removed:
        await log_activity(
            session,
            admin_id,
            "Rate limit reset",
            {"targetUserId": user_id, "resetBy": admin_id},
            info,
        )
        logger.info("Rate limit reset user_id=%s by admin_id=%s", user_id, admin_id)
    return removed


async def get_all_rate_limit_entries() -> list[dict]:
    return await get_rate_limiter().entries()


async def perform_security_audit(session: AsyncSession, user_id: int) -> dict:
    rate_limit_status = await get_user_rate_limit_status(user_id)
    has_csrf_token = await get_csrf_guard().get_token_hash(user_id) is not None
    recent = await list_recent_activities(session, user_id, timedelta(hours=24), limit=50)
    # the listing is capped; count the whole day separately
    activity_count, _ = await count_activities_matching(session, user_id, "", timedelta(hours=24))

    risk_level = "LOW"
    count = rate_limit_status["count"] if rate_limit_status else 0
    if count > HIGH_RISK_COUNT:
        risk_level = "HIGH"
    elif count > MEDIUM_RISK_COUNT or activity_count > MEDIUM_RISK_ACTIVITIES:
        risk_level = "MEDIUM"

    return {
        "rateLimitStatus": rate_limit_status,
        "hasCSRFToken": has_csrf_token,
        "recentActivity": [serialize_activity(a) for a in recent],
        "riskLevel": risk_level,
    }


async def log_security_event(
    session: AsyncSession,
    user_id: int,
    event: str,
    details: dict | None,
    info: RequestInfo,
    severity: str = "MEDIUM",
) -> None:
    """Record a security event in the activity log. Failures are logged, not raised."""
    try:
        await log_activity(
            session,
            user_id,
            f"Security Event: {event}",
            {**(details or {}), "severity": severity},
            info,
        )
    except Exception:
        logger.exception("Failed to record security event %r for user_id=%s", event, user_id)
    if severity in ("HIGH", "CRITICAL"):
        logger.warning("Security event severity=%s user_id=%s event=%s", severity, user_id, event)


async def check_for_attack(session: AsyncSession, user_id: int) -> dict:
    """Failed activities for user_id in the last hour; more than ATTACK_THRESHOLD flags an attack."""
    failed, last_failed = await count_activities_matching(session, user_id, "failed", timedelta(hours=1))
    return {
        "isUnderAttack": failed > ATTACK_THRESHOLD,
        "failedAttempts": failed,
        "lastFailedAttempt": last_failed.isoformat() if last_failed else None,
    }
