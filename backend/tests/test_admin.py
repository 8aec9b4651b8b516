"""Tests for admin endpoints: user updates, gated deletion, activity logs, security administration."""

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from conftest import bearer, create_user, get_user, login
from ums.core.errors import ErrorMessages
from ums.db.session import async_session_maker
from ums.models.activity_log import ActivityLog
from ums.models.user import User, UserRole, UserStatus


async def _admin_session(client: AsyncClient) -> dict:
    return await login(client, "admin@test.com")


@pytest.mark.asyncio
async def test_admin_changes_role_and_status(client: AsyncClient, admin_user, test_user):
    user_id, _ = test_user
    session = await _admin_session(client)
    resp = await client.patch(
        f"/api/v1/admin/users/{user_id}",
        headers=bearer(session, session["csrfToken"]),
        json={"role": "DEVELOPER", "status": "SUSPENDED"},
    )
    assert resp.status_code == 200, resp.text
    data = resp.json()["data"]
    assert data["role"] == "DEVELOPER"
    assert data["status"] == "SUSPENDED"


@pytest.mark.asyncio
async def test_disallowed_transition_is_rejected(client: AsyncClient, admin_user, clean_db):
    target = await create_user("suspended@test.com", status=UserStatus.SUSPENDED)
    session = await _admin_session(client)
    resp = await client.patch(
        f"/api/v1/admin/users/{target}",
        headers=bearer(session, session["csrfToken"]),
        json={"status": "ACTIVE"},
    )
    assert resp.status_code == 400
    assert (await get_user("suspended@test.com")).status == UserStatus.SUSPENDED


@pytest.mark.asyncio
async def test_admin_cannot_be_granted_through_update(client: AsyncClient, admin_user, test_user):
    user_id, _ = test_user
    session = await _admin_session(client)
    resp = await client.patch(
        f"/api/v1/admin/users/{user_id}",
        headers=bearer(session, session["csrfToken"]),
        json={"role": "ADMIN"},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_admin_cannot_change_own_role(client: AsyncClient, admin_user):
    admin_id, _ = admin_user
    session = await _admin_session(client)
    resp = await client.patch(
        f"/api/v1/admin/users/{admin_id}",
        headers=bearer(session, session["csrfToken"]),
        json={"role": "CLIENT"},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_update_unknown_user(client: AsyncClient, admin_user):
    session = await _admin_session(client)
    resp = await client.patch(
        "/api/v1/admin/users/9999",
        headers=bearer(session, session["csrfToken"]),
        json={"status": "INACTIVE"},
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_non_admin_is_forbidden(client: AsyncClient, test_user):
    user_id, _ = test_user
    session = await login(client)
    resp = await client.patch(
        f"/api/v1/admin/users/{user_id}",
        headers=bearer(session, session["csrfToken"]),
        json={"status": "INACTIVE"},
    )
    assert resp.status_code == 403
    assert resp.json()["message"] == ErrorMessages.ROLE_FORBIDDEN


@pytest.mark.asyncio
async def test_delete_requires_inactive_status(client: AsyncClient, admin_user, test_user):
    user_id, _ = test_user
    session = await _admin_session(client)
    resp = await client.delete(f"/api/v1/admin/users/{user_id}", headers=bearer(session, session["csrfToken"]))
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_delete_inactive_user_cascades_activity(client: AsyncClient, admin_user, clean_db):
    target = await create_user("gone@test.com", status=UserStatus.INACTIVE)
    async with async_session_maker() as s:
        s.add(ActivityLog(user_id=target, activity="User logged in"))
        await s.commit()

    session = await _admin_session(client)
    resp = await client.delete(f"/api/v1/admin/users/{target}", headers=bearer(session, session["csrfToken"]))
    assert resp.status_code == 200

    async with async_session_maker() as s:
        assert await s.get(User, target) is None
        r = await s.execute(select(func.count(ActivityLog.id)).where(ActivityLog.user_id == target))
        assert r.scalar_one() == 0


@pytest.mark.asyncio
async def test_delete_admin_is_forbidden(client: AsyncClient, admin_user, clean_db):
    other_admin = await create_user("admin2@test.com", role=UserRole.ADMIN, status=UserStatus.INACTIVE)
    session = await _admin_session(client)
    resp = await client.delete(f"/api/v1/admin/users/{other_admin}", headers=bearer(session, session["csrfToken"]))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_delete_unknown_user(client: AsyncClient, admin_user):
    session = await _admin_session(client)
    resp = await client.delete("/api/v1/admin/users/9999", headers=bearer(session, session["csrfToken"]))
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_activity_logs_visible_to_staff_only(client: AsyncClient, test_user):
    await create_user("mod@test.com", role=UserRole.MODERATOR)
    mod = await login(client, "mod@test.com")
    resp = await client.get("/api/v1/admin/activity-logs", headers=bearer(mod))
    assert resp.status_code == 200
    activities = [a["activity"] for a in resp.json()["data"]["activities"]]
    assert "User logged in" in activities

    client_session = await login(client)
    resp = await client.get("/api/v1/admin/activity-logs", headers=bearer(client_session))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_my_activity(client: AsyncClient, test_user):
    session = await login(client)
    resp = await client.get("/api/v1/activity/me", headers=bearer(session))
    assert resp.status_code == 200
    entries = resp.json()["data"]["activities"]
    assert [e["activity"] for e in entries] == ["User logged in"]
    assert entries[0]["userAgent"]


@pytest.mark.asyncio
async def test_rate_limit_administration(client: AsyncClient, admin_user, test_user):
    user_id, _ = test_user
    user_session = await login(client)
    await client.get("/api/v1/auth/me", headers=bearer(user_session))
    await client.get("/api/v1/auth/me", headers=bearer(user_session))

    session = await _admin_session(client)
    resp = await client.get(f"/api/v1/admin/security/rate-limits/{user_id}", headers=bearer(session))
    assert resp.status_code == 200
    assert resp.json()["data"]["status"]["count"] == 2

    resp = await client.get("/api/v1/admin/security/rate-limits", headers=bearer(session))
    csrf = resp.headers["X-CSRF-Token"]
    keys = {e["key"] for e in resp.json()["data"]["entries"]}
    assert str(user_id) in keys

    resp = await client.delete(f"/api/v1/admin/security/rate-limits/{user_id}", headers=bearer(session, csrf))
    assert resp.status_code == 200
    resp = await client.get(f"/api/v1/admin/security/rate-limits/{user_id}", headers=bearer(session))
    assert resp.json()["data"]["status"] is None


@pytest.mark.asyncio
async def test_security_audit(client: AsyncClient, admin_user, test_user):
    user_id, _ = test_user
    await login(client)
    session = await _admin_session(client)
    resp = await client.get(f"/api/v1/admin/security/audit/{user_id}", headers=bearer(session))
    assert resp.status_code == 200
    audit = resp.json()["data"]
    assert audit["riskLevel"] == "LOW"
    assert audit["hasCSRFToken"] is True
    assert [a["activity"] for a in audit["recentActivity"]] == ["User logged in"]
    assert audit["attack"]["isUnderAttack"] is False
