"""Pytest configuration and shared fixtures for API tests."""

import os
import tempfile

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import delete, select

# Set test DB and settings before app imports so config/engine use them
_db_dir = tempfile.mkdtemp(prefix="ums-test-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_db_dir}/test.db")
os.environ.setdefault("JWT_SECRET", "test-access-secret")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("GLOBAL_RATE_LIMIT", "10000/minute")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("SMTP_HOST", "")

from ums.core import store as store_module
from ums.core.auth import hash_password
from ums.core.store import MemoryStore
from ums.db.base import Base
from ums.db.session import async_session_maker, engine, init_db
from ums.main import app
from ums.models.user import User, UserRole, UserStatus

PASSWORD = "Passw0rd!"


async def _clear_tables():
    """Delete all rows in reverse dependency order so tests start clean."""
    async with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(delete(table))


@pytest_asyncio.fixture
async def clean_db():
    """Create tables and empty them; dispose pooled connections afterwards (they belong to this test's loop)."""
    await init_db()
    await _clear_tables()
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def fresh_store():
    """Each test gets empty CSRF and rate-limit registries."""
    store_module._store = MemoryStore()
    yield store_module._store
    store_module._store = None


@pytest_asyncio.fixture
async def client(clean_db):
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


async def create_user(
    email: str = "user@test.com",
    password: str = PASSWORD,
    *,
    name: str = "Test User",
    role: UserRole = UserRole.CLIENT,
    status: UserStatus = UserStatus.ACTIVE,
    verified: bool = True,
) -> int:
    """Create a user directly in the DB (committed) and return its id."""
    async with async_session_maker() as session:
        user = User(
            name=name,
            email=email,
            password_hash=hash_password(password),
            role=role,
            status=status,
            email_verified=verified,
        )
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user.id


async def get_user(email: str) -> User:
    async with async_session_maker() as session:
        r = await session.execute(select(User).where(User.email == email))
        return r.scalar_one()


async def set_user_fields(user_id: int, **fields) -> None:
    async with async_session_maker() as session:
        user = await session.get(User, user_id)
        for name, value in fields.items():
            setattr(user, name, value)
        await session.commit()


async def login(client: AsyncClient, email: str = "user@test.com", password: str = PASSWORD) -> dict:
    """Log in and return {accessToken, refreshToken, csrfToken, user}; asserts success."""
    resp = await client.post("/api/v1/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def bearer(session: dict, csrf: str | None = None) -> dict:
    headers = {"Authorization": f"Bearer {session['accessToken']}"}
    if csrf is not None:
        headers["X-CSRF-Token"] = csrf
    return headers


@pytest_asyncio.fixture
async def test_user(clean_db):
    """A verified, active CLIENT user; returns (user_id, email)."""
    user_id = await create_user()
    return user_id, "user@test.com"


@pytest_asyncio.fixture
async def admin_user(clean_db):
    user_id = await create_user("admin@test.com", name="Admin", role=UserRole.ADMIN)
    return user_id, "admin@test.com"
