import pytest
from typing import AsyncGenerator
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.database.engine import configure_sqlite, get_db, init_db
from app.features.permissions.models import GroupPermission, Permission, UserGroup, UserPermission
from app.features.permissions.resolver import PermissionResolver
from app.features.permissions.store import PermissionStore
from app.features.users.auth import create_access_token
from app.features.users.models import User
from app.main import app

# Test database URL
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def engine():
    """Fresh in-memory database per test."""
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite(test_engine)
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(db) -> PermissionStore:
    return PermissionStore(db)


@pytest.fixture
def resolver(store) -> PermissionResolver:
    return PermissionResolver(store)


@pytest.fixture
def make_permission(db):
    async def _make(module: str, action: str, description: str | None = None) -> Permission:
        permission = Permission(module=module, action=action, description=description)
        db.add(permission)
        await db.flush()
        await db.refresh(permission)
        await db.commit()
        return permission

    return _make


@pytest.fixture
def make_group(db):
    async def _make(name: str, grants: dict | None = None, is_active: bool = True) -> UserGroup:
        """``grants`` maps Permission to is_allowed."""
        group = UserGroup(name=name, is_active=is_active)
        db.add(group)
        await db.flush()
        for permission, is_allowed in (grants or {}).items():
            db.add(GroupPermission(group_id=group.id, permission_id=permission.id, is_allowed=is_allowed))
        await db.flush()
        await db.refresh(group)
        await db.commit()
        return group

    return _make


@pytest.fixture
def make_user(db):
    async def _make(
        username: str,
        group: UserGroup | None = None,
        overrides: dict | None = None,
        is_active: bool = True,
    ) -> User:
        """``overrides`` maps Permission to is_allowed."""
        user = User(
            email=f"{username}@grandhotel.com",
            username=username,
            full_name=username.title(),
            group_id=group.id if group else None,
            is_active=is_active,
        )
        db.add(user)
        await db.flush()
        for permission, is_allowed in (overrides or {}).items():
            db.add(UserPermission(user_id=user.id, permission_id=permission.id, is_allowed=is_allowed))
        await db.flush()
        await db.refresh(user)
        await db.commit()
        return user

    return _make


@pytest.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Test client whose requests use the per-test database."""
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}
