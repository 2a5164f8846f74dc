"""Pytest configuration and fixtures."""

from typing import AsyncGenerator

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel

from app.main import app
from app.core.database import (
    build_engine,
    build_session_maker,
    get_admin_session_factory,
    get_session,
    get_session_factory,
)
from app.core.rate_limit import limiter
from app.core.security import create_access_token, get_password_hash
from app.models import User, Workspace, WorkspaceMembership, WorkspaceRole
from app.schemas.audit import AuditEvent


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create a file-backed SQLite engine with the full schema."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine):
    """Session factory bound to the test engine."""
    return build_session_maker(test_engine)


@pytest_asyncio.fixture(scope="function")
async def test_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with overridden dependencies."""

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_admin_session_factory] = lambda: session_factory
    limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def create_user(
    session: AsyncSession,
    email: str,
    name: str,
    password: str = "password123",
    is_super_admin: bool = False,
) -> User:
    user = User(
        email=email,
        name=name,
        hashed_password=get_password_hash(password),
        is_super_admin=is_super_admin,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


async def add_member(
    session: AsyncSession,
    workspace: Workspace,
    user: User,
    role: WorkspaceRole = WorkspaceRole.MEMBER,
) -> WorkspaceMembership:
    membership = WorkspaceMembership(workspace_id=workspace.id, user_id=user.id, role=role)
    session.add(membership)
    await session.commit()
    return membership


@pytest_asyncio.fixture(scope="function")
async def workspace_a(test_session) -> Workspace:
    workspace = Workspace(name="Engineering")
    test_session.add(workspace)
    await test_session.commit()
    await test_session.refresh(workspace)
    return workspace


@pytest_asyncio.fixture(scope="function")
async def workspace_b(test_session) -> Workspace:
    workspace = Workspace(name="Finance")
    test_session.add(workspace)
    await test_session.commit()
    await test_session.refresh(workspace)
    return workspace


@pytest_asyncio.fixture(scope="function")
async def alice(test_session, workspace_a) -> User:
    """Admin of workspace A."""
    user = await create_user(test_session, "alice@example.com", "Alice Admin")
    await add_member(test_session, workspace_a, user, WorkspaceRole.ADMIN)
    return user


@pytest_asyncio.fixture(scope="function")
async def bob(test_session, workspace_a) -> User:
    """Member of workspace A."""
    user = await create_user(test_session, "bob@example.com", "Bob Member")
    await add_member(test_session, workspace_a, user)
    return user


@pytest_asyncio.fixture(scope="function")
async def carol(test_session, workspace_b) -> User:
    """Member of workspace B only."""
    user = await create_user(test_session, "carol@example.com", "Carol Outsider")
    await add_member(test_session, workspace_b, user)
    return user


@pytest_asyncio.fixture(scope="function")
async def dana(test_session) -> User:
    """Super admin (investigator), member of no workspace."""
    return await create_user(test_session, "dana@example.com", "Dana Investigator", is_super_admin=True)


@pytest_asyncio.fixture(scope="function")
async def alice_token(alice) -> str:
    return create_access_token(subject=alice.id)


@pytest_asyncio.fixture(scope="function")
async def bob_token(bob) -> str:
    return create_access_token(subject=bob.id)


@pytest_asyncio.fixture(scope="function")
async def carol_token(carol) -> str:
    return create_access_token(subject=carol.id)


@pytest_asyncio.fixture(scope="function")
async def dana_token(dana) -> str:
    return create_access_token(subject=dana.id)


def auth_headers(token: str) -> dict:
    """Create authorization headers."""
    return {"Authorization": f"Bearer {token}"}


def make_event(workspace_id: int, **overrides) -> AuditEvent:
    """Build a document.view event with sensible defaults."""
    values = {
        "workspace_id": workspace_id,
        "actor_user_id": None,
        "action": "document.view",
        "resource_type": "document",
        "resource_id": "1",
        "metadata": {},
    }
    values.update(overrides)
    return AuditEvent(**values)
