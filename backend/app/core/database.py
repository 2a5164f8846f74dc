"""Database connection and session management."""

from collections.abc import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

from app.core.config import get_settings
from app.core.immutability import install_violation_translator

settings = get_settings()


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with the append-only violation translator installed."""
    connect_args = {}
    if make_url(url).get_backend_name() == "sqlite":
        # Busy timeout; SQLite serializes writers database-wide
        connect_args["timeout"] = settings.audit_lock_timeout_seconds

    engine = create_async_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        connect_args=connect_args,
    )
    install_violation_translator(engine)

    if engine.dialect.name == "sqlite":
        # Readers must not block a standalone audit writer's commit
        @event.listens_for(engine.sync_engine, "connect")
        def _enable_wal(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    return engine


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to ``engine``."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.database_url, echo=settings.debug)
async_session_maker = build_session_maker(engine)

# Owner credential: archival and immutability overrides only
if settings.admin_database_url:
    admin_engine = build_engine(settings.admin_database_url, echo=settings.debug)
    admin_session_maker = build_session_maker(admin_engine)
else:
    admin_engine = engine
    admin_session_maker = async_session_maker


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get a request-scoped database session.

    Handlers commit explicitly; anything left uncommitted is rolled back.
    """
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Dependency returning the factory used for standalone audit writes."""
    return async_session_maker


def get_admin_session_factory() -> async_sessionmaker[AsyncSession]:
    """Dependency returning the owner-credential session factory."""
    return admin_session_maker


async def init_db() -> None:
    """Initialize database tables, sequences and append-only guards."""
    import app.models  # noqa: F401

    async with admin_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
