"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from app.core.config import get_settings
from app.core.database import get_session, get_session_factory
from app.core.exceptions import AuthorizationDenied
from app.core.security import decode_token
from app.models import User, WorkspaceMembership
from app.services.audit import AuditWriter

settings = get_settings()

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.api_prefix}/auth/login")

DbSession = Annotated[AsyncSession, Depends(get_session)]
SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)],
    session: DbSession,
) -> User:
    """Resolve the bearer token to an active user."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(token)
    if payload is None or payload.get("type") != "access":
        raise credentials_exception

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise credentials_exception

    user = await session.get(User, user_id)
    if user is None or not user.is_active:
        raise credentials_exception
    return user


CurrentUser = Annotated[User, Depends(get_current_user)]


async def get_investigator(current_user: CurrentUser) -> User:
    """Require the cross-workspace audit capability."""
    if not current_user.is_super_admin:
        raise AuthorizationDenied("Audit log access requires super-admin privileges")
    return current_user


InvestigatorUser = Annotated[User, Depends(get_investigator)]


def get_audit_writer(session_factory: SessionFactory) -> AuditWriter:
    """Standalone audit writer bound to the request's session factory."""
    return AuditWriter(session_factory)


AuditWriterDep = Annotated[AuditWriter, Depends(get_audit_writer)]


async def get_membership(session: AsyncSession, workspace_id: int, user_id: int) -> WorkspaceMembership | None:
    result = await session.execute(
        select(WorkspaceMembership).where(
            WorkspaceMembership.workspace_id == workspace_id,
            WorkspaceMembership.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()
