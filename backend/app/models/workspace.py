"""Workspace (tenant) and membership models."""

from datetime import datetime
from enum import Enum

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from app.core.clock import utc_now


class WorkspaceRole(str, Enum):
    """Roles a user can hold inside a workspace."""

    ADMIN = "admin"
    MEMBER = "member"


class Workspace(SQLModel, table=True):
    """Workspace database model. Each workspace owns one audit chain."""

    __tablename__ = "workspaces"

    id: int | None = Field(default=None, primary_key=True)
    name: str
    created_at: datetime = Field(default_factory=utc_now)


class WorkspaceMembership(SQLModel, table=True):
    """Membership of a user in a workspace."""

    __tablename__ = "workspace_memberships"
    __table_args__ = (UniqueConstraint("workspace_id", "user_id"),)

    id: int | None = Field(default=None, primary_key=True)
    workspace_id: int = Field(foreign_key="workspaces.id", index=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    role: WorkspaceRole = Field(default=WorkspaceRole.MEMBER)
    created_at: datetime = Field(default_factory=utc_now)
