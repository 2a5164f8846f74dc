"""Document model. Documents are the main source of audited events."""

from datetime import datetime
from enum import Enum

from sqlmodel import Field, SQLModel

from app.core.clock import utc_now


class DocumentVisibility(str, Enum):
    """Who may read a document inside its workspace."""

    WORKSPACE = "workspace"
    PRIVATE = "private"


class DocumentBase(SQLModel):
    """Base document fields."""

    title: str = Field(default="Untitled")
    visibility: DocumentVisibility = Field(default=DocumentVisibility.WORKSPACE)


class Document(DocumentBase, table=True):
    """Document database model."""

    __tablename__ = "documents"

    id: int | None = Field(default=None, primary_key=True)
    workspace_id: int = Field(foreign_key="workspaces.id", index=True)
    created_by: int = Field(foreign_key="users.id")
    created_at: datetime = Field(default_factory=utc_now)


class DocumentCreate(DocumentBase):
    """Schema for creating a document."""

    workspace_id: int


class DocumentRead(DocumentBase):
    """Schema for reading a document."""

    id: int
    workspace_id: int
    created_by: int
    created_at: datetime
