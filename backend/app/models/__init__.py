"""SQLModel database models."""

from sqlmodel import SQLModel

from app.core.immutability import install_append_only_guards
from app.models.user import User, UserRead
from app.models.workspace import Workspace, WorkspaceMembership, WorkspaceRole
from app.models.document import (
    Document,
    DocumentCreate,
    DocumentRead,
    DocumentVisibility,
)
from app.models.audit import (
    AUDIT_LOG_ID_SEQ,
    ArchiveCheckpoint,
    AuditAction,
    AuditChainLock,
    AuditLog,
    ImmutabilityOverride,
    VerificationCheckpoint,
)

install_append_only_guards(SQLModel.metadata)

__all__ = [
    # User
    "User",
    "UserRead",
    # Workspace
    "Workspace",
    "WorkspaceMembership",
    "WorkspaceRole",
    # Document
    "Document",
    "DocumentCreate",
    "DocumentRead",
    "DocumentVisibility",
    # Audit
    "AUDIT_LOG_ID_SEQ",
    "ArchiveCheckpoint",
    "AuditAction",
    "AuditChainLock",
    "AuditLog",
    "ImmutabilityOverride",
    "VerificationCheckpoint",
]
