"""Audit log models for the tamper-evident audit trail."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, BigInteger, Column, Index, Integer, Sequence
from sqlmodel import Field, SQLModel

from app.core.clock import utc_now

# PostgreSQL allocates audit ids from this sequence before hashing; SQLite
# ignores it.
AUDIT_LOG_ID_SEQ = Sequence("audit_logs_id_seq")


class AuditAction(str, Enum):
    """Known audit actions. The set is open: any dotted lowercase name is accepted."""

    DOCUMENT_CREATE = "document.create"
    DOCUMENT_VIEW = "document.view"
    DOCUMENT_VIEW_DENIED = "document.view_denied"
    AUDIT_RECORDS_ARCHIVED = "audit.records_archived"


class AuditLog(SQLModel, table=True):
    """Append-only, hash-chained audit record.

    Records of one workspace form a chain ordered by ``id``: each
    ``previous_record_hash`` is the ``record_hash`` of the record before it.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_workspace_chain", "workspace_id", "id"),
        Index("ix_audit_logs_resource", "resource_id", "resource_type"),
        Index("ix_audit_logs_actor_created", "actor_user_id", "created_at"),
    )

    id: int | None = Field(
        default=None,
        sa_column=Column(
            BigInteger().with_variant(Integer, "sqlite"),
            AUDIT_LOG_ID_SEQ,
            primary_key=True,
            autoincrement=False,
        ),
    )
    workspace_id: int = Field(foreign_key="workspaces.id")
    actor_user_id: int | None = Field(default=None, foreign_key="users.id")
    action: str = Field(index=True)  # e.g., document.view, document.view_denied
    resource_type: str  # e.g., "document"
    resource_id: str
    details: dict[str, Any] = Field(
        default_factory=dict,
        # json, not jsonb: numbers must read back in the notation they were hashed in
        sa_column=Column("metadata", JSON, nullable=False),
    )
    created_at: datetime = Field(index=True)
    previous_record_hash: str = Field(max_length=64)
    record_hash: str = Field(max_length=64, index=True)


class AuditChainLock(SQLModel, table=True):
    """Per-workspace serialization row, locked for the duration of an append."""

    __tablename__ = "audit_chain_locks"

    workspace_id: int = Field(primary_key=True, foreign_key="workspaces.id")
    locked_at: datetime
    appends: int = Field(default=0)


class ArchiveCheckpoint(SQLModel, table=True):
    """Chain continuity marker left behind when a chain prefix is archived."""

    __tablename__ = "audit_archive_checkpoints"

    id: int | None = Field(default=None, primary_key=True)
    workspace_id: int = Field(foreign_key="workspaces.id", index=True)
    last_record_id: int
    last_record_hash: str = Field(max_length=64)
    last_record_created_at: datetime
    records_archived: int
    archive_location: str
    archive_checksum: str = Field(max_length=64)
    operator: str
    created_by: int | None = Field(default=None, foreign_key="users.id")
    archived_at: datetime = Field(default_factory=utc_now)


class VerificationCheckpoint(SQLModel, table=True):
    """A chain prefix that verified cleanly, recorded on request."""

    __tablename__ = "audit_verification_checkpoints"

    id: int | None = Field(default=None, primary_key=True)
    workspace_id: int = Field(foreign_key="workspaces.id", index=True)
    last_record_id: int
    last_record_hash: str = Field(max_length=64)
    records_verified: int
    verified_by: int | None = Field(default=None, foreign_key="users.id")
    verified_at: datetime = Field(default_factory=utc_now)


class ImmutabilityOverride(SQLModel, table=True):
    """Record of an administrative bypass of an append-only guard."""

    __tablename__ = "audit_overrides"

    id: int | None = Field(default=None, primary_key=True)
    table_name: str
    operation: str
    reason: str
    operator: str
    created_at: datetime = Field(default_factory=utc_now)
