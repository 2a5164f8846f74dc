"""Audit log request/response schemas."""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_serializer, field_validator

from app.services.audit_hash import canonical_json, format_timestamp

ACTION_PATTERN = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)+$")

ChainOrigin = Literal["genesis", "archive_checkpoint", "verification_checkpoint"]
DivergenceReason = Literal["previous_hash_mismatch", "record_hash_mismatch", "checkpoint_mismatch"]


class AuditEvent(BaseModel):
    """An event to be appended to a workspace chain."""

    workspace_id: int
    actor_user_id: int | None = None
    action: str
    resource_type: str = Field(min_length=1)
    resource_id: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("action", mode="before")
    @classmethod
    def action_value(cls, value: Any) -> Any:
        if isinstance(value, Enum):
            value = value.value
        if isinstance(value, str) and not ACTION_PATTERN.match(value):
            raise ValueError(f"'{value}' is not a dotted lowercase action name")
        return value

    @field_validator("resource_id", mode="before")
    @classmethod
    def resource_id_text(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("metadata", mode="before")
    @classmethod
    def metadata_default(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("metadata")
    @classmethod
    def metadata_serializable(cls, value: dict[str, Any]) -> dict[str, Any]:
        try:
            canonical_json(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"metadata is not JSON-serializable: {exc}") from exc
        return value


class AuditLogRead(BaseModel):
    """An audit record joined with actor and workspace identity."""

    id: int
    workspace_id: int
    workspace_name: str | None = None
    actor_user_id: int | None = None
    actor_email: str | None = None
    actor_name: str | None = None
    action: str
    resource_type: str
    resource_id: str
    metadata: dict[str, Any]
    created_at: datetime
    record_hash: str
    previous_record_hash: str

    @field_serializer("created_at")
    def serialize_created_at(self, value: datetime) -> str:
        return format_timestamp(value)


class AuditLogPage(BaseModel):
    """One page of audit search results."""

    logs: list[AuditLogRead]
    next_cursor: int | None = None


class VerificationResult(BaseModel):
    """Outcome of walking one workspace chain."""

    workspace_id: int
    valid: bool
    records_checked: int
    chain_origin: ChainOrigin = "genesis"
    first_invalid_record_id: int | None = None
    reason: DivergenceReason | None = None
    last_record_id: int | None = None
    last_record_hash: str | None = None
    resumed_from_record_id: int | None = None


class VerifyRequest(BaseModel):
    """Chain verification request."""

    workspace_id: int
    limit: int | None = Field(default=None, ge=1)
    resume: bool = False
    checkpoint: bool = False


class ArchiveResult(BaseModel):
    """Outcome of archiving a chain prefix."""

    workspace_id: int
    records_archived: int
    dry_run: bool = False
    last_record_id: int | None = None
    last_record_hash: str | None = None
    archive_location: str | None = None
    archive_checksum: str | None = None
