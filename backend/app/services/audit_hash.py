"""Canonical serialization and SHA-256 hashing of audit records.

A record hash is ``sha256(canonical bytes)`` where the canonical bytes are the
compact, key-sorted UTF-8 JSON of::

    {action, actor_user_id, created_at, id, metadata,
     previous_record_hash, resource_id, resource_type, workspace_id}

``created_at`` is rendered as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` in UTC and an
absent metadata object is rendered as ``{}``. The serialization is the
contract between writers and verifiers; changing it invalidates every stored
hash.
"""

import hashlib
import json
from datetime import datetime
from typing import Any, Protocol

from app.core.clock import to_naive_utc

GENESIS_HASH = "0" * 64


class HashableRecord(Protocol):
    """Attributes a stored audit record exposes to the hasher."""

    id: int | None
    workspace_id: int
    actor_user_id: int | None
    action: str
    resource_type: str
    resource_id: str
    details: dict[str, Any]
    created_at: datetime
    previous_record_hash: str


def format_timestamp(value: datetime) -> str:
    """Render a timestamp as UTC ISO-8601 with millisecond precision."""
    value = to_naive_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def canonical_json(value: Any) -> str:
    """Deterministic JSON text: sorted keys, no insignificant whitespace.

    Raises:
        TypeError: If the value holds something JSON cannot represent.
        ValueError: If the value holds NaN or infinity.
    """
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def canonicalize(
    *,
    record_id: int,
    workspace_id: int,
    actor_user_id: int | None,
    action: str,
    resource_type: str,
    resource_id: str,
    metadata: dict[str, Any] | None,
    created_at: datetime,
    previous_record_hash: str,
) -> bytes:
    """Canonical byte form of one audit record."""
    payload = {
        "action": action,
        "actor_user_id": actor_user_id,
        "created_at": format_timestamp(created_at),
        "id": record_id,
        "metadata": metadata or {},
        "previous_record_hash": previous_record_hash,
        "resource_id": resource_id,
        "resource_type": resource_type,
        "workspace_id": workspace_id,
    }
    return canonical_json(payload).encode("utf-8")


def digest(data: bytes) -> str:
    """Lowercase hex SHA-256 of ``data``."""
    return hashlib.sha256(data).hexdigest()


def compute_record_hash(
    record: HashableRecord,
    previous_record_hash: str | None = None,
) -> str:
    """Hash a stored record.

    Args:
        record: The record to hash.
        previous_record_hash: Link to hash against. Defaults to the link the
            record itself carries; verifiers pass the expected link instead.
    """
    if previous_record_hash is None:
        previous_record_hash = record.previous_record_hash
    return digest(
        canonicalize(
            record_id=record.id,
            workspace_id=record.workspace_id,
            actor_user_id=record.actor_user_id,
            action=record.action,
            resource_type=record.resource_type,
            resource_id=record.resource_id,
            metadata=record.details,
            created_at=record.created_at,
            previous_record_hash=previous_record_hash,
        )
    )
