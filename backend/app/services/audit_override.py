"""Audited bypass of the append-only guard.

The only sanctioned way to modify an append-only table. The override is
recorded in ``audit_overrides`` within the same transaction, and the guard
is restored when the block exits, whether it completes or raises. If the
transaction rolls back, the override record and the guard change roll back
with it.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from app.core.immutability import set_append_only_guard
from app.models import ImmutabilityOverride

logger = logging.getLogger(__name__)


@asynccontextmanager
async def immutability_override(
    session: AsyncSession,
    *,
    table: str,
    operation: str,
    reason: str,
    operator: str,
) -> AsyncIterator[ImmutabilityOverride]:
    """Suspend one append-only guard for the duration of the block.

    Requires a session on the owner credential when running on PostgreSQL.

    Args:
        session: Session whose transaction the override joins.
        table: Append-only table to open up.
        operation: ``UPDATE`` or ``DELETE``.
        reason: Why the override is needed. Must not be empty.
        operator: Who is performing it.
    """
    if not reason.strip():
        raise ValueError("An immutability override needs a reason")

    override = ImmutabilityOverride(
        table_name=table,
        operation=operation,
        reason=reason,
        operator=operator,
    )
    session.add(override)
    await session.flush()

    logger.warning(
        "Immutability override on %s (%s) by %s: %s",
        table,
        operation,
        operator,
        reason,
    )

    conn = await session.connection()
    await set_append_only_guard(conn, table, operation, enabled=False)
    try:
        yield override
    except BaseException:
        await _restore_after_error(conn, table, operation)
        raise
    await set_append_only_guard(conn, table, operation, enabled=True)


async def _restore_after_error(conn: AsyncConnection, table: str, operation: str) -> None:
    try:
        await set_append_only_guard(conn, table, operation, enabled=True)
    except SQLAlchemyError as exc:
        # An aborted transaction can only roll back, which restores the guard
        logger.error(
            "Could not restore append-only guard on %s (%s) after a failed override: %s",
            table,
            operation,
            exc,
        )
