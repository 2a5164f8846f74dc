"""Audit logging service.

Every workspace owns one hash chain. An append serializes on the workspace's
``audit_chain_locks`` row, reads the chain tail, allocates the next id,
hashes the record and inserts it, all inside the caller's transaction.
Appends to different workspaces never wait on each other (on PostgreSQL;
SQLite serializes all writers).
"""

import asyncio
import json
import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from app.core.clock import utc_now, utc_now_ms
from app.core.config import Settings, get_settings
from app.core.exceptions import AppendFailed
from app.models import AUDIT_LOG_ID_SEQ, ArchiveCheckpoint, AuditChainLock, AuditLog
from app.schemas.audit import AuditEvent
from app.services.audit_hash import GENESIS_HASH, canonical_json, compute_record_hash

logger = logging.getLogger(__name__)
alert_logger = logging.getLogger("app.audit.alerts")

# serialization_failure, deadlock_detected, lock_not_available, query_canceled
_TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03", "57014"}

# Background retries still in flight (fail-open policy)
_pending_retries: set[asyncio.Task] = set()


def _is_transient(exc: SQLAlchemyError) -> bool:
    if isinstance(exc, OperationalError):
        return True
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        return getattr(exc.orig, "pgcode", None) in _TRANSIENT_SQLSTATES
    return False


def _append_failure(exc: SQLAlchemyError, workspace_id: int) -> AppendFailed:
    return AppendFailed(
        f"Audit append failed for workspace {workspace_id}: {exc.__class__.__name__}",
        retryable=_is_transient(exc),
    )


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, AppendFailed) and exc.retryable


class AuditService:
    """Appends audit events inside the caller's transaction.

    The record becomes visible when the caller commits and disappears if the
    caller rolls back, so a business write and its audit record commit
    together or not at all.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    async def append(self, event: AuditEvent) -> AuditLog:
        """Append an event to its workspace chain.

        Args:
            event: Validated audit event.

        Returns:
            The flushed record, carrying its id and hashes.

        Raises:
            AppendFailed: Nothing was written. Check ``retryable``.
        """
        try:
            return await self._append(event)
        except SQLAlchemyError as exc:
            raise _append_failure(exc, event.workspace_id) from exc

    async def _append(self, event: AuditEvent) -> AuditLog:
        conn = await self.session.connection()
        dialect = conn.dialect.name

        if dialect == "postgresql":
            timeout_ms = int(self.settings.audit_lock_timeout_seconds * 1000)
            await conn.exec_driver_sql(f"SET LOCAL lock_timeout = {timeout_ms}")

        await self._lock_chain(event.workspace_id, dialect)
        previous_hash, previous_created_at = await self._chain_tail(event.workspace_id)
        record_id = await self._next_id(dialect)

        # Timestamps never run backwards along a chain
        created_at = utc_now_ms()
        if previous_created_at is not None and created_at < previous_created_at:
            created_at = previous_created_at

        record = AuditLog(
            id=record_id,
            workspace_id=event.workspace_id,
            actor_user_id=event.actor_user_id,
            action=event.action,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            # Stored exactly as hashed
            details=json.loads(canonical_json(event.metadata)),
            created_at=created_at,
            previous_record_hash=previous_hash,
            record_hash="",
        )
        record.record_hash = compute_record_hash(record)

        self.session.add(record)
        await self.session.flush()

        logger.debug(
            "Appended audit record %s (%s) to workspace %s",
            record.id,
            record.action,
            record.workspace_id,
        )
        return record

    async def _lock_chain(self, workspace_id: int, dialect: str) -> None:
        """Take the workspace's chain lock until the transaction ends."""
        if dialect == "postgresql":
            insert = postgresql.insert
        elif dialect == "sqlite":
            insert = sqlite.insert
        else:
            raise AppendFailed(f"Audit chain locking not supported on {dialect}", retryable=False)

        table = AuditChainLock.__table__
        now = utc_now()
        stmt = insert(table).values(workspace_id=workspace_id, locked_at=now, appends=1)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.workspace_id],
            set_={"locked_at": now, "appends": table.c.appends + 1},
        )
        await self.session.execute(stmt)

    async def _chain_tail(self, workspace_id: int) -> tuple[str, datetime | None]:
        """Hash and timestamp the next record must link to."""
        result = await self.session.execute(
            select(AuditLog.record_hash, AuditLog.created_at)
            .where(AuditLog.workspace_id == workspace_id)
            .order_by(AuditLog.id.desc())
            .limit(1)
        )
        row = result.first()
        if row is not None:
            return row.record_hash, row.created_at

        # Whole chain archived: continue from the checkpoint
        result = await self.session.execute(
            select(ArchiveCheckpoint.last_record_hash, ArchiveCheckpoint.last_record_created_at)
            .where(ArchiveCheckpoint.workspace_id == workspace_id)
            .order_by(ArchiveCheckpoint.id.desc())
            .limit(1)
        )
        row = result.first()
        if row is not None:
            return row.last_record_hash, row.last_record_created_at

        return GENESIS_HASH, None

    async def _next_id(self, dialect: str) -> int:
        if dialect == "postgresql":
            return await self.session.scalar(select(AUDIT_LOG_ID_SEQ.next_value()))

        # Writers are serialized, so max + 1 is safe. Archived ids stay retired.
        last_id = await self.session.scalar(select(func.max(AuditLog.id)))
        last_archived = await self.session.scalar(select(func.max(ArchiveCheckpoint.last_record_id)))
        return max(last_id or 0, last_archived or 0) + 1


class AuditWriter:
    """Appends audit events in their own transaction.

    Used for events with no business write to couple to, such as document
    views. Transient failures are retried with jittered backoff. When
    retries run out the configured policy applies: ``fail_closed`` raises,
    ``fail_open_and_alert`` logs an alert and keeps retrying in the
    background. Critical events always fail closed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    async def append(self, event: AuditEvent, critical: bool = False) -> AuditLog | None:
        """Append an event, applying the failure policy.

        Returns:
            The committed record, or None when the append was deferred to a
            background retry.

        Raises:
            AppendFailed: Under ``fail_closed`` or for critical events.
        """
        try:
            return await self._append_with_retry(event, self.settings.audit_append_attempts)
        except AppendFailed as exc:
            if critical or self.settings.audit_on_failure == "fail_closed":
                logger.error(
                    "Audit append failed closed for %s on workspace %s: %s",
                    event.action,
                    event.workspace_id,
                    exc,
                )
                raise

            alert_logger.error(
                "AUDIT APPEND FAILED, retrying in background: action=%s workspace=%s resource=%s/%s: %s",
                event.action,
                event.workspace_id,
                event.resource_type,
                event.resource_id,
                exc,
            )
            self._schedule_retry(event)
            return None

    async def _append_with_retry(self, event: AuditEvent, attempts: int) -> AuditLog:
        timeout = self.settings.audit_append_timeout_seconds
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_random_exponential(multiplier=0.02, max=0.5),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                try:
                    return await asyncio.wait_for(self._append_once(event), timeout=timeout)
                except asyncio.TimeoutError as exc:
                    raise AppendFailed(
                        f"Audit append timed out after {timeout}s",
                        retryable=True,
                    ) from exc
        raise AppendFailed("Audit append was not attempted")

    async def _append_once(self, event: AuditEvent) -> AuditLog:
        async with self.session_factory() as session:
            try:
                conn = await session.connection()
                if conn.dialect.name == "sqlite":
                    # Take the write lock up front instead of upgrading later
                    await conn.exec_driver_sql("BEGIN IMMEDIATE")
                record = await AuditService(session, self.settings).append(event)
                await session.commit()
            except SQLAlchemyError as exc:
                raise _append_failure(exc, event.workspace_id) from exc
            return record

    def _schedule_retry(self, event: AuditEvent) -> None:
        task = asyncio.create_task(self._retry_in_background(event))
        _pending_retries.add(task)
        task.add_done_callback(_pending_retries.discard)

    async def _retry_in_background(self, event: AuditEvent) -> None:
        try:
            record = await self._append_with_retry(event, self.settings.audit_background_attempts)
        except AppendFailed as exc:
            alert_logger.critical(
                "AUDIT EVENT LOST after background retries: action=%s workspace=%s resource=%s/%s: %s",
                event.action,
                event.workspace_id,
                event.resource_type,
                event.resource_id,
                exc,
            )
            return
        alert_logger.warning(
            "Deferred audit event recorded as %s on workspace %s",
            record.id,
            record.workspace_id,
        )

    @staticmethod
    def pending() -> int:
        """Number of background retries still running."""
        return len(_pending_retries)

    @staticmethod
    async def drain() -> None:
        """Wait for background retries to finish."""
        while _pending_retries:
            await asyncio.gather(*list(_pending_retries))
