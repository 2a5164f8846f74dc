"""Filtered, paginated reads over the audit log."""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import to_naive_utc
from app.core.config import Settings, get_settings
from app.models import AuditLog, User, Workspace
from app.schemas.audit import AuditLogPage, AuditLogRead

logger = logging.getLogger(__name__)


@dataclass
class AuditLogFilter:
    """Search criteria. Unset fields do not constrain the result."""

    workspace_id: int | None = None
    resource_id: str | None = None
    resource_type: str | None = None
    actor_user_id: int | None = None
    action: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    cursor: int | None = None
    limit: int | None = None


class AuditQueryService:
    """Reads audit records joined with actor and workspace identity.

    Results are ordered by ascending id, which is chain order within a
    workspace. Pages are keyset-paginated on id: pass ``next_cursor`` back
    as ``cursor`` to continue.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    def _limit(self, requested: int | None) -> int:
        if requested is None:
            return self.settings.audit_query_default_limit
        return max(1, min(requested, self.settings.audit_query_max_limit))

    async def search(self, filters: AuditLogFilter) -> AuditLogPage:
        """Return one page of records matching ``filters``."""
        limit = self._limit(filters.limit)

        query = (
            select(AuditLog, User.email, User.name, Workspace.name)
            .outerjoin(User, User.id == AuditLog.actor_user_id)
            .outerjoin(Workspace, Workspace.id == AuditLog.workspace_id)
        )

        if filters.workspace_id is not None:
            query = query.where(AuditLog.workspace_id == filters.workspace_id)
        elif filters.resource_id is not None:
            # Resolve the chains holding the resource first, then read them
            # through the (workspace_id, id) index
            workspace_ids = await self._workspaces_for_resource(
                filters.resource_id, filters.resource_type
            )
            if not workspace_ids:
                return AuditLogPage(logs=[], next_cursor=None)
            query = query.where(AuditLog.workspace_id.in_(workspace_ids))

        if filters.resource_id is not None:
            query = query.where(AuditLog.resource_id == filters.resource_id)
        if filters.resource_type is not None:
            query = query.where(AuditLog.resource_type == filters.resource_type)
        if filters.actor_user_id is not None:
            query = query.where(AuditLog.actor_user_id == filters.actor_user_id)
        if filters.action is not None:
            query = query.where(AuditLog.action == filters.action)
        if filters.since is not None:
            query = query.where(AuditLog.created_at >= to_naive_utc(filters.since))
        if filters.until is not None:
            query = query.where(AuditLog.created_at <= to_naive_utc(filters.until))
        if filters.cursor is not None:
            query = query.where(AuditLog.id > filters.cursor)

        query = query.order_by(AuditLog.id.asc()).limit(limit + 1)

        result = await self.session.execute(query)
        rows = result.all()

        next_cursor = None
        if len(rows) > limit:
            rows = rows[:limit]
            next_cursor = rows[-1][0].id

        logs = [
            AuditLogRead(
                id=log.id,
                workspace_id=log.workspace_id,
                workspace_name=workspace_name,
                actor_user_id=log.actor_user_id,
                actor_email=actor_email,
                actor_name=actor_name,
                action=log.action,
                resource_type=log.resource_type,
                resource_id=log.resource_id,
                metadata=log.details,
                created_at=log.created_at,
                record_hash=log.record_hash,
                previous_record_hash=log.previous_record_hash,
            )
            for log, actor_email, actor_name, workspace_name in rows
        ]

        logger.debug("Audit search returned %d records (next_cursor=%s)", len(logs), next_cursor)
        return AuditLogPage(logs=logs, next_cursor=next_cursor)

    async def _workspaces_for_resource(
        self,
        resource_id: str,
        resource_type: str | None,
    ) -> list[int]:
        query = select(AuditLog.workspace_id).where(AuditLog.resource_id == resource_id).distinct()
        if resource_type is not None:
            query = query.where(AuditLog.resource_type == resource_type)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def distinct_actions(self, workspace_id: int | None = None) -> list[str]:
        """List the distinct action names present in the log."""
        query = select(AuditLog.action).distinct().order_by(AuditLog.action)
        if workspace_id is not None:
            query = query.where(AuditLog.workspace_id == workspace_id)
        result = await self.session.execute(query)
        return list(result.scalars().all())
