"""Audit log endpoints (investigator only)."""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from app.core.config import get_settings
from app.core.deps import DbSession, InvestigatorUser
from app.core.rate_limit import limiter
from app.schemas.audit import VerifyRequest
from app.services.audit_query import AuditLogFilter, AuditQueryService
from app.services.audit_verify import ChainVerifier

settings = get_settings()

router = APIRouter(prefix="/audit-logs")


def audit_log_filter(
    resource_id: str | None = None,
    resource_type: str | None = None,
    actor_user_id: int | None = None,
    workspace_id: int | None = None,
    action: str | None = None,
    since: datetime | None = Query(None, alias="from"),
    until: datetime | None = Query(None, alias="to"),
    cursor: int | None = Query(None, ge=0),
    limit: int | None = Query(None, ge=1, le=settings.audit_query_max_limit),
) -> AuditLogFilter:
    """Query-string filters shared by the audit search endpoints."""
    return AuditLogFilter(
        workspace_id=workspace_id,
        resource_id=resource_id,
        resource_type=resource_type,
        actor_user_id=actor_user_id,
        action=action,
        since=since,
        until=until,
        cursor=cursor,
        limit=limit,
    )


AuditFilters = Annotated[AuditLogFilter, Depends(audit_log_filter)]


@router.get("")
async def search_audit_logs(
    filters: AuditFilters,
    current_user: InvestigatorUser,
    session: DbSession,
) -> dict:
    """Search audit logs across workspaces.

    Ordered by ascending id. Pass ``next_cursor`` back as ``cursor`` for the
    next page.
    """
    page = await AuditQueryService(session).search(filters)
    return {"success": True, "data": page.model_dump()}


@router.get("/actions")
async def list_action_types(
    current_user: InvestigatorUser,
    session: DbSession,
) -> dict:
    """List all distinct action types in the audit log."""
    actions = await AuditQueryService(session).distinct_actions()
    return {"success": True, "data": {"actions": actions}}


@router.post("/verify")
@limiter.limit(f"{settings.rate_limit_requests}/minute")
async def verify_chain(
    request: Request,
    body: VerifyRequest,
    current_user: InvestigatorUser,
    session: DbSession,
) -> dict:
    """Verify one workspace's hash chain.

    A divergence is reported in the body (``valid: false``), not as an
    error status. With ``checkpoint`` set, a clean result is recorded so a
    later ``resume`` only walks newer records.
    """
    limit = body.limit
    if limit is not None:
        limit = min(limit, settings.audit_verify_max_limit)

    verifier = ChainVerifier(session)
    result = await verifier.verify(body.workspace_id, limit=limit, resume=body.resume)

    if body.checkpoint and result.valid:
        await verifier.record_checkpoint(result, verified_by=current_user.id)
        await session.commit()

    return {"success": True, "data": result.model_dump(exclude_none=True)}
