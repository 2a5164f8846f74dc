"""Workspace-scoped audit log endpoints."""

from fastapi import APIRouter, HTTPException

from app.core.deps import CurrentUser, DbSession, get_membership
from app.core.exceptions import AuthorizationDenied
from app.models import Workspace, WorkspaceRole
from app.routers.audit import AuditFilters
from app.services.audit_query import AuditQueryService

router = APIRouter(prefix="/workspaces")


@router.get("/{workspace_id}/audit-logs")
async def list_workspace_audit_logs(
    workspace_id: int,
    filters: AuditFilters,
    current_user: CurrentUser,
    session: DbSession,
) -> dict:
    """Search one workspace's audit log (workspace admins and investigators)."""
    workspace = await session.get(Workspace, workspace_id)
    if workspace is None:
        raise HTTPException(status_code=404, detail="Workspace not found")

    if not current_user.is_super_admin:
        membership = await get_membership(session, workspace_id, current_user.id)
        if membership is None or membership.role != WorkspaceRole.ADMIN:
            raise AuthorizationDenied("Workspace admin access required")

    filters.workspace_id = workspace_id
    page = await AuditQueryService(session).search(filters)
    return {"success": True, "data": page.model_dump()}
