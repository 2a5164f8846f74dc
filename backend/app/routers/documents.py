"""Document endpoints. Every create, view and refused view is audited."""

import logging

from fastapi import APIRouter, HTTPException, Request, status

from app.core.deps import AuditWriterDep, CurrentUser, DbSession, get_membership
from app.models import (
    AuditAction,
    Document,
    DocumentCreate,
    DocumentRead,
    DocumentVisibility,
    User,
    WorkspaceMembership,
)
from app.schemas.audit import AuditEvent
from app.services.audit import AuditService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents")


def request_context(request: Request) -> dict:
    """Client details recorded with every document event."""
    return {
        "ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def denial_reason(document: Document, user: User, membership: WorkspaceMembership | None) -> str | None:
    """Why ``user`` may not read ``document``, or None if they may."""
    if user.is_super_admin:
        return None
    if membership is None:
        return "not_workspace_member"
    if document.visibility == DocumentVisibility.PRIVATE and document.created_by != user.id:
        return "private_document"
    return None


@router.post("", response_model=DocumentRead, status_code=status.HTTP_201_CREATED)
async def create_document(
    data: DocumentCreate,
    request: Request,
    current_user: CurrentUser,
    session: DbSession,
) -> Document:
    """Create a document. The document and its audit record commit together."""
    membership = await get_membership(session, data.workspace_id, current_user.id)
    if membership is None:
        raise HTTPException(status_code=403, detail="Not a member of this workspace")

    document = Document(
        title=data.title,
        visibility=data.visibility,
        workspace_id=data.workspace_id,
        created_by=current_user.id,
    )
    session.add(document)
    await session.flush()

    await AuditService(session).append(
        AuditEvent(
            workspace_id=document.workspace_id,
            actor_user_id=current_user.id,
            action=AuditAction.DOCUMENT_CREATE,
            resource_type="document",
            resource_id=document.id,
            metadata={"title": document.title, **request_context(request)},
        )
    )
    await session.commit()
    await session.refresh(document)
    return document


@router.get("/{document_id}", response_model=DocumentRead)
async def get_document(
    document_id: int,
    request: Request,
    current_user: CurrentUser,
    session: DbSession,
    audit: AuditWriterDep,
) -> Document:
    """Read a document.

    The view is recorded before the body is returned. A refused read is
    recorded as ``document.view_denied`` and answered like a missing
    document.
    """
    document = await session.get(Document, document_id)
    if document is None:
        raise HTTPException(status_code=404, detail="Document not found")

    membership = await get_membership(session, document.workspace_id, current_user.id)
    reason = denial_reason(document, current_user, membership)

    if reason is not None:
        await audit.append(
            AuditEvent(
                workspace_id=document.workspace_id,
                actor_user_id=current_user.id,
                action=AuditAction.DOCUMENT_VIEW_DENIED,
                resource_type="document",
                resource_id=document.id,
                metadata={"reason": reason, **request_context(request)},
            )
        )
        logger.info("Denied document %s to user %s: %s", document.id, current_user.id, reason)
        raise HTTPException(status_code=404, detail="Document not found")

    await audit.append(
        AuditEvent(
            workspace_id=document.workspace_id,
            actor_user_id=current_user.id,
            action=AuditAction.DOCUMENT_VIEW,
            resource_type="document",
            resource_id=document.id,
            metadata=request_context(request),
        )
    )
    return document
