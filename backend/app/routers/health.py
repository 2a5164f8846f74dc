"""Health check endpoint."""

from fastapi import APIRouter

from app.core.config import get_settings
from app.services.audit import AuditWriter

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Return service health status."""
    settings = get_settings()
    return {
        "status": "healthy",
        "service": "ship-audit",
        "version": "0.1.0",
        "audit": {
            "on_failure": settings.audit_on_failure,
            "pending_retries": AuditWriter.pending(),
        },
    }
