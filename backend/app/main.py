"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.core.config import get_settings
from app.core.database import init_db
from app.core.exceptions import AppendFailed, AuthorizationDenied, ImmutableRecordViolation
from app.core.rate_limit import limiter
from app.routers import audit, auth, documents, health, workspaces
from app.services.audit import AuditWriter

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan events."""
    await init_db()
    yield
    await AuditWriter.drain()


app = FastAPI(
    title=settings.app_name,
    description="Tamper-evident, workspace-scoped audit log",
    version="0.1.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(AuthorizationDenied)
async def authorization_denied_handler(request: Request, exc: AuthorizationDenied) -> JSONResponse:
    return JSONResponse(
        status_code=403,
        content={"success": False, "error": {"code": "FORBIDDEN", "message": str(exc)}},
    )


@app.exception_handler(AppendFailed)
async def append_failed_handler(request: Request, exc: AppendFailed) -> JSONResponse:
    logger.error("Request %s %s failed closed on audit append: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={
            "success": False,
            "error": {"code": "SERVICE_UNAVAILABLE", "message": "Service temporarily unavailable"},
        },
    )


@app.exception_handler(ImmutableRecordViolation)
async def immutable_record_handler(request: Request, exc: ImmutableRecordViolation) -> JSONResponse:
    logger.error("Blocked modification of audit data (%s %s): %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=409,
        content={"success": False, "error": {"code": "IMMUTABLE_RECORD", "message": str(exc)}},
    )


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(auth.router, prefix=settings.api_prefix, tags=["auth"])
app.include_router(documents.router, prefix=settings.api_prefix, tags=["documents"])
app.include_router(workspaces.router, prefix=settings.api_prefix, tags=["workspaces"])
app.include_router(audit.router, prefix=settings.api_prefix, tags=["audit"])
