"""
Offline Sync API

A FastAPI-based reconciliation backend for offline-first clients.
Accepts queued operations under optimistic concurrency and serves
change pulls since a checkpoint.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.core.config import settings
from api.models.database import get_db, init_db
from api.models.schemas import ErrorResponse, HealthResponse
from api.routes import sync

# =============================================================================
# Logging Configuration
# =============================================================================

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# =============================================================================
# Application Lifespan
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Runs startup and shutdown logic for the application.
    """
    backend = settings.database_url.split(":", 1)[0]
    logger.info(
        f"Starting {settings.app_name} v{settings.app_version} "
        f"({settings.environment}, database: {backend})"
    )

    # Records and audit log tables
    try:
        await init_db()
    except Exception as e:
        logger.error(f"Failed to create sync tables: {e}")
        raise

    yield

    logger.info("Reconciliation API stopped")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description="""
Offline Sync API reconciles mutations queued by offline-first clients.

## Features

* **Operations** - Submit one queued create, update or delete at a time
* **Optimistic concurrency** - Every mutation names the version it was made against
* **Idempotent replay** - Retried operation ids are answered from the audit log
* **Pull** - Fetch records changed since a checkpoint

## Authentication

All endpoints (except /health) require a bearer JWT whose subject is the owner id.
    """,
    version=settings.app_version,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)


# =============================================================================
# Middleware
# =============================================================================

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request Logging Middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log each request with its status and handling time."""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    response.headers["X-Process-Time"] = f"{elapsed_ms:.1f}ms"
    logger.debug(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f}ms)")
    return response


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handle HTTP exceptions with consistent format."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=exc.detail if isinstance(exc.detail, str) else "Error",
            detail=str(exc.detail) if not isinstance(exc.detail, str) else None,
            status_code=exc.status_code,
        ).model_dump(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle request validation errors with details."""
    error_messages = []
    for error in exc.errors():
        loc = " -> ".join(str(x) for x in error["loc"])
        error_messages.append(f"{loc}: {error['msg']}")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse(
            error="Validation Error",
            detail="; ".join(error_messages),
            status_code=422,
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def general_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")

    # Don't expose internal errors in production
    if settings.environment == "production":
        detail = "An unexpected error occurred"
    else:
        detail = str(exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="Internal Server Error",
            detail=detail,
            status_code=500,
        ).model_dump(),
    )


# =============================================================================
# Health Check Endpoint
# =============================================================================

@app.api_route(
    "/health",
    methods=["GET", "HEAD"],
    response_model=HealthResponse,
    tags=["Health"],
    summary="Health check",
    description="Check if the API is running and the database answers. Clients probe it with HEAD.",
    responses={503: {"description": "Database unavailable", "model": HealthResponse}},
)
async def health_check(db: Annotated[AsyncSession, Depends(get_db)]):
    """
    Health check endpoint.

    Returns 503 when the database cannot be reached so that clients treat
    the server as offline.
    """
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning(f"Health check database failure: {e}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=HealthResponse(
                status="degraded",
                version=settings.app_version,
                database="unavailable",
            ).model_dump(),
        )

    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        database="connected",
    )


# =============================================================================
# API Routes
# =============================================================================

app.include_router(
    sync.router,
    prefix=settings.api_v1_prefix,
)


# =============================================================================
# Root Endpoint
# =============================================================================

@app.get(
    "/",
    tags=["Root"],
    summary="API Information",
    description="Get basic API information and links to documentation.",
)
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "documentation": {
            "openapi": "/api/openapi.json",
            "swagger": "/api/docs",
            "redoc": "/api/redoc",
        },
        "endpoints": {
            "operations": f"{settings.api_v1_prefix}/sync/operations",
            "pull": f"{settings.api_v1_prefix}/sync/pull",
            "health": "/health",
        },
    }


# =============================================================================
# Development Server
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )
