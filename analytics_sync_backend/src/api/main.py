import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.connectors.google_business.router import factory as google_business_factory, get_router as google_business_router
from src.connectors.quickbooks.router import factory as quickbooks_factory, get_router as quickbooks_router
from src.connectors.registry import ConnectorRegistry
from src.core.api_models import ErrorResponse, SuccessResponse
from src.core.errors import SyncError
from src.core.logging import get_logger
from src.core.observability import RequestContextMiddleware, metrics_snapshot
from src.core.response import ok, payload_for
from src.core.settings import get_settings
from src.sync.jobs import run_periodically

settings = get_settings()
logger = get_logger(__name__)

openapi_tags = [
    {"name": "Connectors", "description": "Common endpoints for all providers"},
    {"name": "Google Business Profile", "description": "Location discovery, selection and group insights"},
    {"name": "QuickBooks Online", "description": "Customers, invoices and portal customer mappings"},
]

# Initialize registry and register connectors
registry = ConnectorRegistry()
registry.register("google_business", "Google Business Profile", factory=google_business_factory, router=google_business_router(), tags=["Analytics"])
registry.register("quickbooks", "QuickBooks Online", factory=quickbooks_factory, router=quickbooks_router(), tags=["Invoicing"])


@asynccontextmanager
async def lifespan(_: FastAPI):
    interval = settings.sync.TOKEN_REFRESH_INTERVAL_SECONDS
    task = None
    if interval > 0:
        logger.info("starting background token refresh", extra={"interval_s": interval})
        task = asyncio.create_task(run_periodically(interval, registry.refresh_expiring_tokens))
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


app = FastAPI(
    title=settings.api.API_TITLE,
    description=settings.api.API_DESCRIPTION,
    version=settings.api.API_VERSION,
    openapi_tags=openapi_tags,
    responses={
        400: {"model": ErrorResponse, "description": "Validation, not connected or missing configuration"},
        401: {"model": ErrorResponse, "description": "Re-authorization required"},
        502: {"model": ErrorResponse, "description": "Upstream or token endpoint error"},
    },
    lifespan=lifespan,
)

# CORS: allow configured origins/methods/headers; defaults are permissive but can be tightened via env
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.api.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=settings.api.CORS_ALLOW_METHODS,
    allow_headers=settings.api.CORS_ALLOW_HEADERS,
)

# Correlation ID / request context middleware
app.add_middleware(RequestContextMiddleware, tenant_header_name=settings.tenant.TENANT_HEADER_NAME, logger=logger)


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    """Render engine errors with the standard error envelope and their HTTP status."""
    if exc.http_status >= 500:
        logger.error("request failed", extra={"error_code": exc.code, "error": exc.message})
    else:
        logger.info("request rejected", extra={"error_code": exc.code, "error": exc.message})
    headers = {"Retry-After": str(int(exc.retry_after))} if exc.retry_after else None
    return JSONResponse(status_code=exc.http_status, content=payload_for(exc), headers=headers)


class HealthData(BaseModel):
    message: str = Field(..., description="Health status message")
    env: str = Field(..., description="Environment name")


# PUBLIC_INTERFACE
@app.get(
    "/",
    summary="Health Check",
    description="Health check endpoint that returns service status and environment.",
    tags=["Connectors"],
    response_model=SuccessResponse[HealthData],  # type: ignore[type-arg]
    responses={
        200: {
            "description": "Service is healthy",
            "content": {
                "application/json": {
                    "example": {"status": "ok", "data": {"message": "Healthy", "env": "development"}, "meta": {}}
                }
            },
        }
    },
)
def health_check():
    """Health check endpoint that returns service status and environment."""
    return ok({"message": "Healthy", "env": settings.tenant.ENV})


# PUBLIC_INTERFACE
@app.get(
    "/_metrics",
    summary="Metrics (basic)",
    description="In-process counters: token refreshes, fetch units, cache hits and pipeline latency.",
    tags=["Connectors"],
    response_model=SuccessResponse[dict],  # type: ignore[type-arg]
    responses={
        200: {
            "description": "Metrics snapshot",
            "content": {"application/json": {"example": {"status": "ok", "data": {"requests_total": 10.0, "cache_hits_total": 3.0}, "meta": {}}}},
        }
    },
)
def metrics():
    """Return basic service metrics (process-local) for quick visibility."""
    return ok(metrics_snapshot())


# Mount all connector endpoints
registry.mount_all(app, prefix="/connectors")
