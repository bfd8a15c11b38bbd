from __future__ import annotations

import logging
import time
import uuid
from contextvars import ContextVar
from typing import Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

# Context variables to carry across the request lifecycle
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")
tenant_id_ctx: ContextVar[str] = ContextVar("tenant_id", default="public")
route_ctx: ContextVar[str] = ContextVar("route", default="-")
provider_ctx: ContextVar[str] = ContextVar("provider", default="-")

# Process-local counters and accumulators
_METRICS: Dict[str, float] = {
    "requests_total": 0.0,
    "requests_errors_total": 0.0,
    "token_refresh_total": 0.0,
    "token_refresh_failures_total": 0.0,
    "fetch_units_total": 0.0,
    "fetch_unit_failures_total": 0.0,
    "cache_hits_total": 0.0,
    "cache_misses_total": 0.0,
    "pipeline_runs_total": 0.0,
    "pipeline_latency_ms_sum": 0.0,
}


def metrics_snapshot() -> Dict[str, float]:
    """Return a shallow copy of current metrics."""
    return dict(_METRICS)


# PUBLIC_INTERFACE
def increment_metric(name: str, inc: float = 1.0) -> None:
    """Increment a named metric counter by inc."""
    _METRICS[name] = _METRICS.get(name, 0.0) + inc


# PUBLIC_INTERFACE
def observe_latency(name: str, ms: float) -> None:
    """Accumulate latency in milliseconds for a given metric name (e.g., pipeline_latency_ms_sum)."""
    _METRICS[name] = _METRICS.get(name, 0.0) + ms


def bind_provider(provider: str) -> None:
    """Tag log records emitted for the rest of this task with the provider id."""
    provider_ctx.set(provider)


def mask_secret_value(value: Optional[str], keep: int = 4) -> Optional[str]:
    """Mask a secret for safe logging. Keep last N chars."""
    if value is None:
        return None
    v = str(value)
    if len(v) <= keep:
        return "*" * len(v)
    return "*" * (len(v) - keep) + v[-keep:]


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to attach a correlation/request ID, tenant id and emit structured logs + metrics."""

    def __init__(self, app, tenant_header_name: str = "X-Tenant-ID", logger: Optional[logging.Logger] = None):
        super().__init__(app)
        self.tenant_header_name = tenant_header_name
        self.logger = logger or logging.getLogger(__name__)

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_ctx.set(rid)
        tid = request.headers.get(self.tenant_header_name) or tenant_id_ctx.get()
        tenant_id_ctx.set(tid)
        route = request.url.path
        route_ctx.set(route)

        increment_metric("requests_total", 1.0)

        self.logger.info(
            "request_start",
            extra={
                "method": request.method,
                "path": request.url.path,
                "client": request.client.host if request.client else None,
            },
        )
        status = 500
        try:
            response: Response = await call_next(request)
            status = response.status_code
            if status >= 400:
                increment_metric("requests_errors_total", 1.0)
            response.headers["X-Request-ID"] = rid
            return response
        except Exception as ex:
            increment_metric("requests_errors_total", 1.0)
            self.logger.exception("request_error", extra={"error": str(ex)})
            raise
        finally:
            dur_ms = (time.perf_counter() - start) * 1000.0
            self.logger.info("request_end", extra={"status_code": status, "duration_ms": round(dur_ms, 2)})


# PUBLIC_INTERFACE
def get_structured_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a structured logger that adds correlation attributes through logging Filters."""
    logger = logging.getLogger(name or __name__)
    if not any(isinstance(f, _ContextFilter) for f in logger.filters):
        logger.addFilter(_ContextFilter())
    return logger


class _ContextFilter(logging.Filter):
    """Inject request context (request_id, tenant_id, route, provider) into records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get()
        record.tenant_id = tenant_id_ctx.get()
        record.route = route_ctx.get()
        record.provider = provider_ctx.get()
        return True
