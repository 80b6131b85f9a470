# app/core/middleware.py
"""Request tracing: correlation id, tenant context and access logging"""
import logging
import time
import uuid

from starlette.requests import Request

from app.utils.my_logging import company_id_var, correlation_id_var

logger = logging.getLogger(__name__)

# Load balancer health checks would drown out real traffic
QUIET_PATH_PREFIXES = ("/health",)


async def correlation_id_middleware(request: Request, call_next):
    """Propagate X-Correlation-ID and the calling company into every log line of the request"""
    correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
    request.state.correlation_id = correlation_id

    correlation_token = correlation_id_var.set(correlation_id)
    company_token = company_id_var.set(request.headers.get("X-Company-ID") or "-")
    try:
        response = await call_next(request)
    finally:
        correlation_id_var.reset(correlation_token)
        company_id_var.reset(company_token)

    response.headers["X-Correlation-ID"] = correlation_id
    return response


async def request_logging_middleware(request: Request, call_next):
    """Log one line per request; provider webhooks and 5xx answers are always logged"""
    path = request.url.path
    if path.startswith(QUIET_PATH_PREFIXES):
        return await call_next(request)

    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = round((time.perf_counter() - started) * 1000, 2)

    level = logging.WARNING if response.status_code >= 500 else logging.INFO
    logger.log(
        level,
        f"{request.method} {path} -> {response.status_code} ({duration_ms}ms)",
        extra={
            "method": request.method,
            "path": path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
            "client": request.client.host if request.client else "unknown",
        },
    )
    return response
