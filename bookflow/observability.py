import logging
import sys
import time
import uuid

import structlog
from fastapi import Request
from starlette.responses import JSONResponse

from .config import settings

logger = structlog.get_logger("bookflow.http")

_MASKED_KEYS = ("phone", "email", "customer_email", "customer_phone")


def masking_processor(logger, method_name, event_dict):
    """Masks customer contact details in log events."""
    for key in _MASKED_KEYS:
        if key in event_dict and event_dict[key]:
            val = str(event_dict[key])
            event_dict[key] = f"{val[:3]}***{val[-2:]}" if len(val) > 5 else "***"
    return event_dict


def configure_logging() -> None:
    level = getattr(logging, settings.LOG_LEVEL, logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            masking_processor,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


async def request_tracing_middleware(request: Request, call_next):
    request_id = (request.headers.get("X-Request-ID") or "").strip() or str(uuid.uuid4())
    tenant_slug = (request.headers.get("X-Tenant-Slug") or "").strip().lower() or None

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        tenant_slug=tenant_slug,
        path=request.url.path,
        method=request.method,
    )

    start_time = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        logger.error(
            "http_request_failed",
            error=str(exc),
            error_type=type(exc).__name__,
            duration_ms=duration_ms,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error", "request_id": request_id},
            headers={"X-Request-ID": request_id},
        )

    duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
    logger.info("http_request", status=response.status_code, duration_ms=duration_ms)
    response.headers["X-Request-ID"] = request_id
    return response


async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if bool(settings.SECURITY_HEADERS_ENABLED):
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Cache-Control", "no-store")
    return response
