from __future__ import annotations

import asyncio
import inspect
import string
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import Response
from structlog import contextvars as structlog_contextvars
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import settings
from .logging import configure_logging, logger
from .metrics import registry
from .middleware import RateLimitMiddleware, RequestIDMiddleware
from .routers import health, review
from .srs.errors import (
    ConcurrencyConflict,
    NotFoundError,
    SchedulerError,
    StoreUnavailable,
    ValidationError,
)


_PROXY_MIDDLEWARE_PARAM = (
    "forwarded_allow_ips"
    if "forwarded_allow_ips"
    in inspect.signature(ProxyHeadersMiddleware.__init__).parameters
    else "trusted_hosts"
)
_STORE_RETRY_AFTER_SECONDS = "1"


def _parse_cloud_trace_header(raw_header: str | None) -> dict[str, object]:
    """Parse `X-Cloud-Trace-Context` into Cloud Logging trace fields.

    Cloud Run のリクエストログとアプリログを突合できるよう、
    `trace`/`spanId`/`trace_sampled` を返す。形式不正なら空 dict。
    """

    if not raw_header or not settings.gcp_project_id:
        return {}

    trace_span_part, _, option_part = raw_header.partition(";")
    trace_id, separator, span_part = trace_span_part.partition("/")
    trace_id = trace_id.strip()
    if not separator or len(trace_id) != 32 or any(ch not in string.hexdigits for ch in trace_id):
        return {}

    span_id: str | None = None
    cleaned_span = span_part.strip()
    if cleaned_span.isdigit() and int(cleaned_span) < 2**64:
        span_id = cleaned_span

    trace_sampled = False
    for opt in option_part.split(";") if option_part else ():
        key, _, value = opt.partition("=")
        if key.strip() == "o":
            trace_sampled = value.strip() == "1"

    trace_context: dict[str, object] = {
        "trace": f"projects/{settings.gcp_project_id}/traces/{trace_id}",
        "trace_sampled": trace_sampled,
    }
    if span_id is not None:
        trace_context["spanId"] = span_id
    return trace_context


class AccessLogAndMetricsMiddleware(BaseHTTPMiddleware):
    """Emit structured request logs and capture latency/metrics for each call."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:  # type: ignore[override]
        start = time.time()
        path = request.url.path
        method = request.method
        request_id = getattr(request.state, "request_id", None) or request.headers.get("x-request-id")
        if not request_id:
            request_id = uuid4().hex
        request.state.request_id = request_id
        trace_log_fields = _parse_cloud_trace_header(request.headers.get("x-cloud-trace-context"))
        structlog_contextvars.bind_contextvars(request_id=request_id, **trace_log_fields)
        client_ip = request.client.host if request.client else "unknown"
        ua = request.headers.get("user-agent", "-")
        is_error = False
        is_timeout = False
        status_code: int | None = None
        error_type: str | None = None
        error_message: str | None = None
        try:
            response = await call_next(request)
            status_code = response.status_code
            is_error = status_code >= 500
            return response
        except Exception as exc:
            is_error = True
            status_code = 500
            error_type = exc.__class__.__name__
            raw_error_message = str(exc)
            error_message = raw_error_message if len(raw_error_message) <= 200 else f"{raw_error_message[:197]}..."
            is_timeout = isinstance(exc, asyncio.TimeoutError)
            raise
        finally:
            latency_ms = (time.time() - start) * 1000
            registry.record(path, latency_ms, is_error=is_error, is_timeout=is_timeout)
            log_method = logger.error if is_error else logger.info
            log_method(
                "request_complete",
                path=path,
                method=method,
                latency_ms=latency_ms,
                is_error=is_error,
                is_timeout=is_timeout,
                status_code=status_code,
                error_type=error_type,
                error_message=error_message,
                owner_id=getattr(request.state, "owner_id", None),
                client_ip=client_ip,
                user_agent=ua,
            )
            structlog_contextvars.unbind_contextvars("request_id", *trace_log_fields.keys())


def _status_for(exc: SchedulerError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConcurrencyConflict):
        return 409
    if isinstance(exc, StoreUnavailable):
        return 503
    return 500


async def _handle_scheduler_error(request: Request, exc: SchedulerError) -> JSONResponse:
    """Translate scheduler errors into `{"detail", "error"}` bodies."""

    status_code = _status_for(exc)
    log_fields = {
        "path": request.url.path,
        "error": exc.code,
        "detail": str(exc),
        "owner_id": getattr(request.state, "owner_id", None),
    }
    headers: dict[str, str] = {}
    if isinstance(exc, ConcurrencyConflict):
        registry.record_review("conflict")
        logger.warning("review_conflict", item_id=exc.item_id, **log_fields)
    elif isinstance(exc, StoreUnavailable):
        headers["Retry-After"] = _STORE_RETRY_AFTER_SECONDS
        logger.error("review_store_unavailable", operation=exc.operation, **log_fields)
    elif status_code >= 500:
        logger.error("review_request_failed", **log_fields)
    else:
        logger.info("review_request_rejected", **log_fields)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": exc.code},
        headers=headers or None,
    )


async def _handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies/params as 400 with the same body shape."""

    messages = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        messages.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    detail = "; ".join(messages) or "invalid request"
    logger.info("review_request_rejected", path=request.url.path, error="validation_error", detail=detail)
    return JSONResponse(status_code=400, content={"detail": detail, "error": "validation_error"})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance."""
    configure_logging()
    app = FastAPI(title="Exam Review Scheduler API", version="0.1.0")

    configured_proxies = [value for value in settings.trusted_proxy_ips if value] or ["127.0.0.1"]
    proxy_argument = ",".join(configured_proxies)
    configured_origins = list(settings.allowed_cors_origins)
    allow_credentials = bool(configured_origins)
    if not configured_origins:
        configured_origins = ["*"]

    # ワイルドカード許可時は資格情報付き CORS を無効にする
    app.add_middleware(
        CORSMiddleware,
        allow_origins=configured_origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Middleware stack (inner → outer): CORS → RequestID → AccessLog → RateLimit → ProxyHeaders
    # Starlette では後から追加したミドルウェアが外側で実行される。
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(AccessLogAndMetricsMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        ip_capacity_per_minute=settings.rate_limit_per_min_ip,
        user_capacity_per_minute=settings.rate_limit_per_min_user,
    )
    app.add_middleware(
        ProxyHeadersMiddleware,
        **{_PROXY_MIDDLEWARE_PARAM: proxy_argument},
    )

    app.add_exception_handler(SchedulerError, _handle_scheduler_error)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_request_validation)  # type: ignore[arg-type]

    if settings.disable_session_auth:
        logger.warning("session_auth_disabled", reason="config_flag")

    app.include_router(review.router, prefix="/api/review")
    app.include_router(health.router)
    return app


app = create_app()
