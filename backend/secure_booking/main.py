import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from secure_booking.api.problem_details import (
    PROBLEM_TYPE_DOMAIN,
    PROBLEM_TYPE_RATE_LIMIT,
    PROBLEM_TYPE_SERVER,
    PROBLEM_TYPE_UNAVAILABLE,
    PROBLEM_TYPE_VALIDATION,
    problem_details,
)
from secure_booking.api.routes_admin import router as admin_router
from secure_booking.api.routes_bookings import router as bookings_router
from secure_booking.api.routes_confirmations import router as confirmations_router
from secure_booking.api.routes_customers import router as customers_router
from secure_booking.api.routes_health import router as health_router
from secure_booking.api.routes_holds import router as holds_router
from secure_booking.domain.errors import BookingError, DomainError, LockTimeout
from secure_booking.infra.db import RETRYABLE_ERRORS, dispose_engine, get_session_factory
from secure_booking.infra.logging import clear_log_context, configure_logging, update_log_context
from secure_booking.infra.metrics import configure_metrics, metrics
from secure_booking.infra.security import RateLimiter, resolve_client_key
from secure_booking.infra.tracing import configure_tracing, instrument_fastapi
from secure_booking.services import build_app_services
from secure_booking.settings import settings

logger = logging.getLogger(__name__)


def _bucket_for_request(request: Request) -> str:
    path = request.url.path or ""
    if path.startswith("/v1/admin"):
        return "admin"
    if path == "/v1/holds" and request.method == "POST":
        return "holds"
    if path.startswith("/v1/confirmations"):
        return "confirmations"
    if path.startswith("/v1/customers"):
        return "customers"
    if path.startswith("/v1/bookings") or path.startswith("/v1/holds"):
        return "bookings"
    return "other"


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        logger = logging.getLogger("secure_booking.request")
        start = time.time()
        request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
        if not request_id:
            request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)
        span = trace.get_current_span()
        if span and span.is_recording():
            span.set_attribute("request_id", request_id)

        response = None
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            tenant_id = getattr(request.state, "tenant_id", None)
            if tenant_id is not None:
                update_log_context(tenant_id=str(tenant_id))
            latency_ms = int((time.time() - start) * 1000)
            update_log_context(status_code=status_code, latency_ms=latency_ms)
            logger.info("request", extra={"latency_ms": latency_ms})
            if response is not None:
                response.headers.setdefault("X-Request-ID", request_id)
            clear_log_context()


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI, metrics_client) -> None:
        super().__init__(app)
        self.metrics = metrics_client

    async def dispatch(self, request: Request, call_next: Callable):
        route_label = "unmatched"
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            # Route templates only; raw paths would put customer fingerprints in labels.
            route = request.scope.get("route")
            route_label = getattr(route, "path", route_label)
            duration = time.perf_counter() - start
            self.metrics.record_http_latency(request.method, route_label, status_code, duration)
            self.metrics.record_http_request(request.method, route_label, status_code)
            if status_code >= 500:
                self.metrics.record_http_5xx(request.method, route_label)
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI, limiter: RateLimiter, app_settings) -> None:
        super().__init__(app)
        self.limiter = limiter
        self.app_settings = app_settings
        self.exempt_paths = {"/healthz", "/readyz", "/metrics"}

    async def dispatch(self, request: Request, call_next: Callable):
        path = request.url.path.rstrip("/") or "/"
        if request.method == "OPTIONS" or path in self.exempt_paths:
            return await call_next(request)

        client = resolve_client_key(
            request,
            trust_proxy_headers=self.app_settings.trust_proxy_headers,
            trusted_proxy_ips=self.app_settings.trusted_proxy_ips,
            trusted_proxy_cidrs=self.app_settings.trusted_proxy_cidrs,
        )
        bucket = _bucket_for_request(request)
        if not await self.limiter.allow(f"{bucket}:{client}"):
            metrics.record_rate_limit_block(bucket)
            logger.warning(
                "rate_limit_blocked",
                extra={
                    "extra": {
                        "request_id": getattr(request.state, "request_id", None),
                        "bucket": bucket,
                        "limit_per_minute": self.app_settings.rate_limit_per_minute,
                    }
                },
            )
            return problem_details(
                request=request,
                status=429,
                title="Too Many Requests",
                detail="Rate limit exceeded",
                type_=PROBLEM_TYPE_RATE_LIMIT,
                headers={"Retry-After": "60"},
            )
        return await call_next(request)


def create_app(app_settings, *, tracer_provider=None) -> FastAPI:
    if tracer_provider is None:
        configure_tracing(service_name=app_settings.app_name)
    configure_logging()
    metrics_client = configure_metrics(app_settings.metrics_enabled)
    services = build_app_services(app_settings, metrics=metrics_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state_services = getattr(app.state, "services", None) or services
        app.state.services = state_services
        app.state.rate_limiter = getattr(app.state, "rate_limiter", None) or state_services.rate_limiter
        app.state.metrics = getattr(app.state, "metrics", None) or state_services.metrics
        app.state.app_settings = getattr(app.state, "app_settings", app_settings)
        app.state.db_session_factory = getattr(app.state, "db_session_factory", None) or get_session_factory()
        app.state.confirmation_dispatcher = (
            getattr(app.state, "confirmation_dispatcher", None) or state_services.confirmation_dispatcher
        )
        yield
        await app.state.rate_limiter.close()
        await dispose_engine()

    app = FastAPI(title="Secure Booking", version="1.0.0", lifespan=lifespan)
    app.state.app_settings = app_settings

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware, metrics_client=metrics_client)
    app.add_middleware(RateLimitMiddleware, limiter=services.rate_limiter, app_settings=app_settings)
    app.add_middleware(RequestIdMiddleware)

    # OTel instrumentation must be added last so it wraps all middleware.
    instrument_fastapi(app, tracer_provider=tracer_provider)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = error.get("loc", [])
            field = ".".join(str(part) for part in loc if part not in {"body", "query", "path"}) or "body"
            errors.append({"field": field, "message": error.get("msg", "Invalid value")})
        return problem_details(
            request=request,
            status=422,
            title="Validation Error",
            detail="Request validation failed",
            errors=errors,
            type_=PROBLEM_TYPE_VALIDATION,
        )

    @app.exception_handler(BookingError)
    async def booking_exception_handler(request: Request, exc: BookingError):
        if exc.category == "infrastructure":
            logger.warning("booking_infrastructure_error", extra={"extra": {"code": exc.code}})
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.title,
            detail=exc.detail,
            errors=exc.errors or [],
            type_=exc.type,
            code=exc.code,
            headers={"Retry-After": "2"} if isinstance(exc, LockTimeout) else None,
        )

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        return problem_details(
            request=request,
            status=400,
            title=exc.title,
            detail=exc.detail,
            errors=exc.errors or [],
            type_=exc.type or PROBLEM_TYPE_DOMAIN,
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return problem_details(
            request=request,
            status=422,
            title="Validation Error",
            detail=str(exc),
            type_=PROBLEM_TYPE_VALIDATION,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.detail if isinstance(exc.detail, str) else "HTTP Error",
            detail=exc.detail if isinstance(exc.detail, str) else "Request failed",
            type_=PROBLEM_TYPE_DOMAIN if exc.status_code < 500 else PROBLEM_TYPE_SERVER,
            headers=exc.headers,
        )

    async def unavailable_handler(request: Request, exc: Exception):
        logger.warning(
            "database_unavailable",
            extra={"extra": {"path": request.url.path, "error_type": type(exc).__name__}},
        )
        return problem_details(
            request=request,
            status=503,
            title="Service Unavailable",
            detail="The booking service is temporarily unavailable. Please retry.",
            type_=PROBLEM_TYPE_UNAVAILABLE,
            headers={"Retry-After": "2"},
        )

    for error_cls in RETRYABLE_ERRORS:
        if not issubclass(error_cls, BookingError):
            app.add_exception_handler(error_cls, unavailable_handler)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None)
        error_type = type(exc).__name__
        update_log_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=500,
            error_type=error_type,
        )
        logger.exception(
            "unhandled_exception",
            extra={"request_id": request_id, "path": request.url.path, "error_type": error_type},
        )
        return problem_details(
            request=request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )

    app.include_router(health_router)
    app.include_router(holds_router)
    app.include_router(confirmations_router)
    app.include_router(customers_router)
    app.include_router(bookings_router)
    app.include_router(admin_router)
    if app_settings.metrics_enabled:
        from secure_booking.api.routes_metrics import router as metrics_router

        app.include_router(metrics_router)
    return app


app = create_app(settings)
