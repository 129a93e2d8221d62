"""
main.py
FastAPI application entry point.
Registers all routers, middleware, startup/shutdown events.

Runtime features:
- Request id and process-time headers on every response
- Per-request timeout (504) with transaction rollback before commit
- Unauthenticated per-IP rate limiting in Redis
- Uniform error envelope for domain, HTTP and validation errors
- Prometheus metrics
"""

import asyncio
import json
import logging
import os
import time
import traceback
import uuid
from contextlib import asynccontextmanager
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from redis.exceptions import RedisError
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import redis_client as redis_module
from config.database import AsyncSessionLocal, close_db, init_db
from config.redis_client import RedisCache, close_redis, init_redis
from config.settings import settings
from services.payment.gateway import close_payment_gateway
from shared.exceptions import DomainError

# Service routers
from services.booking.router import router as booking_router
from services.message.router import router as message_router
from services.payment.router import router as payment_router
from services.review.router import router as review_router
from services.tour.router import router as tour_router
from services.user.router import router as user_router
from services.wishlist.router import router as wishlist_router


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


handler = logging.StreamHandler()
handler.setFormatter(JSONFormatter())
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    handlers=[handler],
    force=True,
)
logger = logging.getLogger(__name__)

# Paths exempt from the unauthenticated rate limit
RATE_LIMIT_SKIP_PATHS = {
    "/health",
    "/metrics",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/payments/success",
    "/payments/fail",
    "/payments/cancel",
}


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.APP_ENV})")

    await init_db()
    logger.info("Database connected")

    await init_redis()
    logger.info("Redis connected")

    yield

    await close_payment_gateway()
    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── Error Envelope ────────────────────────────────────────────

def _error_response(request: Request, status_code: int, message, **extra) -> JSONResponse:
    content = {
        "success": False,
        "message": message,
        "request_id": getattr(request.state, "request_id", None),
    }
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


# ── Request Timeout ───────────────────────────────────────────

class TimeoutMiddleware:
    """
    Answer 504 when a request exceeds REQUEST_TIMEOUT_SECONDS.

    The handler is cancelled only while it has not committed, so its
    transaction rolls back. Once the session has committed (or the response
    has started) the handler runs to completion and the client gets the
    real result of a write that is already durable.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        state = scope.setdefault("state", {})
        started = False

        async def send_wrapper(message):
            nonlocal started
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        task = asyncio.ensure_future(self.app(scope, receive, send_wrapper))
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=settings.REQUEST_TIMEOUT_SECONDS)
            return
        except asyncio.TimeoutError:
            if started or state.get("committed"):
                logger.warning(f"Request overran its timeout after committing: {scope['path']}")
                await task
                return
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        request = Request(scope)
        logger.warning(f"Request timed out: {request.method} {request.url.path}")
        await _error_response(request, 504, "Request timed out")(scope, receive, send)


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Tour Booking Marketplace API

- **Tours**: guide listings, search with filters, public detail pages
- **Bookings**: PENDING → CONFIRMED → COMPLETED lifecycle with an audit trail
- **Payments**: SSLCommerz hosted checkout, reconciled from gateway callbacks
- **Reviews**: one per completed booking, aggregated into tour ratings
- **Wishlist** and **Messages** for tourists and guides

### Authentication
Protected endpoints require `Authorization: Bearer <access_token>`.

### Roles
- `TOURIST`: book tours, pay, review, keep a wishlist
- `GUIDE`: publish tours, confirm and complete bookings
- `ADMIN`: full platform access and account moderation
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (order matters — last added is outermost) ───────
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=["*"])
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # ── Custom Middleware ──────────────────────────────────────────

    app.add_middleware(TimeoutMiddleware)

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Unauthenticated clients: RATE_LIMIT_UNAUTH_PER_MINUTE per IP.
        Authenticated traffic is limited upstream. Gateway callbacks and
        health/metrics are never limited.
        """
        client = redis_module.redis_client
        if (
            client is None
            or request.url.path in RATE_LIMIT_SKIP_PATHS
            or request.headers.get("Authorization", "").startswith("Bearer ")
        ):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        try:
            allowed = await RedisCache(client).check_rate_limit(
                f"rate:unauth:{client_ip}", settings.RATE_LIMIT_UNAUTH_PER_MINUTE
            )
        except RedisError as e:
            # Fail open when Redis is down
            logger.error(f"Rate limit check failed: {e}")
            allowed = True

        if not allowed:
            logger.warning(f"Rate limit exceeded for IP {client_ip}")
            response = _error_response(request, 429, "Rate limit exceeded. Please slow down.")
            response.headers["Retry-After"] = "60"
            return response
        return await call_next(request)

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for distributed tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        if exc.status_code >= 500:
            logger.error(f"[{getattr(request.state, 'request_id', None)}] {type(exc).__name__}: {exc.message}")
        return _error_response(request, exc.status_code, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        response = _error_response(request, exc.status_code, exc.detail)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
            for e in exc.errors()
        ]
        return _error_response(request, 422, "Validation error", errors=errors)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Exception: {exc}", exc_info=True)

        if settings.DEBUG and not settings.is_production:
            return _error_response(
                request, 500, str(exc), stack=traceback.format_exc()
            )
        return _error_response(request, 500, "An internal server error occurred")

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception:
            logger.exception("Health check: database unreachable")
            checks["database"] = "error"
            checks["status"] = "degraded"

        try:
            if redis_module.redis_client:
                await redis_module.redis_client.ping()
            checks["redis"] = "ok"
        except RedisError:
            logger.exception("Health check: redis unreachable")
            checks["redis"] = "error"
            checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    # Register all service routers
    app.include_router(user_router)
    app.include_router(tour_router)
    app.include_router(booking_router)
    app.include_router(payment_router)
    app.include_router(review_router)
    app.include_router(wishlist_router)
    app.include_router(message_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
