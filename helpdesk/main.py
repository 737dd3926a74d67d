"""Help desk API: FastAPI application entry point."""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from helpdesk.config import DEFAULT_JWT_SECRET, settings
from helpdesk.database import engine, init_db
from helpdesk.errors import register_error_handlers
from helpdesk.logging_config import bind_request, setup_logging, unbind_request
from helpdesk.observability.metrics import metrics
from helpdesk.services import mailer
from helpdesk.workers.mail_dispatcher import dispatcher

from helpdesk.api.admin import router as admin_router
from helpdesk.api.attachments import router as attachments_router
from helpdesk.api.auth import router as auth_router
from helpdesk.api.categories import router as categories_router
from helpdesk.api.comments import router as comments_router
from helpdesk.api.notifications import router as notifications_router
from helpdesk.api.organizations import router as organizations_router
from helpdesk.api.reports import router as reports_router
from helpdesk.api.statuses import router as statuses_router
from helpdesk.api.tickets import router as tickets_router
from helpdesk.api.time_entries import router as time_entries_router

logger = logging.getLogger("helpdesk")

VERSION = "0.3.0"

limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit_default])

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}
HSTS_HEADER = "max-age=31536000; includeSubDomains"


def _startup_checks() -> None:
    """Log warnings for misconfigured or missing settings."""
    startup_errors: list[str] = []

    if settings.jwt_secret == DEFAULT_JWT_SECRET:
        msg = "JWT_SECRET is using the default value; set a strong secret for production"
        logger.warning(msg)
        if settings.is_production:
            startup_errors.append(msg)

    if settings.is_production and not settings.cors_origins_list:
        msg = "APP_ENV=production but CORS_ORIGINS is empty"
        logger.warning(msg)
        startup_errors.append(msg)

    if settings.is_production and "sqlite" in settings.database_url:
        logger.warning("APP_ENV=production with SQLite; use PostgreSQL for reliability")

    try:
        transport = mailer.check_configuration(settings)
        logger.info("Email transport: %s", transport)
    except mailer.MailConfigurationError as exc:
        logger.warning("Email disabled: %s", exc)
        if settings.is_production:
            startup_errors.append(str(exc))

    if not settings.main_app_host:
        logger.info("MAIN_APP_HOST not set; every multi-label host is treated as a tenant subdomain")

    if settings.strict_startup_validation and startup_errors:
        raise RuntimeError("Startup validation failed: " + " | ".join(startup_errors))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    setup_logging(settings.log_level)
    _startup_checks()

    await init_db()
    logger.info("Help desk API started (env=%s)", settings.app_env)

    await dispatcher.start()

    yield

    await dispatcher.stop()
    logger.info("Help desk API shutting down")


app = FastAPI(
    title="Help Desk",
    description="Multi-tenant help-desk and ticketing API",
    version=VERSION,
    lifespan=lifespan,
)

register_error_handlers(app)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Bind the request id for logging, time the request and stamp response headers."""
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    bound = bind_request(request_id, request.headers.get("x-organization-slug"))
    started = time.perf_counter()
    try:
        response: Response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        route = getattr(request.scope.get("route"), "path", None)
        metrics.observe_request(route, response.status_code, elapsed_ms)
        logger.info(
            "%s %s -> %s",
            request.method,
            request.url.path,
            response.status_code,
            extra={"route": route, "status_code": response.status_code, "duration_ms": elapsed_ms},
        )
    finally:
        unbind_request(bound)

    response.headers["X-Request-ID"] = request_id
    response.headers.update(SECURITY_HEADERS)
    if settings.is_production:
        response.headers["Strict-Transport-Security"] = HSTS_HEADER
    return response


app.include_router(auth_router)
app.include_router(organizations_router)
app.include_router(tickets_router)
app.include_router(comments_router)
app.include_router(attachments_router)
app.include_router(time_entries_router)
app.include_router(categories_router)
app.include_router(statuses_router)
app.include_router(notifications_router)
app.include_router(reports_router)
app.include_router(admin_router)


# ── Health ────────────────────────────────────────────────────

async def _database_reachable() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("database readiness check failed")
        return False
    return True


async def _checks() -> dict[str, bool]:
    return {"database": await _database_reachable(), "mail_dispatcher": dispatcher.running}


@app.get("/")
async def root():
    return {"service": "helpdesk-api", "version": VERSION, "health": "/api/health", "docs": "/docs"}


@app.get("/api/health")
async def health_check():
    checks = await _checks()
    return {
        "status": "healthy" if checks["database"] else "degraded",
        "service": "helpdesk",
        "version": VERSION,
        "checks": checks,
        "mail_pending": dispatcher.pending,
    }


@app.get("/api/health/live")
async def liveness_check():
    return {"status": "alive", "service": "helpdesk"}


@app.get("/api/health/ready")
async def readiness_check(response: Response):
    """503 until both the database answers and the mail worker runs."""
    checks = await _checks()
    ready = all(checks.values())
    if not ready:
        response.status_code = 503
    return {"status": "ready" if ready else "not_ready", "checks": checks}


@app.get("/api/metrics")
async def get_metrics():
    return {"service": "helpdesk", "version": VERSION, "metrics": metrics.snapshot()}
