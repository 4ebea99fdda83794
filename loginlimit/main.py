"""
FastAPI application exposing the login limiter to the host authentication pipeline.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from loginlimit import __version__
from loginlimit.auth import require_token
from loginlimit.cleanup import prune
from loginlimit.config import Settings, get_settings
from loginlimit.db import Database, PostgresAttemptStore, PostgresBanStore
from loginlimit.errors import StorageError
from loginlimit.models import BanStatus, FailedLoginRequest, FailedLoginResult, PruneResult
from loginlimit.rate_limit import RateLimiter
from loginlimit.stores import InMemoryAttemptStore, InMemoryBanStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# How often a delayed response checks whether the client went away
DISCONNECT_POLL_SECONDS = 0.5


# ---------- Security headers middleware ----------


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        return response


# ---------- App setup ----------


def build_stores(settings: Settings, app: FastAPI) -> None:
    """Attach attempt/ban stores for the configured backend to app.state."""
    if settings.database_url:
        db = Database(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
        )
        db.init_schema()
        app.state.db = db
        app.state.attempts = PostgresAttemptStore(db)
        app.state.bans = PostgresBanStore(db)
    else:
        logger.warning("No database configured - attempts and bans are kept in memory")
        app.state.db = None
        app.state.attempts = InMemoryAttemptStore()
        app.state.bans = InMemoryBanStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting login limiter...")
    get_settings.cache_clear()
    # Invalid throttling config raises ConfigurationError and aborts startup
    settings = get_settings()
    logger.info(
        "max_retries=%d find_time=%ds storage=%s",
        settings.max_retries,
        settings.find_time_seconds,
        settings.storage_backend,
    )

    build_stores(settings, app)
    app.state.limiter = RateLimiter(app.state.attempts, app.state.bans, settings)

    yield

    if app.state.db is not None:
        app.state.db.close()
    logger.info("Login limiter stopped")


app = FastAPI(
    title="Login Limiter",
    description="Brute-force protection for login attempts",
    version=__version__,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)

app.add_middleware(SecurityHeadersMiddleware)


def get_limiter(request: Request) -> RateLimiter:
    """FastAPI dependency: the limiter built at startup."""
    return request.app.state.limiter


async def suspend(request: Request, seconds: float) -> bool:
    """
    Hold this response for `seconds` without blocking other requests.

    Returns False if the client disconnected before the delay elapsed.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + seconds
    while (remaining := deadline - loop.time()) > 0:
        if await request.is_disconnected():
            logger.info("Client disconnected during login delay")
            return False
        await asyncio.sleep(min(DISCONNECT_POLL_SECONDS, remaining))
    return True


# ---------- API routes ----------


@app.post(
    "/api/login-failures",
    response_model=FailedLoginResult,
    dependencies=[Depends(require_token)],
)
async def login_failure(
    request: Request,
    body: FailedLoginRequest,
    limiter: RateLimiter = Depends(get_limiter),
):
    """Record a failed login reported by the host pipeline."""
    result = await run_in_threadpool(
        limiter.record_failed_login, body.ip, body.username, body.surface
    )
    if result.delay_seconds > 0:
        await suspend(request, result.delay_seconds)
    return result


@app.get("/api/bans/check", response_model=BanStatus, dependencies=[Depends(require_token)])
async def check_ban(
    ip: str | None = None,
    username: str | None = None,
    limiter: RateLimiter = Depends(get_limiter),
):
    """Report whether an IP and/or username is currently banned."""
    if ip is None and not username:
        raise HTTPException(status_code=400, detail="ip or username is required")

    ip_banned, username_banned = await run_in_threadpool(limiter.is_banned, ip, username)
    return BanStatus(
        banned=ip_banned or username_banned,
        ip_banned=ip_banned,
        username_banned=username_banned,
    )


@app.post(
    "/api/maintenance/prune",
    response_model=PruneResult,
    dependencies=[Depends(require_token)],
)
async def prune_records(request: Request):
    """Delete attempts outside the findtime window and lapsed bans."""
    state = request.app.state
    return await run_in_threadpool(prune, state.attempts, state.bans, get_settings())


@app.get("/api/health")
async def health(request: Request):
    """Health check endpoint (no auth required)."""
    settings = get_settings()
    db: Database | None = getattr(request.app.state, "db", None)
    if db is None:
        return {"status": "healthy", "storage": settings.storage_backend}

    db_ok = await run_in_threadpool(db.test_connection)
    return {
        "status": "healthy" if db_ok else "degraded",
        "storage": settings.storage_backend,
        "database": "connected" if db_ok else "disconnected",
    }


# ---------- Exception handlers ----------


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    """Storage failures fail the rate-limit check; the host decides open/closed."""
    logger.error("Storage error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Return HTTP exceptions as JSON."""
    if exc.status_code >= 500:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": "Internal server error"},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
