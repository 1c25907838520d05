"""
api/main.py -- FastAPI application factory for the SessionGate auth service.

Exposes the session lifecycle (register, login, refresh, logout, validate,
anonymous, me) over HTTP. Sits behind the gateway in production; every
route except /auth/me is on the gateway allow-list.

Run with:  uvicorn asgi:app --port 8081

Middleware stack (outermost to innermost):
  1. log_requests          -- method, path, status, latency, client
  2. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  3. CORSMiddleware        -- adds CORS headers for allowed browser origins
  4. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (engine, stores, token issuer, session service,
sweep task) and shutdown (cancel sweep task, dispose engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.anonymous import policy_from_name
from auth.codec import TokenCodec
from auth.errors import AuthError
from auth.refresh_store import RefreshTokenStore
from auth.service import SessionService
from auth.store import UserStore, make_engine
from auth.tokens import AccessTokenIssuer
from core.config import APP_VERSION, Settings, get_settings

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessiongate.api")

# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(service: SessionService, interval_seconds: int) -> None:
    """Delete expired refresh tokens every interval_seconds.

    The delete is blocking SQL, so it runs in a worker thread. A failed sweep
    is logged and retried on the next tick; CancelledError from shutdown
    propagates out of asyncio.sleep and ends the loop.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(service.sweep_expired_tokens)
        except Exception:
            logger.exception("Refresh token sweep failed")


def build_session_service(settings: Settings) -> SessionService:
    """Wire engine, stores, codec and issuer into a SessionService."""
    engine = make_engine(settings.database_url)
    codec = TokenCodec(settings.jwt_secret, settings.jwt_algorithm)
    return SessionService(
        users=UserStore(engine),
        refresh_tokens=RefreshTokenStore(engine, settings.refresh_ttl),
        issuer=AccessTokenIssuer(codec, settings.access_ttl),
        anonymous_policy=policy_from_name(settings.anonymous_policy, settings.bcrypt_rounds),
        bcrypt_rounds=settings.bcrypt_rounds,
    )


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None, session_service: SessionService | None = None) -> FastAPI:
    """Build the auth service app.

    session_service, when given, is used as-is and left open on shutdown;
    tests pass one wired to an in-memory database and a frozen clock.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Build the service graph on startup, tear it down on shutdown.

        Startup order matters: the sweep task references the service, so the
        service must exist first.
        """
        logger.info("SessionGate auth service starting up")
        service = session_service or build_session_service(settings)
        app.state.session_service = service
        logger.info(
            "Session service initialized (access ttl %ds, refresh ttl %ds, anonymous policy %s)",
            settings.access_token_expire_seconds,
            settings.refresh_token_expire_seconds,
            settings.anonymous_policy,
        )
        app.state.sweep_task = asyncio.create_task(_sweep_loop(service, settings.sweep_interval_seconds))

        yield

        app.state.sweep_task.cancel()
        if session_service is None:
            service.users.close()
        logger.info("SessionGate auth service shutdown complete")

    app = FastAPI(
        title="SessionGate Auth API",
        description="Access/refresh token issuance and session lifecycle.",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    # Starlette inserts each add_middleware() call at the front of the stack,
    # so register innermost-first: SlowAPI -> CORS -> TrustedHost.
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600,
    )
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_host_list)

    # SlowAPI looks for app.state.limiter by convention.
    limiter.enabled = settings.rate_limit_enabled
    app.state.limiter = limiter

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        ms = (time.perf_counter() - start) * 1000
        logger.info(
            "%s %s %d %.1fms %s",
            request.method,
            request.url.path,
            response.status_code,
            ms,
            request.client.host if request.client else "unknown",
        )
        return response

    app.include_router(auth_router, prefix="/api", tags=["Auth"])
    _register_exception_handlers(app)

    @app.get("/health", tags=["Health"])
    async def health() -> HealthResponse:
        """Return API liveness and current version."""
        return HealthResponse(version=APP_VERSION)

    return app


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        """Render AuthError subclasses with their own status and code.

        no-store because a 401 from a token endpoint must not be replayed
        from a cache either.
        """
        response = JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(error=ErrorDetail(code=exc.error_code, message=exc.message)).model_dump(),
        )
        response.headers["Cache-Control"] = "no-store"
        return response

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        """Return 429 with a structured error when a rate limit is exceeded."""
        retry_after = int(getattr(exc, "retry_after", 60))
        response = JSONResponse(
            status_code=429,
            content=ErrorResponse(
                error=ErrorDetail(
                    code="rate_limited",
                    message="Too many requests.",
                    detail=str(exc),
                )
            ).model_dump(),
        )
        response.headers["Retry-After"] = str(retry_after)
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Return 422 with structured error when request body or query params fail validation."""
        return JSONResponse(
            status_code=422,
            content=ErrorResponse(
                error=ErrorDetail(
                    code="validation_error",
                    message="Request validation failed.",
                    detail=str(exc.errors()),
                )
            ).model_dump(),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Return a structured error for all FastAPI/Starlette HTTP exceptions.

        Route handlers raise HTTPException with detail={"code", "message"}.
        When detail is already a structured dict, use it directly as the
        error field rather than stringifying it.
        """
        if isinstance(exc.detail, dict):
            return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=ErrorDetail(
                    code=f"http_{exc.status_code}",
                    message=str(exc.detail),
                )
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all handler for unexpected server errors.

        The raw exception goes to the log only, never to the response body.
        """
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error=ErrorDetail(
                    code="internal_error",
                    message="An unexpected error occurred.",
                )
            ).model_dump(),
        )
