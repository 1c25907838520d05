"""
gateway/main.py -- FastAPI application factory for the SessionGate gateway.

Run with:  uvicorn asgi:gateway --port 8080

Middleware stack (outermost to innermost):
  1. log_requests          -- one line per request, rejected ones included
  2. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  3. CORSMiddleware        -- answers preflights before any token check
  4. GatewayAuthMiddleware -- bearer token -> identity headers, or 401

Starlette inserts each add_middleware() call at the front of the stack, so
the calls below are made innermost-first.

Lifespan owns the shared httpx.AsyncClient used by the proxy router.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth.codec import TokenCodec
from auth.tokens import AccessTokenIssuer
from core.config import APP_VERSION, Settings, get_settings
from gateway.filter import GatewayAuthMiddleware
from gateway.proxy import router as proxy_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessiongate.gateway")


def create_gateway_app(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the gateway app.

    transport replaces the network layer of the upstream client; tests pass
    an httpx.MockTransport so no real service has to be running.
    """
    settings = settings or get_settings()
    issuer = AccessTokenIssuer(TokenCodec(settings.jwt_secret, settings.jwt_algorithm), settings.access_ttl)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("SessionGate gateway starting up (%d upstream services)", len(settings.service_routes))
        app.state.service_routes = dict(settings.service_routes)
        app.state.http_client = httpx.AsyncClient(
            timeout=settings.upstream_timeout_seconds,
            transport=transport,
        )

        yield

        await app.state.http_client.aclose()
        logger.info("SessionGate gateway shutdown complete")

    app = FastAPI(
        title="SessionGate Gateway",
        version=APP_VERSION,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    app.add_middleware(GatewayAuthMiddleware, issuer=issuer, allow_list=settings.allow_list)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600,
    )
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_host_list)

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

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"code": f"http_{exc.status_code}", "message": str(exc.detail)}},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": {"code": "internal_error", "message": "An unexpected error occurred."}},
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": APP_VERSION}

    app.include_router(proxy_router)
    return app
