"""
gateway/filter.py -- Bearer-token enforcement at the edge.

Pattern: Interceptor (pure ASGI middleware). Every HTTP request passes
through GatewayAuthMiddleware before routing:

  1. Client-supplied identity headers (X-User-Id, X-Username, X-User-Email)
     are stripped unconditionally. Only this filter may set them.
  2. Allow-listed path prefixes (login, register, health, ...) are forwarded
     without a token check.
  3. Everything else needs "Authorization: Bearer <token>". Missing or
     malformed header -> 401. Token that fails signature, structure or
     expiry -> 401 with the same envelope and a short message; the specific
     reason only goes to the log.
  4. On success the verified userId/username (and email, when present) are
     written as identity headers and the request continues downstream.

The filter never lets an exception escape to the downstream app: every
authentication failure ends here with a response.

Why pure ASGI instead of @app.middleware("http"): rewriting request headers
means replacing scope["headers"] before the app sees the scope, which the
BaseHTTPMiddleware wrapper does not expose cleanly.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from auth.dependencies import IDENTITY_HEADERS, USER_EMAIL_HEADER, USER_ID_HEADER, USERNAME_HEADER
from auth.errors import InvalidTokenError, MissingAuthHeaderError
from auth.tokens import AccessTokenIssuer

logger = logging.getLogger("sessiongate.gateway")

_IDENTITY_HEADER_KEYS = frozenset(h.lower().encode("latin-1") for h in IDENTITY_HEADERS)

_INVALID_TOKEN_MESSAGE = "Invalid or expired token"


def is_allow_listed(path: str, allow_list: Iterable[str]) -> bool:
    """Prefix match, e.g. "/api/auth/login" also covers "/api/auth/login/"."""
    return any(path.startswith(prefix) for prefix in allow_list)


def bearer_token(headers: Headers) -> str:
    """Return the token from an Authorization: Bearer header.

    Raises MissingAuthHeaderError when the header is absent, uses another
    scheme, or carries an empty / whitespace-containing token.
    """
    value = headers.get("authorization", "")
    if not value.startswith("Bearer "):
        raise MissingAuthHeaderError()
    token = value[len("Bearer ") :].strip()
    if not token or " " in token:
        raise MissingAuthHeaderError()
    return token


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"error": {"code": "unauthorized", "message": message}},
        headers={"WWW-Authenticate": "Bearer"},
    )


class GatewayAuthMiddleware:
    """Turn a bearer token into trusted identity headers, or stop the request.

    Usage:
        app.add_middleware(GatewayAuthMiddleware, issuer=issuer, allow_list=settings.allow_list)
    """

    def __init__(self, app: ASGIApp, issuer: AccessTokenIssuer, allow_list: Iterable[str] = ()) -> None:
        self.app = app
        self.issuer = issuer
        self.allow_list = tuple(allow_list)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope["path"]
        headers = [(k, v) for k, v in scope["headers"] if k.lower() not in _IDENTITY_HEADER_KEYS]

        if is_allow_listed(path, self.allow_list):
            await self.app(dict(scope, headers=headers), receive, send)
            return

        try:
            claims = self.issuer.verify(bearer_token(Headers(scope=scope)))
        except MissingAuthHeaderError as exc:
            logger.info("Rejected %s %s: no bearer token", scope["method"], path)
            await _unauthorized(exc.message)(scope, receive, send)
            return
        except InvalidTokenError as exc:
            logger.info("Rejected %s %s: %s", scope["method"], path, exc.error_code)
            await _unauthorized(_INVALID_TOKEN_MESSAGE)(scope, receive, send)
            return

        headers.append((USER_ID_HEADER.lower().encode("latin-1"), claims.user_id.encode("utf-8")))
        headers.append((USERNAME_HEADER.lower().encode("latin-1"), claims.username.encode("utf-8")))
        if claims.email:
            headers.append((USER_EMAIL_HEADER.lower().encode("latin-1"), claims.email.encode("utf-8")))

        await self.app(dict(scope, headers=headers), receive, send)
