"""
auth/dependencies.py -- FastAPI Depends() helpers for services behind the gateway.

Trust model:
  The gateway is the only place that verifies access tokens. It strips any
  client-supplied identity headers and sets X-User-Id / X-Username /
  X-User-Email from the verified claims. Services behind it read those
  headers as ground truth and never look at the bearer token again.

  Consequently these helpers must only be used by services that are reachable
  exclusively through the gateway.

identity_from_headers() is the soft variant (returns None when absent).
require_identity() wraps it and raises HTTP 401.
get_session_service() hands route handlers the SessionService built at startup.

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system. No imports from api/ or gateway/.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request

from auth.service import SessionService

USER_ID_HEADER = "X-User-Id"
USERNAME_HEADER = "X-Username"
USER_EMAIL_HEADER = "X-User-Email"

IDENTITY_HEADERS = (USER_ID_HEADER, USERNAME_HEADER, USER_EMAIL_HEADER)


@dataclass(frozen=True)
class Identity:
    user_id: str
    username: str
    email: str | None = None


def identity_from_headers(request: Request) -> Identity | None:
    """Read the gateway-propagated identity. No signature check by design."""
    user_id = request.headers.get(USER_ID_HEADER, "").strip()
    username = request.headers.get(USERNAME_HEADER, "").strip()
    if not user_id or not username:
        return None
    email = request.headers.get(USER_EMAIL_HEADER, "").strip() or None
    return Identity(user_id=user_id, username=username, email=email)


def require_identity(request: Request) -> Identity:
    """Require gateway identity headers. Raises HTTP 401 if they are missing.

    Use as a FastAPI dependency:
        @router.get("/projects")
        def route(identity: Identity = Depends(require_identity)): ...
    """
    identity = identity_from_headers(request)
    if identity is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return identity


def get_session_service(request: Request) -> SessionService:
    return request.app.state.session_service
