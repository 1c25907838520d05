"""
api/routes/v1/auth.py -- Session lifecycle REST endpoints.

Routes:
  POST /api/auth/register    -- create principal, open first session; 201
  POST /api/auth/login       -- username-or-email + password; opens a session
  POST /api/auth/refresh     -- trade a refresh token for a fresh token pair
  POST /api/auth/logout      -- revoke a refresh token; always 200
  POST /api/auth/validate    -- check an access token from the body
  GET  /api/auth/validate    -- check an access token from Bearer header or ?token=
  POST /api/auth/anonymous   -- guest session under the configured anonymous policy
  GET  /api/auth/me          -- profile of the caller (gateway identity headers)

Security:
  POST /login is rate-limited per client IP (settings.login_rate_limit).
  Timing equalization lives in SessionService.login(); never inline a
      user lookup + verify_password() here.
  Cache-Control: no-store on every response that carries tokens.
  Failure messages are generic: AuthError subclasses are rendered by the
      handler in api/main.py and never say which half of a credential failed.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    LoginRequest,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    SessionResponse,
    ValidateRequest,
    ValidateResponse,
)
from auth.dependencies import Identity, get_session_service, require_identity
from auth.models import SessionTokens
from auth.service import SessionService

# Auth policy:
# - everything except /auth/me is on the gateway allow-list and needs no token
# - GET /auth/me trusts the X-User-Id header set by the gateway (require_identity)
router = APIRouter()


def _session_response(session: SessionTokens, message: str, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=SessionResponse.from_session(session, message).model_dump(by_alias=True),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Session flows
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=SessionResponse, status_code=201)
def register(body: RegisterRequest, service: SessionService = Depends(get_session_service)) -> JSONResponse:
    """Create a principal and return its first token pair.

    Username and email are both unique; a clash on either is a 409.
    """
    session = service.register(
        username=body.username,
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return _session_response(session, "User registered successfully", status_code=201)


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=SessionResponse)
def login(
    request: Request,
    body: LoginRequest,
    service: SessionService = Depends(get_session_service),
) -> JSONResponse:
    """Authenticate with username or email plus password.

    Unknown identifier and wrong password produce the same 401
    ("bad_credentials") after the same amount of bcrypt work.
    """
    session = service.login(body.identifier, body.password)
    return _session_response(session, "Login successful")


@router.post("/auth/refresh", response_model=SessionResponse)
def refresh(body: RefreshRequest, service: SessionService = Depends(get_session_service)) -> JSONResponse:
    """Issue a new access token and a new refresh token.

    The presented refresh token is superseded by the new one and can not be
    used again.
    """
    session = service.refresh(body.refresh_token)
    return _session_response(session, "Token refreshed successfully")


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    body: Optional[LogoutRequest] = None,
    service: SessionService = Depends(get_session_service),
) -> MessageResponse:
    """Revoke the refresh token. A missing body or an unknown, expired or revoked token still gets 200."""
    refresh_token = body.refresh_token if body is not None else None
    service.logout(refresh_token or "")
    return MessageResponse(message="Logged out successfully")


@router.post("/auth/anonymous", response_model=SessionResponse)
def anonymous(service: SessionService = Depends(get_session_service)) -> JSONResponse:
    """Open a guest session. Guests can refresh and log out like anyone else."""
    session = service.anonymous_session()
    return _session_response(session, "Anonymous login successful")


# ---------------------------------------------------------------------------
# Token validation
# ---------------------------------------------------------------------------


@router.post("/auth/validate", response_model=ValidateResponse, response_model_exclude_none=True)
def validate_body(body: ValidateRequest, service: SessionService = Depends(get_session_service)) -> ValidateResponse:
    """Report whether an access token is currently valid and whose it is."""
    return ValidateResponse.from_claims(service.inspect(body.token))


@router.get("/auth/validate", response_model=ValidateResponse, response_model_exclude_none=True)
def validate_header(
    request: Request,
    token: Optional[str] = None,
    service: SessionService = Depends(get_session_service),
) -> ValidateResponse:
    """Same as POST /auth/validate, token taken from the Authorization header or ?token=."""
    header = request.headers.get("authorization", "")
    if header.startswith("Bearer "):
        token = header[len("Bearer ") :].strip()
    if not token:
        raise HTTPException(
            status_code=400,
            detail={"code": "missing_token", "message": "Provide a Bearer token or a token query parameter."},
        )
    return ValidateResponse.from_claims(service.inspect(token))


# ---------------------------------------------------------------------------
# Authenticated endpoints (behind the gateway)
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(
    identity: Identity = Depends(require_identity),
    service: SessionService = Depends(get_session_service),
) -> MeResponse:
    """Return the profile of the principal the gateway vouched for."""
    principal = service.users.get_by_id(identity.user_id)
    if principal is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return MeResponse.from_principal(principal)
