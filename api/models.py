"""
API request and response models for the SessionGate auth service.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format is camelCase (accessToken, refreshToken, expiresIn, ...), which
is what existing web and mobile clients send and expect. Python attributes
stay snake_case; alias_generator=to_camel maps between the two and
populate_by_name=True lets tests and handlers build models by field name.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import AccessClaims, Principal, SessionTokens

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9_.-]+$"
# Deliberately loose: one @, something on each side, a dot in the domain.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# bcrypt ignores everything past 72 bytes; refuse instead of silently truncating.
_BCRYPT_MAX_BYTES = 72


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > _BCRYPT_MAX_BYTES:
        raise ValueError(f"Password must be at most {_BCRYPT_MAX_BYTES} bytes.")
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_CamelModel):
    """Request body for POST /api/auth/register."""

    username: str = Field(min_length=1, max_length=50, pattern=USERNAME_PATTERN)
    email: str = Field(min_length=3, max_length=100, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class LoginRequest(_CamelModel):
    """Request body for POST /api/auth/login.

    The identifier may be sent as "identifier", "username" or "email"; it is
    matched against both the username and the email column.
    """

    identifier: str = Field(
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("identifier", "username", "email"),
    )
    password: str = Field(min_length=1)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class RefreshRequest(_CamelModel):
    refresh_token: str = Field(min_length=1)


class LogoutRequest(_CamelModel):
    # Missing, null and empty are all accepted: logout never fails on the token value.
    refresh_token: Optional[str] = None


class ValidateRequest(_CamelModel):
    token: str = ""


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class SessionResponse(_CamelModel):
    """Body returned by register, login, refresh and anonymous login."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    username: str
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    is_anonymous: bool = False
    message: str

    @classmethod
    def from_session(cls, session: SessionTokens, message: str) -> "SessionResponse":
        """Factory Method: SessionTokens (domain) -> SessionResponse (wire)."""
        return cls(
            user_id=session.principal.id,
            username=session.principal.username,
            access_token=session.access_token,
            refresh_token=session.refresh_token.token,
            expires_in=session.expires_in,
            is_anonymous=session.principal.is_anonymous,
            message=message,
        )


class ValidateResponse(_CamelModel):
    """Result of token validation. Identity fields only when isValid is true."""

    model_config = ConfigDict(frozen=True)

    is_valid: bool
    user_id: Optional[str] = None
    username: Optional[str] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_claims(cls, claims: Optional[AccessClaims]) -> "ValidateResponse":
        if claims is None:
            return cls(is_valid=False)
        return cls(
            is_valid=True,
            user_id=claims.user_id,
            username=claims.username,
            expires_at=claims.expires_at,
        )


class MeResponse(_CamelModel):
    """Profile of the principal named by the gateway identity headers."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    username: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_anonymous: bool = False
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_principal(cls, principal: Principal) -> "MeResponse":
        return cls(
            user_id=principal.id,
            username=principal.username,
            email=principal.email,
            first_name=principal.first_name,
            last_name=principal.last_name,
            is_anonymous=principal.is_anonymous,
            created_at=principal.created_at,
            last_login_at=principal.last_login_at,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
