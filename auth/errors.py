"""
auth/errors.py -- Exception taxonomy for the authentication core.

Each AuthError subclass carries the HTTP status and the stable error code the
API layer puts in the error envelope, so route handlers never translate them
by hand. Messages are deliberately generic: nothing here should tell a caller
whether a username exists or why a refresh token was refused.

Refresh Token Store errors are NOT AuthErrors. They describe storage-level
outcomes (not found / revoked / expired) that SessionService logs and
re-raises as the single InvalidRefreshTokenError.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for authentication failures surfaced to callers."""

    status_code: int = 401
    error_code: str = "unauthorized"
    default_message: str = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidTokenError(AuthError):
    """Malformed, forged, or wrongly signed token."""

    error_code = "invalid_token"
    default_message = "Invalid token."


class ExpiredTokenError(InvalidTokenError):
    """Well-formed, correctly signed token past its exp claim."""

    error_code = "token_expired"
    default_message = "Token has expired."


class InvalidCredentialsError(AuthError):
    error_code = "bad_credentials"
    default_message = "Invalid credentials"


class ConflictError(AuthError):
    """Registration collided with an existing username or email."""

    status_code = 409
    error_code = "conflict"
    default_message = "Username or email already exists."


class InvalidRefreshTokenError(AuthError):
    """Refresh token refused. `reason` is for logs only, never for responses."""

    error_code = "invalid_refresh_token"
    default_message = "Invalid refresh token."

    def __init__(self, message: str | None = None, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class MissingAuthHeaderError(AuthError):
    default_message = "Missing or invalid Authorization header"


# ---------------------------------------------------------------------------
# Refresh Token Store outcomes
# ---------------------------------------------------------------------------


class RefreshTokenError(Exception):
    reason: str = "invalid"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or f"refresh token {self.reason}")


class RefreshTokenNotFoundError(RefreshTokenError):
    reason = "not_found"


class RefreshTokenRevokedError(RefreshTokenError):
    reason = "revoked"


class RefreshTokenExpiredError(RefreshTokenError):
    reason = "expired"
