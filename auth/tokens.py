"""
auth/tokens.py -- Access token issuance and the password primitive.

Security design decisions:
  Access tokens: AccessTokenIssuer mints HS256 JWTs through TokenCodec with
       a single configured TTL shared by every principal. There is no
       revocation list: once issued, an access token is valid until exp.
       Short lifetimes (15 minutes by default) are the mitigation.

  userId claim: tokens minted by older deployments carried the id as a
       number. _normalize_user_id() folds every numeric or string
       representation into one canonical string immediately after decode, so
       nothing past extract_user_id()/verify() ever sees a heterogeneous id.

  Passwords: bcrypt used directly (no passlib wrapper). dummy_hash() returns
       a cached hash with the same cost factor as real hashes; SessionService
       verifies against it when a login identifier does not exist so response
       time does not reveal which half of the credential was wrong.

Layer rule: no imports from api/ or gateway/.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import bcrypt

from auth.codec import TokenCodec
from auth.errors import ExpiredTokenError, InvalidTokenError
from auth.models import AccessClaims, Principal

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes; the API layer rejects longer
    passwords before they get here.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


@lru_cache(maxsize=8)
def dummy_hash(rounds: int = 12) -> str:
    """Timing-equalization hash, computed once per cost factor."""
    return hash_password("sessiongate_timing_dummy", rounds=rounds)


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------


def _normalize_user_id(value: Any) -> str:
    """Canonical string for a numeric or string userId claim.

    JSON true/false is neither a number nor a string id and is rejected; an
    empty string is treated the same as a missing claim.
    """
    if value is None:
        raise InvalidTokenError("Token carries no user id.")
    if isinstance(value, bool):
        raise InvalidTokenError("Token user id is malformed.")
    if isinstance(value, str):
        if not value:
            raise InvalidTokenError("Token carries no user id.")
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidTokenError("Token user id is malformed.")
        return str(int(value)) if value.is_integer() else str(value)
    raise InvalidTokenError("Token user id is malformed.")


def _from_timestamp(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class AccessTokenIssuer:
    """Mint and read access tokens for principals."""

    def __init__(self, codec: TokenCodec, ttl: timedelta) -> None:
        if ttl.total_seconds() <= 0:
            raise ValueError("Access token TTL must be positive.")
        self._codec = codec
        self._ttl = ttl

    @property
    def expires_in(self) -> int:
        """Access token lifetime in whole seconds, for API responses."""
        return int(self._ttl.total_seconds())

    def issue(self, principal: Principal) -> str:
        if principal.id is None:
            raise ValueError("Cannot issue a token for an unsaved principal.")
        claims: dict[str, Any] = {"userId": str(principal.id), "username": principal.username}
        if principal.email:
            claims["email"] = principal.email
        return self._codec.encode(claims, subject=principal.username, ttl=self._ttl)

    def extract_user_id(self, token: str) -> str:
        """Return the canonical user id of a correctly signed token.

        Does not look at exp; pair with is_valid() when freshness matters.
        """
        claims = self._codec.decode(token)
        return _normalize_user_id(claims.get("userId"))

    def is_valid(self, token: str) -> bool:
        try:
            claims = self._codec.decode(token)
        except InvalidTokenError:
            return False
        return not self._codec.is_expired(claims)

    def verify(self, token: str) -> AccessClaims:
        """Decode, check expiry, and normalize a token in one step.

        Raises InvalidTokenError for anything forged or malformed and
        ExpiredTokenError for a genuine token past exp.
        """
        claims = self._codec.decode(token)
        if self._codec.is_expired(claims):
            raise ExpiredTokenError()
        email = claims.get("email")
        return AccessClaims(
            user_id=_normalize_user_id(claims.get("userId")),
            username=claims["sub"],
            email=email if isinstance(email, str) and email else None,
            issued_at=_from_timestamp(claims["iat"]),
            expires_at=_from_timestamp(claims["exp"]),
        )
