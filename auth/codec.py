"""
auth/codec.py -- Signed, claims-bearing token encoding (JWT, HMAC).

Security design decisions:
  Signing: python-jose with an HMAC algorithm (HS256 by default). The secret
       is process-wide and read-only after startup; TokenCodec holds it and
       nothing else, so one instance is shared by every request.

  Verification order: jose checks the signature first (hmac.compare_digest,
       constant time) against the single configured algorithm. A token that
       names any other algorithm, "none" included, is rejected before its
       payload is looked at. Before jose runs, each segment must be canonical
       unpadded base64url, so no two token strings carry the same signature.
       Structural checks on sub/iat/exp come last.

  Expiry is NOT checked by decode(). Callers decide between "forged" and
       "expired" by calling is_expired() explicitly; AccessTokenIssuer.verify()
       is the usual way to get both.

Layer rule: stdlib + python-jose only.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from jose.utils import base64url_decode, base64url_encode

from auth.errors import InvalidTokenError

_RESERVED_CLAIMS = frozenset({"sub", "iat", "exp"})
_SUPPORTED_ALGORITHMS = ("HS256", "HS384", "HS512")
_MIN_SECRET_LENGTH = 32


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_canonical_segment(segment: str) -> bool:
    """True if segment is the one unpadded base64url spelling of its bytes.

    The decoder ignores the spare low bits of a final partial character, so
    without this check several token strings share one valid signature.
    """
    try:
        raw = segment.encode("ascii")
        return base64url_encode(base64url_decode(raw)) == raw
    except ValueError:
        return False


class TokenCodec:
    """Encode and decode compact signed tokens.

    Usage:
        codec = TokenCodec(settings.jwt_secret)
        token = codec.encode({"userId": "42"}, subject="alice", ttl=timedelta(minutes=15))
        claims = codec.decode(token)        # raises InvalidTokenError
        codec.is_expired(claims)            # False for the next 15 minutes
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if len(secret) < _MIN_SECRET_LENGTH:
            raise ValueError(f"Signing secret must be at least {_MIN_SECRET_LENGTH} characters.")
        if algorithm not in _SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported signing algorithm: {algorithm!r}")
        self._secret = secret
        self._algorithm = algorithm
        self._clock = clock or _utcnow

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def now(self) -> datetime:
        return self._clock()

    def encode(self, claims: Mapping[str, Any], subject: str, ttl: timedelta) -> str:
        """Sign claims plus sub/iat/exp. Pure apart from reading the clock."""
        reserved = _RESERVED_CLAIMS.intersection(claims)
        if reserved:
            raise ValueError(f"Reserved claims cannot be supplied: {sorted(reserved)}")
        if not subject:
            raise ValueError("Token subject must be a non-empty string.")
        issued_at = int(self._clock().timestamp())
        payload = dict(claims)
        payload["sub"] = subject
        payload["iat"] = issued_at
        payload["exp"] = issued_at + int(ttl.total_seconds())
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def decode(self, token: str) -> dict[str, Any]:
        """Verify the signature and structure of token and return its claims.

        Never partially trusts a token: any failure raises InvalidTokenError.
        """
        if not isinstance(token, str) or not token:
            raise InvalidTokenError()
        segments = token.split(".")
        if len(segments) != 3 or not all(_is_canonical_segment(s) for s in segments):
            raise InvalidTokenError()
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise InvalidTokenError() from exc

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError("Token subject is missing.")
        if not _is_int(claims.get("iat")) or not _is_int(claims.get("exp")):
            raise InvalidTokenError("Token timestamps are malformed.")
        return claims

    def is_expired(self, claims: Mapping[str, Any]) -> bool:
        expires_at = claims.get("exp")
        if not _is_int(expires_at):
            raise InvalidTokenError("Token timestamps are malformed.")
        return self._clock().timestamp() >= expires_at
