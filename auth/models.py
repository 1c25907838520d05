"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, next to zero logic). Stores own
persistence, the service owns the flows; these only own shape.

Layer rule: no imports from api/, gateway/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class Principal:
    """An authenticated identity, human or anonymous.

    id is an opaque string (uuid4 when minted here). password_hash is a bcrypt
    hash; anonymous principals get a hash of a random throwaway password, so
    they can never log in with a password.
    """

    username: str
    email: str
    password_hash: str
    id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    is_anonymous: bool = False
    created_at: datetime | None = None
    last_login_at: datetime | None = None


@dataclass
class RefreshToken:
    """A persisted, opaque refresh credential.

    SUPERSEDED and REVOKED are both revoked_at != None. EXPIRED is derived
    from expires_at and never stored.
    """

    token: str
    principal_id: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: datetime | None = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now

    def status(self, now: datetime) -> str:
        if self.is_revoked:
            return "revoked"
        if self.is_expired(now):
            return "expired"
        return "active"


@dataclass(frozen=True)
class AccessClaims:
    """Normalized claims of a verified access token."""

    user_id: str
    username: str
    issued_at: datetime
    expires_at: datetime
    email: str | None = None


@dataclass
class SessionTokens:
    """What every successful session flow hands back to its caller."""

    principal: Principal
    access_token: str
    refresh_token: RefreshToken
    expires_in: int
