"""
auth/refresh_store.py -- Durable, rotatable refresh tokens (SQLAlchemy Core).

Pattern: Repository + Data Mapper, same as UserStore in auth/store.py, on the
shared metadata and engine.

Invariant: at most one row per principal has revoked_at IS NULL.
  issue() revokes every live row for the principal and inserts the new one
  inside a single transaction (engine.begin()), and the whole critical
  section runs under a per-principal lock. The transaction keeps concurrent
  readers from ever seeing two live rows; the lock keeps two concurrent
  issue() calls for the same principal from interleaving their
  revoke/insert pairs. Different principals never share a lock.

  Rows are revoked, never updated in place, so the history stays around
  for audit until sweep_expired() reclaims it.

Token values are secrets.token_urlsafe(32): 256 bits of randomness with no
embedded structure. Possession says nothing about the principal.

Layer rule: no imports from api/, gateway/, or core/.
"""

from __future__ import annotations

import logging
import secrets
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta

from sqlalchemy.engine import Engine

from auth.errors import RefreshTokenExpiredError, RefreshTokenNotFoundError, RefreshTokenRevokedError
from auth.models import RefreshToken
from auth.store import from_iso, metadata, refresh_tokens_table, to_iso, utcnow

logger = logging.getLogger("sessiongate.auth")

_tokens = refresh_tokens_table


class _KeyedLock:
    """One lock per key, created on demand and dropped when unused.

    Entries are reference counted (holders plus waiters) so the table never
    grows beyond the number of principals with an issue() in flight.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, list] = {}  # key -> [lock, refcount]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]


class RefreshTokenStore:
    """Repository for RefreshToken records.

    Usage:
        tokens = RefreshTokenStore(engine, ttl=timedelta(days=7))
        record = tokens.issue(principal.id)     # revokes any earlier live token
        tokens.redeem(record.token)             # raises RefreshTokenError subclasses
        tokens.revoke(record.token)             # idempotent
        tokens.sweep_expired()                  # storage reclamation
    """

    def __init__(
        self,
        engine: Engine,
        ttl: timedelta,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if ttl.total_seconds() <= 0:
            raise ValueError("Refresh token TTL must be positive.")
        self.engine = engine
        self.ttl = ttl
        self._clock = clock or utcnow
        self._locks = _KeyedLock()
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def issue(self, principal_id: str) -> RefreshToken:
        """Rotate: revoke every live token of the principal, then mint a new one."""
        with self._locks.hold(principal_id):
            now = to_iso(self._clock())
            record = RefreshToken(
                token=secrets.token_urlsafe(32),
                principal_id=principal_id,
                issued_at=from_iso(now),
                expires_at=from_iso(to_iso(from_iso(now) + self.ttl)),
            )
            with self.engine.begin() as conn:
                revoked = conn.execute(
                    _tokens.update()
                    .where((_tokens.c.principal_id == principal_id) & (_tokens.c.revoked_at.is_(None)))
                    .values(revoked_at=now)
                ).rowcount
                conn.execute(
                    _tokens.insert().values(
                        token=record.token,
                        principal_id=principal_id,
                        issued_at=now,
                        expires_at=to_iso(record.expires_at),
                        revoked_at=None,
                    )
                )
        logger.info("Refresh token issued for principal %s (superseded %d)", principal_id, revoked)
        return record

    def redeem(self, token: str) -> RefreshToken:
        """Return the live record for token without changing it.

        Raises RefreshTokenNotFoundError, RefreshTokenRevokedError or
        RefreshTokenExpiredError, checked in that order.
        """
        record = self.get(token)
        if record is None:
            raise RefreshTokenNotFoundError()
        if record.is_revoked:
            raise RefreshTokenRevokedError()
        if record.is_expired(self._clock()):
            raise RefreshTokenExpiredError()
        return record

    def revoke(self, token: str) -> bool:
        """Set revoked_at on a live token. Returns True if a row changed.

        Absent or already revoked tokens are a silent no-op.
        """
        if not token:
            return False
        with self.engine.connect() as conn:
            result = conn.execute(
                _tokens.update()
                .where((_tokens.c.token == token) & (_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=to_iso(self._clock()))
            )
            conn.commit()
        return result.rowcount > 0

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Delete every row whose expires_at is before now, revoked or not."""
        cutoff = to_iso(now or self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(_tokens.delete().where(_tokens.c.expires_at < cutoff))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, token: str) -> RefreshToken | None:
        if not token:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(_tokens.select().where(_tokens.c.token == token)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def active_for_principal(self, principal_id: str) -> RefreshToken | None:
        """Return the unrevoked token of a principal (it may still be expired)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _tokens.select().where((_tokens.c.principal_id == principal_id) & (_tokens.c.revoked_at.is_(None)))
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def list_for_principal(self, principal_id: str) -> list[RefreshToken]:
        """Full retained history for a principal, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _tokens.select().where(_tokens.c.principal_id == principal_id).order_by(_tokens.c.issued_at)
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        token=row.token,
        principal_id=row.principal_id,
        issued_at=from_iso(row.issued_at),
        expires_at=from_iso(row.expires_at),
        revoked_at=from_iso(row.revoked_at),
    )
