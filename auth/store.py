"""
auth/store.py -- SQLAlchemy Core schema, engine factory, and principal store.

Pattern: Repository + Data Mapper.
UserStore is the repository for principals; _row_to_principal is the mapper.
RefreshTokenStore (auth/refresh_store.py) shares this module's metadata and
engine so both tables live in one database and one transaction scope.

Security:
  All queries use bound parameters. No f-strings in SQL.

Timestamps:
  Stored as ISO-8601 UTC strings with fixed microsecond precision (to_iso).
  Fixed width means lexicographic order equals chronological order, which
  the refresh-token expiry and sweep queries rely on.

DB path: auth/sessiongate_auth.db unless DATABASE_URL says otherwise.

Layer rule: no imports from api/, gateway/, or core/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, case, create_engine, event, or_, select
from sqlalchemy.engine import Engine

from auth.models import Principal

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users_table = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("is_anonymous", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
)

refresh_tokens_table = Table(
    "refresh_tokens",
    metadata,
    Column("token", String(128), primary_key=True),
    Column("principal_id", String(36), nullable=False),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),  # NULL = not revoked
    Index("ix_refresh_tokens_principal_revoked", "principal_id", "revoked_at"),
    Index("ix_refresh_tokens_expires_at", "expires_at"),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create the engine shared by UserStore and RefreshTokenStore.

    Route handlers run in a threadpool, so SQLite connections must be
    allowed to cross threads.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for Principal entities.

    Usage:
        engine = make_engine("sqlite:///auth.db")
        users = UserStore(engine)
        alice = users.create_principal(Principal(username="alice", email="a@x.com", password_hash=h))
        users.get_by_username_or_email("a@x.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine)

    def create_principal(self, principal: Principal) -> Principal:
        """Insert a principal and return it with id and created_at filled in.

        Raises sqlalchemy.exc.IntegrityError if the username or email is
        already taken. SessionService checks both up front and treats the
        exception as the signal that a concurrent registration won the race.
        """
        principal_id = principal.id or str(uuid.uuid4())
        created_at = principal.created_at or utcnow()
        with self.engine.connect() as conn:
            conn.execute(
                users_table.insert().values(
                    id=principal_id,
                    username=principal.username,
                    email=principal.email,
                    password_hash=principal.password_hash,
                    first_name=principal.first_name,
                    last_name=principal.last_name,
                    is_anonymous=1 if principal.is_anonymous else 0,
                    created_at=to_iso(created_at),
                )
            )
            conn.commit()
        principal.id = principal_id
        principal.created_at = from_iso(to_iso(created_at))
        return principal

    def get_by_id(self, principal_id: str) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(users_table.select().where(users_table.c.id == principal_id)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_by_username(self, username: str) -> Principal | None:
        """Look up a principal by exact username (case-sensitive)."""
        with self.engine.connect() as conn:
            row = conn.execute(users_table.select().where(users_table.c.username == username)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_by_username_or_email(self, identifier: str) -> Principal | None:
        """One lookup covering both unique fields.

        If one principal's username equals another's email, the username
        match wins.
        """
        query = (
            users_table.select()
            .where(or_(users_table.c.username == identifier, users_table.c.email == identifier))
            .order_by(case((users_table.c.username == identifier, 0), else_=1))
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_principal(row) if row is not None else None

    def username_exists(self, username: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(users_table.c.id).where(users_table.c.username == username)).fetchone()
        return row is not None

    def email_exists(self, email: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(users_table.c.id).where(users_table.c.email == email)).fetchone()
        return row is not None

    def find_anonymous(self) -> Principal | None:
        """Return the oldest anonymous principal, if any."""
        query = (
            users_table.select()
            .where(users_table.c.is_anonymous == 1)
            .order_by(users_table.c.created_at, users_table.c.id)
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_principal(row) if row is not None else None

    def update_last_login(self, principal_id: str, when: datetime | None = None) -> datetime:
        """Stamp last_login_at and return the stored value."""
        stamp = to_iso(when or utcnow())
        with self.engine.connect() as conn:
            conn.execute(users_table.update().where(users_table.c.id == principal_id).values(last_login_at=stamp))
            conn.commit()
        return from_iso(stamp)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    return Principal(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name,
        last_name=row.last_name,
        is_anonymous=bool(row.is_anonymous),
        created_at=from_iso(row.created_at),
        last_login_at=from_iso(row.last_login_at),
    )
