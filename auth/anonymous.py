"""
auth/anonymous.py -- Strategies for resolving the anonymous principal.

The default policy shares ONE anonymous principal between every caller that
asks for an anonymous session: not per browser, not per device. That is a
deliberate (and possibly surprising) product choice, so it lives behind the
AnonymousPrincipalPolicy protocol and SessionService never branches on it.
Swap in PerSessionAnonymousPolicy to give each caller a fresh principal.

Layer rule: no imports from api/, gateway/, or core/.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
import uuid
from typing import Protocol

from auth.models import Principal
from auth.store import UserStore
from auth.tokens import hash_password

logger = logging.getLogger("sessiongate.auth")


class AnonymousPrincipalPolicy(Protocol):
    def resolve(self, users: UserStore) -> Principal: ...


def provision_anonymous(users: UserStore, bcrypt_rounds: int = 12) -> Principal:
    """Create an anonymous principal with a random, never-disclosed password."""
    username = f"guest_{int(time.time() * 1000)}_{secrets.token_hex(3)}"
    principal = users.create_principal(
        Principal(
            username=username,
            email=f"{username}@anonymous.local",
            password_hash=hash_password(uuid.uuid4().hex, rounds=bcrypt_rounds),
            is_anonymous=True,
        )
    )
    logger.info("Provisioned anonymous principal %s", principal.id)
    return principal


class SharedAnonymousPolicy:
    """Reuse the oldest anonymous principal; create one on first use.

    The lock stops two concurrent first calls in this process from both
    provisioning. Across processes a duplicate is harmless: find_anonymous()
    always picks the oldest one afterwards.
    """

    def __init__(self, bcrypt_rounds: int = 12) -> None:
        self._bcrypt_rounds = bcrypt_rounds
        self._lock = threading.Lock()

    def resolve(self, users: UserStore) -> Principal:
        existing = users.find_anonymous()
        if existing is not None:
            return existing
        with self._lock:
            existing = users.find_anonymous()
            if existing is not None:
                return existing
            return provision_anonymous(users, self._bcrypt_rounds)


class PerSessionAnonymousPolicy:
    """Provision a fresh anonymous principal on every call."""

    def __init__(self, bcrypt_rounds: int = 12) -> None:
        self._bcrypt_rounds = bcrypt_rounds

    def resolve(self, users: UserStore) -> Principal:
        return provision_anonymous(users, self._bcrypt_rounds)


def policy_from_name(name: str, bcrypt_rounds: int = 12) -> AnonymousPrincipalPolicy:
    if name == "shared":
        return SharedAnonymousPolicy(bcrypt_rounds)
    if name == "per_session":
        return PerSessionAnonymousPolicy(bcrypt_rounds)
    raise ValueError(f"Unknown anonymous policy: {name!r}")
