"""
auth/service.py -- Session lifecycle: register, login, refresh, logout.

SessionService composes AccessTokenIssuer, UserStore and RefreshTokenStore.
It enforces the cross-field rules (unique username AND email, generic
credential failures) before delegating, and it is the only place where the
storage-level refresh outcomes are collapsed into InvalidRefreshTokenError.

Refresh semantics (rotation on issue, not on use):
  redeem() does not revoke. A still-valid refresh token can be presented
  any number of times until a newer token is issued for the same principal
  (refresh, login, register) or it is logged out. refresh() itself always
  issues a new token, so the redeemed one is superseded as a side effect.

Error surface: InvalidCredentialsError, ConflictError,
InvalidRefreshTokenError, InvalidTokenError. Nothing else is caught here;
infrastructure errors propagate to the API layer's catch-all handler.

Layer rule: no imports from api/, gateway/, or core/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.anonymous import AnonymousPrincipalPolicy, SharedAnonymousPolicy
from auth.errors import (
    ConflictError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    RefreshTokenError,
)
from auth.models import AccessClaims, Principal, SessionTokens
from auth.refresh_store import RefreshTokenStore
from auth.store import UserStore
from auth.tokens import AccessTokenIssuer, dummy_hash, hash_password, verify_password

logger = logging.getLogger("sessiongate.auth")


class SessionService:
    def __init__(
        self,
        users: UserStore,
        refresh_tokens: RefreshTokenStore,
        issuer: AccessTokenIssuer,
        anonymous_policy: AnonymousPrincipalPolicy | None = None,
        bcrypt_rounds: int = 12,
    ) -> None:
        self.users = users
        self.refresh_tokens = refresh_tokens
        self.issuer = issuer
        self.anonymous_policy = anonymous_policy or SharedAnonymousPolicy(bcrypt_rounds)
        self._bcrypt_rounds = bcrypt_rounds
        # Same cost factor as real hashes, so unknown identifiers cost the same.
        self._dummy_hash = dummy_hash(bcrypt_rounds)

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str,
        password: str,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> SessionTokens:
        """Create a principal and open its first session.

        Both unique fields are checked before anything is written.
        """
        taken = []
        if self.users.username_exists(username):
            taken.append("Username")
        if self.users.email_exists(email):
            taken.append("email" if taken else "Email")
        if taken:
            verb = "exist" if len(taken) > 1 else "exists"
            raise ConflictError(f"{' and '.join(taken)} already {verb}")

        try:
            principal = self.users.create_principal(
                Principal(
                    username=username,
                    email=email,
                    password_hash=hash_password(password, rounds=self._bcrypt_rounds),
                    first_name=first_name,
                    last_name=last_name,
                )
            )
        except IntegrityError as exc:
            # A concurrent registration took the name between check and insert.
            raise ConflictError() from exc

        logger.info("Registered principal %s", principal.id)
        return self._open_session(principal)

    def login(self, identifier: str, password: str) -> SessionTokens:
        """Authenticate by username or email with timing equalization.

        bcrypt runs whether or not the identifier exists, and every failure
        raises the same InvalidCredentialsError.
        """
        principal = self.users.get_by_username_or_email(identifier)
        if principal is None:
            verify_password(password, self._dummy_hash)
            raise InvalidCredentialsError()
        if not verify_password(password, principal.password_hash):
            raise InvalidCredentialsError()

        principal.last_login_at = self.users.update_last_login(principal.id)
        return self._open_session(principal)

    def refresh(self, refresh_token: str) -> SessionTokens:
        """Trade a live refresh token for a new access token and a new refresh token."""
        try:
            record = self.refresh_tokens.redeem(refresh_token)
        except RefreshTokenError as exc:
            logger.info("Refresh refused: %s", exc.reason)
            raise InvalidRefreshTokenError(reason=exc.reason) from exc

        principal = self.users.get_by_id(record.principal_id)
        if principal is None:
            logger.warning("Refresh refused: principal %s no longer exists", record.principal_id)
            raise InvalidRefreshTokenError(reason="principal_missing")
        return self._open_session(principal)

    def logout(self, refresh_token: str) -> None:
        """Revoke the refresh token. Never fails for unknown or dead tokens."""
        if self.refresh_tokens.revoke(refresh_token):
            logger.info("Refresh token revoked on logout")

    def anonymous_session(self) -> SessionTokens:
        principal = self.anonymous_policy.resolve(self.users)
        principal.last_login_at = self.users.update_last_login(principal.id)
        return self._open_session(principal)

    # ------------------------------------------------------------------
    # Access token helpers
    # ------------------------------------------------------------------

    def validate(self, access_token: str) -> bool:
        return self.issuer.is_valid(access_token)

    def inspect(self, access_token: str) -> AccessClaims | None:
        """Verified claims of a live access token, or None."""
        try:
            return self.issuer.verify(access_token)
        except InvalidTokenError:
            return None

    def principal_from_token(self, access_token: str) -> Principal | None:
        claims = self.inspect(access_token)
        if claims is None:
            return None
        return self.users.get_by_id(claims.user_id)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def sweep_expired_tokens(self) -> int:
        removed = self.refresh_tokens.sweep_expired()
        if removed:
            logger.info("Swept %d expired refresh token(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _open_session(self, principal: Principal) -> SessionTokens:
        access_token = self.issuer.issue(principal)
        refresh_token = self.refresh_tokens.issue(principal.id)
        return SessionTokens(
            principal=principal,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.issuer.expires_in,
        )
