"""
core/config.py -- Centralized configuration via pydantic-settings.

All environment variable reads for SessionGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() or take
a Settings instance as a constructor argument.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance afterwards. App factories and the
      CLI fall back to it when no explicit Settings instance is passed.

  BaseSettings (pydantic-settings): field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): cross-field validation once all fields are
      resolved. Enforces the signing-secret policy and TTL sanity.

Security notes:
  JWT_SECRET shorter than 32 chars is rejected outright. HS256 needs a key
  of at least 256 bits; a short key weakens every token we mint.

  In production mode (DEBUG not set or false), a missing JWT_SECRET is a hard
  startup failure. A random per-process key would silently log every user
  out on restart and would not match the gateway's key.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or gateway/.
"""

import logging
import secrets
from datetime import timedelta
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sessiongate.config")

APP_VERSION = "0.1.0"

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'sessiongate_auth.db'}"

_DEFAULT_ALLOW_LIST = ",".join(
    (
        "/api/auth/register",
        "/api/auth/login",
        "/api/auth/refresh",
        "/api/auth/logout",
        "/api/auth/validate",
        "/api/auth/anonymous",
        "/health",
    )
)

_DEFAULT_SERVICE_ROUTES = {
    "auth": "http://localhost:8081",
    "users": "http://localhost:8082",
    "projects": "http://localhost:8083",
    "chat": "http://localhost:8084",
    "gallery": "http://localhost:8085",
}

_HMAC_ALGORITHMS = ("HS256", "HS384", "HS512")


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Settings shared by the auth service, the gateway and the CLI.

    All fields have defaults (apart from the production secret) so Settings()
    can be built in tests without a real .env file. Pass keyword arguments to
    override individual values: Settings(jwt_secret="...", debug=True).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the "not configured" sentinel; the validator below
    # either generates a dev key or raises.
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"

    # ------------------------------------------------------------------
    # Token lifetimes
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 60 * 60

    # ------------------------------------------------------------------
    # Persistence and housekeeping
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    sweep_interval_seconds: int = 60 * 60
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # "shared" reuses one anonymous principal for everybody, "per_session"
    # provisions a fresh one per call.
    anonymous_policy: str = "shared"

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    rate_limit_enabled: bool = True
    allowed_hosts: str = "*"
    cors_origins: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Gateway
    # ------------------------------------------------------------------

    # Comma-separated path prefixes that bypass token verification.
    allow_list_paths: str = _DEFAULT_ALLOW_LIST
    # First path segment after /api/ -> upstream base URL.
    service_routes: dict[str, str] = Field(default_factory=lambda: dict(_DEFAULT_SERVICE_ROUTES))
    upstream_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_and_lifetimes(self) -> "Settings":
        """Enforce the signing-secret policy and sane token lifetimes.

        Dev mode (DEBUG=true): auto-generate a random secret with a warning.
            Tokens will not survive a restart, and the gateway must be
            started from the same process settings to accept them.

        Production mode: refuse to start without JWT_SECRET.

        Both modes: reject secrets shorter than 32 characters and any
            non-HMAC algorithm.
        """
        if not self.jwt_secret:
            if self.debug:
                self.jwt_secret = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated JWT_SECRET. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "JWT_SECRET is required in production mode. "
                    "Set JWT_SECRET in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.jwt_secret) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters.")
        if self.jwt_algorithm not in _HMAC_ALGORITHMS:
            raise ValueError(f"JWT_ALGORITHM must be one of {', '.join(_HMAC_ALGORITHMS)}.")
        if self.access_token_expire_seconds <= 0 or self.refresh_token_expire_seconds <= 0:
            raise ValueError("Token lifetimes must be positive.")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("SWEEP_INTERVAL_SECONDS must be positive.")
        if self.anonymous_policy not in ("shared", "per_session"):
            raise ValueError("ANONYMOUS_POLICY must be 'shared' or 'per_session'.")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(seconds=self.access_token_expire_seconds)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(seconds=self.refresh_token_expire_seconds)

    @property
    def allow_list(self) -> list[str]:
        return _split_csv(self.allow_list_paths)

    @property
    def allowed_host_list(self) -> list[str]:
        return _split_csv(self.allowed_hosts)

    @property
    def cors_origin_list(self) -> list[str]:
        return _split_csv(self.cors_origins)


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings singleton.

    In tests: build Settings(...) explicitly and hand it to the app factory,
    or call get_settings.cache_clear() after changing the environment.
    """
    return Settings()
