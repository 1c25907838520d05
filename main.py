#!/usr/bin/env python3
"""
SessionGate -- operations CLI.

Usage:
  python main.py sweep
  python main.py inspect <access-token>

Configuration comes from the same environment variables / .env file as the
services (JWT_SECRET, DATABASE_URL, ...). See core/config.py.
"""

import argparse
import json
import sys
from typing import Optional

from auth.codec import TokenCodec
from auth.errors import InvalidTokenError
from auth.refresh_store import RefreshTokenStore
from auth.store import make_engine
from auth.tokens import AccessTokenIssuer
from core.config import Settings, get_settings


def run_sweep(settings: Settings) -> int:
    """Delete expired refresh tokens once and report how many went."""
    engine = make_engine(settings.database_url)
    try:
        removed = RefreshTokenStore(engine, settings.refresh_ttl).sweep_expired()
    finally:
        engine.dispose()
    print(f"Removed {removed} expired refresh token(s).")
    return 0


def run_inspect(settings: Settings, token: str) -> int:
    """Print the claims of an access token. Exit code 1 when it does not verify.

    An expired but correctly signed token still prints its claims, flagged
    as expired, and exits 1.
    """
    codec = TokenCodec(settings.jwt_secret, settings.jwt_algorithm)
    issuer = AccessTokenIssuer(codec, settings.access_ttl)
    try:
        claims = codec.decode(token)
        user_id = issuer.extract_user_id(token)
    except InvalidTokenError as exc:
        print(f"  [!] Invalid token: {exc.message}", file=sys.stderr)
        return 1

    expired = codec.is_expired(claims)
    print(json.dumps({"userId": user_id, "claims": claims, "expired": expired}, indent=2))
    return 1 if expired else 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="sessiongate",
        description="Operations commands for the SessionGate auth service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py sweep
  python main.py inspect eyJhbGciOiJIUzI1NiJ9...
  DATABASE_URL=sqlite:///auth.db python main.py sweep
        """,
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.add_parser("sweep", help="Delete expired refresh tokens now")
    inspect_parser = subparsers.add_parser("inspect", help="Decode and verify an access token")
    inspect_parser.add_argument("token", help="Access token (compact JWT)")
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 2

    settings = get_settings()
    if args.command == "sweep":
        return run_sweep(settings)
    return run_inspect(settings, args.token)


if __name__ == "__main__":
    sys.exit(main())
