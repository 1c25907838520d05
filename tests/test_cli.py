"""
tests/test_cli.py -- Tests for the operations CLI in main.py.

Covers:
  - sweep deletes expired refresh tokens from DATABASE_URL and reports the count
  - inspect prints verified claims (exit 0), flags expired tokens (exit 1),
    rejects forged or garbage tokens (exit 1)
  - no subcommand prints help
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

import main as cli
from auth.codec import TokenCodec
from auth.models import Principal
from auth.refresh_store import RefreshTokenStore
from auth.store import make_engine
from auth.tokens import AccessTokenIssuer
from conftest import ACCESS_TTL, TEST_SECRET, FrozenClock
from core.config import Settings

ALICE = Principal(id="42", username="alice", email="alice@x.com", password_hash="x")


@pytest.fixture
def cli_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Settings:
    settings = Settings(_env_file=None, jwt_secret=TEST_SECRET, database_url=f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setattr(cli, "get_settings", lambda: settings)
    return settings


def test_sweep_removes_expired(cli_settings: Settings, capsys: pytest.CaptureFixture[str]) -> None:
    engine = make_engine(cli_settings.database_url)
    past = FrozenClock(datetime.now(timezone.utc) - timedelta(days=30))
    RefreshTokenStore(engine, cli_settings.refresh_ttl, clock=past).issue("old-principal")
    RefreshTokenStore(engine, cli_settings.refresh_ttl).issue("current-principal")
    engine.dispose()

    assert cli.main(["sweep"]) == 0
    assert "Removed 1 expired refresh token(s)." in capsys.readouterr().out


def test_inspect_valid_token(cli_settings: Settings, capsys: pytest.CaptureFixture[str]) -> None:
    token = AccessTokenIssuer(TokenCodec(TEST_SECRET), ACCESS_TTL).issue(ALICE)
    assert cli.main(["inspect", token]) == 0
    output = json.loads(capsys.readouterr().out)
    assert output["userId"] == "42"
    assert output["claims"]["sub"] == "alice"
    assert output["expired"] is False


def test_inspect_expired_token(cli_settings: Settings, capsys: pytest.CaptureFixture[str]) -> None:
    an_hour_ago = datetime.now(timezone.utc) - timedelta(hours=1)
    token = AccessTokenIssuer(TokenCodec(TEST_SECRET, clock=lambda: an_hour_ago), ACCESS_TTL).issue(ALICE)
    assert cli.main(["inspect", token]) == 1
    assert json.loads(capsys.readouterr().out)["expired"] is True


def test_inspect_forged_token(cli_settings: Settings, capsys: pytest.CaptureFixture[str]) -> None:
    forged = AccessTokenIssuer(TokenCodec("some-other-secret-that-is-long-enough!!"), ACCESS_TTL).issue(ALICE)
    assert cli.main(["inspect", forged]) == 1
    assert "Invalid token" in capsys.readouterr().err


def test_inspect_garbage(cli_settings: Settings) -> None:
    assert cli.main(["inspect", "garbage"]) == 1


def test_no_command_prints_help(cli_settings: Settings, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main([]) == 2
    assert "sweep" in capsys.readouterr().out
