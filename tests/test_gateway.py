"""
tests/test_gateway.py -- Integration tests for the gateway (gateway/filter.py,
gateway/proxy.py, gateway/main.py).

Upstream services are replaced by an httpx.MockTransport that records every
forwarded request, so assertions can look at exactly what a downstream
service would have received.

Covers:
  - allow-listed paths forwarded without a token; others 401 without reaching upstream
  - missing / malformed / forged / expired bearer tokens -> 401 envelope + WWW-Authenticate
  - verified identity written to X-User-Id / X-Username / X-User-Email
  - client-supplied identity headers stripped or overwritten, allow-listed paths included
  - path, query, body, status and response headers pass through the proxy
  - unknown service -> 404, upstream transport failure -> 503 fallback body
  - gateway /health
  - full chain: gateway -> auth service /api/auth/me using propagated identity
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from auth.codec import TokenCodec
from auth.models import Principal
from auth.service import SessionService
from auth.tokens import AccessTokenIssuer
from conftest import ACCESS_TTL, TEST_SECRET
from core.config import Settings
from gateway.main import create_gateway_app

ALICE = Principal(id="u-1", username="alice", email="alice@x.com", password_hash="x")


class RecordingUpstream:
    """MockTransport handler that echoes what it received."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(
            200,
            json={
                "path": request.url.path,
                "query": request.url.query.decode(),
                "body": request.content.decode(),
                "headers": dict(request.headers),
            },
            headers={"X-Upstream": "yes"},
        )


@pytest.fixture
def upstream() -> RecordingUpstream:
    return RecordingUpstream()


@pytest.fixture
def make_gateway(settings: Settings) -> Callable[[Callable[[httpx.Request], httpx.Response]], TestClient]:
    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> TestClient:
        return TestClient(create_gateway_app(settings, transport=httpx.MockTransport(handler)))

    return factory


@pytest.fixture
def gateway_client(make_gateway, upstream: RecordingUpstream) -> Generator[TestClient, None, None]:
    with make_gateway(upstream) as client:
        yield client


@pytest.fixture
def bearer(live_issuer: AccessTokenIssuer) -> dict[str, str]:
    return {"Authorization": f"Bearer {live_issuer.issue(ALICE)}"}


class TestAllowList:
    def test_allow_listed_path_forwarded_without_token(
        self, gateway_client: TestClient, upstream: RecordingUpstream
    ) -> None:
        resp = gateway_client.post("/api/auth/login", json={"username": "alice", "password": "pw"})
        assert resp.status_code == 200
        assert len(upstream.requests) == 1
        assert upstream.requests[0].url.path == "/api/auth/login"

    def test_protected_path_without_token_never_reaches_upstream(
        self, gateway_client: TestClient, upstream: RecordingUpstream
    ) -> None:
        resp = gateway_client.get("/api/projects/1")
        assert resp.status_code == 401
        assert upstream.requests == []

    def test_gateway_health_is_public(self, gateway_client: TestClient) -> None:
        resp = gateway_client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_non_api_path_still_needs_token(self, gateway_client: TestClient) -> None:
        assert gateway_client.get("/somewhere-else").status_code == 401


class TestRejection:
    def test_missing_header_envelope(self, gateway_client: TestClient) -> None:
        resp = gateway_client.get("/api/projects")
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"
        assert resp.json() == {
            "error": {"code": "unauthorized", "message": "Missing or invalid Authorization header"}
        }

    @pytest.mark.parametrize("value", ["Basic YWxpY2U6cHc=", "Bearer", "Bearer ", "bearer abc", "Token abc"])
    def test_malformed_header(self, gateway_client: TestClient, value: str) -> None:
        resp = gateway_client.get("/api/projects", headers={"Authorization": value})
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Missing or invalid Authorization header"

    def test_forged_token(self, gateway_client: TestClient, upstream: RecordingUpstream) -> None:
        forger = AccessTokenIssuer(TokenCodec("not-the-gateway-secret-but-long-enough!!"), ACCESS_TTL)
        resp = gateway_client.get("/api/projects", headers={"Authorization": f"Bearer {forger.issue(ALICE)}"})
        assert resp.status_code == 401
        assert resp.json()["error"] == {"code": "unauthorized", "message": "Invalid or expired token"}
        assert upstream.requests == []

    def test_expired_token(self, gateway_client: TestClient) -> None:
        an_hour_ago = datetime.now(timezone.utc) - timedelta(hours=1)
        stale = AccessTokenIssuer(TokenCodec(TEST_SECRET, clock=lambda: an_hour_ago), ACCESS_TTL)
        resp = gateway_client.get("/api/projects", headers={"Authorization": f"Bearer {stale.issue(ALICE)}"})
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Invalid or expired token"

    def test_garbage_token(self, gateway_client: TestClient) -> None:
        resp = gateway_client.get("/api/projects", headers={"Authorization": "Bearer not.a.jwt"})
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Invalid or expired token"


class TestIdentityPropagation:
    def test_identity_headers_set(
        self, gateway_client: TestClient, upstream: RecordingUpstream, bearer: dict[str, str]
    ) -> None:
        resp = gateway_client.get("/api/projects/1", headers=bearer)
        assert resp.status_code == 200
        forwarded = upstream.requests[0].headers
        assert forwarded["x-user-id"] == "u-1"
        assert forwarded["x-username"] == "alice"
        assert forwarded["x-user-email"] == "alice@x.com"

    def test_spoofed_identity_overwritten(
        self, gateway_client: TestClient, upstream: RecordingUpstream, bearer: dict[str, str]
    ) -> None:
        headers = {**bearer, "X-User-Id": "admin", "X-Username": "root", "X-User-Email": "root@evil"}
        gateway_client.get("/api/projects/1", headers=headers)
        forwarded = upstream.requests[0].headers
        assert forwarded.get_list("x-user-id") == ["u-1"]
        assert forwarded.get_list("x-username") == ["alice"]
        assert forwarded.get_list("x-user-email") == ["alice@x.com"]

    def test_spoofed_identity_stripped_on_allow_listed_path(
        self, gateway_client: TestClient, upstream: RecordingUpstream
    ) -> None:
        gateway_client.post("/api/auth/logout", json={}, headers={"X-User-Id": "admin", "X-Username": "root"})
        forwarded = upstream.requests[0].headers
        assert "x-user-id" not in forwarded
        assert "x-username" not in forwarded

    def test_email_header_omitted_without_claim(
        self, gateway_client: TestClient, upstream: RecordingUpstream, live_issuer: AccessTokenIssuer
    ) -> None:
        token = live_issuer.issue(Principal(id="u-2", username="bob", email="", password_hash="x"))
        gateway_client.get("/api/users/me", headers={"Authorization": f"Bearer {token}"})
        forwarded = upstream.requests[0].headers
        assert forwarded["x-user-id"] == "u-2"
        assert "x-user-email" not in forwarded


class TestProxy:
    def test_routes_by_first_segment(
        self, gateway_client: TestClient, upstream: RecordingUpstream, bearer: dict[str, str]
    ) -> None:
        gateway_client.get("/api/projects/7", headers=bearer)
        url = upstream.requests[0].url
        assert (url.host, url.port, url.path) == ("localhost", 8083, "/api/projects/7")

    def test_query_and_body_pass_through(
        self, gateway_client: TestClient, upstream: RecordingUpstream, bearer: dict[str, str]
    ) -> None:
        resp = gateway_client.post("/api/chat/messages?room=7&page=2", content=b'{"text":"hi"}', headers=bearer)
        data = resp.json()
        assert data["query"] == "room=7&page=2"
        assert data["body"] == '{"text":"hi"}'
        assert upstream.requests[0].method == "POST"

    def test_upstream_status_and_headers_returned(self, make_gateway, bearer: dict[str, str]) -> None:
        def created(request: httpx.Request) -> httpx.Response:
            return httpx.Response(201, json={"id": 9}, headers={"Location": "/api/gallery/9"})

        with make_gateway(created) as client:
            resp = client.post("/api/gallery", json={"title": "x"}, headers=bearer)
        assert resp.status_code == 201
        assert resp.json() == {"id": 9}
        assert resp.headers["location"] == "/api/gallery/9"

    def test_unknown_service(
        self, gateway_client: TestClient, upstream: RecordingUpstream, bearer: dict[str, str]
    ) -> None:
        resp = gateway_client.get("/api/inventory/1", headers=bearer)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"
        assert upstream.requests == []

    def test_upstream_down_returns_fallback(self, make_gateway, bearer: dict[str, str]) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with make_gateway(refuse) as client:
            resp = client.get("/api/projects/1", headers=bearer)
        assert resp.status_code == 503
        assert resp.json() == {
            "status": "SERVICE_UNAVAILABLE",
            "message": "Projects service is temporarily unavailable",
            "code": 503,
        }

    def test_upstream_timeout_returns_fallback(self, make_gateway, bearer: dict[str, str]) -> None:
        def slow(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with make_gateway(slow) as client:
            resp = client.get("/api/chat/rooms", headers=bearer)
        assert resp.status_code == 503
        assert resp.json()["message"] == "Chat service is temporarily unavailable"


class TestFullChain:
    """Gateway in front of the real auth service, wired in-process."""

    def test_register_then_me_through_gateway(self, settings: Settings, service: SessionService) -> None:
        auth_app = create_app(settings, session_service=service)
        with TestClient(auth_app):  # runs the auth service lifespan
            gateway_app = create_gateway_app(settings, transport=httpx.ASGITransport(app=auth_app))
            with TestClient(gateway_app) as gateway:
                registered = gateway.post(
                    "/api/auth/register",
                    json={"username": "alice", "email": "alice@x.com", "password": "pw123"},
                )
                assert registered.status_code == 201
                token = registered.json()["accessToken"]

                anonymous_me = gateway.get("/api/auth/me")
                assert anonymous_me.status_code == 401

                me = gateway.get(
                    "/api/auth/me",
                    headers={"Authorization": f"Bearer {token}", "X-User-Id": "someone-else"},
                )
                assert me.status_code == 200
                assert me.json()["username"] == "alice"
                assert me.json()["userId"] == registered.json()["userId"]
