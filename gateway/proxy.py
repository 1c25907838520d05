"""
gateway/proxy.py -- Route /api/<service>/... to the upstream that owns it.

The first path segment after /api/ selects the upstream from
settings.service_routes; the full incoming path and query string are kept,
so /api/projects/7 on the gateway becomes <projects base>/api/projects/7.

Requests reach this router only after GatewayAuthMiddleware has run, so the
headers forwarded here already carry the trusted identity (or none at all on
allow-listed paths).

Upstream down or too slow -> 503 with the fallback body clients already know
how to read:
    {"status": "SERVICE_UNAVAILABLE", "message": "...", "code": 503}
"""

from __future__ import annotations

import logging

import httpx
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

logger = logging.getLogger("sessiongate.gateway")

router = APIRouter()

_PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

# Hop-by-hop headers (RFC 9110 section 7.6.1) plus the ones httpx recomputes.
_HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)
_EXCLUDED_REQUEST_HEADERS = _HOP_BY_HOP | {"host", "content-length"}
# httpx hands back a decoded body, so the upstream framing no longer applies.
_EXCLUDED_RESPONSE_HEADERS = _HOP_BY_HOP | {"content-length", "content-encoding"}


def fallback_response(service: str) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={
            "status": "SERVICE_UNAVAILABLE",
            "message": f"{service.capitalize()} service is temporarily unavailable",
            "code": 503,
        },
    )


def _upstream_url(base: str, request: Request) -> str:
    url = base.rstrip("/") + request.url.path
    if request.url.query:
        url += "?" + request.url.query
    return url


@router.api_route("/api/{rest:path}", methods=_PROXY_METHODS, include_in_schema=False)
async def proxy(request: Request, rest: str) -> Response:
    service = rest.split("/", 1)[0]
    base = request.app.state.service_routes.get(service)
    if base is None:
        return JSONResponse(
            status_code=404,
            content={"error": {"code": "not_found", "message": "No service is routed at this path."}},
        )

    client: httpx.AsyncClient = request.app.state.http_client
    headers = [
        (key, value)
        for key, value in request.headers.raw
        if key.decode("latin-1").lower() not in _EXCLUDED_REQUEST_HEADERS
    ]
    try:
        upstream = await client.request(
            request.method,
            _upstream_url(base, request),
            headers=headers,
            content=await request.body(),
        )
    except httpx.TransportError as exc:
        logger.warning("Upstream %s unavailable for %s %s: %s", service, request.method, request.url.path, exc)
        return fallback_response(service)

    response = Response(content=upstream.content, status_code=upstream.status_code)
    for key, value in upstream.headers.multi_items():
        if key.lower() not in _EXCLUDED_RESPONSE_HEADERS:
            response.headers.append(key, value)
    return response
