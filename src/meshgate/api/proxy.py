# src/meshgate/api/proxy.py
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import Iterable, List, Optional, Protocol, Tuple

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse

from meshgate.errors import BackendUnavailableError, RequestError
from meshgate.identity import PeerIdentity, peer_address
from meshgate.structured_logging import RequestLogMiddleware, log_event

log = logging.getLogger("meshgate.proxy")

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]

# RFC 9110 7.6.1: connection-scoped fields never cross a proxy.
HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

Headers = List[Tuple[str, str]]


class Resolver(Protocol):
    async def resolve(self, addr: str) -> PeerIdentity: ...


def _strip_hop_by_hop(items: Iterable[Tuple[str, str]]) -> Headers:
    items = list(items)
    named: set[str] = set()
    for k, v in items:
        if k.lower() == "connection":
            named.update(t.strip().lower() for t in v.split(",") if t.strip())
    return [(k, v) for k, v in items if k.lower() not in HOP_BY_HOP and k.lower() not in named]


def forward_headers(
    request: Request,
    *,
    login: str,
    identity_header: str,
    origin_host: str,
) -> Headers:
    """Outbound header list for the backend.

    Inbound copies of the identity header are dropped so the backend sees
    exactly one value, the one we resolved.
    """
    raw = [(k.decode("latin-1"), v.decode("latin-1")) for k, v in request.headers.raw]
    ident = identity_header.lower()
    out = [(k, v) for k, v in _strip_hop_by_hop(raw) if k.lower() != ident]

    client_ip = request.client.host if request.client else ""
    prior_xff = [v for k, v in out if k.lower() == "x-forwarded-for"]
    out = [(k, v) for k, v in out if k.lower() != "x-forwarded-for"]
    if client_ip:
        out.append(("X-Forwarded-For", ", ".join(prior_xff + [client_ip])))
    elif prior_xff:
        out.append(("X-Forwarded-For", ", ".join(prior_xff)))

    out.append(("X-Forwarded-Host", request.headers.get("host", "")))
    out.append(("X-Origin-Host", origin_host))
    out.append((identity_header, login))
    return out


def _has_body(request: Request) -> bool:
    if "transfer-encoding" in request.headers:
        return True
    return (request.headers.get("content-length") or "0").strip() not in {"", "0"}


def _backend_client(timeout_s: float) -> httpx.AsyncClient:
    # The client is shared across users: never let one response's cookies
    # ride along on someone else's request.
    no_cookies = CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))
    return httpx.AsyncClient(timeout=httpx.Timeout(timeout_s), cookies=no_cookies, follow_redirects=False)


class UpstreamResponse(StreamingResponse):
    """Relays a streamed backend response and always closes it.

    The upstream is closed when sending ends for any reason, including a
    client that disconnects mid-body, so its pooled connection is released.
    """

    def __init__(self, upstream: httpx.Response) -> None:
        super().__init__(upstream.aiter_raw(), status_code=upstream.status_code)
        self.upstream = upstream
        self.raw_headers = [
            (k.lower().encode("latin-1"), v.encode("latin-1"))
            for k, v in _strip_hop_by_hop(upstream.headers.multi_items())
        ]

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await asyncio.shield(self.upstream.aclose())


def create_proxy_app(
    *,
    resolver: Resolver,
    backend_url: str,
    identity_header: str = "X-Tailscale-User",
    timeout_s: float = 60.0,
    client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Identity-resolving reverse proxy in front of a single backend.

    Every request, whatever its method or path, is admitted only if the
    caller's overlay address resolves to a login. The backend trusts the
    identity header because this proxy is its only reachable caller.
    """
    backend = httpx.URL(backend_url.rstrip("/"))
    base_path = backend.raw_path.decode("ascii").rstrip("/")
    origin_host = backend.netloc.decode("ascii")
    owns_client = client is None
    upstream_client = client or _backend_client(timeout_s)

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        yield
        if owns_client:
            await upstream_client.aclose()

    # No docs routes: every path belongs to the backend.
    app = FastAPI(title="meshgate proxy", docs_url=None, redoc_url=None, openapi_url=None, lifespan=_lifespan)
    app.state.backend_url = str(backend)
    app.add_middleware(RequestLogMiddleware, logger_name="meshgate.proxy.http")

    def _error(e: RequestError) -> Response:
        return PlainTextResponse(e.message, status_code=e.status_code)

    @app.api_route("/{path:path}", methods=ALL_METHODS, include_in_schema=False)
    async def proxy(request: Request) -> Response:
        client_host = request.client.host if request.client else None
        client_port = request.client.port if request.client else None
        try:
            who = await resolver.resolve(peer_address(client_host, client_port))
        except RequestError as e:
            return _error(e)

        request.state.peer_login = who.login_name

        raw_path = request.scope.get("raw_path") or request.url.path.encode("utf-8")
        target = base_path + raw_path.decode("latin-1")
        query = request.scope.get("query_string") or b""
        url = backend.copy_with(raw_path=target.encode("latin-1") + (b"?" + query if query else b""))

        upstream_req = httpx.Request(
            request.method,
            url,
            headers=forward_headers(request, login=who.login_name, identity_header=identity_header, origin_host=origin_host),
            content=request.stream() if _has_body(request) else None,
        )
        try:
            upstream = await upstream_client.send(upstream_req, stream=True)
        except httpx.HTTPError as e:
            log_event(
                log,
                "backend_unavailable",
                level=logging.ERROR,
                url=str(url),
                user=who.login_name,
                error=f"{e.__class__.__name__}: {e}",
            )
            return _error(BackendUnavailableError())

        return UpstreamResponse(upstream)

    return app
