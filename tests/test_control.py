from __future__ import annotations

import asyncio
from typing import List

import httpx
import pytest

from meshgate.daemon.control import ControlChannelError, ControlClient, wait_until_ready
from meshgate.errors import DaemonExitedError, DaemonNotReadyError

WHOIS_BODY = {
    "Node": {"ID": 1, "Name": "laptop.tail1234.ts.net.", "Addresses": ["100.64.0.7/32"]},
    "UserProfile": {
        "ID": 42,
        "LoginName": "alice@example.com",
        "DisplayName": "Alice",
        "ProfilePicURL": "",
    },
    "CapMap": {},
}


def _client(handler) -> ControlClient:
    return ControlClient(socket_path="/tmp/ts.sock", transport=httpx.MockTransport(handler))


def test_whois_parses_profile_and_sends_addr() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=WHOIS_BODY)

    async def go():
        async with _client(handler) as c:
            return await c.whois("100.64.0.7:51234")

    who = asyncio.run(go())

    assert who.user_profile is not None
    assert who.user_profile.login_name == "alice@example.com"
    assert who.user_profile.display_name == "Alice"
    assert who.node is not None and who.node.name == "laptop.tail1234.ts.net."

    req = seen[0]
    assert req.url.path == "/localapi/v0/whois"
    assert req.url.params["addr"] == "100.64.0.7:51234"
    assert req.url.host == "local-tailscaled.sock"
    assert req.headers["Sec-Tailscale"] == "localapi"


def test_whois_non_200_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="no match for IP:port")

    async def go():
        async with _client(handler) as c:
            await c.whois("100.64.0.9:1")

    with pytest.raises(ControlChannelError) as ei:
        asyncio.run(go())
    assert "http_404" in str(ei.value)


def test_status_invalid_json_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="not json")

    async def go():
        async with _client(handler) as c:
            await c.status()

    with pytest.raises(ControlChannelError):
        asyncio.run(go())


def test_transport_error_raises_control_channel_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("socket missing", request=request)

    async def go():
        async with _client(handler) as c:
            await c.status()

    with pytest.raises(ControlChannelError):
        asyncio.run(go())


def test_wait_until_ready_retries_until_status_answers() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            raise httpx.ConnectError("not yet", request=request)
        return httpx.Response(200, json={"BackendState": "NeedsLogin", "Version": "1.0"})

    async def go():
        async with _client(handler) as c:
            return await wait_until_ready(c, timeout_ms=5_000, backoff_min_ms=1, backoff_max_ms=5)

    st = asyncio.run(go())
    assert st.backend_state == "NeedsLogin"
    assert calls["n"] == 3


def test_wait_until_ready_times_out() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="starting")

    async def go():
        async with _client(handler) as c:
            await wait_until_ready(c, timeout_ms=60, backoff_min_ms=5, backoff_max_ms=10)

    with pytest.raises(DaemonNotReadyError) as ei:
        asyncio.run(go())
    assert ei.value.code == "daemon_not_ready"
    assert ei.value.details["timeout_ms"] == 60


def test_wait_until_ready_stops_when_daemon_dies() -> None:
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover
        raise AssertionError("status must not be polled for a dead daemon")

    async def go():
        async with _client(handler) as c:
            await wait_until_ready(c, timeout_ms=5_000, is_alive=lambda: False)

    with pytest.raises(DaemonExitedError):
        asyncio.run(go())
