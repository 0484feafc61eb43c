"""Client for the overlay daemon's local control API.

The daemon serves HTTP on a unix socket. Only two endpoints are used:

  - GET /localapi/v0/status           readiness probe
  - GET /localapi/v0/whois?addr=...   peer address -> user profile

Response bodies are parsed with pydantic models that keep only the fields we
read; everything else the daemon returns is ignored.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Callable, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from meshgate.errors import DaemonExitedError, DaemonNotReadyError
from meshgate.structured_logging import log_event

log = logging.getLogger("meshgate.control")

LOCAL_API_HOST = "local-tailscaled.sock"


class ControlChannelError(Exception):
    """The control API could not be reached or answered unusably."""


class UserProfile(BaseModel):
    login_name: Optional[str] = Field(default=None, alias="LoginName")
    display_name: Optional[str] = Field(default=None, alias="DisplayName")

    model_config = {"extra": "ignore", "populate_by_name": True}


class NodeInfo(BaseModel):
    name: Optional[str] = Field(default=None, alias="Name")

    model_config = {"extra": "ignore", "populate_by_name": True}


class WhoIsResponse(BaseModel):
    node: Optional[NodeInfo] = Field(default=None, alias="Node")
    user_profile: Optional[UserProfile] = Field(default=None, alias="UserProfile")

    model_config = {"extra": "ignore", "populate_by_name": True}


class StatusResponse(BaseModel):
    backend_state: Optional[str] = Field(default=None, alias="BackendState")

    model_config = {"extra": "ignore", "populate_by_name": True}


class ControlClient:
    def __init__(
        self,
        *,
        socket_path: str,
        timeout_s: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.socket_path = socket_path
        self._client = httpx.AsyncClient(
            transport=transport or httpx.AsyncHTTPTransport(uds=socket_path),
            base_url=f"http://{LOCAL_API_HOST}",
            timeout=timeout_s,
            headers={"Sec-Tailscale": "localapi"},
        )

    async def __aenter__(self) -> "ControlClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_json(self, path: str, params: Optional[dict] = None) -> object:
        try:
            r = await self._client.get(path, params=params)
        except httpx.HTTPError as e:
            raise ControlChannelError(f"{path}: {e.__class__.__name__}: {e}") from e
        if r.status_code != 200:
            raise ControlChannelError(f"{path}: http_{r.status_code}: {r.text[:300]}")
        try:
            return r.json()
        except ValueError as e:
            raise ControlChannelError(f"{path}: invalid json") from e

    async def status(self) -> StatusResponse:
        data = await self._get_json("/localapi/v0/status")
        try:
            return StatusResponse.model_validate(data)
        except ValidationError as e:
            raise ControlChannelError(f"status: unexpected response: {e}") from e

    async def whois(self, addr: str) -> WhoIsResponse:
        data = await self._get_json("/localapi/v0/whois", params={"addr": addr})
        try:
            return WhoIsResponse.model_validate(data)
        except ValidationError as e:
            raise ControlChannelError(f"whois: unexpected response: {e}") from e


async def wait_until_ready(
    control: ControlClient,
    *,
    timeout_ms: int,
    backoff_min_ms: int = 50,
    backoff_max_ms: int = 2_000,
    is_alive: Optional[Callable[[], bool]] = None,
) -> StatusResponse:
    """Poll the control API until it answers, with jittered exponential backoff.

    Raises DaemonExitedError as soon as `is_alive()` reports the daemon gone,
    and DaemonNotReadyError once `timeout_ms` has elapsed.
    """
    started = time.monotonic()
    deadline = started + timeout_ms / 1000.0
    attempt = 0
    last_err = ""

    while True:
        if is_alive is not None and not is_alive():
            raise DaemonExitedError("daemon exited before its control channel came up", attempts=attempt)
        try:
            st = await control.status()
            log_event(
                log,
                "daemon_ready",
                attempts=attempt + 1,
                waited_ms=int((time.monotonic() - started) * 1000),
                backend_state=st.backend_state,
            )
            return st
        except ControlChannelError as e:
            last_err = str(e)

        now = time.monotonic()
        if now >= deadline:
            raise DaemonNotReadyError(
                "control channel did not become ready",
                socket=control.socket_path,
                timeout_ms=timeout_ms,
                attempts=attempt + 1,
                last_error=last_err,
            )

        sleep_s = min(backoff_max_ms, backoff_min_ms * (2 ** min(attempt, 16))) / 1000.0
        sleep_s *= 0.5 + random.random()
        await asyncio.sleep(min(sleep_s, max(0.0, deadline - now)))
        attempt += 1
