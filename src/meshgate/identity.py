from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional, Protocol

from meshgate.daemon.control import ControlChannelError, WhoIsResponse
from meshgate.errors import EmptyIdentityError, IdentityResolutionError
from meshgate.structured_logging import log_event

log = logging.getLogger("meshgate.identity")


@dataclass(frozen=True)
class PeerIdentity:
    """A verified principal for one inbound request. Never persisted."""

    login_name: str
    display_name: str
    node_name: str
    peer_address: str
    resolved_ts_ms: int


class WhoIsLookup(Protocol):
    async def whois(self, addr: str) -> WhoIsResponse: ...


def peer_address(host: Optional[str], port: Optional[int]) -> str:
    """Format a connection's remote endpoint as `ip:port` (`[ip]:port` for IPv6)."""
    h = (host or "").strip()
    if ":" in h and not h.startswith("["):
        h = f"[{h}]"
    return f"{h}:{int(port or 0)}"


class IdentityResolver:
    """Resolves an overlay peer address to the user behind it.

    Each call is a live lookup against the daemon; results are not cached.
    """

    def __init__(self, control: WhoIsLookup) -> None:
        self._control = control

    async def resolve(self, addr: str) -> PeerIdentity:
        try:
            who = await self._control.whois(addr)
        except ControlChannelError as e:
            log_event(log, "whois_failed", level=logging.WARNING, peer=addr, error=str(e))
            raise IdentityResolutionError() from e

        profile = who.user_profile
        login = (profile.login_name or "").strip() if profile is not None else ""
        if not login:
            log_event(log, "whois_empty_identity", level=logging.WARNING, peer=addr)
            raise EmptyIdentityError()

        return PeerIdentity(
            login_name=login,
            display_name=(profile.display_name or "").strip(),
            node_name=(who.node.name or "").strip() if who.node is not None else "",
            peer_address=addr,
            resolved_ts_ms=int(time.time() * 1000),
        )
