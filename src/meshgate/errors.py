"""Error types.

Two disjoint families:

  - BootstrapError: anything that goes wrong while bringing the node onto the
    overlay network. Always fatal; the entry point logs it and exits.
  - RequestError: a single proxied request could not be admitted or forwarded.
    The proxy answers that request with `status_code` and keeps serving.

Neither family inherits from the other, so an `except BootstrapError` can never
swallow a per-request failure (and vice versa).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class BootstrapError(Exception):
    code: str
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:  # pragma: no cover
        if not self.details:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


class ConfigError(BootstrapError):
    def __init__(self, reason: str, **details: Any) -> None:
        super().__init__("config_invalid", reason, details)


class MissingCredentialError(BootstrapError):
    def __init__(self) -> None:
        super().__init__(
            "missing_credential_or_state",
            "a join credential or previously persisted state must be present",
        )


class StateStoreError(BootstrapError):
    def __init__(self, reason: str, **details: Any) -> None:
        super().__init__("state_store_failed", reason, details)


class StateFileError(BootstrapError):
    def __init__(self, reason: str, **details: Any) -> None:
        super().__init__("state_file_failed", reason, details)


class DaemonStartError(BootstrapError):
    def __init__(self, reason: str, **details: Any) -> None:
        super().__init__("daemon_start_failed", reason, details)


class DaemonNotReadyError(BootstrapError):
    def __init__(self, reason: str, **details: Any) -> None:
        super().__init__("daemon_not_ready", reason, details)


class DaemonExitedError(BootstrapError):
    def __init__(self, reason: str, **details: Any) -> None:
        super().__init__("daemon_exited", reason, details)


class JoinError(BootstrapError):
    def __init__(self, reason: str, **details: Any) -> None:
        super().__init__("join_failed", reason, details)


class ListenerStartError(BootstrapError):
    def __init__(self, reason: str, **details: Any) -> None:
        super().__init__("listener_start_failed", reason, details)


@dataclass
class RequestError(Exception):
    status_code: int
    code: str
    message: str

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.code}:{self.message}"


class IdentityResolutionError(RequestError):
    def __init__(self, message: str = "Your Tailscale works, but we failed to look you up.") -> None:
        super().__init__(500, "whois_failed", message)


class EmptyIdentityError(RequestError):
    def __init__(self, message: str = "failed to identify remote user") -> None:
        super().__init__(500, "empty_identity", message)


class BackendUnavailableError(RequestError):
    def __init__(self, message: str = "backend unavailable") -> None:
        super().__init__(502, "backend_unavailable", message)
