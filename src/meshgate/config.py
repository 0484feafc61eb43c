from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from meshgate.errors import ConfigError


@dataclass(frozen=True)
class GatewayConfig:
    database_url: str
    public_port: int
    auth_key: Optional[str]
    db_sslmode: str

    # Overlay daemon
    state_file: str
    socket_path: str
    daemon_bin: str
    cli_bin: str
    tun_mode: str
    hostname: str

    # Readiness and supervision
    ready_timeout_ms: int
    ready_backoff_min_ms: int
    ready_backoff_max_ms: int
    control_timeout_ms: int
    join_timeout_s: int
    daemon_max_restarts: int

    # Proxy
    proxy_host: str
    proxy_port: int
    backend_url: str
    identity_header: str
    backend_timeout_s: float

    state_retention: int


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return int(default)
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer", value=raw) from None


def _env_port(name: str, raw: Optional[str]) -> int:
    if raw is None or not raw.strip():
        raise ConfigError(f"{name} is not set")
    try:
        port = int(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer", value=raw) from None
    if not 0 < port < 65536:
        raise ConfigError(f"{name} out of range", value=port)
    return port


def _auth_key() -> Optional[str]:
    for name in ("MESHGATE_AUTH_KEY", "TAILSCALE_AUTHKEY"):
        v = (os.environ.get(name) or "").strip()
        if v:
            return v
    return None


def normalize_backend_url(url: str) -> str:
    """Validate the backend base URL and strip the trailing slash.

    The backend sits on the loopback side of the proxy; only http(s) origins
    without query or fragment are accepted.
    """
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"}:
        raise ConfigError("MESHGATE_BACKEND_URL must be http or https", value=url)
    if not parsed.hostname:
        raise ConfigError("MESHGATE_BACKEND_URL must include a hostname", value=url)
    if parsed.query or parsed.fragment:
        raise ConfigError("MESHGATE_BACKEND_URL must not include query or fragment", value=url)
    return url.rstrip("/")


def load_gateway_config() -> GatewayConfig:
    database_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not database_url:
        raise ConfigError("DATABASE_URL is not set")

    public_port = _env_port("PORT", os.environ.get("PORT"))

    backoff_min = max(1, _env_int("MESHGATE_READY_BACKOFF_MIN_MS", 50))
    backoff_max = max(backoff_min, _env_int("MESHGATE_READY_BACKOFF_MAX_MS", 2_000))

    return GatewayConfig(
        database_url=database_url,
        public_port=public_port,
        auth_key=_auth_key(),
        db_sslmode=_env_str("MESHGATE_DB_SSLMODE", "require"),
        state_file=_env_str("MESHGATE_STATE_FILE", "/app/ts.state"),
        socket_path=_env_str("MESHGATE_SOCKET", "/app/ts.sock"),
        daemon_bin=_env_str("MESHGATE_DAEMON_BIN", "/app/tailscaled"),
        cli_bin=_env_str("MESHGATE_CLI_BIN", "/app/tailscale"),
        tun_mode=_env_str("MESHGATE_TUN_MODE", "userspace-networking"),
        hostname=_env_str("MESHGATE_HOSTNAME", "grafana-server"),
        ready_timeout_ms=max(100, _env_int("MESHGATE_READY_TIMEOUT_MS", 30_000)),
        ready_backoff_min_ms=backoff_min,
        ready_backoff_max_ms=backoff_max,
        control_timeout_ms=max(100, _env_int("MESHGATE_CONTROL_TIMEOUT_MS", 5_000)),
        join_timeout_s=max(0, _env_int("MESHGATE_JOIN_TIMEOUT_S", 0)),
        daemon_max_restarts=max(0, _env_int("MESHGATE_DAEMON_MAX_RESTARTS", 3)),
        proxy_host=_env_str("MESHGATE_PROXY_HOST", "0.0.0.0"),
        proxy_port=_env_port("MESHGATE_PROXY_PORT", os.environ.get("MESHGATE_PROXY_PORT") or "3001"),
        backend_url=normalize_backend_url(_env_str("MESHGATE_BACKEND_URL", "http://localhost:3000")),
        identity_header=_env_str("MESHGATE_IDENTITY_HEADER", "X-Tailscale-User"),
        backend_timeout_s=float(max(1, _env_int("MESHGATE_BACKEND_TIMEOUT_S", 60))),
        state_retention=max(0, _env_int("MESHGATE_STATE_RETENTION", 10)),
    )
