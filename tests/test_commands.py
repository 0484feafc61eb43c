from __future__ import annotations

import asyncio
import sys

import pytest

from meshgate.daemon.commands import REDACTED, daemon_argv, join_argv, redact_argv, run_join
from meshgate.errors import JoinError


def test_daemon_argv() -> None:
    assert daemon_argv(
        daemon_bin="/app/tailscaled",
        socket_path="/app/ts.sock",
        state_file="/app/ts.state",
        tun_mode="userspace-networking",
    ) == ["/app/tailscaled", "--socket", "/app/ts.sock", "--state", "/app/ts.state", "--tun", "userspace-networking"]


def test_join_argv_with_and_without_key() -> None:
    base = ["/app/tailscale", "--socket", "/app/ts.sock", "up", "--hostname", "grafana-server"]
    assert join_argv(cli_bin="/app/tailscale", socket_path="/app/ts.sock", hostname="grafana-server", auth_key=None) == base
    assert join_argv(
        cli_bin="/app/tailscale", socket_path="/app/ts.sock", hostname="grafana-server", auth_key="tskey-1"
    ) == base + ["--authkey", "tskey-1"]


def test_redact_argv_hides_secrets() -> None:
    argv = ["tailscale", "up", "--authkey", "tskey-1"]
    assert redact_argv(argv, ["tskey-1", None]) == ["tailscale", "up", "--authkey", REDACTED]
    assert redact_argv(argv, [None]) == argv


def test_run_join_success() -> None:
    asyncio.run(run_join([sys.executable, "-c", "print('Success.')"]))


def test_run_join_nonzero_exit_redacts_key() -> None:
    key = "tskey-secret"
    argv = [sys.executable, "-c", f"import sys; sys.stderr.write('bad key {key}'); sys.exit(3)", "--authkey", key]

    with pytest.raises(JoinError) as ei:
        asyncio.run(run_join(argv, auth_key=key))

    err = ei.value
    assert err.code == "join_failed"
    assert err.details["return_code"] == 3
    assert key not in err.details["stderr"]
    assert REDACTED in err.details["stderr"]
    assert key not in err.details["command"]


def test_run_join_missing_binary() -> None:
    with pytest.raises(JoinError) as ei:
        asyncio.run(run_join(["/nonexistent/tailscale", "up"]))
    assert ei.value.reason == "failed to start join command"


def test_run_join_timeout() -> None:
    with pytest.raises(JoinError) as ei:
        asyncio.run(run_join([sys.executable, "-c", "import time; time.sleep(30)"], timeout_s=0.2))
    assert ei.value.reason == "join command timed out"
