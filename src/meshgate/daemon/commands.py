from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence

from meshgate.errors import JoinError
from meshgate.structured_logging import log_event

log = logging.getLogger("meshgate.daemon")

REDACTED = "<redacted>"


def daemon_argv(*, daemon_bin: str, socket_path: str, state_file: str, tun_mode: str) -> List[str]:
    return [daemon_bin, "--socket", socket_path, "--state", state_file, "--tun", tun_mode]


def join_argv(*, cli_bin: str, socket_path: str, hostname: str, auth_key: Optional[str]) -> List[str]:
    args = [cli_bin, "--socket", socket_path, "up", "--hostname", hostname]
    if auth_key:
        args += ["--authkey", auth_key]
    return args


def redact_argv(argv: Sequence[str], secrets: Sequence[Optional[str]]) -> List[str]:
    hidden = {s for s in secrets if s}
    return [REDACTED if a in hidden else a for a in argv]


def _tail(raw: bytes, limit: int = 2_000) -> str:
    return raw.decode("utf-8", errors="replace").strip()[-limit:]


async def run_join(argv: Sequence[str], *, auth_key: Optional[str] = None, timeout_s: float = 0) -> None:
    """Run the foreground join command; any failure raises JoinError.

    `timeout_s <= 0` waits indefinitely.
    """
    shown = redact_argv(argv, [auth_key])
    log_event(log, "join_start", command=shown)

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise JoinError("failed to start join command", command=shown, error=str(e)) from e

    try:
        if timeout_s > 0:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
        else:
            stdout, stderr = await proc.communicate()
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise JoinError("join command timed out", command=shown, timeout_s=timeout_s) from None

    if proc.returncode != 0:
        err = _tail(stderr)
        if auth_key:
            err = err.replace(auth_key, REDACTED)
        raise JoinError(
            "join command failed",
            command=shown,
            return_code=proc.returncode,
            stderr=err,
        )

    log_event(log, "join_complete", command=shown, stdout=_tail(stdout, 500))
