from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, List, Optional, Sequence

from meshgate.errors import DaemonExitedError, DaemonStartError
from meshgate.structured_logging import log_event

log = logging.getLogger("meshgate.daemon")

RestartHook = Callable[[], Awaitable[None]]

READ_CHUNK = 4096
MAX_LINE = 8192


class DaemonSupervisor:
    """Runs the overlay daemon as a supervised child process.

    - start() spawns the child and begins draining its output into the log.
    - watch() blocks for the life of the node. An unexpected exit is restarted
      up to `max_restarts` times (awaiting `on_restart` after each respawn,
      typically a readiness poll); past that budget it raises
      DaemonExitedError, which the service treats as fatal.
    - stop() terminates the child (SIGTERM, then SIGKILL after `grace_s`).
    """

    def __init__(
        self,
        argv: Sequence[str],
        *,
        max_restarts: int = 3,
        on_restart: Optional[RestartHook] = None,
        grace_s: float = 10.0,
        tail_lines: int = 50,
    ) -> None:
        if not argv:
            raise ValueError("daemon argv must not be empty")
        self.argv: List[str] = list(argv)
        self.max_restarts = max(0, int(max_restarts))
        self.on_restart = on_restart
        self.grace_s = float(grace_s)
        self.restarts = 0
        self.output_tail: Deque[str] = deque(maxlen=tail_lines)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process is not None else None

    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def _record(self, pid: int, raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace").rstrip()
        self.output_tail.append(text)
        log_event(log, "daemon_output", level=logging.DEBUG, pid=pid, line=text)

    async def _drain(self, process: asyncio.subprocess.Process) -> None:
        # Bounded reads: lines longer than MAX_LINE are logged in pieces.
        stream = process.stdout
        if stream is None:
            return
        pending = b""
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                break
            pending += chunk
            *lines, pending = pending.split(b"\n")
            while len(pending) >= MAX_LINE:
                lines.append(pending[:MAX_LINE])
                pending = pending[MAX_LINE:]
            for line in lines:
                self._record(process.pid, line)
        if pending:
            self._record(process.pid, pending)

    async def _spawn(self) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise DaemonStartError("failed to start daemon", command=self.argv, error=str(e)) from e

        self._process = process
        self._drain_task = asyncio.create_task(self._drain(process))
        log_event(log, "daemon_started", pid=process.pid, command=self.argv, restarts=self.restarts)

    async def start(self) -> None:
        if self.is_alive():
            raise DaemonStartError("daemon already running", pid=self.pid)
        self._stopping = False
        await self._spawn()

    async def _wait_exit(self) -> int:
        process = self._process
        if process is None:
            raise DaemonExitedError("daemon was never started")
        code = await process.wait()
        if self._drain_task is not None:
            await self._drain_task
        return code

    async def watch(self) -> None:
        """Supervise until stop() is called; raises once restarts are exhausted."""
        while True:
            code = await self._wait_exit()
            if self._stopping:
                return

            log_event(
                log,
                "daemon_exited",
                level=logging.ERROR,
                pid=self.pid,
                return_code=code,
                restarts=self.restarts,
                max_restarts=self.max_restarts,
            )
            if self.restarts >= self.max_restarts:
                raise DaemonExitedError(
                    "daemon exited and restart budget is exhausted",
                    return_code=code,
                    restarts=self.restarts,
                    output_tail=list(self.output_tail)[-10:],
                )

            self.restarts += 1
            await self._spawn()
            if self.on_restart is not None:
                try:
                    await self.on_restart()
                except DaemonExitedError as e:
                    # Died again before it came up; the next exit is charged
                    # to the same budget.
                    log_event(log, "daemon_restart_failed", level=logging.WARNING, reason=e.reason)

    async def stop(self) -> None:
        self._stopping = True
        process = self._process
        if process is None or process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self.grace_s)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
        if self._drain_task is not None:
            await self._drain_task
        log_event(log, "daemon_stopped", pid=process.pid, return_code=process.returncode)
