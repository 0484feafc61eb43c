"""One-shot node bootstrap.

Brings the overlay daemon up from whatever state survived in the relational
store, joins the network, and writes the (possibly refreshed) state back:

  INIT -> LOAD_STATE -> [MATERIALIZE_LOCAL_FILE] -> VALIDATE_CREDENTIALS
       -> START_DAEMON -> AWAIT_READINESS -> JOIN_NETWORK
       -> READ_LOCAL_FILE -> PERSIST_IF_CHANGED -> READY

Every step either completes or raises a BootstrapError; there is no partial
success. The store connection is closed when run() returns or raises.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Protocol

from meshgate.errors import MissingCredentialError, StateFileError
from meshgate.store.state_store import StateStore
from meshgate.structured_logging import log_event

log = logging.getLogger("meshgate.bootstrap")


class Phase(str, Enum):
    INIT = "init"
    LOAD_STATE = "load_state"
    MATERIALIZE_LOCAL_FILE = "materialize_local_file"
    VALIDATE_CREDENTIALS = "validate_credentials"
    START_DAEMON = "start_daemon"
    AWAIT_READINESS = "await_readiness"
    JOIN_NETWORK = "join_network"
    READ_LOCAL_FILE = "read_local_file"
    PERSIST_IF_CHANGED = "persist_if_changed"
    READY = "ready"


class Daemon(Protocol):
    async def start(self) -> None: ...

    def is_alive(self) -> bool: ...


AwaitReady = Callable[[Callable[[], bool]], Awaitable[None]]
JoinNetwork = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class BootstrapResult:
    resumed: bool  # a persisted blob was found and replayed
    persisted: bool  # a new row was appended after the join
    state_size: int
    duration_ms: int


class BootstrapSequencer:
    def __init__(
        self,
        *,
        store: StateStore,
        daemon: Daemon,
        await_ready: AwaitReady,
        join: JoinNetwork,
        state_file: str,
        auth_key: Optional[str],
        retention: int = 0,
    ) -> None:
        self.store = store
        self.daemon = daemon
        self.await_ready = await_ready
        self.join = join
        self.state_file = Path(state_file)
        self.auth_key = auth_key or None
        self.retention = int(retention)
        self.phase = Phase.INIT
        self.history: List[Phase] = [Phase.INIT]

    def _enter(self, phase: Phase, **fields) -> None:
        self.phase = phase
        self.history.append(phase)
        log_event(log, "bootstrap_phase", phase=phase.value, **fields)

    def _write_state_file(self, blob: bytes) -> None:
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.state_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as fh:
                fh.write(blob)
        except OSError as e:
            raise StateFileError("failed to write state file", path=str(self.state_file), error=str(e)) from e

    def _read_state_file(self) -> bytes:
        try:
            return self.state_file.read_bytes()
        except OSError as e:
            raise StateFileError("failed to read state file", path=str(self.state_file), error=str(e)) from e

    async def run(self) -> BootstrapResult:
        started = time.monotonic()
        try:
            self._enter(Phase.LOAD_STATE)
            self.store.ensure_schema()
            # An empty stored value means the node never completed a join.
            prior = self.store.load_latest() or None

            if prior is not None:
                self._enter(Phase.MATERIALIZE_LOCAL_FILE, size=len(prior))
                self._write_state_file(prior)

            self._enter(Phase.VALIDATE_CREDENTIALS, has_state=prior is not None, has_auth_key=self.auth_key is not None)
            if self.auth_key is None and prior is None:
                raise MissingCredentialError()

            self._enter(Phase.START_DAEMON)
            await self.daemon.start()

            self._enter(Phase.AWAIT_READINESS)
            await self.await_ready(self.daemon.is_alive)

            self._enter(Phase.JOIN_NETWORK)
            await self.join()

            self._enter(Phase.READ_LOCAL_FILE)
            current = self._read_state_file()

            self._enter(Phase.PERSIST_IF_CHANGED, size=len(current))
            persisted = self.store.append_if_changed(current)
            if persisted:
                self.store.prune(self.retention)
        finally:
            self.store.close()

        result = BootstrapResult(
            resumed=prior is not None,
            persisted=persisted,
            state_size=len(current),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        self._enter(
            Phase.READY,
            resumed=result.resumed,
            persisted=result.persisted,
            duration_ms=result.duration_ms,
        )
        return result
