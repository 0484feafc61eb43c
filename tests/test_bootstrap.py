from __future__ import annotations

import asyncio
import os
import stat
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from meshgate.bootstrap import BootstrapSequencer, Phase
from meshgate.errors import (
    DaemonNotReadyError,
    JoinError,
    MissingCredentialError,
    StateFileError,
)
from meshgate.store.sqlite_db import SqliteDB
from meshgate.store.state_store import StateStore


class FakeDaemon:
    def __init__(self, events: List[str]) -> None:
        self.events = events
        self.started = False

    async def start(self) -> None:
        self.events.append("start")
        self.started = True

    def is_alive(self) -> bool:
        return self.started


def _seed(db_path: Path, *blobs: bytes) -> None:
    st = StateStore(db=SqliteDB(path=str(db_path)))
    st.ensure_schema()
    for b in blobs:
        st.append_if_changed(b)
    st.close()


def _rows(db_path: Path) -> int:
    st = StateStore(db=SqliteDB(path=str(db_path)))
    st.ensure_schema()
    try:
        return st.row_count()
    finally:
        st.close()


def _latest(db_path: Path) -> Optional[bytes]:
    st = StateStore(db=SqliteDB(path=str(db_path)))
    st.ensure_schema()
    try:
        return st.load_latest()
    finally:
        st.close()


def _sequencer(
    tmp_path: Path,
    *,
    auth_key: Optional[str],
    join_writes: Optional[bytes] = None,
    join_error: Optional[Exception] = None,
    ready_error: Optional[Exception] = None,
    retention: int = 0,
    events: Optional[List[str]] = None,
):
    events = events if events is not None else []
    state_file = tmp_path / "app" / "ts.state"
    daemon = FakeDaemon(events)

    async def await_ready(is_alive: Callable[[], bool]) -> None:
        events.append(f"ready:{is_alive()}")
        if ready_error is not None:
            raise ready_error

    async def join() -> None:
        # The file must already hold the replayed state when the daemon joins.
        events.append("join:" + (state_file.read_text() if state_file.exists() else "<none>"))
        if join_error is not None:
            raise join_error
        if join_writes is not None:
            state_file.write_bytes(join_writes)

    seq = BootstrapSequencer(
        store=StateStore(db=SqliteDB(path=str(tmp_path / "state.db"))),
        daemon=daemon,
        await_ready=await_ready,
        join=join,
        state_file=str(state_file),
        auth_key=auth_key,
        retention=retention,
    )
    return seq, daemon, events, state_file


def test_no_credential_and_no_state_fails_before_daemon_start(tmp_path: Path) -> None:
    seq, daemon, events, _ = _sequencer(tmp_path, auth_key=None)

    with pytest.raises(MissingCredentialError) as ei:
        asyncio.run(seq.run())

    assert ei.value.code == "missing_credential_or_state"
    assert daemon.started is False
    assert events == []
    assert seq.phase == Phase.VALIDATE_CREDENTIALS


def test_resume_replays_state_before_join_and_skips_unchanged_write(tmp_path: Path) -> None:
    _seed(tmp_path / "state.db", b"S1")
    seq, daemon, events, state_file = _sequencer(tmp_path, auth_key=None)

    result = asyncio.run(seq.run())

    assert events == ["start", "ready:True", "join:S1"]
    assert result.resumed is True
    assert result.persisted is False
    assert _rows(tmp_path / "state.db") == 1
    assert state_file.read_bytes() == b"S1"


def test_resume_with_refreshed_state_appends_row(tmp_path: Path) -> None:
    _seed(tmp_path / "state.db", b"S1")
    seq, _, _, _ = _sequencer(tmp_path, auth_key=None, join_writes=b"S2")

    result = asyncio.run(seq.run())

    assert result.persisted is True
    assert result.state_size == 2
    assert _rows(tmp_path / "state.db") == 2
    assert _latest(tmp_path / "state.db") == b"S2"


def test_first_run_with_auth_key_persists_new_state(tmp_path: Path) -> None:
    seq, _, events, state_file = _sequencer(tmp_path, auth_key="tskey-abc", join_writes=b"fresh")

    result = asyncio.run(seq.run())

    assert events == ["start", "ready:True", "join:<none>"]
    assert result.resumed is False
    assert result.persisted is True
    assert _latest(tmp_path / "state.db") == b"fresh"
    assert Phase.MATERIALIZE_LOCAL_FILE not in seq.history


def test_phase_order(tmp_path: Path) -> None:
    _seed(tmp_path / "state.db", b"S1")
    seq, _, _, _ = _sequencer(tmp_path, auth_key="k", join_writes=b"S2")

    asyncio.run(seq.run())

    assert seq.history == [
        Phase.INIT,
        Phase.LOAD_STATE,
        Phase.MATERIALIZE_LOCAL_FILE,
        Phase.VALIDATE_CREDENTIALS,
        Phase.START_DAEMON,
        Phase.AWAIT_READINESS,
        Phase.JOIN_NETWORK,
        Phase.READ_LOCAL_FILE,
        Phase.PERSIST_IF_CHANGED,
        Phase.READY,
    ]
    assert seq.phase == Phase.READY


def test_empty_stored_state_counts_as_no_state(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"
    st = StateStore(db=SqliteDB(path=str(db_path)))
    st.ensure_schema()
    with SqliteDB(path=str(db_path)).write_tx() as con:
        con.execute('INSERT INTO "tailscale_data"("state") VALUES(?)', ("",))
    st.close()

    seq, daemon, _, _ = _sequencer(tmp_path, auth_key=None)
    with pytest.raises(MissingCredentialError):
        asyncio.run(seq.run())
    assert daemon.started is False


def test_state_file_is_owner_only(tmp_path: Path) -> None:
    _seed(tmp_path / "state.db", b"secret")
    seq, _, _, state_file = _sequencer(tmp_path, auth_key=None)

    asyncio.run(seq.run())

    mode = stat.S_IMODE(os.stat(state_file).st_mode)
    assert mode == 0o600


def test_join_failure_leaves_store_untouched(tmp_path: Path) -> None:
    _seed(tmp_path / "state.db", b"S1")
    seq, _, _, _ = _sequencer(tmp_path, auth_key="k", join_error=JoinError("join command failed", return_code=1))

    with pytest.raises(JoinError):
        asyncio.run(seq.run())

    assert seq.phase == Phase.JOIN_NETWORK
    assert _rows(tmp_path / "state.db") == 1


def test_readiness_failure_stops_before_join(tmp_path: Path) -> None:
    seq, _, events, _ = _sequencer(
        tmp_path,
        auth_key="k",
        ready_error=DaemonNotReadyError("control channel did not become ready"),
    )

    with pytest.raises(DaemonNotReadyError):
        asyncio.run(seq.run())

    assert seq.phase == Phase.AWAIT_READINESS
    assert not any(e.startswith("join:") for e in events)


def test_missing_state_file_after_join_is_an_error(tmp_path: Path) -> None:
    seq, _, _, _ = _sequencer(tmp_path, auth_key="k")

    with pytest.raises(StateFileError) as ei:
        asyncio.run(seq.run())

    assert ei.value.code == "state_file_failed"
    assert _rows(tmp_path / "state.db") == 0


def test_retention_prunes_history_after_append(tmp_path: Path) -> None:
    _seed(tmp_path / "state.db", b"a", b"b", b"c", b"d")
    seq, _, _, _ = _sequencer(tmp_path, auth_key=None, join_writes=b"e", retention=2)

    asyncio.run(seq.run())

    assert _rows(tmp_path / "state.db") == 2
    assert _latest(tmp_path / "state.db") == b"e"
