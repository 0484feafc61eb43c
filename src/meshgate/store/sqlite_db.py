# src/meshgate/store/sqlite_db.py
from __future__ import annotations

import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional


def _now_ms() -> int:
    return int(time.time() * 1000)


def _env_int(name: str, default: int) -> int:
    try:
        raw = str(os.environ.get(name, "")).strip()
        return int(raw) if raw else int(default)
    except ValueError:
        return int(default)


class SqliteDB:
    """SQLite backend for the state store.

    Meant for local runs and tests: a file on the node's own disk does not
    survive the platform's storage wipe, so production deployments point
    DATABASE_URL at PostgreSQL instead.

    One connection is opened lazily and reused until close().
    """

    dialect = "sqlite"
    param = "?"
    driver_errors = (sqlite3.Error,)

    def __init__(self, *, path: str) -> None:
        self.path = str(path)
        self._con: Optional[sqlite3.Connection] = None

    @property
    def in_memory(self) -> bool:
        return self.path == ":memory:"

    @staticmethod
    def _sqlite_synchronous_pragma() -> str:
        """Return a safe PRAGMA synchronous value.

        Override with MESHGATE_SQLITE_SYNCHRONOUS in {OFF,NORMAL,FULL,EXTRA};
        defaults to FULL.
        """
        raw = (os.environ.get("MESHGATE_SQLITE_SYNCHRONOUS") or "FULL").strip().upper()
        if raw not in {"OFF", "NORMAL", "FULL", "EXTRA"}:
            raw = "FULL"
        return raw

    def _connect(self) -> sqlite3.Connection:
        if not self.in_memory:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        connect_timeout_s = float(_env_int("MESHGATE_SQLITE_CONNECT_TIMEOUT_MS", 30_000)) / 1000.0
        con = sqlite3.connect(
            self.path,
            timeout=connect_timeout_s,
            isolation_level=None,  # we manage BEGIN/COMMIT ourselves
            check_same_thread=False,
        )

        if not self.in_memory:
            allow_non_wal = (os.environ.get("MESHGATE_SQLITE_ALLOW_NON_WAL") or "").strip().lower() in {"1", "true"}
            row = con.execute("PRAGMA journal_mode=WAL;").fetchone()
            mode = str(row[0]).strip().lower() if row is not None else ""
            if mode and mode != "wal" and not allow_non_wal:
                con.close()
                raise sqlite3.OperationalError(f"sqlite journal_mode is '{mode}', expected 'wal'")

        con.execute(f"PRAGMA synchronous={self._sqlite_synchronous_pragma()};")
        busy_ms = max(0, _env_int("MESHGATE_SQLITE_BUSY_TIMEOUT_MS", int(connect_timeout_s * 1000)))
        con.execute(f"PRAGMA busy_timeout={busy_ms};")
        return con

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        if self._con is None:
            self._con = self._connect()
        yield self._con

    @staticmethod
    def _is_locked_error(e: Exception) -> bool:
        msg = str(e).lower()
        return ("database is locked" in msg) or ("database is busy" in msg)

    def _backoff_sleep(self, attempt: int, deadline_ts: int, err: Exception) -> None:
        if not self._is_locked_error(err) or _now_ms() >= deadline_ts:
            raise err
        base_sleep = max(0.001, float(_env_int("MESHGATE_SQLITE_WRITE_BACKOFF_BASE_MS", 5)) / 1000.0)
        max_sleep = max(base_sleep, float(_env_int("MESHGATE_SQLITE_WRITE_BACKOFF_MAX_MS", 250)) / 1000.0)
        sleep_s = min(max_sleep, base_sleep * (2.0 ** min(attempt, 8)))
        time.sleep(sleep_s * (0.5 + random.random()))

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction.

        `BEGIN IMMEDIATE` and `COMMIT` are retried with jittered exponential
        backoff while another writer holds the lock, up to
        MESHGATE_SQLITE_WRITE_DEADLINE_MS; any other error propagates at once.
        """
        deadline_ts = _now_ms() + max(250, _env_int("MESHGATE_SQLITE_WRITE_DEADLINE_MS", 30_000))

        with self.connection() as con:
            attempt = 0
            while True:
                try:
                    con.execute("BEGIN IMMEDIATE;")
                    break
                except sqlite3.OperationalError as e:
                    self._backoff_sleep(attempt, deadline_ts, e)
                    attempt += 1

            try:
                yield con
                attempt = 0
                while True:
                    try:
                        con.execute("COMMIT;")
                        break
                    except sqlite3.OperationalError as e:
                        self._backoff_sleep(attempt, deadline_ts, e)
                        attempt += 1
            except BaseException:
                if con.in_transaction:
                    con.execute("ROLLBACK;")
                raise

    @staticmethod
    def create_state_table_sql(table: str) -> str:
        return f"""
        CREATE TABLE IF NOT EXISTS "{table}" (
          "id"    INTEGER PRIMARY KEY AUTOINCREMENT,
          "state" TEXT NOT NULL
        );
        """

    def close(self) -> None:
        con, self._con = self._con, None
        if con is not None:
            con.close()
