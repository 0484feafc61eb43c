# src/meshgate/store/state_store.py
from __future__ import annotations

import logging
import re
from typing import Optional, Union

from meshgate.errors import ConfigError, StateStoreError
from meshgate.store.postgres_db import PostgresDB
from meshgate.store.sqlite_db import SqliteDB
from meshgate.structured_logging import log_event

log = logging.getLogger("meshgate.store")

Backend = Union[SqliteDB, PostgresDB]

DEFAULT_TABLE = "tailscale_data"

_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


class StateStore:
    """Append-only history of the overlay daemon's state blob.

    The blob is opaque: it is stored and replayed verbatim, never parsed.
    "Current" is the row with the highest id.

    append_if_changed() compares against the value this process last loaded
    (or wrote), not against the database. That is only correct with a single
    writer instance, which is how the node is deployed.
    """

    def __init__(self, *, db: Backend, table: str = DEFAULT_TABLE) -> None:
        if not _TABLE_RE.match(table):
            raise ConfigError("invalid state table name", table=table)
        self._db = db
        self._table = table
        self._baseline: Optional[bytes] = None

    @property
    def dialect(self) -> str:
        return self._db.dialect

    def _sql(self, text: str) -> str:
        return text.replace("{table}", f'"{self._table}"').replace("{p}", self._db.param)

    def ensure_schema(self) -> None:
        try:
            with self._db.write_tx() as con:
                con.execute(self._db.create_state_table_sql(self._table))
        except self._db.driver_errors as e:
            raise StateStoreError(f"failed to create {self._table} table", error=str(e)) from e

    def load_latest(self) -> Optional[bytes]:
        """Return the newest blob, or None when the table is empty."""
        try:
            with self._db.connection() as con:
                row = con.execute(self._sql('SELECT "state" FROM {table} ORDER BY "id" DESC LIMIT 1')).fetchone()
        except self._db.driver_errors as e:
            raise StateStoreError("failed to read state from database", error=str(e)) from e

        if row is None:
            self._baseline = None
            return None
        blob = str(row[0]).encode("utf-8")
        self._baseline = blob
        return blob

    def append_if_changed(self, blob: bytes) -> bool:
        """Insert `blob` unless it equals the last loaded/written value.

        Returns True when a row was written.
        """
        if blob == (self._baseline or b""):
            return False
        try:
            text = blob.decode("utf-8")
        except UnicodeDecodeError as e:
            raise StateStoreError("state blob is not valid UTF-8", error=str(e)) from e

        try:
            with self._db.write_tx() as con:
                con.execute(self._sql('INSERT INTO {table}("state") VALUES({p})'), (text,))
        except self._db.driver_errors as e:
            raise StateStoreError("failed to update state in database", error=str(e)) from e

        self._baseline = blob
        log_event(log, "state_appended", table=self._table, size=len(blob))
        return True

    def prune(self, keep: int) -> int:
        """Delete all but the newest `keep` rows. `keep <= 0` keeps everything.

        Returns the number of deleted rows.
        """
        if keep <= 0:
            return 0
        try:
            with self._db.write_tx() as con:
                row = con.execute(
                    self._sql('SELECT "id" FROM {table} ORDER BY "id" DESC LIMIT 1 OFFSET {p}'), (keep - 1,)
                ).fetchone()
                if row is None:
                    return 0
                cur = con.execute(self._sql('DELETE FROM {table} WHERE "id" < {p}'), (int(row[0]),))
                deleted = int(cur.rowcount or 0)
        except self._db.driver_errors as e:
            raise StateStoreError("failed to prune state history", error=str(e)) from e

        if deleted:
            log_event(log, "state_pruned", table=self._table, deleted=deleted, kept=keep)
        return deleted

    def row_count(self) -> int:
        try:
            with self._db.connection() as con:
                row = con.execute(self._sql("SELECT COUNT(*) FROM {table}")).fetchone()
        except self._db.driver_errors as e:
            raise StateStoreError("failed to count state rows", error=str(e)) from e
        return int(row[0]) if row is not None else 0

    def close(self) -> None:
        try:
            self._db.close()
        except self._db.driver_errors as e:
            log_event(log, "state_store_close_failed", level=logging.WARNING, error=str(e))


def open_state_store(url: str, *, sslmode: str = "require", table: str = DEFAULT_TABLE) -> StateStore:
    """Build a StateStore from a connection URL.

    Accepted schemes:
      - postgres://..., postgresql://...   (production)
      - sqlite:///relative/path.db, sqlite:////abs/path.db, sqlite:///:memory:
    """
    url = (url or "").strip()
    scheme = url.split(":", 1)[0].lower() if ":" in url else ""

    if scheme in {"postgres", "postgresql"}:
        return StateStore(db=PostgresDB(url=url, sslmode=sslmode), table=table)

    if scheme == "sqlite":
        if not url.startswith("sqlite:///") or len(url) == len("sqlite:///"):
            raise ConfigError("sqlite URL must look like sqlite:///path/to.db", url=url)
        return StateStore(db=SqliteDB(path=url[len("sqlite:///"):]), table=table)

    raise ConfigError("unsupported DATABASE_URL scheme", scheme=scheme or None)
