# src/meshgate/store/postgres_db.py
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import psycopg


def with_sslmode(url: str, sslmode: str) -> str:
    """Append `sslmode` to a postgres URL unless the URL already names one.

    Hosted postgres add-ons hand out bare URLs but only accept TLS clients.
    An empty `sslmode` leaves the URL untouched.
    """
    if not sslmode:
        return url
    parsed = urlparse(url)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    if any(k == "sslmode" for k, _ in query):
        return url
    query.append(("sslmode", sslmode))
    return urlunparse(parsed._replace(query=urlencode(query)))


class PostgresDB:
    """PostgreSQL backend for the state store.

    The connection runs in autocommit mode; write_tx() wraps writes in an
    explicit transaction block.
    """

    dialect = "postgres"
    param = "%s"
    driver_errors = (psycopg.Error,)

    def __init__(self, *, url: str, sslmode: str = "require", connect_timeout_s: int = 10) -> None:
        self.url = with_sslmode(url, sslmode)
        self.connect_timeout_s = int(connect_timeout_s)
        self._con: Optional[psycopg.Connection] = None

    @contextmanager
    def connection(self) -> Iterator[psycopg.Connection]:
        if self._con is None or self._con.closed:
            self._con = psycopg.connect(self.url, autocommit=True, connect_timeout=self.connect_timeout_s)
        yield self._con

    @contextmanager
    def write_tx(self) -> Iterator[psycopg.Connection]:
        with self.connection() as con:
            with con.transaction():
                yield con

    @staticmethod
    def create_state_table_sql(table: str) -> str:
        return f"""
        CREATE TABLE IF NOT EXISTS "{table}" (
          "id"    serial primary key,
          "state" text not null
        );
        """

    def close(self) -> None:
        con, self._con = self._con, None
        if con is not None:
            con.close()
