"""PostgreSQL/PostGIS access shared by the permit sync and the tile endpoints."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, Iterator, Mapping, Sequence, Union

import psycopg

from .config import DatabaseConfig


Params = Union[Sequence[object], Mapping[str, object], None]


@dataclass
class PostgresClient:
    """Short-lived psycopg connections carrying the service's session settings.

    Every call opens its own connection; use :meth:`transaction` when several
    statements have to commit or roll back together.
    """

    dsn: str
    application_name: str = "permitmap"
    connect_timeout: int = 10
    statement_timeout_ms: int | None = 60_000

    @classmethod
    def from_config(cls, config: DatabaseConfig, *, application_name: str | None = None) -> "PostgresClient":
        return cls(
            config.dsn,
            application_name=application_name or config.application_name,
            connect_timeout=config.connect_timeout,
            statement_timeout_ms=config.statement_timeout_ms,
        )

    @contextmanager
    def connect(self, *, autocommit: bool = False) -> Iterator[psycopg.Connection]:
        with psycopg.connect(
            self.dsn,
            autocommit=autocommit,
            connect_timeout=self.connect_timeout,
            application_name=self.application_name,
        ) as conn:
            if self.statement_timeout_ms is not None:
                conn.execute(f"SET statement_timeout = {int(self.statement_timeout_ms)}")
            yield conn

    @contextmanager
    def transaction(self) -> Iterator[psycopg.Connection]:
        """Yield a connection whose work commits on success and rolls back on error."""

        with self.connect() as conn:
            with conn.transaction():
                yield conn

    def execute(self, sql: str, params: Params = None) -> int:
        """Run one autocommitted statement and return the affected row count."""

        with self.connect(autocommit=True) as conn:
            return conn.execute(sql, params or ()).rowcount

    def fetch_one(self, sql: str, params: Params = None) -> tuple | None:
        with self.connect() as conn:
            return conn.execute(sql, params or ()).fetchone()

    def fetch_all(self, sql: str, params: Params = None) -> list[tuple]:
        with self.connect() as conn:
            return conn.execute(sql, params or ()).fetchall()

    def copy_rows(
        self,
        table: str,
        columns: Sequence[str],
        rows: Iterable[Sequence[object]],
        *,
        conn: psycopg.Connection | None = None,
    ) -> int:
        """``COPY`` ``rows`` into ``table``.

        With ``conn`` the rows join that connection's open transaction (the
        page staging table only lives there); otherwise a fresh autocommit
        session is used.
        """

        copy_sql = f"COPY {table} ({', '.join(columns)}) FROM STDIN"
        if conn is not None:
            return _copy(conn, copy_sql, rows)
        with self.connect(autocommit=True) as fresh:
            return _copy(fresh, copy_sql, rows)

    def ensure_extensions(self) -> None:
        self.execute("CREATE EXTENSION IF NOT EXISTS postgis")


def _copy(conn: psycopg.Connection, copy_sql: str, rows: Iterable[Sequence[object]]) -> int:
    written = 0
    with conn.cursor() as cur, cur.copy(copy_sql) as copy:
        for row in rows:
            copy.write_row(row)
            written += 1
    return written


__all__ = ["Params", "PostgresClient"]
