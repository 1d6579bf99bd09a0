"""Destination side of an import: a DB-API connection driven by explicit
BEGIN/COMMIT statements."""

from __future__ import annotations

import logging
import os
import sqlite3
from typing import Any, Protocol, Sequence

from .errors import ConversionError

ENGINES = ("decentdb", "sqlite")

_ARTIFACT_SUFFIXES = ("", "-wal", "-shm", "-journal")


class TargetWriter(Protocol):
    path: str | None

    def create_table(self, ddl: str) -> None: ...

    def create_index(self, ddl: str) -> None: ...

    def begin_batch(self, insert_sql: str) -> None: ...

    def insert_row(self, values: Sequence[Any]) -> None: ...

    def commit_batch(self) -> None: ...

    def rollback_batch(self) -> None: ...

    def delete_artifact(self) -> None: ...

    def close(self) -> None: ...


class DbApiTargetWriter:
    """Adapts any DB-API connection that accepts ``?`` placeholders.

    Each batch is one transaction. Schema statements run in their own
    transaction so a failed batch never takes created tables with it.
    """

    def __init__(self, conn: Any, path: str | None = None, *, logger: logging.Logger | None = None):
        self.conn = conn
        self.path = path
        self.logger = logger or logging.getLogger("decentdb_import.target")
        self._cur = None
        self._insert_sql: str | None = None
        self._closed = False

    def _execute_ddl(self, ddl: str) -> None:
        self.logger.debug("DDL: %s", ddl)
        self.conn.execute("BEGIN")
        try:
            self.conn.execute(ddl)
        except Exception:
            self.conn.execute("ROLLBACK")
            raise
        self.conn.execute("COMMIT")

    def create_table(self, ddl: str) -> None:
        self._execute_ddl(ddl)

    def create_index(self, ddl: str) -> None:
        self._execute_ddl(ddl)

    def begin_batch(self, insert_sql: str) -> None:
        if self._cur is not None:
            raise ConversionError("A batch is already open")
        self.conn.execute("BEGIN")
        self._cur = self.conn.cursor()
        self._insert_sql = insert_sql

    def insert_row(self, values: Sequence[Any]) -> None:
        if self._cur is None:
            raise ConversionError("insert_row called outside a batch")
        self._cur.execute(self._insert_sql, list(values))

    def _end_batch(self, statement: str) -> None:
        cur, self._cur, self._insert_sql = self._cur, None, None
        if cur is None:
            return
        cur.close()
        self.conn.execute(statement)

    def commit_batch(self) -> None:
        self._end_batch("COMMIT")

    def rollback_batch(self) -> None:
        self._end_batch("ROLLBACK")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._cur is not None:
            try:
                self.rollback_batch()
            except Exception as exc:
                self.logger.debug("Rollback on close failed: %s", exc)
        self.conn.close()

    def delete_artifact(self) -> None:
        """Close the connection and remove the partially written database."""
        self.close()
        if not self.path:
            return
        for suffix in _ARTIFACT_SUFFIXES:
            p = self.path + suffix
            if os.path.exists(p):
                os.remove(p)
                self.logger.info("Removed %s", p)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def prepare_destination(path: str, *, overwrite: bool) -> None:
    if os.path.exists(path):
        if not overwrite:
            raise ConversionError(f"Destination already exists: {path} (pass overwrite=True to replace)")
        os.remove(path)
        if os.path.exists(path + "-wal"):
            os.remove(path + "-wal")


def open_target(
    path: str,
    *,
    engine: str = "decentdb",
    overwrite: bool = False,
    cache_mb: int | None = None,
    cache_pages: int | None = None,
    logger: logging.Logger | None = None,
) -> DbApiTargetWriter:
    """Create the destination database and wrap it in a :class:`DbApiTargetWriter`."""
    if engine not in ENGINES:
        raise ValueError(f"Unknown target engine: {engine}")
    prepare_destination(path, overwrite=overwrite)

    if engine == "sqlite":
        # Autocommit mode; transactions are issued explicitly. The writer may
        # be handed to start_import, so the connection is not thread-bound.
        conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
    else:
        import decentdb

        connect_kwargs: dict[str, object] = {}
        if cache_pages is not None:
            connect_kwargs["cache_pages"] = int(cache_pages)
        if cache_mb is not None:
            connect_kwargs["cache_mb"] = int(cache_mb)
        conn = decentdb.connect(path, **connect_kwargs)
    return DbApiTargetWriter(conn, path, logger=logger)
