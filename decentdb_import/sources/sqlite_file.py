from __future__ import annotations

import dataclasses
import os
import pathlib
import re
import sqlite3
from typing import Any, Callable, Iterator, Sequence

from ..codec import TargetKind
from ..errors import ChunkReadError, ConversionError, SchemaParseError, SourceNotFoundError
from ..models import (
    Introspection,
    SourceColumn,
    SourceForeignKey,
    SourceIndex,
    SourceTable,
)
from ..rows import NativeRowDecoder, RowConverter
from .base import BaseSource, Chunk, SourceKind
from .sqltext import paren_body

_FETCH_SIZE = 1000

_CHECK_RE = re.compile(r"\bCHECK\s*\(", re.IGNORECASE)
_WHERE_RE = re.compile(r"\bWHERE\b(.*)\Z", re.IGNORECASE | re.DOTALL)


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _check_constraints(create_sql: str) -> tuple[str, ...]:
    out: list[str] = []
    for m in _CHECK_RE.finditer(create_sql):
        out.append(paren_body(create_sql, m.end() - 1)[0].strip())
    return tuple(out)


class SqliteSource(BaseSource):
    """Reads schema and rows from a SQLite database file through its catalog."""

    kind = SourceKind.SQLITE
    dialect = "sqlite"

    def __init__(self, path: str, **kwargs):
        super().__init__(path, **kwargs)
        if not os.path.isfile(path):
            raise SourceNotFoundError(path)
        uri = pathlib.Path(path).absolute().as_uri() + "?mode=ro"
        # Only the thread running the import uses the connection.
        self._conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
        # Invalid UTF-8 is carried as surrogates and cleaned by the value codec.
        self._conn.text_factory = lambda b: b.decode("utf-8", "surrogateescape")

    def close(self) -> None:
        self._conn.close()

    def _user_tables(self) -> list[tuple[str, str]]:
        try:
            cur = self._conn.execute(
                "SELECT name, sql FROM sqlite_master "
                "WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
            )
            return [(str(name), str(sql or "")) for name, sql in cur.fetchall()]
        except sqlite3.DatabaseError as exc:
            raise ConversionError(f"Cannot read SQLite catalog from {self.path}: {exc}") from exc

    def _primary_key_of(self, table: str) -> list[str]:
        rows = self._conn.execute(f"PRAGMA table_info({_quote_ident(table)})").fetchall()
        return [str(r[1]) for r in sorted(rows, key=lambda r: int(r[5])) if int(r[5]) > 0]

    def _index_sql(self, name: str) -> str:
        row = self._conn.execute("SELECT sql FROM sqlite_master WHERE type='index' AND name=?", (name,)).fetchone()
        return str(row[0] or "") if row else ""

    def _load_table(self, table: str, create_sql: str) -> SourceTable:
        cols: list[SourceColumn] = []
        autoinc = "AUTOINCREMENT" in create_sql.upper()
        # PRAGMA table_info: cid, name, type, notnull, dflt_value, pk
        for row in self._conn.execute(f"PRAGMA table_info({_quote_ident(table)})").fetchall():
            pk = int(row[5]) > 0
            cols.append(
                SourceColumn(
                    name=str(row[1]),
                    declared_type=str(row[2] or ""),
                    not_null=bool(row[3]),
                    primary_key=pk,
                    default=None if row[4] is None else str(row[4]),
                    auto_increment=pk and autoinc,
                )
            )
        if not cols:
            raise SchemaParseError(f"Table has no columns: {table}", table=table)

        # PRAGMA foreign_key_list: id, seq, table, from, to, on_update, on_delete, match
        fks: list[SourceForeignKey] = []
        for row in self._conn.execute(f"PRAGMA foreign_key_list({_quote_ident(table)})").fetchall():
            to_table = str(row[2])
            to_col = row[4]
            if to_col is None:
                pk = self._primary_key_of(to_table)
                to_col = pk[int(row[1])] if int(row[1]) < len(pk) else ""
            fks.append(SourceForeignKey(from_column=str(row[3]), to_table=to_table, to_column=str(to_col)))

        col_pos = {c.name: i for i, c in enumerate(cols)}
        indexes: list[SourceIndex] = []
        # PRAGMA index_list: seq, name, unique, origin, partial
        for row in self._conn.execute(f"PRAGMA index_list({_quote_ident(table)})").fetchall():
            idx_name = str(row[1])
            unique = bool(row[2])
            origin = str(row[3] or "").lower()
            partial = bool(row[4]) if len(row) > 4 else False

            # The implicit primary key index is recreated by the target itself.
            if origin == "pk":
                continue

            # index_info: seqno, cid, name (cid -2 marks an expression)
            info = self._conn.execute(f"PRAGMA index_info({_quote_ident(idx_name)})").fetchall()
            expression = any(int(r[1]) == -2 for r in info)
            columns = tuple(str(r[2]) for r in info if r[2] is not None)

            if origin == "u" and len(info) == 1 and columns and columns[0] in col_pos:
                i = col_pos[columns[0]]
                cols[i] = dataclasses.replace(cols[i], unique=True)
                continue

            predicate = None
            if partial:
                m = _WHERE_RE.search(self._index_sql(idx_name))
                predicate = m.group(1).strip() if m else "?"
            indexes.append(
                SourceIndex(
                    name=idx_name,
                    table=table,
                    columns=columns,
                    unique=unique,
                    expression=expression,
                    predicate=predicate,
                )
            )

        return SourceTable(
            name=table,
            columns=tuple(cols),
            foreign_keys=tuple(fks),
            indexes=tuple(indexes),
            check_constraints=_check_constraints(create_sql),
            row_count=self._row_count(table),
        )

    def _row_count(self, table: str) -> int:
        (n,) = self._conn.execute(f"SELECT COUNT(*) FROM {_quote_ident(table)}").fetchone()
        return int(n)

    def introspect(self) -> Introspection:
        result = Introspection(tables=[])
        for name, create_sql in self._user_tables():
            if create_sql.upper().lstrip().startswith("CREATE VIRTUAL TABLE"):
                result.warnings.append(f"Skipping virtual table '{name}': virtual tables are not supported")
                result.skipped_tables.append(name)
                continue
            try:
                result.tables.append(self._load_table(name, create_sql))
            except (SchemaParseError, sqlite3.DatabaseError) as exc:
                result.warnings.append(f"Skipping table '{name}': {exc}")
                result.skipped_tables.append(name)
        self.logger.debug("Introspected %d tables from %s", len(result.tables), self.path)
        return result

    def _iter_rows(self, table: SourceTable) -> Iterator[tuple[Any, ...]]:
        col_list = ", ".join(_quote_ident(c.name) for c in table.columns)
        try:
            cur = self._conn.execute(f"SELECT {col_list} FROM {_quote_ident(table.name)}")
            while True:
                rows = cur.fetchmany(_FETCH_SIZE)
                if not rows:
                    break
                for r in rows:
                    yield tuple(r)
        except sqlite3.DatabaseError as exc:
            raise ChunkReadError(f"Cannot read rows of {table.name}: {exc}", table=table.name, path=self.path) from exc

    def open_table_chunks(self, table: SourceTable) -> list[Chunk]:
        return [Chunk(name=table.name, reader=lambda: self._iter_rows(table))]

    def row_decoder(
        self,
        table: SourceTable,
        kinds: Sequence[TargetKind],
        warn: Callable[[str], None] | None = None,
    ) -> NativeRowDecoder:
        return NativeRowDecoder(RowConverter(table.name, table.column_names(), kinds, warn))
