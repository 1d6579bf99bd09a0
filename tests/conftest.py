import json
import os

import pytest
import zstandard

from decentdb_import.errors import ChunkReadError
from decentdb_import.models import Introspection, SourceColumn, SourceTable
from decentdb_import.rows import NativeRowDecoder, RowConverter
from decentdb_import.sources import Chunk, SourceKind


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "out.db")


def write_zst(path, text: str) -> None:
    with open(path, "wb") as f:
        f.write(zstandard.ZstdCompressor().compress(text.encode("utf-8")))


def write_json(path, payload) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f)


def make_table(name: str, *columns: str, pk: str | None = "id", **kwargs) -> SourceTable:
    cols = tuple(
        SourceColumn(name=c, declared_type="INTEGER" if c == pk else "TEXT", not_null=c == pk, primary_key=c == pk)
        for c in columns
    )
    return SourceTable(name=name, columns=cols, **kwargs)


class FakeSource:
    """In-memory source: ``data`` maps a table name to a list of chunks, each a
    list of row tuples (or an exception to raise after the rows)."""

    kind = SourceKind.SQLITE
    dialect = "sqlite"

    def __init__(self, tables, data=None, *, warnings=(), skipped=(), path="fake.db"):
        self.path = path
        self.tables = list(tables)
        self.data = data or {}
        self.warnings = list(warnings)
        self.skipped = list(skipped)
        self.closed = False

    def introspect(self):
        return Introspection(tables=list(self.tables), warnings=list(self.warnings), skipped_tables=list(self.skipped))

    def open_table_chunks(self, table):
        chunks = []
        for i, rows in enumerate(self.data.get(table.name, [])):
            chunks.append(Chunk(name=f"{table.name}#{i}", reader=lambda rows=rows, t=table.name: self._read(t, rows)))
        return chunks

    @staticmethod
    def _read(table, rows):
        for r in rows:
            if isinstance(r, Exception):
                raise ChunkReadError(str(r), table=table)
            yield r

    def row_decoder(self, table, kinds, warn=None):
        return NativeRowDecoder(RowConverter(table.name, table.column_names(), kinds, warn))

    def close(self):
        self.closed = True


class RecordingTarget:
    def __init__(self, *, fail_on_insert_at: int | None = None, fail_on_index: bool = False):
        self.path = None
        self.tables: list[str] = []
        self.indexes: list[str] = []
        self.committed: list[list] = []
        self.rollbacks = 0
        self.cleanups = 0
        self.closed = False
        self._open = None
        self._inserted = 0
        self._fail_at = fail_on_insert_at
        self._fail_on_index = fail_on_index

    def create_table(self, ddl):
        self.tables.append(ddl)

    def create_index(self, ddl):
        if self._fail_on_index:
            raise RuntimeError("index build failed")
        self.indexes.append(ddl)

    def begin_batch(self, insert_sql):
        assert self._open is None
        self._open = []

    def insert_row(self, values):
        self._inserted += 1
        if self._fail_at is not None and self._inserted >= self._fail_at:
            raise OSError("disk full")
        self._open.append(list(values))

    def commit_batch(self):
        self.committed.append(self._open)
        self._open = None

    def rollback_batch(self):
        self.rollbacks += 1
        self._open = None

    def delete_artifact(self):
        self.cleanups += 1

    def close(self):
        self.closed = True

    @property
    def rows(self):
        return [r for batch in self.committed for r in batch]


def file_names(paths):
    return [os.path.basename(p) for p in paths]
