from __future__ import annotations

import contextlib
import dataclasses
import enum
import logging
from typing import Any, Callable, Iterator, Protocol, Sequence

from ..codec import TargetKind
from ..config import ImportOptions
from ..models import Introspection, SourceTable


class SourceKind(enum.Enum):
    SQLITE = "sqlite"
    MYSQL_SHELL = "mysql-shell"
    MYSQLDUMP = "mysqldump"
    PGDUMP = "pgdump"


class RowDecoder(Protocol):
    def decode(self, record: Any) -> Iterator[list[Any]]: ...


@dataclasses.dataclass(frozen=True)
class Chunk:
    """One ordered slice of a table's records (a data file, COPY block, ...)."""

    name: str
    reader: Callable[[], Iterator[Any]]

    @contextlib.contextmanager
    def records(self) -> Iterator[Iterator[Any]]:
        it = self.reader()
        try:
            yield it
        finally:
            close = getattr(it, "close", None)
            if close is not None:
                close()


class ImportSource(Protocol):
    kind: SourceKind
    dialect: str
    path: str

    def introspect(self) -> Introspection: ...

    def open_table_chunks(self, table: SourceTable) -> list[Chunk]: ...

    def row_decoder(
        self,
        table: SourceTable,
        kinds: Sequence[TargetKind],
        warn: Callable[[str], None] | None = None,
    ) -> RowDecoder: ...

    def close(self) -> None: ...


class BaseSource:
    kind: SourceKind
    dialect = ""

    def __init__(self, path: str, *, options: ImportOptions | None = None, logger: logging.Logger | None = None):
        self.path = path
        self.options = options or ImportOptions()
        self.logger = logger or logging.getLogger(f"decentdb_import.sources.{type(self).__name__}")

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
