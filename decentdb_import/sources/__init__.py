from __future__ import annotations

import logging
import os

from ..config import ImportOptions
from ..errors import ConversionError, SourceNotFoundError
from .base import BaseSource, Chunk, ImportSource, RowDecoder, SourceKind
from .mysql_dump import MysqlDumpSource
from .pg_dump import PgDumpSource
from .shell_dump import ShellDumpSource
from .sqlite_file import SqliteSource

SOURCE_CLASSES: dict[SourceKind, type[BaseSource]] = {
    SourceKind.SQLITE: SqliteSource,
    SourceKind.MYSQL_SHELL: ShellDumpSource,
    SourceKind.MYSQLDUMP: MysqlDumpSource,
    SourceKind.PGDUMP: PgDumpSource,
}


def open_source(
    path: str,
    kind: SourceKind | str | None = None,
    *,
    options: ImportOptions | None = None,
    logger: logging.Logger | None = None,
) -> BaseSource:
    """Instantiate the source class for ``kind`` (detected when omitted)."""
    from ..detect import detect_format

    if not os.path.exists(path):
        raise SourceNotFoundError(path)
    if kind is None or kind == "auto":
        kind = detect_format(path)
        if kind is None:
            raise ConversionError(f"Could not detect the import format of {path}")
    elif not isinstance(kind, SourceKind):
        kind = SourceKind(kind)
    return SOURCE_CLASSES[kind](path, options=options, logger=logger)


__all__ = [
    "BaseSource",
    "Chunk",
    "ImportSource",
    "MysqlDumpSource",
    "PgDumpSource",
    "RowDecoder",
    "ShellDumpSource",
    "SourceKind",
    "SqliteSource",
    "open_source",
]
