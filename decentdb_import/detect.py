"""Guess which kind of export a path holds."""

from __future__ import annotations

import glob
import io
import logging
import os

from .chunks import READ_ERRORS, compression_for_path, open_binary
from .sources.base import SourceKind

logger = logging.getLogger(__name__)

SQLITE_MAGIC = b"SQLite format 3\x00"

_HEADER_LINES = 30
_HEADER_BYTES = 64 * 1024

_PG_MARKERS = (
    "-- PostgreSQL database dump",
    "SET statement_timeout",
    "SELECT pg_catalog.set_config",
    "\\restrict",
)
_MYSQL_MARKERS = (
    "-- MySQL dump",
    "-- MariaDB dump",
    "-- Server version",
)


def read_head(path: str, size: int = _HEADER_BYTES) -> bytes:
    """Return up to ``size`` leading bytes of the (decompressed) file."""
    try:
        with open_binary(path, compression_for_path(path)) as stream:
            return stream.read(size)
    except READ_ERRORS as exc:
        logger.debug("Cannot read header of %s: %s", path, exc)
        return b""


def detect_from_header(lines: list[str]) -> SourceKind | None:
    for line in lines:
        s = line.lstrip()
        upper = s.upper()
        if upper.startswith("-- POSTGRESQL DATABASE DUMP"):
            return SourceKind.PGDUMP
        if any(s.startswith(m) for m in _PG_MARKERS[1:]):
            return SourceKind.PGDUMP
        if any(upper.startswith(m.upper()) for m in _MYSQL_MARKERS):
            return SourceKind.MYSQLDUMP
        if "/*!40101 SET" in s:
            return SourceKind.MYSQLDUMP
    return None


def _detect_directory(path: str) -> SourceKind | None:
    if os.path.isfile(os.path.join(path, "@.json")):
        return SourceKind.MYSQL_SHELL

    sql_files = glob.glob(os.path.join(glob.escape(path), "*.sql"))
    if len(sql_files) == 1:
        return detect_format(sql_files[0])

    if glob.glob(os.path.join(glob.escape(path), "**", "*.tsv.zst"), recursive=True):
        return SourceKind.MYSQL_SHELL

    logger.warning("Could not detect import format for directory: %s", path)
    return None


def detect_format(path: str) -> SourceKind | None:
    """Return the :class:`SourceKind` for ``path`` or ``None`` if unknown.

    Compressed single files (``.gz``/``.zst``) are inspected after
    decompression.
    """
    if os.path.isdir(path):
        return _detect_directory(path)
    if not os.path.isfile(path):
        return None

    head = read_head(path)
    if head.startswith(SQLITE_MAGIC):
        return SourceKind.SQLITE

    text = io.StringIO(head.decode("utf-8", "replace"))
    lines = [line for _, line in zip(range(_HEADER_LINES), text)]
    return detect_from_header(lines)


def display_name(kind: SourceKind | None) -> str:
    return {
        SourceKind.SQLITE: "SQLite database",
        SourceKind.PGDUMP: "PostgreSQL dump (pg_dump)",
        SourceKind.MYSQLDUMP: "MySQL dump (mysqldump)",
        SourceKind.MYSQL_SHELL: "MySQL Shell dump",
    }.get(kind, "Unknown format")
