import gzip

import pytest

from conftest import write_json, write_zst
from decentdb_import.detect import SQLITE_MAGIC, detect_format, detect_from_header, display_name
from decentdb_import.errors import ConversionError, SourceNotFoundError
from decentdb_import.sources import SourceKind, open_source


@pytest.mark.parametrize(
    "lines, expected",
    [
        (["--", "-- PostgreSQL database dump", "--"], SourceKind.PGDUMP),
        (["SET statement_timeout = 0;"], SourceKind.PGDUMP),
        (["\\restrict abc123"], SourceKind.PGDUMP),
        (["-- MySQL dump 10.13  Distrib 8.0.36"], SourceKind.MYSQLDUMP),
        (["-- MariaDB dump 10.19"], SourceKind.MYSQLDUMP),
        (["/*!40101 SET NAMES utf8mb4 */;"], SourceKind.MYSQLDUMP),
        (["CREATE TABLE t (id int);"], None),
    ],
)
def test_detect_from_header(lines, expected):
    assert detect_from_header(lines) is expected


def test_detect_sqlite_by_magic(tmp_path):
    path = tmp_path / "data.bin"
    path.write_bytes(SQLITE_MAGIC + b"\x00" * 100)
    assert detect_format(str(path)) is SourceKind.SQLITE


def test_detect_compressed_dumps(tmp_path):
    gz = tmp_path / "a.sql.gz"
    with gzip.open(gz, "wb") as f:
        f.write(b"-- PostgreSQL database dump\n")
    zst = tmp_path / "b.sql.zst"
    write_zst(zst, "-- MySQL dump 10.13\n")
    assert detect_format(str(gz)) is SourceKind.PGDUMP
    assert detect_format(str(zst)) is SourceKind.MYSQLDUMP


def test_detect_directories(tmp_path):
    shell = tmp_path / "shell"
    shell.mkdir()
    write_json(shell / "@.json", {"schemas": []})
    assert detect_format(str(shell)) is SourceKind.MYSQL_SHELL

    single = tmp_path / "single"
    single.mkdir()
    (single / "only.sql").write_text("-- MySQL dump\n", encoding="utf-8")
    assert detect_format(str(single)) is SourceKind.MYSQLDUMP

    empty = tmp_path / "empty"
    empty.mkdir()
    assert detect_format(str(empty)) is None


def test_unknown_and_missing_paths(tmp_path):
    assert detect_format(str(tmp_path / "missing")) is None
    text = tmp_path / "notes.txt"
    text.write_text("hello\n", encoding="utf-8")
    assert detect_format(str(text)) is None

    with pytest.raises(ConversionError, match="Could not detect"):
        open_source(str(text))
    with pytest.raises(SourceNotFoundError):
        open_source(str(tmp_path / "missing"))


def test_open_source_with_explicit_kind(tmp_path):
    dump = tmp_path / "dump.sql"
    dump.write_text("CREATE TABLE t (id int);\n", encoding="utf-8")
    source = open_source(str(dump), "mysqldump")
    try:
        assert source.kind is SourceKind.MYSQLDUMP
        assert [t.name for t in source.introspect().tables] == ["t"]
    finally:
        source.close()


def test_display_name():
    assert display_name(SourceKind.PGDUMP) == "PostgreSQL dump (pg_dump)"
    assert display_name(None) == "Unknown format"
