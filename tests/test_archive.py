import gzip
import io
import os
import sqlite3
import tarfile
import zipfile

import pytest

from decentdb_import.archive import extract, is_archive, needs_extraction
from decentdb_import.errors import ConversionError
from decentdb_import.importer import import_path
from decentdb_import.models import ImportPhase


def _sqlite_bytes(tmp_path):
    path = tmp_path / "inner.sqlite"
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, v TEXT)")
    conn.executemany("INSERT INTO t VALUES (?, ?)", [(1, "a"), (2, "b")])
    conn.commit()
    conn.close()
    return path.read_bytes()


def test_is_archive():
    assert is_archive("x.zip")
    assert is_archive("x.TAR.GZ")
    assert is_archive("x.tgz")
    assert not is_archive("x.sql.gz")


def test_plain_and_compressed_dumps_are_not_extracted(tmp_path):
    plain = tmp_path / "dump.sql"
    plain.write_text("-- MySQL dump\n", encoding="utf-8")
    gz = tmp_path / "dump.sql.gz"
    with gzip.open(gz, "wb") as f:
        f.write(b"-- MySQL dump\n")
    assert not needs_extraction(str(plain))
    assert not needs_extraction(str(gz))

    result = extract(str(gz))
    assert result.path == str(gz)
    assert result.temp_dir is None


def test_zip_with_single_sqlite_file(tmp_path, db_path):
    archive = tmp_path / "export.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("data.sqlite", _sqlite_bytes(tmp_path))

    extracted = extract(str(archive), temp_base=str(tmp_path))
    try:
        assert os.path.basename(extracted.path) == "data.sqlite"
        assert extracted.original_path == str(archive)
    finally:
        extracted.cleanup()
    assert not os.path.exists(extracted.temp_dir)

    report = import_path(str(archive), db_path, engine="sqlite")
    assert report.phase is ImportPhase.COMPLETE, report.error
    assert report.source_path == str(archive)
    assert report.rows_copied == {"t": 2}


def test_gzipped_sqlite_is_decompressed(tmp_path, db_path):
    src = tmp_path / "db.sqlite.gz"
    with gzip.open(src, "wb") as f:
        f.write(_sqlite_bytes(tmp_path))
    assert needs_extraction(str(src))

    report = import_path(str(src), db_path, engine="sqlite")
    assert report.phase is ImportPhase.COMPLETE, report.error
    assert report.source_kind == "sqlite"
    assert report.total_rows == 2


def test_tar_member_escaping_destination_is_rejected(tmp_path):
    archive = tmp_path / "evil.tar"
    payload = b"oops"
    with tarfile.open(archive, "w") as tf:
        info = tarfile.TarInfo("../escape.txt")
        info.size = len(payload)
        tf.addfile(info, io.BytesIO(payload))

    base = tmp_path / "work"
    base.mkdir()
    with pytest.raises(ConversionError):
        extract(str(archive), temp_base=str(base))
    assert os.listdir(base) == []
    assert not (tmp_path / "escape.txt").exists()


def test_corrupt_zip_is_a_conversion_error(tmp_path):
    archive = tmp_path / "broken.zip"
    archive.write_bytes(b"PK\x03\x04 not really a zip")
    with pytest.raises(ConversionError):
        extract(str(archive), temp_base=str(tmp_path))
