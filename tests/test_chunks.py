import gzip

import pytest

from conftest import file_names, write_zst
from decentdb_import.chunks import (
    compression_for_path,
    count_lines,
    discover_chunks,
    iter_lines,
    iter_offset_lines,
    normalize_compression,
)
from decentdb_import.errors import ChunkReadError


def _touch(path, data=b""):
    path.write_bytes(data)


def test_chunks_are_ordered_numerically(tmp_path):
    for n in range(10):
        _touch(tmp_path / f"db@t@{n}.tsv.zst")
    _touch(tmp_path / "db@t@@10.tsv.zst")
    # Files for a different table sharing the prefix must not be picked up.
    _touch(tmp_path / "db@tx@0.tsv.zst")

    names = file_names(discover_chunks(str(tmp_path), "db@t", "tsv.zst"))
    assert names == [f"db@t@{n}.tsv.zst" for n in range(10)] + ["db@t@@10.tsv.zst"]
    assert names.index("db@t@9.tsv.zst") < names.index("db@t@@10.tsv.zst")


def test_gap_in_chunk_numbers_is_an_error(tmp_path):
    _touch(tmp_path / "db@t@0.tsv.zst")
    _touch(tmp_path / "db@t@2.tsv.zst")
    with pytest.raises(ChunkReadError) as ei:
        discover_chunks(str(tmp_path), "db@t", "tsv.zst", table="t")
    assert "Missing chunk 1" in str(ei.value)
    assert ei.value.table == "t"


def test_duplicate_chunk_number_is_an_error(tmp_path):
    _touch(tmp_path / "db@t@0.tsv.zst")
    _touch(tmp_path / "db@t@@0.tsv.zst")
    with pytest.raises(ChunkReadError):
        discover_chunks(str(tmp_path), "db@t", "tsv.zst")


def test_unchunked_table_and_missing_data(tmp_path):
    _touch(tmp_path / "db@t.tsv")
    assert file_names(discover_chunks(str(tmp_path), "db@t", ".tsv")) == ["db@t.tsv"]
    assert discover_chunks(str(tmp_path), "db@other", "tsv") == []


def test_missing_directory_raises_chunk_error(tmp_path):
    with pytest.raises(ChunkReadError):
        discover_chunks(str(tmp_path / "nope"), "db@t", "tsv")


def test_compression_names():
    assert normalize_compression(None) == "none"
    assert normalize_compression("ZSTD") == "zstd"
    assert normalize_compression("gz") == "gzip"
    with pytest.raises(ValueError):
        normalize_compression("lz4")
    assert compression_for_path("x.sql.gz") == "gzip"
    assert compression_for_path("x.tsv.zst") == "zstd"
    assert compression_for_path("x.sql") == "none"


def test_iter_lines_zstd_strips_terminators(tmp_path):
    path = tmp_path / "c.tsv.zst"
    write_zst(path, "a\nb\r\nc")
    assert list(iter_lines(str(path), "zstd")) == ["a", "b", "c"]


def test_iter_lines_from_offset_in_gzip(tmp_path):
    path = tmp_path / "c.gz"
    with gzip.open(path, "wb") as f:
        f.write(b"a\nbb\nccc\n")
    assert list(iter_lines(str(path), "gzip", offset=2)) == ["bb", "ccc"]


def test_iter_offset_lines_reports_byte_offsets(tmp_path):
    path = tmp_path / "plain.sql"
    path.write_bytes("é\nxy\n".encode("utf-8"))
    assert list(iter_offset_lines(str(path))) == [(0, "é"), (3, "xy")]
    assert list(iter_offset_lines(str(path), offset=3)) == [(3, "xy")]


def test_count_lines(tmp_path):
    a = tmp_path / "a.zst"
    write_zst(a, "1\n2\n3")
    b = tmp_path / "b.zst"
    write_zst(b, "1\n2\n")
    assert count_lines(str(a), "zstd") == 3
    assert count_lines(str(b), "zstd") == 2


def test_corrupt_zstd_chunk_raises_chunk_error(tmp_path):
    path = tmp_path / "bad.tsv.zst"
    path.write_bytes(b"this is not a zstd frame at all")
    with pytest.raises(ChunkReadError) as ei:
        list(iter_lines(str(path), "zstd", table="t"))
    assert ei.value.table == "t"


def test_missing_chunk_file_raises_chunk_error(tmp_path):
    with pytest.raises(ChunkReadError):
        list(iter_lines(str(tmp_path / "gone.tsv"), "none"))
