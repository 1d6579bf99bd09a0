"""Discovery and incremental decompression of data chunk files."""

from __future__ import annotations

import contextlib
import gzip
import io
import logging
import os
import re
import zlib
from typing import IO, Iterator

import zstandard

from .errors import ChunkReadError

logger = logging.getLogger(__name__)

_SKIP_BLOCK = 1 << 20

# Everything a truncated or corrupt compressed stream can raise while reading.
READ_ERRORS = (OSError, EOFError, zlib.error, zstandard.ZstdError)

_COMPRESSION_ALIASES = {
    "": "none",
    "none": "none",
    "zstd": "zstd",
    "zst": "zstd",
    "gzip": "gzip",
    "gz": "gzip",
}


def normalize_compression(name: str | None) -> str:
    key = (name or "").strip().lower()
    try:
        return _COMPRESSION_ALIASES[key]
    except KeyError:
        raise ValueError(f"Unsupported chunk compression: {name}") from None


def compression_for_path(path: str) -> str:
    lower = path.lower()
    if lower.endswith(".zst"):
        return "zstd"
    if lower.endswith(".gz"):
        return "gzip"
    return "none"


def discover_chunks(root: str, basename: str, extension: str, *, table: str | None = None) -> list[str]:
    """Return the data files for ``basename`` in numeric chunk order.

    Chunked dumps name their files ``{base}@{n}.{ext}`` with the final chunk
    written as ``{base}@@{n}.{ext}``. A table dumped without chunking has a
    single ``{base}.{ext}``. An empty list means the table has no data file.
    """
    ext = extension.lstrip(".")
    pattern = re.compile(re.escape(basename) + r"@@?(\d+)\." + re.escape(ext) + r"\Z")

    numbered: list[tuple[int, str]] = []
    try:
        with os.scandir(root) as entries:
            for entry in entries:
                m = pattern.match(entry.name)
                if m:
                    numbered.append((int(m.group(1)), entry.path))
    except OSError as exc:
        raise ChunkReadError(f"Cannot list chunks for {basename}: {exc}", table=table, path=root) from exc

    if not numbered:
        single = os.path.join(root, f"{basename}.{ext}")
        return [single] if os.path.isfile(single) else []

    numbered.sort()
    for (prev, _), (cur, path) in zip(numbered, numbered[1:]):
        if cur == prev:
            raise ChunkReadError(f"Duplicate chunk number {cur} for {basename}", table=table, path=path)
        if cur != prev + 1:
            raise ChunkReadError(
                f"Missing chunk {prev + 1} for {basename} (found {prev} then {cur})",
                table=table,
                path=os.path.join(root, f"{basename}@{prev + 1}.{ext}"),
            )
    return [path for _, path in numbered]


@contextlib.contextmanager
def open_binary(path: str, compression: str = "none") -> Iterator[IO[bytes]]:
    """Open ``path`` as a decompressed, forward-only byte stream."""
    compression = normalize_compression(compression)
    with open(path, "rb") as raw:
        if compression == "zstd":
            dctx = zstandard.ZstdDecompressor()
            with dctx.stream_reader(raw, read_across_frames=True, closefd=False) as reader:
                yield io.BufferedReader(reader, buffer_size=_SKIP_BLOCK)
        elif compression == "gzip":
            with gzip.GzipFile(fileobj=raw, mode="rb") as gz:
                yield gz
        else:
            yield raw


def _skip(stream: IO[bytes], offset: int, compression: str) -> None:
    if offset <= 0:
        return
    if normalize_compression(compression) == "none":
        stream.seek(offset)
        return
    remaining = offset
    while remaining > 0:
        block = stream.read(min(remaining, _SKIP_BLOCK))
        if not block:
            raise EOFError(f"stream ended {remaining} bytes before offset {offset}")
        remaining -= len(block)


def _strip_eol(line: str) -> str:
    if line.endswith("\n"):
        line = line[:-1]
        if line.endswith("\r"):
            line = line[:-1]
    return line


def iter_lines(
    path: str,
    compression: str = "none",
    *,
    offset: int = 0,
    table: str | None = None,
) -> Iterator[str]:
    """Yield decoded lines (without terminators) starting at a byte offset.

    The offset is measured in the decompressed stream. Undecodable bytes are
    carried as surrogates and replaced later by the value codec.
    """
    try:
        with open_binary(path, compression) as stream:
            _skip(stream, offset, compression)
            text = io.TextIOWrapper(stream, encoding="utf-8", errors="surrogateescape", newline="\n")
            for line in text:
                yield _strip_eol(line)
    except READ_ERRORS as exc:
        raise ChunkReadError(f"Cannot read {path}: {exc}", table=table, path=path) from exc


def iter_offset_lines(
    path: str,
    compression: str = "none",
    *,
    offset: int = 0,
    table: str | None = None,
) -> Iterator[tuple[int, str]]:
    """Like :func:`iter_lines` but also yields each line's starting byte offset."""
    pos = offset
    try:
        with open_binary(path, compression) as stream:
            _skip(stream, offset, compression)
            while True:
                raw = stream.readline()
                if not raw:
                    break
                yield pos, _strip_eol(raw.decode("utf-8", "surrogateescape"))
                pos += len(raw)
    except READ_ERRORS as exc:
        raise ChunkReadError(f"Cannot read {path}: {exc}", table=table, path=path) from exc


def count_lines(path: str, compression: str = "none", *, table: str | None = None) -> int:
    """Count records in a chunk without decoding it."""
    n = 0
    last = b""
    try:
        with open_binary(path, compression) as stream:
            while True:
                block = stream.read(_SKIP_BLOCK)
                if not block:
                    break
                n += block.count(b"\n")
                last = block[-1:]
    except READ_ERRORS as exc:
        raise ChunkReadError(f"Cannot read {path}: {exc}", table=table, path=path) from exc
    if last and last != b"\n":
        n += 1
    return n
