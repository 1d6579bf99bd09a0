"""Delimited-text row decoding (MySQL Shell TSV chunks, PostgreSQL COPY blocks)."""

from __future__ import annotations

import dataclasses
from typing import Any, Callable, Iterator, Sequence

from .codec import TargetKind, adapt_value, convert_text

_ESCAPES = {
    "\\": "\\",
    "t": "\t",
    "n": "\n",
    "r": "\r",
    "0": "\0",
}

_PG_ESCAPES = {
    "b": "\b",
    "f": "\f",
    "v": "\v",
}

_ENCODE = {
    "\t": "t",
    "\n": "n",
    "\r": "r",
    "\0": "0",
}

_OCTAL = "01234567"
_HEXDIGITS = "0123456789abcdefABCDEF"


@dataclasses.dataclass(frozen=True)
class TextFormat:
    delimiter: str = "\t"
    escape: str = "\\"
    null_sentinel: str = "N"
    postgres_escapes: bool = False

    @property
    def null_marker(self) -> str:
        if not self.escape:
            return "NULL"
        return self.escape + self.null_sentinel


MYSQL_TSV = TextFormat()
PG_COPY = TextFormat(postgres_escapes=True)


def split_fields(line: str, fmt: TextFormat = MYSQL_TSV) -> list[str]:
    """Split on delimiters that are not preceded by the escape character.

    Escape sequences are left intact so the NULL marker can still be
    recognised on the raw field.
    """
    esc = fmt.escape
    delim = fmt.delimiter
    if not esc or esc not in line:
        return line.split(delim)

    fields: list[str] = []
    start = 0
    i = 0
    n = len(line)
    while i < n:
        ch = line[i]
        if ch == esc:
            i += 2
            continue
        if ch == delim:
            fields.append(line[start:i])
            start = i + 1
        i += 1
    fields.append(line[start:])
    return fields


def unescape_field(field: str, fmt: TextFormat = MYSQL_TSV) -> str:
    esc = fmt.escape
    if not esc or esc not in field:
        return field

    out: list[str] = []
    i = 0
    n = len(field)
    while i < n:
        ch = field[i]
        if ch != esc or i + 1 >= n:
            out.append(ch)
            i += 1
            continue

        nxt = field[i + 1]
        if fmt.postgres_escapes:
            if nxt in _OCTAL:
                j = i + 1
                while j < n and j < i + 4 and field[j] in _OCTAL:
                    j += 1
                out.append(chr(int(field[i + 1 : j], 8)))
                i = j
                continue
            if nxt == "x" and i + 2 < n and field[i + 2] in _HEXDIGITS:
                j = i + 2
                while j < n and j < i + 4 and field[j] in _HEXDIGITS:
                    j += 1
                out.append(chr(int(field[i + 2 : j], 16)))
                i = j
                continue
            if nxt in _PG_ESCAPES:
                out.append(_PG_ESCAPES[nxt])
                i += 2
                continue

        # Unknown sequences pass the escaped character through unchanged.
        out.append(_ESCAPES.get(nxt, nxt))
        i += 2
    return "".join(out)


def decode_fields(line: str, fmt: TextFormat = MYSQL_TSV) -> list[str | None]:
    marker = fmt.null_marker
    return [None if raw == marker else unescape_field(raw, fmt) for raw in split_fields(line, fmt)]


def encode_field(value: str | None, fmt: TextFormat = MYSQL_TSV) -> str:
    if value is None:
        return fmt.null_marker
    esc = fmt.escape
    if not esc:
        return value
    out: list[str] = []
    for ch in value:
        if ch == esc:
            out.append(esc + esc)
        elif ch in _ENCODE:
            out.append(esc + _ENCODE[ch])
        elif ch == fmt.delimiter:
            out.append(esc + ch)
        else:
            out.append(ch)
    return "".join(out)


def encode_row(values: Sequence[str | None], fmt: TextFormat = MYSQL_TSV) -> str:
    return fmt.delimiter.join(encode_field(v, fmt) for v in values)


class RowConverter:
    """Converts positional raw values into the table's target kinds.

    Rows are padded with NULL or truncated to the declared column count. The
    first value that cannot be converted triggers one warning for the table;
    later failures are only counted.
    """

    def __init__(
        self,
        table: str,
        columns: Sequence[str],
        kinds: Sequence[TargetKind],
        warn: Callable[[str], None] | None = None,
    ):
        if len(columns) != len(kinds):
            raise ValueError("columns and kinds must have the same length")
        self.table = table
        self.columns = tuple(columns)
        self.kinds = tuple(kinds)
        self.failures = 0
        self._warn = warn
        self._warned = False

    @property
    def width(self) -> int:
        return len(self.kinds)

    def _record_failure(self, index: int, value: Any) -> None:
        self.failures += 1
        if self._warned:
            return
        self._warned = True
        if self._warn is not None:
            shown = repr(value)
            if len(shown) > 60:
                shown = shown[:60] + "…"
            self._warn(
                f"Table '{self.table}': value {shown} in column '{self.columns[index]}' "
                f"is not a valid {self.kinds[index].value}; keeping it as text"
            )

    def convert_text_row(self, fields: Sequence[str | None]) -> list[Any]:
        out: list[Any] = []
        for i, kind in enumerate(self.kinds):
            raw = fields[i] if i < len(fields) else None
            if raw is None:
                out.append(None)
                continue
            value, ok = convert_text(raw, kind)
            if not ok:
                self._record_failure(i, raw)
            out.append(value)
        return out

    def adapt_row(self, values: Sequence[Any]) -> list[Any]:
        out: list[Any] = []
        for i, kind in enumerate(self.kinds):
            raw = values[i] if i < len(values) else None
            value, ok = adapt_value(raw, kind)
            if not ok:
                self._record_failure(i, raw)
            out.append(value)
        return out


class TsvRowDecoder:
    def __init__(self, converter: RowConverter, fmt: TextFormat = MYSQL_TSV):
        self.converter = converter
        self.fmt = fmt

    def decode(self, line: str) -> Iterator[list[Any]]:
        # A blank line can only be a real row when the table has one column.
        if not line and self.converter.width != 1:
            return
        yield self.converter.convert_text_row(decode_fields(line, self.fmt))


class NativeRowDecoder:
    """Rows that already arrive as driver tuples (embedded database sources)."""

    def __init__(self, converter: RowConverter):
        self.converter = converter

    def decode(self, record: Sequence[Any]) -> Iterator[list[Any]]:
        yield self.converter.adapt_row(record)
