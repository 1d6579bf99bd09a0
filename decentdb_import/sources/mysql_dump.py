"""mysqldump plain-text dumps.

The DDL parser here is also used for the per-table ``.sql`` fragments of
MySQL Shell dump directories.
"""

from __future__ import annotations

import collections
import contextlib
import dataclasses
import itertools
import os
import re
from typing import Any, Callable, Iterable, Iterator, Sequence

from ..chunks import compression_for_path, iter_offset_lines
from ..codec import TargetKind
from ..errors import ChunkReadError, SchemaParseError, SourceNotFoundError
from ..models import (
    Introspection,
    SourceColumn,
    SourceForeignKey,
    SourceIndex,
    SourceTable,
)
from ..rows import RowConverter
from .base import BaseSource, Chunk, SourceKind
from .sqltext import mask_strings, paren_body, read_literal, split_top_level, unquote_ident

_IDENT = r"(?:`(?:[^`]|``)+`|\w+)"
_QUALIFIED = rf"{_IDENT}(?:\s*\.\s*{_IDENT})?"

_CREATE_TABLE_RE = re.compile(
    rf"^CREATE\s+(?:TEMPORARY\s+)?TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?(?P<name>{_QUALIFIED})\s*\(",
    re.IGNORECASE,
)
_INSERT_RE = re.compile(
    rf"^(?:INSERT|REPLACE)\s+(?:(?:LOW_PRIORITY|DELAYED|HIGH_PRIORITY|IGNORE)\s+)*INTO\s+"
    rf"(?P<name>{_QUALIFIED})\s*(?:\((?P<cols>[^)]*)\)\s*)?VALUES\s*",
    re.IGNORECASE,
)
_USE_RE = re.compile(rf"^USE\s+(?P<name>{_IDENT})\s*;", re.IGNORECASE)

_PRIMARY_RE = re.compile(r"^PRIMARY\s+KEY\s*(?:USING\s+\w+\s*)?(?=\()", re.IGNORECASE)
_INDEX_RE = re.compile(
    rf"^(?P<kind>UNIQUE|FULLTEXT|SPATIAL)?\s*(?:KEY|INDEX)\s*(?P<name>{_IDENT})?\s*(?:USING\s+\w+\s*)?(?=\()",
    re.IGNORECASE,
)
_UNIQUE_BARE_RE = re.compile(rf"^UNIQUE\s*(?P<name>{_IDENT})?\s*(?=\()", re.IGNORECASE)
_FOREIGN_RE = re.compile(rf"^(?:CONSTRAINT\s+(?:{_IDENT}\s+)?)?FOREIGN\s+KEY\s*(?:{_IDENT}\s*)?(?=\()", re.IGNORECASE)
_CHECK_RE = re.compile(rf"^(?:CONSTRAINT\s+(?:{_IDENT}\s+)?)?CHECK\s*(?=\()", re.IGNORECASE)
_REFERENCES_RE = re.compile(rf"\s*REFERENCES\s+(?P<table>{_QUALIFIED})\s*(?=\()", re.IGNORECASE)
_COLUMN_RE = re.compile(rf"^(?P<name>{_IDENT})\s+(?P<rest>.+)$", re.DOTALL)
_TYPE_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*(?:\s+(?:PRECISION|VARYING))?", re.IGNORECASE)
_TYPE_SUFFIX_RE = re.compile(r"\s+(?:UNSIGNED|SIGNED|ZEROFILL)\b", re.IGNORECASE)
_INDEX_PART_RE = re.compile(rf"^(?P<col>{_IDENT})\s*(?P<prefix>\(\s*\d+\s*\))?\s*(?:ASC|DESC)?$", re.IGNORECASE)
_DEFAULT_RE = re.compile(r"\bDEFAULT\s+", re.IGNORECASE)
_GENERATED_RE = re.compile(r"\bGENERATED\s+ALWAYS\b|\bAS\s*\(", re.IGNORECASE)
_HEX_RE = re.compile(r"0x([0-9a-fA-F]*)")
_BIT_RE = re.compile(r"[bB]'([01]*)'")
_XHEX_RE = re.compile(r"[xX]'([0-9a-fA-F]*)'")
_INTRODUCER_RE = re.compile(r"_(\w+)\s*(?=')")

_STRING_ESCAPES = {
    "0": "\0",
    "b": "\b",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "Z": "\x1a",
}


def split_qualified(raw: str) -> tuple[str | None, str]:
    parts = [unquote_ident(p) for p in split_top_level(raw, ".")]
    if len(parts) == 2:
        return parts[0], parts[1]
    return None, parts[-1]


def _ident_list(body: str) -> list[str]:
    return [unquote_ident(p) for p in split_top_level(body) if p.strip()]


def _parse_column(name: str, rest: str) -> SourceColumn:
    m = _TYPE_WORD_RE.match(rest)
    if not m:
        raise SchemaParseError(f"Cannot parse type of column '{name}': {rest[:60]}")
    end = m.end()
    if end < len(rest) and rest[end] == "(":
        _, end = paren_body(rest, end)
    while True:
        sm = _TYPE_SUFFIX_RE.match(rest, end)
        if not sm:
            break
        end = sm.end()
    declared = rest[:end].strip()
    tail = rest[end:]
    masked = mask_strings(tail)
    upper = masked.upper()

    default = None
    dm = _DEFAULT_RE.search(masked)
    if dm:
        literal, _ = read_literal(tail, dm.end())
        if literal and literal.upper() != "NULL":
            default = literal

    return SourceColumn(
        name=name,
        declared_type=declared,
        not_null=bool(re.search(r"\bNOT\s+NULL\b", upper)),
        primary_key=bool(re.search(r"\bPRIMARY\s+KEY\b", upper)),
        unique=bool(re.search(r"\bUNIQUE\b", upper)),
        default=default,
        auto_increment="AUTO_INCREMENT" in upper,
        generated=bool(_GENERATED_RE.search(masked)),
    )


def _parse_index_parts(body: str) -> tuple[tuple[str, ...], bool, bool]:
    columns: list[str] = []
    expression = False
    prefix = False
    for part in split_top_level(body):
        m = _INDEX_PART_RE.match(part)
        if not m:
            expression = True
            continue
        columns.append(unquote_ident(m.group("col")))
        if m.group("prefix"):
            prefix = True
    return tuple(columns), expression, prefix


def parse_create_table(
    name: str,
    definitions: Iterable[str],
    *,
    schema: str | None = None,
) -> tuple[SourceTable, list[str]]:
    """Build a :class:`SourceTable` from the definitions inside ``CREATE TABLE (...)``.

    Returns the table and warnings about columns that were dropped. Raises
    :class:`SchemaParseError` for any definition it does not understand.
    """
    columns: list[SourceColumn] = []
    pk_columns: list[str] = []
    unique_single: list[str] = []
    indexes: list[SourceIndex] = []
    fks: list[SourceForeignKey] = []
    checks: list[str] = []
    warnings: list[str] = []

    for raw in definitions:
        line = raw.strip()
        if line.endswith(","):
            line = line[:-1].rstrip()
        if not line or line.startswith("--"):
            continue

        m = _PRIMARY_RE.match(line)
        if m:
            body, _ = paren_body(line, m.end())
            pk_columns.extend(_parse_index_parts(body)[0])
            continue

        m = _FOREIGN_RE.match(line)
        if m:
            from_body, end = paren_body(line, m.end())
            rm = _REFERENCES_RE.match(line, end)
            if not rm:
                raise SchemaParseError(f"Foreign key without REFERENCES in table '{name}'", table=name)
            to_body, _ = paren_body(line, rm.end())
            _, to_table = split_qualified(rm.group("table"))
            for src, dst in zip(_ident_list(from_body), _ident_list(to_body)):
                fks.append(SourceForeignKey(from_column=src, to_table=to_table, to_column=dst))
            continue

        m = _CHECK_RE.match(line)
        if m:
            body, _ = paren_body(line, m.end())
            checks.append(body.strip())
            continue

        m = _INDEX_RE.match(line) or _UNIQUE_BARE_RE.match(line)
        if m:
            body, _ = paren_body(line, m.end())
            cols, expression, prefix = _parse_index_parts(body)
            kind = (m.groupdict().get("kind") or ("UNIQUE" if line[:6].upper() == "UNIQUE" else "")).upper()
            idx_name = unquote_ident(m.group("name")) if m.group("name") else (cols[0] if cols else "index")
            unique = kind == "UNIQUE"
            if unique and len(cols) == 1 and not expression and not prefix:
                unique_single.append(cols[0])
                continue
            indexes.append(
                SourceIndex(
                    name=idx_name,
                    table=name,
                    columns=cols,
                    unique=unique,
                    expression=expression,
                    method=kind.lower() if kind in ("FULLTEXT", "SPATIAL") else None,
                    prefix_length=prefix,
                )
            )
            continue

        m = _COLUMN_RE.match(line)
        if m:
            columns.append(_parse_column(unquote_ident(m.group("name")), m.group("rest")))
            continue

        raise SchemaParseError(f"Unrecognized definition in table '{name}': {line[:60]}", table=name)

    if not columns:
        raise SchemaParseError(f"Table has no columns: {name}", table=name)

    pk = {c.lower() for c in pk_columns}
    uniq = {c.lower() for c in unique_single}
    known = {c.name.lower() for c in columns}
    for c in pk_columns:
        if c.lower() not in known:
            raise SchemaParseError(f"Primary key references unknown column '{c}' in table '{name}'", table=name)

    out: list[SourceColumn] = []
    for col in columns:
        if col.generated:
            warnings.append(f"Table '{name}': generated column '{col.name}' is not imported")
            continue
        key = col.name.lower()
        if key in pk:
            col = dataclasses.replace(col, primary_key=True, not_null=True)
        if key in uniq:
            col = dataclasses.replace(col, unique=True)
        out.append(col)

    table = SourceTable(
        name=name,
        columns=tuple(out),
        foreign_keys=tuple(fks),
        indexes=tuple(indexes),
        schema=schema,
        check_constraints=tuple(checks),
    )
    return table, warnings


def _read_definitions(first: str, open_idx: int, lines: Iterator[tuple[int, str]], name: str) -> list[str]:
    rest = first[open_idx + 1 :].strip()
    if rest:
        # Whole statement on one line.
        body, _ = paren_body(first, open_idx)
        return split_top_level(body)
    definitions: list[str] = []
    for _, body_line in lines:
        if body_line.strip().startswith(")"):
            return definitions
        definitions.append(body_line)
    raise SchemaParseError(f"Unterminated CREATE TABLE for '{name}'", table=name)


def parse_table_ddl(text: str, *, schema: str | None = None) -> tuple[SourceTable, list[str]]:
    """Parse the first ``CREATE TABLE`` statement found in a DDL fragment."""
    lines = iter(enumerate(text.splitlines()))
    for _, line in lines:
        s = line.strip()
        m = _CREATE_TABLE_RE.match(s)
        if m:
            ddl_schema, name = split_qualified(m.group("name"))
            definitions = _read_definitions(s, m.end() - 1, lines, name)
            return parse_create_table(name, definitions, schema=schema or ddl_schema)
    raise SchemaParseError("No CREATE TABLE statement found")


class _GroupCounter:
    """Counts top-level ``(...)`` value groups across the lines of one INSERT."""

    def __init__(self) -> None:
        self.count = 0
        self._depth = 0
        self._in_string = False
        self._escape = False

    def feed(self, text: str) -> bool:
        for ch in text:
            if self._in_string:
                if self._escape:
                    self._escape = False
                elif ch == "\\":
                    self._escape = True
                elif ch == "'":
                    self._in_string = False
                continue
            if ch == "'":
                self._in_string = True
            elif ch == "(":
                self._depth += 1
            elif ch == ")":
                self._depth -= 1
                if self._depth == 0:
                    self.count += 1
            elif ch == ";" and self._depth == 0:
                return True
        return False


def _read_string(text: str, pos: int) -> tuple[str, int]:
    """Read a single-quoted literal starting at ``pos`` (the opening quote)."""
    out: list[str] = []
    i = pos + 1
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == "\\" and i + 1 < n:
            nxt = text[i + 1]
            out.append(_STRING_ESCAPES.get(nxt, nxt))
            i += 2
            continue
        if ch == "'":
            if i + 1 < n and text[i + 1] == "'":
                out.append("'")
                i += 2
                continue
            return "".join(out), i + 1
        out.append(ch)
        i += 1
    raise ValueError("unterminated string literal")


def _read_value(text: str, pos: int) -> tuple[Any, int]:
    ch = text[pos]
    if ch == "'":
        return _read_string(text, pos)

    m = _INTRODUCER_RE.match(text, pos)
    if m:
        value, end = _read_string(text, m.end())
        if m.group(1).lower() == "binary":
            return value.encode("utf-8", "surrogateescape"), end
        return value, end

    m = _HEX_RE.match(text, pos)
    if m:
        digits = m.group(1)
        if len(digits) % 2:
            digits = "0" + digits
        return bytes.fromhex(digits), m.end()
    m = _XHEX_RE.match(text, pos)
    if m:
        return bytes.fromhex(m.group(1)), m.end()
    m = _BIT_RE.match(text, pos)
    if m:
        return int(m.group(1) or "0", 2), m.end()

    end = pos
    n = len(text)
    while end < n and text[end] not in ",)":
        end += 1
    token = text[pos:end].strip()
    if token.upper() == "NULL":
        return None, end
    return token, end


def iter_value_groups(text: str, pos: int = 0) -> Iterator[list[Any]]:
    """Yield the values of each ``(...)`` group in an INSERT VALUES list.

    Strings are unescaped, ``NULL`` becomes ``None``, hex and ``_binary``
    literals become bytes and numbers are returned as their literal text.
    """
    n = len(text)
    while pos < n:
        ch = text[pos]
        if ch.isspace() or ch == ",":
            pos += 1
            continue
        if ch == ";":
            return
        if ch != "(":
            raise ValueError(f"expected '(' at offset {pos}, found {ch!r}")
        pos += 1
        values: list[Any] = []
        while True:
            while pos < n and text[pos].isspace():
                pos += 1
            if pos >= n:
                raise ValueError("unterminated value group")
            ch = text[pos]
            if ch == ")":
                pos += 1
                break
            if ch == ",":
                pos += 1
                continue
            value, pos = _read_value(text, pos)
            values.append(value)
        yield values


class InsertRowDecoder:
    """Turns one INSERT statement into rows in table column order."""

    def __init__(self, table: SourceTable, converter: RowConverter):
        self.table = table
        self.converter = converter
        self._positions = {c.name.lower(): i for i, c in enumerate(table.columns)}

    def decode(self, statement: str) -> Iterator[list[Any]]:
        statement = statement.lstrip()
        m = _INSERT_RE.match(statement)
        if not m:
            raise ChunkReadError(f"Not an INSERT statement: {statement[:60]}", table=self.table.name)

        mapping = None
        if m.group("cols"):
            mapping = [self._positions.get(c.lower()) for c in _ident_list(m.group("cols"))]

        width = len(self.table.columns)
        try:
            for values in iter_value_groups(statement, m.end()):
                if mapping is not None:
                    row: list[Any] = [None] * width
                    for value, target in zip(values, mapping):
                        if target is not None:
                            row[target] = value
                    values = row
                yield self.converter.adapt_row(values)
        except ValueError as exc:
            raise ChunkReadError(f"Malformed INSERT for {self.table.name}: {exc}", table=self.table.name) from exc


@dataclasses.dataclass(frozen=True)
class _Statement:
    offset: int
    lines: int


class MysqlDumpSource(BaseSource):
    """A ``mysqldump`` SQL file, optionally gzip/zstd compressed.

    Introspection streams the file once, parsing ``CREATE TABLE`` blocks and
    remembering where each table's INSERT statements start. Row data is read
    later by seeking back to those offsets.
    """

    kind = SourceKind.MYSQLDUMP
    dialect = "mysql"

    def __init__(self, path: str, **kwargs):
        super().__init__(path, **kwargs)
        if not os.path.isfile(path):
            raise SourceNotFoundError(path)
        self.compression = compression_for_path(path)
        self._statements: dict[str, list[_Statement]] = collections.defaultdict(list)

    def introspect(self) -> Introspection:
        result = Introspection(tables=[])
        tables: dict[str, SourceTable] = {}
        row_counts: dict[str, int] = collections.Counter()
        skipped: set[str] = set()
        current_schema = None
        self._statements.clear()

        lines = iter_offset_lines(self.path, self.compression)
        with contextlib.closing(lines):
            for offset, line in lines:
                s = line.strip()
                if not s or s.startswith("--") or s.startswith("/*!") or s.startswith("#"):
                    continue

                m = _USE_RE.match(s)
                if m:
                    current_schema = unquote_ident(m.group("name"))
                    continue

                m = _CREATE_TABLE_RE.match(s)
                if m:
                    schema, name = split_qualified(m.group("name"))
                    schema = schema or current_schema
                    try:
                        definitions = _read_definitions(s, m.end() - 1, lines, name)
                        table, warnings = parse_create_table(name, definitions, schema=schema)
                    except SchemaParseError as exc:
                        result.warnings.append(f"Skipping table '{name}': {exc}")
                        result.skipped_tables.append(name)
                        skipped.add(name)
                        continue
                    if name in tables:
                        result.warnings.append(
                            f"Skipping table '{name}' from schema '{schema}': "
                            f"name already imported from schema '{tables[name].schema}'"
                        )
                        result.skipped_tables.append(f"{schema}.{name}" if schema else name)
                        continue
                    result.warnings.extend(warnings)
                    tables[name] = table
                    continue

                m = _INSERT_RE.match(s)
                if m:
                    _, name = split_qualified(m.group("name"))
                    counter = _GroupCounter()
                    complete = counter.feed(s[m.end():])
                    n_lines = 1
                    while not complete:
                        nxt = next(lines, None)
                        if nxt is None:
                            break
                        n_lines += 1
                        complete = counter.feed(nxt[1])
                    if name in tables and tables[name].schema == (current_schema or tables[name].schema):
                        self._statements[name].append(_Statement(offset=offset, lines=n_lines))
                        row_counts[name] += counter.count

        for name, table in tables.items():
            result.tables.append(dataclasses.replace(table, row_count=row_counts.get(name, 0)))
        self.logger.debug(
            "Parsed %d tables (%d skipped) from %s", len(result.tables), len(skipped), self.path
        )
        return result

    def _iter_statements(self, table: SourceTable) -> Iterator[str]:
        statements = self._statements.get(table.name, [])
        if not statements:
            return
        lines = iter_offset_lines(self.path, self.compression, offset=statements[0].offset, table=table.name)
        with contextlib.closing(lines):
            pending = iter(statements)
            target = next(pending)
            for offset, line in lines:
                if offset < target.offset:
                    continue
                if offset > target.offset:
                    raise ChunkReadError(
                        f"INSERT for {table.name} not found at byte {target.offset}",
                        table=table.name,
                        path=self.path,
                    )
                parts = [line] + [more for _, more in itertools.islice(lines, target.lines - 1)]
                yield "\n".join(parts)
                target = next(pending, None)
                if target is None:
                    return

    def open_table_chunks(self, table: SourceTable) -> list[Chunk]:
        if not self._statements.get(table.name):
            return []
        return [Chunk(name=f"{os.path.basename(self.path)}:{table.name}", reader=lambda: self._iter_statements(table))]

    def row_decoder(
        self,
        table: SourceTable,
        kinds: Sequence[TargetKind],
        warn: Callable[[str], None] | None = None,
    ) -> InsertRowDecoder:
        return InsertRowDecoder(table, RowConverter(table.name, table.column_names(), kinds, warn))
