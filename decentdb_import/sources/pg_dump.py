"""PostgreSQL plain-format dumps (``pg_dump --format=plain``)."""

from __future__ import annotations

import contextlib
import dataclasses
import itertools
import os
import re
from typing import Callable, Iterator, Sequence

from ..chunks import compression_for_path, iter_lines, iter_offset_lines
from ..codec import TargetKind
from ..errors import ChunkReadError, SchemaParseError, SourceNotFoundError
from ..models import (
    Introspection,
    SkippedIndex,
    SourceColumn,
    SourceForeignKey,
    SourceIndex,
    SourceTable,
)
from ..rows import PG_COPY, RowConverter, TsvRowDecoder
from .base import BaseSource, Chunk, SourceKind
from .sqltext import mask_strings, paren_body, read_literal, split_top_level, unquote_ident

_IDENT = r'(?:"(?:[^"]|"")+"|[A-Za-z_][A-Za-z0-9_$]*)'
_QUALIFIED = rf"{_IDENT}(?:\.{_IDENT})?"

_CREATE_TABLE_RE = re.compile(
    rf"^CREATE\s+(?:UNLOGGED\s+)?TABLE\s+(?P<name>{_QUALIFIED})\s*\(",
    re.IGNORECASE,
)
_ALTER_RE = re.compile(
    rf"^ALTER\s+TABLE\s+(?:ONLY\s+)?(?P<table>{_QUALIFIED})\s+(?P<action>.*?);?\s*$",
    re.IGNORECASE | re.DOTALL,
)
_ADD_CONSTRAINT_RE = re.compile(
    rf"^ADD\s+CONSTRAINT\s+(?P<name>{_IDENT})\s+(?P<kind>PRIMARY\s+KEY|UNIQUE|FOREIGN\s+KEY|CHECK)\s*",
    re.IGNORECASE,
)
_SET_DEFAULT_RE = re.compile(
    rf"^ALTER\s+COLUMN\s+(?P<col>{_IDENT})\s+SET\s+DEFAULT\s+(?P<expr>.+)$",
    re.IGNORECASE | re.DOTALL,
)
_REFERENCES_RE = re.compile(rf"\s*REFERENCES\s+(?P<table>{_QUALIFIED})\s*(?=\()", re.IGNORECASE)
_CREATE_INDEX_RE = re.compile(
    rf"^CREATE\s+(?P<unique>UNIQUE\s+)?INDEX\s+(?:CONCURRENTLY\s+)?(?P<name>{_IDENT})\s+ON\s+(?:ONLY\s+)?"
    rf"(?P<table>{_QUALIFIED})\s+(?:USING\s+(?P<method>\w+)\s*)?(?=\()",
    re.IGNORECASE,
)
_COPY_RE = re.compile(
    rf"^COPY\s+(?P<table>{_QUALIFIED})\s*(?:\((?P<cols>[^)]*)\))?\s+FROM\s+stdin",
    re.IGNORECASE,
)
_COLUMN_RE = re.compile(rf"^(?P<name>{_IDENT})\s+(?P<rest>.+)$", re.DOTALL)
_CONSTRAINT_LINE_RE = re.compile(
    rf"^(?:CONSTRAINT\s+(?P<name>{_IDENT})\s+)?(?P<kind>PRIMARY\s+KEY|UNIQUE|FOREIGN\s+KEY|CHECK|EXCLUDE)\b",
    re.IGNORECASE,
)
_TYPE_END_RE = re.compile(
    r"\s+(?:NOT\s+NULL|NULL|DEFAULT|COLLATE|CONSTRAINT|GENERATED|PRIMARY\s+KEY|UNIQUE|REFERENCES|CHECK)\b",
    re.IGNORECASE,
)
_INDEX_PART_RE = re.compile(
    rf"^(?P<col>{_IDENT})(?:\s+(?:COLLATE\s+\S+|[A-Za-z_][A-Za-z0-9_.]*_ops|ASC|DESC|NULLS\s+(?:FIRST|LAST)))*$",
    re.IGNORECASE,
)
_DOLLAR_RE = re.compile(r"\$[A-Za-z_]*\$")
_SIMPLE_INDEX_METHODS = ("btree", "hash")


def split_qualified(raw: str) -> tuple[str | None, str]:
    parts = [unquote_ident(p) for p in split_top_level(raw, ".")]
    if len(parts) == 2:
        return parts[0], parts[1]
    return None, parts[-1]


def _ident_list(body: str) -> list[str]:
    return [unquote_ident(p) for p in split_top_level(body) if p.strip()]


def parse_column(line: str) -> SourceColumn:
    m = _COLUMN_RE.match(line)
    if not m:
        raise SchemaParseError(f"Cannot parse column definition: {line[:60]}")
    name = unquote_ident(m.group("name"))
    rest = m.group("rest")
    masked = mask_strings(rest)
    end = _TYPE_END_RE.search(masked)
    declared = (rest[: end.start()] if end else rest).strip()
    if not declared:
        raise SchemaParseError(f"Column '{name}' has no type")
    tail = rest[end.start():] if end else ""
    tail_masked = masked[end.start():] if end else ""
    upper = tail_masked.upper()

    default = None
    dm = re.search(r"\bDEFAULT\s+", tail_masked, re.IGNORECASE)
    if dm:
        literal, _ = read_literal(tail, dm.end())
        default = literal or None

    identity = bool(re.search(r"\bGENERATED\s+(?:ALWAYS|BY\s+DEFAULT)\s+AS\s+IDENTITY\b", upper))
    generated = bool(re.search(r"\bGENERATED\s+ALWAYS\s+AS\s*\(", upper))
    return SourceColumn(
        name=name,
        declared_type=declared,
        not_null=bool(re.search(r"\bNOT\s+NULL\b", upper)),
        primary_key=bool(re.search(r"\bPRIMARY\s+KEY\b", upper)),
        unique=bool(re.search(r"\bUNIQUE\b", upper)),
        default=default,
        auto_increment=identity or bool(default and default.lower().startswith("nextval(")),
        generated=generated,
    )


def parse_index_parts(body: str) -> tuple[tuple[str, ...], bool]:
    columns: list[str] = []
    expression = False
    for part in split_top_level(body):
        m = _INDEX_PART_RE.match(part)
        if m:
            columns.append(unquote_ident(m.group("col")))
        else:
            expression = True
    return tuple(columns), expression


@dataclasses.dataclass
class _TableState:
    """Mutable accumulation of everything the dump says about one table."""

    name: str
    schema: str | None
    columns: list[SourceColumn]
    checks: list[str] = dataclasses.field(default_factory=list)
    pk: list[str] = dataclasses.field(default_factory=list)
    unique: list[str] = dataclasses.field(default_factory=list)
    fks: list[SourceForeignKey] = dataclasses.field(default_factory=list)
    indexes: list[SourceIndex] = dataclasses.field(default_factory=list)
    skipped_indexes: list[SkippedIndex] = dataclasses.field(default_factory=list)
    defaults: dict[str, str] = dataclasses.field(default_factory=dict)
    copy_columns: list[str] | None = None
    copy_offset: int | None = None
    copy_rows: int = 0


@dataclasses.dataclass(frozen=True)
class CopyBlock:
    offset: int
    rows: int


class PgDumpSource(BaseSource):
    """Plain-text ``pg_dump`` output, optionally gzip/zstd compressed.

    The dump is streamed once during introspection. Table data is located by
    the decompressed byte offset of each ``COPY ... FROM stdin`` block.
    """

    kind = SourceKind.PGDUMP
    dialect = "postgres"

    def __init__(self, path: str, **kwargs):
        super().__init__(path, **kwargs)
        if not os.path.isfile(path):
            raise SourceNotFoundError(path)
        self.compression = compression_for_path(path)
        self._copies: dict[str, CopyBlock] = {}

    @staticmethod
    def _statement(first: str, lines: Iterator[tuple[int, str]]) -> str:
        parts = [first]
        while not parts[-1].rstrip().endswith(";"):
            nxt = next(lines, None)
            if nxt is None:
                break
            parts.append(nxt[1].strip())
        return " ".join(parts)

    @staticmethod
    def _skip_dollar_quoted(line: str, lines: Iterator[tuple[int, str]]) -> None:
        tags = _DOLLAR_RE.findall(line)
        if len(tags) % 2 == 0:
            return
        tag = tags[-1]
        for _, nxt in lines:
            if tag in nxt:
                return

    def _parse_create_table(self, first: str, m: re.Match, lines: Iterator[tuple[int, str]]) -> _TableState:
        schema, name = split_qualified(m.group("name"))
        rest = first[m.end() - 1 :]
        if rest.rstrip().rstrip(";").endswith(")") and rest.count("(") == rest.count(")"):
            body, _ = paren_body(first, m.end() - 1)
            definitions = split_top_level(body)
        else:
            definitions = []
            for _, body_line in lines:
                if body_line.strip().startswith(")"):
                    break
                definitions.append(body_line.strip().rstrip(","))
            else:
                raise SchemaParseError(f"Unterminated CREATE TABLE for '{name}'", table=name)

        state = _TableState(name=name, schema=schema, columns=[])
        for line in definitions:
            if not line or line.startswith("--"):
                continue
            cm = _CONSTRAINT_LINE_RE.match(line)
            if cm:
                self._apply_constraint(state, cm.group("kind"), line[cm.end():], cm.group("name"))
                continue
            state.columns.append(parse_column(line))
        if not state.columns:
            raise SchemaParseError(f"Table has no columns: {name}", table=name)
        return state

    def _apply_constraint(self, state: _TableState, kind: str, rest: str, cname: str | None) -> None:
        kind = " ".join(kind.upper().split())
        rest = rest.strip()
        if kind == "EXCLUDE":
            state.skipped_indexes.append(
                SkippedIndex(name=unquote_ident(cname or "exclude"), table=state.name,
                             reason="exclusion constraint not supported")
            )
            return
        if not rest.startswith("("):
            raise SchemaParseError(f"Cannot parse {kind} constraint on '{state.name}'", table=state.name)
        body, end = paren_body(rest, 0)
        if kind == "PRIMARY KEY":
            state.pk.extend(_ident_list(body))
        elif kind == "UNIQUE":
            cols = _ident_list(body)
            if len(cols) == 1:
                state.unique.append(cols[0])
            else:
                state.indexes.append(
                    SourceIndex(name=unquote_ident(cname or "unique"), table=state.name, columns=tuple(cols), unique=True)
                )
        elif kind == "FOREIGN KEY":
            rm = _REFERENCES_RE.match(rest, end)
            if rm:
                to_body, _ = paren_body(rest, rm.end())
                _, to_table = split_qualified(rm.group("table"))
                for src, dst in zip(_ident_list(body), _ident_list(to_body)):
                    state.fks.append(SourceForeignKey(from_column=src, to_table=to_table, to_column=dst))
        elif kind == "CHECK":
            state.checks.append(body.strip())

    def _apply_alter(self, stmt: str, tables: dict[str, _TableState]) -> None:
        m = _ALTER_RE.match(stmt)
        if not m:
            return
        _, name = split_qualified(m.group("table"))
        state = tables.get(name)
        if state is None:
            return
        action = m.group("action").strip()
        cm = _ADD_CONSTRAINT_RE.match(action)
        if cm:
            self._apply_constraint(state, cm.group("kind"), action[cm.end():], cm.group("name"))
            return
        dm = _SET_DEFAULT_RE.match(action)
        if dm:
            state.defaults[unquote_ident(dm.group("col"))] = dm.group("expr").strip()

    def _apply_index(self, stmt: str, tables: dict[str, _TableState]) -> None:
        m = _CREATE_INDEX_RE.match(stmt)
        if not m:
            return
        _, table_name = split_qualified(m.group("table"))
        state = tables.get(table_name)
        if state is None:
            return
        body, end = paren_body(stmt, m.end())
        columns, expression = parse_index_parts(body)
        where = re.search(r"\bWHERE\b(.*?);?\s*$", stmt[end:], re.IGNORECASE | re.DOTALL)
        method = (m.group("method") or "btree").lower()
        state.indexes.append(
            SourceIndex(
                name=unquote_ident(m.group("name")),
                table=table_name,
                columns=columns,
                unique=bool(m.group("unique")),
                expression=expression,
                predicate=where.group(1).strip() if where else None,
                method=None if method in _SIMPLE_INDEX_METHODS else method,
            )
        )

    def _scan_copy(self, state: _TableState, cols: str | None, lines: Iterator[tuple[int, str]]) -> None:
        rows = 0
        data_offset = None
        for offset, line in lines:
            if data_offset is None:
                data_offset = offset
            if line == "\\.":
                break
            rows += 1
        else:
            raise SchemaParseError(f"Unterminated COPY block for '{state.name}'", table=state.name)
        state.copy_columns = _ident_list(cols) if cols else None
        state.copy_offset = data_offset
        state.copy_rows = rows

    @staticmethod
    def _finish(state: _TableState, warnings: list[str]) -> SourceTable:
        pk = {c for c in state.pk}
        uniq = {c for c in state.unique}
        cols: list[SourceColumn] = []
        for col in state.columns:
            if col.name in pk:
                col = dataclasses.replace(col, primary_key=True, not_null=True)
            if col.name in uniq:
                col = dataclasses.replace(col, unique=True)
            if col.name in state.defaults:
                expr = state.defaults[col.name]
                col = dataclasses.replace(
                    col, default=expr, auto_increment=col.auto_increment or expr.lower().startswith("nextval(")
                )
            cols.append(col)

        for c in pk:
            if c not in {col.name for col in cols}:
                raise SchemaParseError(f"Primary key references unknown column '{c}'", table=state.name)

        if state.copy_columns is not None:
            by_name = {c.name: c for c in cols}
            ordered = []
            for name in state.copy_columns:
                col = by_name.pop(name, None)
                if col is None:
                    raise SchemaParseError(f"COPY column '{name}' is not defined in the table", table=state.name)
                ordered.append(col)
            for col in by_name.values():
                warnings.append(f"Table '{state.name}': column '{col.name}' is not present in the dump data")
            cols = ordered
        else:
            kept = []
            for col in cols:
                if col.generated:
                    warnings.append(f"Table '{state.name}': generated column '{col.name}' is not imported")
                else:
                    kept.append(col)
            cols = kept

        return SourceTable(
            name=state.name,
            columns=tuple(cols),
            foreign_keys=tuple(state.fks),
            indexes=tuple(state.indexes),
            skipped_indexes=tuple(state.skipped_indexes),
            schema=state.schema,
            check_constraints=tuple(state.checks),
            row_count=state.copy_rows,
        )

    def introspect(self) -> Introspection:
        result = Introspection(tables=[])
        tables: dict[str, _TableState] = {}
        self._copies.clear()

        lines = iter_offset_lines(self.path, self.compression)
        with contextlib.closing(lines):
            for offset, line in lines:
                s = line.strip()
                if not s or s.startswith("--") or s.startswith("\\"):
                    continue

                m = _CREATE_TABLE_RE.match(s)
                if m:
                    _, name = split_qualified(m.group("name"))
                    try:
                        state = self._parse_create_table(s, m, lines)
                    except SchemaParseError as exc:
                        result.warnings.append(f"Skipping table '{name}': {exc}")
                        result.skipped_tables.append(name)
                        continue
                    if name in tables:
                        result.warnings.append(
                            f"Skipping table '{state.schema}.{name}': "
                            f"name already imported from schema '{tables[name].schema}'"
                        )
                        result.skipped_tables.append(f"{state.schema}.{name}")
                        continue
                    tables[name] = state
                    continue

                m = _COPY_RE.match(s)
                if m:
                    schema, name = split_qualified(m.group("table"))
                    state = tables.get(name)
                    if state is None or (schema and state.schema and schema != state.schema):
                        # Data for a table that was skipped; consume the block.
                        for _, data_line in lines:
                            if data_line == "\\.":
                                break
                        continue
                    try:
                        self._scan_copy(state, m.group("cols"), lines)
                    except SchemaParseError as exc:
                        result.warnings.append(f"Table '{name}': {exc}")
                    continue

                upper = s[:32].upper()
                try:
                    if upper.startswith("ALTER TABLE"):
                        self._apply_alter(self._statement(s, lines), tables)
                        continue
                    if upper.startswith("CREATE INDEX") or upper.startswith("CREATE UNIQUE INDEX"):
                        self._apply_index(self._statement(s, lines), tables)
                        continue
                except SchemaParseError as exc:
                    result.warnings.append(f"Ignoring statement: {exc}")
                    continue

                self._skip_dollar_quoted(s, lines)

        for name, state in tables.items():
            warnings: list[str] = []
            try:
                table = self._finish(state, warnings)
            except SchemaParseError as exc:
                result.warnings.append(f"Skipping table '{name}': {exc}")
                result.skipped_tables.append(name)
                continue
            result.tables.append(table)
            result.warnings.extend(warnings)
            if state.copy_offset is not None:
                self._copies[name] = CopyBlock(offset=state.copy_offset, rows=state.copy_rows)
        self.logger.debug("Parsed %d tables from %s", len(result.tables), self.path)
        return result

    def _iter_copy(self, table: SourceTable, block: CopyBlock) -> Iterator[str]:
        lines = iter_lines(self.path, self.compression, offset=block.offset, table=table.name)
        with contextlib.closing(lines):
            for line in itertools.islice(lines, block.rows + 1):
                if line == "\\.":
                    return
                yield line
        raise ChunkReadError(f"COPY block for {table.name} ended without terminator", table=table.name, path=self.path)

    def open_table_chunks(self, table: SourceTable) -> list[Chunk]:
        block = self._copies.get(table.name)
        if block is None or block.rows == 0:
            return []
        return [Chunk(name=f"COPY {table.qualified_name}", reader=lambda: self._iter_copy(table, block))]

    def row_decoder(
        self,
        table: SourceTable,
        kinds: Sequence[TargetKind],
        warn: Callable[[str], None] | None = None,
    ) -> TsvRowDecoder:
        return TsvRowDecoder(RowConverter(table.name, table.column_names(), kinds, warn), PG_COPY)
