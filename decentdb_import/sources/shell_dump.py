"""MySQL Shell dump directories (``util.dumpInstance`` / ``util.dumpSchemas``)."""

from __future__ import annotations

import base64
import binascii
import dataclasses
import glob
import json
import os
from typing import Any, Callable, Iterator, Sequence

from ..chunks import count_lines, discover_chunks, iter_lines, normalize_compression
from ..codec import TargetKind
from ..errors import ChunkReadError, ConversionError, SchemaParseError, SourceNotFoundError
from ..models import Introspection, SourceTable
from ..rows import RowConverter, TextFormat, decode_fields
from .base import BaseSource, Chunk, SourceKind
from .mysql_dump import parse_table_ddl

MANIFEST = "@.json"


@dataclasses.dataclass(frozen=True)
class TableMeta:
    schema: str
    table: str
    basename: str
    columns: tuple[str, ...]
    compression: str = "zstd"
    fields_terminated_by: str = "\t"
    fields_escaped_by: str = "\\"
    fields_enclosed_by: str = ""
    lines_terminated_by: str = "\n"
    extension: str = "tsv.zst"
    chunking: bool = False
    primary_index: str | None = None
    decode_columns: dict[str, str] = dataclasses.field(default_factory=dict)


def _load_json(path: str) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{os.path.basename(path)} is not a JSON object")
    return data


def load_table_meta(path: str, schema: str, table: str, basename: str) -> TableMeta:
    try:
        root = _load_json(path)
    except (OSError, ValueError) as exc:
        raise SchemaParseError(f"Cannot read metadata {os.path.basename(path)}: {exc}", table=table) from exc

    options = root.get("options") or {}
    if not isinstance(options, dict):
        raise SchemaParseError(f"Invalid 'options' in {os.path.basename(path)}", table=table)
    try:
        compression = normalize_compression(options.get("compression", "zstd"))
    except ValueError as exc:
        raise SchemaParseError(str(exc), table=table) from exc

    decode = options.get("decodeColumns") or {}
    return TableMeta(
        schema=schema,
        table=table,
        basename=basename,
        columns=tuple(str(c) for c in options.get("columns") or ()),
        compression=compression,
        fields_terminated_by=options.get("fieldsTerminatedBy", "\t"),
        fields_escaped_by=options.get("fieldsEscapedBy", "\\"),
        fields_enclosed_by=options.get("fieldsEnclosedBy", ""),
        lines_terminated_by=options.get("linesTerminatedBy", "\n"),
        extension=str(root.get("extension") or "tsv.zst"),
        chunking=bool(root.get("chunking", False)),
        primary_index=options.get("primaryIndex") or None,
        decode_columns={str(k): str(v) for k, v in decode.items()} if isinstance(decode, dict) else {},
    )


def _decode_transform(spec: str) -> Callable[[str], bytes] | None:
    upper = spec.upper()
    if "BASE64" in upper:
        return lambda s: base64.b64decode(s, validate=False)
    if "UNHEX" in upper:
        return bytes.fromhex
    return None


class ShellRowDecoder:
    def __init__(
        self,
        converter: RowConverter,
        fmt: TextFormat,
        transforms: dict[int, Callable[[str], bytes]],
    ):
        self.converter = converter
        self.fmt = fmt
        self.transforms = transforms

    def decode(self, line: str) -> Iterator[list[Any]]:
        if not line and self.converter.width != 1:
            return
        fields: list[Any] = decode_fields(line, self.fmt)
        for i, fn in self.transforms.items():
            if i < len(fields) and fields[i] is not None:
                try:
                    raw = fn(fields[i])
                except (ValueError, binascii.Error):
                    continue
                if self.converter.kinds[i] in (TargetKind.INT64, TargetKind.BOOL):
                    raw = int.from_bytes(raw, "big")
                fields[i] = raw
        yield self.converter.adapt_row(fields)


class ShellDumpSource(BaseSource):
    """Directory written by MySQL Shell's dump utilities.

    ``@.json`` lists the schemas. Each table has a JSON metadata file, a DDL
    fragment and numbered (usually zstd compressed) TSV data chunks.
    """

    kind = SourceKind.MYSQL_SHELL
    dialect = "mysql"

    def __init__(self, path: str, **kwargs):
        super().__init__(path, **kwargs)
        if not os.path.isdir(path):
            raise SourceNotFoundError(path)
        if not os.path.isfile(os.path.join(path, MANIFEST)):
            raise SourceNotFoundError(f"MySQL Shell dump manifest {MANIFEST} not found in {path}")
        self._metas: dict[str, TableMeta] = {}

    def _schemas(self) -> list[str]:
        try:
            manifest = _load_json(os.path.join(self.path, MANIFEST))
        except (OSError, ValueError) as exc:
            raise ConversionError(f"Cannot read {MANIFEST}: {exc}") from exc
        schemas = manifest.get("schemas") or []
        return [str(s) for s in schemas if isinstance(s, str)]

    def _schema_tables(self, schema: str) -> list[tuple[str, str]]:
        """(table, basename) pairs for ``schema``."""
        schema_json = os.path.join(self.path, f"{schema}.json")
        if os.path.isfile(schema_json):
            try:
                data = _load_json(schema_json)
            except (OSError, ValueError) as exc:
                raise SchemaParseError(f"Cannot read {schema}.json: {exc}") from exc
            basenames = data.get("basenames") or {}
            tables = [str(t) for t in data.get("tables") or ()]
            if tables:
                return [(t, str(basenames.get(t, f"{schema}@{t}"))) for t in tables]

        prefix = f"{schema}@"
        out: list[tuple[str, str]] = []
        for meta_path in sorted(glob.glob(os.path.join(glob.escape(self.path), f"{glob.escape(schema)}@*.json"))):
            stem = os.path.basename(meta_path)[: -len(".json")]
            table = stem[len(prefix) :]
            if not table or "@" in table:
                continue
            out.append((table, stem))
        return out

    def _load_table(self, meta: TableMeta) -> tuple[SourceTable, list[str]]:
        if meta.fields_enclosed_by:
            raise SchemaParseError("enclosed (quoted) fields are not supported", table=meta.table)
        if meta.lines_terminated_by != "\n":
            raise SchemaParseError("only newline-terminated records are supported", table=meta.table)
        if len(meta.fields_terminated_by) != 1 and self.options.field_delimiter is None:
            raise SchemaParseError(
                f"multi-character field terminator {meta.fields_terminated_by!r} is not supported",
                table=meta.table,
            )

        sql_path = os.path.join(self.path, f"{meta.basename}.sql")
        try:
            with open(sql_path, "r", encoding="utf-8", errors="surrogateescape") as f:
                ddl = f.read()
        except OSError as exc:
            raise SchemaParseError(f"DDL file not found: {os.path.basename(sql_path)}", table=meta.table) from exc

        table, warnings = parse_table_ddl(ddl, schema=meta.schema)
        table = dataclasses.replace(table, name=meta.table, schema=meta.schema)

        if meta.columns:
            by_name = {c.name.lower(): c for c in table.columns}
            ordered = []
            for name in meta.columns:
                col = by_name.pop(name.lower(), None)
                if col is None:
                    raise SchemaParseError(f"data column '{name}' is missing from the DDL", table=meta.table)
                ordered.append(col)
            for col in by_name.values():
                warnings.append(f"Table '{meta.table}': column '{col.name}' is not present in the dump data")
            table = dataclasses.replace(table, columns=tuple(ordered))

        if self.options.count_rows:
            try:
                paths = discover_chunks(self.path, meta.basename, meta.extension, table=meta.table)
                table = dataclasses.replace(
                    table, row_count=sum(count_lines(p, meta.compression, table=meta.table) for p in paths)
                )
            except ChunkReadError as exc:
                self.logger.debug("Row count unavailable for %s: %s", meta.table, exc)
        return table, warnings

    def introspect(self) -> Introspection:
        result = Introspection(tables=[])
        schemas = self._schemas()
        if not schemas:
            result.warnings.append(f"No schemas found in {MANIFEST}")
            return result

        seen: dict[str, str] = {}
        self._metas.clear()
        for schema in schemas:
            try:
                entries = self._schema_tables(schema)
            except SchemaParseError as exc:
                result.warnings.append(f"Skipping schema '{schema}': {exc}")
                continue
            for table_name, basename in entries:
                qualified = f"{schema}.{table_name}"
                if table_name in seen:
                    result.warnings.append(
                        f"Skipping table '{qualified}': name already imported from schema '{seen[table_name]}'"
                    )
                    result.skipped_tables.append(qualified)
                    continue
                try:
                    meta = load_table_meta(
                        os.path.join(self.path, f"{basename}.json"), schema, table_name, basename
                    )
                    table, warnings = self._load_table(meta)
                except SchemaParseError as exc:
                    result.warnings.append(f"Skipping table '{qualified}': {exc}")
                    result.skipped_tables.append(qualified)
                    continue
                seen[table_name] = schema
                self._metas[table_name] = meta
                result.tables.append(table)
                result.warnings.extend(warnings)
        self.logger.debug("Found %d tables in %d schemas under %s", len(result.tables), len(schemas), self.path)
        return result

    def text_format(self, meta: TableMeta) -> TextFormat:
        opts = self.options
        return TextFormat(
            delimiter=opts.field_delimiter or meta.fields_terminated_by,
            escape=opts.escape_char if opts.escape_char is not None else meta.fields_escaped_by,
            null_sentinel=opts.null_sentinel_char,
        )

    def open_table_chunks(self, table: SourceTable) -> list[Chunk]:
        meta = self._metas[table.name]
        paths = discover_chunks(self.path, meta.basename, meta.extension, table=table.name)
        return [
            Chunk(
                name=os.path.basename(p),
                reader=lambda p=p: iter_lines(p, meta.compression, table=table.name),
            )
            for p in paths
        ]

    def row_decoder(
        self,
        table: SourceTable,
        kinds: Sequence[TargetKind],
        warn: Callable[[str], None] | None = None,
    ) -> ShellRowDecoder:
        meta = self._metas[table.name]
        positions = {c.name.lower(): i for i, c in enumerate(table.columns)}
        transforms: dict[int, Callable[[str], bytes]] = {}
        for col, spec in meta.decode_columns.items():
            fn = _decode_transform(spec)
            i = positions.get(col.lower())
            if fn is not None and i is not None:
                transforms[i] = fn
        converter = RowConverter(table.name, table.column_names(), kinds, warn)
        return ShellRowDecoder(converter, self.text_format(meta), transforms)
