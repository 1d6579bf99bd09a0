"""Target DDL and type mapping for introspected source tables.

DecentDB stores INT64, BOOL, FLOAT64, TEXT and BLOB columns. Decimals are
kept as TEXT to preserve precision. Only single-column indexes are recreated;
everything else is reported as a :class:`SkippedIndex` with a reason.
"""

from __future__ import annotations

import dataclasses
import re
from collections import defaultdict

from .codec import TargetKind
from .models import SkippedIndex, SourceIndex, SourceTable


def _normalize_ident(name: str, *, identifier_case: str) -> str:
    if identifier_case == "preserve":
        return name
    if identifier_case == "lower":
        return name.lower()
    raise ValueError(f"Unknown identifier_case: {identifier_case}")


def _quote_ident(name: str) -> str:
    # Double-quote identifiers (Postgres-style). Escape embedded quotes.
    return '"' + name.replace('"', '""') + '"'


_PAREN_RE = re.compile(r"\([^)]*\)")
_MYSQL_MODIFIER_RE = re.compile(r"\s+(?:UNSIGNED|SIGNED|ZEROFILL)\b", re.IGNORECASE)
_SPACES_RE = re.compile(r"\s+")

_MYSQL_TYPES = {
    "int": TargetKind.INT64,
    "integer": TargetKind.INT64,
    "bigint": TargetKind.INT64,
    "smallint": TargetKind.INT64,
    "mediumint": TargetKind.INT64,
    "tinyint": TargetKind.INT64,
    "bit": TargetKind.INT64,
    "bool": TargetKind.BOOL,
    "boolean": TargetKind.BOOL,
    "float": TargetKind.FLOAT64,
    "double": TargetKind.FLOAT64,
    "double precision": TargetKind.FLOAT64,
    "real": TargetKind.FLOAT64,
    "decimal": TargetKind.DECIMAL,
    "numeric": TargetKind.DECIMAL,
    "dec": TargetKind.DECIMAL,
    "fixed": TargetKind.DECIMAL,
    "varchar": TargetKind.TEXT,
    "char": TargetKind.TEXT,
    "text": TargetKind.TEXT,
    "tinytext": TargetKind.TEXT,
    "mediumtext": TargetKind.TEXT,
    "longtext": TargetKind.TEXT,
    "date": TargetKind.TEXT,
    "datetime": TargetKind.TEXT,
    "timestamp": TargetKind.TEXT,
    "time": TargetKind.TEXT,
    "year": TargetKind.TEXT,
    "enum": TargetKind.TEXT,
    "set": TargetKind.TEXT,
    "json": TargetKind.TEXT,
    "blob": TargetKind.BLOB,
    "tinyblob": TargetKind.BLOB,
    "mediumblob": TargetKind.BLOB,
    "longblob": TargetKind.BLOB,
    "binary": TargetKind.BLOB,
    "varbinary": TargetKind.BLOB,
}

_POSTGRES_TYPES = {
    "integer": TargetKind.INT64,
    "int": TargetKind.INT64,
    "int2": TargetKind.INT64,
    "int4": TargetKind.INT64,
    "int8": TargetKind.INT64,
    "smallint": TargetKind.INT64,
    "bigint": TargetKind.INT64,
    "serial": TargetKind.INT64,
    "smallserial": TargetKind.INT64,
    "bigserial": TargetKind.INT64,
    "boolean": TargetKind.BOOL,
    "bool": TargetKind.BOOL,
    "real": TargetKind.FLOAT64,
    "float4": TargetKind.FLOAT64,
    "float8": TargetKind.FLOAT64,
    "float": TargetKind.FLOAT64,
    "double precision": TargetKind.FLOAT64,
    "numeric": TargetKind.DECIMAL,
    "decimal": TargetKind.DECIMAL,
    "money": TargetKind.TEXT,
    "bytea": TargetKind.BLOB,
    "character varying": TargetKind.TEXT,
    "varchar": TargetKind.TEXT,
    "character": TargetKind.TEXT,
    "char": TargetKind.TEXT,
    "bpchar": TargetKind.TEXT,
    "text": TargetKind.TEXT,
    "name": TargetKind.TEXT,
    "citext": TargetKind.TEXT,
    "timestamp": TargetKind.TEXT,
    "timestamptz": TargetKind.TEXT,
    "timestamp with time zone": TargetKind.TEXT,
    "timestamp without time zone": TargetKind.TEXT,
    "date": TargetKind.TEXT,
    "time": TargetKind.TEXT,
    "timetz": TargetKind.TEXT,
    "time with time zone": TargetKind.TEXT,
    "time without time zone": TargetKind.TEXT,
    "interval": TargetKind.TEXT,
    "uuid": TargetKind.TEXT,
    "json": TargetKind.TEXT,
    "jsonb": TargetKind.TEXT,
    "inet": TargetKind.TEXT,
    "cidr": TargetKind.TEXT,
    "macaddr": TargetKind.TEXT,
    "macaddr8": TargetKind.TEXT,
    "tsvector": TargetKind.TEXT,
    "tsquery": TargetKind.TEXT,
    "xml": TargetKind.TEXT,
    "bit": TargetKind.TEXT,
    "bit varying": TargetKind.TEXT,
    "varbit": TargetKind.TEXT,
    "oid": TargetKind.TEXT,
    "regclass": TargetKind.TEXT,
    "regtype": TargetKind.TEXT,
    "regproc": TargetKind.TEXT,
}

# Types that are stored, but not with their native semantics.
_LOSSY = frozenset(
    {
        "numeric",
        "decimal",
        "dec",
        "fixed",
        "money",
        "timestamp",
        "timestamptz",
        "timestamp with time zone",
        "timestamp without time zone",
        "datetime",
        "date",
        "time",
        "timetz",
        "time with time zone",
        "time without time zone",
        "year",
        "interval",
        "json",
        "jsonb",
        "uuid",
        "inet",
        "cidr",
        "macaddr",
        "macaddr8",
        "tsvector",
        "tsquery",
        "xml",
        "bit varying",
        "varbit",
        "enum",
        "set",
        "oid",
        "regclass",
        "regtype",
        "regproc",
    }
)


def base_type(declared: str, dialect: str = "") -> str:
    """Lower-cased type name without modifiers, e.g. ``varchar(20)`` -> ``varchar``."""
    t = declared.strip().lower()
    if dialect == "mysql":
        t = _MYSQL_MODIFIER_RE.sub("", t)
    t = _PAREN_RE.sub("", t)
    if dialect == "postgres" and t.startswith("pg_catalog."):
        t = t[len("pg_catalog.") :]
    return _SPACES_RE.sub(" ", t).strip()


def _map_sqlite(declared: str) -> tuple[TargetKind, bool]:
    # SQLite uses affinities; map best-effort. Order matters.
    t = declared.strip().upper()
    if not t:
        return TargetKind.TEXT, True
    if "BOOL" in t:
        return TargetKind.BOOL, True
    if "INT" in t:
        return TargetKind.INT64, True
    if any(k in t for k in ("REAL", "FLOA", "DOUB")):
        return TargetKind.FLOAT64, True
    if "BLOB" in t:
        return TargetKind.BLOB, True
    if any(k in t for k in ("DECIMAL", "NUMERIC")):
        return TargetKind.DECIMAL, True
    if any(k in t for k in ("CHAR", "CLOB", "TEXT")):
        return TargetKind.TEXT, True
    if any(k in t for k in ("DATE", "TIME", "UUID", "JSON")):
        return TargetKind.TEXT, True
    return TargetKind.TEXT, False


def _map_mysql(declared: str) -> tuple[TargetKind, bool]:
    t = _MYSQL_MODIFIER_RE.sub("", declared.strip().lower())
    if re.match(r"tinyint\s*\(\s*1\s*\)\Z", t):
        return TargetKind.BOOL, True
    kind = _MYSQL_TYPES.get(base_type(t))
    if kind is None:
        return TargetKind.TEXT, False
    return kind, True


def _map_postgres(declared: str) -> tuple[TargetKind, bool]:
    t = base_type(declared, "postgres")
    # Arrays are kept in their literal form.
    if t.endswith("[]"):
        return TargetKind.TEXT, True
    kind = _POSTGRES_TYPES.get(t)
    if kind is None:
        return TargetKind.TEXT, False
    return kind, True


def map_type(declared: str, dialect: str) -> tuple[TargetKind, bool]:
    """Return the target kind for a declared source type.

    The second element is False when the type was not recognised and was
    defaulted to TEXT.
    """
    if dialect == "sqlite":
        return _map_sqlite(declared)
    if dialect == "mysql":
        return _map_mysql(declared)
    if dialect == "postgres":
        return _map_postgres(declared)
    raise ValueError(f"Unknown source dialect: {dialect}")


def is_lossy_type(declared: str, dialect: str) -> bool:
    """Check if a source type might lose information when converted."""
    t = base_type(declared, dialect)
    if t.endswith("[]"):
        return True
    if dialect == "sqlite":
        return any(k in t for k in ("decimal", "numeric", "date", "time", "uuid", "json"))
    return t in _LOSSY


@dataclasses.dataclass
class NameMaps:
    identifier_case: str = "lower"
    table_name_map: dict[str, str] = dataclasses.field(default_factory=dict)
    column_name_map: dict[str, dict[str, str]] = dataclasses.field(default_factory=dict)
    index_names: set[str] = dataclasses.field(default_factory=set)

    def normalize(self, name: str) -> str:
        return _normalize_ident(name, identifier_case=self.identifier_case)

    def claim_index_name(self, table: str, name: str) -> str:
        """Reserve a unique target name for an index of ``table``."""
        dst = self.normalize(name) if name else ""
        if not dst or dst in self.index_names:
            dst = self.normalize(f"{table}_{name or 'idx'}")
        base = dst
        n = 2
        while dst in self.index_names:
            dst = f"{base}_{n}"
            n += 1
        self.index_names.add(dst)
        return dst


def build_name_maps(
    tables: list[SourceTable], *, identifier_case: str
) -> tuple[NameMaps, list[SourceTable], list[tuple[str, str]]]:
    """Build mappings from source to destination names.

    A table whose name (or one of whose column names) collides with another
    after normalization is dropped. Returns the maps, the tables that can be
    imported and a (table, reason) pair per dropped table.
    """
    maps = NameMaps(identifier_case=identifier_case)
    kept: list[SourceTable] = []
    dropped: list[tuple[str, str]] = []
    used_tables: dict[str, str] = {}

    for t in tables:
        dst = maps.normalize(t.name)
        if dst in used_tables:
            dropped.append(
                (t.name, f"name collision after normalization with '{used_tables[dst]}' -> '{dst}'")
            )
            continue

        used_cols: dict[str, str] = {}
        per: dict[str, str] = {}
        collision = None
        for c in t.columns:
            dst_col = maps.normalize(c.name)
            if dst_col in used_cols:
                collision = (
                    "column name collision after normalization: "
                    f"'{c.name}' and '{used_cols[dst_col]}' -> '{dst_col}'"
                )
                break
            used_cols[dst_col] = c.name
            per[c.name] = dst_col
        if collision is not None:
            dropped.append((t.name, collision))
            continue

        used_tables[dst] = t.name
        maps.table_name_map[t.name] = dst
        maps.column_name_map[t.name] = per
        kept.append(t)

    return maps, kept, dropped


@dataclasses.dataclass(frozen=True)
class SynthesizedIndex:
    name: str
    source_name: str
    sql: str


@dataclasses.dataclass(frozen=True)
class SynthesizedTable:
    source: SourceTable
    target_name: str
    columns: tuple[str, ...]
    kinds: tuple[TargetKind, ...]
    create_sql: str
    insert_sql: str
    indexes: tuple[SynthesizedIndex, ...] = ()
    skipped_indexes: tuple[SkippedIndex, ...] = ()
    unique_columns: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    unsupported_types: dict[str, list[str]] = dataclasses.field(default_factory=dict)


def _skip_reason(idx: SourceIndex, known: dict[str, str]) -> str | None:
    if idx.expression:
        return "expression index not supported"
    if idx.predicate:
        return "partial index predicate not supported"
    if idx.method:
        if idx.method.lower() == "fulltext":
            return "fulltext index not supported"
        return f"{idx.method.lower()} index not supported"
    if idx.prefix_length:
        return "prefix-length index not supported"
    if len(idx.columns) != 1:
        return "composite index not imported (single-column only)"
    if idx.columns[0].lower() not in known:
        return f"index references unknown column '{idx.columns[0]}'"
    return None


def synthesize(table: SourceTable, dialect: str, names: NameMaps) -> SynthesizedTable:
    """Build CREATE TABLE / INSERT / CREATE INDEX statements for ``table``."""
    dst_table = names.table_name_map[table.name]
    col_map = names.column_name_map[table.name]
    pk = table.primary_key
    warnings: list[str] = []
    unsupported: dict[str, list[str]] = defaultdict(list)

    kinds: list[TargetKind] = []
    col_defs: list[str] = []
    unique_columns: list[str] = []
    for col in table.columns:
        dst_col = col_map[col.name]
        kind, known = map_type(col.declared_type, dialect)
        kinds.append(kind)
        if not known:
            warnings.append(
                f"Table '{table.name}': unknown type '{col.declared_type}' of column '{col.name}' stored as TEXT"
            )
        if not known or is_lossy_type(col.declared_type, dialect):
            unsupported[f"{col.declared_type} -> {kind.ddl_type}"].append(f"{table.name}.{col.name}")

        parts: list[str] = [_quote_ident(dst_col), kind.ddl_type]
        if col.primary_key and len(pk) == 1:
            parts.append("PRIMARY KEY")
        else:
            if col.unique:
                parts.append("UNIQUE")
                unique_columns.append(f"{dst_table}.{dst_col}")
            if col.not_null or col.primary_key:
                parts.append("NOT NULL")
        col_defs.append(" ".join(parts))

    if len(pk) > 1:
        col_defs.append("PRIMARY KEY (" + ", ".join(_quote_ident(col_map[c]) for c in pk) + ")")

    create_sql = "CREATE TABLE " + _quote_ident(dst_table) + " (" + ", ".join(col_defs) + ")"
    dst_cols = [col_map[c.name] for c in table.columns]
    insert_sql = (
        f"INSERT INTO {_quote_ident(dst_table)} ({', '.join(_quote_ident(c) for c in dst_cols)}) "
        f"VALUES ({', '.join('?' for _ in dst_cols)})"
    )

    defaults = [c.name for c in table.columns if c.default is not None]
    if defaults:
        warnings.append(f"Table '{table.name}': DEFAULT values not imported ({', '.join(defaults)})")
    if table.check_constraints:
        warnings.append(f"Table '{table.name}': {len(table.check_constraints)} CHECK constraint(s) not imported")
    if table.foreign_keys:
        warnings.append(f"Table '{table.name}': {len(table.foreign_keys)} foreign key(s) not imported")
    autoinc = [c.name for c in table.columns if c.auto_increment]
    if autoinc:
        warnings.append(f"Table '{table.name}': AUTO_INCREMENT not imported ({', '.join(autoinc)})")

    known_cols = {c.lower(): c for c in col_map}
    indexes: list[SynthesizedIndex] = []
    skipped: list[SkippedIndex] = list(table.skipped_indexes)
    for idx in table.indexes:
        reason = _skip_reason(idx, known_cols)
        if reason is not None:
            skipped.append(SkippedIndex(name=idx.name, table=table.name, reason=reason))
            continue
        dst_idx = names.claim_index_name(dst_table, idx.name)
        sql = (
            "CREATE "
            + ("UNIQUE " if idx.unique else "")
            + "INDEX "
            + _quote_ident(dst_idx)
            + " ON "
            + _quote_ident(dst_table)
            + "(" + _quote_ident(col_map[known_cols[idx.columns[0].lower()]]) + ")"
        )
        indexes.append(SynthesizedIndex(name=dst_idx, source_name=idx.name, sql=sql))

    return SynthesizedTable(
        source=table,
        target_name=dst_table,
        columns=tuple(dst_cols),
        kinds=tuple(kinds),
        create_sql=create_sql,
        insert_sql=insert_sql,
        indexes=tuple(indexes),
        skipped_indexes=tuple(skipped),
        unique_columns=tuple(unique_columns),
        warnings=tuple(warnings),
        unsupported_types=dict(unsupported),
    )
