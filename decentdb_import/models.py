from __future__ import annotations

import dataclasses
import enum


@dataclasses.dataclass(frozen=True)
class SourceColumn:
    name: str
    declared_type: str
    not_null: bool
    primary_key: bool
    unique: bool = False
    default: str | None = None
    auto_increment: bool = False
    generated: bool = False


@dataclasses.dataclass(frozen=True)
class SourceForeignKey:
    from_column: str
    to_table: str
    to_column: str


@dataclasses.dataclass(frozen=True)
class SourceIndex:
    name: str
    table: str
    columns: tuple[str, ...]
    unique: bool
    expression: bool = False
    predicate: str | None = None
    method: str | None = None
    prefix_length: bool = False


@dataclasses.dataclass(frozen=True)
class SkippedIndex:
    name: str
    table: str
    reason: str


@dataclasses.dataclass(frozen=True)
class SourceTable:
    name: str
    columns: tuple[SourceColumn, ...]
    foreign_keys: tuple[SourceForeignKey, ...] = ()
    indexes: tuple[SourceIndex, ...] = ()
    skipped_indexes: tuple[SkippedIndex, ...] = ()
    schema: str | None = None
    check_constraints: tuple[str, ...] = ()
    row_count: int | None = None

    @property
    def qualified_name(self) -> str:
        if self.schema:
            return f"{self.schema}.{self.name}"
        return self.name

    @property
    def primary_key(self) -> list[str]:
        return [c.name for c in self.columns if c.primary_key]

    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]


@dataclasses.dataclass(frozen=True)
class Introspection:
    tables: list[SourceTable]
    warnings: list[str] = dataclasses.field(default_factory=list)
    skipped_tables: list[str] = dataclasses.field(default_factory=list)


class ImportPhase(enum.Enum):
    ANALYZING = "analyzing"
    CREATING_SCHEMA = "creating_schema"
    COPYING_DATA = "copying_data"
    CREATING_INDEXES = "creating_indexes"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (ImportPhase.COMPLETE, ImportPhase.FAILED, ImportPhase.CANCELLED)


@dataclasses.dataclass(frozen=True)
class ImportProgress:
    """Point-in-time view of a run, handed to the progress sink by value."""

    phase: ImportPhase
    message: str = ""
    tables_completed: int = 0
    tables_total: int = 0
    current_table: str | None = None
    rows_completed: int = 0
    rows_total: int = 0
    indexes_completed: int = 0
    indexes_total: int = 0
