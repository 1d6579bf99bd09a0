from __future__ import annotations

import dataclasses
import json
import logging
import time
from typing import Any, Callable

from .errors import ImportWarning
from .models import ImportPhase, SkippedIndex


@dataclasses.dataclass(frozen=True)
class ImportReport:
    """Outcome of one import run. Produced once, when the run ends."""

    source_path: str
    target_path: str
    source_kind: str | None
    phase: ImportPhase
    identifier_case: str = "lower"
    table_name_map: dict[str, str] = dataclasses.field(default_factory=dict)
    column_name_map: dict[str, dict[str, str]] = dataclasses.field(default_factory=dict)
    tables: list[str] = dataclasses.field(default_factory=list)
    rows_copied: dict[str, int] = dataclasses.field(default_factory=dict)
    indexes_created: list[str] = dataclasses.field(default_factory=list)
    unique_columns_added: list[str] = dataclasses.field(default_factory=list)
    skipped_indexes: list[SkippedIndex] = dataclasses.field(default_factory=list)
    skipped_tables: list[str] = dataclasses.field(default_factory=list)
    warnings: list[str] = dataclasses.field(default_factory=list)
    unsupported_types: dict[str, list[str]] = dataclasses.field(default_factory=dict)
    elapsed: float = 0.0
    message: str = ""
    error: str | None = None
    error_type: str | None = None
    cleanup_requested: bool = False

    @property
    def total_rows(self) -> int:
        return sum(self.rows_copied.values())

    @property
    def succeeded(self) -> bool:
        return self.phase is ImportPhase.COMPLETE


class ReportBuilder:
    """Collects events during a run. Records are append-only."""

    def __init__(
        self,
        source_path: str,
        target_path: str,
        *,
        source_kind: str | None = None,
        identifier_case: str = "lower",
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source_path = source_path
        self.target_path = target_path
        self.source_kind = source_kind
        self.identifier_case = identifier_case
        self.logger = logger or logging.getLogger("decentdb_import.report")
        self._clock = clock
        self._started = clock()
        self.table_name_map: dict[str, str] = {}
        self.column_name_map: dict[str, dict[str, str]] = {}
        self.tables: list[str] = []
        self.rows_copied: dict[str, int] = {}
        self.indexes_created: list[str] = []
        self.unique_columns_added: list[str] = []
        self.skipped_indexes: list[SkippedIndex] = []
        self.skipped_tables: list[str] = []
        self.warnings: list[str] = []
        self.unsupported_types: dict[str, list[str]] = {}

    def warn(self, message: str, category: type[ImportWarning] = ImportWarning) -> None:
        self.warnings.append(message)
        self.logger.warning("%s: %s", category.__name__, message)

    def skip_table(self, name: str, reason: str, category: type[ImportWarning] = ImportWarning) -> None:
        self.skipped_tables.append(name)
        self.warn(f"Skipping table '{name}': {reason}", category)

    def skip_index(self, skipped: SkippedIndex) -> None:
        self.skipped_indexes.append(skipped)
        self.logger.info("Skipping index %s on %s: %s", skipped.name, skipped.table, skipped.reason)

    def table_created(self, name: str) -> None:
        self.tables.append(name)
        self.rows_copied.setdefault(name, 0)

    def rows_committed(self, table: str, count: int) -> None:
        self.rows_copied[table] = self.rows_copied.get(table, 0) + count

    def index_created(self, name: str) -> None:
        self.indexes_created.append(name)

    def unique_column(self, qualified: str) -> None:
        self.unique_columns_added.append(qualified)

    def unsupported_type(self, conversion: str, columns: list[str]) -> None:
        self.unsupported_types.setdefault(conversion, []).extend(columns)

    def finalize(
        self,
        phase: ImportPhase,
        *,
        error: BaseException | None = None,
        message: str = "",
        cleanup_requested: bool = False,
    ) -> ImportReport:
        return ImportReport(
            source_path=self.source_path,
            target_path=self.target_path,
            source_kind=self.source_kind,
            phase=phase,
            identifier_case=self.identifier_case,
            table_name_map=dict(self.table_name_map),
            column_name_map={k: dict(v) for k, v in self.column_name_map.items()},
            tables=list(self.tables),
            rows_copied=dict(self.rows_copied),
            indexes_created=list(self.indexes_created),
            unique_columns_added=list(self.unique_columns_added),
            skipped_indexes=list(self.skipped_indexes),
            skipped_tables=list(self.skipped_tables),
            warnings=list(self.warnings),
            unsupported_types={k: list(v) for k, v in self.unsupported_types.items()},
            elapsed=max(0.0, self._clock() - self._started),
            message=message,
            error=str(error) if error is not None else None,
            error_type=type(error).__name__ if error is not None else None,
            cleanup_requested=cleanup_requested,
        )


def report_to_dict(report: ImportReport) -> dict[str, Any]:
    return {
        "source_path": report.source_path,
        "target_path": report.target_path,
        "source_kind": report.source_kind,
        "phase": report.phase.value,
        "identifier_case": report.identifier_case,
        "table_name_map": dict(report.table_name_map),
        "column_name_map": {k: dict(v) for k, v in report.column_name_map.items()},
        "tables": list(report.tables),
        "rows_copied": dict(report.rows_copied),
        "total_rows": report.total_rows,
        "indexes_created": list(report.indexes_created),
        "unique_columns_added": list(report.unique_columns_added),
        "skipped_indexes": [dataclasses.asdict(s) for s in report.skipped_indexes],
        "skipped_tables": list(report.skipped_tables),
        "warnings": list(report.warnings),
        "unsupported_types": dict(report.unsupported_types),
        "elapsed": round(report.elapsed, 3),
        "message": report.message,
        "error": report.error,
        "error_type": report.error_type,
        "cleanup_requested": report.cleanup_requested,
    }


def write_report_json(report: ImportReport, path: str) -> None:
    payload = json.dumps(report_to_dict(report), ensure_ascii=False, indent=2, sort_keys=True)
    if path == "-":
        print(payload)
        return
    with open(path, "w", encoding="utf-8") as f:
        f.write(payload)
        f.write("\n")
