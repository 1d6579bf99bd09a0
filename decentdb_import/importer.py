"""The import state machine.

A run moves through ANALYZING, CREATING_SCHEMA, COPYING_DATA and
CREATING_INDEXES, and ends in COMPLETE, FAILED or CANCELLED. Table-scoped
problems are recorded as warnings and the run carries on; a destination
failure ends the run. Every outcome is returned as an :class:`ImportReport`.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from typing import Any, Callable

from .archive import extract
from .config import ImportOptions
from .errors import (
    ChunkReadError,
    ChunkReadWarning,
    ConversionError,
    ImportCancelled,
    RowConversionWarning,
    SchemaParseWarning,
    TargetWriteError,
    UnsupportedConstructWarning,
)
from .models import ImportPhase, ImportProgress, SkippedIndex
from .report import ImportReport, ReportBuilder
from .sources import ImportSource, SourceKind, open_source
from .synth import SynthesizedTable, build_name_maps, synthesize
from .target import TargetWriter, open_target

ProgressSink = Callable[[ImportProgress], None]


class CancellationToken:
    """Caller-owned cancellation flag, safe to set from another thread."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ImportCancelled("Import cancelled")


class ImportOrchestrator:
    def __init__(
        self,
        source: ImportSource,
        target: TargetWriter,
        *,
        options: ImportOptions | None = None,
        progress: ProgressSink | None = None,
        cancel: CancellationToken | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
        source_path: str | None = None,
        target_path: str | None = None,
    ):
        self.source = source
        self.target = target
        self.options = options or ImportOptions()
        self.progress = progress
        self.cancel = cancel or CancellationToken()
        self.logger = logger or logging.getLogger("decentdb_import.importer")
        self.error: BaseException | None = None
        self._report = ReportBuilder(
            source_path or source.path,
            target_path or getattr(target, "path", None) or "",
            source_kind=source.kind.value,
            identifier_case=self.options.identifier_case,
            logger=self.logger,
            clock=clock,
        )
        self._snapshot = ImportProgress(phase=ImportPhase.ANALYZING)

    @property
    def phase(self) -> ImportPhase:
        return self._snapshot.phase

    def _emit(self, **changes: Any) -> None:
        self._snapshot = dataclasses.replace(self._snapshot, **changes)
        if self.progress is not None:
            self.progress(self._snapshot)

    def _enter(self, phase: ImportPhase, message: str, **changes: Any) -> None:
        self.logger.info("%s", message)
        self._emit(phase=phase, message=message, **changes)

    def run(self) -> ImportReport:
        try:
            tables = self._analyze()
            self.cancel.raise_if_cancelled()
            self._create_schema(tables)
            self._copy_data(tables)
            self._create_indexes(tables)
        except ImportCancelled:
            self.logger.warning("Import cancelled during %s", self.phase.value)
            return self._finish(ImportPhase.CANCELLED, message="Import cancelled", cleanup_requested=True)
        except Exception as exc:
            self.error = exc
            self.logger.error("Import failed during %s: %s", self.phase.value, exc)
            return self._finish(ImportPhase.FAILED, error=exc, message=f"Import failed: {exc}")

        report = self._report
        message = (
            f"Imported {len(report.tables)} tables, {sum(report.rows_copied.values())} rows, "
            f"{len(report.indexes_created)} indexes"
        )
        return self._finish(ImportPhase.COMPLETE, message=message)

    def _finish(self, phase: ImportPhase, **kwargs: Any) -> ImportReport:
        report = self._report.finalize(phase, **kwargs)
        try:
            self._emit(phase=phase, message=report.message)
        except Exception as exc:
            self.logger.debug("Progress sink failed on the final snapshot: %s", exc)
        return report

    def _analyze(self) -> list[SynthesizedTable]:
        self._enter(ImportPhase.ANALYZING, f"Analyzing {self.source.path}")
        intro = self.source.introspect()
        for w in intro.warnings:
            self._report.warn(w, SchemaParseWarning)
        self._report.skipped_tables.extend(intro.skipped_tables)

        names, tables, dropped = build_name_maps(intro.tables, identifier_case=self.options.identifier_case)
        for name, reason in dropped:
            self._report.skip_table(name, reason, SchemaParseWarning)
        self._report.table_name_map = dict(names.table_name_map)
        self._report.column_name_map = {k: dict(v) for k, v in names.column_name_map.items()}

        out: list[SynthesizedTable] = []
        for t in tables:
            st = synthesize(t, self.source.dialect, names)
            for w in st.warnings:
                self._report.warn(w, UnsupportedConstructWarning)
            for s in st.skipped_indexes:
                self._report.skip_index(s)
            for conversion, columns in st.unsupported_types.items():
                self._report.unsupported_type(conversion, columns)
            out.append(st)
        self.logger.debug("Synthesized %d tables", len(out))
        return out

    def _create_schema(self, tables: list[SynthesizedTable]) -> None:
        self._enter(
            ImportPhase.CREATING_SCHEMA,
            "Creating schema",
            tables_total=len(tables),
            tables_completed=0,
        )
        for i, st in enumerate(tables, start=1):
            self.cancel.raise_if_cancelled()
            try:
                self.target.create_table(st.create_sql)
            except Exception as exc:
                raise TargetWriteError(f"Cannot create table {st.target_name}: {exc}") from exc
            self._report.table_created(st.target_name)
            for qualified in st.unique_columns:
                self._report.unique_column(qualified)
            self._emit(tables_completed=i, current_table=st.target_name, message=f"Created {st.target_name}")

    def _copy_data(self, tables: list[SynthesizedTable]) -> None:
        self._enter(ImportPhase.COPYING_DATA, "Copying data", tables_completed=0, current_table=None)
        for i, st in enumerate(tables, start=1):
            self.cancel.raise_if_cancelled()
            self._copy_table(st)
            self._emit(tables_completed=i)

    def _flush(self, st: SynthesizedTable, batch: list[list[Any]]) -> None:
        self.cancel.raise_if_cancelled()
        try:
            self.target.begin_batch(st.insert_sql)
            for row in batch:
                self.target.insert_row(row)
            self.target.commit_batch()
        except Exception as exc:
            try:
                self.target.rollback_batch()
            except Exception as rb_exc:
                self.logger.debug("Rollback after failed batch also failed: %s", rb_exc)
            raise TargetWriteError(f"Writing rows to {st.target_name} failed: {exc}") from exc
        self._report.rows_committed(st.target_name, len(batch))
        done = self._report.rows_copied[st.target_name]
        self._emit(rows_completed=done, rows_total=max(self._snapshot.rows_total, done))

    def _copy_table(self, st: SynthesizedTable) -> None:
        table = st.source
        name = st.target_name
        self._emit(
            current_table=name,
            rows_completed=0,
            rows_total=table.row_count or 0,
            message=f"Copying {name}",
        )
        decoder = self.source.row_decoder(
            table, st.kinds, warn=lambda m: self._report.warn(m, RowConversionWarning)
        )
        batch_size = self.options.batch_size
        batch: list[list[Any]] = []
        try:
            for chunk in self.source.open_table_chunks(table):
                self.cancel.raise_if_cancelled()
                self.logger.debug("Reading %s", chunk.name)
                with chunk.records() as records:
                    for record in records:
                        for row in decoder.decode(record):
                            batch.append(row)
                            if len(batch) >= batch_size:
                                self._flush(st, batch)
                                batch = []
            if batch:
                self._flush(st, batch)
        except ChunkReadError as exc:
            # The rows read so far but not yet written are dropped with the table's remainder.
            self._report.warn(
                f"Table '{table.name}': {exc}; copy stopped after {self._report.rows_copied.get(name, 0)} rows",
                ChunkReadWarning,
            )
            return
        self.logger.info("Copied %d rows into %s", self._report.rows_copied.get(name, 0), name)

    def _create_indexes(self, tables: list[SynthesizedTable]) -> None:
        total = sum(len(st.indexes) for st in tables)
        self._enter(
            ImportPhase.CREATING_INDEXES,
            "Creating indexes",
            indexes_total=total,
            indexes_completed=0,
            current_table=None,
        )
        done = 0
        for st in tables:
            for idx in st.indexes:
                self.cancel.raise_if_cancelled()
                try:
                    self.target.create_index(idx.sql)
                except Exception as exc:
                    skipped = SkippedIndex(name=idx.source_name, table=st.source.name, reason=f"index creation failed: {exc}")
                    self._report.skip_index(skipped)
                    self._report.warn(
                        f"Table '{st.source.name}': index '{idx.source_name}' could not be created: {exc}",
                        UnsupportedConstructWarning,
                    )
                else:
                    self._report.index_created(idx.name)
                done += 1
                self._emit(indexes_completed=done, current_table=st.target_name, message=f"Index {idx.name}")


def run_import(
    source: ImportSource,
    target: TargetWriter,
    *,
    options: ImportOptions | None = None,
    progress: ProgressSink | None = None,
    cancel: CancellationToken | None = None,
    logger: logging.Logger | None = None,
    cleanup: Callable[[], None] | None = None,
    source_path: str | None = None,
    target_path: str | None = None,
) -> ImportReport:
    """Run one import and perform the post-run cleanup it asks for.

    ``cleanup`` defaults to ``target.delete_artifact`` and is called exactly
    once when the report has ``cleanup_requested`` set.
    """
    orchestrator = ImportOrchestrator(
        source,
        target,
        options=options,
        progress=progress,
        cancel=cancel,
        logger=logger,
        source_path=source_path,
        target_path=target_path,
    )
    report = orchestrator.run()
    if report.cleanup_requested:
        fn = cleanup if cleanup is not None else target.delete_artifact
        try:
            fn()
        except OSError as exc:
            orchestrator.logger.warning("Cleanup of %s failed: %s", report.target_path, exc)
    return report


class ImportHandle:
    """A run executing on a background thread."""

    def __init__(self, cancel: CancellationToken, target: Callable[[], ImportReport]):
        self.cancel_token = cancel
        self._report: ImportReport | None = None
        self._error: BaseException | None = None
        self._thread = threading.Thread(target=self._run, args=(target,), name="decentdb-import", daemon=True)

    def _run(self, target: Callable[[], ImportReport]) -> None:
        try:
            self._report = target()
        except BaseException as exc:
            self._error = exc

    def start(self) -> "ImportHandle":
        self._thread.start()
        return self

    def cancel(self) -> None:
        self.cancel_token.cancel()

    @property
    def done(self) -> bool:
        return not self._thread.is_alive()

    def wait(self, timeout: float | None = None) -> bool:
        self._thread.join(timeout)
        return self.done

    def result(self, timeout: float | None = None) -> ImportReport:
        if not self.wait(timeout):
            raise TimeoutError("Import still running")
        if self._error is not None:
            raise self._error
        if self._report is None:
            raise ConversionError("Import finished without a report")
        return self._report


def start_import(
    source: ImportSource,
    target: TargetWriter,
    *,
    cancel: CancellationToken | None = None,
    **kwargs: Any,
) -> ImportHandle:
    """Start :func:`run_import` on a background thread."""
    token = cancel or CancellationToken()
    return ImportHandle(token, lambda: run_import(source, target, cancel=token, **kwargs)).start()


def import_path(
    source_path: str,
    target_path: str,
    *,
    kind: SourceKind | str | None = None,
    engine: str = "decentdb",
    overwrite: bool = False,
    options: ImportOptions | None = None,
    progress: ProgressSink | None = None,
    cancel: CancellationToken | None = None,
    logger: logging.Logger | None = None,
    cache_mb: int | None = None,
    cache_pages: int | None = None,
) -> ImportReport:
    """Import the export at ``source_path`` into a new database at ``target_path``.

    Archives are extracted to a temporary directory first and the format is
    detected unless ``kind`` is given. Setup failures (unknown format, missing
    source, existing destination) come back as a FAILED report.
    """
    options = options or ImportOptions()
    log = logger or logging.getLogger("decentdb_import")
    extracted = None
    source = None
    target = None
    try:
        extracted = extract(source_path)
        source = open_source(extracted.path, kind, options=options, logger=log.getChild("source"))
        log.info("Importing %s as %s", source_path, source.kind.value)
        target = open_target(
            target_path,
            engine=engine,
            overwrite=overwrite,
            cache_mb=cache_mb,
            cache_pages=cache_pages,
            logger=log.getChild("target"),
        )
        return run_import(
            source,
            target,
            options=options,
            progress=progress,
            cancel=cancel,
            logger=log,
            source_path=source_path,
            target_path=target_path,
        )
    except Exception as exc:
        log.error("Import of %s failed: %s", source_path, exc)
        builder = ReportBuilder(
            source_path,
            target_path,
            source_kind=source.kind.value if source is not None else None,
            identifier_case=options.identifier_case,
            logger=log,
        )
        return builder.finalize(ImportPhase.FAILED, error=exc, message=f"Import failed: {exc}")
    finally:
        if target is not None:
            target.close()
        if source is not None:
            source.close()
        if extracted is not None:
            extracted.cleanup()
