from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from .config import ImportOptions
from .detect import display_name
from .importer import CancellationToken, ImportHandle, import_path
from .models import ImportPhase, ImportProgress
from .report import ImportReport, write_report_json
from .sources import SourceKind
from .target import ENGINES

EXIT_CODES = {
    ImportPhase.COMPLETE: 0,
    ImportPhase.FAILED: 1,
    ImportPhase.CANCELLED: 130,
}

_MAX_WARNINGS_SHOWN = 20


class RichProgressSink:
    """Drives rich progress bars from import snapshots."""

    def __init__(self, progress):
        self.progress = progress
        self._analyze_task = None
        self._schema_task = None
        self._index_task = None
        self._copy_tasks: dict[str, int] = {}

    def __call__(self, snap: ImportProgress) -> None:
        p = self.progress
        if snap.phase is ImportPhase.ANALYZING:
            if self._analyze_task is None:
                self._analyze_task = p.add_task("Analyze source", total=None)
            return
        if self._analyze_task is not None:
            p.update(self._analyze_task, total=1, completed=1)

        if snap.phase is ImportPhase.CREATING_SCHEMA:
            if self._schema_task is None:
                self._schema_task = p.add_task("Create schema", total=snap.tables_total)
            p.update(self._schema_task, completed=snap.tables_completed)
        elif snap.phase is ImportPhase.COPYING_DATA and snap.current_table:
            task_id = self._copy_tasks.get(snap.current_table)
            if task_id is None:
                task_id = p.add_task(f"Copy {snap.current_table}", total=snap.rows_total or None)
                self._copy_tasks[snap.current_table] = task_id
            total = max(snap.rows_total, snap.rows_completed)
            p.update(task_id, completed=snap.rows_completed, total=total or None)
        elif snap.phase is ImportPhase.CREATING_INDEXES:
            if self._index_task is None:
                self._index_task = p.add_task("Create indexes", total=snap.indexes_total)
            p.update(self._index_task, completed=snap.indexes_completed)


def _make_progress():
    from rich.progress import (
        BarColumn,
        Progress,
        SpinnerColumn,
        TaskProgressColumn,
        TextColumn,
        TimeElapsedColumn,
        TimeRemainingColumn,
    )

    return Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}[/bold]"),
        BarColumn(bar_width=None),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
        transient=False,
    )


def print_summary(console, report: ImportReport) -> None:
    from rich.panel import Panel
    from rich.table import Table

    elapsed = report.elapsed
    elapsed_str = f"{int(elapsed // 60)}:{int(elapsed % 60):02d}"

    summary = Table.grid(padding=(0, 1))
    summary.add_column(justify="right", style="bold")
    summary.add_column()
    summary.add_row("From", report.source_path)
    summary.add_row("To", report.target_path)
    summary.add_row("Status", report.phase.value)
    summary.add_row("Tables", str(len(report.tables)))
    summary.add_row("Rows", str(report.total_rows))
    summary.add_row("Indexes", str(len(report.indexes_created)))
    summary.add_row("Unique cols", str(len(report.unique_columns_added)))
    summary.add_row("Elapsed", elapsed_str)

    kind = SourceKind(report.source_kind) if report.source_kind else None
    style = {"complete": "green", "failed": "red"}.get(report.phase.value, "yellow")
    console.print(Panel(summary, title=f"{display_name(kind)} → DecentDB", border_style=style))

    if report.skipped_tables:
        skipped_tbl = Table(title="Skipped Tables", show_lines=False)
        skipped_tbl.add_column("Table", style="cyan")
        for name in report.skipped_tables:
            skipped_tbl.add_row(name)
        console.print(skipped_tbl)

    if report.skipped_indexes:
        skipped_idx_tbl = Table(title="Skipped Indexes/Constraints", show_lines=False)
        skipped_idx_tbl.add_column("Table", style="cyan")
        skipped_idx_tbl.add_column("Name")
        skipped_idx_tbl.add_column("Reason", style="yellow")
        for s in report.skipped_indexes:
            skipped_idx_tbl.add_row(s.table, s.name, s.reason)
        console.print(skipped_idx_tbl)

    if report.unsupported_types:
        types_tbl = Table(title="Type Conversions (Informational)", show_lines=False)
        types_tbl.add_column("Source → DecentDB", style="cyan")
        types_tbl.add_column("Columns")
        for type_conv, cols in report.unsupported_types.items():
            types_tbl.add_row(type_conv, f"{len(cols)} columns")
        console.print(types_tbl)

    if report.warnings:
        warn_tbl = Table(title="Warnings", show_lines=False)
        warn_tbl.add_column("Message", style="yellow")
        for w in report.warnings[:_MAX_WARNINGS_SHOWN]:
            warn_tbl.add_row(w)
        if len(report.warnings) > _MAX_WARNINGS_SHOWN:
            warn_tbl.add_row(f"... and {len(report.warnings) - _MAX_WARNINGS_SHOWN} more warnings")
        console.print(warn_tbl)

    if report.phase is ImportPhase.COMPLETE:
        console.print(f"[green]Converted[/green] {report.source_path} -> {report.target_path}")
    elif report.phase is ImportPhase.CANCELLED:
        console.print(f"[yellow]Cancelled[/yellow] {report.source_path}; partial output removed")
    else:
        console.print(f"[red]Failed[/red] {report.error_type}: {report.error}")


def _configure_logging(verbose: bool, console) -> None:
    from rich.logging import RichHandler

    handler = RichHandler(console=console, show_path=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root = logging.getLogger("decentdb_import")
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.ERROR)
    root.propagate = False


def _wait(handle: ImportHandle) -> ImportReport:
    try:
        while not handle.wait(0.2):
            pass
    except KeyboardInterrupt:
        handle.cancel()
    return handle.result()


def main(argv: Sequence[str] | None = None) -> int:
    p = argparse.ArgumentParser(
        description="Import a SQLite database, MySQL dump or PostgreSQL dump into a DecentDB database file"
    )
    p.add_argument("source_path", help="Path to the source file, dump directory or archive")
    p.add_argument("target_path", help="Path to the output database file")
    p.add_argument(
        "--format",
        choices=["auto"] + [k.value for k in SourceKind],
        default="auto",
        help="Source format (default: detect)",
    )
    p.add_argument("--engine", choices=ENGINES, default="decentdb", help="Target database engine")
    p.add_argument("--overwrite", action="store_true", help="Overwrite destination if it exists")
    p.add_argument("--no-progress", action="store_true", help="Disable rich progress output")
    p.add_argument(
        "--preserve-case",
        action="store_true",
        help="Preserve original identifier casing (requires quoting in SQL)",
    )
    p.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Rows per target transaction (default 5000, or DECENTDB_IMPORT_BATCH_SIZE)",
    )
    p.add_argument("--field-delimiter", default=None, help="Override the dump's field terminator")
    p.add_argument("--escape-char", default=None, help="Override the dump's escape character")
    p.add_argument(
        "--report-json",
        default=None,
        help="Write a JSON import report to this path (use '-' for stdout)",
    )
    p.add_argument(
        "--cache-mb",
        type=int,
        default=None,
        help="Override DecentDB cache size in MB (e.g. 256)",
    )
    p.add_argument(
        "--cache-pages",
        type=int,
        default=None,
        help="Override DecentDB cache size in pages (DefaultPageSize pages)",
    )
    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose output for debugging",
    )
    args = p.parse_args(argv)

    try:
        options = ImportOptions.from_env(
            batch_size=args.batch_size,
            identifier_case="preserve" if args.preserve_case else None,
            field_delimiter=args.field_delimiter,
            escape_char=args.escape_char,
        )
    except ValueError as exc:
        p.error(str(exc))

    from rich.console import Console

    console = Console(stderr=True)
    _configure_logging(bool(args.verbose), console)

    progress = None
    sink = None
    if not args.no_progress:
        progress = _make_progress()
        sink = RichProgressSink(progress)

    token = CancellationToken()
    handle = ImportHandle(
        token,
        lambda: import_path(
            args.source_path,
            args.target_path,
            kind=None if args.format == "auto" else args.format,
            engine=args.engine,
            overwrite=bool(args.overwrite),
            options=options,
            progress=sink,
            cancel=token,
            cache_mb=args.cache_mb,
            cache_pages=args.cache_pages,
        ),
    )

    if progress is not None:
        progress.start()
    try:
        handle.start()
        report = _wait(handle)
    finally:
        # Stop progress rendering before printing summary tables.
        if progress is not None:
            progress.stop()

    if progress is not None:
        print_summary(console, report)
    elif report.phase is not ImportPhase.COMPLETE:
        print(f"{report.phase.value}: {report.message}", file=sys.stderr)

    if args.report_json:
        write_report_json(report, str(args.report_json))
    return EXIT_CODES[report.phase]


if __name__ == "__main__":
    raise SystemExit(main())
