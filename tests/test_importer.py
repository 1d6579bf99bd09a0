import threading

import pytest

from conftest import FakeSource, RecordingTarget, make_table
from decentdb_import.config import ImportOptions
from decentdb_import.errors import ConversionError
from decentdb_import.importer import CancellationToken, ImportHandle, ImportOrchestrator, run_import, start_import
from decentdb_import.models import ImportPhase, SourceIndex


def _rows(start, count):
    return [(i, f"v{i}") for i in range(start, start + count)]


def _source(**kwargs):
    table = make_table("items", "id", "label", indexes=(SourceIndex("items_label", "items", ("label",), unique=False),))
    data = {"items": [_rows(0, 50), _rows(50, 50)]}
    return FakeSource([table], data, **kwargs)


def test_complete_run_walks_every_phase():
    snapshots = []
    target = RecordingTarget()
    report = run_import(_source(), target, options=ImportOptions(batch_size=10), progress=snapshots.append)

    assert report.phase is ImportPhase.COMPLETE
    assert report.succeeded
    assert report.total_rows == 100
    assert report.rows_copied == {"items": 100}
    assert report.tables == ["items"]
    assert report.indexes_created == ["items_label"]
    assert report.message == "Imported 1 tables, 100 rows, 1 indexes"
    assert not report.cleanup_requested
    assert target.cleanups == 0
    assert len(target.committed) == 10
    assert target.rows[0] == [0, "v0"]

    phases = []
    for s in snapshots:
        if not phases or phases[-1] is not s.phase:
            phases.append(s.phase)
    assert phases == [
        ImportPhase.ANALYZING,
        ImportPhase.CREATING_SCHEMA,
        ImportPhase.COPYING_DATA,
        ImportPhase.CREATING_INDEXES,
        ImportPhase.COMPLETE,
    ]
    copied = [s.rows_completed for s in snapshots if s.phase is ImportPhase.COPYING_DATA]
    assert copied == sorted(copied)
    assert snapshots[-1].indexes_completed == 1


def test_source_warnings_and_skipped_tables_are_reported():
    report = run_import(
        _source(warnings=["Skipping table 'shop.bad': Cannot read metadata"], skipped=["shop.bad"]),
        RecordingTarget(),
    )
    assert report.phase is ImportPhase.COMPLETE
    assert report.warnings[0] == "Skipping table 'shop.bad': Cannot read metadata"
    assert report.skipped_tables == ["shop.bad"]


def test_name_collision_skips_the_later_table():
    source = FakeSource([make_table("Users", "id"), make_table("users", "id")])
    report = run_import(source, RecordingTarget())
    assert report.phase is ImportPhase.COMPLETE
    assert report.tables == ["users"]
    assert report.skipped_tables == ["users"]
    assert report.table_name_map == {"Users": "users"}


def test_cancellation_stops_at_batch_boundary_and_requests_cleanup():
    token = CancellationToken()

    def sink(progress):
        if progress.rows_completed >= 30:
            token.cancel()

    target = RecordingTarget()
    report = run_import(_source(), target, options=ImportOptions(batch_size=10), progress=sink, cancel=token)

    assert report.phase is ImportPhase.CANCELLED
    assert report.total_rows == 30
    assert report.cleanup_requested
    assert target.cleanups == 1
    assert target.indexes == []


def test_custom_cleanup_is_called_once():
    token = CancellationToken()
    token.cancel()
    calls = []
    target = RecordingTarget()
    report = run_import(_source(), target, cancel=token, cleanup=lambda: calls.append(1))
    assert report.phase is ImportPhase.CANCELLED
    assert calls == [1]
    assert target.cleanups == 0
    assert target.tables == []


def test_target_failure_rolls_back_and_fails_the_run():
    target = RecordingTarget(fail_on_insert_at=3)
    orchestrator = ImportOrchestrator(_source(), target, options=ImportOptions(batch_size=2))
    report = orchestrator.run()

    assert report.phase is ImportPhase.FAILED
    assert report.error_type == "TargetWriteError"
    assert "disk full" in report.error
    assert report.message.startswith("Import failed: Writing rows to items failed")
    assert report.rows_copied == {"items": 2}
    assert target.rollbacks == 1
    assert not report.cleanup_requested
    assert orchestrator.error is not None


def test_unreadable_chunk_is_a_table_warning():
    table = make_table("logs", "id", "msg")
    source = FakeSource([table], {"logs": [[(1, "a"), (2, "b"), OSError("truncated frame")]]})
    target = RecordingTarget()
    report = run_import(source, target, options=ImportOptions(batch_size=1))

    assert report.phase is ImportPhase.COMPLETE
    assert report.rows_copied == {"logs": 2}
    assert any(w.startswith("Table 'logs': truncated frame") for w in report.warnings)
    assert "copy stopped after 2 rows" in report.warnings[-1]


def test_failing_progress_sink_fails_the_run():
    def sink(progress):
        if progress.phase is ImportPhase.CREATING_SCHEMA:
            raise RuntimeError("sink exploded")

    report = run_import(_source(), RecordingTarget(), progress=sink)
    assert report.phase is ImportPhase.FAILED
    assert report.error == "sink exploded"


def test_index_failure_is_recorded_as_skipped():
    report = run_import(_source(), RecordingTarget(fail_on_index=True))
    assert report.phase is ImportPhase.COMPLETE
    assert report.indexes_created == []
    assert [s.name for s in report.skipped_indexes] == ["items_label"]
    assert report.skipped_indexes[0].reason.startswith("index creation failed")


def test_conversion_failures_are_warned_and_kept_as_text():
    table = make_table("t", "id", "label")
    source = FakeSource([table], {"t": [[("x", "a"), (2, "b")]]})
    target = RecordingTarget()
    report = run_import(source, target)
    assert report.phase is ImportPhase.COMPLETE
    assert target.rows == [["x", "a"], [2, "b"]]
    assert len(report.warnings) == 1


def test_start_import_runs_in_background():
    handle = start_import(_source(), RecordingTarget(), options=ImportOptions(batch_size=25))
    report = handle.result(timeout=10)
    assert handle.done
    assert report.phase is ImportPhase.COMPLETE
    assert report.total_rows == 100


def test_handle_cancel_from_another_thread():
    reached = threading.Event()
    release = threading.Event()

    def sink(progress):
        if progress.phase is ImportPhase.COPYING_DATA and progress.rows_completed == 10 and not reached.is_set():
            reached.set()
            release.wait(10)

    target = RecordingTarget()
    handle = start_import(_source(), target, options=ImportOptions(batch_size=10), progress=sink)
    assert reached.wait(10)
    handle.cancel()
    release.set()
    report = handle.result(timeout=10)

    assert report.phase is ImportPhase.CANCELLED
    assert report.total_rows == 10
    assert target.cleanups == 1


def test_handle_result_reraises_and_rejects_missing_report():
    def boom():
        raise ValueError("bad")

    with pytest.raises(ValueError, match="bad"):
        ImportHandle(CancellationToken(), boom).start().result(timeout=10)
    with pytest.raises(ConversionError, match="without a report"):
        ImportHandle(CancellationToken(), lambda: None).start().result(timeout=10)
