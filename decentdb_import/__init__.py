"""Import SQLite databases, MySQL dumps and PostgreSQL dumps into DecentDB."""

from .config import ImportOptions
from .errors import (
    ChunkReadError,
    ConversionError,
    ImportCancelled,
    SchemaParseError,
    SourceNotFoundError,
    TargetWriteError,
)
from .importer import (
    CancellationToken,
    ImportHandle,
    ImportOrchestrator,
    import_path,
    run_import,
    start_import,
)
from .models import ImportPhase, ImportProgress
from .report import ImportReport, report_to_dict, write_report_json
from .sources import SourceKind, open_source
from .target import DbApiTargetWriter, open_target

__version__ = "0.1.0"

__all__ = [
    "CancellationToken",
    "ChunkReadError",
    "ConversionError",
    "DbApiTargetWriter",
    "ImportCancelled",
    "ImportHandle",
    "ImportOptions",
    "ImportOrchestrator",
    "ImportPhase",
    "ImportProgress",
    "ImportReport",
    "SchemaParseError",
    "SourceKind",
    "SourceNotFoundError",
    "TargetWriteError",
    "import_path",
    "open_source",
    "open_target",
    "report_to_dict",
    "run_import",
    "start_import",
    "write_report_json",
]
