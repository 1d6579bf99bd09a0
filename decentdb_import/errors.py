from __future__ import annotations


class ConversionError(RuntimeError):
    pass


class SourceNotFoundError(ConversionError, FileNotFoundError):
    """The import source (file, directory or manifest) does not exist."""


class SchemaParseError(ConversionError):
    """A single table's DDL or metadata could not be parsed."""

    def __init__(self, message: str, *, table: str | None = None):
        super().__init__(message)
        self.table = table


class ChunkReadError(ConversionError):
    """A data chunk is missing or unreadable. Scoped to one table."""

    def __init__(self, message: str, *, table: str | None = None, path: str | None = None):
        super().__init__(message)
        self.table = table
        self.path = path


class TargetWriteError(ConversionError):
    """The destination rejected a write. Fatal for the run."""


class ImportCancelled(ConversionError):
    pass


class ImportWarning(UserWarning):
    pass


class SchemaParseWarning(ImportWarning):
    pass


class UnsupportedConstructWarning(ImportWarning):
    pass


class RowConversionWarning(ImportWarning):
    pass


class ChunkReadWarning(ImportWarning):
    pass
