from __future__ import annotations

import dataclasses
import os
from typing import Mapping

DEFAULT_BATCH_SIZE = 5_000

_IDENTIFIER_CASES = ("lower", "preserve")


@dataclasses.dataclass(frozen=True)
class ImportOptions:
    """Tunables for one import run.

    ``field_delimiter`` and ``escape_char`` override what a dump directory's
    per-table metadata declares. ``count_rows`` pre-scans data chunks so that
    progress snapshots carry per-table row totals.
    """

    batch_size: int = DEFAULT_BATCH_SIZE
    identifier_case: str = "lower"
    field_delimiter: str | None = None
    escape_char: str | None = None
    null_sentinel_char: str = "N"
    count_rows: bool = True

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.identifier_case not in _IDENTIFIER_CASES:
            raise ValueError(f"Unknown identifier_case: {self.identifier_case}")
        if self.field_delimiter is not None and len(self.field_delimiter) != 1:
            raise ValueError("field_delimiter must be a single character")
        if self.escape_char is not None and len(self.escape_char) > 1:
            raise ValueError("escape_char must be empty or a single character")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides) -> "ImportOptions":
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}

        batch = env.get("DECENTDB_IMPORT_BATCH_SIZE", "").strip()
        if batch:
            values["batch_size"] = int(batch)

        ident = env.get("DECENTDB_IMPORT_IDENTIFIER_CASE", "").strip().lower()
        if ident:
            values["identifier_case"] = ident

        count = env.get("DECENTDB_IMPORT_COUNT_ROWS", "").strip().lower()
        if count:
            values["count_rows"] = count not in {"0", "false", "no", "off"}

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
