"""Typed value conversion into DecentDB primitive kinds.

Every converter returns ``(value, ok)``. When ``ok`` is False the value could
not be represented in the requested kind and is handed back as text (or the
original object) so the row can still be written.
"""

from __future__ import annotations

import enum
import re
from typing import Any


class TargetKind(enum.Enum):
    BOOL = "BOOL"
    INT64 = "INT64"
    FLOAT64 = "FLOAT64"
    TEXT = "TEXT"
    DECIMAL = "DECIMAL"
    BLOB = "BLOB"

    @property
    def ddl_type(self) -> str:
        # Decimals are stored as text to preserve precision.
        if self is TargetKind.DECIMAL:
            return "TEXT"
        return self.value


TRUE_TOKENS = frozenset({"1", "t", "true", "y", "yes", "on"})
FALSE_TOKENS = frozenset({"0", "f", "false", "n", "no", "off"})

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

_INT_RE = re.compile(r"[+-]?[0-9]+\Z")
_FLOAT_RE = re.compile(r"[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?\Z")
_FLOAT_SPECIAL = frozenset({"nan", "+nan", "-nan", "inf", "+inf", "-inf", "infinity", "+infinity", "-infinity"})
_HEX_RE = re.compile(r"(?:[0-9a-fA-F]{2})*\Z")


def clean_text(text: str) -> str:
    """Replace undecodable source bytes (carried as surrogates) with U+FFFD."""
    if text.isascii():
        return text
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return text.encode("utf-8", "surrogateescape").decode("utf-8", "replace")
    return text


def parse_bool(text: str) -> bool | None:
    token = text.strip().lower()
    if token in TRUE_TOKENS:
        return True
    if token in FALSE_TOKENS:
        return False
    return None


def parse_int64(text: str) -> int | None:
    token = text.strip()
    if not _INT_RE.match(token):
        return None
    digits = token.lstrip("+-").lstrip("0") or "0"
    # INT64 has at most 19 significant digits.
    if len(digits) > 19:
        return None
    value = -int(digits) if token.startswith("-") else int(digits)
    if value < INT64_MIN or value > INT64_MAX:
        return None
    return value


def parse_float64(text: str) -> float | None:
    token = text.strip()
    if _FLOAT_RE.match(token) or token.lower() in _FLOAT_SPECIAL:
        return float(token)
    return None


def convert_text(text: str, kind: TargetKind) -> tuple[Any, bool]:
    """Convert one decoded textual field to ``kind``."""
    if kind is TargetKind.BOOL:
        b = parse_bool(text)
        return (b, True) if b is not None else (clean_text(text), False)
    if kind is TargetKind.INT64:
        i = parse_int64(text)
        return (i, True) if i is not None else (clean_text(text), False)
    if kind is TargetKind.FLOAT64:
        f = parse_float64(text)
        return (f, True) if f is not None else (clean_text(text), False)
    if kind is TargetKind.BLOB:
        if text.startswith("\\x") and _HEX_RE.match(text, 2):
            return bytes.fromhex(text[2:]), True
        return text.encode("utf-8", "surrogateescape"), True
    return clean_text(text), True


def adapt_value(value: Any, kind: TargetKind) -> tuple[Any, bool]:
    """Adapt a native driver value (or raw text/bytes) to ``kind``."""
    if value is None:
        return None, True
    if isinstance(value, str):
        return convert_text(value, kind)
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        if kind is TargetKind.BLOB:
            return raw, True
        if kind in (TargetKind.TEXT, TargetKind.DECIMAL):
            return raw.decode("utf-8", "replace"), True
        return raw, False

    if isinstance(value, bool):
        if kind is TargetKind.BOOL:
            return value, True
        if kind is TargetKind.INT64:
            return int(value), True
        if kind is TargetKind.FLOAT64:
            return float(value), True
        return ("1" if value else "0"), True

    if isinstance(value, int):
        if kind is TargetKind.BOOL:
            if value in (0, 1):
                return bool(value), True
            return value, False
        if kind is TargetKind.INT64:
            if INT64_MIN <= value <= INT64_MAX:
                return value, True
            return str(value), False
        if kind is TargetKind.FLOAT64:
            return float(value), True
        return str(value), True

    if isinstance(value, float):
        if kind is TargetKind.FLOAT64:
            return value, True
        if kind is TargetKind.INT64:
            if value.is_integer() and INT64_MIN <= value <= INT64_MAX:
                return int(value), True
            return value, False
        if kind is TargetKind.BOOL:
            return value, False
        return repr(value), True

    return convert_text(str(value), kind)
