"""Small lexical helpers shared by the dump-file DDL parsers."""

from __future__ import annotations

import re

from ..errors import SchemaParseError

_QUOTES = "'\"`"
_STRING_RE = re.compile(r"'(?:[^'\\]|\\.|'')*'")


def paren_body(text: str, open_idx: int) -> tuple[str, int]:
    """Return the text inside the parentheses opening at ``open_idx`` and the
    index just past the closing parenthesis. Quoted sections are skipped."""
    if open_idx >= len(text) or text[open_idx] != "(":
        raise SchemaParseError(f"Expected '(' in: {text[:80]}")
    depth = 0
    quote = None
    i = open_idx
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == "\\" and quote == "'":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in _QUOTES:
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return text[open_idx + 1 : i], i + 1
        i += 1
    raise SchemaParseError(f"Unbalanced parentheses in: {text[:80]}")


def split_top_level(text: str, sep: str = ",") -> list[str]:
    parts: list[str] = []
    depth = 0
    quote = None
    start = 0
    i = 0
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == "\\" and quote == "'":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in _QUOTES:
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == sep and depth == 0:
            parts.append(text[start:i].strip())
            start = i + 1
        i += 1
    tail = text[start:].strip()
    if tail:
        parts.append(tail)
    return parts


def mask_strings(text: str) -> str:
    """Blank out the contents of single-quoted literals so keyword searches
    do not match inside comments or default values. Offsets are preserved."""
    return _STRING_RE.sub(lambda m: "'" + " " * (len(m.group()) - 2) + "'", text)


def read_literal(text: str, pos: int) -> tuple[str, int]:
    """Return the raw clause starting at ``pos``: a quoted literal, a
    parenthesized expression or a bare token."""
    if pos < len(text) and text[pos] == "'":
        m = _STRING_RE.match(text, pos)
        if m:
            return m.group(), m.end()
    if pos < len(text) and text[pos] == "(":
        body, end = paren_body(text, pos)
        return "(" + body + ")", end
    m = re.compile(r"[^\s,]+").match(text, pos)
    if not m:
        return "", pos
    return m.group(), m.end()


def unquote_ident(raw: str) -> str:
    s = raw.strip()
    if len(s) >= 2 and s[0] == s[-1] and s[0] in "`\"":
        q = s[0]
        return s[1:-1].replace(q + q, q)
    return s
