import math

import pytest

from decentdb_import.codec import (
    TargetKind,
    adapt_value,
    clean_text,
    convert_text,
    parse_bool,
    parse_float64,
    parse_int64,
)


@pytest.mark.parametrize("token", ["1", "t", "TRUE", "yes", "On", " y "])
def test_parse_bool_true_tokens(token):
    assert parse_bool(token) is True


@pytest.mark.parametrize("token", ["0", "f", "False", "no", "OFF"])
def test_parse_bool_false_tokens(token):
    assert parse_bool(token) is False


def test_parse_bool_rejects_other_text():
    assert parse_bool("maybe") is None
    assert parse_bool("") is None


def test_parse_int64_range():
    assert parse_int64("-42") == -42
    assert parse_int64("+7") == 7
    assert parse_int64("9223372036854775807") == 2**63 - 1
    assert parse_int64("9223372036854775808") is None
    assert parse_int64("-9223372036854775809") is None
    assert parse_int64("1.0") is None
    assert parse_int64("1_000") is None
    assert parse_int64("-9223372036854775808") == -(2**63)
    assert parse_int64("000000000000000000000042") == 42


def test_overlong_integer_text_stays_text():
    token = "1" * 5000
    assert parse_int64(token) is None
    assert parse_int64("0" * 5000 + "7") == 7
    assert convert_text(token, TargetKind.INT64) == (token, False)


def test_parse_float64_is_locale_invariant():
    assert parse_float64("1e3") == 1000.0
    assert parse_float64("-.5") == -0.5
    assert parse_float64("1,5") is None
    assert math.isinf(parse_float64("-Infinity"))
    assert math.isnan(parse_float64("NaN"))


def test_convert_text_failure_keeps_text():
    assert convert_text("42", TargetKind.INT64) == (42, True)
    assert convert_text("4.2", TargetKind.INT64) == ("4.2", False)
    assert convert_text("abc", TargetKind.FLOAT64) == ("abc", False)
    assert convert_text("perhaps", TargetKind.BOOL) == ("perhaps", False)


def test_convert_text_decimal_keeps_exact_text():
    assert convert_text("12.50", TargetKind.DECIMAL) == ("12.50", True)
    assert TargetKind.DECIMAL.ddl_type == "TEXT"
    assert TargetKind.INT64.ddl_type == "INT64"


def test_convert_text_blob():
    assert convert_text("\\x00ff", TargetKind.BLOB) == (b"\x00\xff", True)
    assert convert_text("plain", TargetKind.BLOB) == (b"plain", True)


def test_clean_text_replaces_undecodable_bytes():
    raw = b"caf\xe9".decode("utf-8", "surrogateescape")
    assert clean_text(raw) == "caf�"
    assert clean_text("café") == "café"
    assert convert_text(raw, TargetKind.TEXT) == ("caf�", True)


def test_adapt_value_native_types():
    assert adapt_value(None, TargetKind.INT64) == (None, True)
    assert adapt_value(1, TargetKind.BOOL) == (True, True)
    assert adapt_value(0, TargetKind.BOOL) == (False, True)
    assert adapt_value(2, TargetKind.BOOL) == (2, False)
    assert adapt_value(True, TargetKind.INT64) == (1, True)
    assert adapt_value(3.0, TargetKind.INT64) == (3, True)
    assert adapt_value(3.5, TargetKind.INT64) == (3.5, False)
    assert adapt_value(1.5, TargetKind.TEXT) == ("1.5", True)
    assert adapt_value(7, TargetKind.FLOAT64) == (7.0, True)
    assert adapt_value(2**70, TargetKind.INT64) == (str(2**70), False)


def test_adapt_value_bytes():
    assert adapt_value(b"\x00\x01", TargetKind.BLOB) == (b"\x00\x01", True)
    assert adapt_value(memoryview(b"ab"), TargetKind.TEXT) == ("ab", True)
    assert adapt_value(b"\x01", TargetKind.INT64) == (b"\x01", False)


def test_adapt_value_text_goes_through_text_codec():
    assert adapt_value("10", TargetKind.INT64) == (10, True)
    assert adapt_value("t", TargetKind.BOOL) == (True, True)
