from decentdb_import.codec import TargetKind
from decentdb_import.rows import (
    MYSQL_TSV,
    PG_COPY,
    RowConverter,
    TextFormat,
    TsvRowDecoder,
    decode_fields,
    encode_field,
    encode_row,
    split_fields,
    unescape_field,
)


def test_split_keeps_escaped_delimiters_inside_field():
    assert split_fields("a\\\tb\tc") == ["a\\\tb", "c"]
    assert split_fields("x\t\ty") == ["x", "", "y"]


def test_unescape_standard_sequences():
    assert unescape_field("a\\tb") == "a\tb"
    assert unescape_field("line\\nnext\\r") == "line\nnext\r"
    assert unescape_field("nul\\0") == "nul\0"
    assert unescape_field("back\\\\slash") == "back\\slash"


def test_unknown_escape_passes_character_through():
    assert unescape_field("\\q\\'") == "q'"


def test_trailing_escape_is_literal():
    assert unescape_field("end\\") == "end\\"


def test_postgres_copy_escapes():
    assert unescape_field("\\101\\x42\\b\\f\\v", PG_COPY) == "AB\b\f\v"
    assert unescape_field("\\7z", PG_COPY) == "\x07z"
    # Without the COPY flavour these are plain pass-through escapes.
    assert unescape_field("\\b", MYSQL_TSV) == "b"


def test_null_sentinel_only_on_whole_raw_field():
    assert decode_fields("1\t\\N\tx") == ["1", None, "x"]
    assert decode_fields("\\\\N") == ["\\N"]
    assert decode_fields("") == [""]


def test_null_marker_without_escape_char():
    fmt = TextFormat(escape="")
    assert fmt.null_marker == "NULL"
    assert decode_fields("a\tNULL", fmt) == ["a", None]


def test_encode_decode_round_trip():
    values = ["tab\there", "new\nline", "cr\rhere", "nul\0byte", "back\\slash", "\\N", "", None, "plain"]
    line = encode_row(values)
    assert "\n" not in line
    assert decode_fields(line) == values


def test_round_trip_with_custom_delimiter():
    fmt = TextFormat(delimiter=",")
    values = ["a,b", "c\td", None]
    assert decode_fields(encode_row(values, fmt), fmt) == values


def test_encode_field_null():
    assert encode_field(None) == "\\N"
    assert encode_field(None, TextFormat(escape="")) == "NULL"


def test_null_sentinel_is_none_for_every_kind():
    kinds = [TargetKind.INT64, TargetKind.BOOL, TargetKind.FLOAT64, TargetKind.TEXT, TargetKind.BLOB, TargetKind.DECIMAL]
    conv = RowConverter("t", [f"c{i}" for i in range(len(kinds))], kinds)
    decoder = TsvRowDecoder(conv)
    assert list(decoder.decode("\t".join(["\\N"] * len(kinds)))) == [[None] * len(kinds)]


def test_rows_are_padded_and_truncated():
    conv = RowConverter("t", ["a", "b", "c"], [TargetKind.INT64] * 3)
    decoder = TsvRowDecoder(conv)
    assert list(decoder.decode("1\t2")) == [[1, 2, None]]
    assert list(decoder.decode("1\t2\t3\t4")) == [[1, 2, 3]]


def test_blank_line_is_a_row_only_for_single_column_tables():
    wide = TsvRowDecoder(RowConverter("t", ["a", "b"], [TargetKind.TEXT] * 2))
    assert list(wide.decode("")) == []
    narrow = TsvRowDecoder(RowConverter("t", ["a"], [TargetKind.TEXT]))
    assert list(narrow.decode("")) == [[""]]


def test_conversion_failure_warns_once_per_table():
    messages = []
    conv = RowConverter("orders", ["qty"], [TargetKind.INT64], messages.append)
    decoder = TsvRowDecoder(conv)
    rows = [r for line in ["x", "5", "y"] for r in decoder.decode(line)]
    assert rows == [["x"], [5], ["y"]]
    assert conv.failures == 2
    assert len(messages) == 1
    assert "orders" in messages[0] and "qty" in messages[0]
