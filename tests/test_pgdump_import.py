import gzip
import sqlite3

import pytest

from decentdb_import.importer import import_path
from decentdb_import.models import ImportPhase
from decentdb_import.sources import PgDumpSource


def _copy(*rows):
    return "\n".join("\t".join(r) for r in rows)


DUMP = "\n".join(
    [
        "--",
        "-- PostgreSQL database dump",
        "--",
        "",
        "SET statement_timeout = 0;",
        "SELECT pg_catalog.set_config('search_path', '', false);",
        "",
        "CREATE TABLE public.artists (",
        "    id integer NOT NULL,",
        "    name character varying(100) NOT NULL,",
        "    country text",
        ");",
        "",
        "CREATE TABLE public.albums (",
        "    id bigint NOT NULL,",
        "    artist_id integer,",
        "    title text NOT NULL,",
        "    price numeric(10,2),",
        "    released date,",
        "    is_live boolean DEFAULT false,",
        "    cover bytea",
        ");",
        "",
        "CREATE SEQUENCE public.artists_id_seq",
        "    AS integer",
        "    START WITH 1",
        "    CACHE 1;",
        "",
        "ALTER TABLE ONLY public.artists ALTER COLUMN id SET DEFAULT nextval('public.artists_id_seq'::regclass);",
        "",
        "COPY public.artists (id, name, country) FROM stdin;",
        _copy(["1", "Nina", "\\N"], ["2", "Tab\\tName", "SE"]),
        "\\.",
        "",
        "COPY public.albums (id, artist_id, title, price, released, is_live, cover) FROM stdin;",
        _copy(
            ["10", "1", "First", "9.99", "2001-02-03", "t", "\\\\x00ff"],
            ["11", "2", "Line\\nBreak", "\\N", "\\N", "f", "\\N"],
        ),
        "\\.",
        "",
        "ALTER TABLE ONLY public.artists",
        "    ADD CONSTRAINT artists_pkey PRIMARY KEY (id);",
        "ALTER TABLE ONLY public.albums",
        "    ADD CONSTRAINT albums_pkey PRIMARY KEY (id);",
        "ALTER TABLE ONLY public.artists",
        "    ADD CONSTRAINT artists_name_key UNIQUE (name);",
        "CREATE INDEX albums_artist_idx ON public.albums USING btree (artist_id);",
        "CREATE INDEX albums_lower_title ON public.albums USING btree (lower(title));",
        "CREATE INDEX albums_live ON public.albums USING btree (released) WHERE is_live;",
        "ALTER TABLE ONLY public.albums",
        "    ADD CONSTRAINT albums_artist_fk FOREIGN KEY (artist_id) REFERENCES public.artists(id);",
        "",
        "-- PostgreSQL database dump complete",
        "",
    ]
)


def _rows(path, sql):
    conn = sqlite3.connect(path)
    try:
        return conn.execute(sql).fetchall()
    finally:
        conn.close()


def _check_import(report, db_path):
    assert report.phase is ImportPhase.COMPLETE, report.error
    assert report.source_kind == "pgdump"
    assert report.tables == ["artists", "albums"]
    assert report.rows_copied == {"artists": 2, "albums": 2}
    assert report.indexes_created == ["albums_artist_idx"]
    assert report.unique_columns_added == ["artists.name"]
    assert {s.name: s.reason for s in report.skipped_indexes} == {
        "albums_lower_title": "expression index not supported",
        "albums_live": "partial index predicate not supported",
    }
    assert "Table 'albums': 1 foreign key(s) not imported" in report.warnings
    assert "Table 'artists': AUTO_INCREMENT not imported (id)" in report.warnings
    assert report.unsupported_types["numeric(10,2) -> TEXT"] == ["albums.price"]

    assert _rows(db_path, "SELECT id, name, country FROM artists ORDER BY id") == [
        (1, "Nina", None),
        (2, "Tab\tName", "SE"),
    ]
    assert _rows(db_path, "SELECT id, title, price, released, is_live, cover FROM albums ORDER BY id") == [
        (10, "First", "9.99", "2001-02-03", 1, b"\x00\xff"),
        (11, "Line\nBreak", None, None, 0, None),
    ]


def test_plain_dump(tmp_path, db_path):
    src = tmp_path / "dump.sql"
    src.write_text(DUMP, encoding="utf-8")
    _check_import(import_path(str(src), db_path, engine="sqlite"), db_path)


def test_gzip_dump_is_streamed(tmp_path, db_path):
    src = tmp_path / "dump.sql.gz"
    with gzip.open(src, "wt", encoding="utf-8") as f:
        f.write(DUMP)
    _check_import(import_path(str(src), db_path, engine="sqlite"), db_path)


def test_introspection_records_column_order_and_row_counts(tmp_path):
    src = tmp_path / "dump.sql"
    src.write_text(DUMP, encoding="utf-8")
    with PgDumpSource(str(src)) as source:
        intro = source.introspect()
    albums = {t.name: t for t in intro.tables}["albums"]
    assert albums.schema == "public"
    assert albums.column_names() == ["id", "artist_id", "title", "price", "released", "is_live", "cover"]
    assert albums.primary_key == ["id"]
    assert albums.row_count == 2


def test_same_table_in_two_schemas_keeps_the_first(tmp_path, db_path):
    dump = "\n".join(
        [
            "-- PostgreSQL database dump",
            "CREATE TABLE public.items (id integer NOT NULL);",
            "CREATE TABLE audit.items (id integer NOT NULL, note text);",
            "COPY audit.items (id, note) FROM stdin;",
            "9\tignored",
            "\\.",
            "COPY public.items (id) FROM stdin;",
            "1",
            "\\.",
            "",
        ]
    )
    src = tmp_path / "dump.sql"
    src.write_text(dump, encoding="utf-8")

    report = import_path(str(src), db_path, engine="sqlite")
    assert report.phase is ImportPhase.COMPLETE, report.error
    assert report.skipped_tables == ["audit.items"]
    assert report.rows_copied == {"items": 1}
    assert _rows(db_path, "SELECT id FROM items") == [(1,)]


@pytest.mark.parametrize(
    "line, reason",
    [
        ("CREATE INDEX t_gin ON public.t USING gin (doc);", "gin index not supported"),
        ("CREATE INDEX t_pair ON public.t USING btree (a, doc);", "composite index not imported (single-column only)"),
    ],
)
def test_index_variants_are_reported(tmp_path, db_path, line, reason):
    dump = "\n".join(
        [
            "-- PostgreSQL database dump",
            "CREATE TABLE public.t (a integer, doc jsonb);",
            line,
            "",
        ]
    )
    src = tmp_path / "dump.sql"
    src.write_text(dump, encoding="utf-8")
    report = import_path(str(src), db_path, engine="sqlite")
    assert report.phase is ImportPhase.COMPLETE, report.error
    assert [s.reason for s in report.skipped_indexes] == [reason]
