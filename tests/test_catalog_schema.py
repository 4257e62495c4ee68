"""
catalog_schema tests: fresh open, idempotent reopen, legacy upgrade, future version refusal
"""

import sqlite3

import pytest

from archive_errors import UnsupportedSchemaError
from catalog_schema import (
    SCHEMA_VERSION,
    connect_db,
    create_schema_if_needed,
    get_schema_version,
    open_catalog,
)


def _tables(con):
    return {r["name"] for r in con.execute("SELECT name FROM sqlite_master WHERE type='table'")}


def _schema_sql(con):
    return sorted(
        (r["type"], r["name"], r["sql"])
        for r in con.execute("SELECT type, name, sql FROM sqlite_master WHERE name NOT LIKE 'sqlite_%'")
    )


def _columns(con, table):
    return {r["name"] for r in con.execute(f"PRAGMA table_info({table})")}


class TestFreshCatalog:
    def test_creates_all_tables(self, tmp_path):
        con = open_catalog(tmp_path / "nested" / "archive.db")
        try:
            assert {"schema_version", "discs", "files", "verification_runs", "disc_sets", "burn_sessions"} <= _tables(con)
            assert get_schema_version(con) == SCHEMA_VERSION
        finally:
            con.close()

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "a" / "b" / "archive.db"
        open_catalog(path).close()
        assert path.exists()

    def test_foreign_keys_enabled(self, catalog):
        assert catalog.execute("PRAGMA foreign_keys").fetchone()[0] == 1

    def test_files_unique_per_disc_path(self, catalog):
        catalog.execute("INSERT INTO discs (disc_id, volume_label, created_at) VALUES ('2024-BD-001', 'L', 't')")
        catalog.execute(
            "INSERT INTO files (disc_id, rel_path, sha256, size, mtime, added_at) VALUES ('2024-BD-001', 'a', 'h', 1, 't', 't')"
        )
        with pytest.raises(sqlite3.IntegrityError):
            catalog.execute(
                "INSERT INTO files (disc_id, rel_path, sha256, size, mtime, added_at) VALUES ('2024-BD-001', 'a', 'h2', 2, 't', 't')"
            )


class TestIdempotentMigration:
    def test_second_open_changes_nothing(self, tmp_path):
        path = tmp_path / "archive.db"
        con = open_catalog(path)
        con.execute("INSERT INTO discs (disc_id, volume_label, created_at) VALUES ('2024-BD-001', '2024_BD_001', 't')")
        before_schema = _schema_sql(con)
        con.close()

        con = open_catalog(path)
        try:
            assert _schema_sql(con) == before_schema
            assert get_schema_version(con) == SCHEMA_VERSION
            rows = con.execute("SELECT disc_id, volume_label FROM discs").fetchall()
            assert [tuple(r) for r in rows] == [("2024-BD-001", "2024_BD_001")]
            assert con.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0] == 1
        finally:
            con.close()

    def test_create_schema_returns_found_version(self, tmp_path):
        con = connect_db(tmp_path / "archive.db")
        try:
            assert create_schema_if_needed(con) == 0
            assert create_schema_if_needed(con) == SCHEMA_VERSION
        finally:
            con.close()


class TestLegacyUpgrade:
    def _make_v1(self, path):
        con = sqlite3.connect(str(path))
        con.executescript(
            """
            CREATE TABLE schema_version (version INTEGER NOT NULL);
            INSERT INTO schema_version VALUES (1);
            CREATE TABLE discs (
              disc_id TEXT PRIMARY KEY, volume_label TEXT NOT NULL, created_at TEXT NOT NULL,
              notes TEXT, iso_size INTEGER, burn_device TEXT, checksum_manifest_hash TEXT,
              qr_path TEXT, source_roots TEXT, tool_version TEXT
            );
            CREATE TABLE files (
              id INTEGER PRIMARY KEY, disc_id TEXT NOT NULL REFERENCES discs(disc_id) ON DELETE CASCADE,
              rel_path TEXT NOT NULL, sha256 TEXT NOT NULL, size INTEGER NOT NULL, mtime TEXT NOT NULL,
              added_at TEXT NOT NULL, UNIQUE(disc_id, rel_path)
            );
            CREATE TABLE verification_runs (
              id INTEGER PRIMARY KEY, disc_id TEXT NOT NULL, verified_at TEXT NOT NULL, mountpoint TEXT,
              device TEXT, success INTEGER NOT NULL, error_message TEXT, files_checked INTEGER, files_failed INTEGER
            );
            INSERT INTO discs (disc_id, volume_label, created_at, notes) VALUES ('2023-BD-007', '2023_BD_007', 't', 'old');
            INSERT INTO files (disc_id, rel_path, sha256, size, mtime, added_at)
              VALUES ('2023-BD-007', 'ARCHIVE/x/a.txt', 'abc', 3, 't', 't');
            """
        )
        con.commit()
        con.close()

    def test_adds_set_columns_and_keeps_rows(self, tmp_path):
        path = tmp_path / "legacy.db"
        self._make_v1(path)
        con = open_catalog(path)
        try:
            assert get_schema_version(con) == SCHEMA_VERSION
            assert {"set_id", "sequence_number"} <= _columns(con, "discs")
            assert {"disc_sets", "burn_sessions"} <= _tables(con)
            row = con.execute("SELECT notes, set_id FROM discs WHERE disc_id='2023-BD-007'").fetchone()
            assert row["notes"] == "old"
            assert row["set_id"] is None
            assert con.execute("SELECT COUNT(*) FROM files").fetchone()[0] == 1
        finally:
            con.close()


class TestFutureVersion:
    def test_refuses_newer_schema(self, tmp_path):
        path = tmp_path / "future.db"
        open_catalog(path).close()
        con = sqlite3.connect(str(path))
        con.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION + 1,))
        con.commit()
        con.close()

        with pytest.raises(UnsupportedSchemaError):
            open_catalog(path)
