"""catalog_schema.py

SQLAlchemy Core schema for the archive catalog (archive.db), plus the small
sqlite3 helpers every module uses to talk to it.

Design goals:
- One row per physical volume (discs) and per archived file (files).
- Multi-volume archives group discs under disc_sets with a 1-based sequence_number.
- verification_runs is an append-only audit log.
- burn_sessions holds one resumable document per multi-disc job, rewritten whole on
  every transition.
- schema_version holds a single integer; migrations are additive only and run in
  strictly increasing order inside one transaction.

Table objects are the source of truth for DDL. DDL is rendered with the SQLite
dialect and executed on a plain sqlite3 connection so BEGIN/COMMIT stay explicit.

NOTE: SQLite JSON is stored as TEXT; validate at the application layer.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

from sqlalchemy import (
    Table,
    Column,
    MetaData,
    ForeignKey,
    Integer,
    Text,
    String,
    UniqueConstraint,
    Index,
)
from sqlalchemy.dialects import sqlite as sqlite_dialect
from sqlalchemy.schema import CreateIndex, CreateTable

from archive_errors import UnsupportedSchemaError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 3

_DIALECT = sqlite_dialect.dialect()

metadata = MetaData()

schema_version = Table(
    "schema_version",
    metadata,
    Column("version", Integer, nullable=False),
)

disc_sets = Table(
    "disc_sets",
    metadata,
    Column("set_id", String, primary_key=True),
    Column("name", Text, nullable=False),
    Column("description", Text, nullable=True),
    Column("total_size", Integer, nullable=False),
    Column("disc_count", Integer, nullable=False),
    Column("created_at", String, nullable=False),  # ISO8601 UTC
    Column("source_roots", Text, nullable=True),  # JSON text
    Index("idx_disc_sets_created_at", "created_at"),
)

discs = Table(
    "discs",
    metadata,
    Column("disc_id", String, primary_key=True),
    Column("volume_label", String, nullable=False),
    Column("created_at", String, nullable=False),  # ISO8601 UTC
    Column("notes", Text, nullable=True),
    Column("iso_size", Integer, nullable=True),
    Column("burn_device", String, nullable=True),
    Column("checksum_manifest_hash", String(64), nullable=True),
    Column("qr_path", Text, nullable=True),
    Column("source_roots", Text, nullable=True),  # JSON text
    Column("tool_version", String, nullable=True),
    # v2
    Column("set_id", String, ForeignKey("disc_sets.set_id"), nullable=True),
    Column("sequence_number", Integer, nullable=True),
    Index("idx_discs_created_at", "created_at"),
    Index("idx_discs_set_id", "set_id"),
    Index("uq_discs_set_sequence", "set_id", "sequence_number", unique=True),
)

files = Table(
    "files",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("disc_id", String, ForeignKey("discs.disc_id", ondelete="CASCADE"), nullable=False),
    Column("rel_path", Text, nullable=False),
    Column("sha256", String(64), nullable=False),
    Column("size", Integer, nullable=False),
    Column("mtime", String, nullable=False),
    Column("added_at", String, nullable=False),
    UniqueConstraint("disc_id", "rel_path", name="uq_files_disc_path"),
    Index("idx_files_disc_id", "disc_id"),
    Index("idx_files_rel_path", "rel_path"),
    Index("idx_files_sha256", "sha256"),
)

verification_runs = Table(
    "verification_runs",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("disc_id", String, ForeignKey("discs.disc_id", ondelete="CASCADE"), nullable=False),
    Column("verified_at", String, nullable=False),
    Column("mountpoint", Text, nullable=True),
    Column("device", String, nullable=True),
    Column("success", Integer, nullable=False),
    Column("error_message", Text, nullable=True),
    Column("files_checked", Integer, nullable=True),
    Column("files_failed", Integer, nullable=True),
    Index("idx_verification_disc_id", "disc_id"),
    Index("idx_verification_verified_at", "verified_at"),
)

burn_sessions = Table(
    "burn_sessions",
    metadata,
    Column("session_id", String, primary_key=True),
    Column("set_id", String, ForeignKey("disc_sets.set_id"), nullable=False),
    Column("session_name", Text, nullable=False),
    Column("current_disc", Integer, nullable=False),
    Column("total_discs", Integer, nullable=False),
    Column("completed_discs", Text, nullable=False, server_default="[]"),  # JSON text
    Column("failed_discs", Text, nullable=False, server_default="[]"),  # JSON text
    Column("source_folders", Text, nullable=False, server_default="[]"),  # JSON text
    Column("config_json", Text, nullable=False, server_default="{}"),
    Column("staging_state", Text, nullable=True),  # JSON text
    Column("created_at", String, nullable=False),
    Column("updated_at", String, nullable=False),
    Column("status", String(16), nullable=False),
    Column("notes", Text, nullable=True),
    Index("idx_burn_sessions_set_id", "set_id"),
    Index("idx_burn_sessions_status", "status"),
)


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def connect_db(db_path: str | Path) -> sqlite3.Connection:
    # isolation_level=None: transactions are opened explicitly with begin_immediate().
    con = sqlite3.connect(str(db_path), isolation_level=None)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA foreign_keys = ON")
    return con


def begin_immediate(con: sqlite3.Connection) -> None:
    con.execute("BEGIN IMMEDIATE")


def fetchall(con: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
    return list(con.execute(sql, tuple(params)).fetchall())


def fetchone(con: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> sqlite3.Row | None:
    return con.execute(sql, tuple(params)).fetchone()


def _ddl(element: Any) -> str:
    return str(element.compile(dialect=_DIALECT)).strip()


def _create_table(con: sqlite3.Connection, table: Table) -> None:
    con.execute(_ddl(CreateTable(table, if_not_exists=True)))
    _create_indexes(con, table)


def _create_indexes(con: sqlite3.Connection, table: Table) -> None:
    for idx in sorted(table.indexes, key=lambda i: str(i.name)):
        con.execute(_ddl(CreateIndex(idx, if_not_exists=True)))


def _add_missing_columns(con: sqlite3.Connection, table: Table) -> list[str]:
    existing = {str(r["name"]) for r in fetchall(con, f"PRAGMA table_info({table.name})")}
    added: list[str] = []
    for col in table.columns:
        if col.name in existing:
            continue
        col_type = col.type.compile(dialect=_DIALECT)
        con.execute(f"ALTER TABLE {table.name} ADD COLUMN {col.name} {col_type}")
        added.append(col.name)
    return added


def _migrate_v1(con: sqlite3.Connection) -> None:
    # Tables are created at their current shape; later steps only fill in what
    # catalogs written by older releases are missing.
    _create_table(con, discs)
    _create_table(con, files)
    _create_table(con, verification_runs)


def _migrate_v2(con: sqlite3.Connection) -> None:
    _create_table(con, disc_sets)
    added = _add_missing_columns(con, discs)
    if added:
        logger.info("discs: added columns %s", ", ".join(added))
    _create_indexes(con, discs)


def _migrate_v3(con: sqlite3.Connection) -> None:
    _create_table(con, burn_sessions)


MIGRATIONS: dict[int, Callable[[sqlite3.Connection], None]] = {
    1: _migrate_v1,
    2: _migrate_v2,
    3: _migrate_v3,
}


def get_schema_version(con: sqlite3.Connection) -> int:
    row = fetchone(con, "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'")
    if row is None:
        return 0
    row = fetchone(con, "SELECT MAX(version) AS version FROM schema_version")
    if row is None or row["version"] is None:
        return 0
    return int(row["version"])


def _set_schema_version(con: sqlite3.Connection, version: int) -> None:
    _create_table(con, schema_version)
    con.execute("DELETE FROM schema_version")
    con.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))


def create_schema_if_needed(con: sqlite3.Connection) -> int:
    """Bring the catalog up to SCHEMA_VERSION; returns the version found on disk.

    All pending migrations plus the version bump commit together, so a crash
    leaves either the old schema or the new one.
    """
    current = get_schema_version(con)
    if current > SCHEMA_VERSION:
        raise UnsupportedSchemaError(
            f"catalog schema version {current} is newer than supported version {SCHEMA_VERSION}"
        )
    if current == SCHEMA_VERSION:
        return current

    logger.info("migrating catalog schema from version %d to %d", current, SCHEMA_VERSION)
    begin_immediate(con)
    try:
        for version in range(current + 1, SCHEMA_VERSION + 1):
            MIGRATIONS[version](con)
            logger.debug("applied catalog migration v%d", version)
        _set_schema_version(con, SCHEMA_VERSION)
        con.commit()
    except Exception:
        con.rollback()
        raise
    logger.info("catalog migration completed")
    return current


def open_catalog(db_path: str | Path) -> sqlite3.Connection:
    p = Path(db_path)
    if str(db_path) != ":memory:":
        p.parent.mkdir(parents=True, exist_ok=True)
    con = connect_db(db_path)
    try:
        create_schema_if_needed(con)
    except Exception:
        con.close()
        raise
    logger.debug("catalog opened: %s", db_path)
    return con
