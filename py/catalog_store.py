"""Catalog CRUD over archive.db.

Rows are mapped to plain dataclasses. JSON-bearing columns (source_roots) are
decoded here so callers only ever see Python lists.

Write paths that must not be observed half-done (batch file indexing, adding a
disc to a set) run inside a single BEGIN IMMEDIATE transaction.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from archive_errors import DiscSetError
from archive_identity import generate_set_id
from catalog_schema import begin_immediate, fetchall, fetchone, now_iso

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 1000

_DISC_COLUMNS = (
    "disc_id, volume_label, created_at, notes, iso_size, burn_device, checksum_manifest_hash, "
    "qr_path, source_roots, tool_version, set_id, sequence_number"
)
_DISC_ID_SEQ = re.compile(r"^(\d{4})-BD-(\d+)")


@dataclass
class Disc:
    disc_id: str
    volume_label: str
    created_at: str
    notes: str | None = None
    iso_size: int | None = None
    burn_device: str | None = None
    checksum_manifest_hash: str | None = None
    qr_path: str | None = None
    source_roots: list[str] | None = None
    tool_version: str | None = None
    set_id: str | None = None
    sequence_number: int | None = None


@dataclass
class DiscSet:
    set_id: str
    name: str
    total_size: int
    disc_count: int
    created_at: str
    description: str | None = None
    source_roots: list[str] | None = None


@dataclass
class FileRecord:
    disc_id: str
    rel_path: str
    sha256: str
    size: int
    mtime: str
    added_at: str
    id: int | None = None


@dataclass
class VerificationRun:
    disc_id: str
    verified_at: str
    success: bool
    mountpoint: str | None = None
    device: str | None = None
    error_message: str | None = None
    files_checked: int | None = None
    files_failed: int | None = None
    id: int | None = None


@dataclass
class SearchResult:
    disc_id: str
    rel_path: str
    size: int
    mtime: str
    sha256: str


@dataclass
class DiscSetSummary:
    disc_set: DiscSet
    discs_recorded: int
    recorded_size: int
    missing_sequences: list[int] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.missing_sequences


def safe_json(v: Any) -> str:
    return json.dumps(v, ensure_ascii=False)


def _json_list(s: str | None) -> list[str] | None:
    if s is None:
        return None
    try:
        v = json.loads(s)
    except ValueError:
        # Legacy rows may hold a bare path instead of a JSON array.
        return [s]
    return [str(x) for x in v] if isinstance(v, list) else [str(v)]


def _row_to_disc(row: sqlite3.Row) -> Disc:
    return Disc(
        disc_id=row["disc_id"],
        volume_label=row["volume_label"],
        created_at=row["created_at"],
        notes=row["notes"],
        iso_size=row["iso_size"],
        burn_device=row["burn_device"],
        checksum_manifest_hash=row["checksum_manifest_hash"],
        qr_path=row["qr_path"],
        source_roots=_json_list(row["source_roots"]),
        tool_version=row["tool_version"],
        set_id=row["set_id"],
        sequence_number=row["sequence_number"],
    )


def _row_to_disc_set(row: sqlite3.Row) -> DiscSet:
    return DiscSet(
        set_id=row["set_id"],
        name=row["name"],
        description=row["description"],
        total_size=int(row["total_size"]),
        disc_count=int(row["disc_count"]),
        created_at=row["created_at"],
        source_roots=_json_list(row["source_roots"]),
    )


def _row_to_verification_run(row: sqlite3.Row) -> VerificationRun:
    return VerificationRun(
        id=row["id"],
        disc_id=row["disc_id"],
        verified_at=row["verified_at"],
        mountpoint=row["mountpoint"],
        device=row["device"],
        success=bool(row["success"]),
        error_message=row["error_message"],
        files_checked=row["files_checked"],
        files_failed=row["files_failed"],
    )


# --- discs -------------------------------------------------------------------


def _insert_disc_row(con: sqlite3.Connection, disc: Disc) -> None:
    con.execute(
        f"""
        INSERT INTO discs ({_DISC_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            disc.disc_id,
            disc.volume_label,
            disc.created_at,
            disc.notes,
            disc.iso_size,
            disc.burn_device,
            disc.checksum_manifest_hash,
            disc.qr_path,
            safe_json(disc.source_roots) if disc.source_roots is not None else None,
            disc.tool_version,
            disc.set_id,
            disc.sequence_number,
        ),
    )


def insert_disc(con: sqlite3.Connection, disc: Disc) -> None:
    _insert_disc_row(con, disc)
    logger.debug("disc inserted: %s", disc.disc_id)


def get_disc(con: sqlite3.Connection, disc_id: str) -> Disc | None:
    row = fetchone(con, f"SELECT {_DISC_COLUMNS} FROM discs WHERE disc_id=?", (disc_id,))
    return _row_to_disc(row) if row else None


def list_discs(con: sqlite3.Connection) -> list[Disc]:
    rows = fetchall(con, f"SELECT {_DISC_COLUMNS} FROM discs ORDER BY created_at DESC, disc_id DESC")
    return [_row_to_disc(r) for r in rows]


def delete_disc(con: sqlite3.Connection, disc_id: str) -> bool:
    """Delete a disc; its files and verification runs go with it (ON DELETE CASCADE)."""
    cur = con.execute("DELETE FROM discs WHERE disc_id=?", (disc_id,))
    return cur.rowcount > 0


def set_disc_qr_path(con: sqlite3.Connection, disc_id: str, qr_path: str) -> None:
    # qr_path is the only column back-filled after a disc row exists.
    con.execute("UPDATE discs SET qr_path=? WHERE disc_id=?", (qr_path, disc_id))


def next_disc_sequence(con: sqlite3.Connection, year: int) -> int:
    prefix = f"{int(year):04d}-BD-"
    rows = fetchall(con, "SELECT disc_id FROM discs WHERE disc_id LIKE ?", (prefix + "%",))
    best = 0
    for r in rows:
        m = _DISC_ID_SEQ.match(str(r["disc_id"]))
        if m and int(m.group(1)) == int(year):
            best = max(best, int(m.group(2)))
    return best + 1


# --- files -------------------------------------------------------------------

_UPSERT_FILE_SQL = """
    INSERT INTO files (disc_id, rel_path, sha256, size, mtime, added_at)
    VALUES (?, ?, ?, ?, ?, ?)
    ON CONFLICT(disc_id, rel_path) DO UPDATE SET
      sha256=excluded.sha256,
      size=excluded.size,
      mtime=excluded.mtime,
      added_at=excluded.added_at
"""


def _file_params(rec: FileRecord) -> tuple[Any, ...]:
    return (rec.disc_id, rec.rel_path, rec.sha256, int(rec.size), rec.mtime, rec.added_at)


def insert_file_record(con: sqlite3.Connection, rec: FileRecord) -> None:
    con.execute(_UPSERT_FILE_SQL, _file_params(rec))


def insert_file_records(con: sqlite3.Connection, records: Iterable[FileRecord]) -> int:
    n = 0
    begin_immediate(con)
    try:
        for rec in records:
            con.execute(_UPSERT_FILE_SQL, _file_params(rec))
            n += 1
        con.commit()
    except Exception:
        con.rollback()
        raise
    logger.debug("indexed %d file records", n)
    return n


def file_records_from_manifest(disc_id: str, entries: Iterable[Any], added_at: str | None = None) -> list[FileRecord]:
    ts = added_at or now_iso()
    return [
        FileRecord(
            disc_id=disc_id,
            rel_path=str(e.rel_path),
            sha256=str(e.sha256),
            size=int(e.size),
            mtime=str(e.mtime),
            added_at=ts,
        )
        for e in entries
    ]


def list_files_for_disc(con: sqlite3.Connection, disc_id: str) -> list[FileRecord]:
    rows = fetchall(
        con,
        "SELECT id, disc_id, rel_path, sha256, size, mtime, added_at FROM files WHERE disc_id=? ORDER BY id",
        (disc_id,),
    )
    return [
        FileRecord(
            id=r["id"],
            disc_id=r["disc_id"],
            rel_path=r["rel_path"],
            sha256=r["sha256"],
            size=int(r["size"]),
            mtime=r["mtime"],
            added_at=r["added_at"],
        )
        for r in rows
    ]


def count_files_for_disc(con: sqlite3.Connection, disc_id: str) -> int:
    row = fetchone(con, "SELECT COUNT(*) AS n FROM files WHERE disc_id=?", (disc_id,))
    return int(row["n"]) if row else 0


# --- verification runs ------------------------------------------------------


def _insert_verification_row(con: sqlite3.Connection, run: VerificationRun) -> int:
    cur = con.execute(
        """
        INSERT INTO verification_runs (
          disc_id, verified_at, mountpoint, device, success, error_message, files_checked, files_failed
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            run.disc_id,
            run.verified_at,
            run.mountpoint,
            run.device,
            1 if run.success else 0,
            run.error_message,
            run.files_checked,
            run.files_failed,
        ),
    )
    return int(cur.lastrowid)


def insert_verification_run(con: sqlite3.Connection, run: VerificationRun) -> int:
    return _insert_verification_row(con, run)


def insert_verification_runs(con: sqlite3.Connection, runs: Iterable[VerificationRun]) -> list[int]:
    ids: list[int] = []
    begin_immediate(con)
    try:
        for run in runs:
            ids.append(_insert_verification_row(con, run))
        con.commit()
    except Exception:
        con.rollback()
        raise
    return ids


def list_verification_runs(con: sqlite3.Connection, disc_id: str | None = None) -> list[VerificationRun]:
    sql = (
        "SELECT id, disc_id, verified_at, mountpoint, device, success, error_message, files_checked, files_failed "
        "FROM verification_runs"
    )
    params: tuple[Any, ...] = ()
    if disc_id is not None:
        sql += " WHERE disc_id=?"
        params = (disc_id,)
    sql += " ORDER BY verified_at DESC, id DESC"
    return [_row_to_verification_run(r) for r in fetchall(con, sql, params)]


def latest_verification_run(con: sqlite3.Connection, disc_id: str) -> VerificationRun | None:
    runs = list_verification_runs(con, disc_id)
    return runs[0] if runs else None


# --- disc sets ----------------------------------------------------------------


def create_disc_set(
    con: sqlite3.Connection,
    name: str,
    total_size: int,
    disc_count: int,
    description: str | None = None,
    source_roots: list[str] | None = None,
    set_id: str | None = None,
) -> DiscSet:
    if int(disc_count) < 1:
        raise DiscSetError(f"disc_count must be >= 1 (got {disc_count})")
    if int(total_size) < 0:
        raise DiscSetError(f"total_size must be >= 0 (got {total_size})")
    ds = DiscSet(
        set_id=set_id or generate_set_id(),
        name=name,
        description=description,
        total_size=int(total_size),
        disc_count=int(disc_count),
        created_at=now_iso(),
        source_roots=list(source_roots) if source_roots is not None else None,
    )
    con.execute(
        """
        INSERT INTO disc_sets (set_id, name, description, total_size, disc_count, created_at, source_roots)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            ds.set_id,
            ds.name,
            ds.description,
            ds.total_size,
            ds.disc_count,
            ds.created_at,
            safe_json(ds.source_roots) if ds.source_roots is not None else None,
        ),
    )
    logger.info("disc set created: %s (%d discs, %d bytes)", ds.set_id, ds.disc_count, ds.total_size)
    return ds


def get_disc_set(con: sqlite3.Connection, set_id: str) -> DiscSet | None:
    row = fetchone(
        con,
        "SELECT set_id, name, description, total_size, disc_count, created_at, source_roots FROM disc_sets WHERE set_id=?",
        (set_id,),
    )
    return _row_to_disc_set(row) if row else None


def list_disc_sets(con: sqlite3.Connection) -> list[DiscSet]:
    rows = fetchall(
        con,
        "SELECT set_id, name, description, total_size, disc_count, created_at, source_roots "
        "FROM disc_sets ORDER BY created_at DESC, set_id DESC",
    )
    return [_row_to_disc_set(r) for r in rows]


def add_disc_to_set(con: sqlite3.Connection, disc: Disc, set_id: str, sequence_number: int) -> Disc:
    """Insert ``disc`` as volume ``sequence_number`` of ``set_id``.

    The set must exist, the sequence must lie in 1..disc_count and must not be
    taken yet. Returns the disc as stored.
    """
    member = replace(disc, set_id=set_id, sequence_number=int(sequence_number))
    begin_immediate(con)
    try:
        ds = _claim_set_slot(con, member)
        _insert_disc_row(con, member)
        con.commit()
    except Exception:
        con.rollback()
        raise
    logger.info("disc %s recorded as %d/%d of %s", member.disc_id, member.sequence_number, ds.disc_count, set_id)
    return member


def _claim_set_slot(con: sqlite3.Connection, member: Disc) -> DiscSet:
    set_id = member.set_id
    ds = get_disc_set(con, set_id)
    if ds is None:
        raise DiscSetError(f"disc set not found: {set_id}")
    if not 1 <= member.sequence_number <= ds.disc_count:
        raise DiscSetError(
            f"sequence {member.sequence_number} out of range 1..{ds.disc_count} for set {set_id}"
        )
    taken = fetchone(
        con,
        "SELECT disc_id FROM discs WHERE set_id=? AND sequence_number=?",
        (set_id, member.sequence_number),
    )
    if taken is not None:
        raise DiscSetError(
            f"sequence {member.sequence_number} of set {set_id} already recorded as {taken['disc_id']}"
        )
    return ds


def index_disc(
    con: sqlite3.Connection,
    disc: Disc,
    records: Iterable[FileRecord],
    set_id: str | None = None,
    sequence_number: int | None = None,
) -> Disc:
    """Insert a disc row and all of its file records in one transaction.

    Either both land or neither does, so a disc is never cataloged without its
    files. With set_id the disc is recorded as volume sequence_number of that
    set, under the same checks as add_disc_to_set.
    """
    member = disc
    if set_id is not None:
        member = replace(disc, set_id=set_id, sequence_number=int(sequence_number or 0))
    n = 0
    begin_immediate(con)
    try:
        if set_id is not None:
            _claim_set_slot(con, member)
        _insert_disc_row(con, member)
        for rec in records:
            con.execute(_UPSERT_FILE_SQL, _file_params(rec))
            n += 1
        con.commit()
    except Exception:
        con.rollback()
        raise
    logger.info("disc %s indexed with %d files", member.disc_id, n)
    return member


def list_discs_in_set(con: sqlite3.Connection, set_id: str) -> list[Disc]:
    rows = fetchall(
        con,
        f"SELECT {_DISC_COLUMNS} FROM discs WHERE set_id=? ORDER BY sequence_number",
        (set_id,),
    )
    return [_row_to_disc(r) for r in rows]


def disc_set_summary(con: sqlite3.Connection, set_id: str) -> DiscSetSummary | None:
    """Planned totals from the set row next to what member discs actually record."""
    ds = get_disc_set(con, set_id)
    if ds is None:
        return None
    members = list_discs_in_set(con, set_id)
    seen = {d.sequence_number for d in members}
    return DiscSetSummary(
        disc_set=ds,
        discs_recorded=len(members),
        recorded_size=sum(int(d.iso_size or 0) for d in members),
        missing_sequences=[n for n in range(1, ds.disc_count + 1) if n not in seen],
    )


# --- search -------------------------------------------------------------------


def _like_escape(s: str) -> str:
    return s.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def search_files(
    con: sqlite3.Connection,
    *,
    sha256: str | None = None,
    path_substring: str | None = None,
    exact_filename: str | None = None,
    limit: int = SEARCH_LIMIT,
) -> list[SearchResult]:
    """Read-only lookup; the first given criterion wins (sha256, substring, file name)."""
    base = "SELECT disc_id, rel_path, size, mtime, sha256 FROM files"
    if sha256:
        sql = base + " WHERE sha256=?"
        params: tuple[Any, ...] = (sha256.strip().lower(),)
    elif path_substring:
        sql = base + " WHERE rel_path LIKE ? ESCAPE '\\'"
        params = ("%" + _like_escape(path_substring) + "%",)
    elif exact_filename:
        sql = base + " WHERE rel_path=? OR rel_path LIKE ? ESCAPE '\\'"
        params = (exact_filename, "%/" + _like_escape(exact_filename))
    else:
        sql = base
        params = ()
    sql += " ORDER BY rel_path, disc_id LIMIT ?"
    rows = fetchall(con, sql, params + (max(1, int(limit)),))
    return [
        SearchResult(
            disc_id=r["disc_id"],
            rel_path=r["rel_path"],
            size=int(r["size"]),
            mtime=r["mtime"],
            sha256=r["sha256"],
        )
        for r in rows
    ]


def format_size(n: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(n)
    i = 0
    while size >= 1024.0 and i < len(units) - 1:
        size /= 1024.0
        i += 1
    if i == 0:
        return f"{int(n)} B"
    return f"{size:.2f} {units[i]}"
