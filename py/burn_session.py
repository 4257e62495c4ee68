"""Persisted state machine for multi-disc burn jobs.

Active --pause--> Paused --resume--> Active
Active/Paused --complete--> Completed (terminal)
Active/Paused --cancel--> Cancelled (terminal)

The whole session is one row in burn_sessions, rewritten with INSERT OR REPLACE
after every transition. Crashing mid-job loses at most the last transition.

At most one Active/Paused session may exist per disc set. start_session checks
this before the first write; there is no storage constraint behind it.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from archive_errors import ActiveSessionExistsError, InvalidTransitionError
from catalog_schema import begin_immediate, fetchall, fetchone, now_iso
from staging import count_tree, remove_staging_dir

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    ACTIVE = "Active"
    PAUSED = "Paused"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


RESUMABLE = (SessionStatus.ACTIVE, SessionStatus.PAUSED)
TERMINAL = (SessionStatus.COMPLETED, SessionStatus.CANCELLED)


@dataclass
class BurnSession:
    session_id: str
    set_id: str
    session_name: str
    total_discs: int
    current_disc: int = 1
    completed_discs: list[int] = field(default_factory=list)
    failed_discs: list[int] = field(default_factory=list)
    source_folders: list[str] = field(default_factory=list)
    config: dict[str, Any] = field(default_factory=dict)
    staging_state: dict[str, Any] | None = None
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: str = ""
    updated_at: str = ""
    notes: str | None = None

    @classmethod
    def new(
        cls,
        set_id: str,
        session_name: str,
        total_discs: int,
        source_folders: list[str] | None = None,
        config: dict[str, Any] | None = None,
        notes: str | None = None,
    ) -> BurnSession:
        ts = now_iso()
        return cls(
            session_id=f"session-{uuid.uuid4().hex}",
            set_id=set_id,
            session_name=session_name,
            total_discs=int(total_discs),
            source_folders=[str(s) for s in (source_folders or [])],
            config=dict(config or {}),
            created_at=ts,
            updated_at=ts,
            notes=notes,
        )

    @property
    def is_resumable(self) -> bool:
        return self.status in RESUMABLE

    @property
    def remaining_discs(self) -> list[int]:
        return [n for n in range(1, self.total_discs + 1) if n not in self.completed_discs]

    def _touch(self) -> None:
        self.updated_at = now_iso()

    def _require_open(self, action: str) -> None:
        if self.status in TERMINAL:
            raise InvalidTransitionError(f"cannot {action} session {self.session_id}: status is {self.status.value}")

    def update_progress(self, disc_n: int) -> None:
        self._require_open("update")
        n = int(disc_n)
        if n not in self.completed_discs:
            self.completed_discs.append(n)
        if n in self.failed_discs:
            self.failed_discs.remove(n)
        self.current_disc = n + 1
        self._touch()

    def record_failure(self, disc_n: int) -> None:
        self._require_open("update")
        n = int(disc_n)
        if n not in self.failed_discs:
            self.failed_discs.append(n)
        self._touch()

    def pause(self, staging_state: dict[str, Any] | None = None) -> None:
        self._require_open("pause")
        self.status = SessionStatus.PAUSED
        if staging_state is not None:
            self.staging_state = staging_state
        self._touch()

    def resume(self) -> None:
        if self.status != SessionStatus.PAUSED:
            raise InvalidTransitionError(f"cannot resume session {self.session_id}: status is {self.status.value}")
        self.status = SessionStatus.ACTIVE
        self._touch()

    def complete(self) -> None:
        self._require_open("complete")
        self.status = SessionStatus.COMPLETED
        self._touch()

    def cancel(self) -> None:
        self._require_open("cancel")
        self.status = SessionStatus.CANCELLED
        self._touch()


def _dumps(v: Any) -> str:
    return json.dumps(v, ensure_ascii=False)


def _loads(s: str | None, fallback: Any) -> Any:
    if s is None or not str(s).strip():
        return fallback
    try:
        return json.loads(s)
    except json.JSONDecodeError:
        logger.warning("unparseable JSON column in burn_sessions: %r", str(s)[:80])
        return fallback


def _row_to_session(row: sqlite3.Row) -> BurnSession:
    return BurnSession(
        session_id=row["session_id"],
        set_id=row["set_id"],
        session_name=row["session_name"],
        current_disc=int(row["current_disc"]),
        total_discs=int(row["total_discs"]),
        completed_discs=[int(x) for x in _loads(row["completed_discs"], [])],
        failed_discs=[int(x) for x in _loads(row["failed_discs"], [])],
        source_folders=[str(x) for x in _loads(row["source_folders"], [])],
        config=_loads(row["config_json"], {}),
        staging_state=_loads(row["staging_state"], None),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        status=SessionStatus(row["status"]),
        notes=row["notes"],
    )


_SESSION_COLUMNS = (
    "session_id, set_id, session_name, current_disc, total_discs, completed_discs, failed_discs, "
    "source_folders, config_json, staging_state, created_at, updated_at, status, notes"
)


def save_session(con: sqlite3.Connection, session: BurnSession) -> None:
    con.execute(
        f"INSERT OR REPLACE INTO burn_sessions ({_SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            session.session_id,
            session.set_id,
            session.session_name,
            int(session.current_disc),
            int(session.total_discs),
            _dumps(session.completed_discs),
            _dumps(session.failed_discs),
            _dumps(session.source_folders),
            _dumps(session.config),
            _dumps(session.staging_state) if session.staging_state is not None else None,
            session.created_at,
            session.updated_at,
            session.status.value,
            session.notes,
        ),
    )
    logger.debug("session saved: %s status=%s current=%d", session.session_id, session.status.value, session.current_disc)


def _resumable_for_set(con: sqlite3.Connection, set_id: str) -> list[sqlite3.Row]:
    return fetchall(
        con,
        "SELECT session_id FROM burn_sessions WHERE set_id=? AND status IN (?, ?)",
        (set_id, SessionStatus.ACTIVE.value, SessionStatus.PAUSED.value),
    )


def start_session(con: sqlite3.Connection, session: BurnSession) -> BurnSession:
    begin_immediate(con)
    try:
        others = [r["session_id"] for r in _resumable_for_set(con, session.set_id) if r["session_id"] != session.session_id]
        if others:
            raise ActiveSessionExistsError(
                f"disc set {session.set_id} already has an active or paused session: {', '.join(others)}"
            )
        save_session(con, session)
        con.commit()
    except Exception:
        con.rollback()
        raise
    logger.info("burn session started: %s for set %s (%d discs)", session.session_id, session.set_id, session.total_discs)
    return session


def load_session(con: sqlite3.Connection, session_id: str) -> BurnSession | None:
    row = fetchone(con, f"SELECT {_SESSION_COLUMNS} FROM burn_sessions WHERE session_id=?", (session_id,))
    return _row_to_session(row) if row else None


def list_sessions(con: sqlite3.Connection) -> list[BurnSession]:
    rows = fetchall(con, f"SELECT {_SESSION_COLUMNS} FROM burn_sessions ORDER BY updated_at DESC, session_id")
    return [_row_to_session(r) for r in rows]


def list_resumable_sessions(con: sqlite3.Connection) -> list[BurnSession]:
    rows = fetchall(
        con,
        f"SELECT {_SESSION_COLUMNS} FROM burn_sessions WHERE status IN (?, ?) ORDER BY updated_at DESC, session_id",
        (SessionStatus.ACTIVE.value, SessionStatus.PAUSED.value),
    )
    return [_row_to_session(r) for r in rows]


def staging_dirs(session: BurnSession) -> list[str]:
    state = session.staging_state or {}
    dirs = state.get("staging_dirs") or []
    return [str(d) for d in dirs if d]


def delete_session(con: sqlite3.Connection, session_id: str) -> bool:
    """Delete the session row, then try to remove its staging dirs.

    Cleanup failures are logged and never raised; the row is gone either way.
    """
    session = load_session(con, session_id)
    if session is None:
        return False
    con.execute("DELETE FROM burn_sessions WHERE session_id=?", (session_id,))
    logger.info("burn session deleted: %s", session_id)
    for d in staging_dirs(session):
        try:
            remove_staging_dir(d)
        except Exception as e:
            logger.warning("staging cleanup failed for %s: %s", d, e)
    return True


def sessions_space_usage(con: sqlite3.Connection) -> int:
    total = 0
    for s in list_resumable_sessions(con):
        for d in staging_dirs(s):
            p = Path(d)
            if p.is_dir():
                total += count_tree(p).bytes
    return total
