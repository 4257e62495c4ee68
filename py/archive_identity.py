from __future__ import annotations

import logging
import re
import secrets
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from archive_errors import InvalidDiscIdError
from catalog_schema import now_iso

logger = logging.getLogger(__name__)

TOOL_NAME = "discvault"
TOOL_VERSION = "0.3.0"

DISC_INFO_NAME = "DISC_INFO.txt"

MAX_DISC_ID_LEN = 50
MAX_VOLUME_LABEL_LEN = 32

FORB = re.compile(r'[<>:"/\\|?*]')
CTRL = re.compile(r"[\x00-\x1f\x7f]")
YEAR_PREFIX = re.compile(r"^(\d{4})")
RESERVED_NAMES = frozenset(
    ["CON", "PRN", "AUX", "NUL"]
    + [f"COM{i}" for i in range(1, 10)]
    + [f"LPT{i}" for i in range(1, 10)]
)


def tool_version() -> str:
    return f"{TOOL_NAME} {TOOL_VERSION}"


def generate_disc_id(year: int, sequence: int) -> str:
    return f"{int(year):04d}-BD-{int(sequence):03d}"


def next_disc_id(con: sqlite3.Connection | None, year: int | None = None) -> str:
    """Next free YYYY-BD-NNN id; falls back to sequence 1 when the catalog can't answer."""
    y = int(year) if year is not None else datetime.now().year
    seq = 1
    if con is not None:
        # Imported here: catalog_store imports this module at load time.
        from catalog_store import next_disc_sequence

        try:
            seq = next_disc_sequence(con, y)
        except Exception as e:
            logger.warning("disc sequence lookup failed, using 1: %s", e)
            seq = 1
    return generate_disc_id(y, seq)


def validate_disc_id(disc_id: str) -> str:
    s = disc_id if isinstance(disc_id, str) else ""
    if not s.strip():
        raise InvalidDiscIdError("disc id must not be empty")
    if len(s) > MAX_DISC_ID_LEN:
        raise InvalidDiscIdError(f"disc id longer than {MAX_DISC_ID_LEN} characters: {s[:MAX_DISC_ID_LEN]}...")
    m = FORB.search(s)
    if m:
        raise InvalidDiscIdError(f"disc id contains invalid character {m.group(0)!r}: {s}")
    if CTRL.search(s):
        raise InvalidDiscIdError(f"disc id contains control characters: {s!r}")
    if s.upper() in RESERVED_NAMES:
        raise InvalidDiscIdError(f"disc id is a reserved device name: {s}")
    return s


def generate_volume_label(disc_id: str) -> str:
    return disc_id.upper().replace("-", "_")


def generate_multi_disc_volume_label(base_id: str, sequence: int, total: int) -> str:
    label = f"{generate_volume_label(base_id)}_{int(sequence)}OF{int(total)}"
    if len(label) <= MAX_VOLUME_LABEL_LEN:
        return label
    m = YEAR_PREFIX.match(base_id)
    year = m.group(1) if m else str(datetime.now().year)
    short = f"BD{year}_{int(sequence)}_{int(total)}"
    # Only absurd sequence/total values get here.
    return short[:MAX_VOLUME_LABEL_LEN]


def generate_multi_disc_id(base_id: str, sequence: int) -> str:
    return f"{base_id}-{int(sequence)}"


def generate_set_id(when: datetime | None = None) -> str:
    dt = when or datetime.now(timezone.utc)
    return f"SET-{dt.strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(3)}"


def write_disc_info(
    disc_root: str | Path,
    disc_id: str,
    *,
    volume_label: str | None = None,
    notes: str | None = None,
    source_roots: list[str] | None = None,
    set_id: str | None = None,
    sequence: int | None = None,
    total: int | None = None,
    created_at: str | None = None,
) -> Path:
    path = Path(disc_root) / DISC_INFO_NAME
    lines = [
        f"Disc-ID: {disc_id}",
        f"Created: {created_at or now_iso()}",
        f"Volume Label: {volume_label or generate_volume_label(disc_id)}",
    ]
    if notes:
        lines.append(f"Notes: {notes}")
    if set_id:
        lines.append(f"Multi-Disc Set: {set_id}")
        if sequence is not None and total is not None:
            lines.append(f"Sequence: {int(sequence)} of {int(total)}")
    lines.append("")
    lines.append("Source Roots:")
    for r in source_roots or []:
        lines.append(f"  {r}")
    lines.append("")
    lines.append(f"Tool Version: {tool_version()}")
    path.write_text("\n".join(lines) + "\n", encoding="utf-8", newline="\n")
    logger.debug("wrote %s", path)
    return path


def read_disc_info(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    if p.is_dir():
        p = p / DISC_INFO_NAME
    info: dict[str, Any] = {"source_roots": []}
    in_roots = False
    for raw in p.read_text(encoding="utf-8", errors="replace").splitlines():
        if not raw.strip():
            in_roots = False
            continue
        if in_roots and raw.startswith("  "):
            info["source_roots"].append(raw.strip())
            continue
        key, sep, value = raw.partition(":")
        if not sep:
            continue
        key = key.strip().lower().replace("-", "_").replace(" ", "_")
        value = value.strip()
        if key == "source_roots":
            in_roots = True
            continue
        in_roots = False
        if key == "sequence":
            m = re.match(r"^(\d+)\s+of\s+(\d+)$", value)
            if m:
                info["sequence"] = int(m.group(1))
                info["total"] = int(m.group(2))
                continue
        info[key] = value
    return info
