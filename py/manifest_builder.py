from __future__ import annotations

import hashlib
import logging
import os
import stat
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

logger = logging.getLogger(__name__)

MANIFEST_NAME = "MANIFEST.txt"
SHA256SUMS_NAME = "SHA256SUMS.txt"
ARTIFACT_NAMES = frozenset({MANIFEST_NAME, SHA256SUMS_NAME})

HASH_BUFFER_SIZE = 256 * 1024

ProgressFn = Callable[[str], None]


@dataclass
class FileMetadata:
    rel_path: str  # POSIX separators, relative to the manifest root
    size: int
    mtime: str  # YYYY-MM-DDTHH:MM:SSZ
    sha256: str


def format_mtime(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(HASH_BUFFER_SIZE)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def is_utf8_name(name: str) -> bool:
    # Undecodable bytes come back from os.scandir as lone surrogates.
    try:
        name.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def iter_regular_files(root: Path, warnings: list[str] | None = None) -> Iterable[tuple[Path, os.stat_result]]:
    """Yield (path, stat) for regular files under root in directory order.

    Symlinks, special files and names that are not valid UTF-8 are skipped with
    a warning; the text artifacts and the catalog cannot hold the latter. Uses
    an explicit stack so deep trees do not hit the recursion limit.
    """
    stack: list[Path] = [root]
    while stack:
        d = stack.pop()
        with os.scandir(d) as it:
            entries = list(it)
        subdirs: list[Path] = []
        for e in entries:
            p = Path(e.path)
            if not is_utf8_name(e.name):
                msg = f"skipped non-UTF-8 name: {os.fsencode(e.path)!r}"
                logger.warning(msg)
                if warnings is not None:
                    warnings.append(msg)
                continue
            if e.is_symlink():
                msg = f"skipped symlink: {p}"
                logger.warning(msg)
                if warnings is not None:
                    warnings.append(msg)
                continue
            st = e.stat(follow_symlinks=False)
            if stat.S_ISDIR(st.st_mode):
                subdirs.append(p)
            elif stat.S_ISREG(st.st_mode):
                yield p, st
            else:
                msg = f"skipped special file: {p}"
                logger.warning(msg)
                if warnings is not None:
                    warnings.append(msg)
        # Reversed so the first subdirectory in listing order is walked first.
        stack.extend(reversed(subdirs))


def build_manifest(
    root: str | Path,
    progress: ProgressFn | None = None,
    warnings: list[str] | None = None,
) -> list[FileMetadata]:
    root_p = Path(root)
    if not root_p.is_dir():
        raise NotADirectoryError(str(root_p))
    logger.info("building manifest: %s", root_p)
    files: list[FileMetadata] = []
    for p, st in iter_regular_files(root_p, warnings):
        rel = p.relative_to(root_p).as_posix()
        if rel in ARTIFACT_NAMES:
            continue
        digest = sha256_file(p)
        files.append(FileMetadata(rel_path=rel, size=int(st.st_size), mtime=format_mtime(st.st_mtime), sha256=digest))
        logger.debug("hashed %s %s", digest, rel)
        if progress:
            progress(f"Calculated SHA256: {rel}")
    logger.info("manifest built: %d files, %d bytes", len(files), calculate_total_size(files))
    return files


def calculate_total_size(files: Iterable[FileMetadata]) -> int:
    return sum(int(f.size) for f in files)


def render_manifest(files: Iterable[FileMetadata]) -> str:
    return "".join(f"{f.rel_path}\n" for f in files)


def render_sha256sums(files: Iterable[FileMetadata]) -> str:
    return "".join(f"{f.sha256}  {f.rel_path}\n" for f in files)


def write_manifest_file(path: str | Path, files: list[FileMetadata]) -> Path:
    p = Path(path)
    p.write_text(render_manifest(files), encoding="utf-8", newline="\n")
    return p


def write_sha256sums_file(path: str | Path, files: list[FileMetadata]) -> Path:
    p = Path(path)
    p.write_text(render_sha256sums(files), encoding="utf-8", newline="\n")
    return p


def write_integrity_artifacts(root: str | Path, files: list[FileMetadata]) -> str:
    """Write MANIFEST.txt and SHA256SUMS.txt into root.

    Returns the SHA-256 of the SHA256SUMS.txt bytes, which the catalog keeps as
    checksum_manifest_hash.
    """
    root_p = Path(root)
    write_manifest_file(root_p / MANIFEST_NAME, files)
    sums = write_sha256sums_file(root_p / SHA256SUMS_NAME, files)
    return sha256_file(sums)


def read_sha256sums(path: str | Path) -> list[tuple[str, str]]:
    out: list[tuple[str, str]] = []
    for i, raw in enumerate(Path(path).read_text(encoding="utf-8").splitlines(), start=1):
        line = raw.rstrip("\r")
        if not line.strip():
            continue
        digest, sep, rel = line.partition("  ")
        if not sep or len(digest) != 64:
            raise ValueError(f"invalid checksum line at {path}:{i}: {line}")
        out.append((digest.lower(), rel.lstrip("*")))
    return out
