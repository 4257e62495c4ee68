"""Staging: copy source folders into the on-disk layout of one volume.

Layout of a staged volume:

    <staging_dir>/<disc_id>/
        ARCHIVE/<source basename>/...
        DISC_INFO.txt, MANIFEST.txt, SHA256SUMS.txt   (written later)

Sources are never modified. Missing or non-directory sources are skipped with a
warning; everything else that goes wrong while copying propagates.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from archive_errors import CapacityExceededError, StagingError
from archive_identity import validate_disc_id
from command_runner import Runner, check_output, find_command, run_command
from catalog_store import format_size
from manifest_builder import ProgressFn, is_utf8_name, iter_regular_files

logger = logging.getLogger(__name__)

ARCHIVE_DIR_NAME = "ARCHIVE"
PROGRESS_EVERY_FILES = 100


@dataclass
class TreeStats:
    files: int = 0
    bytes: int = 0


@dataclass
class StageResult:
    staged: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    files: int = 0
    bytes: int = 0
    method: str = "copy"
    warnings: list[str] = field(default_factory=list)


@dataclass
class PlanEntry:
    source_root: str  # the source folder this entry came from
    rel_path: str  # relative to source_root; "" means the whole folder
    size: int

    @property
    def is_whole_folder(self) -> bool:
        return self.rel_path == ""


@dataclass
class DiscPlan:
    sequence: int
    entries: list[PlanEntry] = field(default_factory=list)
    total_size: int = 0

    def source_roots(self) -> list[str]:
        out: list[str] = []
        for e in self.entries:
            if e.source_root not in out:
                out.append(e.source_root)
        return out


def _emit(progress: ProgressFn | None, msg: str) -> None:
    if progress:
        progress(msg)


def count_tree(path: str | Path) -> TreeStats:
    st = TreeStats()
    for _p, s in iter_regular_files(Path(path)):
        st.files += 1
        st.bytes += int(s.st_size)
    return st


def _usable_sources(
    sources: Iterable[str | Path],
    warnings: list[str],
    skipped: list[str] | None = None,
) -> list[Path]:
    out: list[Path] = []
    for raw in sources:
        p = Path(raw)
        if not p.exists():
            msg = f"source folder does not exist, skipped: {p}"
        elif not p.is_dir():
            msg = f"source is not a directory, skipped: {p}"
        else:
            out.append(p)
            continue
        logger.warning(msg)
        warnings.append(msg)
        if skipped is not None:
            skipped.append(str(p))
    return out


def _check_unique_basenames(sources: list[Path]) -> None:
    seen: dict[str, Path] = {}
    for p in sources:
        name = p.resolve().name
        if name in seen:
            raise StagingError(f"two sources share the folder name '{name}': {seen[name]} and {p}")
        seen[name] = p


def create_disc_layout(staging_dir: str | Path, disc_id: str) -> Path:
    validate_disc_id(disc_id)
    disc_root = Path(staging_dir) / disc_id
    (disc_root / ARCHIVE_DIR_NAME).mkdir(parents=True, exist_ok=True)
    logger.debug("disc layout ready: %s", disc_root)
    return disc_root


def copy_tree(
    src: Path,
    dest: Path,
    *,
    progress: ProgressFn | None = None,
    counter: TreeStats | None = None,
    total_files: int = 0,
    warnings: list[str] | None = None,
) -> TreeStats:
    """Recursive copy with an explicit stack; skips what iter_regular_files skips."""
    copied = TreeStats()
    counter = counter if counter is not None else TreeStats()
    stack: list[tuple[Path, Path]] = [(src, dest)]
    while stack:
        s_dir, d_dir = stack.pop()
        d_dir.mkdir(parents=True, exist_ok=True)
        with os.scandir(s_dir) as it:
            entries = list(it)
        subdirs: list[tuple[Path, Path]] = []
        for e in entries:
            s = Path(e.path)
            d = d_dir / e.name
            if not is_utf8_name(e.name):
                msg = f"skipped non-UTF-8 name: {os.fsencode(e.path)!r}"
                logger.warning(msg)
                if warnings is not None:
                    warnings.append(msg)
                continue
            if e.is_symlink():
                msg = f"skipped symlink: {s}"
                logger.warning(msg)
                if warnings is not None:
                    warnings.append(msg)
                continue
            st = e.stat(follow_symlinks=False)
            if stat.S_ISDIR(st.st_mode):
                subdirs.append((s, d))
            elif stat.S_ISREG(st.st_mode):
                shutil.copy2(s, d)
                copied.files += 1
                copied.bytes += int(st.st_size)
                counter.files += 1
                counter.bytes += int(st.st_size)
                if counter.files % PROGRESS_EVERY_FILES == 0:
                    _emit(progress, f"Copied {counter.files}/{total_files or '?'} files ({format_size(counter.bytes)})")
            else:
                msg = f"skipped special file: {s}"
                logger.warning(msg)
                if warnings is not None:
                    warnings.append(msg)
        stack.extend(reversed(subdirs))
    return copied


def _rsync_folder(src: Path, dest: Path, *, dry_run: bool, runner: Runner) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    # Trailing slash: copy the folder's contents into dest, not dest/<name>.
    # --no-links/--no-devices/--no-specials keep rsync to regular files and dirs
    # like the built-in copy.
    args = ["-a", "--delete", "--no-links", "--no-devices", "--no-specials", f"{src}/", str(dest)]
    out = runner("rsync", args, dry_run=dry_run)
    check_output("rsync", out)


def stage_folders(
    disc_root: str | Path,
    sources: Iterable[str | Path],
    *,
    use_rsync: bool = True,
    dry_run: bool = False,
    progress: ProgressFn | None = None,
    runner: Runner = run_command,
) -> StageResult:
    result = StageResult()
    usable = _usable_sources(sources, result.warnings, result.skipped)
    _check_unique_basenames(usable)

    archive_dir = Path(disc_root) / ARCHIVE_DIR_NAME
    archive_dir.mkdir(parents=True, exist_ok=True)

    totals = TreeStats()
    for src in usable:
        s = count_tree(src)
        totals.files += s.files
        totals.bytes += s.bytes
    _emit(progress, f"Found {totals.files} files ({format_size(totals.bytes)}) in {len(usable)} folders")

    rsync = use_rsync and find_command("rsync") is not None
    if use_rsync and not rsync:
        logger.info("rsync not found, using built-in copy")
    result.method = "rsync" if rsync else "copy"

    counter = TreeStats()
    for i, src in enumerate(usable, start=1):
        dest = archive_dir / src.resolve().name
        _emit(progress, f"Staging folder {i}/{len(usable)}: {src.name}")
        logger.info("staging %s -> %s (%s)", src, dest, result.method)
        if rsync:
            _rsync_folder(src, dest, dry_run=dry_run, runner=runner)
            s = count_tree(src)
            counter.files += s.files
            counter.bytes += s.bytes
        elif dry_run:
            logger.info("[dry-run] would copy %s -> %s", src, dest)
            s = count_tree(src)
            counter.files += s.files
            counter.bytes += s.bytes
        else:
            copy_tree(src, dest, progress=progress, counter=counter, total_files=totals.files, warnings=result.warnings)
        result.staged.append(str(dest))
        _emit(progress, f"Finished folder {i}/{len(usable)}: {src.name}")

    result.files = counter.files
    result.bytes = counter.bytes
    _emit(progress, f"Staged {len(result.staged)} folders ({result.files} files, {format_size(result.bytes)})")
    return result


def check_capacity(sources: Iterable[str | Path], capacity_bytes: int) -> tuple[int, bool]:
    total = 0
    for p in _usable_sources(sources, []):
        total += count_tree(p).bytes
    return total, total > int(capacity_bytes)


def plan_disc_layout(
    sources: Iterable[str | Path],
    capacity_bytes: int,
    progress: ProgressFn | None = None,
    reserve_bytes: int = 0,
) -> list[DiscPlan]:
    """First-fit packing of source folders onto discs, in source order.

    A folder that fits on one disc is kept whole. A folder larger than one disc
    is split at file granularity. A single file larger than a disc is an error.
    reserve_bytes is kept free on every disc for DISC_INFO.txt and similar.
    """
    capacity = int(capacity_bytes) - int(reserve_bytes)
    if capacity <= 0:
        raise StagingError(f"disc capacity must exceed the reserve (got {capacity_bytes}, reserve {reserve_bytes})")
    usable = _usable_sources(sources, [])
    _check_unique_basenames(usable)
    plans: list[DiscPlan] = []

    def _place(entry: PlanEntry) -> DiscPlan:
        for plan in plans:
            if plan.total_size + entry.size <= capacity:
                break
        else:
            plan = DiscPlan(sequence=len(plans) + 1)
            plans.append(plan)
        plan.entries.append(entry)
        plan.total_size += entry.size
        return plan

    for src in usable:
        stats = count_tree(src)
        root = str(src)
        if stats.bytes <= capacity:
            plan = _place(PlanEntry(source_root=root, rel_path="", size=stats.bytes))
            _emit(progress, f"Planned {src.name} ({format_size(stats.bytes)}) on disc {plan.sequence}")
            continue
        _emit(progress, f"Splitting {src.name} ({format_size(stats.bytes)}) across discs")
        for p, st in iter_regular_files(src):
            size = int(st.st_size)
            if size > capacity:
                raise CapacityExceededError(size, capacity)
            _place(PlanEntry(source_root=root, rel_path=p.relative_to(src).as_posix(), size=size))

    _emit(progress, f"Planned {len(plans)} discs")
    logger.info("planned %d discs for %d sources", len(plans), len(usable))
    return plans


def stage_disc_plan(
    plan: DiscPlan,
    disc_root: str | Path,
    *,
    use_rsync: bool = True,
    dry_run: bool = False,
    progress: ProgressFn | None = None,
    runner: Runner = run_command,
) -> StageResult:
    result = StageResult()
    archive_dir = Path(disc_root) / ARCHIVE_DIR_NAME
    archive_dir.mkdir(parents=True, exist_ok=True)

    whole = [Path(e.source_root) for e in plan.entries if e.is_whole_folder]
    if whole:
        sub = stage_folders(disc_root, whole, use_rsync=use_rsync, dry_run=dry_run, progress=progress, runner=runner)
        result.method = sub.method
        result.staged.extend(sub.staged)
        result.skipped.extend(sub.skipped)
        result.warnings.extend(sub.warnings)
        result.files += sub.files
        result.bytes += sub.bytes

    parts = [e for e in plan.entries if not e.is_whole_folder]
    for n, e in enumerate(parts, start=1):
        src_root = Path(e.source_root)
        src = src_root / e.rel_path
        dest = archive_dir / src_root.resolve().name / e.rel_path
        if not dry_run:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest)
        result.files += 1
        result.bytes += e.size
        if n % PROGRESS_EVERY_FILES == 0:
            _emit(progress, f"Copied {n}/{len(parts)} split files")
        staged_root = str(archive_dir / src_root.resolve().name)
        if staged_root not in result.staged:
            result.staged.append(staged_root)
    if parts:
        _emit(progress, f"Staged {len(parts)} split files for disc {plan.sequence}")
    return result


def remove_staging_dir(path: str | Path) -> bool:
    p = Path(path)
    if not p.exists():
        return True
    try:
        shutil.rmtree(p)
    except OSError as e:
        logger.warning("failed to remove staging dir %s: %s", p, e)
        return False
    logger.info("removed staging dir %s", p)
    return True
