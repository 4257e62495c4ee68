from __future__ import annotations

import logging
import os
import re
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable

from archive_errors import ArchiveError, DiscSetError, NotAnArchiveError
from archive_identity import DISC_INFO_NAME, generate_volume_label, read_disc_info
from catalog_schema import now_iso
from catalog_store import (
    VerificationRun,
    get_disc_set,
    insert_verification_run,
    insert_verification_runs,
    list_discs_in_set,
)
from command_runner import Runner, run_command
from manifest_builder import SHA256SUMS_NAME, ProgressFn

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 3

# sha256sum -c prints one "<path>: <status>" line per entry.
_STATUS_LINE = re.compile(r"^(?P<path>.+): (?P<status>OK|FAILED(?: open or read)?)\s*$")
# Missing files: GNU reports "sha256sum: <path>: No such file or directory" on
# stderr next to a FAILED line; other implementations print only this one.
_MISSING_LINE = re.compile(r"^(?:[\w.-]+: )?(?P<path>.+): No such file(?: or directory)?\s*$")


@dataclass
class DiscVerifyResult:
    success: bool
    files_checked: int = 0
    files_failed: int = 0
    error_message: str | None = None
    mountpoint: str | None = None


class VerificationState(str, Enum):
    VERIFIED = "Verified"
    FAILED = "Failed"
    MISSING = "Missing"
    NOT_ATTEMPTED = "NotAttempted"


@dataclass
class DiscVerificationStatus:
    state: VerificationState
    files_checked: int | None = 0
    files_failed: int | None = 0
    error: str | None = None
    mountpoint: str | None = None

    @classmethod
    def verified(cls, files_checked: int, files_failed: int = 0, mountpoint: str | None = None) -> DiscVerificationStatus:
        return cls(VerificationState.VERIFIED, files_checked=files_checked, files_failed=files_failed, mountpoint=mountpoint)

    @classmethod
    def failed(
        cls,
        error: str,
        mountpoint: str | None = None,
        files_checked: int | None = None,
        files_failed: int | None = None,
    ) -> DiscVerificationStatus:
        """Counts stay None when the check never produced any (unreadable volume)."""
        return cls(
            VerificationState.FAILED,
            files_checked=files_checked,
            files_failed=files_failed,
            error=error,
            mountpoint=mountpoint,
        )

    @classmethod
    def missing(cls) -> DiscVerificationStatus:
        return cls(VerificationState.MISSING)

    @classmethod
    def not_attempted(cls) -> DiscVerificationStatus:
        return cls(VerificationState.NOT_ATTEMPTED)

    @property
    def attempted(self) -> bool:
        return self.state in (VerificationState.VERIFIED, VerificationState.FAILED)

    def describe(self) -> str:
        if self.state == VerificationState.VERIFIED:
            return f"Verified ({self.files_checked} files, {self.files_failed} failed)"
        if self.state == VerificationState.FAILED:
            if self.files_checked is not None:
                return f"Failed ({self.files_failed} of {self.files_checked} files): {self.error}"
            return f"Failed: {self.error}"
        if self.state == VerificationState.MISSING:
            return "Missing/Not Found"
        return "Skipped"


@dataclass
class MultiDiscVerificationResult:
    set_id: str
    set_name: str
    total_discs: int
    discs_verified: int = 0
    discs_failed: int = 0
    discs_missing: int = 0
    discs_not_attempted: int = 0
    total_files_checked: int = 0
    total_files_failed: int = 0
    overall_success: bool = False
    disc_results: list[tuple[str, DiscVerificationStatus]] = field(default_factory=list)


def parse_sha256sum_output(stdout: str, stderr: str) -> tuple[int, int]:
    """Count (files_checked, files_failed) from sha256sum -c output."""
    checked = 0
    failed = 0
    failed_paths: set[str] = set()
    lines = f"{stdout}\n{stderr}".splitlines()
    for line in lines:
        m = _STATUS_LINE.match(line.strip())
        if not m:
            continue
        checked += 1
        if m.group("status") != "OK":
            failed += 1
            failed_paths.add(m.group("path"))
    for line in lines:
        s = line.strip()
        if _STATUS_LINE.match(s):
            continue
        m = _MISSING_LINE.match(s)
        if m and m.group("path") not in failed_paths:
            checked += 1
            failed += 1
            failed_paths.add(m.group("path"))
    return checked, failed


def verify_disc(
    mountpoint: str | Path,
    *,
    runner: Runner = run_command,
    dry_run: bool = False,
) -> DiscVerifyResult:
    """Re-hash a mounted volume against its SHA256SUMS.txt.

    The exit status of sha256sum is authoritative; the parsed counts are only
    diagnostic.
    """
    mp = Path(mountpoint)
    sums = mp / SHA256SUMS_NAME
    if not sums.is_file():
        raise NotAnArchiveError(f"{SHA256SUMS_NAME} not found at: {sums}")
    logger.info("verifying disc at %s", mp)
    out = runner("sha256sum", ["-c", SHA256SUMS_NAME], dry_run=dry_run, cwd=mp)
    checked, failed = parse_sha256sum_output(out.stdout, out.stderr)
    success = out.success and failed == 0
    error = None
    if not success:
        error = f"verification failed: {failed} of {checked} files failed (rc={out.exit_code})"
        details = out.details()
        if details:
            error += f"\n{details}"
        logger.warning("verification failed at %s: %d checked, %d failed", mp, checked, failed)
    else:
        logger.info("verification successful: %d files checked", checked)
    return DiscVerifyResult(
        success=success,
        files_checked=checked,
        files_failed=failed,
        error_message=error,
        mountpoint=str(mp),
    )


def record_verification(
    con: sqlite3.Connection,
    disc_id: str,
    result: DiscVerifyResult,
    device: str | None = None,
) -> int:
    return insert_verification_run(
        con,
        VerificationRun(
            disc_id=disc_id,
            verified_at=now_iso(),
            mountpoint=result.mountpoint,
            device=device,
            success=result.success,
            error_message=result.error_message,
            files_checked=result.files_checked,
            files_failed=result.files_failed,
        ),
    )


def _names_disc(name: str, disc_id: str) -> bool:
    # Bounded so disc 1 never matches disc 10's "..._10OF12" mount.
    upper = name.upper()
    for token in {disc_id.upper(), generate_volume_label(disc_id)}:
        if re.search(rf"(?<![A-Z0-9]){re.escape(token)}(?:OF\d+)?(?![A-Z0-9_-])", upper):
            return True
    return False


def _is_disc_dir(d: Path, disc_id: str) -> bool:
    info_path = d / DISC_INFO_NAME
    if info_path.is_file():
        try:
            info = read_disc_info(info_path)
        except OSError as e:
            logger.debug("unreadable %s: %s", info_path, e)
        else:
            if info.get("disc_id"):
                return info["disc_id"] == disc_id
    if _names_disc(d.name, disc_id):
        return (d / SHA256SUMS_NAME).is_file()
    return False


def find_disc_mountpoint(
    disc_id: str,
    mount_roots: Iterable[str | Path],
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> Path | None:
    """Search mount roots (bounded depth, explicit stack) for the volume of disc_id."""
    for root in mount_roots:
        r = Path(root)
        if not r.is_dir():
            continue
        stack: list[tuple[Path, int]] = [(r, 0)]
        while stack:
            d, depth = stack.pop()
            if _is_disc_dir(d, disc_id):
                logger.debug("disc %s found at %s", disc_id, d)
                return d
            if depth >= max_depth:
                continue
            try:
                with os.scandir(d) as it:
                    subdirs = [Path(e.path) for e in it if e.is_dir(follow_symlinks=False)]
            except OSError as e:
                logger.debug("cannot list %s: %s", d, e)
                continue
            stack.extend((s, depth + 1) for s in reversed(subdirs))
    return None


def aggregate_results(
    set_id: str,
    set_name: str,
    disc_results: list[tuple[str, DiscVerificationStatus]],
) -> MultiDiscVerificationResult:
    res = MultiDiscVerificationResult(set_id=set_id, set_name=set_name, total_discs=len(disc_results))
    for _disc_id, st in disc_results:
        if st.state == VerificationState.VERIFIED:
            res.discs_verified += 1
            res.total_files_checked += st.files_checked
            res.total_files_failed += st.files_failed
        elif st.state == VerificationState.FAILED:
            res.discs_failed += 1
        elif st.state == VerificationState.MISSING:
            res.discs_missing += 1
        else:
            res.discs_not_attempted += 1
    res.overall_success = res.discs_failed == 0 and res.discs_missing == 0
    res.disc_results = list(disc_results)
    return res


def verify_multi_disc_set(
    con: sqlite3.Connection,
    set_id: str,
    *,
    mount_roots: Iterable[str | Path],
    runner: Runner = run_command,
    record: bool = True,
    max_consecutive_failures: int | None = None,
    dry_run: bool = False,
    progress: ProgressFn | None = None,
) -> MultiDiscVerificationResult:
    """Verify every disc of a set that can be found under mount_roots.

    Nothing is written while searching and verifying. When record is set, one
    verification run per attempted disc is inserted afterwards in a single
    transaction.
    """
    ds = get_disc_set(con, set_id)
    if ds is None:
        raise DiscSetError(f"disc set not found: {set_id}")
    roots = [Path(r) for r in mount_roots]
    discs = list_discs_in_set(con, set_id)
    logger.info("verifying set %s: %d discs recorded", set_id, len(discs))

    results: list[tuple[str, DiscVerificationStatus]] = []
    consecutive = 0
    for disc in discs:
        if max_consecutive_failures is not None and consecutive >= max_consecutive_failures:
            results.append((disc.disc_id, DiscVerificationStatus.not_attempted()))
            continue
        if progress:
            progress(f"Looking for disc {disc.sequence_number}/{ds.disc_count}: {disc.disc_id}")
        mp = find_disc_mountpoint(disc.disc_id, roots)
        if mp is None:
            logger.warning("disc %s not found under %s", disc.disc_id, ", ".join(str(r) for r in roots))
            results.append((disc.disc_id, DiscVerificationStatus.missing()))
            consecutive += 1
            continue
        try:
            r = verify_disc(mp, runner=runner, dry_run=dry_run)
        except (ArchiveError, OSError) as e:
            logger.warning("disc %s could not be verified: %s", disc.disc_id, e)
            results.append((disc.disc_id, DiscVerificationStatus.failed(str(e), mountpoint=str(mp))))
            consecutive += 1
            continue
        if r.success:
            results.append((disc.disc_id, DiscVerificationStatus.verified(r.files_checked, r.files_failed, str(mp))))
            consecutive = 0
        else:
            results.append(
                (
                    disc.disc_id,
                    DiscVerificationStatus.failed(
                        r.error_message or "verification failed",
                        str(mp),
                        files_checked=r.files_checked,
                        files_failed=r.files_failed,
                    ),
                )
            )
            consecutive += 1
        if progress:
            progress(f"Disc {disc.disc_id}: {results[-1][1].describe()}")

    res = aggregate_results(set_id, ds.name, results)
    res.total_discs = max(ds.disc_count, len(discs))
    if record:
        ts = now_iso()
        runs = [
            VerificationRun(
                disc_id=disc_id,
                verified_at=ts,
                mountpoint=st.mountpoint,
                success=st.state == VerificationState.VERIFIED,
                error_message=st.error,
                files_checked=st.files_checked,
                files_failed=st.files_failed,
            )
            for disc_id, st in results
            if st.attempted
        ]
        if runs:
            insert_verification_runs(con, runs)
    logger.info(
        "set %s: verified=%d failed=%d missing=%d files=%d failed_files=%d",
        set_id,
        res.discs_verified,
        res.discs_failed,
        res.discs_missing,
        res.total_files_checked,
        res.total_files_failed,
    )
    return res
