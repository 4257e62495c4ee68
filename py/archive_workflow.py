"""Disc creation workflows.

One volume goes through

    IDLE -> STAGING -> MANIFESTING -> IMAGING -> WRITING -> INDEXING -> QR -> COMPLETE

(IMAGING is skipped for the direct burn method, QR when qrencode is disabled).
Any step may move to ERROR. Capacity is checked before IMAGING so nothing
irreversible happens for an oversized volume.

dry_run only affects external programs: staging, manifests and catalog rows are
still produced, and the staging directory is kept for inspection.

Multi-disc archives plan the layout first, create the disc set and a burn
session, then run the single-volume pipeline once per planned disc, saving the
session after every disc. The plan is stored in the session so a resumed job
writes exactly the layout it started with.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable

from archive_config import ArchiveConfig
from archive_errors import (
    CapacityExceededError,
    DiscSetError,
    InvalidDiscIdError,
    InvalidTransitionError,
    StagingError,
)
from archive_identity import (
    generate_multi_disc_id,
    generate_multi_disc_volume_label,
    generate_volume_label,
    next_disc_id,
    tool_version,
    validate_disc_id,
    write_disc_info,
)
from burn_session import BurnSession, SessionStatus, load_session, save_session, start_session
from catalog_schema import now_iso
from catalog_store import (
    Disc,
    DiscSet,
    create_disc_set,
    file_records_from_manifest,
    get_disc,
    get_disc_set,
    index_disc,
    set_disc_qr_path,
)
from command_runner import Runner, run_command
from manifest_builder import ARTIFACT_NAMES, ProgressFn, build_manifest, calculate_total_size, write_integrity_artifacts
from media_tools import burn_directory, burn_image, create_iso, generate_qrcode
from staging import (
    DiscPlan,
    PlanEntry,
    StageResult,
    check_capacity,
    create_disc_layout,
    plan_disc_layout,
    remove_staging_dir,
    stage_disc_plan,
    stage_folders,
)

logger = logging.getLogger(__name__)

# Kept free on every planned disc for DISC_INFO.txt.
ARTIFACT_RESERVE_BYTES = 1024 * 1024


class WorkflowStep(str, Enum):
    IDLE = "idle"
    STAGING = "staging"
    MANIFESTING = "manifesting"
    IMAGING = "imaging"
    WRITING = "writing"
    INDEXING = "indexing"
    QR = "qr"
    COMPLETE = "complete"
    ERROR = "error"


TRANSITIONS: dict[WorkflowStep, frozenset[WorkflowStep]] = {
    WorkflowStep.IDLE: frozenset({WorkflowStep.STAGING}),
    WorkflowStep.STAGING: frozenset({WorkflowStep.MANIFESTING}),
    WorkflowStep.MANIFESTING: frozenset({WorkflowStep.IMAGING, WorkflowStep.WRITING}),
    WorkflowStep.IMAGING: frozenset({WorkflowStep.WRITING}),
    WorkflowStep.WRITING: frozenset({WorkflowStep.INDEXING}),
    WorkflowStep.INDEXING: frozenset({WorkflowStep.QR, WorkflowStep.COMPLETE}),
    WorkflowStep.QR: frozenset({WorkflowStep.COMPLETE}),
    WorkflowStep.COMPLETE: frozenset(),
    WorkflowStep.ERROR: frozenset(),
}


class WorkflowState:
    def __init__(self, on_change: Callable[[WorkflowStep], None] | None = None):
        self.step = WorkflowStep.IDLE
        self.history: list[WorkflowStep] = [WorkflowStep.IDLE]
        self.error: str | None = None
        self._on_change = on_change

    @property
    def finished(self) -> bool:
        return self.step in (WorkflowStep.COMPLETE, WorkflowStep.ERROR)

    def _set(self, step: WorkflowStep) -> None:
        self.step = step
        self.history.append(step)
        logger.debug("workflow step: %s", step.value)
        if self._on_change:
            self._on_change(step)

    def advance(self, step: WorkflowStep) -> None:
        if step == WorkflowStep.ERROR:
            raise InvalidTransitionError("use fail() to enter the error step")
        if step not in TRANSITIONS[self.step]:
            raise InvalidTransitionError(f"invalid workflow transition: {self.step.value} -> {step.value}")
        self._set(step)

    def fail(self, error: str) -> None:
        if self.finished:
            raise InvalidTransitionError(f"workflow already finished ({self.step.value})")
        self.error = error
        self._set(WorkflowStep.ERROR)


@dataclass
class ArchiveResult:
    disc_id: str
    volume_label: str
    disc_root: str
    files: int
    total_size: int
    checksum_manifest_hash: str
    iso_path: str | None = None
    iso_size: int | None = None
    qr_path: str | None = None
    set_id: str | None = None
    sequence_number: int | None = None
    dry_run: bool = False
    warnings: list[str] = field(default_factory=list)


@dataclass
class MultiDiscResult:
    set_id: str
    session_id: str
    total_discs: int
    discs: list[ArchiveResult] = field(default_factory=list)


def _emit(progress: ProgressFn | None, msg: str) -> None:
    logger.info(msg)
    if progress:
        progress(msg)


def _run_volume(
    con: sqlite3.Connection,
    config: ArchiveConfig,
    *,
    disc_id: str,
    volume_label: str,
    notes: str | None,
    source_roots: list[str],
    stage: Callable[[Path], StageResult],
    disc_set: DiscSet | None = None,
    sequence: int | None = None,
    dry_run: bool,
    runner: Runner,
    progress: ProgressFn | None,
    state: WorkflowState,
    keep_staging: bool,
) -> ArchiveResult:
    staging_dir = config.staging_path()
    try:
        state.advance(WorkflowStep.STAGING)
        remove_staging_dir(staging_dir / disc_id)
        disc_root = create_disc_layout(staging_dir, disc_id)
        staged = stage(disc_root)
        if not staged.staged:
            raise StagingError("no source folders were staged")

        state.advance(WorkflowStep.MANIFESTING)
        created_at = now_iso()
        write_disc_info(
            disc_root,
            disc_id,
            volume_label=volume_label,
            notes=notes,
            source_roots=source_roots,
            set_id=disc_set.set_id if disc_set else None,
            sequence=sequence,
            total=disc_set.disc_count if disc_set else None,
            created_at=created_at,
        )
        files = build_manifest(disc_root, progress=progress, warnings=staged.warnings)
        manifest_hash = write_integrity_artifacts(disc_root, files)
        total = calculate_total_size(files) + sum((disc_root / name).stat().st_size for name in ARTIFACT_NAMES)
        if total > config.capacity_bytes:
            raise CapacityExceededError(total, config.capacity_bytes)

        iso_path: Path | None = None
        iso_size = total
        if config.burn_method == "iso":
            state.advance(WorkflowStep.IMAGING)
            iso_path = create_iso(disc_root, staging_dir / f"{disc_id}.iso", volume_label, runner=runner, dry_run=dry_run)
            if iso_path.exists():
                iso_size = iso_path.stat().st_size
            state.advance(WorkflowStep.WRITING)
            burn_image(iso_path, config.device, runner=runner, dry_run=dry_run)
        else:
            state.advance(WorkflowStep.WRITING)
            burn_directory(disc_root, config.device, volume_label, runner=runner, dry_run=dry_run)

        state.advance(WorkflowStep.INDEXING)
        disc = Disc(
            disc_id=disc_id,
            volume_label=volume_label,
            created_at=created_at,
            notes=notes,
            iso_size=iso_size,
            burn_device=config.device,
            checksum_manifest_hash=manifest_hash,
            source_roots=source_roots,
            tool_version=tool_version(),
        )
        index_disc(
            con,
            disc,
            file_records_from_manifest(disc_id, files),
            set_id=disc_set.set_id if disc_set is not None and sequence is not None else None,
            sequence_number=sequence,
        )

        qr_path: Path | None = None
        if config.use_qrencode:
            state.advance(WorkflowStep.QR)
            qr_path = generate_qrcode(disc_id, config.qr_path() / f"{disc_id}.png", runner=runner, dry_run=dry_run)
            if qr_path is not None:
                set_disc_qr_path(con, disc_id, str(qr_path))
        state.advance(WorkflowStep.COMPLETE)
    except Exception as e:
        if not state.finished:
            state.fail(str(e))
        raise

    if not dry_run:
        if iso_path is not None and not config.keep_iso:
            iso_path.unlink(missing_ok=True)
        if not keep_staging:
            remove_staging_dir(disc_root)

    _emit(progress, f"Disc {disc_id} complete: {len(files)} files, {total} bytes")
    return ArchiveResult(
        disc_id=disc_id,
        volume_label=volume_label,
        disc_root=str(disc_root),
        files=len(files),
        total_size=total,
        checksum_manifest_hash=manifest_hash,
        iso_path=str(iso_path) if iso_path is not None else None,
        iso_size=iso_size,
        qr_path=str(qr_path) if qr_path is not None else None,
        set_id=disc_set.set_id if disc_set else None,
        sequence_number=sequence,
        dry_run=dry_run,
        warnings=list(staged.warnings),
    )


def create_disc_archive(
    con: sqlite3.Connection,
    config: ArchiveConfig,
    sources: Iterable[str | Path],
    *,
    disc_id: str | None = None,
    notes: str | None = None,
    dry_run: bool = False,
    runner: Runner = run_command,
    progress: ProgressFn | None = None,
    state: WorkflowState | None = None,
    keep_staging: bool = False,
) -> ArchiveResult:
    src = [str(s) for s in sources]
    did = disc_id or next_disc_id(con)
    validate_disc_id(did)
    if get_disc(con, did) is not None:
        raise InvalidDiscIdError(f"disc id already exists in catalog: {did}")
    total, exceeds = check_capacity(src, config.capacity_bytes)
    if exceeds:
        raise CapacityExceededError(total, config.capacity_bytes)
    _emit(progress, f"Creating disc {did} from {len(src)} folders{' (dry run)' if dry_run else ''}")

    def _stage(disc_root: Path) -> StageResult:
        return stage_folders(disc_root, src, use_rsync=config.use_rsync, progress=progress, runner=runner)

    return _run_volume(
        con,
        config,
        disc_id=did,
        volume_label=generate_volume_label(did),
        notes=notes,
        source_roots=src,
        stage=_stage,
        dry_run=dry_run,
        runner=runner,
        progress=progress,
        state=state or WorkflowState(),
        keep_staging=keep_staging,
    )


def _plans_to_config(plans: list[DiscPlan]) -> list[dict]:
    return [asdict(p) for p in plans]


def _plans_from_config(raw: list[dict]) -> list[DiscPlan]:
    return [
        DiscPlan(
            sequence=int(p["sequence"]),
            entries=[PlanEntry(**e) for e in p.get("entries", [])],
            total_size=int(p.get("total_size", 0)),
        )
        for p in raw
    ]


def _run_disc_sequence(
    con: sqlite3.Connection,
    config: ArchiveConfig,
    session: BurnSession,
    disc_set: DiscSet,
    plans: list[DiscPlan],
    *,
    dry_run: bool,
    runner: Runner,
    progress: ProgressFn | None,
) -> MultiDiscResult:
    base_id = str(session.config["base_id"])
    notes = session.config.get("notes")
    result = MultiDiscResult(set_id=disc_set.set_id, session_id=session.session_id, total_discs=len(plans))
    for plan in plans:
        seq = plan.sequence
        disc_id = generate_multi_disc_id(base_id, seq)
        if seq in session.completed_discs:
            continue
        if get_disc(con, disc_id) is not None:
            # Indexed before the last interruption; only the checkpoint was lost.
            logger.info("disc %s already in catalog, marking complete", disc_id)
            session.update_progress(seq)
            save_session(con, session)
            continue
        _emit(progress, f"Disc {seq}/{len(plans)}: {disc_id} ({plan.total_size} bytes planned)")

        def _stage(disc_root: Path, plan: DiscPlan = plan) -> StageResult:
            return stage_disc_plan(plan, disc_root, use_rsync=config.use_rsync, progress=progress, runner=runner)

        try:
            r = _run_volume(
                con,
                config,
                disc_id=disc_id,
                volume_label=generate_multi_disc_volume_label(base_id, seq, len(plans)),
                notes=notes or f"Disc {seq} of {len(plans)} in multi-disc set {disc_set.set_id}",
                source_roots=plan.source_roots(),
                stage=_stage,
                disc_set=disc_set,
                sequence=seq,
                dry_run=dry_run,
                runner=runner,
                progress=progress,
                state=WorkflowState(),
                keep_staging=dry_run,
            )
        except Exception as e:
            session.record_failure(seq)
            session.pause(
                {
                    "staging_dirs": [str(config.staging_path() / disc_id)],
                    "failed_disc": seq,
                    "error": str(e),
                }
            )
            save_session(con, session)
            logger.error("disc %d/%d failed, session %s paused: %s", seq, len(plans), session.session_id, e)
            raise
        session.update_progress(seq)
        session.staging_state = None
        save_session(con, session)
        result.discs.append(r)

    session.complete()
    save_session(con, session)
    _emit(progress, f"Multi-disc set {disc_set.set_id} complete: {len(plans)} discs")
    return result


def create_multi_disc_archive(
    con: sqlite3.Connection,
    config: ArchiveConfig,
    sources: Iterable[str | Path],
    *,
    base_id: str | None = None,
    name: str | None = None,
    notes: str | None = None,
    dry_run: bool = False,
    runner: Runner = run_command,
    progress: ProgressFn | None = None,
) -> MultiDiscResult:
    src = [str(s) for s in sources]
    bid = base_id or next_disc_id(con)
    validate_disc_id(bid)
    plans = plan_disc_layout(src, config.capacity_bytes, progress=progress, reserve_bytes=ARTIFACT_RESERVE_BYTES)
    if not plans:
        raise StagingError("no source folders to archive")
    # The longest per-volume id must still be a valid disc id.
    validate_disc_id(generate_multi_disc_id(bid, len(plans)))

    set_name = name or f"Multi-disc archive: {bid}"
    disc_set = create_disc_set(
        con,
        set_name,
        total_size=sum(p.total_size for p in plans),
        disc_count=len(plans),
        description=notes,
        source_roots=src,
    )
    session = BurnSession.new(
        disc_set.set_id,
        set_name,
        len(plans),
        source_folders=src,
        config={
            "base_id": bid,
            "notes": notes,
            "capacity_bytes": config.capacity_bytes,
            "burn_method": config.burn_method,
            "device": config.device,
            "plans": _plans_to_config(plans),
        },
    )
    start_session(con, session)
    _emit(progress, f"Disc set {disc_set.set_id} created: {len(plans)} discs, session {session.session_id}")
    return _run_disc_sequence(
        con, config, session, disc_set, plans, dry_run=dry_run, runner=runner, progress=progress
    )


def resume_multi_disc_archive(
    con: sqlite3.Connection,
    config: ArchiveConfig,
    session_id: str,
    *,
    dry_run: bool = False,
    runner: Runner = run_command,
    progress: ProgressFn | None = None,
) -> MultiDiscResult:
    session = load_session(con, session_id)
    if session is None:
        raise DiscSetError(f"burn session not found: {session_id}")
    if session.status == SessionStatus.PAUSED:
        session.resume()
    elif session.status != SessionStatus.ACTIVE:
        raise InvalidTransitionError(f"session {session_id} is {session.status.value} and cannot be resumed")
    disc_set = get_disc_set(con, session.set_id)
    if disc_set is None:
        raise DiscSetError(f"disc set not found: {session.set_id}")
    plans = _plans_from_config(session.config.get("plans") or [])
    if not plans:
        raise DiscSetError(f"session {session_id} has no stored disc plan")
    save_session(con, session)
    _emit(progress, f"Resuming session {session_id} at disc {session.current_disc}/{session.total_discs}")
    return _run_disc_sequence(
        con, config, session, disc_set, plans, dry_run=dry_run, runner=runner, progress=progress
    )
