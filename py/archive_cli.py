#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

from archive_config import ArchiveConfig, load_config
from archive_errors import ArchiveError
from archive_identity import read_disc_info
from archive_workflow import create_disc_archive, create_multi_disc_archive, resume_multi_disc_archive
from burn_session import delete_session, list_resumable_sessions, list_sessions, sessions_space_usage
from catalog_schema import get_schema_version, open_catalog
from catalog_store import (
    count_files_for_disc,
    disc_set_summary,
    format_size,
    get_disc,
    latest_verification_run,
    list_disc_sets,
    list_discs,
    safe_json,
    search_files,
)
from command_runner import check_dependencies
from media_tools import mount_device, unmount_device
from staging import check_capacity
from verification import record_verification, verify_disc, verify_multi_disc_set

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s.%(msecs)03d | %(levelname)s | %(name)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str = "INFO", log_file: str | None = None) -> None:
    lvl = getattr(logging, str(level).upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    root = logging.getLogger()
    root.setLevel(lvl)
    for h in list(root.handlers):
        root.removeHandler(h)
    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(lvl)
    ch.setFormatter(formatter)
    root.addHandler(ch)
    if log_file:
        p = Path(log_file)
        p.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(p, encoding="utf-8")
        fh.setLevel(lvl)
        fh.setFormatter(formatter)
        root.addHandler(fh)


def _emit(obj: Any) -> None:
    print(safe_json(obj))


def _progress(msg: str) -> None:
    print(msg, file=sys.stderr)


def _resolve_config(args: argparse.Namespace) -> ArchiveConfig:
    cfg = load_config(args.config) if args.config else load_config()
    if args.db:
        cfg.database_path = args.db
    if getattr(args, "device", None):
        cfg.device = args.device
    if getattr(args, "staging_dir", None):
        cfg.staging_dir = args.staging_dir
    if getattr(args, "capacity_gb", None):
        cfg.capacity_gb = int(args.capacity_gb)
    if getattr(args, "no_rsync", False):
        cfg.use_rsync = False
    if getattr(args, "no_qr", False):
        cfg.use_qrencode = False
    if getattr(args, "verify", False):
        cfg.auto_verify = True
    cfg.validate()
    return cfg


def cmd_init(args: argparse.Namespace, cfg: ArchiveConfig) -> int:
    con = open_catalog(cfg.database_file())
    try:
        version = get_schema_version(con)
    finally:
        con.close()
    deps = check_dependencies()
    _emit(
        {
            "db": str(cfg.database_file()),
            "schema_version": version,
            "missing_required": deps.missing_required,
            "missing_optional": deps.missing_optional,
        }
    )
    return 0


def cmd_deps(args: argparse.Namespace, cfg: ArchiveConfig) -> int:
    deps = check_dependencies()
    _emit({"found": deps.found, "missing_required": deps.missing_required, "missing_optional": deps.missing_optional})
    if not deps.ok:
        print(deps.message(), file=sys.stderr)
        return 1
    return 0


def _verify_after_burn(con: Any, cfg: ArchiveConfig, disc_id: str) -> bool:
    """Mount the freshly written disc, verify it and record the run."""
    mountpoint = cfg.staging_path() / f"{disc_id}_verify"
    mount_device(cfg.device, mountpoint)
    try:
        result = verify_disc(mountpoint)
    finally:
        unmount_device(mountpoint)
    record_verification(con, disc_id, result, device=cfg.device)
    if not result.success:
        logger.error("post-burn verification failed for %s: %s", disc_id, result.error_message)
    return result.success


def cmd_create(args: argparse.Namespace, cfg: ArchiveConfig) -> int:
    con = open_catalog(cfg.database_file())
    try:
        total, exceeds = check_capacity(args.sources, cfg.capacity_bytes)
        if args.multi or exceeds:
            if exceeds:
                logger.info("%s exceeds one %d GB disc, creating a multi-disc set", format_size(total), cfg.capacity_gb)
            res = create_multi_disc_archive(
                con,
                cfg,
                args.sources,
                base_id=args.disc_id,
                name=args.name,
                notes=args.notes,
                dry_run=args.dry_run,
                progress=_progress,
            )
            _emit(asdict(res))
        else:
            r = create_disc_archive(
                con,
                cfg,
                args.sources,
                disc_id=args.disc_id,
                notes=args.notes,
                dry_run=args.dry_run,
                progress=_progress,
                keep_staging=args.keep_staging,
            )
            _emit(asdict(r))
            if cfg.auto_verify and not args.dry_run and not _verify_after_burn(con, cfg, r.disc_id):
                return 2
    finally:
        con.close()
    return 0


def cmd_resume(args: argparse.Namespace, cfg: ArchiveConfig) -> int:
    con = open_catalog(cfg.database_file())
    try:
        res = resume_multi_disc_archive(con, cfg, args.session_id, dry_run=args.dry_run, progress=_progress)
    finally:
        con.close()
    _emit(asdict(res))
    return 0


def cmd_sessions(args: argparse.Namespace, cfg: ArchiveConfig) -> int:
    con = open_catalog(cfg.database_file())
    try:
        sessions = list_sessions(con) if args.all else list_resumable_sessions(con)
        for s in sessions:
            row = asdict(s)
            row["status"] = s.status.value
            _emit(row)
        print(f"staging space held by resumable sessions: {format_size(sessions_space_usage(con))}", file=sys.stderr)
    finally:
        con.close()
    return 0


def cmd_session_delete(args: argparse.Namespace, cfg: ArchiveConfig) -> int:
    con = open_catalog(cfg.database_file())
    try:
        deleted = delete_session(con, args.session_id)
    finally:
        con.close()
    if not deleted:
        raise SystemExit(f"session not found: {args.session_id}")
    _emit({"deleted": args.session_id})
    return 0


def cmd_verify(args: argparse.Namespace, cfg: ArchiveConfig) -> int:
    mountpoint = Path(args.mountpoint)
    mounted = False
    if args.mount:
        mount_device(cfg.device, mountpoint, dry_run=args.dry_run)
        mounted = True
    try:
        result = verify_disc(mountpoint, dry_run=args.dry_run)
        disc_id = args.disc_id
        if not disc_id:
            try:
                disc_id = read_disc_info(mountpoint).get("disc_id")
            except OSError as e:
                logger.warning("cannot read disc info at %s: %s", mountpoint, e)
        if disc_id:
            con = open_catalog(cfg.database_file())
            try:
                if get_disc(con, disc_id) is None:
                    logger.warning("disc %s is not in the catalog; result not recorded", disc_id)
                else:
                    record_verification(con, disc_id, result, device=cfg.device if args.mount else None)
            finally:
                con.close()
    finally:
        if mounted:
            unmount_device(mountpoint, dry_run=args.dry_run)
    _emit({"disc_id": disc_id, **asdict(result)})
    return 0 if result.success else 2


def cmd_verify_set(args: argparse.Namespace, cfg: ArchiveConfig) -> int:
    roots = args.mount_root or cfg.mount_roots
    con = open_catalog(cfg.database_file())
    try:
        res = verify_multi_disc_set(
            con,
            args.set_id,
            mount_roots=roots,
            record=not args.no_record,
            max_consecutive_failures=args.max_failures,
            dry_run=args.dry_run,
            progress=_progress,
        )
    finally:
        con.close()
    out = asdict(res)
    out["disc_results"] = [
        {"disc_id": disc_id, "state": st.state.value, "detail": st.describe()} for disc_id, st in res.disc_results
    ]
    _emit(out)
    return 0 if res.overall_success else 2


def cmd_search(args: argparse.Namespace, cfg: ArchiveConfig) -> int:
    if not (args.sha256 or args.path or args.name):
        raise SystemExit("one of --sha256, --path or --name is required")
    con = open_catalog(cfg.database_file())
    try:
        rows = search_files(con, sha256=args.sha256, path_substring=args.path, exact_filename=args.name, limit=args.limit)
    finally:
        con.close()
    for r in rows:
        _emit(asdict(r))
    print(f"{len(rows)} matches", file=sys.stderr)
    return 0


def cmd_list(args: argparse.Namespace, cfg: ArchiveConfig) -> int:
    con = open_catalog(cfg.database_file())
    try:
        for d in list_discs(con):
            row = asdict(d)
            row["files"] = count_files_for_disc(con, d.disc_id)
            last = latest_verification_run(con, d.disc_id)
            row["last_verified"] = last.verified_at if last else None
            row["last_verification_ok"] = last.success if last else None
            _emit(row)
    finally:
        con.close()
    return 0


def cmd_sets(args: argparse.Namespace, cfg: ArchiveConfig) -> int:
    con = open_catalog(cfg.database_file())
    try:
        for ds in list_disc_sets(con):
            summary = disc_set_summary(con, ds.set_id)
            row = asdict(ds)
            if summary is not None:
                row["discs_recorded"] = summary.discs_recorded
                row["missing_sequences"] = summary.missing_sequences
            _emit(row)
    finally:
        con.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="discvault", description="Write-once archive catalog")
    ap.add_argument("--db", default="", help="catalog database path (default: <data dir>/archive.db)")
    ap.add_argument("--config", default="", help="config.yaml path (default: $XDG_CONFIG_HOME/discvault/config.yaml)")
    ap.add_argument("--log-level", default="INFO")
    ap.add_argument("--log-file", default=None)
    sub = ap.add_subparsers(dest="command", required=True)

    sp = sub.add_parser("init", help="create or migrate the catalog")
    sp.set_defaults(func=cmd_init)

    sp = sub.add_parser("deps", help="check external tools")
    sp.set_defaults(func=cmd_deps)

    sp = sub.add_parser("create", help="stage, image, burn and index source folders")
    sp.add_argument("sources", nargs="+")
    sp.add_argument("--disc-id", default=None)
    sp.add_argument("--notes", default=None)
    sp.add_argument("--name", default=None, help="disc set name for multi-disc archives")
    sp.add_argument("--multi", action="store_true", help="always create a multi-disc set")
    sp.add_argument("--device", default=None)
    sp.add_argument("--staging-dir", default=None)
    sp.add_argument("--capacity-gb", type=int, default=None)
    sp.add_argument("--no-rsync", action="store_true")
    sp.add_argument("--no-qr", action="store_true")
    sp.add_argument("--keep-staging", action="store_true")
    sp.add_argument("--verify", action="store_true", help="mount and verify the disc after writing")
    sp.add_argument("--dry-run", action="store_true")
    sp.set_defaults(func=cmd_create)

    sp = sub.add_parser("resume", help="resume a paused multi-disc session")
    sp.add_argument("session_id")
    sp.add_argument("--device", default=None)
    sp.add_argument("--dry-run", action="store_true")
    sp.set_defaults(func=cmd_resume)

    sp = sub.add_parser("sessions", help="list burn sessions")
    sp.add_argument("--all", action="store_true", help="include completed and cancelled sessions")
    sp.set_defaults(func=cmd_sessions)

    sp = sub.add_parser("session-delete", help="delete a burn session and its staging dirs")
    sp.add_argument("session_id")
    sp.set_defaults(func=cmd_session_delete)

    sp = sub.add_parser("verify", help="verify a mounted disc")
    sp.add_argument("mountpoint")
    sp.add_argument("--disc-id", default=None)
    sp.add_argument("--mount", action="store_true", help="mount the configured device first")
    sp.add_argument("--device", default=None)
    sp.add_argument("--dry-run", action="store_true")
    sp.set_defaults(func=cmd_verify)

    sp = sub.add_parser("verify-set", help="verify every disc of a multi-disc set")
    sp.add_argument("set_id")
    sp.add_argument("--mount-root", action="append", default=None)
    sp.add_argument("--no-record", action="store_true")
    sp.add_argument("--max-failures", type=int, default=None)
    sp.add_argument("--dry-run", action="store_true")
    sp.set_defaults(func=cmd_verify_set)

    sp = sub.add_parser("search", help="search archived files")
    sp.add_argument("--sha256", default=None)
    sp.add_argument("--path", default=None, help="path substring")
    sp.add_argument("--name", default=None, help="exact file name")
    sp.add_argument("--limit", type=int, default=1000)
    sp.set_defaults(func=cmd_search)

    sp = sub.add_parser("list", help="list discs")
    sp.set_defaults(func=cmd_list)

    sp = sub.add_parser("sets", help="list disc sets")
    sp.set_defaults(func=cmd_sets)
    return ap


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        cfg = _resolve_config(args)
        setup_logging(args.log_level, args.log_file or cfg.log_file)
        return int(args.func(args, cfg))
    except ArchiveError as e:
        logger.debug("command failed", exc_info=True)
        raise SystemExit(f"error: {e}")


if __name__ == "__main__":
    raise SystemExit(main())
