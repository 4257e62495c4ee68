"""Wrappers over the external imaging, writing, mount and QR programs.

Every call goes through a Runner (command_runner.run_command by default) so
tests and dry runs never touch real devices. Failures raise ExternalToolError
with guidance from classify_tool_failure, except generate_qrcode, which is
optional and reports failure by returning None.
"""

from __future__ import annotations

import logging
from pathlib import Path

from archive_errors import ArchiveError, StagingError
from command_runner import Runner, check_output, find_command, run_command

logger = logging.getLogger(__name__)


def create_iso(
    source_dir: str | Path,
    iso_path: str | Path,
    volume_label: str,
    *,
    runner: Runner = run_command,
    dry_run: bool = False,
) -> Path:
    src = Path(source_dir)
    out = Path(iso_path)
    if not src.is_dir():
        raise StagingError(f"image source is not a directory: {src}")
    out.parent.mkdir(parents=True, exist_ok=True)
    logger.info("creating image %s from %s (label %s)", out, src, volume_label)
    res = runner(
        "xorriso",
        ["-as", "mkisofs", "-r", "-J", "-V", volume_label, "-o", str(out), str(src)],
        dry_run=dry_run,
    )
    check_output("xorriso", res)
    return out


def burn_image(
    iso_path: str | Path,
    device: str,
    *,
    runner: Runner = run_command,
    dry_run: bool = False,
) -> None:
    logger.info("writing %s to %s", iso_path, device)
    res = runner("growisofs", ["-dvd-compat", "-Z", f"{device}={iso_path}"], dry_run=dry_run)
    check_output("growisofs", res)


def burn_directory(
    source_dir: str | Path,
    device: str,
    volume_label: str,
    *,
    runner: Runner = run_command,
    dry_run: bool = False,
) -> None:
    """Write a directory straight to the device without an intermediate image."""
    logger.info("writing %s directly to %s (label %s)", source_dir, device, volume_label)
    res = runner(
        "growisofs",
        ["-dvd-compat", "-Z", device, "-r", "-J", "-V", volume_label, str(source_dir)],
        dry_run=dry_run,
    )
    check_output("growisofs", res)


def mount_device(
    device: str,
    mountpoint: str | Path,
    *,
    runner: Runner = run_command,
    dry_run: bool = False,
) -> Path:
    mp = Path(mountpoint)
    if not dry_run:
        mp.mkdir(parents=True, exist_ok=True)
    res = runner("mount", [device, str(mp)], dry_run=dry_run)
    check_output("mount", res)
    logger.info("mounted %s at %s", device, mp)
    return mp


def unmount_device(
    mountpoint: str | Path,
    *,
    runner: Runner = run_command,
    dry_run: bool = False,
) -> None:
    res = runner("umount", [str(mountpoint)], dry_run=dry_run)
    check_output("umount", res)
    logger.info("unmounted %s", mountpoint)


def generate_qrcode(
    disc_id: str,
    output_path: str | Path,
    *,
    runner: Runner = run_command,
    dry_run: bool = False,
) -> Path | None:
    out = Path(output_path)
    fmt = "SVG" if out.suffix.lower() == ".svg" else "PNG"
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        res = runner("qrencode", ["-t", fmt, "-o", str(out), disc_id], dry_run=dry_run)
        check_output("qrencode", res)
    except (ArchiveError, OSError) as e:
        logger.warning("QR code generation failed for %s: %s", disc_id, e)
        return None
    logger.info("QR code written: %s", out)
    return out


def qrencode_available() -> bool:
    return find_command("qrencode") is not None
