from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from archive_errors import ExternalToolError

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ["xorriso", "sha256sum", "mount", "umount"]
OPTIONAL_TOOLS = ["qrencode", "rsync", "growisofs"]

INSTALL_HINTS = {
    "xorriso": "sudo apt install xorriso (Debian/Ubuntu) or sudo dnf install xorriso (Fedora/RHEL)",
    "growisofs": "sudo apt install dvd+rw-tools (Debian/Ubuntu) or sudo dnf install dvd+rw-tools (Fedora/RHEL)",
    "sha256sum": "usually included in coreutils, try: sudo apt install coreutils",
    "mount": "usually included in util-linux, try: sudo apt install util-linux",
    "umount": "usually included in util-linux, try: sudo apt install util-linux",
    "qrencode": "sudo apt install qrencode (Debian/Ubuntu) or sudo dnf install qrencode (Fedora/RHEL)",
    "rsync": "sudo apt install rsync (Debian/Ubuntu) or sudo dnf install rsync (Fedora/RHEL)",
}

# Checked in order; first match wins. Patterns are matched lower-cased.
FAILURE_PATTERNS: list[tuple[tuple[str, ...], str]] = [
    (("not blank", "is not empty", "media is not recognized as blank"),
     "the disc already holds data; insert a blank write-once disc"),
    (("no writable medium", "no medium", "medium not present", "no disc"),
     "no writable disc in the drive; insert a blank disc and retry"),
    (("device or resource busy", "busy"),
     "the device is busy; close programs using it or unmount it and retry"),
    (("permission denied", "operation not permitted"),
     "insufficient permissions for the device; check group membership (e.g. cdrom) or run with elevated rights"),
    (("no space left",),
     "not enough space; free space in the staging directory or choose a larger disc"),
]


@dataclass
class CommandOutput:
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    argv: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def details(self) -> str:
        parts = [p for p in [self.stdout.strip(), self.stderr.strip()] if p]
        return "\n".join(parts)


Runner = Callable[..., CommandOutput]


def run_command(
    program: str,
    args: Sequence[str],
    *,
    dry_run: bool = False,
    cwd: str | Path | None = None,
) -> CommandOutput:
    """Run program with args (never through a shell) and capture its output.

    In dry-run mode nothing is executed and a successful empty result is returned.
    """
    argv = [str(program), *[str(a) for a in args]]
    if dry_run:
        logger.info("[dry-run] would run: %s", " ".join(argv))
        return CommandOutput(exit_code=0, argv=argv)
    logger.debug("running: %s", " ".join(argv))
    try:
        cp = subprocess.run(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            shell=False,
            cwd=str(cwd) if cwd is not None else None,
        )
    except FileNotFoundError:
        raise ExternalToolError(program, None, f"{program}: command not found", guidance=install_hint(program))
    out = CommandOutput(exit_code=cp.returncode, stdout=cp.stdout or "", stderr=cp.stderr or "", argv=argv)
    if not out.success:
        logger.warning("command failed rc=%s: %s", cp.returncode, " ".join(argv))
        if out.stderr.strip():
            logger.warning("stderr: %s", out.stderr.strip())
    return out


def find_command(name: str) -> str | None:
    return shutil.which(name)


def install_hint(name: str) -> str | None:
    return INSTALL_HINTS.get(name)


@dataclass
class DependencyReport:
    found: dict[str, str] = field(default_factory=dict)
    missing_required: list[str] = field(default_factory=list)
    missing_optional: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing_required

    def message(self) -> str:
        if self.ok:
            return "all required tools found"
        lines = [f"missing required tools: {', '.join(self.missing_required)}", "please install the missing tools:"]
        for name in self.missing_required:
            lines.append(f"  {name}: {install_hint(name) or 'please install this tool'}")
        return "\n".join(lines)


def check_dependencies(which: Callable[[str], str | None] = find_command) -> DependencyReport:
    report = DependencyReport()
    for name in REQUIRED_TOOLS + OPTIONAL_TOOLS:
        path = which(name)
        if path:
            report.found[name] = path
        elif name in REQUIRED_TOOLS:
            report.missing_required.append(name)
        else:
            report.missing_optional.append(name)
    if report.missing_optional:
        logger.info("optional tools not found: %s", ", ".join(report.missing_optional))
    return report


def classify_tool_failure(text: str) -> str | None:
    s = (text or "").lower()
    for needles, guidance in FAILURE_PATTERNS:
        if any(n in s for n in needles):
            return guidance
    return None


def check_output(program: str, out: CommandOutput) -> CommandOutput:
    """Raise ExternalToolError with classified guidance unless out succeeded."""
    if out.success:
        return out
    details = out.details()
    raise ExternalToolError(program, out.exit_code, details, guidance=classify_tool_failure(details))
