"""
Shared fixtures: temporary catalog, fake command runner, small source trees.
"""

import sys
from pathlib import Path

import pytest

MODULE_DIR = Path(__file__).resolve().parent.parent / "py"
if str(MODULE_DIR) not in sys.path:
    sys.path.insert(0, str(MODULE_DIR))

from archive_config import ArchiveConfig  # noqa: E402
from catalog_schema import open_catalog  # noqa: E402
from command_runner import CommandOutput  # noqa: E402


class FakeRunner:
    """Records calls; answers with a canned CommandOutput per program.

    A response may also be a callable (program, args, cwd) -> CommandOutput.
    Programs without a response succeed with empty output.
    """

    def __init__(self, responses=None):
        self.calls = []
        self.responses = dict(responses or {})

    def __call__(self, program, args, *, dry_run=False, cwd=None):
        self.calls.append({"program": program, "args": list(args), "dry_run": dry_run, "cwd": cwd})
        resp = self.responses.get(program)
        if callable(resp):
            return resp(program, list(args), cwd)
        if resp is not None:
            return resp
        return CommandOutput(exit_code=0, argv=[program, *args])

    def programs(self):
        return [c["program"] for c in self.calls]


def write_file(path: Path, size: int, fill: bytes = b"x") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes((fill * size)[:size])
    return path


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def catalog(tmp_path):
    con = open_catalog(tmp_path / "db" / "archive.db")
    yield con
    con.close()


@pytest.fixture
def config(tmp_path):
    return ArchiveConfig(
        staging_dir=str(tmp_path / "staging"),
        database_path=str(tmp_path / "db" / "archive.db"),
        qr_dir=str(tmp_path / "qr"),
        use_rsync=False,
        use_qrencode=True,
    )


@pytest.fixture
def two_folders(tmp_path):
    """Two source folders holding one file each (100 and 200 bytes)."""
    a = tmp_path / "src" / "photos"
    b = tmp_path / "src" / "documents"
    write_file(a / "img001.jpg", 100, b"a")
    write_file(b / "report.pdf", 200, b"b")
    return [a, b]
