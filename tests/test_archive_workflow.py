"""
archive_workflow tests: step machine, single-disc pipeline, multi-disc sets with pause/resume
"""

import re

import pytest

import archive_workflow
from archive_config import ArchiveConfig
from archive_errors import (
    CapacityExceededError,
    DiscSetError,
    ExternalToolError,
    InvalidDiscIdError,
    InvalidTransitionError,
)
from archive_identity import read_disc_info
from archive_workflow import (
    WorkflowState,
    WorkflowStep,
    create_disc_archive,
    create_multi_disc_archive,
    resume_multi_disc_archive,
)
from burn_session import SessionStatus, list_resumable_sessions, list_sessions, load_session
from catalog_store import Disc, count_files_for_disc, disc_set_summary, get_disc, insert_disc, list_files_for_disc
from command_runner import CommandOutput
from conftest import FakeRunner, write_file
from manifest_builder import SHA256SUMS_NAME


def _capacity(monkeypatch, n):
    monkeypatch.setattr(ArchiveConfig, "capacity_bytes", property(lambda self: n))


# ── step machine ──

class TestWorkflowState:
    def test_iso_path(self):
        seen = []
        st = WorkflowState(on_change=seen.append)
        for step in (
            WorkflowStep.STAGING,
            WorkflowStep.MANIFESTING,
            WorkflowStep.IMAGING,
            WorkflowStep.WRITING,
            WorkflowStep.INDEXING,
            WorkflowStep.QR,
            WorkflowStep.COMPLETE,
        ):
            st.advance(step)
        assert st.finished
        assert seen[-1] == WorkflowStep.COMPLETE
        assert st.history[0] == WorkflowStep.IDLE

    def test_direct_path_skips_imaging_and_qr(self):
        st = WorkflowState()
        for step in (WorkflowStep.STAGING, WorkflowStep.MANIFESTING, WorkflowStep.WRITING, WorkflowStep.INDEXING, WorkflowStep.COMPLETE):
            st.advance(step)
        assert st.step == WorkflowStep.COMPLETE

    def test_cannot_skip_steps(self):
        st = WorkflowState()
        with pytest.raises(InvalidTransitionError):
            st.advance(WorkflowStep.WRITING)

    def test_error_only_via_fail(self):
        st = WorkflowState()
        st.advance(WorkflowStep.STAGING)
        with pytest.raises(InvalidTransitionError):
            st.advance(WorkflowStep.ERROR)
        st.fail("disk full")
        assert st.step == WorkflowStep.ERROR
        assert st.error == "disk full"
        with pytest.raises(InvalidTransitionError):
            st.fail("again")
        with pytest.raises(InvalidTransitionError):
            st.advance(WorkflowStep.MANIFESTING)


# ── single disc ──

class TestCreateDiscArchive:
    def test_full_pipeline(self, catalog, config, two_folders, fake_runner):
        state = WorkflowState()
        r = create_disc_archive(catalog, config, two_folders, disc_id="2024-BD-001", notes="test", runner=fake_runner, state=state)

        assert fake_runner.programs() == ["xorriso", "growisofs", "qrencode"]
        assert state.history == [
            WorkflowStep.IDLE,
            WorkflowStep.STAGING,
            WorkflowStep.MANIFESTING,
            WorkflowStep.IMAGING,
            WorkflowStep.WRITING,
            WorkflowStep.INDEXING,
            WorkflowStep.QR,
            WorkflowStep.COMPLETE,
        ]
        assert r.volume_label == "2024_BD_001"
        assert r.files == 3
        assert r.total_size > 300

        disc = get_disc(catalog, "2024-BD-001")
        assert disc.notes == "test"
        assert disc.checksum_manifest_hash == r.checksum_manifest_hash
        assert disc.qr_path == str(config.qr_path() / "2024-BD-001.png")
        assert disc.source_roots == [str(p) for p in two_folders]
        paths = sorted(f.rel_path for f in list_files_for_disc(catalog, "2024-BD-001"))
        assert paths == ["ARCHIVE/documents/report.pdf", "ARCHIVE/photos/img001.jpg", "DISC_INFO.txt"]
        assert not (config.staging_path() / "2024-BD-001").exists()

    def test_dry_run_keeps_staging_and_indexes(self, catalog, config, two_folders, fake_runner):
        r = create_disc_archive(catalog, config, two_folders, disc_id="2024-BD-001", dry_run=True, runner=fake_runner)
        assert r.dry_run is True
        assert all(c["dry_run"] for c in fake_runner.calls)
        disc_root = config.staging_path() / "2024-BD-001"
        assert (disc_root / SHA256SUMS_NAME).is_file()
        assert read_disc_info(disc_root)["disc_id"] == "2024-BD-001"
        assert count_files_for_disc(catalog, "2024-BD-001") == 3

    def test_direct_burn(self, catalog, config, two_folders, fake_runner):
        config.burn_method = "direct"
        config.use_qrencode = False
        state = WorkflowState()
        r = create_disc_archive(catalog, config, two_folders, disc_id="2024-BD-001", runner=fake_runner, state=state)
        assert fake_runner.programs() == ["growisofs"]
        assert WorkflowStep.IMAGING not in state.history
        assert WorkflowStep.QR not in state.history
        assert r.iso_path is None

    def test_generated_disc_id(self, catalog, config, two_folders, fake_runner):
        r = create_disc_archive(catalog, config, two_folders, runner=fake_runner)
        assert re.match(r"^\d{4}-BD-001$", r.disc_id)
        assert get_disc(catalog, r.disc_id) is not None

    def test_existing_disc_id_rejected(self, catalog, config, two_folders, fake_runner):
        insert_disc(catalog, Disc(disc_id="2024-BD-001", volume_label="X", created_at="t"))
        with pytest.raises(InvalidDiscIdError):
            create_disc_archive(catalog, config, two_folders, disc_id="2024-BD-001", runner=fake_runner)
        assert fake_runner.calls == []

    def test_invalid_disc_id_rejected(self, catalog, config, two_folders, fake_runner):
        with pytest.raises(InvalidDiscIdError):
            create_disc_archive(catalog, config, two_folders, disc_id="bad/id", runner=fake_runner)

    def test_oversized_sources_rejected_up_front(self, catalog, config, two_folders, fake_runner, monkeypatch):
        _capacity(monkeypatch, 250)
        with pytest.raises(CapacityExceededError):
            create_disc_archive(catalog, config, two_folders, disc_id="2024-BD-001", runner=fake_runner)
        assert fake_runner.calls == []
        assert not (config.staging_path() / "2024-BD-001").exists()

    def test_capacity_checked_before_imaging(self, catalog, config, two_folders, fake_runner, monkeypatch):
        # Sources fit exactly; DISC_INFO.txt pushes the volume over.
        _capacity(monkeypatch, 300)
        state = WorkflowState()
        with pytest.raises(CapacityExceededError):
            create_disc_archive(catalog, config, two_folders, disc_id="2024-BD-001", runner=fake_runner, state=state)
        assert fake_runner.calls == []
        assert state.step == WorkflowStep.ERROR
        assert WorkflowStep.IMAGING not in state.history
        assert get_disc(catalog, "2024-BD-001") is None

    def test_capacity_counts_integrity_artifacts(self, catalog, config, two_folders, fake_runner, monkeypatch):
        create_disc_archive(catalog, config, two_folders, disc_id="2024-BD-001", runner=fake_runner)
        content = sum(r.size for r in list_files_for_disc(catalog, "2024-BD-001"))
        # Same layout, so the content alone fits exactly; the sums files do not.
        _capacity(monkeypatch, content)
        runner = FakeRunner()
        with pytest.raises(CapacityExceededError):
            create_disc_archive(catalog, config, two_folders, disc_id="2024-BD-002", runner=runner)
        assert runner.calls == []

    def test_burn_failure_leaves_catalog_untouched(self, catalog, config, two_folders):
        runner = FakeRunner({"growisofs": CommandOutput(exit_code=1, stderr="Device or resource busy")})
        state = WorkflowState()
        with pytest.raises(ExternalToolError) as ei:
            create_disc_archive(catalog, config, two_folders, disc_id="2024-BD-001", runner=runner, state=state)
        assert "busy" in ei.value.guidance
        assert state.step == WorkflowStep.ERROR
        assert get_disc(catalog, "2024-BD-001") is None

    def test_qr_failure_is_not_fatal(self, catalog, config, two_folders):
        runner = FakeRunner({"qrencode": CommandOutput(exit_code=1, stderr="qrencode: bad")})
        r = create_disc_archive(catalog, config, two_folders, disc_id="2024-BD-001", runner=runner)
        assert r.qr_path is None
        assert get_disc(catalog, "2024-BD-001").qr_path is None

    def test_progress_messages(self, catalog, config, two_folders, fake_runner):
        msgs = []
        create_disc_archive(catalog, config, two_folders, disc_id="2024-BD-001", runner=fake_runner, progress=msgs.append)
        assert msgs[0].startswith("Creating disc 2024-BD-001")
        assert msgs[-1].startswith("Disc 2024-BD-001 complete")


# ── multi-disc ──

@pytest.fixture
def three_sources(tmp_path):
    out = []
    for name in ("alpha", "beta", "gamma"):
        d = tmp_path / "src" / name
        write_file(d / "data.bin", 600, name[0].encode())
        out.append(d)
    return out


@pytest.fixture
def small_discs(monkeypatch):
    monkeypatch.setattr(archive_workflow, "ARTIFACT_RESERVE_BYTES", 4096)
    _capacity(monkeypatch, 4096 + 1000)


class TestMultiDisc:
    def test_one_folder_per_disc(self, catalog, config, three_sources, fake_runner, small_discs):
        res = create_multi_disc_archive(catalog, config, three_sources, base_id="2024-BD-010", name="Media", runner=fake_runner)
        assert res.total_discs == 3
        assert [d.disc_id for d in res.discs] == ["2024-BD-010-1", "2024-BD-010-2", "2024-BD-010-3"]
        assert [d.volume_label for d in res.discs] == ["2024_BD_010_1OF3", "2024_BD_010_2OF3", "2024_BD_010_3OF3"]
        assert fake_runner.programs().count("xorriso") == 3

        summary = disc_set_summary(catalog, res.set_id)
        assert summary.is_complete
        assert summary.disc_set.name == "Media"
        assert summary.disc_set.disc_count == 3
        assert get_disc(catalog, "2024-BD-010-2").sequence_number == 2

        session = load_session(catalog, res.session_id)
        assert session.status == SessionStatus.COMPLETED
        assert session.completed_discs == [1, 2, 3]
        assert len(session.config["plans"]) == 3

    def test_failure_pauses_then_resume_finishes(self, catalog, config, three_sources, small_discs):
        def flaky_burn(program, args, cwd):
            if args[-1].endswith("2024-BD-010-2.iso"):
                return CommandOutput(exit_code=1, stderr="No writable medium found")
            return CommandOutput(exit_code=0)

        with pytest.raises(ExternalToolError):
            create_multi_disc_archive(
                catalog, config, three_sources, base_id="2024-BD-010", runner=FakeRunner({"growisofs": flaky_burn})
            )

        paused = list_resumable_sessions(catalog)
        assert len(paused) == 1
        session = paused[0]
        assert session.status == SessionStatus.PAUSED
        assert session.completed_discs == [1]
        assert session.failed_discs == [2]
        assert session.staging_state["failed_disc"] == 2
        failed_stage = session.staging_state["staging_dirs"][0]
        assert failed_stage.endswith("2024-BD-010-2")
        assert get_disc(catalog, "2024-BD-010-1") is not None
        assert get_disc(catalog, "2024-BD-010-2") is None

        runner = FakeRunner()
        res = resume_multi_disc_archive(catalog, config, session.session_id, runner=runner)
        assert [d.disc_id for d in res.discs] == ["2024-BD-010-2", "2024-BD-010-3"]
        assert runner.programs().count("xorriso") == 2

        done = load_session(catalog, session.session_id)
        assert done.status == SessionStatus.COMPLETED
        assert sorted(done.completed_discs) == [1, 2, 3]
        assert done.failed_discs == []
        assert done.staging_state is None
        assert disc_set_summary(catalog, res.set_id).is_complete

    def test_resume_skips_discs_already_indexed(self, catalog, config, three_sources, small_discs, monkeypatch):
        calls = {"n": 0}
        real_save = archive_workflow.save_session

        def save_then_crash(con, session):
            # Simulate losing the checkpoint written right after disc 1 was indexed.
            if session.completed_discs == [1] and calls["n"] == 0:
                calls["n"] += 1
                raise RuntimeError("power cut")
            real_save(con, session)

        monkeypatch.setattr(archive_workflow, "save_session", save_then_crash)
        with pytest.raises(RuntimeError):
            create_multi_disc_archive(catalog, config, three_sources, base_id="2024-BD-010", runner=FakeRunner())
        monkeypatch.setattr(archive_workflow, "save_session", real_save)

        session = list_sessions(catalog)[0]
        assert session.status == SessionStatus.ACTIVE
        assert session.completed_discs == []

        runner = FakeRunner()
        res = resume_multi_disc_archive(catalog, config, session.session_id, runner=runner)
        assert [d.disc_id for d in res.discs] == ["2024-BD-010-2", "2024-BD-010-3"]
        assert load_session(catalog, session.session_id).completed_discs == [1, 2, 3]

    def test_indexing_failure_leaves_no_half_indexed_disc(self, catalog, config, three_sources, small_discs, monkeypatch):
        real_records = archive_workflow.file_records_from_manifest
        broken = {"armed": True}

        def records_then_io_error(disc_id, files):
            recs = real_records(disc_id, files)
            if disc_id.endswith("-2") and broken.pop("armed", False):
                def gen():
                    yield recs[0]
                    raise OSError("disk I/O error")

                return gen()
            return recs

        monkeypatch.setattr(archive_workflow, "file_records_from_manifest", records_then_io_error)
        with pytest.raises(OSError):
            create_multi_disc_archive(catalog, config, three_sources, base_id="2024-BD-010", runner=FakeRunner())
        assert get_disc(catalog, "2024-BD-010-2") is None
        assert count_files_for_disc(catalog, "2024-BD-010-2") == 0

        session = list_resumable_sessions(catalog)[0]
        res = resume_multi_disc_archive(catalog, config, session.session_id, runner=FakeRunner())
        assert [d.disc_id for d in res.discs] == ["2024-BD-010-2", "2024-BD-010-3"]
        assert count_files_for_disc(catalog, "2024-BD-010-2") == res.discs[0].files
        assert disc_set_summary(catalog, res.set_id).is_complete

    def test_resume_completed_session_rejected(self, catalog, config, three_sources, fake_runner, small_discs):
        res = create_multi_disc_archive(catalog, config, three_sources, base_id="2024-BD-010", runner=fake_runner)
        with pytest.raises(InvalidTransitionError):
            resume_multi_disc_archive(catalog, config, res.session_id, runner=fake_runner)

    def test_resume_unknown_session(self, catalog, config):
        with pytest.raises(DiscSetError):
            resume_multi_disc_archive(catalog, config, "session-nope")

    def test_single_disc_set_when_everything_fits(self, catalog, config, two_folders, fake_runner):
        res = create_multi_disc_archive(catalog, config, two_folders, base_id="2024-BD-020", runner=fake_runner)
        assert res.total_discs == 1
        assert res.discs[0].volume_label == "2024_BD_020_1OF1"
