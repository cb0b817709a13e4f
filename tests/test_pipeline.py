"""End-to-end processing runs against a temporary working copy."""

from pathlib import Path

import pytest

from conftest import FakeGit, FakeRenderer, make_config
from drawio_pipeline.changelog import ACTION_CONVERTED, ACTION_FAILED, Changelog
from drawio_pipeline.clients.git import CommitInfo
from drawio_pipeline.pipelines.processing import (
    ChangeDetectionError,
    DiagramProcessor,
    ProcessingStatus,
    RunSummary,
    FileOutcome,
)

DRAWIO = Path("drawio_files")
PNG = Path("png_files")


def diagram(name, content="<mxfile/>"):
    path = DRAWIO / name
    path.write_text(content)
    return path


def processor(config, git=None, renderer=None):
    return DiagramProcessor(config, git=git or FakeGit(), renderer=renderer or FakeRenderer())


class TestScenarios:

    def test_new_diagram_gets_identifier_and_major_version(self, workspace, config):
        source = diagram("diagram.drawio")
        Path("drawio_files/.counter").write_text("003\n")
        git = FakeGit(commits={"diagram.drawio": CommitInfo("abc1234", "Added new flow", "Jane Doe")})

        outcome = processor(config, git=git).process_file(source)

        assert outcome.status is ProcessingStatus.CONVERTED
        assert outcome.path == DRAWIO / "diagram (004).drawio"
        assert outcome.path.exists() and not source.exists()
        assert Path("drawio_files/.counter").read_text() == "004\n"
        assert "004:1.0" in Path("png_files/.versions").read_text().splitlines()
        assert (PNG / "diagram (004).png").exists()

        rows = Changelog(PNG / "CHANGELOG.csv").read_entries()
        assert len(rows) == 1
        assert rows[0].version == "1.0"
        assert rows[0].diagram == "diagram (004)"
        assert rows[0].file == "drawio_files/diagram (004).drawio"
        assert rows[0].commit_hash == "abc1234"
        assert rows[0].author == "Jane Doe"
        assert rows[0].action == ACTION_CONVERTED

    def test_commit_info_is_read_before_rename(self, workspace, config):
        source = diagram("diagram.drawio")
        git = FakeGit()

        processor(config, git=git).process_file(source)

        assert git.queried == [source]

    def test_identified_diagram_gets_minor_bump(self, workspace, config):
        source = diagram("diagram (004).drawio")
        Path("drawio_files/.counter").write_text("004\n")
        Path("png_files/.versions").write_text("004:1.0\n")
        git = FakeGit(commits={"diagram (004).drawio": CommitInfo("def5678", "Fixed typo", "Jane Doe")})

        outcome = processor(config, git=git).process_file(source)

        assert outcome.path == source
        assert Path("drawio_files/.counter").read_text() == "004\n"
        assert Path("png_files/.versions").read_text().splitlines() == ["004:1.1"]
        assert Changelog(PNG / "CHANGELOG.csv").read_entries()[0].version == "1.1"

    def test_legacy_numeric_diagram(self, workspace, config):
        source = diagram("70.drawio")
        Path("png_files/.versions").write_text("70:2.3\n")
        git = FakeGit(commits={"70.drawio": CommitInfo("1111111", "New shapes", "Bob")})

        outcome = processor(config, git=git).process_file(source)

        assert outcome.identifier == "70"
        assert outcome.path == source
        assert "70:3.0" in Path("png_files/.versions").read_text().splitlines()
        assert not Path("drawio_files/.counter").exists()

    def test_conversion_failure_records_failed_row(self, workspace, config):
        source = diagram("broken (005).drawio", content="garbage")
        renderer = FakeRenderer(failing={"broken (005).drawio"})

        outcome = processor(config, renderer=renderer).process_file(source)

        assert outcome.status is ProcessingStatus.FAILED
        assert (PNG / "broken (005).png").exists()
        row = Changelog(PNG / "CHANGELOG.csv").read_entries()[0]
        assert row.action == ACTION_FAILED

    def test_missing_file_is_skipped(self, workspace, config):
        outcome = processor(config).process_file(DRAWIO / "ghost.drawio")
        assert outcome.status is ProcessingStatus.SKIPPED
        assert not (PNG / "CHANGELOG.csv").exists()

    def test_rename_conflict_skips_file(self, workspace, config):
        source = diagram("diagram.drawio")
        diagram("diagram (001).drawio")
        Path("drawio_files/.counter").write_text("000\n")

        outcome = processor(config).process_file(source)

        assert outcome.status is ProcessingStatus.SKIPPED
        assert source.exists()
        assert Path("drawio_files/.counter").read_text() == "000\n"

    def test_counter_lock_timeout_does_not_reuse_identifier(self, workspace):
        config = make_config(lock_wait_seconds=0)
        alpha = diagram("alpha.drawio")
        beta = diagram("beta.drawio")
        proc = processor(config)
        proc.prepare()

        lock_dir = Path("drawio_files/.counter.lock")
        lock_dir.mkdir()
        blocked = proc.process_file(alpha)
        lock_dir.rmdir()
        assigned = proc.process_file(beta)

        assert blocked.status is ProcessingStatus.FAILED
        assert alpha.exists()
        assert assigned.path == DRAWIO / "beta (001).drawio"
        assert sorted(p.name for p in DRAWIO.glob("*.drawio")) == ["alpha.drawio", "beta (001).drawio"]
        assert Path("drawio_files/.counter").read_text() == "001\n"

        rows = proc.changelog.read_entries()
        assert [r.diagram for r in rows] == ["alpha", "beta (001)"]
        assert rows[0].action == ACTION_FAILED
        assert rows[0].version == "unknown"

    def test_corrupt_stored_version_fails_file(self, workspace, config):
        source = diagram("diagram (004).drawio")
        Path("png_files/.versions").write_text("004:1.2.3\n")

        outcome = processor(config).process_file(source)

        assert outcome.status is ProcessingStatus.FAILED
        assert Path("png_files/.versions").read_text() == "004:1.2.3\n"
        row = Changelog(PNG / "CHANGELOG.csv").read_entries()[0]
        assert row.version == "unknown"

    def test_changelog_lock_timeout_keeps_row_pending(self, workspace):
        config = make_config(lock_wait_seconds=0)
        source = diagram("diagram (004).drawio")
        proc = processor(config)
        proc.prepare()
        Path("png_files/CHANGELOG.csv.lock").mkdir()

        outcome = proc.process_file(source)

        assert outcome.status is ProcessingStatus.CONVERTED
        assert outcome.changelog_pending
        Path("png_files/CHANGELOG.csv.lock").rmdir()
        proc.prepare()
        assert len(proc.changelog.read_entries()) == 1


class TestDetection:

    def test_specific_file(self, workspace):
        source = diagram("a.drawio")
        config = make_config(specific_file=str(source))
        assert processor(config).detect_files() == [source]

    def test_specific_file_missing(self, workspace):
        config = make_config(specific_file="drawio_files/nope.drawio")
        with pytest.raises(ChangeDetectionError):
            processor(config).detect_files()

    def test_changed_files_env_keeps_order_and_dedupes(self, workspace):
        config = make_config(changed_files="drawio_files/b (002).drawio\ndrawio_files/a.drawio\n\ndrawio_files/b (002).drawio\n")
        assert processor(config).detect_files() == [DRAWIO / "b (002).drawio", DRAWIO / "a.drawio"]

    def test_git_detection(self, workspace, config):
        git = FakeGit(changed=["drawio_files/x.drawio", "drawio_files/y.drawio"])
        assert processor(config, git=git).detect_files() == [DRAWIO / "x.drawio", DRAWIO / "y.drawio"]

    def test_filesystem_fallback_when_git_fails(self, workspace, config):
        diagram("b.drawio")
        diagram("a.drawio")
        files = processor(config, git=FakeGit(fail=True)).detect_files()
        assert files == [DRAWIO / "a.drawio", DRAWIO / "b.drawio"]


class TestRun:

    def test_prepare_initializes_state(self, workspace, config):
        processor(config).prepare()
        assert Path("drawio_files/.counter").read_text() == "000\n"
        assert Path("png_files/.versions").exists()
        assert Path("png_files/CHANGELOG.csv").read_text().startswith("Date,Time,Diagram")

    def test_no_changes_is_noop(self, workspace, config):
        summary = processor(config).run()
        assert summary.outcomes == []
        assert summary.success

    def test_processes_in_detection_order(self, workspace, config):
        diagram("second.drawio")
        diagram("first.drawio")
        git = FakeGit(changed=["drawio_files/second.drawio", "drawio_files/first.drawio"])

        summary = processor(config, git=git).run()

        assert [o.name for o in summary.processed] == ["second (001).drawio", "first (002).drawio"]
        assert summary.success

    def test_partial_failure_is_still_success(self, workspace, config):
        diagram("ok (001).drawio")
        diagram("bad (002).drawio")
        git = FakeGit(changed=["drawio_files/ok (001).drawio", "drawio_files/bad (002).drawio"])
        renderer = FakeRenderer(failing={"bad (002).drawio"})

        summary = processor(config, git=git, renderer=renderer).run()

        assert len(summary.processed) == 1
        assert len(summary.failed) == 1
        assert summary.success

    def test_all_failed_is_failure(self, workspace, config):
        diagram("bad (002).drawio")
        git = FakeGit(changed=["drawio_files/bad (002).drawio"])
        renderer = FakeRenderer(failing={"bad (002).drawio"})

        assert not processor(config, git=git, renderer=renderer).run().success

    def test_cleanup_removes_duplicates_and_renders_missing(self, workspace, config):
        diagram("Flow (001).drawio")
        diagram("Flow (003).drawio")
        diagram("70.drawio")
        (PNG / "Flow (001).png").write_bytes(b"old")
        (PNG / "70.png").write_bytes(b"legacy")
        renderer = FakeRenderer()

        summary = processor(config, renderer=renderer).run(cleanup=True)

        remaining = sorted(p.name for p in DRAWIO.glob("*.drawio"))
        assert remaining == ["70.drawio", "Flow (003).drawio"]
        assert not (PNG / "Flow (001).png").exists()
        assert (PNG / "70.png").read_bytes() == b"legacy"
        assert renderer.rendered == [DRAWIO / "Flow (003).drawio"]
        assert [p.name for p in summary.removed_duplicates] == ["Flow (001).drawio"]

    def test_cleanup_keeps_diagrams_without_identifier(self, workspace, config):
        diagram("Flow (003).drawio")
        diagram("Flow.drawio")
        Path("drawio_files/.counter").write_text("003\n")

        summary = processor(config).run(cleanup=True)

        assert summary.removed_duplicates == []
        remaining = sorted(p.name for p in DRAWIO.glob("*.drawio"))
        assert remaining == ["Flow (003).drawio", "Flow (004).drawio"]
        assert Path("drawio_files/.counter").read_text() == "004\n"

    def test_files_rendered_during_cleanup_are_not_processed_twice(self, workspace, config):
        diagram("Flow (003).drawio")
        git = FakeGit(changed=["drawio_files/Flow (003).drawio"])
        renderer = FakeRenderer()

        summary = processor(config, git=git, renderer=renderer).run(cleanup=True)

        assert len(summary.outcomes) == 1
        assert len(Changelog(PNG / "CHANGELOG.csv").read_entries()) == 1


def test_run_summary_counts():
    summary = RunSummary(outcomes=[
        FileOutcome(Path("a"), ProcessingStatus.CONVERTED),
        FileOutcome(Path("b"), ProcessingStatus.SKIPPED),
        FileOutcome(Path("c"), ProcessingStatus.FAILED),
    ])
    assert summary.attempted == 2
    assert summary.success
    assert summary.to_dict()["skipped"] == ["b"]
