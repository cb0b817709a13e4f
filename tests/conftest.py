"""Shared fixtures: an isolated working copy plus fake git and renderer."""

from pathlib import Path
from typing import Dict, List, Optional

import pytest

from drawio_pipeline.clients.git import CommitInfo, GitError
from drawio_pipeline.config import AppConfig, CIContext, PipelineSettings, SharePointSettings, TeamsSettings
from drawio_pipeline.processors.renderer import RenderResult

_ENV_VARS = [
    "SPECIFIC_FILE", "CHANGED_FILES", "DIAGRAMS_DIFF_BASE",
    "DIAGRAMS_DRAWIO_DIR", "DRAWIO_FILES_DIR", "DIAGRAMS_PNG_DIR", "PNG_FILES_DIR",
    "DIAGRAMS_COUNTER_FILE", "COUNTER_FILE", "DIAGRAMS_CHANGELOG_FILE", "CHANGELOG_FILE",
    "DIAGRAMS_VERSION_FILE", "VERSION_FILE", "DIAGRAMS_PNG_SCALE", "PNG_SCALE",
    "DIAGRAMS_PNG_QUALITY", "PNG_QUALITY", "DRAWIO_BINARY", "DIAGRAMS_USE_XVFB",
    "SHAREPOINT_TENANT_ID", "DIAGRAMS_SHAREPOINT_TENANT_ID", "AZURE_TENANT_ID",
    "SHAREPOINT_CLIENT_ID", "DIAGRAMS_SHAREPOINT_CLIENT_ID", "AZURE_CLIENT_ID",
    "SHAREPOINT_CLIENT_SECRET", "DIAGRAMS_SHAREPOINT_CLIENTSECRET", "AZURE_CLIENT_SECRET",
    "SHAREPOINT_SITE_ID", "SHAREPOINT_DRIVE_ID", "SHAREPOINT_BASE_DRIVE_ID",
    "SHAREPOINT_FOLDER", "SHAREPOINT_OUTPUT_FILENAME",
    "TEAMS_WEBHOOK_URL", "DIAGRAMS_TEAMS_NOTIFICATION_WEBHOOK",
    "GITHUB_REPOSITORY", "GITHUB_SHA", "GITHUB_WORKFLOW", "GITHUB_RUN_ID",
    "GITHUB_RUN_NUMBER", "GITHUB_SERVER_URL", "GITHUB_ACTOR", "GITHUB_STEP_SUMMARY",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep the runner's own CI variables out of the settings under test."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """A repository root with the default directory layout, as cwd."""
    monkeypatch.chdir(tmp_path)
    (tmp_path / "drawio_files").mkdir()
    (tmp_path / "png_files").mkdir()
    return tmp_path


def make_config(**pipeline) -> AppConfig:
    pipeline.setdefault("use_xvfb", False)
    pipeline.setdefault("lock_wait_seconds", 0.5)
    pipeline.setdefault("lock_poll_seconds", 0.05)
    return AppConfig(
        pipeline=PipelineSettings(_env_file=None, **pipeline),
        sharepoint=SharePointSettings(_env_file=None),
        teams=TeamsSettings(_env_file=None),
        ci=CIContext(_env_file=None),
    )


@pytest.fixture
def config(workspace) -> AppConfig:
    return make_config()


class FakeGit:
    """Stands in for GitClient; commit info is looked up by file name."""

    def __init__(self, commits: Optional[Dict[str, CommitInfo]] = None, changed: Optional[List[str]] = None, fail: bool = False):
        self.commits = commits or {}
        self.changed = changed or []
        self.fail = fail
        self.queried: List[Path] = []

    def changed_diagrams(self, pathspec, base=None, head="HEAD"):
        if self.fail:
            raise GitError(["diff"], 128, "not a git repository")
        return list(self.changed)

    def commit_info(self, path):
        self.queried.append(Path(path))
        return self.commits.get(Path(path).name, CommitInfo())


class FakeRenderer:
    """Writes a fixed PNG-sized payload; names in ``failing`` fail instead."""

    PAYLOAD = b"\x89PNG\r\n\x1a\n" + b"\0" * 2048

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.rendered: List[Path] = []

    def render(self, input_path, output_path):
        input_path, output_path = Path(input_path), Path(output_path)
        self.rendered.append(input_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        if input_path.name in self.failing:
            output_path.write_bytes(b"placeholder")
            return RenderResult(input_path, output_path, success=False, placeholder=True, error="draw.io exited with 1")
        output_path.write_bytes(self.PAYLOAD)
        return RenderResult(input_path, output_path, success=True)


@pytest.fixture
def fake_git():
    return FakeGit()


@pytest.fixture
def fake_renderer():
    return FakeRenderer()
