"""
Processing run: detect changed diagrams, give each a permanent identifier,
render it to PNG, bump its version and record the event in the changelog.

Failures are contained per file. Only a missing SPECIFIC_FILE or a complete
inability to list diagrams aborts the run (ChangeDetectionError).
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from ..changelog import Changelog, ChangelogEntry
from ..clients.git import CommitInfo, GitClient, GitError
from ..config import AppConfig
from ..processors.renderer import DrawioRenderer, RenderResult, png_path_for
from ..registry import IdentifierRegistry, RenameError, clean_name, extract_identifier
from ..store import CounterFileStore, KeyValueStore, MappingFileStore, PersistenceError
from ..versioning import VersionLedger

logger = logging.getLogger(__name__)

UNKNOWN_VERSION = "unknown"


class ChangeDetectionError(Exception):
    """Raised when the set of diagrams to process cannot be determined"""
    pass


class ProcessingStatus(str, Enum):
    CONVERTED = "converted"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class FileOutcome:
    source: Path
    status: ProcessingStatus
    path: Optional[Path] = None
    identifier: Optional[str] = None
    version: Optional[str] = None
    png_path: Optional[Path] = None
    commit: Optional[CommitInfo] = None
    changelog_pending: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return (self.path or self.source).name


@dataclass
class RunSummary:
    outcomes: List[FileOutcome] = field(default_factory=list)
    removed_duplicates: List[Path] = field(default_factory=list)

    def _with(self, status: ProcessingStatus) -> List[FileOutcome]:
        return [o for o in self.outcomes if o.status is status]

    @property
    def processed(self) -> List[FileOutcome]:
        return self._with(ProcessingStatus.CONVERTED)

    @property
    def failed(self) -> List[FileOutcome]:
        return self._with(ProcessingStatus.FAILED)

    @property
    def skipped(self) -> List[FileOutcome]:
        return self._with(ProcessingStatus.SKIPPED)

    @property
    def attempted(self) -> int:
        return len(self.outcomes) - len(self.skipped)

    @property
    def success(self) -> bool:
        """A run fails only when every attempted file failed."""
        return not (self.attempted > 0 and len(self.failed) == self.attempted)

    def to_dict(self) -> Dict[str, object]:
        return {
            "processed": [o.name for o in self.processed],
            "failed": [o.name for o in self.failed],
            "skipped": [o.name for o in self.skipped],
            "success": self.success,
        }


class DiagramProcessor:
    """
    Runs one processing pass over a working copy.

    Every collaborator can be injected; by default the file-backed stores,
    the git CLI and the draw.io renderer are built from ``config``.
    """

    def __init__(
        self,
        config: AppConfig,
        git: Optional[GitClient] = None,
        renderer: Optional[DrawioRenderer] = None,
        counter_store: Optional[KeyValueStore] = None,
        version_store: Optional[KeyValueStore] = None,
        changelog: Optional[Changelog] = None,
    ):
        self.config = config
        self.settings = config.pipeline
        lock_options = {
            "wait_seconds": self.settings.lock_wait_seconds,
            "poll_seconds": self.settings.lock_poll_seconds,
            "stale_seconds": self.settings.lock_stale_seconds,
        }

        self.git = git or GitClient()
        self.renderer = renderer or DrawioRenderer(self.settings)
        self.counter_store = counter_store or CounterFileStore(self.settings.counter_file, lock_options)
        self.version_store = version_store or MappingFileStore(self.settings.version_file, lock_options)
        self.changelog = changelog or Changelog(self.settings.changelog_file, lock_options)

        self.registry = IdentifierRegistry(self.counter_store)
        self.versions = VersionLedger(self.version_store)
        self._handled: set = set()

    # --- Setup ---

    def prepare(self) -> None:
        """Create directories and empty state files; merge changelog rows left by earlier runs."""
        self.settings.drawio_dir.mkdir(parents=True, exist_ok=True)
        self.settings.png_dir.mkdir(parents=True, exist_ok=True)

        if isinstance(self.counter_store, CounterFileStore) and self.counter_store.initialize():
            logger.info(f"Initialized counter file {self.counter_store.path} with 000")

        if isinstance(self.version_store, MappingFileStore) and not self.version_store.path.exists():
            self.version_store.path.parent.mkdir(parents=True, exist_ok=True)
            self.version_store.path.touch()
            logger.info(f"Initialized version file {self.version_store.path}")

        self.changelog.ensure_exists()
        self.changelog.flush_pending()

    def diagram_files(self) -> List[Path]:
        return sorted(self.settings.drawio_dir.rglob(f"*{self.settings.diagram_extension}"))

    # --- Change detection ---

    def detect_files(self) -> List[Path]:
        """
        Diagrams to process, in this order of precedence:
        SPECIFIC_FILE, CHANGED_FILES, git diff, then every diagram on disk.

        Raises:
            ChangeDetectionError: SPECIFIC_FILE does not exist, or neither git
                nor the filesystem could list diagrams
        """
        if self.settings.specific_file:
            specific = Path(self.settings.specific_file)
            if not specific.is_file():
                raise ChangeDetectionError(f"Specific file not found: {specific}")
            logger.info(f"Processing specific file: {specific}")
            return [specific]

        changed = self.settings.changed_file_list()
        if changed:
            logger.info(f"Using {len(changed)} pre-detected file(s) from environment")
            return self._unique(Path(p) for p in changed)

        pathspec = f"{self.settings.drawio_dir.as_posix()}/*{self.settings.diagram_extension}"
        try:
            return self._unique(Path(p) for p in self.git.changed_diagrams(pathspec, base=self.settings.diff_base))
        except GitError as e:
            logger.warning(f"git change detection failed ({e}), falling back to a filesystem search")

        try:
            return self._unique(self.diagram_files())
        except OSError as e:
            raise ChangeDetectionError(f"Cannot list diagrams in {self.settings.drawio_dir}: {e}") from e

    @staticmethod
    def _unique(paths: Iterable[Path]) -> List[Path]:
        seen = set()
        result = []
        for path in paths:
            if path not in seen:
                seen.add(path)
                result.append(path)
        return result

    # --- Per-file processing ---

    def process_file(self, path: Union[str, Path]) -> FileOutcome:
        source = Path(path)

        if not source.is_file():
            logger.warning(f"  ⚠ File not found, skipping: {source}")
            return FileOutcome(source, ProcessingStatus.SKIPPED, errors=["file not found"])
        if not os.access(source, os.R_OK):
            logger.warning(f"  ⚠ File not readable, skipping: {source}")
            return FileOutcome(source, ProcessingStatus.SKIPPED, errors=["file not readable"])

        # The file is committed under its current name; read history before any rename.
        commit = self.git.commit_info(source)
        outcome = FileOutcome(source, ProcessingStatus.FAILED, commit=commit)

        try:
            assignment = self.registry.assign(source)
        except RenameError as e:
            logger.error(f"  ✗ {e}; skipping file, counter left unchanged")
            outcome.status = ProcessingStatus.SKIPPED
            outcome.errors.append(str(e))
            return outcome
        except PersistenceError as e:
            logger.error(f"  ✗ Could not reserve an identifier for {source.name}: {e}")
            outcome.errors.append(str(e))
            self._record(outcome, source, success=False, version=UNKNOWN_VERSION, commit=commit)
            return outcome

        outcome.path = assignment.path
        outcome.identifier = assignment.identifier
        self._handled.update({source, assignment.path})

        png_path = png_path_for(assignment.path, self.settings.png_dir)
        render: RenderResult = self.renderer.render(assignment.path, png_path)
        outcome.png_path = png_path
        if not render.success:
            outcome.errors.append(render.error or "conversion failed")

        version_ok = True
        try:
            outcome.version = self.versions.next_version(assignment.identifier, commit.message)
        except PersistenceError as e:
            version_ok = False
            logger.error(f"  ✗ Could not update version of ID {assignment.identifier}: {e}")
            outcome.errors.append(str(e))
            outcome.version = self._last_known_version(assignment.identifier)

        recorded = self._record(outcome, assignment.path, success=render.success, version=outcome.version, commit=commit)

        if render.success and version_ok and recorded:
            outcome.status = ProcessingStatus.CONVERTED
            logger.info(f"  ✓ Processed {assignment.path.name} (ID {assignment.identifier}, v{outcome.version})")
        else:
            logger.error(f"  ✗ Processing of {assignment.path.name} failed: {'; '.join(outcome.errors)}")
        return outcome

    def _record(self, outcome: FileOutcome, path: Path, success: bool, version: str, commit: CommitInfo) -> bool:
        """Append the changelog row for one attempt; False when it could not be recorded."""
        entry = ChangelogEntry.create(
            path,
            success=success,
            version=version,
            commit_message=commit.message,
            commit_hash=commit.hash,
            author=commit.author,
        )
        try:
            outcome.changelog_pending = not self.changelog.append(entry)
        except PersistenceError as e:
            logger.error(f"  ✗ Could not record changelog entry for {path.name}: {e}")
            outcome.errors.append(str(e))
            return False
        return True

    def _last_known_version(self, identifier: str) -> str:
        try:
            return str(self.versions.current(identifier))
        except PersistenceError:
            return UNKNOWN_VERSION

    def process_files(self, paths: List[Path]) -> List[FileOutcome]:
        outcomes = []
        total = len(paths)
        for idx, path in enumerate(paths, 1):
            if path in self._handled:
                logger.info(f"[{idx}/{total}] {path.name} already handled in this run (skipping)")
                continue
            logger.info(f"[{idx}/{total}] Processing {path}")
            outcomes.append(self.process_file(path))
        return outcomes

    # --- Maintenance ---

    def cleanup_duplicates(self) -> List[Path]:
        """
        Keep only the highest-numbered file per clean base name; remove the
        others together with their PNGs. Legacy numeric files and files that
        have no identifier yet are never touched.
        """
        groups: Dict[str, List[Path]] = {}
        for diagram in self.diagram_files():
            identifier = extract_identifier(diagram)
            if identifier is None or identifier == diagram.stem:
                continue
            groups.setdefault(clean_name(diagram), []).append(diagram)

        removed = []
        for base_name, files in groups.items():
            if len(files) < 2:
                continue
            logger.info(f"Found {len(files)} duplicates for '{base_name}', keeping highest ID...")
            ordered = sorted(files, key=lambda p: int(extract_identifier(p)), reverse=True)
            for duplicate in ordered[1:]:
                logger.info(f"Removing duplicate: {duplicate.name}")
                duplicate.unlink(missing_ok=True)
                png = png_path_for(duplicate, self.settings.png_dir)
                if png.exists():
                    png.unlink()
                    logger.info(f"Removed corresponding PNG: {png.name}")
                removed.append(duplicate)
        return removed

    def generate_missing_pngs(self) -> List[FileOutcome]:
        missing = [d for d in self.diagram_files() if not png_path_for(d, self.settings.png_dir).exists()]
        if missing:
            logger.info(f"Generating {len(missing)} missing PNG file(s)")
        return self.process_files(missing)

    # --- Entry point ---

    def run(self, cleanup: bool = False) -> RunSummary:
        logger.info("Starting Draw.io files processing")
        self.prepare()
        summary = RunSummary()

        if cleanup:
            summary.removed_duplicates = self.cleanup_duplicates()
            summary.outcomes.extend(self.generate_missing_pngs())

        files = self.detect_files()
        if not files and not summary.outcomes:
            logger.info("No Draw.io files to process")
            return summary

        summary.outcomes.extend(self.process_files(files))
        logger.info(
            f"Processing complete: {len(summary.processed)} converted, "
            f"{len(summary.failed)} failed, {len(summary.skipped)} skipped"
        )
        return summary
