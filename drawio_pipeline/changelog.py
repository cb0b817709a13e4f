"""
Append-only CSV changelog of diagram processing events.

Header (fixed):
    Date,Time,Diagram,File,Action,Commit Message,Version,Commit Hash,Author Name

Diagram, File, Commit Message and Author Name are always double-quoted so
commas inside them are harmless; the other fields are written bare. Appends
happen under a directory lock and go through copy-modify-rename so a killed
job never leaves a half-written file behind.
"""

import csv
import logging
import time
import uuid
from dataclasses import astuple, dataclass, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .locking import DirectoryLock, LockTimeoutError
from .store import PersistenceError, atomic_write_text

logger = logging.getLogger(__name__)

CHANGELOG_HEADER = "Date,Time,Diagram,File,Action,Commit Message,Version,Commit Hash,Author Name"
COLUMNS = CHANGELOG_HEADER.split(",")

ACTION_CONVERTED = "Converted to PNG"
ACTION_FAILED = "Conversion failed - placeholder created"

DATE_FORMAT = "%d.%m.%Y"
TIME_FORMAT = "%H:%M:%S"

PENDING_MARKER = ".pending."


def _quote(value: str) -> str:
    flat = " ".join(str(value).splitlines())
    return '"' + flat.replace('"', '""') + '"'


def _bare(value: str) -> str:
    # Bare fields never contain separators in practice; fall back to quoting if one does.
    text = " ".join(str(value).splitlines())
    if any(ch in text for ch in ',"'):
        return _quote(text)
    return text


@dataclass
class ChangelogEntry:
    date: str
    time: str
    diagram: str
    file: str
    action: str
    commit_message: str
    version: str
    commit_hash: str
    author: str

    QUOTED = ("diagram", "file", "commit_message", "author")

    @classmethod
    def create(
        cls,
        diagram_path: Union[str, Path],
        success: bool,
        version: str,
        commit_message: str = "",
        commit_hash: str = "",
        author: str = "",
        now: Optional[datetime] = None,
    ) -> "ChangelogEntry":
        now = now or datetime.now()
        diagram_path = Path(diagram_path)
        return cls(
            date=now.strftime(DATE_FORMAT),
            time=now.strftime(TIME_FORMAT),
            diagram=diagram_path.stem,
            file=diagram_path.as_posix(),
            action=ACTION_CONVERTED if success else ACTION_FAILED,
            commit_message=commit_message or "",
            version=version,
            commit_hash=commit_hash or "",
            author=author or "",
        )

    @classmethod
    def from_row(cls, row: List[str]) -> "ChangelogEntry":
        if len(row) != len(COLUMNS):
            raise ValueError(f"Expected {len(COLUMNS)} fields, got {len(row)}: {row!r}")
        return cls(*row)

    @property
    def failed(self) -> bool:
        return self.action != ACTION_CONVERTED

    def to_csv_line(self) -> str:
        parts = []
        for f, value in zip(fields(self), astuple(self)):
            parts.append(_quote(value) if f.name in self.QUOTED else _bare(value))
        return ",".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return dict(zip(COLUMNS, astuple(self)))


class Changelog:
    """The CSV ledger plus its lock and pending-spill files."""

    def __init__(self, path: Union[str, Path], lock_options: Optional[Dict[str, Any]] = None):
        self.path = Path(path)
        self.lock_options = dict(lock_options or {})

    def _lock(self) -> DirectoryLock:
        return DirectoryLock.for_file(self.path, **self.lock_options)

    def ensure_exists(self) -> bool:
        """Create the file with its header row. Returns True when created."""
        if self.path.exists():
            return False
        atomic_write_text(self.path, CHANGELOG_HEADER + "\n")
        logger.info(f"Initialized changelog file {self.path}")
        return True

    def _current_text(self) -> str:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return CHANGELOG_HEADER + "\n"
        if not text.strip():
            return CHANGELOG_HEADER + "\n"
        if not text.endswith("\n"):
            text += "\n"
        return text

    def pending_files(self) -> List[Path]:
        return sorted(self.path.parent.glob(self.path.name + PENDING_MARKER + "*"))

    def _append_lines(self, lines: List[str]) -> None:
        text = self._current_text() + "".join(line + "\n" for line in lines)
        atomic_write_text(self.path, text)

    def _spill(self, line: str) -> Path:
        token = f"{int(time.time() * 1000):015d}-{uuid.uuid4().hex[:8]}"
        spill_path = self.path.with_name(self.path.name + PENDING_MARKER + token)
        atomic_write_text(spill_path, line + "\n")
        return spill_path

    def _collect_pending(self, paths: List[Path]) -> List[str]:
        """Rows of the listed spill files only; later spills wait for the next merge."""
        lines: List[str] = []
        for pending in paths:
            lines.extend(l for l in pending.read_text(encoding="utf-8").splitlines() if l.strip())
        return lines

    def _drop_pending(self, paths: List[Path]) -> None:
        for pending in paths:
            pending.unlink(missing_ok=True)

    def append(self, entry: ChangelogEntry) -> bool:
        """
        Append one row.

        Returns True when the row reached the changelog, False when the lock
        could not be acquired and the row was spilled to a pending file that
        the next append (or the next run) merges in.

        Raises:
            PersistenceError: The changelog or the spill file could not be written
        """
        line = entry.to_csv_line()
        try:
            with self._lock():
                pending = self.pending_files()
                lines = self._collect_pending(pending) + [line]
                self._append_lines(lines)
                self._drop_pending(pending)
        except LockTimeoutError as e:
            logger.error(f"{e}; spilling changelog row for {entry.diagram} to a pending file")
            try:
                spill_path = self._spill(line)
            except OSError as spill_error:
                raise PersistenceError(f"Changelog row for {entry.diagram} could not be recorded: {spill_error}") from spill_error
            logger.warning(f"Changelog row for {entry.diagram} stored in {spill_path.name}")
            return False
        except OSError as e:
            raise PersistenceError(f"Cannot append to {self.path}: {e}") from e

        if len(lines) > 1:
            logger.info(f"Merged {len(lines) - 1} pending changelog rows")
        logger.info(f"Added changelog entry for {entry.diagram} (v{entry.version})")
        return True

    def flush_pending(self) -> int:
        """Merge spilled rows into the changelog. Returns the number merged."""
        if not self.pending_files():
            return 0
        try:
            with self._lock():
                pending = self.pending_files()
                lines = self._collect_pending(pending)
                if lines:
                    self._append_lines(lines)
                self._drop_pending(pending)
        except LockTimeoutError as e:
            logger.warning(f"Pending changelog rows left for a later run: {e}")
            return 0
        except OSError as e:
            raise PersistenceError(f"Cannot merge pending rows into {self.path}: {e}") from e
        logger.info(f"Merged {len(lines)} pending changelog rows into {self.path}")
        return len(lines)

    def read_entries(self) -> List[ChangelogEntry]:
        if not self.path.exists():
            return []
        with self.path.open(newline="", encoding="utf-8") as f:
            reader = csv.reader(f)
            header = next(reader, None)
            if header is not None and header != COLUMNS:
                logger.warning(f"Unexpected changelog header in {self.path}: {header}")
            entries = []
            for row in reader:
                if not row:
                    continue
                try:
                    entries.append(ChangelogEntry.from_row(row))
                except ValueError as e:
                    logger.warning(f"Skipping malformed changelog row at line {reader.line_num}: {e}")
            return entries

    def tail(self, count: int) -> List[ChangelogEntry]:
        if count <= 0:
            return []
        return self.read_entries()[-count:]
