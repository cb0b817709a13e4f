"""
Identifier assignment for diagram files.

Every diagram lineage carries a permanent identifier in its file name:

    "Order flow (004).drawio"   -> identifier "004"
    "70.drawio"                 -> legacy identifier "70" (kept verbatim)
    "Order flow.drawio"         -> no identifier yet, gets counter + 1

The counter is only persisted after the rename succeeded, so a failed rename
never burns an identifier. When the counter cannot be written the rename is
undone as well.
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .store import CounterFileStore, KeyValueStore, PersistenceError, StoreConflictError

logger = logging.getLogger(__name__)

# Anchored at the end of the base name; 3+ digits so counters past 999 still match.
IDENTIFIER_SUFFIX = re.compile(r"^(?P<name>.*?)\s*\((?P<id>\d{3,})\)$")
LEGACY_NUMERIC = re.compile(r"^\d+$")

COUNTER_KEY = CounterFileStore.KEY
ID_WIDTH = 3


class RenameError(Exception):
    """Raised when a diagram file cannot be renamed to carry its identifier"""

    def __init__(self, source: Path, target: Path, cause: OSError):
        self.source = source
        self.target = target
        self.cause = cause
        super().__init__(f"Failed to rename {source} -> {target}: {cause}")


def _split(path: Path):
    """Base name and extension; only the last suffix counts as the extension."""
    return path.stem, path.suffix


def extract_identifier(path: Union[str, Path]) -> Optional[str]:
    stem, _ = _split(Path(path))
    match = IDENTIFIER_SUFFIX.match(stem)
    if match:
        return match.group("id")
    if LEGACY_NUMERIC.match(stem):
        return stem
    return None


def clean_name(path: Union[str, Path]) -> str:
    """Base name with any identifier suffix removed."""
    stem, _ = _split(Path(path))
    match = IDENTIFIER_SUFFIX.match(stem)
    if match:
        return match.group("name")
    return stem


def format_identifier(value: int) -> str:
    return f"{value:0{ID_WIDTH}d}"


def with_identifier(path: Path, identifier: str) -> Path:
    stem, suffix = _split(path)
    return path.with_name(f"{stem} ({identifier}){suffix}")


@dataclass
class AssignmentResult:
    path: Path
    identifier: str
    original_path: Path
    newly_assigned: bool = False

    @property
    def renamed(self) -> bool:
        return self.path != self.original_path


class IdentifierRegistry:
    """Hands out identifiers from the shared counter and renames files to carry them."""

    def __init__(self, counter: KeyValueStore, max_attempts: int = 5):
        self.counter = counter
        self.max_attempts = max_attempts

    def current(self) -> int:
        value = self.counter.get(COUNTER_KEY)
        return int(value) if value else 0

    def assign(self, path: Union[str, Path]) -> AssignmentResult:
        path = Path(path)
        existing = extract_identifier(path)
        if existing is not None:
            logger.info(f"File {path.name} already has ID {existing}")
            return AssignmentResult(path=path, identifier=existing, original_path=path)

        for attempt in range(1, self.max_attempts + 1):
            stored = self.counter.get(COUNTER_KEY)
            previous = int(stored) if stored else 0
            identifier = format_identifier(previous + 1)
            target = with_identifier(path, identifier)

            if target.exists():
                raise RenameError(path, target, FileExistsError(f"{target} already exists"))

            try:
                os.rename(path, target)
            except OSError as e:
                raise RenameError(path, target, e) from e

            try:
                swapped = self.counter.compare_and_swap(COUNTER_KEY, stored, identifier)
            except PersistenceError:
                self._undo_rename(target, path)
                raise

            if swapped:
                logger.info(f"Assigned ID {identifier} to {path.name} -> {target.name}")
                return AssignmentResult(path=target, identifier=identifier, original_path=path, newly_assigned=True)

            # Another writer moved the counter between our read and write; undo and retry.
            logger.warning(f"Counter changed while assigning {path.name} (attempt {attempt}), retrying")
            self._undo_rename(target, path)

        raise StoreConflictError(f"Could not reserve an identifier for {path} after {self.max_attempts} attempts")

    @staticmethod
    def _undo_rename(target: Path, path: Path) -> None:
        """Give the file its committed name back; the identifier in ``target`` was never reserved."""
        try:
            os.rename(target, path)
        except OSError as e:
            raise PersistenceError(
                f"Identifier in {target.name} was not reserved and the file could not be renamed back to {path.name}: {e}"
            ) from e
