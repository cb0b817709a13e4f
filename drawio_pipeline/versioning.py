"""
Per-identifier semantic versions driven by commit messages.

A commit message mentioning "added" or "new" (any case, anywhere) is a major
bump: major + 1, minor reset to 0. Anything else is a minor bump. An
identifier seen for the first time starts from 0.0, so the first "Added ..."
commit yields 1.0 and the first "Fix ..." commit yields 0.1.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .store import KeyValueStore, PersistenceError, StoreConflictError

logger = logging.getLogger(__name__)

MAJOR_KEYWORDS = re.compile(r"(added|new)", re.IGNORECASE)
VERSION_PATTERN = re.compile(r"^(?P<major>\d+)(?:\.(?P<minor>\d+))?$")


class BumpKind(str, Enum):
    MAJOR = "major"
    MINOR = "minor"


@dataclass(frozen=True, order=True)
class Version:
    major: int = 0
    minor: int = 0

    @classmethod
    def parse(cls, text: Optional[str]) -> "Version":
        """
        Parse "major.minor" ("2" reads as 2.0; empty or None as 0.0).

        Raises:
            ValueError: The text is not of that form
        """
        if not text or not text.strip():
            return cls()
        match = VERSION_PATTERN.match(text.strip())
        if not match:
            raise ValueError(f"Invalid version '{text}', expected major.minor")
        return cls(int(match.group("major")), int(match.group("minor") or 0))

    def bump(self, kind: BumpKind) -> "Version":
        if kind is BumpKind.MAJOR:
            return Version(self.major + 1, 0)
        return Version(self.major, self.minor + 1)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}"


INITIAL_VERSION = Version(0, 0)


def classify(commit_message: Optional[str]) -> BumpKind:
    if commit_message and MAJOR_KEYWORDS.search(commit_message):
        return BumpKind.MAJOR
    return BumpKind.MINOR


class VersionLedger:
    """Current version per identifier, persisted through a key-value store."""

    def __init__(self, store: KeyValueStore, max_attempts: int = 5):
        self.store = store
        self.max_attempts = max_attempts

    def _parse_stored(self, identifier: str, stored: Optional[str]) -> Version:
        if not stored:
            return INITIAL_VERSION
        try:
            return Version.parse(stored)
        except ValueError as e:
            raise PersistenceError(f"Stored version of ID {identifier} is corrupt: {e}") from e

    def current(self, identifier: str) -> Version:
        return self._parse_stored(identifier, self.store.get(identifier))

    def next_version(self, identifier: str, commit_message: Optional[str]) -> str:
        kind = classify(commit_message)

        for attempt in range(1, self.max_attempts + 1):
            stored = self.store.get(identifier)
            current = self._parse_stored(identifier, stored)
            new = current.bump(kind)

            if self.store.compare_and_swap(identifier, stored, str(new)):
                logger.info(f"Version for ID {identifier}: {current} -> {new} ({kind.value} bump)")
                return str(new)

            logger.warning(f"Version of ID {identifier} changed concurrently (attempt {attempt}), retrying")

        raise StoreConflictError(f"Could not update version of {identifier} after {self.max_attempts} attempts")
