"""
Key-value stores for the pipeline's shared state.

The identifier counter and the version ledger live in plain files committed
next to the diagrams. Business logic only sees the ``KeyValueStore``
interface, so a transactional backend can replace the files without touching
identifier assignment or versioning.
"""

import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .locking import DirectoryLock, LockTimeoutError

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when shared state on disk cannot be read or updated"""
    pass


class StoreConflictError(PersistenceError):
    """Raised when an optimistic update keeps losing to concurrent writers"""
    pass


def atomic_write_text(path: Path, content: str) -> None:
    """Write to a temp file in the same directory, then replace the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class KeyValueStore(ABC):
    """get / set / compare-and-swap over string keys and values"""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def compare_and_swap(self, key: str, expected: Optional[str], new: str) -> bool:
        """Store ``new`` only if the current value equals ``expected`` (None = absent)."""
        ...

    @abstractmethod
    def items(self) -> List[Tuple[str, str]]:
        ...


class MemoryStore(KeyValueStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def compare_and_swap(self, key: str, expected: Optional[str], new: str) -> bool:
        with self._lock:
            if self._data.get(key) != expected:
                return False
            self._data[key] = new
            return True

    def items(self) -> List[Tuple[str, str]]:
        with self._lock:
            return list(self._data.items())


class _LockedFileStore(KeyValueStore):
    """Shared plumbing: every mutation is a locked read-modify-replace."""

    def __init__(self, path: Union[str, Path], lock_options: Optional[Dict[str, Any]] = None):
        self.path = Path(path)
        self.lock_options = dict(lock_options or {})

    def _lock(self) -> DirectoryLock:
        return DirectoryLock.for_file(self.path, **self.lock_options)

    def _read_text(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except OSError as e:
            raise PersistenceError(f"Cannot read {self.path}: {e}") from e

    @abstractmethod
    def _load(self) -> Dict[str, str]:
        ...

    @abstractmethod
    def _dump(self, data: Dict[str, str]) -> str:
        ...

    def _mutate(self, key: str, expected: Any, new: str, check: bool) -> bool:
        try:
            with self._lock():
                data = self._load()
                if check and data.get(key) != expected:
                    return False
                data[key] = new
                atomic_write_text(self.path, self._dump(data))
                return True
        except LockTimeoutError as e:
            raise PersistenceError(str(e)) from e
        except OSError as e:
            raise PersistenceError(f"Cannot update {self.path}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        self._mutate(key, None, value, check=False)

    def compare_and_swap(self, key: str, expected: Optional[str], new: str) -> bool:
        return self._mutate(key, expected, new, check=True)

    def items(self) -> List[Tuple[str, str]]:
        return list(self._load().items())


class MappingFileStore(_LockedFileStore):
    """
    ``key:value`` per line, at most one line per key, last write wins.

    Example file (png_files/.versions):
        004:1.0
        70:2.3
    """

    def _load(self) -> Dict[str, str]:
        data: Dict[str, str] = {}
        for lineno, raw in enumerate(self._read_text().splitlines(), 1):
            line = raw.strip()
            if not line:
                continue
            key, sep, value = line.partition(":")
            if not sep or not key:
                logger.warning(f"Ignoring malformed line {lineno} in {self.path}: {raw!r}")
                continue
            data[key.strip()] = value.strip()
        return data

    def _dump(self, data: Dict[str, str]) -> str:
        return "".join(f"{key}:{value}\n" for key, value in data.items())

    def __iter__(self) -> Iterator[str]:
        return iter(self._load())


class CounterFileStore(_LockedFileStore):
    """
    Single-line file holding the last assigned identifier (``007``).
    Exposed under the single key ``counter``.
    """

    KEY = "counter"
    WIDTH = 3

    def _load(self) -> Dict[str, str]:
        text = self._read_text().strip()
        if not text:
            return {}
        if not text.isdigit():
            raise PersistenceError(f"Counter file {self.path} does not contain a number: {text!r}")
        return {self.KEY: text}

    def _dump(self, data: Dict[str, str]) -> str:
        return f"{int(data[self.KEY]):0{self.WIDTH}d}\n"

    def _mutate(self, key: str, expected: Any, new: str, check: bool) -> bool:
        if key != self.KEY:
            raise KeyError(f"{self.path} only stores '{self.KEY}', got '{key}'")
        return super()._mutate(key, expected, new, check)

    def initialize(self) -> bool:
        """Create the file with ``000`` when it does not exist yet."""
        if self.path.exists():
            return False
        return self.compare_and_swap(self.KEY, None, "0")
