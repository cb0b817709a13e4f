"""
Directory-based advisory locking for the shared state files.

``os.mkdir`` is atomic on every filesystem the runners use, so the lock is a
directory next to the protected file (``CHANGELOG.csv.lock``). A lock whose
directory is older than the stale threshold is assumed to belong to a killed
job and is reclaimed.
"""

import logging
import os
import shutil
import socket
import time
from pathlib import Path
from typing import Callable, Optional, Union

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the configured wait"""

    def __init__(self, lock_path: Path, waited: float):
        self.lock_path = lock_path
        self.waited = waited
        super().__init__(f"Could not acquire lock {lock_path} after {waited:.1f}s")


class DirectoryLock:
    """
    Mutual exclusion through an atomically created directory.

    Usage:
        with DirectoryLock(Path("png_files/CHANGELOG.csv.lock")):
            ...
    """

    OWNER_FILE = "owner"

    def __init__(
        self,
        lock_path: Union[str, Path],
        wait_seconds: float = 30.0,
        poll_seconds: float = 1.0,
        stale_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.lock_path = Path(lock_path)
        self.wait_seconds = wait_seconds
        self.poll_seconds = poll_seconds
        self.stale_seconds = stale_seconds
        self._clock = clock
        self._sleep = sleep
        self._held = False

    @classmethod
    def for_file(cls, path: Union[str, Path], **kwargs) -> "DirectoryLock":
        path = Path(path)
        return cls(path.with_name(path.name + ".lock"), **kwargs)

    @property
    def held(self) -> bool:
        return self._held

    def _try_create(self) -> bool:
        try:
            self.lock_path.mkdir()
        except FileExistsError:
            return False
        try:
            (self.lock_path / self.OWNER_FILE).write_text(
                f"{socket.gethostname()}:{os.getpid()}:{int(self._clock())}\n", encoding="utf-8"
            )
        except OSError as e:
            # The lock is ours even if the diagnostics file could not be written
            logger.debug(f"Could not write lock owner file in {self.lock_path}: {e}")
        return True

    def _age(self) -> Optional[float]:
        try:
            return self._clock() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return None

    def is_stale(self) -> bool:
        age = self._age()
        return age is not None and age > self.stale_seconds

    def acquire(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        started = self._clock()
        reclaimed = False

        while True:
            if self._try_create():
                self._held = True
                return

            if not reclaimed and self.is_stale():
                logger.warning(f"Lock {self.lock_path} is stale (older than {self.stale_seconds:.0f}s), reclaiming")
                shutil.rmtree(self.lock_path, ignore_errors=True)
                reclaimed = True
                continue

            waited = self._clock() - started
            if waited >= self.wait_seconds:
                raise LockTimeoutError(self.lock_path, waited)

            logger.info(f"Waiting for lock {self.lock_path} ({waited:.0f}/{self.wait_seconds:.0f}s)")
            self._sleep(self.poll_seconds)

    def release(self) -> None:
        if not self._held:
            return
        shutil.rmtree(self.lock_path, ignore_errors=True)
        self._held = False

    def __enter__(self) -> "DirectoryLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
