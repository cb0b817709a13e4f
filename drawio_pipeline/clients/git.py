import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

logger = logging.getLogger(__name__)

# Unit separator keeps commit subjects with commas or pipes intact
_FIELD_SEP = "\x1f"


class GitError(Exception):
    """Raised when a git command fails"""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str):
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(f"git {' '.join(self.args_list)} failed ({returncode}): {self.stderr}")


@dataclass
class CommitInfo:
    hash: str = ""
    message: str = ""
    author: str = ""

    @property
    def empty(self) -> bool:
        return not (self.hash or self.message or self.author)


class GitClient:
    """Thin wrapper over the git CLI for change detection and commit metadata"""

    def __init__(self, repo_dir: Union[str, Path] = ".", git_binary: str = "git", timeout: int = 60):
        self.repo_dir = Path(repo_dir)
        self.git_binary = git_binary
        self.timeout = timeout

    def _run(self, *args: str) -> str:
        cmd = [self.git_binary, *args]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            completed = subprocess.run(
                cmd,
                cwd=self.repo_dir,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise GitError(args, -1, str(e)) from e
        if completed.returncode != 0:
            raise GitError(args, completed.returncode, completed.stderr)
        return completed.stdout

    @staticmethod
    def _lines(output: str) -> List[str]:
        seen = set()
        result = []
        for line in output.splitlines():
            line = line.strip()
            if line and line not in seen:
                seen.add(line)
                result.append(line)
        return result

    def has_parent(self, ref: str = "HEAD") -> bool:
        try:
            self._run("rev-parse", "--verify", "--quiet", f"{ref}^")
            return True
        except GitError:
            return False

    def changed_diagrams(
        self,
        pathspec: str,
        base: Optional[str] = None,
        head: str = "HEAD",
    ) -> List[str]:
        """
        Added or modified files matching ``pathspec`` between ``base`` and ``head``.

        Without a base, the parent of ``head`` is used; on the initial commit
        every file introduced by ``head`` is returned.
        """
        if base is None and not self.has_parent(head):
            logger.info("Initial commit detected, listing files introduced by HEAD")
            output = self._run("diff-tree", "--no-commit-id", "--name-only", "--root", "-r", head, "--", pathspec)
        else:
            output = self._run("diff", "--name-only", "--diff-filter=AM", base or f"{head}^", head, "--", pathspec)
        files = self._lines(output)
        logger.info(f"git reported {len(files)} changed diagram(s)")
        return files

    def commit_info(self, path: Union[str, Path]) -> CommitInfo:
        """Short hash, subject line and author name of the last commit touching ``path``."""
        fmt = _FIELD_SEP.join(("%h", "%s", "%an"))
        try:
            output = self._run("log", "-1", f"--format={fmt}", "--", str(path))
        except GitError as e:
            logger.warning(f"Could not read commit info for {path}: {e}")
            return CommitInfo()
        line = output.strip()
        if not line:
            return CommitInfo()
        parts = line.split(_FIELD_SEP)
        parts += [""] * (3 - len(parts))
        return CommitInfo(hash=parts[0], message=parts[1], author=parts[2])
