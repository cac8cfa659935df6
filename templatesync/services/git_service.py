"""Git service: working-tree checks via git CLI."""

from __future__ import annotations

import logging
import subprocess
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


class GitService:
    """Wraps the git CLI operations Validate needs on the project directory."""

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir

    def _run(
        self,
        *args: str,
        check: bool = True,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run a git command in the project directory."""
        return subprocess.run(
            ["git", *args],
            cwd=self.project_dir,
            check=check,
            capture_output=capture_output,
            text=True,
        )

    def is_work_tree(self) -> bool:
        """True when the project directory is inside a git work tree."""
        try:
            result = self._run("rev-parse", "--is-inside-work-tree", check=False)
        except FileNotFoundError:
            logger.debug("git is not installed; skipping work-tree checks")
            return False
        return result.returncode == 0 and result.stdout.strip() == "true"

    def dirty_paths(self) -> list[str]:
        """Paths with uncommitted changes to git-tracked files anywhere in the work tree.

        Untracked files are ignored. Raises subprocess.CalledProcessError when
        git itself fails, so callers can tell "dirty" from "git broken".
        """
        result = self._run("status", "--porcelain", "--untracked-files=no")
        return [line[3:] for line in result.stdout.splitlines() if line.strip()]
