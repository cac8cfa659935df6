"""Release source backed by a local directory of versioned template trees.

Layout: ``<root>/<version>/<template files...>``. Useful for offline use and
for templates distributed as a checked-out repository.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from templatesync.exceptions import FetchError, ReleaseNotFoundError
from templatesync.releases.base import Release, version_sort_key

logger = logging.getLogger(__name__)

_IGNORED_DIRS = frozenset({".git", ".hg", ".svn"})


class DirectoryReleaseSource:
    """Serves releases from subdirectories of ``root``."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _versions(self) -> list[str]:
        if not self.root.is_dir():
            raise FetchError(f"Release directory {self.root} does not exist")
        return sorted(
            (child.name for child in self.root.iterdir() if child.is_dir() and not child.name.startswith(".")),
            key=version_sort_key,
        )

    def _release_dir(self, version: str) -> Path:
        if version in {"", ".", ".."} or "/" in version or "\\" in version:
            raise ReleaseNotFoundError(version)
        release_dir = self.root / version
        if not release_dir.is_dir():
            raise ReleaseNotFoundError(version)
        return release_dir

    def _scan(self, release_dir: Path) -> dict[str, Path]:
        files: dict[str, Path] = {}
        for dirpath, dirs, filenames in os.walk(release_dir):
            dirs[:] = sorted(d for d in dirs if d not in _IGNORED_DIRS)
            for filename in filenames:
                full = Path(dirpath) / filename
                files[full.relative_to(release_dir).as_posix()] = full
        return dict(sorted(files.items()))

    def get_latest_release(self) -> Release:
        versions = self._versions()
        if not versions:
            raise FetchError(f"No releases in {self.root}")
        return self.get_release(versions[-1])

    def get_release(self, version: str) -> Release:
        release_dir = self._release_dir(version)
        return Release(version=version, paths=tuple(self._scan(release_dir)))

    def fetch_files(self, version: str) -> dict[str, bytes]:
        release_dir = self._release_dir(version)
        try:
            return {rel: full.read_bytes() for rel, full in self._scan(release_dir).items()}
        except OSError as exc:
            raise FetchError(f"Cannot read release {version}: {exc}") from exc
