"""Project layout, tracked-tree scanning, and atomic file writes."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from templatesync.exceptions import UnsafePathError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from templatesync.config import Settings

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"
_ALWAYS_IGNORED_DIRS = frozenset({".git", ".hg", ".svn"})


@dataclass(frozen=True)
class ProjectLayout:
    """Resolved locations of one project's tracked tree and sync state."""

    root: Path
    state_dir_name: str = ".templatesync"

    @property
    def state_dir(self) -> Path:
        return self.root / self.state_dir_name

    @property
    def manifest_path(self) -> Path:
        return self.state_dir / MANIFEST_FILE

    @property
    def backups_dir(self) -> Path:
        return self.state_dir / "backups"

    @property
    def scratch_dir(self) -> Path:
        return self.state_dir / "scratch"

    @property
    def conflicts_dir(self) -> Path:
        return self.state_dir / "conflicts"

    def resolve(self, rel_path: str) -> Path:
        """Resolve a project-relative path, rejecting traversal and the state dir."""
        local_path = safe_local_path(self.root, rel_path)
        if local_path is None:
            raise UnsafePathError(rel_path)
        if local_path.is_relative_to(self.state_dir.resolve()):
            raise UnsafePathError(rel_path)
        return local_path


def resolve_layout(root: str | Path, settings: Settings) -> ProjectLayout:
    """Build the layout for a project directory."""
    settings.validate_layout()
    return ProjectLayout(root=Path(root).resolve(), state_dir_name=settings.state_dir_name)


def normalize_rel_path(raw: str) -> str:
    """Normalize a release path to POSIX form, rejecting absolute paths and ``..``."""
    value = raw.strip().replace("\\", "/")
    posix_path = PurePosixPath(value)
    if not value or posix_path.is_absolute():
        raise UnsafePathError(raw)
    parts = [part for part in posix_path.parts if part not in {"", "."}]
    if not parts or ".." in parts:
        raise UnsafePathError(raw)
    return "/".join(parts)


def safe_local_path(root: Path, rel_path: str) -> Path | None:
    """Resolve a release-provided path within root, returning None on traversal."""
    local_path = (root / rel_path).resolve()
    if not local_path.is_relative_to(root.resolve()):
        return None
    return local_path


def tracked_roots(official_paths: Iterable[str], tracked_dirs: Iterable[str] = ()) -> list[str]:
    """Top-level entries under tracking.

    Configured directories are always tracked. Every official path also
    contributes its top-level component, so a template shipping
    ``.github/workflows/ci.yml`` and ``Makefile`` tracks ``.github`` and
    ``Makefile``.
    """
    roots = {normalize_rel_path(d) for d in tracked_dirs}
    for path in official_paths:
        roots.add(normalize_rel_path(path).split("/", 1)[0])
    return sorted(roots)


def scan_tracked_files(layout: ProjectLayout, roots: Iterable[str]) -> dict[str, Path]:
    """Map relative POSIX path -> absolute path for every file under the roots."""
    entries: dict[str, Path] = {}
    state_dir = layout.state_dir
    for root_name in roots:
        top = layout.root / root_name
        if top == state_dir or root_name in _ALWAYS_IGNORED_DIRS:
            continue
        if top.is_file():
            entries[root_name] = top
            continue
        if not top.is_dir():
            continue
        for dirpath, dirs, files in os.walk(top):
            current = Path(dirpath)
            dirs[:] = sorted(
                d for d in dirs if d not in _ALWAYS_IGNORED_DIRS and current / d != state_dir
            )
            for filename in files:
                full = current / filename
                rel = full.relative_to(layout.root).as_posix()
                entries[rel] = full
    return dict(sorted(entries.items()))


def write_bytes_atomic(path: Path, content: bytes) -> None:
    """Write content via a unique temp file in the same directory, then rename over path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        temp_path.replace(path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def write_text_atomic(path: Path, content: str) -> None:
    write_bytes_atomic(path, content.encode("utf-8"))


def remove_file(path: Path, stop_at: Path) -> None:
    """Delete a file and any directories it leaves empty, up to stop_at."""
    path.unlink()
    parent = path.parent
    while parent != stop_at and parent.is_relative_to(stop_at):
        try:
            parent.rmdir()
        except OSError:
            break
        parent = parent.parent
