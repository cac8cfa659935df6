"""Snapshots of the tracked tree and their restoration.

Each backup is a directory under ``<state>/backups/<timestamp>/`` holding
``backup.json`` (metadata), ``tree/`` (copies of the tracked roots) and
``manifest.json`` (the manifest at snapshot time, if there was one). A
backup is built under a hidden ``.partial`` name and renamed into place
once complete, so an interrupted snapshot is never listed.
"""

from __future__ import annotations

import json
import logging
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from templatesync.exceptions import BackupError, RestoreError
from templatesync.services.datetime_service import format_backup_name, format_iso, normalize_timestamp, now_utc

if TYPE_CHECKING:
    from collections.abc import Iterable

    from templatesync.filesystem.project_tree import ProjectLayout

logger = logging.getLogger(__name__)

METADATA_FILE = "backup.json"
TREE_DIR = "tree"
MANIFEST_COPY = "manifest.json"
_IGNORE_VCS = shutil.ignore_patterns(".git", ".hg", ".svn")


@dataclass(frozen=True)
class Backup:
    """An immutable snapshot of the tracked tree."""

    name: str
    timestamp: str
    path: Path
    from_version: str
    to_version: str
    roots: tuple[str, ...]
    present: tuple[str, ...]
    has_manifest: bool

    def to_metadata(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "timestamp": self.timestamp,
            "fromVersion": self.from_version,
            "toVersion": self.to_version,
            "roots": list(self.roots),
            "present": list(self.present),
            "hasManifest": self.has_manifest,
        }


def _load_backup(path: Path) -> Backup:
    data = json.loads((path / METADATA_FILE).read_text(encoding="utf-8"))
    return Backup(
        name=path.name,
        timestamp=normalize_timestamp(str(data["timestamp"])),
        path=path,
        from_version=str(data["fromVersion"]),
        to_version=str(data["toVersion"]),
        roots=tuple(data["roots"]),
        present=tuple(data["present"]),
        has_manifest=bool(data["hasManifest"]),
    )


def _copy_entry(source: Path, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    if source.is_dir() and not source.is_symlink():
        shutil.copytree(source, destination, symlinks=True, ignore=_IGNORE_VCS)
    else:
        shutil.copy2(source, destination, follow_symlinks=False)


def _remove_entry(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


class BackupManager:
    """Creates, lists, restores, and prunes backups of one project."""

    def __init__(self, layout: ProjectLayout) -> None:
        self.layout = layout

    def _unique_name(self) -> str:
        base = format_backup_name(now_utc())
        name = base
        counter = 1
        while (self.layout.backups_dir / name).exists():
            name = f"{base}-{counter}"
            counter += 1
        return name

    def create(self, roots: Iterable[str], from_version: str, to_version: str) -> Backup:
        """Snapshot the given top-level roots and the manifest.

        Roots that do not exist yet are recorded as absent, so a restore
        removes anything created under them afterwards.
        """
        roots = tuple(sorted(set(roots)))
        backups_dir = self.layout.backups_dir
        name = self._unique_name()
        staging = backups_dir / f".{name}.partial"
        final = backups_dir / name
        try:
            staging.mkdir(parents=True)
            present: list[str] = []
            for root in roots:
                source = self.layout.root / root
                if source.exists() or source.is_symlink():
                    _copy_entry(source, staging / TREE_DIR / root)
                    present.append(root)
            has_manifest = self.layout.manifest_path.is_file()
            if has_manifest:
                shutil.copy2(self.layout.manifest_path, staging / MANIFEST_COPY)
            backup = Backup(
                name=name,
                timestamp=format_iso(now_utc()),
                path=final,
                from_version=from_version,
                to_version=to_version,
                roots=roots,
                present=tuple(present),
                has_manifest=has_manifest,
            )
            (staging / METADATA_FILE).write_text(
                json.dumps(backup.to_metadata(), indent=2) + "\n", encoding="utf-8"
            )
            staging.rename(final)
        except OSError as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise BackupError(f"Failed to create backup in {backups_dir}: {exc}") from exc

        if not (final / METADATA_FILE).is_file():
            raise BackupError(f"Backup {final} is missing after creation")
        logger.info("Created backup %s (%s -> %s)", name, from_version, to_version)
        return backup

    def list_backups(self) -> list[Backup]:
        """All complete backups, newest first."""
        backups_dir = self.layout.backups_dir
        if not backups_dir.is_dir():
            return []
        backups: list[Backup] = []
        for child in backups_dir.iterdir():
            if child.name.startswith(".") or not (child / METADATA_FILE).is_file():
                continue
            try:
                backups.append(_load_backup(child))
            except (OSError, ValueError, KeyError) as exc:
                logger.warning("Ignoring unreadable backup %s: %s", child, exc)
        return sorted(backups, key=lambda b: b.name, reverse=True)

    def get(self, name: str) -> Backup:
        for backup in self.list_backups():
            if backup.name == name:
                return backup
        raise RestoreError(f"No backup named {name!r} in {self.layout.backups_dir}")

    def restore(self, backup: Backup) -> None:
        """Replace the tracked roots and the manifest with the snapshot.

        The snapshot is first copied into a staging directory inside the state
        directory; then each current entry is moved aside and the staged copy
        renamed into its place. If any swap fails, the entries already swapped
        are put back before RestoreError is raised.
        """
        work = self.layout.state_dir / f".restore-{uuid.uuid4().hex}"
        staged = work / "staged"
        displaced = work / "displaced"
        targets: list[tuple[Path, Path | None]] = []
        try:
            staged.mkdir(parents=True)
            displaced.mkdir()
            for root in backup.roots:
                staged_copy: Path | None = None
                if root in backup.present:
                    staged_copy = staged / root
                    _copy_entry(backup.path / TREE_DIR / root, staged_copy)
                targets.append((self.layout.root / root, staged_copy))
            manifest_copy: Path | None = None
            if backup.has_manifest:
                manifest_copy = staged / MANIFEST_COPY
                shutil.copy2(backup.path / MANIFEST_COPY, manifest_copy)
            targets.append((self.layout.manifest_path, manifest_copy))
        except OSError as exc:
            shutil.rmtree(work, ignore_errors=True)
            raise RestoreError(f"Failed to stage backup {backup.name}: {exc}") from exc

        swapped: list[tuple[Path, Path | None, bool]] = []
        try:
            for index, (current, staged_copy) in enumerate(targets):
                aside: Path | None = None
                if current.exists() or current.is_symlink():
                    aside = displaced / str(index)
                    current.rename(aside)
                swapped.append((current, aside, False))
                if staged_copy is not None:
                    current.parent.mkdir(parents=True, exist_ok=True)
                    staged_copy.rename(current)
                    swapped[-1] = (current, aside, True)
        except OSError as exc:
            self._undo_swaps(swapped)
            raise RestoreError(f"Failed to restore backup {backup.name}: {exc}") from exc

        try:
            shutil.rmtree(work)
        except OSError as exc:
            logger.warning("Could not remove restore work directory %s: %s", work, exc)
        logger.info("Restored backup %s", backup.name)

    def _undo_swaps(self, swapped: list[tuple[Path, Path | None, bool]]) -> None:
        for current, aside, placed in reversed(swapped):
            try:
                if placed:
                    _remove_entry(current)
                if aside is not None:
                    aside.rename(current)
            except OSError:
                logger.exception("Could not undo partial restore of %s", current)

    def prune(self, keep: int) -> list[Backup]:
        """Delete all but the newest ``keep`` backups, oldest first."""
        if keep < 0:
            raise ValueError(f"keep must be >= 0, got {keep}")
        removed: list[Backup] = []
        for backup in reversed(self.list_backups()[keep:]):
            shutil.rmtree(backup.path)
            removed.append(backup)
            logger.info("Pruned backup %s", backup.name)
        return removed
