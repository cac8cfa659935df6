"""Transactional template update: validate, classify, back up, apply, commit.

A run moves through fixed phases:

    Validate -> LoadOrCreateManifest -> FetchTargetRelease -> ClassifyAll
    -> (preview exit | confirm) -> CreateBackup -> ApplyNonConflicting
    -> ResolveConflicts -> CommitManifest -> PruneBackups

Nothing in the project tree changes before CreateBackup. Any error from
ApplyNonConflicting through CommitManifest restores the backup taken by the
same run. Writing the manifest is the last write of a successful run, so a
crash before it leaves the old manifest next to a restorable backup.

Concurrent runs against one project directory are not supported; no lock is
taken.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from templatesync.exceptions import (
    BackupError,
    FetchError,
    FingerprintError,
    PreconditionError,
    RestoreError,
    TemplateSyncError,
    UnsafePathError,
)
from templatesync.filesystem.project_tree import (
    normalize_rel_path,
    remove_file,
    scan_tracked_files,
    tracked_roots,
    write_bytes_atomic,
)
from templatesync.releases.base import version_sort_key
from templatesync.schemas.manifest import UNVERSIONED, BackupRecord, Manifest, TrackedFileEntry
from templatesync.services.backup_service import BackupManager
from templatesync.services.classifier_service import (
    FileAction,
    FileState,
    apply_force,
    classify_all,
    has_mutations,
    summarize,
)
from templatesync.services.datetime_service import format_backup_name, format_iso, now_utc
from templatesync.services.diff_service import MergeArtifactGenerator
from templatesync.services.fingerprint_service import (
    UNREADABLE,
    Fingerprint,
    fingerprint_bytes,
    fingerprint_file,
)
from templatesync.services.git_service import GitService
from templatesync.services.manifest_service import ManifestStore, OfficialPathCache

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from templatesync.config import Settings
    from templatesync.filesystem.project_tree import ProjectLayout
    from templatesync.releases.base import Release, ReleaseSource
    from templatesync.services.backup_service import Backup
    from templatesync.services.diff_service import ResolutionArtifact

logger = logging.getLogger(__name__)

# Actions written by ApplyNonConflicting; merges are handled by ResolveConflicts.
_APPLIED = frozenset({FileAction.ADD, FileAction.UPDATE, FileAction.REMOVE})


class UpdateOutcome(StrEnum):
    SUCCESS = "success"
    UP_TO_DATE = "up_to_date"
    PREVIEW = "preview"
    DECLINED = "declined"
    PRECONDITION_FAILED = "precondition_failed"
    FETCH_FAILED = "fetch_failed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    UNRECOVERABLE = "unrecoverable"
    ROLLBACK_FAILED = "rollback_failed"


@dataclass(frozen=True)
class UpdateOptions:
    """Caller choices for one run.

    ``installed_version`` only matters for a project without a manifest: it
    names the release the project was generated from, whose file contents
    then serve as the baseline. Without it every existing template file is
    adopted as customized.
    """

    target_version: str | None = None
    check_only: bool = False
    force: bool = False
    no_backup: bool = False
    assume_yes: bool = False
    allow_dirty: bool = False
    installed_version: str | None = None


@dataclass(frozen=True)
class UpdatePlan:
    """Everything a run decided before touching the tree."""

    from_version: str
    to_version: str
    states: tuple[FileState, ...]
    manifest: Manifest
    adopted: bool = False
    upstream_files: dict[str, bytes] = field(default_factory=dict, repr=False)
    base_files: dict[str, bytes] = field(default_factory=dict, repr=False)

    @property
    def summary(self) -> dict[FileAction, list[str]]:
        return summarize(self.states)

    @property
    def conflicts(self) -> list[FileState]:
        return [state for state in self.states if state.conflict]

    @property
    def has_mutations(self) -> bool:
        return has_mutations(self.states)

    @property
    def up_to_date(self) -> bool:
        return not self.adopted and self.from_version == self.to_version and not self.has_mutations


@dataclass
class UpdateResult:
    outcome: UpdateOutcome
    message: str = ""
    plan: UpdatePlan | None = None
    backup: Backup | None = None
    artifacts: list[ResolutionArtifact] = field(default_factory=list)
    pruned: list[Backup] = field(default_factory=list)
    scratch_dir: Path | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.outcome in (UpdateOutcome.SUCCESS, UpdateOutcome.UP_TO_DATE, UpdateOutcome.PREVIEW)


class UpdateOrchestrator:
    """Runs one update of one project against a release source."""

    def __init__(
        self,
        layout: ProjectLayout,
        settings: Settings,
        release_source: ReleaseSource,
        *,
        confirm: Callable[[UpdatePlan], bool],
        confirm_prune: Callable[[list[Backup]], bool] | None = None,
        git_service: GitService | None = None,
    ) -> None:
        self.layout = layout
        self.settings = settings
        self.source = release_source
        self.confirm = confirm
        self.confirm_prune = confirm_prune
        self.git = git_service if git_service is not None else GitService(layout.root)
        self.store = ManifestStore(layout, settings.tracked_dirs)
        self.backups = BackupManager(layout)

    def run(self, options: UpdateOptions) -> UpdateResult:
        """Execute the run and report its outcome. Outcomes are returned, not raised."""
        cache = OfficialPathCache()
        try:
            self._validate(options)
            plan = self._prepare(options, cache)
        except PreconditionError as exc:
            logger.warning("Precondition failed: %s", exc)
            return UpdateResult(UpdateOutcome.PRECONDITION_FAILED, str(exc), error=exc)
        except FetchError as exc:
            logger.warning("Fetch failed: %s", exc)
            return UpdateResult(UpdateOutcome.FETCH_FAILED, str(exc), error=exc)
        except TemplateSyncError as exc:
            logger.warning("Update aborted: %s", exc)
            return UpdateResult(UpdateOutcome.FAILED, str(exc), error=exc)

        if options.check_only:
            logger.info("Preview only; nothing written")
            return UpdateResult(UpdateOutcome.PREVIEW, plan=plan)
        if plan.up_to_date:
            logger.info("Project is up to date at %s", plan.to_version)
            return UpdateResult(UpdateOutcome.UP_TO_DATE, f"Already at {plan.to_version}", plan=plan)
        if not options.assume_yes and not self.confirm(plan):
            logger.info("Update declined by user")
            return UpdateResult(UpdateOutcome.DECLINED, "Update declined", plan=plan)

        return self._execute(plan, options)

    # Validate

    def _validate(self, options: UpdateOptions) -> None:
        root = self.layout.root
        if not root.is_dir():
            raise PreconditionError(f"Project directory {root} does not exist")
        if options.check_only:
            return

        if options.no_backup and not self.settings.allow_no_backup:
            raise PreconditionError(
                "Refusing to update without a backup. "
                "Set TEMPLATESYNC_ALLOW_NO_BACKUP=true to allow --no-backup."
            )
        if options.no_backup:
            logger.warning("Backups disabled: a failed update cannot be rolled back")

        writable = [root, self.layout.state_dir]
        writable += [root / d for d in self.settings.tracked_dirs]
        for path in writable:
            if path.exists() and not os.access(path, os.W_OK | os.X_OK):
                raise PreconditionError(f"No write access to {path}")

        if self.settings.require_clean_git and not options.allow_dirty and self.git.is_work_tree():
            try:
                dirty = self.git.dirty_paths()
            except subprocess.CalledProcessError as exc:
                raise PreconditionError(f"git status failed: {exc.stderr or exc}") from exc
            if dirty:
                shown = ", ".join(dirty[:5]) + (" ..." if len(dirty) > 5 else "")
                raise PreconditionError(
                    f"Uncommitted changes in {len(dirty)} file(s): {shown}. "
                    "Commit or stash them first, or pass --allow-dirty."
                )
        logger.info("Preconditions satisfied for %s", root)

    # LoadOrCreateManifest, FetchTargetRelease, ClassifyAll

    def _target_release(self, options: UpdateOptions) -> Release:
        if options.target_version:
            return self.source.get_release(options.target_version)
        return self.source.get_latest_release()

    def _prepare(self, options: UpdateOptions, cache: OfficialPathCache) -> UpdatePlan:
        target = self._target_release(options)
        cache.prime(target.version, target.paths)

        manifest = self.store.load()
        adopted = manifest is None
        if manifest is None:
            manifest = self._adopt(options, target, cache)
        logger.info("Installed version %s, target %s", manifest.template_version, target.version)
        installed = manifest.template_version
        if installed != UNVERSIONED and version_sort_key(target.version) < version_sort_key(installed):
            raise PreconditionError(
                f"Target version {target.version} is older than the installed {installed}; "
                "refusing to downgrade. Restore a backup to go back."
            )

        upstream_files = self._fetch(target.version)
        cache.prime(target.version, upstream_files)

        if manifest.template_version == UNVERSIONED:
            installed_official: frozenset[str] = frozenset(manifest.official_paths)
        else:
            if manifest.template_version not in cache:
                cache.prime(manifest.template_version, manifest.official_paths)
            installed_official = cache.get(manifest.template_version)

        upstream = {path: fingerprint_bytes(content) for path, content in upstream_files.items()}
        live = self._live_fingerprints(manifest, upstream)
        states = classify_all(manifest, live, upstream, official_paths=installed_official)
        if options.force:
            states = apply_force(states)
        for state in states:
            logger.debug("%s: %s%s", state.path, state.action, " (forced)" if state.forced else "")

        plan = UpdatePlan(
            from_version=manifest.template_version,
            to_version=target.version,
            states=tuple(states),
            manifest=manifest,
            adopted=adopted,
            upstream_files=upstream_files,
        )
        if plan.conflicts and not options.check_only:
            plan = dataclasses.replace(plan, base_files=self._base_files(plan))
        return plan

    def _adopt(self, options: UpdateOptions, target: Release, cache: OfficialPathCache) -> Manifest:
        if not options.installed_version:
            logger.info("No manifest; adopting existing files as customized")
            return self.store.create(UNVERSIONED, cache.get(target.version), assume_all_customized=True)

        version = options.installed_version
        baseline = {path: fingerprint_bytes(content) for path, content in self._fetch(version).items()}
        cache.prime(version, baseline)
        logger.info("No manifest; adopting with %s as baseline", version)
        return self.store.create(version, cache.get(version), assume_all_customized=False, baseline=baseline)

    def _fetch(self, version: str) -> dict[str, bytes]:
        files: dict[str, bytes] = {}
        for raw_path, content in self.source.fetch_files(version).items():
            try:
                path = normalize_rel_path(raw_path)
                self.layout.resolve(path)
            except UnsafePathError as exc:
                raise FetchError(f"Release {version} ships an unsafe path: {exc.path}") from exc
            files[path] = content
        logger.info("Fetched %d file(s) of release %s", len(files), version)
        return files

    def _live_fingerprints(self, manifest: Manifest, upstream: dict[str, Fingerprint]) -> dict[str, Fingerprint]:
        paths = set(manifest.entry_map()) | set(manifest.custom_files) | set(upstream)
        live: dict[str, Fingerprint] = {}
        for path in sorted(paths):
            fingerprint = self._live_fingerprint(path)
            if fingerprint is not None:
                live[path] = fingerprint
        return live

    def _live_fingerprint(self, path: str) -> Fingerprint | None:
        full = self.layout.resolve(path)
        if not full.exists() and not full.is_symlink():
            return None
        try:
            if not full.is_file():
                raise FingerprintError(full, "not a regular file")
            return fingerprint_file(full)
        except FingerprintError as exc:
            logger.warning("Treating %s as changed: %s", path, exc)
            return UNREADABLE

    def _base_files(self, plan: UpdatePlan) -> dict[str, bytes]:
        """Installed-version content of conflicted files, for the merge base."""
        if plan.from_version == UNVERSIONED or not any(s.stored is not None for s in plan.conflicts):
            return {}
        try:
            installed = self.source.fetch_files(plan.from_version)
        except FetchError as exc:
            logger.warning("Merge base %s unavailable, merging without it: %s", plan.from_version, exc)
            return {}
        wanted = {state.path for state in plan.conflicts if state.stored is not None}
        return {path: content for path, content in installed.items() if path in wanted}

    # CreateBackup .. PruneBackups

    def _execute(self, plan: UpdatePlan, options: UpdateOptions) -> UpdateResult:
        backup: Backup | None = None
        if not options.no_backup:
            roots = tracked_roots(
                set(plan.manifest.official_paths) | set(plan.upstream_files) | set(plan.manifest.custom_files),
                self.settings.tracked_dirs,
            )
            try:
                backup = self.backups.create(roots, plan.from_version, plan.to_version)
            except BackupError as exc:
                logger.error("Backup failed, nothing changed: %s", exc)
                return UpdateResult(UpdateOutcome.FAILED, str(exc), plan=plan, error=exc)

        # Conflict artifacts are filed under the backup's name and pruned with it.
        run_id = backup.name if backup is not None else format_backup_name(now_utc())
        run_dir = self.layout.scratch_dir / run_id

        artifacts: list[ResolutionArtifact] = []
        try:
            logger.info("Applying %d change(s)", sum(s.action in _APPLIED for s in plan.states))
            self._apply(plan)
            artifacts = self._resolve_conflicts(plan, run_dir)
            self.store.save(self._commit_manifest(plan, backup))
        except (Exception, KeyboardInterrupt) as exc:
            return self._rollback(plan, backup, run_dir, exc, artifacts)

        logger.info("Updated %s from %s to %s", self.layout.root, plan.from_version, plan.to_version)
        artifacts = self._promote_artifacts(run_id, run_dir, artifacts)
        pruned = self._prune(options)
        return UpdateResult(
            UpdateOutcome.SUCCESS,
            f"Updated to {plan.to_version}",
            plan=plan,
            backup=backup,
            artifacts=artifacts,
            pruned=pruned,
        )

    def _apply(self, plan: UpdatePlan) -> None:
        for state in plan.states:
            if state.action not in _APPLIED:
                continue
            target = self.layout.resolve(state.path)
            if state.action is FileAction.REMOVE:
                if target.exists() or target.is_symlink():
                    remove_file(target, self.layout.root)
            else:
                write_bytes_atomic(target, plan.upstream_files[state.path])
            logger.debug("%s %s", state.action, state.path)

    def _resolve_conflicts(self, plan: UpdatePlan, run_dir: Path) -> list[ResolutionArtifact]:
        generator = MergeArtifactGenerator(
            self.layout,
            run_dir,
            threshold=self.settings.conflict_threshold_lines,
            context=self.settings.diff_context_lines,
        )
        artifacts: list[ResolutionArtifact] = []
        for state in plan.conflicts:
            try:
                live: bytes | None = self.layout.resolve(state.path).read_bytes()
            except OSError as exc:
                logger.warning("Cannot read %s for merging: %s", state.path, exc)
                live = None
            artifacts.append(
                generator.resolve(
                    state.path,
                    live,
                    plan.base_files.get(state.path),
                    plan.upstream_files[state.path],
                    plan.from_version,
                    plan.to_version,
                )
            )
        return artifacts

    def _commit_manifest(self, plan: UpdatePlan, backup: Backup | None) -> Manifest:
        """The manifest describing the tree as this run leaves it."""
        official = sorted(plan.upstream_files)
        files = scan_tracked_files(self.layout, tracked_roots(official, self.settings.tracked_dirs))

        entries: list[TrackedFileEntry] = []
        for path in official:
            original = fingerprint_bytes(plan.upstream_files[path])
            current = self._live_fingerprint(path)
            entries.append(
                TrackedFileEntry(path=path, original_fingerprint=str(original), customized=current != original)
            )

        history = list(plan.manifest.backup_history)
        if backup is not None:
            history.append(
                BackupRecord(
                    timestamp=backup.timestamp,
                    path=backup.path.relative_to(self.layout.root).as_posix(),
                    from_version=backup.from_version,
                    to_version=backup.to_version,
                )
            )

        return plan.manifest.model_copy(
            update={
                "template_version": plan.to_version,
                "updated_at": format_iso(now_utc()),
                "official_paths": official,
                "tracked_files": entries,
                "custom_files": [path for path in files if path not in plan.upstream_files],
                "backup_history": history,
            }
        )

    def _rollback(
        self,
        plan: UpdatePlan,
        backup: Backup | None,
        run_dir: Path,
        exc: BaseException,
        artifacts: list[ResolutionArtifact],
    ) -> UpdateResult:
        logger.error("Update to %s failed: %s", plan.to_version, exc, exc_info=exc)
        scratch = run_dir if run_dir.exists() else None
        if backup is None:
            logger.error("No backup was taken; the project may be partially updated")
            return UpdateResult(
                UpdateOutcome.UNRECOVERABLE,
                f"Update failed without a backup: {exc}",
                plan=plan,
                artifacts=artifacts,
                scratch_dir=scratch,
                error=exc,
            )
        try:
            self.backups.restore(backup)
        except RestoreError as restore_exc:
            logger.error("Rollback from %s failed: %s", backup.path, restore_exc)
            return UpdateResult(
                UpdateOutcome.ROLLBACK_FAILED,
                f"Update failed ({exc}) and rollback failed ({restore_exc}). "
                f"Restore manually from {backup.path}",
                plan=plan,
                backup=backup,
                artifacts=artifacts,
                scratch_dir=scratch,
                error=exc,
            )
        logger.error("Rolled back to backup %s", backup.name)
        return UpdateResult(
            UpdateOutcome.ROLLED_BACK,
            f"Update failed and was rolled back: {exc}",
            plan=plan,
            backup=backup,
            artifacts=artifacts,
            scratch_dir=scratch,
            error=exc,
        )

    def _promote_artifacts(
        self, run_id: str, run_dir: Path, artifacts: list[ResolutionArtifact]
    ) -> list[ResolutionArtifact]:
        """Move this run's scratch files under the conflicts directory."""
        if not run_dir.exists():
            return artifacts
        destination = self.layout.conflicts_dir / run_id
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            run_dir.rename(destination)
        except OSError as exc:
            logger.warning("Could not move %s to %s: %s", run_dir, destination, exc)
            return artifacts
        if not any(self.layout.scratch_dir.iterdir()):
            self.layout.scratch_dir.rmdir()

        promoted: list[ResolutionArtifact] = []
        for artifact in artifacts:
            if artifact.artifact_path is not None and artifact.artifact_path.is_relative_to(run_dir):
                artifact = dataclasses.replace(
                    artifact, artifact_path=destination / artifact.artifact_path.relative_to(run_dir)
                )
            promoted.append(artifact)
        return promoted

    def _prune(self, options: UpdateOptions) -> list[Backup]:
        keep = self.settings.backup_retention
        candidates = self.backups.list_backups()[keep:]
        if not candidates:
            return []
        if not options.assume_yes and (self.confirm_prune is None or not self.confirm_prune(candidates)):
            logger.info("Keeping %d old backup(s)", len(candidates))
            return []
        try:
            pruned = self.backups.prune(keep)
        except OSError as exc:
            logger.warning("Pruning backups failed: %s", exc)
            return []
        self._prune_conflicts()
        return pruned

    def _prune_conflicts(self) -> None:
        """Delete conflict artifact directories older than the oldest kept backup."""
        backups = self.backups.list_backups()
        conflicts_dir = self.layout.conflicts_dir
        if not backups or not conflicts_dir.is_dir():
            return
        oldest_kept = backups[-1].name
        for entry in sorted(conflicts_dir.iterdir()):
            if not entry.is_dir() or entry.name >= oldest_kept:
                continue
            try:
                shutil.rmtree(entry)
            except OSError as exc:
                logger.warning("Could not remove old conflict artifacts %s: %s", entry, exc)
                continue
            logger.info("Pruned conflict artifacts %s", entry.name)


def restore_backup(layout: ProjectLayout, name: str | None = None) -> Backup:
    """Restore a named backup, or the newest one. Raises RestoreError."""
    manager = BackupManager(layout)
    if name is not None:
        backup = manager.get(name)
    else:
        backups = manager.list_backups()
        if not backups:
            raise RestoreError(f"No backups in {layout.backups_dir}")
        backup = backups[0]
    manager.restore(backup)
    return backup


def describe_state(state: FileState) -> str:
    """One display line for a classified path."""
    note = " (forced)" if state.forced else ""
    if state.unreadable:
        note += " (unreadable)"
    return f"{state.action.value:<8} {state.path}{note}"
