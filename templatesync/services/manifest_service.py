"""Version manifest store: load, create, and atomically save the project manifest."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from pydantic import ValidationError

from templatesync.exceptions import (
    CorruptManifestError,
    FingerprintError,
    ManifestError,
    UnsupportedManifestVersionError,
)
from templatesync.filesystem.project_tree import (
    normalize_rel_path,
    scan_tracked_files,
    tracked_roots,
    write_text_atomic,
)
from templatesync.schemas.manifest import (
    MANIFEST_SCHEMA_VERSION,
    Manifest,
    TrackedFileEntry,
)
from templatesync.services.datetime_service import format_iso, now_utc
from templatesync.services.fingerprint_service import Fingerprint, fingerprint_file

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from templatesync.filesystem.project_tree import ProjectLayout

logger = logging.getLogger(__name__)


class OfficialPathCache:
    """Per-run cache of the template path set for each release version.

    Built by the orchestrator for a single run and primed from what the run
    already holds: the fetched target release, the adoption baseline, or the
    installed manifest's official paths. Nothing is fetched on a miss.
    """

    def __init__(self) -> None:
        self._paths: dict[str, frozenset[str]] = {}

    def prime(self, version: str, paths: Iterable[str]) -> None:
        self._paths[version] = frozenset(normalize_rel_path(p) for p in paths)

    def get(self, version: str) -> frozenset[str]:
        """Paths of a primed version. Raises KeyError for a version never primed."""
        return self._paths[version]

    def __contains__(self, version: object) -> bool:
        return version in self._paths


class ManifestStore:
    """Owns the single manifest file of one project."""

    def __init__(self, layout: ProjectLayout, tracked_dirs: Iterable[str] = ()) -> None:
        self.layout = layout
        self.tracked_dirs = tuple(tracked_dirs)

    def load(self) -> Manifest | None:
        """Load the manifest, or None when the project has never been synced.

        Raises UnsupportedManifestVersionError for manifests written by a newer
        schema, CorruptManifestError for malformed content and ManifestError
        when the file cannot be read at all. No case falls back to a default.
        """
        path = self.layout.manifest_path
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise CorruptManifestError(f"Manifest {path} is not valid JSON: {exc}") from exc
        except OSError as exc:
            raise ManifestError(f"Cannot read manifest {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise CorruptManifestError(f"Manifest {path} must contain a JSON object")

        schema_version = raw.get("schemaVersion")
        if not isinstance(schema_version, int) or isinstance(schema_version, bool):
            raise CorruptManifestError(f"Manifest {path} has no integer schemaVersion")
        if schema_version > MANIFEST_SCHEMA_VERSION:
            raise UnsupportedManifestVersionError(schema_version, MANIFEST_SCHEMA_VERSION)

        try:
            return Manifest.model_validate(raw)
        except ValidationError as exc:
            raise CorruptManifestError(f"Manifest {path} is invalid: {exc}") from exc

    def create(
        self,
        version: str,
        official_paths: Iterable[str],
        *,
        assume_all_customized: bool = True,
        baseline: Mapping[str, Fingerprint] | None = None,
    ) -> Manifest:
        """Build a manifest for a project that has none yet.

        Every file under the tracked roots is scanned. Files on the official
        path list become tracked entries; everything else is listed as a
        custom file. With ``assume_all_customized`` no baseline is recorded and
        every official file counts as customized, so nothing pre-existing can
        be overwritten silently. Otherwise the baseline fingerprints (or, when
        absent, the current content) become the original fingerprints.

        The manifest is returned, not saved.
        """
        official = sorted({normalize_rel_path(p) for p in official_paths})
        official_set = set(official)
        roots = tracked_roots(official, self.tracked_dirs)
        files = scan_tracked_files(self.layout, roots)

        entries: list[TrackedFileEntry] = []
        custom: list[str] = []
        for rel, full in files.items():
            if rel not in official_set:
                custom.append(rel)
                continue
            if assume_all_customized:
                entries.append(TrackedFileEntry(path=rel, original_fingerprint=None, customized=True))
                continue
            try:
                live: Fingerprint | None = fingerprint_file(full)
            except FingerprintError as exc:
                logger.warning("Treating %s as customized: %s", rel, exc)
                live = None
            original = baseline.get(rel) if baseline is not None else live
            entries.append(
                TrackedFileEntry(
                    path=rel,
                    original_fingerprint=str(original) if original is not None else None,
                    customized=live is None or original is None or live != original,
                )
            )

        timestamp = format_iso(now_utc())
        logger.info(
            "Created manifest for %s at version %s: %d tracked, %d custom",
            self.layout.root,
            version,
            len(entries),
            len(custom),
        )
        return Manifest(
            template_version=version,
            created_at=timestamp,
            updated_at=timestamp,
            official_paths=official,
            tracked_files=entries,
            custom_files=custom,
        )

    def save(self, manifest: Manifest) -> None:
        """Replace the manifest on disk in one atomic rename."""
        write_text_atomic(self.layout.manifest_path, manifest.to_json())
        logger.debug("Saved manifest %s", self.layout.manifest_path)


def stored_fingerprint(entry: TrackedFileEntry | None) -> Fingerprint | None:
    """The entry's baseline fingerprint, or None when there is no baseline."""
    if entry is None or entry.original_fingerprint is None:
        return None
    return Fingerprint.parse(entry.original_fingerprint)
