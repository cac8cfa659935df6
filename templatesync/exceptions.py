"""Application-level exception types.

Convention:
- ``PreconditionError`` and ``FetchError`` are raised before anything in the
  project tree is touched; the orchestrator reports them without rollback.
- ``FingerprintError`` is raised for unreadable files. Callers that must not
  under-report conflicts catch it and treat the file as changed.
- ``DiffGenerationError`` never escapes the merge artifact generator; it
  degrades to inline conflict markers.
- Any other error raised after the backup exists is a mutation failure and
  triggers an automatic restore.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path


class TemplateSyncError(Exception):
    """Base class for all templatesync errors."""


class PreconditionError(TemplateSyncError):
    """A precondition for a mutating run is not met."""


class FetchError(TemplateSyncError):
    """The release catalog could not be reached or returned bad data."""


class ReleaseNotFoundError(FetchError):
    """The requested release version does not exist upstream."""

    def __init__(self, version: str) -> None:
        super().__init__(f"Release not found: {version}")
        self.version = version


class FingerprintError(TemplateSyncError):
    """A file could not be read for fingerprinting."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Cannot fingerprint {path}: {reason}")
        self.path = path
        self.reason = reason


class ManifestError(TemplateSyncError):
    """The project manifest cannot be used."""


class UnsupportedManifestVersionError(ManifestError):
    """The manifest on disk was written by a newer schema."""

    def __init__(self, found: int, supported: int) -> None:
        super().__init__(
            f"Manifest schema version {found} is newer than the supported version {supported}. "
            "Upgrade templatesync before running it on this project."
        )
        self.found = found
        self.supported = supported


class CorruptManifestError(ManifestError):
    """The manifest on disk is not valid JSON or has the wrong shape."""


class DiffGenerationError(TemplateSyncError):
    """Section comparison failed for a conflicted file."""


class BackupError(TemplateSyncError):
    """A backup could not be created or verified."""


class RestoreError(TemplateSyncError):
    """A backup could not be restored."""


class UnsafePathError(TemplateSyncError, ValueError):
    """A release path resolves outside the project root."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Path escapes project root: {path}")
        self.path = path
