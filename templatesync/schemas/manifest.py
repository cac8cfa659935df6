"""Manifest file schema.

The manifest is stored as JSON with camelCase keys; Python code uses the
snake_case attribute names.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from templatesync.services.datetime_service import normalize_timestamp
from templatesync.services.fingerprint_service import Fingerprint

MANIFEST_SCHEMA_VERSION = 1
UNVERSIONED = "unversioned"


def _timestamp(value: object) -> str:
    if not isinstance(value, str | datetime):
        raise ValueError(f"expected a timestamp, got {type(value).__name__}")
    return normalize_timestamp(value)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TrackedFileEntry(_CamelModel):
    """Baseline record for one template-derived file."""

    path: str = Field(min_length=1)
    # None means no trustworthy baseline (first-time adoption).
    original_fingerprint: str | None = None
    customized: bool = False
    official: bool = True

    @field_validator("original_fingerprint")
    @classmethod
    def parseable_fingerprint(cls, v: str | None) -> str | None:
        if v is not None:
            Fingerprint.parse(v)
        return v


class BackupRecord(_CamelModel):
    """One entry of the manifest's backup history."""

    timestamp: str
    path: str
    from_version: str
    to_version: str

    @field_validator("timestamp", mode="before")
    @classmethod
    def strict_timestamp(cls, v: object) -> str:
        return _timestamp(v)


class Manifest(_CamelModel):
    """Durable per-project record of the last successful sync."""

    schema_version: int = MANIFEST_SCHEMA_VERSION
    template_version: str = UNVERSIONED
    created_at: str
    updated_at: str
    official_paths: list[str] = Field(default_factory=list)
    tracked_files: list[TrackedFileEntry] = Field(default_factory=list)
    custom_files: list[str] = Field(default_factory=list)
    backup_history: list[BackupRecord] = Field(default_factory=list)

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def strict_timestamps(cls, v: object) -> str:
        return _timestamp(v)

    @field_validator("tracked_files")
    @classmethod
    def unique_paths(cls, v: list[TrackedFileEntry]) -> list[TrackedFileEntry]:
        seen: set[str] = set()
        for entry in v:
            if entry.path in seen:
                raise ValueError(f"duplicate tracked path: {entry.path}")
            seen.add(entry.path)
        return v

    def entry_map(self) -> dict[str, TrackedFileEntry]:
        return {entry.path: entry for entry in self.tracked_files}

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2) + "\n"
