"""Shared test fixtures for templatesync."""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

import pytest

from templatesync.config import Settings
from templatesync.filesystem.project_tree import ProjectLayout
from templatesync.releases.directory import DirectoryReleaseSource

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from pathlib import Path

logger = logging.getLogger(__name__)


def _write_tree(root: Path, files: Mapping[str, str | bytes]) -> None:
    for rel, content in files.items():
        target = root / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content, encoding="utf-8")


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer TEMPLATESYNC_* variables out of tests."""
    for key in list(os.environ):
        if key.startswith("TEMPLATESYNC_"):
            monkeypatch.delenv(key)


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, require_clean_git=False)  # type: ignore[call-arg]


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def layout(project: Path) -> ProjectLayout:
    return ProjectLayout(root=project.resolve())


@pytest.fixture
def write_files() -> Callable[[Path, Mapping[str, str | bytes]], None]:
    """Write ``{relative path: content}`` under a directory."""
    return _write_tree


@pytest.fixture
def release_root(tmp_path: Path) -> Path:
    root = tmp_path / "releases"
    root.mkdir()
    return root


@pytest.fixture
def publish(release_root: Path) -> Callable[[str, Mapping[str, str | bytes]], None]:
    """Publish a release ``version`` with the given files into the release directory."""

    def _publish(version: str, files: Mapping[str, str | bytes]) -> None:
        (release_root / version).mkdir()
        _write_tree(release_root / version, files)
        logger.debug("Published test release %s with %d file(s)", version, len(files))

    return _publish


@pytest.fixture
def release_source(release_root: Path) -> DirectoryReleaseSource:
    return DirectoryReleaseSource(release_root)
