"""Release source selection."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import urlparse

from templatesync.releases.directory import DirectoryReleaseSource
from templatesync.releases.http_client import HttpReleaseClient

if TYPE_CHECKING:
    from templatesync.config import Settings
    from templatesync.releases.base import ReleaseSource


def get_release_source(source: str, settings: Settings) -> ReleaseSource:
    """Create the release source for an HTTP(S) catalog URL or a local directory.

    Raises ValueError if the source is empty or not usable.
    """
    value = source.strip()
    if not value:
        msg = "No release source configured. Pass --source or set TEMPLATESYNC_RELEASE_URL."
        raise ValueError(msg)

    if urlparse(value).scheme in {"http", "https"}:
        return HttpReleaseClient(
            value,
            timeout=settings.http_timeout_seconds,
            allow_insecure_http=settings.allow_insecure_http,
        )

    directory = Path(value.removeprefix("file://")).expanduser()
    if not directory.is_dir():
        msg = f"Release source is neither an http(s) URL nor a directory: {value!r}"
        raise ValueError(msg)
    return DirectoryReleaseSource(directory.resolve())


def close_release_source(source: ReleaseSource) -> None:
    """Release network resources held by a source, if any."""
    if isinstance(source, HttpReleaseClient):
        source.close()
