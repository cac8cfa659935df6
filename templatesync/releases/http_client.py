"""Release catalog client over HTTP.

Catalog API:
- ``GET /releases/latest`` and ``GET /releases/{version}`` return
  ``{"version": "...", "files": ["path", ...], "publishedAt": "..."}``
- ``GET /releases/{version}/files/{path}`` returns the raw file content
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote, urlparse

import httpx

from templatesync.exceptions import FetchError, ReleaseNotFoundError, UnsafePathError
from templatesync.filesystem.project_tree import normalize_rel_path
from templatesync.releases.base import Release

logger = logging.getLogger(__name__)

_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}


def validate_release_url(release_url: str, allow_insecure_http: bool = False) -> str:
    """Validate the catalog URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = release_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Release URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost release catalogs. "
            "Set TEMPLATESYNC_ALLOW_INSECURE_HTTP only on trusted networks."
        )
    return normalized


def _parse_release(payload: Any, requested: str) -> Release:
    if not isinstance(payload, dict):
        raise FetchError(f"Release {requested}: expected a JSON object")
    version = payload.get("version")
    files = payload.get("files")
    if not isinstance(version, str) or not version:
        raise FetchError(f"Release {requested}: missing version")
    if not isinstance(files, list) or not all(isinstance(f, str) for f in files):
        raise FetchError(f"Release {requested}: files must be a list of paths")
    try:
        paths = tuple(sorted({normalize_rel_path(f) for f in files}))
    except UnsafePathError as exc:
        raise FetchError(f"Release {version} contains an unsafe path: {exc.path}") from exc
    published_at = payload.get("publishedAt")
    return Release(
        version=version,
        paths=paths,
        published_at=published_at if isinstance(published_at, str) else None,
    )


class HttpReleaseClient:
    """Fetches release metadata and file contents from the catalog."""

    def __init__(
        self,
        release_url: str,
        *,
        timeout: float = 30.0,
        allow_insecure_http: bool = False,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.release_url = validate_release_url(release_url, allow_insecure_http)
        self.client = httpx.Client(base_url=self.release_url, timeout=timeout, transport=transport)

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> HttpReleaseClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _get(self, url: str, version: str) -> httpx.Response:
        try:
            resp = self.client.get(url)
        except httpx.HTTPError as exc:
            raise FetchError(f"Request to {self.release_url}{url} failed: {exc}") from exc
        if resp.status_code == 404:
            raise ReleaseNotFoundError(version)
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise FetchError(f"{self.release_url}{url} returned {resp.status_code}") from exc
        return resp

    def _get_release_json(self, url: str, version: str) -> Release:
        resp = self._get(url, version)
        try:
            payload = resp.json()
        except ValueError as exc:
            raise FetchError(f"{self.release_url}{url} returned invalid JSON") from exc
        return _parse_release(payload, version)

    def get_latest_release(self) -> Release:
        release = self._get_release_json("/releases/latest", "latest")
        logger.info("Latest release is %s", release.version)
        return release

    def get_release(self, version: str) -> Release:
        return self._get_release_json(f"/releases/{quote(version, safe='')}", version)

    def fetch_files(self, version: str) -> dict[str, bytes]:
        release = self.get_release(version)
        files: dict[str, bytes] = {}
        for path in release.paths:
            url = f"/releases/{quote(release.version, safe='')}/files/{quote(path, safe='/')}"
            files[path] = self._get(url, version).content
        logger.info("Fetched %d file(s) of release %s", len(files), release.version)
        return files
