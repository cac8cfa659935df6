"""Base protocol and data classes for release catalogs."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

_VERSION_TOKEN_RE = re.compile(r"\d+|[^\d.\-+_]+")


@dataclass(frozen=True)
class Release:
    """Metadata of one upstream template release."""

    version: str
    paths: tuple[str, ...]
    published_at: str | None = None


@runtime_checkable
class ReleaseSource(Protocol):
    """Where template releases come from."""

    def get_latest_release(self) -> Release:
        """Return the newest published release."""
        ...

    def get_release(self, version: str) -> Release:
        """Return one release. Raises ReleaseNotFoundError for unknown versions."""
        ...

    def fetch_files(self, version: str) -> dict[str, bytes]:
        """Return ``path -> content`` for every file of a release."""
        ...


def version_sort_key(version: str) -> tuple[tuple[int, int | str], ...]:
    """Natural ordering for version strings: ``1.10.0`` sorts after ``1.9.2``.

    A leading ``v`` is ignored and numeric tokens compare as integers.
    Textual tokens (``rc1``, ``beta``) compare as text; this is not PEP 440.
    """
    tokens = _VERSION_TOKEN_RE.findall(version.lower().removeprefix("v"))
    return tuple((0, int(token)) if token.isdigit() else (1, token) for token in tokens)
