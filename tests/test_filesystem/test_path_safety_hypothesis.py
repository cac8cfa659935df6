"""Property-based tests for release path normalization."""

from __future__ import annotations

from pathlib import Path, PurePosixPath

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from templatesync.exceptions import UnsafePathError
from templatesync.filesystem.project_tree import normalize_rel_path, safe_local_path

PROPERTY_SETTINGS = settings(
    max_examples=300,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)

_SEGMENT = st.one_of(
    st.sampled_from(["..", ".", "", "scripts", ".github", "a b", "Makefile"]),
    st.text(alphabet="abcxyz._-", min_size=1, max_size=6),
)
_RAW_PATH = st.lists(_SEGMENT, min_size=1, max_size=6).map("/".join)

ROOT = Path("/srv/project")


@PROPERTY_SETTINGS
@given(raw=_RAW_PATH)
def test_normalized_paths_stay_inside_root(raw: str) -> None:
    try:
        normalized = normalize_rel_path(raw)
    except UnsafePathError:
        return
    parts = PurePosixPath(normalized).parts
    assert ".." not in parts
    assert "." not in parts
    assert not normalized.startswith("/")
    assert safe_local_path(ROOT, normalized) is not None


@PROPERTY_SETTINGS
@given(raw=_RAW_PATH)
def test_normalization_is_idempotent(raw: str) -> None:
    try:
        normalized = normalize_rel_path(raw)
    except UnsafePathError:
        return
    assert normalize_rel_path(normalized) == normalized
