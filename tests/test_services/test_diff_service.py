"""Tests for section comparison and merge artifact generation."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from templatesync.services import diff_service
from templatesync.services.diff_service import (
    ChangeKind,
    MergeArtifactGenerator,
    ResolutionStrategy,
    compare_sections,
    count_lines,
    render_conflict_markers,
    render_diff_document,
    split_lines,
)

if TYPE_CHECKING:
    from pathlib import Path

    from templatesync.filesystem.project_tree import ProjectLayout


def _numbered(count: int, overrides: dict[int, str] | None = None) -> str:
    """``count`` lines ``line N``, with 1-indexed overrides."""
    overrides = overrides or {}
    return "".join(overrides.get(n, f"line {n}") + "\n" for n in range(1, count + 1))


def _generator(layout: ProjectLayout, tmp_path: Path, threshold: int = 100) -> MergeArtifactGenerator:
    return MergeArtifactGenerator(layout, tmp_path / "scratch" / "run", threshold=threshold, context=3)


class TestSplitLines:
    def test_trailing_newline_ends_last_line(self) -> None:
        assert split_lines("a\nb\n") == ["a", "b"]
        assert split_lines("a\nb") == ["a", "b"]

    def test_mixed_endings(self) -> None:
        assert split_lines("a\r\nb\rc") == ["a", "b", "c"]

    def test_empty(self) -> None:
        assert split_lines("") == []
        assert count_lines("\n") == 1


class TestCompareSections:
    def test_identical_has_no_sections(self) -> None:
        comparison = compare_sections(_numbered(10), _numbered(10))
        assert comparison.sections == ()
        assert len(comparison.unchanged) == 1
        assert comparison.unchanged[0].local_end == 10

    def test_single_change_gets_three_lines_context(self) -> None:
        local = _numbered(150, {40: "local 40", 41: "local 41", 42: "local 42"})
        incoming = _numbered(150, {40: "new 40", 41: "new 41", 42: "new 42"})

        comparison = compare_sections(local, incoming, 3)

        assert len(comparison.sections) == 1
        section = comparison.sections[0]
        assert (section.local_start, section.local_end) == (37, 45)
        assert (section.incoming_start, section.incoming_end) == (37, 45)
        assert section.kind is ChangeKind.MODIFIED
        assert section.local_lines[3] == "local 40"
        assert section.incoming_lines[3] == "new 40"
        assert [(u.local_start, u.local_end) for u in comparison.unchanged] == [(1, 36), (46, 150)]

    def test_context_clipped_at_file_edges(self) -> None:
        comparison = compare_sections(_numbered(5, {1: "x"}), _numbered(5))
        section = comparison.sections[0]
        assert section.local_start == 1
        assert section.local_end == 4

    def test_nearby_changes_share_a_section(self) -> None:
        local = _numbered(40, {10: "a", 16: "b"})
        comparison = compare_sections(local, _numbered(40), 3)
        assert len(comparison.sections) == 1
        assert (comparison.sections[0].local_start, comparison.sections[0].local_end) == (7, 19)

    def test_distant_changes_are_separate_sections(self) -> None:
        local = _numbered(40, {10: "a", 18: "b"})
        comparison = compare_sections(local, _numbered(40), 3)
        assert [s.number for s in comparison.sections] == [1, 2]
        first, second = comparison.sections
        assert first.local_end < second.local_start

    def test_pure_insertion(self) -> None:
        local = _numbered(10)
        incoming = local.replace("line 5\n", "line 5\ninserted\n")
        section = compare_sections(local, incoming, 3).sections[0]
        assert section.kind is ChangeKind.ADDED
        assert section.local_end - section.local_start + 1 == 6
        assert section.incoming_end - section.incoming_start + 1 == 7

    def test_pure_deletion_to_empty(self) -> None:
        section = compare_sections("a\nb\n", "", 3).sections[0]
        assert section.kind is ChangeKind.REMOVED
        assert section.incoming_end == section.incoming_start - 1

    def test_negative_context_rejected(self) -> None:
        with pytest.raises(ValueError, match="context"):
            compare_sections("a", "b", -1)


class TestRenderDiffDocument:
    def test_document_layout(self) -> None:
        comparison = compare_sections(_numbered(20, {10: "mine"}), _numbered(20, {10: "theirs"}))
        doc = render_diff_document("Makefile", comparison, "v1", "v2")

        assert doc.startswith("# Merge review: Makefile\n")
        assert "`v1`" in doc and "`v2`" in doc
        assert "## Section 1 (modified)" in doc
        assert "Local, lines 7-13:" in doc
        assert "Incoming, lines 7-13:" in doc
        assert "```text\nline 7\n" in doc
        assert "## Unchanged ranges" in doc
        assert "- local lines 1-6 = incoming lines 1-6" in doc
        assert doc == render_diff_document("Makefile", comparison, "v1", "v2")

    def test_fence_grows_past_backticks_in_content(self) -> None:
        comparison = compare_sections("````\n", "x\n")
        doc = render_diff_document("README.md", comparison, "v1", "v2")
        assert "`````text\n````\n`````" in doc


class TestRenderConflictMarkers:
    def test_with_base(self) -> None:
        text = render_conflict_markers("mine\n", "orig\n", "theirs\n", "v1", "v2")
        assert text == (
            "<<<<<<< current (local, based on v1)\n"
            "mine\n"
            "||||||| base (v1)\n"
            "orig\n"
            "=======\n"
            "theirs\n"
            ">>>>>>> incoming (v2)\n"
        )

    def test_without_base_and_missing_final_newline(self) -> None:
        text = render_conflict_markers("mine", None, "theirs", "unversioned", "v2")
        assert "|||||||" not in text
        assert "mine\n=======\ntheirs\n>>>>>>> incoming (v2)\n" in text


class TestMergeArtifactGenerator:
    def test_threshold_boundary_uses_markers_at_100_lines(
        self, layout: ProjectLayout, project: Path, tmp_path: Path
    ) -> None:
        local = _numbered(100, {50: "mine"})
        (project / "f.txt").write_text(local)

        artifact = _generator(layout, tmp_path).resolve(
            "f.txt", local.encode(), None, _numbered(100, {50: "theirs"}).encode(), "v1", "v2"
        )

        assert artifact.strategy is ResolutionStrategy.INLINE_MARKERS
        content = (project / "f.txt").read_text()
        assert content.startswith("<<<<<<< current")
        assert "mine" in content and "theirs" in content

    def test_threshold_boundary_uses_document_at_101_lines(
        self, layout: ProjectLayout, project: Path, tmp_path: Path
    ) -> None:
        local = _numbered(101, {50: "mine"})
        (project / "f.txt").write_text(local)

        artifact = _generator(layout, tmp_path).resolve(
            "f.txt", local.encode(), None, _numbered(101, {50: "theirs"}).encode(), "v1", "v2"
        )

        assert artifact.strategy is ResolutionStrategy.DIFF_DOCUMENT
        assert artifact.artifact_path == tmp_path / "scratch" / "run" / "f.txt.diff.md"
        assert artifact.section_count == 1
        assert (project / "f.txt").read_text() == local

    def test_already_merged(self, layout: ProjectLayout, project: Path, tmp_path: Path) -> None:
        (project / "f.txt").write_text("same\r\n")
        artifact = _generator(layout, tmp_path).resolve("f.txt", b"same\r\n", b"old\n", b"same\n", "v1", "v2")
        assert artifact.strategy is ResolutionStrategy.ALREADY_MERGED
        assert (project / "f.txt").read_bytes() == b"same\r\n"

    def test_binary_gets_incoming_copy(self, layout: ProjectLayout, project: Path, tmp_path: Path) -> None:
        (project / "logo.png").write_bytes(b"\x89PNG\x00local")
        artifact = _generator(layout, tmp_path).resolve(
            "logo.png", b"\x89PNG\x00local", None, b"\x89PNG\x00upstream", "v1", "v2"
        )
        assert artifact.strategy is ResolutionStrategy.INCOMING_COPY
        assert artifact.artifact_path is not None
        assert artifact.artifact_path.read_bytes() == b"\x89PNG\x00upstream"
        assert (project / "logo.png").read_bytes() == b"\x89PNG\x00local"

    def test_unreadable_local_gets_incoming_copy(self, layout: ProjectLayout, tmp_path: Path) -> None:
        artifact = _generator(layout, tmp_path).resolve("f.txt", None, None, b"new\n", "v1", "v2")
        assert artifact.strategy is ResolutionStrategy.INCOMING_COPY

    def test_document_failure_falls_back_to_markers(
        self,
        layout: ProjectLayout,
        project: Path,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def broken(*args: object, **kwargs: object) -> object:
            raise RuntimeError("boom")

        monkeypatch.setattr(diff_service, "compare_sections", broken)
        local = _numbered(150, {10: "mine"})
        (project / "f.txt").write_text(local)

        artifact = _generator(layout, tmp_path).resolve(
            "f.txt", local.encode(), None, _numbered(150, {10: "theirs"}).encode(), "v1", "v2"
        )

        assert artifact.strategy is ResolutionStrategy.INLINE_MARKERS
        assert artifact.fallback_reason is not None
        assert "boom" in artifact.fallback_reason
        assert (project / "f.txt").read_text().startswith("<<<<<<< current")
        assert not (tmp_path / "scratch" / "run" / "f.txt.diff.md").exists()
