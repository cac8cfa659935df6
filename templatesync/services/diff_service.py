"""Merge artifacts for conflicted files: inline conflict markers or a section diff document.

Small files (at most ``threshold`` lines locally) get git-style conflict
markers written in place, which editors recognise and render as a merge UI.
Larger files are left untouched; a Markdown document listing the changed
sections, each with a few lines of context, is written to the run's scratch
directory instead.
"""

from __future__ import annotations

import difflib
import logging
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from templatesync.exceptions import DiffGenerationError
from templatesync.filesystem.project_tree import write_bytes_atomic, write_text_atomic
from templatesync.services.fingerprint_service import decode_text, fingerprint_bytes, is_binary

if TYPE_CHECKING:
    from pathlib import Path

    from templatesync.filesystem.project_tree import ProjectLayout

logger = logging.getLogger(__name__)

CONFLICT_THRESHOLD_LINES = 100
CONTEXT_LINES = 3

_BACKTICK_RUN_RE = re.compile(r"`+")


class ChangeKind(StrEnum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


class ResolutionStrategy(StrEnum):
    INLINE_MARKERS = "inline_markers"
    DIFF_DOCUMENT = "diff_document"
    ALREADY_MERGED = "already_merged"
    INCOMING_COPY = "incoming_copy"


@dataclass(frozen=True)
class DiffSection:
    """A block of differing lines plus surrounding context.

    Line numbers are 1-indexed and inclusive. A side with no lines in the
    section has ``end == start - 1``.
    """

    number: int
    local_start: int
    local_end: int
    incoming_start: int
    incoming_end: int
    local_lines: tuple[str, ...]
    incoming_lines: tuple[str, ...]
    kind: ChangeKind


@dataclass(frozen=True)
class UnchangedRange:
    """Lines identical on both sides and not shown in any section."""

    local_start: int
    local_end: int
    incoming_start: int
    incoming_end: int


@dataclass(frozen=True)
class SectionComparison:
    sections: tuple[DiffSection, ...]
    unchanged: tuple[UnchangedRange, ...]
    local_line_count: int
    incoming_line_count: int


@dataclass(frozen=True)
class ResolutionArtifact:
    """What was produced for one conflicted file."""

    path: str
    strategy: ResolutionStrategy
    artifact_path: Path | None = None
    section_count: int = 0
    fallback_reason: str | None = None


def split_lines(text: str) -> list[str]:
    """Split on line breaks only (``\\n``, ``\\r\\n``, ``\\r``); a final newline ends the last line."""
    if not text:
        return []
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


def count_lines(text: str) -> int:
    return len(split_lines(text))


def compare_sections(local: str, incoming: str, context: int = CONTEXT_LINES) -> SectionComparison:
    """Group differing lines into numbered, non-overlapping sections.

    Neighbouring changes separated by at most ``2 * context`` equal lines
    share one section, so context never overlaps between sections.
    """
    if context < 0:
        raise ValueError(f"context must be >= 0, got {context}")
    a = split_lines(local)
    b = split_lines(incoming)
    matcher = difflib.SequenceMatcher(None, a, b, autojunk=False)

    groups: list[list[tuple[str, int, int, int, int]]] = []
    for opcode in matcher.get_opcodes():
        if opcode[0] == "equal":
            continue
        # Consecutive non-equal opcodes are always separated by one equal block
        # of the same length on both sides.
        if groups and opcode[1] - groups[-1][-1][2] <= 2 * context:
            groups[-1].append(opcode)
        else:
            groups.append([opcode])

    sections: list[DiffSection] = []
    for number, group in enumerate(groups, start=1):
        _, i1, _, j1, _ = group[0]
        _, _, i2, _, j2 = group[-1]
        before = min(context, i1)
        after = min(context, len(a) - i2)
        local_lo, local_hi = i1 - before, i2 + after
        incoming_lo, incoming_hi = j1 - before, j2 + after
        tags = {opcode[0] for opcode in group}
        if tags == {"insert"}:
            kind = ChangeKind.ADDED
        elif tags == {"delete"}:
            kind = ChangeKind.REMOVED
        else:
            kind = ChangeKind.MODIFIED
        sections.append(
            DiffSection(
                number=number,
                local_start=local_lo + 1,
                local_end=local_hi,
                incoming_start=incoming_lo + 1,
                incoming_end=incoming_hi,
                local_lines=tuple(a[local_lo:local_hi]),
                incoming_lines=tuple(b[incoming_lo:incoming_hi]),
                kind=kind,
            )
        )

    unchanged: list[UnchangedRange] = []
    local_seen = incoming_seen = 0
    for section in sections:
        if section.local_start - 1 > local_seen:
            unchanged.append(
                UnchangedRange(
                    local_start=local_seen + 1,
                    local_end=section.local_start - 1,
                    incoming_start=incoming_seen + 1,
                    incoming_end=section.incoming_start - 1,
                )
            )
        local_seen = section.local_end
        incoming_seen = section.incoming_end
    if len(a) > local_seen:
        unchanged.append(
            UnchangedRange(
                local_start=local_seen + 1,
                local_end=len(a),
                incoming_start=incoming_seen + 1,
                incoming_end=len(b),
            )
        )

    return SectionComparison(
        sections=tuple(sections),
        unchanged=tuple(unchanged),
        local_line_count=len(a),
        incoming_line_count=len(b),
    )


def _format_range(start: int, end: int) -> str:
    if end < start:
        return "no lines"
    if end == start:
        return f"line {start}"
    return f"lines {start}-{end}"


def _fence_for(lines: tuple[str, ...]) -> str:
    longest = max((len(run) for line in lines for run in _BACKTICK_RUN_RE.findall(line)), default=0)
    return "`" * max(3, longest + 1)


def _fenced(lines: tuple[str, ...]) -> list[str]:
    fence = _fence_for(lines)
    return [f"{fence}text", *lines, fence]


def render_diff_document(
    path: str,
    comparison: SectionComparison,
    local_label: str,
    incoming_label: str,
) -> str:
    """Render a comparison as Markdown. Same inputs always give the same text."""
    out: list[str] = [
        f"# Merge review: {path}",
        "",
        f"- Local version: `{local_label}` (your copy, {comparison.local_line_count} lines)",
        f"- Incoming version: `{incoming_label}` ({comparison.incoming_line_count} lines)",
        f"- Changed sections: {len(comparison.sections)}",
        "",
        f"`{path}` has not been modified. Apply the incoming changes you want by editing it directly.",
    ]
    for section in comparison.sections:
        out += [
            "",
            f"## Section {section.number} ({section.kind})",
            "",
            f"Local, {_format_range(section.local_start, section.local_end)}:",
            "",
            *_fenced(section.local_lines),
            "",
            f"Incoming, {_format_range(section.incoming_start, section.incoming_end)}:",
            "",
            *_fenced(section.incoming_lines),
        ]
    out += ["", "## Unchanged ranges", ""]
    if comparison.unchanged:
        for span in comparison.unchanged:
            out.append(
                f"- local {_format_range(span.local_start, span.local_end)}"
                f" = incoming {_format_range(span.incoming_start, span.incoming_end)}"
            )
    else:
        out.append("- none")
    return "\n".join(out) + "\n"


def _block(text: str) -> str:
    if text and not text.endswith(("\n", "\r")):
        return text + "\n"
    return text


def render_conflict_markers(
    live: str,
    base: str | None,
    incoming: str,
    stored_label: str,
    incoming_label: str,
) -> str:
    """Wrap the whole file in diff3-style conflict markers.

    The base block is omitted when the original content is unknown.
    """
    parts = [f"<<<<<<< current (local, based on {stored_label})\n", _block(live)]
    if base is not None:
        parts += [f"||||||| base ({stored_label})\n", _block(base)]
    parts += ["=======\n", _block(incoming), f">>>>>>> incoming ({incoming_label})\n"]
    return "".join(parts)


def _as_text(content: bytes | None) -> str | None:
    if content is None or is_binary(content):
        return None
    return decode_text(content)


class MergeArtifactGenerator:
    """Produces the merge artifact for each conflicted file of one run."""

    def __init__(
        self,
        layout: ProjectLayout,
        run_dir: Path,
        *,
        threshold: int = CONFLICT_THRESHOLD_LINES,
        context: int = CONTEXT_LINES,
    ) -> None:
        self.layout = layout
        self.run_dir = run_dir
        self.threshold = threshold
        self.context = context

    def resolve(
        self,
        path: str,
        live: bytes | None,
        stored: bytes | None,
        incoming: bytes,
        stored_label: str,
        incoming_label: str,
    ) -> ResolutionArtifact:
        """Materialize the conflict for one file.

        ``live`` is None when the local file could not be read; ``stored`` is
        None when the original template content is unknown. Errors while
        building a diff document degrade to inline markers. Errors writing
        into the project tree propagate.
        """
        if live is not None and fingerprint_bytes(live) == fingerprint_bytes(incoming):
            logger.info("%s already matches %s", path, incoming_label)
            return ResolutionArtifact(path=path, strategy=ResolutionStrategy.ALREADY_MERGED)

        live_text = _as_text(live)
        incoming_text = _as_text(incoming)
        if live_text is None or incoming_text is None:
            target = self.run_dir / f"{path}.incoming"
            write_bytes_atomic(target, incoming)
            logger.warning("%s is not mergeable text; incoming copy written to %s", path, target)
            return ResolutionArtifact(
                path=path, strategy=ResolutionStrategy.INCOMING_COPY, artifact_path=target
            )

        base_text = _as_text(stored)
        fallback_reason: str | None = None
        if count_lines(live_text) > self.threshold:
            try:
                return self._write_document(path, live_text, incoming_text, stored_label, incoming_label)
            except DiffGenerationError as exc:
                fallback_reason = str(exc)
                logger.warning("Diff document failed for %s, using inline markers: %s", path, exc)

        target = self.layout.resolve(path)
        write_text_atomic(
            target,
            render_conflict_markers(live_text, base_text, incoming_text, stored_label, incoming_label),
        )
        logger.info("Wrote conflict markers into %s", path)
        return ResolutionArtifact(
            path=path,
            strategy=ResolutionStrategy.INLINE_MARKERS,
            artifact_path=target,
            fallback_reason=fallback_reason,
        )

    def _write_document(
        self,
        path: str,
        live_text: str,
        incoming_text: str,
        stored_label: str,
        incoming_label: str,
    ) -> ResolutionArtifact:
        target = self.run_dir / f"{path}.diff.md"
        try:
            comparison = compare_sections(live_text, incoming_text, self.context)
            document = render_diff_document(path, comparison, stored_label, incoming_label)
            # Rendered in full before the write so a failure never leaves a partial document.
            write_text_atomic(target, document)
        except Exception as exc:
            raise DiffGenerationError(f"{path}: {exc}") from exc
        logger.info("Wrote diff document for %s (%d sections)", path, len(comparison.sections))
        return ResolutionArtifact(
            path=path,
            strategy=ResolutionStrategy.DIFF_DOCUMENT,
            artifact_path=target,
            section_count=len(comparison.sections),
        )
