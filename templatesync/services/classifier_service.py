"""File state classifier: three-way comparison of stored, live, and upstream fingerprints."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from templatesync.services.fingerprint_service import UNREADABLE, Fingerprint
from templatesync.services.manifest_service import stored_fingerprint

if TYPE_CHECKING:
    from collections.abc import Collection, Iterable, Mapping

    from templatesync.schemas.manifest import Manifest


class FileAction(StrEnum):
    """What a sync run does with one path."""

    ADD = "add"
    UPDATE = "update"
    PRESERVE = "preserve"
    REMOVE = "remove"
    MERGE = "merge"
    SKIP = "skip"


MUTATING_ACTIONS = frozenset({FileAction.ADD, FileAction.UPDATE, FileAction.REMOVE, FileAction.MERGE})


@dataclass(frozen=True)
class FileState:
    """Classification of one path for the current run. Never persisted."""

    path: str
    stored: Fingerprint | None
    live: Fingerprint | None
    upstream: Fingerprint | None
    customized: bool
    upstream_changed: bool
    action: FileAction
    official: bool = True
    forced: bool = False

    @property
    def conflict(self) -> bool:
        return self.action is FileAction.MERGE

    @property
    def unreadable(self) -> bool:
        return self.live == UNREADABLE


def classify(
    path: str,
    stored: Fingerprint | None,
    live: Fingerprint | None,
    upstream: Fingerprint | None,
    *,
    is_official: bool = True,
) -> FileState:
    """Decide the action for one path.

    ``None`` means absent: no baseline (stored), no file on disk (live), or
    not shipped by the target release (upstream). A missing baseline always
    counts as a local customization, so files adopted without a trusted
    baseline are never overwritten.

    Decision order:
      live absent,  upstream present                 -> add
      live present, upstream absent, not customized  -> remove
      live present, upstream absent, customized      -> preserve
      both present, customized and upstream changed  -> merge
      both present, customized only                  -> preserve
      both present, upstream changed only            -> update
      both present, neither                          -> skip
    Paths absent on both sides, and custom (non-official) paths upstream
    does not ship, are skipped.
    """
    customized = live is not None and live != stored
    upstream_changed = upstream is not None and upstream != stored

    if live is None:
        action = FileAction.ADD if upstream is not None else FileAction.SKIP
    elif upstream is None:
        if not is_official:
            action = FileAction.SKIP
        elif customized:
            action = FileAction.PRESERVE
        else:
            action = FileAction.REMOVE
    elif customized and upstream_changed:
        action = FileAction.MERGE
    elif customized:
        action = FileAction.PRESERVE
    elif upstream_changed:
        action = FileAction.UPDATE
    else:
        action = FileAction.SKIP

    return FileState(
        path=path,
        stored=stored,
        live=live,
        upstream=upstream,
        customized=customized,
        upstream_changed=upstream_changed,
        action=action,
        official=is_official,
    )


def classify_all(
    manifest: Manifest,
    live: Mapping[str, Fingerprint],
    upstream: Mapping[str, Fingerprint],
    *,
    official_paths: Collection[str] = (),
) -> list[FileState]:
    """Classify every tracked, custom, and newly shipped path, sorted by path.

    ``live`` maps paths present on disk to their fingerprints (``UNREADABLE``
    for files that exist but cannot be read). ``official_paths`` is the
    template path set of the installed version.
    """
    entries = manifest.entry_map()
    paths = set(entries) | set(manifest.custom_files) | set(upstream)

    states: list[FileState] = []
    for path in sorted(paths):
        entry = entries.get(path)
        is_official = (entry is not None and entry.official) or path in official_paths
        states.append(
            classify(
                path,
                stored_fingerprint(entry),
                live.get(path),
                upstream.get(path),
                is_official=is_official,
            )
        )
    return states


def apply_force(states: Iterable[FileState]) -> list[FileState]:
    """Replace customization-preserving actions on official paths with upstream's version.

    Force never touches custom paths. A custom file whose path upstream now
    ships would otherwise merge; under force it is preserved as-is instead.
    """
    forced: list[FileState] = []
    for state in states:
        if not state.official:
            if state.action is FileAction.MERGE:
                state = dataclasses.replace(state, action=FileAction.PRESERVE)
        elif state.action in (FileAction.PRESERVE, FileAction.MERGE):
            action = FileAction.UPDATE if state.upstream is not None else FileAction.REMOVE
            state = dataclasses.replace(state, action=action, forced=True)
        forced.append(state)
    return forced


def summarize(states: Iterable[FileState]) -> dict[FileAction, list[str]]:
    """Group paths by action, every action present as a key."""
    grouped: dict[FileAction, list[str]] = {action: [] for action in FileAction}
    for state in states:
        grouped[state.action].append(state.path)
    return grouped


def has_mutations(states: Iterable[FileState]) -> bool:
    return any(state.action in MUTATING_ACTIONS for state in states)
