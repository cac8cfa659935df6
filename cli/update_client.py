"""CLI for updating template-derived files from upstream releases."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import TYPE_CHECKING

from templatesync.config import Settings
from templatesync.exceptions import RestoreError
from templatesync.filesystem.project_tree import resolve_layout
from templatesync.host_context import HostContext, detect_host_context, supports_color
from templatesync.releases.registry import close_release_source, get_release_source
from templatesync.services.backup_service import BackupManager
from templatesync.services.classifier_service import FileAction
from templatesync.services.update_service import (
    UpdateOptions,
    UpdateOrchestrator,
    UpdateOutcome,
    describe_state,
    restore_backup,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from templatesync.services.backup_service import Backup
    from templatesync.services.update_service import UpdatePlan, UpdateResult

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_PRECONDITION = 2
EXIT_FETCH = 3
EXIT_DECLINED = 4
EXIT_ROLLED_BACK = 5
EXIT_UNRECOVERABLE = 6

EXIT_CODES: dict[UpdateOutcome, int] = {
    UpdateOutcome.SUCCESS: EXIT_OK,
    UpdateOutcome.UP_TO_DATE: EXIT_OK,
    UpdateOutcome.PREVIEW: EXIT_OK,
    UpdateOutcome.DECLINED: EXIT_DECLINED,
    UpdateOutcome.PRECONDITION_FAILED: EXIT_PRECONDITION,
    UpdateOutcome.FETCH_FAILED: EXIT_FETCH,
    UpdateOutcome.FAILED: EXIT_FAILURE,
    UpdateOutcome.ROLLED_BACK: EXIT_ROLLED_BACK,
    UpdateOutcome.UNRECOVERABLE: EXIT_UNRECOVERABLE,
    UpdateOutcome.ROLLBACK_FAILED: EXIT_UNRECOVERABLE,
}

_ACTION_COLORS = {
    FileAction.ADD: "32",
    FileAction.UPDATE: "36",
    FileAction.REMOVE: "31",
    FileAction.MERGE: "33",
    FileAction.PRESERVE: "35",
}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _colorize(line: str, action: FileAction, color: bool) -> str:
    code = _ACTION_COLORS.get(action)
    if not color or code is None:
        return line
    return f"\033[{code}m{line}\033[0m"


def print_plan(plan: UpdatePlan, context: HostContext) -> None:
    """Print the classification of a run."""
    color = supports_color(context)
    print(f"Template update: {plan.from_version} -> {plan.to_version}")
    if plan.adopted:
        print("  (no manifest yet; existing files are being adopted)")

    summary = plan.summary
    for action in FileAction:
        if action is not FileAction.SKIP:
            print(f"  {action.value + ':':<10}{len(summary[action])}")

    for state in plan.states:
        if state.action is FileAction.SKIP:
            continue
        line = describe_state(state)
        action = state.action
        if context is HostContext.CI:
            # GitHub Actions workflow annotation.
            if action is FileAction.MERGE:
                print(f"::warning file={state.path}::conflict with upstream {plan.to_version}")
            print(f"    {line}")
        else:
            print(_colorize(f"    {line}", action, color))


def print_result(result: UpdateResult) -> None:
    if result.message:
        stream = sys.stdout if result.ok else sys.stderr
        print(result.message, file=stream)
    for artifact in result.artifacts:
        target = f" -> {artifact.artifact_path}" if artifact.artifact_path is not None else ""
        print(f"  {artifact.strategy.value}: {artifact.path}{target}")
    if result.backup is not None and result.ok:
        print(f"Backup: {result.backup.name}")
    for backup in result.pruned:
        print(f"Pruned backup {backup.name}")
    if result.scratch_dir is not None:
        print(f"Merge artifacts kept in {result.scratch_dir}", file=sys.stderr)


def _ask(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def _make_confirm(context: HostContext) -> Callable[[UpdatePlan], bool]:
    def confirm(plan: UpdatePlan) -> bool:
        print_plan(plan, context)
        if context in (HostContext.CI, HostContext.PIPE):
            print("Non-interactive session; pass --yes to apply.", file=sys.stderr)
            return False
        return _ask("Apply these changes?")

    return confirm


def _make_confirm_prune(context: HostContext) -> Callable[[list[Backup]], bool]:
    def confirm_prune(candidates: list[Backup]) -> bool:
        if context in (HostContext.CI, HostContext.PIPE):
            return False
        names = ", ".join(b.name for b in candidates)
        return _ask(f"Delete {len(candidates)} old backup(s) ({names})?")

    return confirm_prune


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="templatesync",
        description="Update template-derived files from upstream while keeping local edits",
    )
    parser.add_argument("--dir", "-d", default=".", help="Project directory (default: current)")
    parser.add_argument("--source", "-s", help="Release catalog URL or directory of releases")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command")

    check = subparsers.add_parser("check", help="Show what an update would change")
    check.add_argument("--version", dest="target_version", help="Target release (default: latest)")

    update = subparsers.add_parser("update", help="Update to an upstream release")
    update.add_argument("--version", dest="target_version", help="Target release (default: latest)")
    update.add_argument(
        "--force",
        action="store_true",
        help="Overwrite customized template files (custom files are never touched)",
    )
    update.add_argument(
        "--no-backup",
        action="store_true",
        help="Skip the backup (requires TEMPLATESYNC_ALLOW_NO_BACKUP=true)",
    )
    update.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    update.add_argument(
        "--allow-dirty",
        action="store_true",
        help="Allow uncommitted changes in the git work tree",
    )
    update.add_argument(
        "--installed-version",
        help="Release the project was created from (first run only)",
    )

    rollback = subparsers.add_parser("rollback", help="Restore a backup")
    rollback.add_argument("--list", action="store_true", help="List backups and exit")
    rollback.add_argument("--backup", help="Backup name (default: newest)")
    rollback.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    return parser


def _rollback(args: argparse.Namespace, settings: Settings, context: HostContext) -> int:
    layout = resolve_layout(args.dir, settings)
    backups = BackupManager(layout).list_backups()
    if args.list:
        if not backups:
            print("No backups.")
        for backup in backups:
            print(f"{backup.name}  {backup.from_version} -> {backup.to_version}  ({backup.timestamp})")
        return EXIT_OK

    name = args.backup or (backups[0].name if backups else None)
    if name is None:
        print(f"Error: No backups in {layout.backups_dir}", file=sys.stderr)
        return EXIT_FAILURE
    if not args.yes:
        if context in (HostContext.CI, HostContext.PIPE):
            print("Non-interactive session; pass --yes to restore.", file=sys.stderr)
            return EXIT_DECLINED
        if not _ask(f"Restore backup {name}? Current tracked files will be replaced."):
            return EXIT_DECLINED
    try:
        backup = restore_backup(layout, name)
    except RestoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    print(f"Restored backup {backup.name} ({backup.from_version})")
    return EXIT_OK


def run_cli(argv: list[str] | None = None) -> int:
    """Parse arguments, run the command, and return the process exit code."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return EXIT_FAILURE

    settings = Settings()
    _configure_logging(args.verbose or settings.debug)
    context = detect_host_context()

    if args.command == "rollback":
        try:
            return _rollback(args, settings, context)
        except ValueError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return EXIT_FAILURE

    try:
        layout = resolve_layout(args.dir, settings)
        source = get_release_source(args.source or settings.release_url, settings)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_PRECONDITION

    check_only = args.command == "check"
    options = UpdateOptions(
        target_version=args.target_version,
        check_only=check_only,
        force=getattr(args, "force", False),
        no_backup=getattr(args, "no_backup", False),
        assume_yes=getattr(args, "yes", False),
        allow_dirty=getattr(args, "allow_dirty", False),
        installed_version=getattr(args, "installed_version", None),
    )
    orchestrator = UpdateOrchestrator(
        layout,
        settings,
        source,
        confirm=_make_confirm(context),
        confirm_prune=_make_confirm_prune(context),
    )
    try:
        result = orchestrator.run(options)
    finally:
        close_release_source(source)

    if result.outcome is UpdateOutcome.PREVIEW and result.plan is not None:
        print_plan(result.plan, context)
    print_result(result)
    return EXIT_CODES[result.outcome]


def main() -> None:
    """CLI entry point."""
    sys.exit(run_cli())


if __name__ == "__main__":
    main()
