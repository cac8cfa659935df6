"""Detection of the UI surface hosting a run. Used for output formatting only."""

from __future__ import annotations

import os
import sys
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping
    from typing import TextIO


class HostContext(StrEnum):
    TERMINAL = "terminal"
    VSCODE = "vscode"
    JETBRAINS = "jetbrains"
    CI = "ci"
    PIPE = "pipe"


def detect_host_context(
    environ: Mapping[str, str] | None = None,
    stream: TextIO | None = None,
) -> HostContext:
    """Report which surface the output is going to."""
    env = os.environ if environ is None else environ
    out = sys.stdout if stream is None else stream

    if env.get("CI", "").lower() in {"1", "true", "yes"} or "GITHUB_ACTIONS" in env:
        return HostContext.CI
    if env.get("TERM_PROGRAM") == "vscode" or "VSCODE_PID" in env:
        return HostContext.VSCODE
    if "JetBrains" in env.get("TERMINAL_EMULATOR", ""):
        return HostContext.JETBRAINS
    if not out.isatty():
        return HostContext.PIPE
    return HostContext.TERMINAL


def supports_color(context: HostContext, environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    if "NO_COLOR" in env:
        return False
    return context in (HostContext.TERMINAL, HostContext.VSCODE, HostContext.JETBRAINS)
