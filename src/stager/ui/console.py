"""Terminal output for stager commands.

The staging log (see stager.logs) is the detailed record of a job; the
console only shows what an operator needs at a glance.
"""

from __future__ import annotations

import sys
import traceback
from typing import Optional, Sequence

from ..errors import StagingError
from ..model import Dependency, GitDependency, StagingResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Args:
            debug: If True, also print debug lines and tracebacks
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        print(f"\n{title}")
        print("-" * len(title))

    def print_staging_started(self, app_dir: str, buildpacks_dir: str) -> None:
        print("\nSTAGING STARTED")
        print(f"App: {app_dir}")
        print(f"Buildpacks: {buildpacks_dir}")
        print()

    def print_buildpack_selected(self, name: str) -> None:
        print(f"BUILDPACK: {name}")

    def print_staging_result(self, result: StagingResult) -> None:
        """Release summary: selected build-pack, process types, config vars."""
        print("\n" + "=" * 40)
        print("RELEASE")
        print("=" * 40)
        print(f"  buildpack: {result.buildpack}")
        for role, command in sorted(result.release.default_process_types.items()):
            print(f"  process {role}: {command}")
        for key, value in sorted(result.release.config_vars.items()):
            print(f"  config {key}={value}")

    def print_dependencies(
        self,
        plain: Sequence[Dependency],
        git: Sequence[GitDependency],
    ) -> None:
        self.print_header(f"Gems ({len(plain)})")
        for d in plain:
            print(f"  {d.name} ({d.version})")
        self.print_header(f"Git gems ({len(git)})")
        for g in git:
            print(f"  {g.name} ({g.version}) {g.uri}@{g.revision[:12]}")

    def print_gems_installed(self, install_dir: str, count: int) -> None:
        print(f"\nINSTALLED: {count} gem(s) into {install_dir}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message to stderr.

        Args:
            title: Error title
            message: Main error message (may span several lines)
            details: Optional list of detail lines
            suggestion: Optional suggestion for the operator
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(message, file=sys.stderr)
        for detail in details or []:
            print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_staging_error(self, exc: StagingError) -> None:
        """Render a StagingError: kind as the title, details as k=v lines."""
        self.print_error(
            exc.kind.replace("_", " ").capitalize(),
            exc.message,
            details=[f"{k}={v}" for k, v in exc.details.items()],
        )
        if self.debug:
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Unexpected failure: one line normally, full traceback in debug."""
        if self.debug:
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            print(f"Error: {type(exc).__name__}: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        print(message)

    def print_debug(self, message: str) -> None:
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Set by the CLI group callback
_console: Optional[Console] = None


def get_console() -> Console:
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
