"""Process runner interface.

Every component that shells out (build-pack phases, chmod/chown, the gem
installer, git, ruby) does so through a ProcessRunner so the privileged
behaviour can be swapped for an in-memory fake in tests.
"""

from __future__ import annotations

import shlex
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Mapping, Optional, Sequence

from .model import CommandResult, StagingIdentity


class ProcessRunner(ABC):
    """Abstract interface for running external commands."""

    @abstractmethod
    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: str | Path | None = None,
        identity: Optional[StagingIdentity] = None,
        group: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        """Run argv to completion and return exit status + merged stdout/stderr.

        Args:
            argv: Command and arguments
            cwd: Working directory for the command
            identity: Run as this user instead of the invoking user
            group: With identity, also switch to this group name
            env: Full environment for the child (inherits ours when None)
        """
        ...


def wrap_for_identity(
    argv: Sequence[str],
    identity: Optional[StagingIdentity],
    group: Optional[str] = None,
) -> list[str]:
    """Build the sudo (and sg) prefix that switches to the staging identity."""
    argv = [str(a) for a in argv]
    if identity is None:
        return argv
    if group:
        return ["sudo", "-u", identity.sudo_user, "sg", group, "-c", shlex.join(argv)]
    return ["sudo", "-u", identity.sudo_user, *argv]


class SubprocessRunner(ProcessRunner):
    """Real runner backed by subprocess.run."""

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: str | Path | None = None,
        identity: Optional[StagingIdentity] = None,
        group: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        full = wrap_for_identity(argv, identity, group)
        try:
            proc = subprocess.run(
                full,
                cwd=str(cwd) if cwd is not None else None,
                env=dict(env) if env is not None else None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                close_fds=True,
                check=False,
            )
        except FileNotFoundError as e:
            # same convention as a shell: command not found
            return CommandResult(exit_status=127, output=str(e))
        return CommandResult(exit_status=proc.returncode, output=proc.stdout or "")
