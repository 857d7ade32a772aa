"""Run untrusted commands under the staging identity.

Every call is bracketed: the working directory is handed to the staging
identity before the command runs and handed back to the invoking user
afterwards, whether or not the command succeeded. Stray processes left
behind by the staging identity are killed before the hand-back.
"""

from __future__ import annotations

import grp
import logging
import os
import pwd
import shutil
from pathlib import Path
from typing import Mapping, Optional, Sequence

from .errors import StagingError
from .model import CommandResult, StagingIdentity
from .process import ProcessRunner

CHMOD = "/bin/chmod"
CHOWN = "/bin/chown"


def invoking_user() -> str:
    """Name of the effective user, the owner trees are handed back to."""
    uid = os.geteuid()
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


class SecureExecutor:
    def __init__(
        self,
        runner: ProcessRunner,
        logger: logging.Logger,
        *,
        invoker: str | None = None,
    ):
        self.runner = runner
        self.logger = logger
        self.invoker = invoker or invoking_user()

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    def secure_path(self, path: str | Path, identity: Optional[StagingIdentity]) -> None:
        """chmod + chown path to the staging identity. Raises on failure."""
        if identity is None:
            return
        res = self.runner.run([CHMOD, "-R", "0755", str(path)])
        if not res.ok:
            raise StagingError(
                kind="secure_failed",
                message=f"Failed chmodding dir: {res.output.strip()}",
                details={"path": str(path)},
            )
        res = self.runner.run(["sudo", CHOWN, "-R", identity.chown_spec, str(path)])
        if not res.ok:
            # chown -R can fail partway through the tree
            try:
                self.unsecure_path(path, identity)
            except StagingError as e:
                self.logger.error("Failed to unsecure dir: %s", e.message)
            raise StagingError(
                kind="secure_failed",
                message=f"Failed chowning dir: {res.output.strip()}",
                details={"path": str(path)},
            )

    def unsecure_path(self, path: str | Path, identity: Optional[StagingIdentity]) -> None:
        """Give path back to the invoking user. Raises on failure."""
        if identity is None:
            return
        res = self.runner.run(["sudo", CHOWN, "-R", self.invoker, str(path)])
        if not res.ok:
            raise StagingError(
                kind="secure_failed",
                message=f"Failed chowning dir: {res.output.strip()}",
                details={"path": str(path)},
            )

    def secure_delete(self, path: str | Path, identity: Optional[StagingIdentity]) -> None:
        """Take ownership of path back (if needed) and remove it."""
        p = Path(path)
        if identity is not None and p.exists():
            res = self.runner.run(["sudo", CHOWN, "-R", self.invoker, str(p)])
            if not res.ok:
                self.logger.debug("Failed chowning %s to %s: %s", p, self.invoker, res.output)
        shutil.rmtree(p, ignore_errors=True)

    def secure_group(self, identity: StagingIdentity) -> Optional[str]:
        if identity.gid is None:
            return None
        try:
            return grp.getgrgid(identity.gid).gr_name
        except KeyError as e:
            raise StagingError(
                kind="secure_failed",
                message=f"No group entry for gid {identity.gid}",
                details={"uid": identity.uid},
            ) from e

    def kill_strays(self, identity: Optional[StagingIdentity]) -> None:
        if identity is None:
            return
        # pkill exits 1 when nothing matched; that is the common case
        self.runner.run(["pkill", "-9", "-U", str(identity.uid)], identity=identity)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run_secure(
        self,
        command: Sequence[str],
        where: str | Path,
        identity: Optional[StagingIdentity] = None,
        *,
        group: bool = False,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        """
        Run command with cwd=where, as identity when one is given.
        Returns the CommandResult; never raises for a non-zero exit.
        """
        self.secure_path(where, identity)
        try:
            group_name = None
            if group and identity is not None:
                group_name = self.secure_group(identity)
                if group_name is None:
                    self.logger.debug("No gid for uid %s, running without group switch", identity.uid)
            result = self.runner.run(
                command,
                cwd=where,
                identity=identity,
                group=group_name,
                env=env,
            )
        finally:
            try:
                self.kill_strays(identity)
            finally:
                try:
                    self.unsecure_path(where, identity)
                except StagingError as e:
                    self.logger.error("Failed to unsecure dir: %s", e.message)
        return result

    def run_secure_succeeded(
        self,
        command: Sequence[str],
        where: str | Path,
        identity: Optional[StagingIdentity] = None,
    ) -> bool:
        return self.run_secure(command, where, identity).ok

    def run_secure_group(
        self,
        command: Sequence[str],
        where: str | Path,
        identity: Optional[StagingIdentity] = None,
    ) -> CommandResult:
        # npm and friends need the directory to belong to the secure group
        return self.run_secure(command, where, identity, group=True)
