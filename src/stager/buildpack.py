# buildpack.py
from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from .errors import StagingError
from .model import ReleaseInfo, StagingIdentity, StagingResult
from .secure import SecureExecutor
from .settings import DEFAULT_BUNDLER_CACHE_DIR

# Stripped from the environment of every build-pack phase so the staging
# host's own bundle never leaks into the app's build.
_HOST_RUBY_VARS = ("RUBYOPT", "RUBYLIB", "GEM_HOME", "GEM_PATH")


def clean_env(environ: Mapping[str, str] | None = None) -> Dict[str, str]:
    env = dict(os.environ if environ is None else environ)
    for key in list(env):
        if key.startswith("BUNDLE_") or key in _HOST_RUBY_VARS:
            del env[key]
    return env


class BuildpackState(str, Enum):
    UNSELECTED = "unselected"
    DETECTING = "detecting"
    DETECTED = "detected"
    COMPILING = "compiling"
    COMPILED = "compiled"
    RELEASE_QUERIED = "release_queried"
    FAILED = "failed"


class BuildpackInstaller:
    """One installed build-pack: bin/detect, bin/compile, bin/release."""

    def __init__(
        self,
        name: str,
        path: str | Path,
        app_dir: str | Path,
        executor: SecureExecutor,
        logger: logging.Logger,
        identity: Optional[StagingIdentity] = None,
    ):
        self.name = name
        self.path = Path(path)
        self.app_dir = Path(app_dir)
        self.executor = executor
        self.logger = logger
        self.identity = identity

    def command(self, command_name: str, *args: str) -> List[str]:
        return [str(self.path / "bin" / command_name), str(self.app_dir), *args]

    def _run(self, command_name: str, *args: str):
        return self.executor.run_secure(
            self.command(command_name, *args),
            self.app_dir,
            self.identity,
            env=clean_env(),
        )

    def detect(self) -> bool:
        self.logger.info("Checking %s ...", self.name)
        if self._run("detect").ok:
            return True
        self.logger.info("Skipping %s.", self.name)
        return False

    def compile(self, cache_dir: str = DEFAULT_BUNDLER_CACHE_DIR) -> None:
        self.logger.info("Installing %s.", self.name)
        res = self._run("compile", cache_dir)
        self.logger.info(res.output)
        if not res.ok:
            raise StagingError(
                kind="compile_failed",
                message=f"Buildpack compilation step failed:\n{res.output}",
                details={"buildpack": self.name, "exit_status": res.exit_status},
            )

    def release_info(self) -> ReleaseInfo:
        res = self._run("release")
        self.logger.debug("release info: %s", res.output)
        if not res.ok:
            raise StagingError(
                kind="release_invalid",
                message=f"Buildpack release step failed:\n{res.output}",
                details={"buildpack": self.name, "exit_status": res.exit_status},
            )
        return parse_release(res.output, buildpack=self.name)


def parse_release(output: str, *, buildpack: str = "") -> ReleaseInfo:
    """Parse bin/release output: a YAML mapping."""
    try:
        doc = yaml.safe_load(output)
    except yaml.YAMLError as e:
        raise StagingError(
            kind="release_invalid",
            message=f"Release output is not valid YAML: {e}",
            details={"buildpack": buildpack},
        ) from e
    if doc is None:
        doc = {}
    if not isinstance(doc, dict):
        raise StagingError(
            kind="release_invalid",
            message="Release output must be a YAML hash",
            details={"buildpack": buildpack, "got": type(doc).__name__},
        )
    try:
        return ReleaseInfo.model_validate(doc)
    except ValidationError as e:
        raise StagingError(
            kind="release_invalid",
            message=f"Release output has an unexpected shape: {e}",
            details={"buildpack": buildpack},
        ) from e


class BuildpackRunner:
    """
    Drives detect -> compile -> release for one app against the build-packs
    installed under buildpacks_dir (one subdirectory each, probed in name
    order).
    """

    def __init__(
        self,
        buildpacks_dir: str | Path,
        app_dir: str | Path,
        executor: SecureExecutor,
        logger: logging.Logger,
        *,
        identity: Optional[StagingIdentity] = None,
        cache_dir: str = DEFAULT_BUNDLER_CACHE_DIR,
    ):
        self.buildpacks_dir = Path(buildpacks_dir)
        self.app_dir = Path(app_dir)
        self.executor = executor
        self.logger = logger
        self.identity = identity
        self.cache_dir = cache_dir

        self.state = BuildpackState.UNSELECTED
        self.selected: Optional[BuildpackInstaller] = None
        self.release_info: Optional[ReleaseInfo] = None

    def installers(self) -> List[BuildpackInstaller]:
        if not self.buildpacks_dir.is_dir():
            return []
        return [
            BuildpackInstaller(
                p.name, p, self.app_dir, self.executor, self.logger, identity=self.identity
            )
            for p in sorted(self.buildpacks_dir.iterdir())
            if p.is_dir()
        ]

    def _require(self, *stages: BuildpackState) -> None:
        if self.state not in stages:
            raise StagingError(
                kind="invalid_state",
                message=f"Cannot proceed from state {self.state.value}",
                details={"expected": ",".join(s.value for s in stages)},
            )

    def detect(self) -> BuildpackInstaller:
        if self.selected is not None:
            return self.selected
        self._require(BuildpackState.UNSELECTED)

        self.state = BuildpackState.DETECTING
        for installer in self.installers():
            if installer.detect():
                self.selected = installer
                self.state = BuildpackState.DETECTED
                return installer

        self.state = BuildpackState.FAILED
        raise StagingError(
            kind="unsupported_app",
            message="Unable to detect a supported application type",
            details={"buildpacks_dir": str(self.buildpacks_dir)},
        )

    def compile(self) -> None:
        self._require(BuildpackState.DETECTED)
        self.state = BuildpackState.COMPILING
        try:
            self.selected.compile(self.cache_dir)
        except StagingError:
            self.state = BuildpackState.FAILED
            raise
        self.state = BuildpackState.COMPILED

    def release(self) -> ReleaseInfo:
        if self.release_info is not None:
            return self.release_info
        self._require(BuildpackState.COMPILED)
        self.release_info = self.selected.release_info()
        self.state = BuildpackState.RELEASE_QUERIED
        return self.release_info

    def stage(self) -> StagingResult:
        installer = self.detect()
        self.compile()
        release = self.release()
        return StagingResult(buildpack=installer.name, buildpack_path=installer.path, release=release)
