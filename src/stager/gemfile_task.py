# gemfile_task.py
from __future__ import annotations

import logging
import os
import shlex
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Iterable, List, Optional

from .errors import StagingError
from .fetch import GemFetcher
from .files import merge_tree
from .gem_cache import GemCache
from .git_gems import GitGemBuilder
from .lockfile import LockfileResolver
from .model import Dependency, StagingIdentity
from .process import ProcessRunner, SubprocessRunner
from .secure import SecureExecutor
from .settings import DEFAULT_GIT_PATH, DEFAULT_RUBYGEMS_URL

BUNDLER_VERSION = "1.0.10"


class GemfileTask:
    """
    Installs the gems of an app's Gemfile.lock into
    <app>/rubygems/ruby/<library_version>.

    Gems come from, in priority order: the app's vendor/cache, the shared
    blessed_gems directory, or RubyGems. Installed results are shared
    between apps through the GemCache.
    """

    def __init__(
        self,
        app_dir: str | Path,
        library_version: str,
        ruby_cmd: str,
        base_dir: str | Path,
        identity: Optional[StagingIdentity] = None,
        *,
        logger: logging.Logger,
        runner: ProcessRunner | None = None,
        fetcher: GemFetcher | None = None,
        git_path: str = DEFAULT_GIT_PATH,
    ):
        self.app_dir = Path(app_dir).resolve()
        self.library_version = library_version
        self.cache_base_dir = Path(base_dir) / library_version
        self.ruby_cmd = ruby_cmd
        self.identity = identity
        self.logger = logger

        self.executor = SecureExecutor(runner or SubprocessRunner(), logger)
        self.fetcher = fetcher or GemFetcher(DEFAULT_RUBYGEMS_URL, logger=logger)
        self.cache = GemCache(self.cache_base_dir / "gem_cache")
        self.git_path = git_path
        self._resolver: Optional[LockfileResolver] = None

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    @property
    def installation_directory(self) -> Path:
        return self.app_dir / "rubygems" / "ruby" / self.library_version

    @property
    def blessed_gems_dir(self) -> Path:
        return self.cache_base_dir / "blessed_gems"

    @property
    def vendor_cache_dir(self) -> Path:
        return self.app_dir / "vendor" / "cache"

    @property
    def resolver(self) -> LockfileResolver:
        if self._resolver is None:
            self._resolver = LockfileResolver.from_app(self.app_dir)
        return self._resolver

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def install(self) -> None:
        self.install_gems(self.resolver.plain_dependencies())
        self.install_git_gems()

    def install_bundler(self, version: str = BUNDLER_VERSION) -> None:
        self.install_gems([Dependency("bundler", version)])

    def install_git_gems(self) -> List[Path]:
        builder = GitGemBuilder(
            self.executor,
            self.logger,
            git_path=self.git_path,
            ruby_cmd=self.ruby_cmd,
            identity=self.identity,
        )
        return builder.install(self.resolver.git_dependencies(), self.installation_directory)

    def remove_gems_cached_in_app(self) -> None:
        shutil.rmtree(self.installation_directory / "cache", ignore_errors=True)

    def install_local_gem(self, gem_dir: str | Path, gem_filename: str, gem_name: str, gem_version: str) -> None:
        """Install a gem shipped alongside the stager (not from the app)."""
        if (self.blessed_gems_dir / gem_filename).exists():
            self.install_gems([Dependency(gem_name, gem_version)])
            return
        self.blessed_gems_dir.mkdir(parents=True, exist_ok=True)
        gem_path = Path(gem_dir) / gem_filename
        self.logger.debug("Installing local gem: %s", gem_path)
        installed = self._installed_path(gem_path)
        self.bless(gem_path)
        self.logger.info("Adding %s to app...", gem_filename)
        self.copy_gem_to_app(installed)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def install_gems(self, gems: Iterable[Dependency]) -> None:
        missing: List[Dependency] = []
        self.blessed_gems_dir.mkdir(parents=True, exist_ok=True)

        for dep in gems:
            gem_filename = dep.gem_filename
            user_gem_path = self.vendor_cache_dir / gem_filename
            blessed_gem_path = self.blessed_gems_dir / gem_filename

            if user_gem_path.exists():
                self.logger.debug("Using user gem: %s", user_gem_path)
                installed = self._installed_path(user_gem_path)
            elif blessed_gem_path.exists():
                self.logger.debug("Using blessed gem: %s", blessed_gem_path)
                installed = self._installed_path(blessed_gem_path)
            else:
                self.logger.info("Need to fetch %s from RubyGems", gem_filename)
                missing.append(dep)
                continue

            self.logger.info("Adding %s to app...", gem_filename)
            self.copy_gem_to_app(installed)

        if not missing:
            return

        with tempfile.TemporaryDirectory(prefix="stager-fetch-") as tmp_dir:
            self.logger.info("Fetching missing gems from RubyGems")
            fetched = self.fetcher.fetch(missing, tmp_dir)

            for dep, gem_path in zip(missing, fetched):
                self.logger.debug("Installing downloaded gem: %s", gem_path)
                installed = self._installed_path(gem_path)
                self.bless(gem_path)
                self.logger.info("Adding %s to app...", dep.gem_filename)
                self.copy_gem_to_app(installed)

    def _installed_path(self, gem_path: Path) -> Path:
        """Cached installation for gem_path, installing it on a miss."""
        installed = self.cache.get(gem_path)
        if installed is not None:
            self.logger.debug("Cache hit for %s", gem_path.name)
            return installed
        return self.install_gem(gem_path)

    def install_gem(self, gem_path: str | Path) -> Path:
        """
        `gem install` one .gem file (as the staging identity when set) into a
        scratch dir and register the result in the cache. Returns the cached
        path. The scratch dir is always removed.
        """
        gem_path = Path(gem_path)
        tmp_dir = Path(tempfile.mkdtemp(prefix="stager-gem-"))
        try:
            staged_gemfile = self.stage_gemfile_for_install(gem_path, tmp_dir)
            gem_install_dir = tmp_dir / "gem_install_dir"
            gem_install_dir.mkdir()

            self.logger.debug(
                "Doing a gem install from %s into %s as user %s",
                staged_gemfile,
                gem_install_dir,
                self.identity.uid if self.identity else "cc",
            )
            res = self.executor.run_secure(
                self.gem_install_command(staged_gemfile, gem_install_dir),
                tmp_dir,
                self.identity,
            )
            if not res.ok:
                self.logger.debug("Failed installing %s: %s", gem_path.name, res.output)
                raise StagingError(
                    kind="install_failed",
                    message=f"Failed installing {gem_path.name}",
                    details={"exit_status": res.exit_status, "output": res.output.strip()},
                )
            self.logger.debug("Success!")
            return self.cache.put(gem_path, gem_install_dir)
        finally:
            self.executor.secure_delete(tmp_dir, self.identity)

    def gem_install_command(self, gemfile: Path, install_dir: Path) -> List[str]:
        return [
            *shlex.split(self.ruby_cmd),
            "-S", "gem", "install", str(gemfile),
            "--local",
            "--no-document",
            "--env-shebang",
            "--wrappers",
            "--force",
            "--ignore-dependencies",
            "--install-dir", str(install_dir),
        ]

    def stage_gemfile_for_install(self, src: Path, tmp_dir: Path) -> Path:
        """Copy the .gem into tmp_dir where the staging identity can read it."""
        staged = tmp_dir / src.name
        try:
            shutil.copyfile(src, staged)
            os.chmod(staged, 0o744)
        except OSError as e:
            raise StagingError(
                kind="install_failed",
                message=f"Failed copying {src.name} to staging dir for install",
                details={"error": str(e)},
            ) from e
        return staged

    def bless(self, gem_path: Path) -> None:
        """
        Keep a fetched gem in blessed_gems so later jobs skip the network.
        Best effort: never fails the install, never overwrites.
        """
        dest = self.blessed_gems_dir / gem_path.name
        tmp = self.blessed_gems_dir / f".{gem_path.name}.{uuid.uuid4().hex}.tmp"
        try:
            shutil.copyfile(gem_path, tmp)
            os.link(tmp, dest)
        except FileExistsError:
            self.logger.debug("%s already blessed", gem_path.name)
        except OSError as e:
            self.logger.debug("Failed adding %s to %s: %s", gem_path, self.blessed_gems_dir, e)
        finally:
            tmp.unlink(missing_ok=True)

    def copy_gem_to_app(self, src: Optional[Path]) -> None:
        if src is None or not src.exists():
            return
        self.installation_directory.mkdir(parents=True, exist_ok=True)
        merge_tree(src, self.installation_directory)


def install_app_gems(task: GemfileTask) -> None:
    """Full install for an app, then drop the .gem files gem install leaves behind."""
    task.install()
    task.remove_gems_cached_in_app()
