# git_gems.py
# Builds gems that the lockfile pins to a git repository + revision.
#
# The gemspec is the one place arbitrary code from the dependency is knowingly
# executed. It is loaded exactly once, by a throwaway ruby process with an
# empty $LOAD_PATH and a stripped environment, and rewritten on the spot as a
# static gemspec. Everything after that (extension builds, the copy into the
# app) only ever reads the rewritten file.

from __future__ import annotations

import json
import logging
import os
import posixpath
import shlex
import shutil
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .buildpack import clean_env
from .errors import StagingError
from .files import replace_tree
from .model import CheckedOutGem, CommandResult, GemspecInfo, GitDependency, StagingIdentity
from .process import ProcessRunner
from .secure import SecureExecutor

# Same search order as bundler's path sources: {,*,*/*}.gemspec
GEMSPEC_GLOBS = (".gemspec", "*.gemspec", "*/*.gemspec")

GEMSPEC_MARKER = "STAGER_GEMSPEC "

SANITIZE_GEMSPEC_RB = r"""
require "rubygems"
require "json"
path = File.expand_path(ARGV.fetch(0))
$LOAD_PATH.clear
spec = Dir.chdir(File.dirname(path)) { Gem::Specification.load(path) }
abort("unable to load gemspec #{path}") unless spec
File.open(path, "w") { |f| f.write(spec.to_ruby_for_cache) }
fields = {
  "name" => spec.name,
  "version" => spec.version.to_s,
  "extensions" => spec.extensions,
  "require_paths" => spec.require_paths,
}
puts "STAGER_GEMSPEC " + JSON.generate(fields)
"""

BUILD_EXTENSIONS_RB = r"""
require "rubygems"
require "rubygems/ext"
dir, gemspec = ARGV.map { |a| File.expand_path(a) }
spec = Gem::Specification.load(gemspec)
abort("unable to load gemspec #{gemspec}") unless spec
spec.full_gem_path = dir
spec.extension_dir = File.join(dir, spec.require_paths.first || "lib")
Gem::Ext::Builder.new(spec).build_extensions
"""

SYSTEM_PATH = "/usr/local/bin:/usr/bin:/bin"

# exit status of a command the shell could not find
COMMAND_NOT_FOUND = 127


def resolve_command(argv: List[str], path: Optional[str] = None) -> List[str]:
    """
    Pin a bare command name to its absolute path on the caller's PATH, so it
    still runs under the stripped sandbox PATH. Unresolvable names are kept.
    """
    if not argv or os.path.dirname(argv[0]):
        return argv
    found = shutil.which(argv[0], path=path)
    return [found, *argv[1:]] if found else argv


def git_scope(uri: str, revision: str) -> str:
    """foo-abcdef123456 for git://host/foo.git @ abcdef1234567890..."""
    base = posixpath.basename(uri.rstrip("/"))
    if base.endswith(".git"):
        base = base[: -len(".git")]
    return f"{base}-{revision[:12]}"


def git_installation_dir(install_dir: str | Path) -> Path:
    return Path(install_dir) / "bundler" / "gems"


def git_gem_dir(install_dir: str | Path, uri: str, revision: str) -> Path:
    return git_installation_dir(install_dir) / git_scope(uri, revision)


def parse_gemspec_fields(output: str) -> Optional[GemspecInfo]:
    """Pick the marker line out of the sanitizer's (possibly noisy) output."""
    for line in reversed(output.splitlines()):
        if line.startswith(GEMSPEC_MARKER):
            try:
                fields = json.loads(line[len(GEMSPEC_MARKER):])
            except ValueError:
                return None
            return GemspecInfo(
                name=str(fields.get("name", "")),
                version=str(fields.get("version", "")),
                extensions=list(fields.get("extensions") or []),
                require_paths=list(fields.get("require_paths") or ["lib"]),
            )
    return None


def gemspec_candidates(root: Path) -> List[Path]:
    seen = set()
    out: List[Path] = []
    for pattern in GEMSPEC_GLOBS:
        for p in sorted(root.glob(pattern)):
            if p.is_file() and p not in seen:
                seen.add(p)
                out.append(p)
    return out


class GitGemBuilder:
    def __init__(
        self,
        executor: SecureExecutor,
        logger: logging.Logger,
        *,
        git_path: str,
        ruby_cmd: str = "ruby",
        identity: Optional[StagingIdentity] = None,
    ):
        self.executor = executor
        self.runner: ProcessRunner = executor.runner
        self.logger = logger
        self.git_path = git_path
        self.ruby = resolve_command(shlex.split(ruby_cmd))
        self.identity = identity

    # ------------------------------------------------------------------
    # git
    # ------------------------------------------------------------------

    def _git(self, args: Sequence[str], cwd: str | Path | None = None) -> CommandResult:
        return self.runner.run([self.git_path, *args], cwd=cwd)

    def clone(self, tmpdir: Path, uri: str, revision: str) -> None:
        # both come from the app's lockfile and git runs as the invoker
        if not revision or revision.startswith("-"):
            raise StagingError(
                kind="clone_failed",
                message="Git clone failed: invalid revision",
                details={"uri": uri, "revision": revision},
            )
        res = self._git(["clone", "--quiet", "--no-checkout", "--", uri, str(tmpdir)])
        if res.ok:
            res = self._git(["checkout", "--quiet", revision], cwd=tmpdir)
        if not res.ok:
            raise StagingError(
                kind="clone_failed",
                message="Git clone failed",
                details={"uri": uri, "revision": revision, "output": res.output.strip()},
            )
        self.logger.debug("git revision: %s", self._git(["rev-parse", "HEAD"], cwd=tmpdir).output.strip())
        self.logger.debug("git status: %s", self._git(["status"], cwd=tmpdir).output)

    # ------------------------------------------------------------------
    # gemspec
    # ------------------------------------------------------------------

    def sandbox_env(self, home: Path) -> dict:
        dirs: List[str] = []
        for cmd in (self.git_path, self.ruby[0]):
            d = posixpath.dirname(cmd)
            if d and d not in dirs:
                dirs.append(d)
        return {"PATH": ":".join([*dirs, SYSTEM_PATH]), "HOME": str(home), "LANG": "C.UTF-8"}

    def sanitize_gemspec(self, gemspec: Path, checkout_root: Path) -> Optional[GemspecInfo]:
        """
        Load gemspec once in a stripped ruby process, rewrite it as a static
        gemspec and return its static fields. None if it could not be loaded.
        """
        res = self.executor.run_secure(
            [*self.ruby, "-e", SANITIZE_GEMSPEC_RB, str(gemspec)],
            checkout_root,
            self.identity,
            env=self.sandbox_env(checkout_root),
        )
        if res.exit_status == COMMAND_NOT_FOUND:
            raise StagingError(
                kind="install_failed",
                message=f"Could not run {self.ruby[0]} to load gemspecs",
                details={"gemspec": gemspec.name, "output": res.output.strip()},
            )
        info = parse_gemspec_fields(res.output) if res.ok else None
        if info is None:
            self.logger.info("could not load gemspec %s: %s", gemspec.name, res.output.strip())
            return None
        self.logger.info("sanitized gemspec for %s-%s", info.name, info.version)
        return info

    def checkout(self, tmpdir: Path, uri: str, revision: str, gem_name: str) -> CheckedOutGem:
        """Clone uri@revision into tmpdir and find the sanitized gemspec for gem_name."""
        self.clone(tmpdir, uri, revision)
        for gemspec in gemspec_candidates(tmpdir):
            info = self.sanitize_gemspec(gemspec, tmpdir)
            if info is not None and info.name == gem_name:
                return CheckedOutGem(directory=gemspec.parent, gemspec_path=gemspec, spec=info)
        raise StagingError(
            kind="clone_failed",
            message=f"Git clone failed: no gemspec for {gem_name}",
            details={"uri": uri, "revision": revision},
        )

    # ------------------------------------------------------------------
    # build + copy
    # ------------------------------------------------------------------

    def build_extensions(self, gem: CheckedOutGem, checkout_root: Path) -> None:
        if not gem.spec.extensions:
            return
        self.logger.info("building extensions for %s-%s", gem.spec.name, gem.spec.version)
        res = self.executor.run_secure(
            [*self.ruby, "-e", BUILD_EXTENSIONS_RB, str(gem.directory), str(gem.gemspec_path)],
            checkout_root,
            self.identity,
            env=clean_env(),
        )
        self.logger.debug(res.output)
        if not res.ok:
            raise StagingError(
                kind="extension_failed",
                message=f"Failed building extensions for {gem.spec.name}-{gem.spec.version}",
                details={"output": res.output.strip()},
            )

    def copy_to_app(self, src: Path, install_dir: Path, uri: str, revision: str) -> Path:
        dest = git_gem_dir(install_dir, uri, revision)
        replace_tree(src, dest, ignore=shutil.ignore_patterns(".git"))
        return dest

    def install(self, specs: Iterable[GitDependency], install_dir: str | Path) -> List[Path]:
        """Check out, build and copy every git gem. Each gets its own scratch dir."""
        installed: List[Path] = []
        for s in specs:
            tmpdir = Path(tempfile.mkdtemp(prefix="stager-git-"))
            try:
                self.logger.info("checking out git repo for %s (%s@%s)", s.name, s.uri, s.revision)
                gem = self.checkout(tmpdir, s.uri, s.revision, s.name)
                self.logger.info("loaded gemspec: %s-%s", gem.spec.name, gem.spec.version)
                self.build_extensions(gem, tmpdir)
                self.logger.info("copying git gem %s-%s to app", gem.spec.name, gem.spec.version)
                installed.append(self.copy_to_app(gem.directory, Path(install_dir), s.uri, s.revision))
            finally:
                self.executor.secure_delete(tmpdir, self.identity)
        return installed
