# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class Dependency:
    """A pinned gem from the lockfile, e.g. rack (1.2.1)."""
    name: str
    version: str

    @property
    def gem_filename(self) -> str:
        return f"{self.name}-{self.version}.gem"


@dataclass(frozen=True)
class GitDependency:
    """A gem pinned to a git repository + revision."""
    name: str
    version: str
    uri: str
    revision: str

    def as_dependency(self) -> Dependency:
        return Dependency(name=self.name, version=self.version)


@dataclass(frozen=True)
class StagingIdentity:
    """
    The restricted OS user (and optional group) that untrusted code runs as.
    Passed explicitly to every operation that needs it.
    """
    uid: int
    gid: Optional[int] = None

    @property
    def chown_spec(self) -> str:
        return f"{self.uid}:{self.gid}" if self.gid is not None else str(self.uid)

    @property
    def sudo_user(self) -> str:
        return f"#{self.uid}"


@dataclass(frozen=True)
class CommandResult:
    exit_status: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class ReleaseInfo(BaseModel):
    """Parsed output of a build-pack's bin/release."""
    model_config = ConfigDict(extra="allow")

    config_vars: Dict[str, str] = Field(default_factory=dict)
    default_process_types: Dict[str, str] = Field(default_factory=dict)
    addons: List[Any] = Field(default_factory=list)


@dataclass(frozen=True)
class StagingResult:
    """Outcome of running the build-pack protocol once for an app."""
    buildpack: str
    buildpack_path: Path
    release: ReleaseInfo


@dataclass
class GemspecInfo:
    """Static fields extracted from a gemspec during sanitizing."""
    name: str
    version: str
    extensions: List[str] = field(default_factory=list)
    require_paths: List[str] = field(default_factory=lambda: ["lib"])


@dataclass(frozen=True)
class CheckedOutGem:
    """A git gem checkout whose gemspec has been rewritten to static Ruby."""
    directory: Path
    gemspec_path: Path
    spec: GemspecInfo
