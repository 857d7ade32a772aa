# lockfile.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .model import Dependency, GitDependency

# Ordinary pinned entries: four spaces, name, (version)
DEPENDENCY_LINE = re.compile(r"^\s{4}([-\w_.0-9]+)\s*\((.*)\)")

# Sections of a lockfile that declare where specs come from
SOURCE_SECTIONS = ("GIT", "GEM", "PATH")

_OPTION_LINE = re.compile(r"^  ([a-z_]+):\s*(.*)$")
_SPEC_LINE = re.compile(r"^    ([^\s(]+)(?: \(([^)]+)\))?\s*$")


@dataclass
class LockSource:
    """One GIT / GEM / PATH block of a lockfile."""
    kind: str
    options: Dict[str, str] = field(default_factory=dict)
    specs: List[Dependency] = field(default_factory=list)

    @property
    def is_git(self) -> bool:
        return self.kind == "GIT"

    @property
    def remote(self) -> Optional[str]:
        return self.options.get("remote")

    @property
    def revision(self) -> Optional[str]:
        return self.options.get("revision")


class LockfileParser:
    """
    Structured reader for the section layout of Gemfile.lock:

        GIT
          remote: git://example.com/foo.git
          revision: 0123abcd...
          specs:
            foo (0.1.0)
              rack (>= 1.0)

    Only source sections are kept. Nested dependency lines (six spaces)
    describe requirements, not resolved specs, and are skipped.
    """

    def __init__(self, text: str):
        self.sources: List[LockSource] = []
        self._parse(text)

    def _parse(self, text: str) -> None:
        current: Optional[LockSource] = None
        in_specs = False

        for raw in text.splitlines():
            line = raw.rstrip("\r\n")
            if not line.strip():
                continue

            if not line.startswith(" "):
                header = line.strip()
                if header in SOURCE_SECTIONS:
                    current = LockSource(kind=header)
                    self.sources.append(current)
                else:
                    current = None
                in_specs = False
                continue

            if current is None:
                continue

            if line == "  specs:":
                in_specs = True
                continue

            opt = _OPTION_LINE.match(line)
            if opt and not in_specs:
                current.options[opt.group(1)] = opt.group(2).strip()
                continue

            if in_specs:
                spec = _SPEC_LINE.match(line)
                if spec and spec.group(2) is not None:
                    current.specs.append(Dependency(name=spec.group(1), version=spec.group(2)))

    @property
    def git_sources(self) -> List[LockSource]:
        return [s for s in self.sources if s.is_git]


class LockfileResolver:
    """
    Turns lockfile text into the plain gem list and the git gem list.
    Results are computed once per instance.
    """

    def __init__(self, text: str):
        self.text = text
        self._dependencies: Optional[List[Dependency]] = None
        self._git_dependencies: Optional[List[GitDependency]] = None

    @classmethod
    def from_app(cls, app_dir: str | Path) -> LockfileResolver:
        return cls(lockfile_path(app_dir).read_text(encoding="utf-8"))

    def dependencies(self) -> List[Dependency]:
        """Every pinned name (version) line, in file order."""
        if self._dependencies is None:
            deps: List[Dependency] = []
            for line in self.text.splitlines():
                m = DEPENDENCY_LINE.match(line)
                if m:
                    deps.append(Dependency(name=m.group(1), version=m.group(2)))
            self._dependencies = deps
        return list(self._dependencies)

    def git_dependencies(self) -> List[GitDependency]:
        if self._git_dependencies is None:
            out: List[GitDependency] = []
            for source in LockfileParser(self.text).git_sources:
                for spec in source.specs:
                    out.append(
                        GitDependency(
                            name=spec.name,
                            version=spec.version,
                            uri=source.remote or "",
                            revision=source.revision or "",
                        )
                    )
            self._git_dependencies = out
        return list(self._git_dependencies)

    def plain_dependencies(self) -> List[Dependency]:
        """dependencies() minus anything that comes from a git source."""
        git = {g.as_dependency() for g in self.git_dependencies()}
        return [d for d in self.dependencies() if d not in git]

    def bundles_gem(self, name: str) -> Optional[Dependency]:
        """The app bundles some version of gem `name`."""
        for d in self.dependencies():
            if d.name == name:
                return d
        return None


def lockfile_path(app_dir: str | Path) -> Path:
    return Path(app_dir) / "Gemfile.lock"
