# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .model import StagingIdentity

DEFAULT_GIT_PATH = "/var/vcap/packages/git/bin/git"
DEFAULT_RUBYGEMS_URL = "http://production.s3.rubygems.org/gems"
DEFAULT_BUNDLER_CACHE_DIR = "/tmp/bundler_cache"
DEFAULT_FETCH_WORKERS = 4


def _optional_int(raw: Optional[str]) -> Optional[int]:
    if raw is None or raw.strip() == "":
        return None
    return int(raw)


@dataclass(frozen=True)
class Settings:
    debug: bool = False
    git_path: str = DEFAULT_GIT_PATH
    rubygems_url: str = DEFAULT_RUBYGEMS_URL
    bundler_cache_dir: str = DEFAULT_BUNDLER_CACHE_DIR
    fetch_workers: int = DEFAULT_FETCH_WORKERS
    uid: Optional[int] = None
    gid: Optional[int] = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        return cls(
            debug=bool(env.get("DEBUG")),
            git_path=env.get("STAGER_GIT_PATH", DEFAULT_GIT_PATH),
            rubygems_url=env.get("STAGER_RUBYGEMS_URL", DEFAULT_RUBYGEMS_URL),
            bundler_cache_dir=env.get("STAGER_BUNDLER_CACHE", DEFAULT_BUNDLER_CACHE_DIR),
            fetch_workers=int(env.get("STAGER_FETCH_WORKERS", DEFAULT_FETCH_WORKERS)),
            uid=_optional_int(env.get("STAGER_UID")),
            gid=_optional_int(env.get("STAGER_GID")),
        )

    @property
    def identity(self) -> Optional[StagingIdentity]:
        if self.uid is None:
            return None
        return StagingIdentity(uid=self.uid, gid=self.gid)
