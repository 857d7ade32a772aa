# fetch.py
from __future__ import annotations

import logging
import shutil
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Sequence

from .errors import StagingError
from .model import Dependency


class GemFetcher:
    """
    Downloads a batch of .gem files from a registry laid out as
    <base_url>/<name>-<version>.gem.

    The batch succeeds or fails as a whole. Downloads inside the batch run
    on a small thread pool.
    """

    def __init__(
        self,
        base_url: str,
        *,
        max_workers: int = 4,
        timeout: float = 30.0,
        logger: logging.Logger | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_workers = max(1, max_workers)
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    def url_for(self, dep: Dependency) -> str:
        return f"{self.base_url}/{dep.gem_filename}"

    def _download(self, dep: Dependency, directory: Path) -> Path:
        url = self.url_for(dep)
        dest = directory / dep.gem_filename
        part = directory / f".{dep.gem_filename}.part"
        self.logger.debug("Fetching %s", url)
        with urllib.request.urlopen(url, timeout=self.timeout) as response, part.open("wb") as f:
            shutil.copyfileobj(response, f)
        part.replace(dest)
        return dest

    def fetch(self, gems: Sequence[Dependency], directory: str | Path) -> List[Path]:
        """
        Fetch every gem into directory. Returns the downloaded paths in the
        order of `gems`. Raises StagingError(kind="fetch_failed") if any
        download fails.
        """
        if not gems:
            return []
        target = Path(directory)
        target.mkdir(parents=True, exist_ok=True)

        failures: dict[str, str] = {}
        paths: List[Path] = []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(gems))) as pool:
            futures = [(dep, pool.submit(self._download, dep, target)) for dep in gems]
            for dep, fut in futures:
                try:
                    paths.append(fut.result())
                except (OSError, ValueError) as e:
                    failures[dep.gem_filename] = str(getattr(e, "reason", e))

        if failures:
            raise StagingError(
                kind="fetch_failed",
                message="Failed fetching missing gems from RubyGems",
                details=failures,
            )
        return paths
