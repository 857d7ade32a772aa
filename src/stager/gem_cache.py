# gem_cache.py
from __future__ import annotations

import hashlib
import json
import os
import shutil
import time
import uuid
from pathlib import Path
from typing import Dict, Optional

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Installed-gem caching:
#   cache_key = sha256(contents of the .gem file)
#
# Cache entry:
#   the directory `gem install --install-dir` produced for that .gem
#   (gems/, specifications/, extensions/, bin/ ...), plus a manifest.json
#   for explainability.
#
# Entries are shared by every staging job on the host, so they are
# published by renaming a fully written temp directory into place. A job
# that loses the rename race throws its copy away and uses the winner's.
#
# Example usage in the installer (high-level):
#   cache = GemCache(base / "gem_cache")
#   installed = cache.get(gem_path)
#   if installed is None:
#       installed = cache.put(gem_path, install_gem(gem_path))
#
# ---------------------------------------------------------------------


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, indent=2, ensure_ascii=False)


class GemCache:
    """
    File-based installed-gem store:
      root/
        <key[:2]>/
          <key>/                 unpacked installation
          <key>.manifest.json
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def key_for(self, gem_path: str | Path) -> str:
        return _hash_file_contents(Path(gem_path))

    def _shard(self, key: str) -> Path:
        d = self.root / key[:2]
        d.mkdir(parents=True, exist_ok=True)
        return d

    def entry_path(self, key: str) -> Path:
        return self._shard(key) / key

    def manifest_path(self, key: str) -> Path:
        return self._shard(key) / f"{key}.manifest.json"

    def get(self, gem_path: str | Path) -> Optional[Path]:
        """Return the cached installation for this gem file, or None."""
        entry = self.entry_path(self.key_for(gem_path))
        return entry if entry.is_dir() else None

    def put(self, gem_path: str | Path, unpacked_dir: str | Path) -> Path:
        """
        Copy unpacked_dir into the cache under the gem's key and return the
        cached path. The caller keeps ownership of unpacked_dir.
        """
        key = self.key_for(gem_path)
        entry = self.entry_path(key)
        if entry.is_dir():
            return entry

        tmp = entry.with_name(f".{key}.{uuid.uuid4().hex}.tmp")
        try:
            shutil.copytree(unpacked_dir, tmp, symlinks=True)
            try:
                os.rename(tmp, entry)
            except OSError:
                # another job published the same key first
                if not entry.is_dir():
                    raise
            self._write_manifest(key, Path(gem_path))
        finally:
            if tmp.exists():
                shutil.rmtree(tmp, ignore_errors=True)

        return entry

    def manifest(self, key: str) -> Dict:
        try:
            return json.loads(self.manifest_path(key).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}

    def _write_manifest(self, key: str, gem_path: Path) -> None:
        man = self.manifest_path(key)
        payload = {
            "key": key,
            "gem": gem_path.name,
            "created_at_unix": int(time.time()),
        }
        tmp = man.with_name(f".{man.name}.{uuid.uuid4().hex}.tmp")
        tmp.write_text(_json_dumps_stable(payload), encoding="utf-8")
        tmp.replace(man)
