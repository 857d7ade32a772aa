# files.py
from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import List, Tuple


def _replace_with(src: Path, dest: Path) -> None:
    if dest.is_symlink() or dest.is_file():
        dest.unlink()
    if src.is_symlink():
        os.symlink(os.readlink(src), dest)
    else:
        shutil.copy2(src, dest)


def merge_tree(src: str | Path, dest: str | Path) -> None:
    """
    Copy the contents of src into dest, like `cp -a src/* dest`.
    Existing files are overwritten (last writer wins), symlinks are copied as
    links and never followed, modes and times are preserved.
    """
    src = Path(src)
    dest = Path(dest)
    copied_dirs: List[Tuple[Path, Path]] = []
    for root, dirs, files in os.walk(src):
        here = Path(root)
        target = dest / here.relative_to(src)
        target.mkdir(parents=True, exist_ok=True)
        copied_dirs.append((here, target))

        linked_dirs = [d for d in dirs if (here / d).is_symlink()]
        for name in [*files, *linked_dirs]:
            _replace_with(here / name, target / name)

    # directory modes last, a read-only dir must not block its own children
    for here, target in reversed(copied_dirs):
        shutil.copystat(here, target)


def replace_tree(src: str | Path, dest: str | Path, *, ignore=None) -> None:
    """Make dest an exact copy of src (symlinks kept as links)."""
    dest = Path(dest)
    if dest.is_symlink():
        dest.unlink()
    elif dest.exists():
        shutil.rmtree(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copytree(src, dest, symlinks=True, ignore=ignore)
