from __future__ import annotations

import os
import stat
from dataclasses import dataclass
from typing import Iterator, List, Optional

from .constants import KIND_DIR, KIND_FILE, KIND_SYMLINK
from .errors import ScanError


@dataclass(frozen=True)
class TreeEntry:
    path: str  # archive path, forward slashes, relative to the scanned root
    fs_path: str
    kind: int  # 0=file, 1=dir, 2=symlink
    size: int = 0
    mode: int = 0
    link_target: Optional[str] = None


def _walk(root: str, prefix: str) -> Iterator[TreeEntry]:
    try:
        with os.scandir(root) as it:
            names = sorted(e.name for e in it)
    except OSError as exc:
        raise ScanError(f"unable to read directory {root}: {exc}") from exc
    for name in names:
        fs_path = os.path.join(root, name)
        arc = f"{prefix}{name}"
        try:
            st = os.lstat(fs_path)
        except OSError as exc:
            raise ScanError(f"unable to stat {fs_path}: {exc}") from exc
        mode = stat.S_IMODE(st.st_mode)
        if stat.S_ISLNK(st.st_mode):
            try:
                target = os.readlink(fs_path)
            except OSError as exc:
                raise ScanError(f"unable to read link {fs_path}: {exc}") from exc
            yield TreeEntry(arc, fs_path, KIND_SYMLINK, 0, mode, target)
        elif stat.S_ISDIR(st.st_mode):
            yield TreeEntry(arc, fs_path, KIND_DIR, 0, mode)
            yield from _walk(fs_path, arc + "/")
        elif stat.S_ISREG(st.st_mode):
            yield TreeEntry(arc, fs_path, KIND_FILE, st.st_size, mode)
        else:
            raise ScanError(f"unsupported file type at {fs_path}")


def iter_tree(root: str) -> Iterator[TreeEntry]:
    """Yield every entry beneath ``root`` in lexical order.

    Directories are yielded before their contents and symlinks are never
    followed. The root itself is not yielded.
    """
    if not os.path.isdir(root):
        raise ScanError(f"package tree not found: {root}")
    yield from _walk(root, "")


def list_tree(root: str) -> List[TreeEntry]:
    return list(iter_tree(root))


def installed_size(entries: List[TreeEntry]) -> int:
    # Only regular files count; the archiver stores dirs and symlinks with size 0.
    return sum(e.size for e in entries if e.kind == KIND_FILE)


def scan_tree(root: str) -> int:
    """Return the installed size of the tree rooted at ``root``."""
    return installed_size(list_tree(root))
