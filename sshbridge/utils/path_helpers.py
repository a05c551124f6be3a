"""Local/remote path helpers and the local directory scanner."""

from __future__ import annotations

import logging
import os
import posixpath
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

PathPredicate = Callable[[str], bool]


def posix_join(*parts: str) -> str:
    """Join path parts using POSIX (forward-slash) rules.

    Suitable for constructing remote paths regardless of the local OS.
    """
    return posixpath.join(*parts)


def remote_dirname(remote_path: str) -> str:
    """Return the parent of *remote_path* using POSIX rules."""
    return posixpath.dirname(remote_path.rstrip("/")) or "/"


def to_remote_path(remote_root: str, relative: str | os.PathLike[str]) -> str:
    """Map a path relative to a local root onto *remote_root*.

    Local separators are converted to ``/`` so a Windows tree lands on a
    POSIX server with the same layout.
    """
    rel = str(relative).replace(os.sep, "/")
    if os.altsep:
        rel = rel.replace(os.altsep, "/")
    return posixpath.normpath(posix_join(remote_root, rel))


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB")."""
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is usable as an SFTP path.

    Rejects empty paths and paths containing null bytes.
    """
    if not path:
        return False
    if "\x00" in path:
        logger.warning("Remote path rejected — contains null byte: %r", path)
        return False
    return True


def is_visible(local_path: str) -> bool:
    """Default inclusion predicate: skip entries whose name starts with a dot."""
    return not os.path.basename(local_path).startswith(".")


def scan_directory(
    root: str | os.PathLike[str],
    recursive: bool = True,
    validate: PathPredicate = is_visible,
) -> list[str]:
    """Return every file under *root* accepted by *validate*.

    *validate* is called with the full local path of each entry, files and
    directories alike; a rejected directory is not descended into.  Entries
    are returned in sorted order per directory so a plan built from the
    result is stable across runs.

    Raises:
        OSError: If *root* (or a descended directory) cannot be listed.
    """
    files: list[str] = []
    for entry in sorted(Path(root).iterdir(), key=lambda p: p.name):
        full = str(entry)
        if not validate(full):
            continue
        if entry.is_dir():
            if recursive:
                files.extend(scan_directory(entry, recursive, validate))
        else:
            files.append(full)
    return files
