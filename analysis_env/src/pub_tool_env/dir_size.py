"""
dir_size.py

Recursive directory size accounting.
The pool relies on `calc_directory_size` to decide when a package-cache
    directory has grown past its size ceiling. Scans run while other
    processes (pub, flutter) may still be touching the tree, so a file that
    disappears or cannot be stat-ed mid-scan contributes 0 bytes instead of
    failing the whole scan.
Symbolic links are never followed; only regular files are counted.

Functions:
- calc_directory_size: total bytes of all regular files under a directory
- calc_subdir_sizes: per-subdirectory totals for one or more roots
    (diagnostics only)
- log_size_changes: log the paths whose size changed between two scans
- format_mb: render a byte count in whole megabytes for log lines
"""

from __future__ import annotations

import logging
import os
import stat
import time
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)

FilePath = Union[str, Path]


def _file_size(path: str) -> int:
    """Size of a regular file, 0 for anything else or on any stat failure."""
    # lstat: symlinked files count as 0, unlike a link-following listing
    try:
        st = os.lstat(path)
    except OSError as e:
        logger.debug(f"Unable to read size of {path}: {e}")
        return 0
    return st.st_size if stat.S_ISREG(st.st_mode) else 0


def _log_walk_error(e: OSError) -> None:
    logger.debug(f"Unable to list {e.filename}: {e}")


def calc_directory_size(path: FilePath) -> int:
    """
    Sum the byte lengths of all regular files found under `path`.

    :param path: Directory to scan.
    :return: Total size in bytes; 0 if the directory does not exist.
    """
    path = os.fspath(path)
    if not os.path.isdir(path):
        return 0
    size = 0
    for dirpath, _dirnames, filenames in os.walk(path, onerror=_log_walk_error):
        for name in filenames:
            size += _file_size(os.path.join(dirpath, name))
    return size


def calc_subdir_sizes(dirs: Iterable[FilePath]) -> Dict[str, int]:
    """
    Compute the aggregate size of each root and all of its transitive
    subdirectories in a single bottom-up pass per root.

    Roots that do not exist are logged and skipped; a root already covered
    by an earlier root's results is not scanned twice.

    :param dirs: Root directories to scan.
    :return: Mapping of directory path to the total size of its subtree.
    """
    results: Dict[str, int] = {}
    started = time.monotonic()
    for d in dirs:
        root = os.fspath(d)
        if root in results:
            continue
        if not os.path.isdir(root):
            logger.info(f"No {root} directory")
            continue
        for dirpath, dirnames, filenames in os.walk(
            root, topdown=False, onerror=_log_walk_error
        ):
            total = sum(_file_size(os.path.join(dirpath, n)) for n in filenames)
            # children were visited first; symlinked dirs are absent -> 0
            total += sum(
                results.get(os.path.join(dirpath, n), 0) for n in dirnames
            )
            results[dirpath] = total
    logger.info(
        f"Directory sizes scanned in {time.monotonic() - started:.3f}s"
    )
    return results


def log_size_changes(
    old: Optional[Mapping[str, int]],
    new: Mapping[str, int],
) -> List[Tuple[str, int, int]]:
    """
    Log every path whose size differs between two `calc_subdir_sizes` scans.
    Paths missing from one side count as size 0.

    :param old: Previous scan, or None if there was none (nothing is logged).
    :param new: Current scan.
    :return: Sorted list of (path, old_size, new_size) for changed paths.
    """
    if old is None:
        return []
    changes = []
    for path in sorted(set(old) | set(new)):
        ov = old.get(path, 0)
        nv = new.get(path, 0)
        if ov == nv:
            continue
        logger.info(f"Directory sizes: {path} {ov} -> {nv} ({nv - ov})")
        changes.append((path, ov, nv))
    return changes


def format_mb(size: int) -> str:
    return f"{size // (1024 * 1024)}MB"
