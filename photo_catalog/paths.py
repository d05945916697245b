"""
Path rules shared by the scanner, organizer and single-file editor.

Comparisons go through os.path.normcase, so they are case-insensitive on
Windows and exact elsewhere, matching how the filesystem itself compares.
"""
import os
from pathlib import Path
from typing import Optional, Set, Union

from .exceptions import InvalidInputError, DestinationOutsideRootError

PathLike = Union[str, Path]


def normalize_root_path(root_path: Optional[PathLike]) -> str:
    """Absolute form without a trailing separator (drive roots keep theirs)."""
    if root_path is None or not str(root_path).strip():
        raise InvalidInputError("Root path is required.")

    full = os.path.abspath(str(root_path).strip())
    drive, tail = os.path.splitdrive(full)
    if tail in (os.sep, os.altsep, ''):
        return full
    return full.rstrip('/\\') if os.name == 'nt' else full.rstrip('/')


def path_key(path: PathLike) -> str:
    """Key for occupancy sets and path indexes."""
    return os.path.normcase(os.path.abspath(str(path)))


def paths_equal(left: PathLike, right: PathLike) -> bool:
    return path_key(left) == path_key(right)


def is_inside_root(path: PathLike, root_path: PathLike) -> bool:
    root = path_key(root_path)
    candidate = path_key(path)
    if candidate == root:
        return True
    root_with_sep = root if root.endswith(os.sep) else root + os.sep
    return candidate.startswith(root_with_sep)


def ensure_inside_root(path: PathLike, root_path: Optional[PathLike]):
    """
    Rejects destinations that resolve outside the owning scan root.
    '..' segments are collapsed before the check.
    """
    if root_path is None or not str(root_path).strip():
        return
    if not is_inside_root(path, root_path):
        raise DestinationOutsideRootError(
            f"Destination must stay inside the scan root {root_path}: {os.path.abspath(str(path))}"
        )


def resolve_unique_target(path: PathLike,
                          occupied: Optional[Set[str]] = None,
                          ignore_existing: Optional[PathLike] = None) -> str:
    """
    Returns path, or the first free 'stem_N.ext' sibling.

    A candidate is taken when its key is in `occupied` or a file exists there.
    `ignore_existing` names a file that may be overwritten by itself (the source
    of a rename that only changes case, for example).
    """
    occupied = occupied if occupied is not None else set()
    directory, name = os.path.split(os.path.abspath(str(path)))
    stem, ext = os.path.splitext(name)
    ignore_key = path_key(ignore_existing) if ignore_existing else None

    def taken(candidate: str) -> bool:
        key = path_key(candidate)
        if key == ignore_key:
            return False
        return key in occupied or os.path.lexists(candidate)

    candidate = os.path.join(directory, name)
    counter = 1
    while taken(candidate):
        candidate = os.path.join(directory, f"{stem}_{counter}{ext}")
        counter += 1
    return candidate


def sanitize_file_stem(stem: str) -> str:
    """Replaces characters no common filesystem accepts in a name."""
    invalid = set('<>:"/\\|?*') | {chr(c) for c in range(32)}
    cleaned = ''.join('_' if ch in invalid else ch for ch in (stem or '').strip())
    return cleaned.strip().rstrip('.')
