import os
import stat
import logging
from pathlib import Path
from typing import Iterator, Optional, Set, Union

from .. import config
from ..cancellation import CancellationToken, check_cancelled
from ..models import ScanOptions
from ..paths import path_key


def is_supported_photo(path: Union[str, Path]) -> bool:
    return os.path.splitext(str(path))[1].lower() in config.SUPPORTED_PHOTO_EXTS


class DirectoryWalker:
    """
    Stack-based (non-recursive) walker that yields supported photo files.

    Pruning happens once per directory, when it is discovered, so the
    cancellation check and every skip rule live in a single place.
    Directories that cannot be listed are skipped and counted in
    `directories_skipped`.
    """

    def __init__(self, options: Optional[ScanOptions] = None):
        self.options = options or ScanOptions()
        self.directories_skipped = 0

    def iter_files(self, root: Union[str, Path], cancel_token: Optional[CancellationToken] = None) -> Iterator[str]:
        root_str = os.path.abspath(str(root))
        stack = [root_str]
        # Real paths already listed; guards against symlink cycles when links are followed
        visited: Set[str] = set()

        while stack:
            check_cancelled(cancel_token)
            current = stack.pop()

            real = path_key(os.path.realpath(current))
            if real in visited:
                continue
            visited.add(real)

            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except OSError as e:
                logging.warning(f"Cannot list {current}: {e}")
                self.directories_skipped += 1
                continue

            # Sort for stable traversal order
            entries.sort(key=lambda e: e.name.lower())

            dirs = []
            files = []
            for e in entries:
                try:
                    if e.is_dir():
                        if self.should_skip_directory(e.path, root_str):
                            logging.debug(f"Pruned directory: {e.path}")
                            continue
                        dirs.append(e.path)
                    elif e.is_file() and is_supported_photo(e.name):
                        files.append(e.path)
                except OSError as err:
                    logging.debug(f"Cannot inspect {e.path}: {err}")

            # Push dirs to stack (reversed so we process A before Z)
            for d in reversed(dirs):
                stack.append(d)

            for f in files:
                yield f

    def should_skip_directory(self, directory: str, root: str) -> bool:
        opts = self.options
        is_root = path_key(directory) == path_key(root)

        if not is_root and (opts.skip_reparse_points or opts.skip_hidden_and_system_directories):
            try:
                st = os.lstat(directory)
            except OSError:
                return True
            attrs = getattr(st, 'st_file_attributes', 0)

            if opts.skip_reparse_points:
                if stat.S_ISLNK(st.st_mode) or attrs & stat.FILE_ATTRIBUTE_REPARSE_POINT:
                    return True

            if opts.skip_hidden_and_system_directories:
                if os.path.basename(directory).startswith('.'):
                    return True
                if attrs & (stat.FILE_ATTRIBUTE_HIDDEN | stat.FILE_ATTRIBUTE_SYSTEM):
                    return True

        if not opts.exclude_likely_system_and_program_directories or is_root:
            return False

        rel = os.path.relpath(directory, root)
        segments = [s.lower() for s in Path(rel).parts if s not in ('', '.')]
        if not segments:
            return False
        if segments[0] in config.EXCLUDED_TOP_LEVEL_DIR_NAMES:
            return True
        return any(s in config.EXCLUDED_SEGMENT_NAMES for s in segments)
