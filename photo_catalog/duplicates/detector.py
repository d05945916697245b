import os
import time
import logging
from datetime import datetime, timedelta, UTC
from typing import Callable, List, Optional

from .. import config
from ..cancellation import CancellationToken, check_cancelled
from ..database.store import CatalogStore
from ..exceptions import OperationCancelledError
from ..models import DuplicateGroup, ScanProgress
from ..scanning.hasher import FileHasher


class DuplicateDetector:
    """
    Fills in missing content hashes and groups byte-identical files.
    """

    def __init__(self, store: CatalogStore, hasher: Optional[FileHasher] = None,
                 max_workers: int = config.HASH_MAX_WORKERS):
        self.store = store
        self.hasher = hasher or FileHasher()
        self.max_workers = max_workers

    def compute_missing_hashes(self,
                               scan_root_id: int,
                               progress: Optional[Callable[[ScanProgress], None]] = None,
                               cancel_token: Optional[CancellationToken] = None) -> int:
        """
        Hashes every asset in the root that has no hash yet and returns how
        many were hashed. Files missing on disk are skipped quietly; unreadable
        files are logged and skipped.

        Hashing runs on a bounded pool; catalog writes stay on this thread.
        """
        candidates = self.store.list_photos_missing_hash(scan_root_id)
        by_path = {}
        for asset in candidates:
            if os.path.isfile(asset.full_path):
                by_path.setdefault(asset.full_path, []).append(asset)

        started = time.monotonic()
        completed = 0
        processed = 0
        pending_writes = 0

        logging.info(f"Hashing {len(by_path)} of {len(candidates)} unhashed files in scan root {scan_root_id}...")

        results = self.hasher.hash_many(list(by_path), max_workers=self.max_workers)
        try:
            for path, digest, _error in results:
                check_cancelled(cancel_token)
                processed += 1

                if digest is not None:
                    now = datetime.now(UTC)
                    for asset in by_path[path]:
                        asset.sha256 = digest
                        asset.updated_utc = now
                        self.store.update_photo(asset)
                        pending_writes += 1
                    completed += 1

                if pending_writes >= config.HASH_SAVE_BATCH_SIZE:
                    self.store.commit()
                    pending_writes = 0

                if progress is not None:
                    progress(ScanProgress(
                        found=len(candidates),
                        indexed=completed,
                        skipped=processed - completed,
                        current_file=path,
                        elapsed=timedelta(seconds=time.monotonic() - started),
                    ))

            self.store.commit()
        except OperationCancelledError:
            self.store.rollback()
            logging.warning(f"Hash fill for scan root {scan_root_id} cancelled.")
            raise
        finally:
            results.close()

        logging.info(f"Hashed {completed} files.")
        return completed

    def get_duplicate_groups(self, scan_root_id: int) -> List[DuplicateGroup]:
        """Groups of 2+ assets sharing a hash, largest first, then by hash."""
        return self.store.duplicate_groups(scan_root_id)
