import os
import time
import logging
from datetime import datetime, timedelta, UTC
from typing import Callable, Dict, List, Optional, Set

from .. import config
from ..cancellation import CancellationToken, check_cancelled
from ..database.store import CatalogStore
from ..exceptions import (
    ScanRootNotFoundError, OperationCancelledError, PhotoCatalogError,
)
from ..metadata.extract import MetadataExtractor, stat_times
from ..models import ScanRoot, PhotoAsset, ScanOptions, ScanProgress, ScanResult
from ..paths import normalize_root_path, path_key
from .filesystem import DirectoryWalker
from .hasher import FileHasher

ProgressCallback = Callable[[ScanProgress], None]


class ScanService:
    """
    Registers scan roots and reconciles a fresh directory walk against the
    catalog: inserts new files, refreshes changed ones, drops stale rows.
    """

    def __init__(self,
                 store: CatalogStore,
                 metadata: Optional[MetadataExtractor] = None,
                 hasher: Optional[FileHasher] = None):
        self.store = store
        self.metadata = metadata or MetadataExtractor()
        self.hasher = hasher or FileHasher()

    # --- Scan Roots ---

    def get_scan_roots(self) -> List[ScanRoot]:
        return self.store.list_scan_roots()

    def get_scan_root(self, scan_root_id: int) -> Optional[ScanRoot]:
        return self.store.get_scan_root(scan_root_id)

    def get_or_create_scan_root(self, root_path: str, enable_duplicate_detection: bool = False) -> ScanRoot:
        """
        Returns the root registered for root_path, creating it on first use.
        The duplicate detection flag of an existing root is updated to match.
        """
        normalized = normalize_root_path(root_path)

        existing = self.store.find_scan_root_by_path(normalized)
        if existing is not None:
            if existing.enable_duplicate_detection != enable_duplicate_detection:
                existing.enable_duplicate_detection = enable_duplicate_detection
                self.store.update_scan_root(existing)
                self.store.commit()
            return existing

        root = self.store.add_scan_root(ScanRoot(
            root_path=normalized,
            enable_duplicate_detection=enable_duplicate_detection,
        ))
        self.store.commit()
        logging.info(f"Registered scan root {root.id}: {normalized}")
        return root

    def update_duplicate_detection(self, scan_root_id: int, enabled: bool) -> ScanRoot:
        root = self._require_root(scan_root_id)
        root.enable_duplicate_detection = enabled
        self.store.update_scan_root(root)
        self.store.commit()
        return root

    # --- Scanning ---

    def scan(self,
             scan_root_id: int,
             options: Optional[ScanOptions] = None,
             progress: Optional[ProgressCallback] = None,
             cancel_token: Optional[CancellationToken] = None) -> ScanResult:
        """
        Walks the scan root and reconciles it with the catalog.

        Per-file failures count as skipped. A cancelled scan rolls back the
        uncommitted batch and raises OperationCancelledError; batches already
        committed stay.
        """
        root = self._require_root(scan_root_id)
        if not os.path.isdir(root.root_path):
            raise ScanRootNotFoundError(f"Scan root does not exist: {root.root_path}")

        started = time.monotonic()
        logging.info(f"Scanning {root.root_path} (DuplicateDetection={root.enable_duplicate_detection})...")

        walker = DirectoryWalker(options)
        result = ScanResult()
        pending_writes = 0

        def report(current_file: str = ''):
            if progress is None:
                return
            progress(ScanProgress(
                found=result.found,
                indexed=result.indexed,
                updated=result.updated,
                skipped=result.skipped,
                removed=result.removed,
                current_file=current_file,
                elapsed=timedelta(seconds=time.monotonic() - started),
            ))

        try:
            file_paths = list(walker.iter_files(root.root_path, cancel_token))
            result.found = len(file_paths)
            result.directories_skipped = walker.directories_skipped

            existing_by_path: Dict[str, PhotoAsset] = {
                path_key(a.full_path): a for a in self.store.list_photos(scan_root_id)
            }
            seen: Set[str] = set()

            report()

            for full_path in file_paths:
                check_cancelled(cancel_token)

                key = path_key(full_path)
                if key in seen:
                    result.skipped += 1
                    continue
                seen.add(key)

                try:
                    existing = existing_by_path.get(key)
                    if existing is not None:
                        if self._reconcile_existing(existing, root):
                            result.updated += 1
                            pending_writes += 1
                        else:
                            result.skipped += 1
                    else:
                        asset = self._create_asset(root, full_path)
                        self.store.add_photo(asset)
                        existing_by_path[key] = asset
                        result.indexed += 1
                        pending_writes += 1
                except FileNotFoundError:
                    # Vanished mid-scan; stale removal drops its row
                    logging.debug(f"File vanished during scan: {full_path}")
                    seen.discard(key)
                    result.skipped += 1
                except (OSError, PhotoCatalogError) as e:
                    logging.warning(f"Skipping {full_path}: {e}")
                    result.skipped += 1

                if pending_writes >= config.SCAN_SAVE_BATCH_SIZE:
                    self.store.commit()
                    pending_writes = 0

                report(full_path)

            stale_ids = [a.id for k, a in existing_by_path.items() if k not in seen and a.id is not None]
            if stale_ids:
                result.removed = self.store.delete_photos(stale_ids)
                logging.info(f"Removed {result.removed} stale catalog rows.")

            root.last_scan_utc = datetime.now(UTC)
            root.total_files_last_scan = result.found
            self.store.update_scan_root(root)
            self.store.commit()
        except OperationCancelledError:
            self.store.rollback()
            logging.warning(f"Scan of {root.root_path} cancelled.")
            raise

        result.duration = timedelta(seconds=time.monotonic() - started)
        report()

        logging.info(
            f"Scan complete. Found={result.found} Indexed={result.indexed} Updated={result.updated} "
            f"Skipped={result.skipped} Removed={result.removed} in {result.duration.total_seconds():.1f}s"
        )
        return result

    # --- Internals ---

    def _require_root(self, scan_root_id: int) -> ScanRoot:
        root = self.store.get_scan_root(scan_root_id)
        if root is None:
            raise ScanRootNotFoundError(f"Unknown scan root id: {scan_root_id}")
        return root

    def _create_asset(self, root: ScanRoot, full_path: str) -> PhotoAsset:
        asset = PhotoAsset(scan_root_id=root.id, full_path=full_path)
        self._populate(asset, root, is_new=True)
        return asset

    def _reconcile_existing(self, asset: PhotoAsset, root: ScanRoot) -> bool:
        """Returns True if the file changed and the row was rewritten."""
        st = os.stat(asset.full_path)
        _, modified = stat_times(st)
        if asset.file_size_bytes == st.st_size and asset.file_last_write_utc == modified:
            return False

        self._populate(asset, root, is_new=False)
        self.store.update_photo(asset)
        return True

    def _populate(self, asset: PhotoAsset, root: ScanRoot, is_new: bool):
        """
        Refreshes file, metadata and hash fields. Everything that can fail is
        read before the asset is touched, so a failure leaves it unchanged.
        """
        st = os.stat(asset.full_path)
        created, modified = stat_times(st)
        meta = self.metadata.extract(asset.full_path)

        sha256 = asset.sha256
        if root.enable_duplicate_detection:
            sha256 = self.hasher.compute_sha256(asset.full_path)
        elif not is_new:
            sha256 = None

        now = datetime.now(UTC)
        asset.set_path(asset.full_path)
        asset.file_size_bytes = st.st_size
        asset.file_created_utc = created
        asset.file_last_write_utc = modified
        asset.date_taken = meta.date_taken_utc
        asset.date_taken_source = meta.date_taken_source
        asset.camera_make = meta.camera_make
        asset.camera_model = meta.camera_model
        asset.width = meta.width
        asset.height = meta.height
        asset.sha256 = sha256
        asset.updated_utc = now
        if is_new:
            asset.indexed_utc = now
