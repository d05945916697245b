import os
import shutil
import logging
from datetime import datetime, UTC
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

from tqdm import tqdm

from .. import config
from ..cancellation import CancellationToken, check_cancelled
from ..database.store import CatalogStore
from ..exceptions import ScanRootNotFoundError, OperationCancelledError
from ..metadata.extract import stat_times
from ..models import (
    PhotoAsset, OrganizerPlanItem, OrganizerPlanResult, OrganizerApplyResult,
)
from ..paths import path_key, paths_equal, resolve_unique_target, ensure_inside_root


def target_directory(root_path: str, asset: PhotoAsset) -> Optional[str]:
    """
    root/YYYY/YYYY-MM from the local calendar date of date_taken, falling back
    to the last write time. None when the asset has neither.
    """
    effective = asset.date_taken or asset.file_last_write_utc
    if effective is None:
        return None
    local = effective.astimezone()
    return os.path.join(root_path, *config.FOLDER_PATTERN.format(year=local.year, month=local.month).split('/'))


class OrganizerPlanner:
    """
    Two-phase year/month reorganization.

    create_plan() only reads the catalog. apply_plan() moves files and
    rewrites catalog paths, best-effort per item. Both append a block to the
    human-readable audit log.
    """

    def __init__(self, store: CatalogStore, log_path: Path):
        self.store = store
        self.log_path = Path(log_path)

    def create_plan(self, scan_root_id: int, cancel_token: Optional[CancellationToken] = None) -> OrganizerPlanResult:
        root = self.store.get_scan_root(scan_root_id)
        if root is None:
            raise ScanRootNotFoundError(f"Unknown scan root id: {scan_root_id}")

        photos = self.store.list_photos(scan_root_id)
        # Seeded with every current path so nothing is planned onto a file that stays put
        occupied: Set[str] = {path_key(p.full_path) for p in photos}
        items: List[OrganizerPlanItem] = []

        for photo in photos:
            check_cancelled(cancel_token)
            if not photo.full_path or not photo.file_name or photo.id is None:
                continue

            folder = target_directory(root.root_path, photo)
            if folder is None:
                continue

            initial = os.path.join(folder, photo.file_name)
            if paths_equal(photo.full_path, initial):
                continue

            occupied.discard(path_key(photo.full_path))
            resolved = self._reserve(initial, occupied)

            items.append(OrganizerPlanItem(
                photo_id=photo.id,
                source_path=photo.full_path,
                destination_path=resolved,
            ))

        result = OrganizerPlanResult(
            generated_utc=datetime.now(UTC),
            total_evaluated=len(photos),
            total_moves=len(items),
            items=items,
        )
        self._append_plan_log(root.root_path, result)
        logging.info(f"Organizer plan for {root.root_path}: {result.total_moves} moves of {result.total_evaluated} photos.")
        return result

    def apply_plan(self,
                   scan_root_id: int,
                   items: Sequence[OrganizerPlanItem],
                   cancel_token: Optional[CancellationToken] = None,
                   show_progress: bool = False) -> OrganizerApplyResult:
        """
        Moves each planned file and updates its catalog row.

        Every item is re-validated against the live filesystem. Failures are
        counted per item and never stop the batch. Cancellation (or a raw
        KeyboardInterrupt) commits the moves already done, since those files
        are no longer where the old rows point.
        """
        result = OrganizerApplyResult()
        if not items:
            return result

        root = self.store.get_scan_root(scan_root_id)
        if root is None:
            raise ScanRootNotFoundError(f"Unknown scan root id: {scan_root_id}")

        wanted = {item.photo_id for item in items}
        assets: Dict[int, PhotoAsset] = {
            p.id: p for p in self.store.list_photos(scan_root_id) if p.id in wanted
        }
        occupied: Set[str] = {path_key(a.full_path) for a in assets.values()}
        pending_writes = 0

        def add_error(message: str):
            if len(result.errors) < config.MAX_APPLY_ERRORS:
                result.errors.append(message)

        try:
            for item in tqdm(items, desc="Organizing", disable=not show_progress):
                check_cancelled(cancel_token)
                result.attempted += 1

                if not item.source_path or not item.destination_path:
                    result.skipped += 1
                    add_error(f"Skipped photo {item.photo_id}: missing source or destination path.")
                    continue

                source = os.path.abspath(item.source_path)
                destination = os.path.abspath(item.destination_path)
                if paths_equal(source, destination):
                    result.skipped += 1
                    continue

                if not os.path.isfile(source):
                    result.skipped += 1
                    add_error(f"Skipped photo {item.photo_id}: source file not found -> {source}")
                    continue

                asset = assets.get(item.photo_id)
                if asset is None:
                    result.skipped += 1
                    add_error(f"Skipped photo {item.photo_id}: not cataloged under {root.root_path}")
                    continue

                try:
                    ensure_inside_root(destination, root.root_path)
                    os.makedirs(os.path.dirname(destination), exist_ok=True)

                    # Time may have passed since planning; re-check disk and this run's moves
                    if path_key(destination) in occupied or os.path.lexists(destination):
                        destination = resolve_unique_target(destination, occupied)

                    shutil.move(source, destination)
                    occupied.discard(path_key(source))
                    occupied.add(path_key(destination))

                    self._refresh_moved_asset(asset, destination)
                    self.store.update_photo(asset)
                    pending_writes += 1
                    result.moved += 1
                except Exception as e:
                    result.failed += 1
                    add_error(f"Failed photo {item.photo_id}: {e}")
                    logging.error(f"Failed to move {source} -> {destination}: {e}")

                if pending_writes >= config.ORGANIZER_SAVE_BATCH_SIZE:
                    self.store.commit()
                    pending_writes = 0
        except (OperationCancelledError, KeyboardInterrupt):
            # Files already moved must keep rows that point at them
            self.store.commit()
            self._append_apply_log(root.root_path, result, cancelled=True)
            raise

        self.store.commit()
        self._append_apply_log(root.root_path, result)
        logging.info(
            f"Organizer apply: Attempted={result.attempted} Moved={result.moved} "
            f"Skipped={result.skipped} Failed={result.failed}"
        )
        return result

    # --- Internals ---

    def _reserve(self, initial: str, occupied: Set[str]) -> str:
        """Picks the first free name in the plan's occupancy set and claims it."""
        stem, ext = os.path.splitext(initial)
        candidate = initial
        counter = 1
        while path_key(candidate) in occupied:
            candidate = f"{stem}_{counter}{ext}"
            counter += 1
        occupied.add(path_key(candidate))
        return candidate

    def _refresh_moved_asset(self, asset: PhotoAsset, destination: str):
        asset.set_path(destination)
        try:
            st = os.stat(destination)
        except OSError as e:
            logging.debug(f"Cannot stat moved file {destination}: {e}")
        else:
            created, modified = stat_times(st)
            asset.file_size_bytes = st.st_size
            asset.file_created_utc = created
            asset.file_last_write_utc = modified
        asset.updated_utc = datetime.now(UTC)

    def _append_plan_log(self, root_path: str, result: OrganizerPlanResult):
        lines = [
            f"[{result.generated_utc.isoformat()}] Root={root_path} "
            f"Evaluated={result.total_evaluated} Moves={result.total_moves}"
        ]
        lines.extend(f"PLAN: {item.source_path} => {item.destination_path}" for item in result.items)
        self._append_log(lines)

    def _append_apply_log(self, root_path: str, result: OrganizerApplyResult, cancelled: bool = False):
        header = (
            f"[{datetime.now(UTC).isoformat()}] APPLY Root={root_path} "
            f"Attempted={result.attempted} Moved={result.moved} "
            f"Skipped={result.skipped} Failed={result.failed}"
        )
        if cancelled:
            header += " Cancelled=True"
        lines = [header]
        lines.extend(f"APPLY-ERROR: {error}" for error in result.errors[:config.MAX_APPLY_ERRORS])
        self._append_log(lines)

    def _append_log(self, lines: List[str]):
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.log_path.open("a", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")
