import os
import shutil
import logging
from dataclasses import replace
from datetime import datetime, UTC
from typing import Iterable, List, Optional

from ..cancellation import CancellationToken, check_cancelled
from ..database.store import CatalogStore
from ..exceptions import InvalidInputError, FileHashError
from ..metadata.extract import stat_times
from ..models import PhotoAsset, normalize_extension, normalize_tags, normalize_identifiers
from ..paths import ensure_inside_root, paths_equal, resolve_unique_target, sanitize_file_stem
from ..scanning.hasher import FileHasher

# Upper bound on same-named candidates considered by repair_photo_location
MAX_REPAIR_CANDIDATES = 500


class PhotoEditService:
    """
    Single-photo file operations that keep the catalog row in step with disk.

    Lookups return None for an unknown photo id. Every destination must stay
    inside the photo's scan root; collisions get an _N suffix.
    """

    def __init__(self, store: CatalogStore, hasher: Optional[FileHasher] = None):
        self.store = store
        self.hasher = hasher or FileHasher()

    def get_photo(self, photo_id: int) -> Optional[PhotoAsset]:
        return self.store.get_photo(photo_id)

    # --- Relocation ---

    def rename_photo(self, photo_id: int, requested_file_name: str) -> Optional[PhotoAsset]:
        """Renames within the current folder. Keeps the old extension if none is given."""
        if not requested_file_name or not requested_file_name.strip():
            raise InvalidInputError("New file name is required.")

        asset = self.store.get_photo(photo_id)
        if asset is None:
            return None

        requested = os.path.basename(requested_file_name.strip())
        stem, ext = os.path.splitext(requested)
        extension = normalize_extension(ext) if ext else normalize_extension(asset.extension)
        clean_stem = sanitize_file_stem(stem)
        if not clean_stem:
            raise InvalidInputError(f"The requested file name is invalid: {requested_file_name!r}")

        return self._relocate(asset, os.path.join(asset.folder_path, f"{clean_stem}{extension}"))

    def move_photo(self, photo_id: int, destination_folder: str) -> Optional[PhotoAsset]:
        if not destination_folder or not destination_folder.strip():
            raise InvalidInputError("Destination folder is required.")

        asset = self.store.get_photo(photo_id)
        if asset is None:
            return None

        target = os.path.join(os.path.abspath(destination_folder.strip()), asset.file_name)
        return self._relocate(asset, target)

    def relocate_photo(self, photo_id: int, destination_path: str) -> Optional[PhotoAsset]:
        if not destination_path or not destination_path.strip():
            raise InvalidInputError("Destination path is required.")

        asset = self.store.get_photo(photo_id)
        if asset is None:
            return None

        return self._relocate(asset, destination_path.strip())

    def copy_photo(self, photo_id: int, destination_folder: str) -> Optional[PhotoAsset]:
        """Copies the file into destination_folder and catalogs the copy as a new row."""
        if not destination_folder or not destination_folder.strip():
            raise InvalidInputError("Destination folder is required.")

        asset = self.store.get_photo(photo_id)
        if asset is None:
            return None

        folder = os.path.abspath(destination_folder.strip())
        ensure_inside_root(folder, self._root_path(asset))
        return self._copy_to(asset, os.path.join(folder, asset.file_name))

    def duplicate_photo(self, photo_id: int) -> Optional[PhotoAsset]:
        """Copies the file next to itself as '<name>_copy.<ext>'."""
        asset = self.store.get_photo(photo_id)
        if asset is None:
            return None

        stem = sanitize_file_stem(os.path.splitext(asset.file_name)[0]) or "photo"
        target = os.path.join(asset.folder_path, f"{stem}_copy{normalize_extension(asset.extension)}")
        ensure_inside_root(asset.folder_path, self._root_path(asset))
        return self._copy_to(asset, target)

    def update_path_reference(self, photo_id: int, full_path: str) -> Optional[PhotoAsset]:
        """Points the row at a path without touching the disk."""
        if not full_path or not full_path.strip():
            raise InvalidInputError("Path is required.")

        asset = self.store.get_photo(photo_id)
        if asset is None:
            return None

        self._apply_path_state(asset, full_path.strip())
        self.store.update_photo(asset)
        self.store.commit()
        return asset

    def repair_photo_location(self,
                              photo_id: int,
                              cancel_token: Optional[CancellationToken] = None) -> Optional[PhotoAsset]:
        """
        Finds a photo that was moved outside the app by searching its scan root
        for the same file name, narrowing by size and then by hash. Returns the
        updated asset, or None when there is no single convincing match.
        """
        asset = self.store.get_photo(photo_id)
        if asset is None:
            return None
        if os.path.isfile(asset.full_path):
            return asset

        root_path = self._root_path(asset)
        if not root_path or not os.path.isdir(root_path):
            return None

        candidates = self._find_by_name(root_path, asset.file_name, cancel_token)
        if not candidates:
            return None

        narrowed = candidates
        if asset.file_size_bytes > 0:
            same_size = [p for p in candidates if self._size_or_none(p) == asset.file_size_bytes]
            narrowed = same_size or candidates

        if len(narrowed) > 1 and asset.sha256:
            matches = []
            for path in narrowed:
                check_cancelled(cancel_token)
                try:
                    if self.hasher.compute_sha256(path) == asset.sha256.lower():
                        matches.append(path)
                except FileHashError as e:
                    logging.debug(str(e))
            narrowed = matches or narrowed

        if len(narrowed) != 1:
            logging.info(f"Could not repair location of photo {photo_id}: {len(narrowed)} candidates")
            return None

        self._apply_path_state(asset, narrowed[0])
        self.store.update_photo(asset)
        self.store.commit()
        return asset

    # --- Catalog-only edits ---

    def update_notes(self, photo_id: int, notes: Optional[str]) -> Optional[PhotoAsset]:
        asset = self.store.get_photo(photo_id)
        if asset is None:
            return None
        asset.notes = notes.strip() if notes and notes.strip() else None
        return self._save(asset)

    def replace_tags(self, photo_id: int, tags: Iterable[str]) -> Optional[PhotoAsset]:
        asset = self.store.get_photo(photo_id)
        if asset is None:
            return None
        asset.tags = normalize_tags(tags)
        return self._save(asset)

    def update_detected_subjects(self,
                                 photo_id: int,
                                 people_ids: Iterable[str],
                                 animal_ids: Iterable[str]) -> Optional[PhotoAsset]:
        asset = self.store.get_photo(photo_id)
        if asset is None:
            return None
        asset.people_ids = normalize_identifiers(people_ids)
        asset.animal_ids = normalize_identifiers(animal_ids)
        return self._save(asset)

    def delete_photo(self, photo_id: int, delete_file: bool = False) -> bool:
        """Removes the catalog row; deleting the file itself is best effort."""
        asset = self.store.get_photo(photo_id)
        if asset is None:
            return False

        if delete_file:
            try:
                if os.path.isfile(asset.full_path):
                    os.remove(asset.full_path)
            except OSError as e:
                logging.warning(f"Could not delete {asset.full_path}: {e}")

        self.store.delete_photos([photo_id])
        self.store.commit()
        return True

    # --- Internals ---

    def _root_path(self, asset: PhotoAsset) -> Optional[str]:
        root = self.store.get_scan_root(asset.scan_root_id)
        return root.root_path if root else None

    def _relocate(self, asset: PhotoAsset, destination: str) -> PhotoAsset:
        source = os.path.abspath(asset.full_path)
        if not os.path.isfile(source):
            raise FileNotFoundError(f"Source file was not found: {source}")

        destination = os.path.abspath(destination)
        ensure_inside_root(destination, self._root_path(asset))

        if paths_equal(source, destination):
            return asset

        os.makedirs(os.path.dirname(destination), exist_ok=True)
        destination = resolve_unique_target(destination, ignore_existing=source)
        shutil.move(source, destination)
        logging.info(f"Moved {source} -> {destination}")

        self._apply_path_state(asset, destination)
        self.store.update_photo(asset)
        self.store.commit()
        return asset

    def _copy_to(self, asset: PhotoAsset, destination: str) -> PhotoAsset:
        source = os.path.abspath(asset.full_path)
        if not os.path.isfile(source):
            raise FileNotFoundError(f"Source file was not found: {source}")

        os.makedirs(os.path.dirname(destination), exist_ok=True)
        destination = resolve_unique_target(destination)
        shutil.copy2(source, destination)

        now = datetime.now(UTC)
        copy = replace(
            asset,
            id=None,
            tags=set(asset.tags),
            people_ids=set(asset.people_ids),
            animal_ids=set(asset.animal_ids),
            indexed_utc=now,
        )
        self._apply_path_state(copy, destination)
        self.store.add_photo(copy)
        self.store.commit()
        return copy

    def _apply_path_state(self, asset: PhotoAsset, full_path: str):
        asset.set_path(full_path)
        if os.path.isfile(asset.full_path):
            created, modified = stat_times(os.stat(asset.full_path))
            asset.file_size_bytes = os.path.getsize(asset.full_path)
            asset.file_created_utc = created
            asset.file_last_write_utc = modified
        asset.updated_utc = datetime.now(UTC)

    def _save(self, asset: PhotoAsset) -> PhotoAsset:
        asset.updated_utc = datetime.now(UTC)
        self.store.update_photo(asset)
        self.store.commit()
        return asset

    def _size_or_none(self, path: str) -> Optional[int]:
        try:
            return os.path.getsize(path)
        except OSError:
            return None

    def _find_by_name(self,
                      root_path: str,
                      file_name: str,
                      cancel_token: Optional[CancellationToken]) -> List[str]:
        """Stack-based search for files named file_name (case-insensitive)."""
        wanted = file_name.lower()
        found: List[str] = []
        stack = [os.path.abspath(root_path)]
        while stack and len(found) < MAX_REPAIR_CANDIDATES:
            check_cancelled(cancel_token)
            current = stack.pop()
            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except OSError:
                continue
            for e in entries:
                try:
                    if e.is_dir(follow_symlinks=False):
                        stack.append(e.path)
                    elif e.is_file() and e.name.lower() == wanted:
                        found.append(e.path)
                except OSError:
                    continue
        return found[:MAX_REPAIR_CANDIDATES]
