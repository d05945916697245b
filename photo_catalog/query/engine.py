import os
import re
import logging
from datetime import datetime, timedelta, UTC
from typing import Any, Dict, List, Optional, Tuple

from .. import config
from ..cancellation import CancellationToken, check_cancelled
from ..database.store import CatalogStore, to_db_datetime
from ..models import (
    PhotoAsset, PhotoQueryFilter, PhotoQueryResult, PhotoSortOption,
    SmartAlbum, DateTakenSource,
)

YEAR_PREFIX = "year:"
MONTH_PREFIX = "month:"
DUPLICATE_PREFIX = "dup:"

_LIKE = "LIKE ? ESCAPE '\\'"
_NAME = "file_name COLLATE NOCASE"

# Every sort ends on id so equal keys still page deterministically
SORT_CLAUSES: Dict[PhotoSortOption, str] = {
    PhotoSortOption.DATE_TAKEN_NEWEST:
        f"(date_taken IS NULL) ASC, date_taken DESC, indexed_utc DESC, {_NAME} ASC, id ASC",
    PhotoSortOption.DATE_TAKEN_OLDEST:
        f"(date_taken IS NULL) ASC, date_taken ASC, {_NAME} ASC, id ASC",
    PhotoSortOption.DATE_ADDED_NEWEST: f"indexed_utc DESC, {_NAME} ASC, id ASC",
    PhotoSortOption.DATE_ADDED_OLDEST: f"indexed_utc ASC, {_NAME} ASC, id ASC",
    PhotoSortOption.FILE_SIZE_LARGEST: f"file_size_bytes DESC, {_NAME} ASC, id ASC",
    PhotoSortOption.FILE_SIZE_SMALLEST: f"file_size_bytes ASC, {_NAME} ASC, id ASC",
    PhotoSortOption.NAME_ASCENDING: f"{_NAME} ASC, indexed_utc DESC, id ASC",
    PhotoSortOption.NAME_DESCENDING: f"{_NAME} DESC, indexed_utc DESC, id ASC",
}


def parse_search_tokens(raw: Optional[str]) -> List[str]:
    """
    Splits free text on whitespace and common punctuation.
    Tokens are de-duplicated case-insensitively and capped.
    """
    if not raw or not raw.strip():
        return []

    tokens: List[str] = []
    seen = set()
    for tok in re.split(config.SEARCH_TOKEN_SEPARATORS, raw.strip()):
        if not tok or tok.lower() in seen:
            continue
        seen.add(tok.lower())
        tokens.append(tok)
        if len(tokens) >= config.MAX_SEARCH_TOKENS:
            break

    # Input made only of separators still searches for itself
    return tokens or [raw.strip()]


def like_contains(token: str) -> str:
    escaped = token.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def clamp_page(page: int, page_size: int) -> Tuple[int, int]:
    return max(1, page), min(max(page_size, config.MIN_PAGE_SIZE), config.MAX_PAGE_SIZE)


class PhotoQueryEngine:
    """
    Turns a PhotoQueryFilter into a deterministic page of catalog rows.
    """

    def __init__(self, store: CatalogStore):
        self.store = store

    def query(self, flt: PhotoQueryFilter, cancel_token: Optional[CancellationToken] = None) -> PhotoQueryResult:
        check_cancelled(cancel_token)

        where, params = self._build_where(flt)
        page, page_size = clamp_page(flt.page, flt.page_size)
        order_by = SORT_CLAUSES.get(flt.sort_by, SORT_CLAUSES[PhotoSortOption.DATE_TAKEN_NEWEST])

        with self.store.interruptible(cancel_token):
            total = self.store.count_photos(where, params)
            items = self.store.select_photos(
                where, params,
                order_by=order_by,
                limit=page_size,
                offset=(page - 1) * page_size,
            )

        logging.debug(f"Query matched {total} photos; returning page {page} ({len(items)} items)")
        return PhotoQueryResult(items=items, total_count=total)

    def get_photo_by_id(self, photo_id: int) -> Optional[PhotoAsset]:
        return self.store.get_photo(photo_id)

    def get_smart_albums(self, scan_root_id: Optional[int] = None) -> List[SmartAlbum]:
        base, params = self._root_scope(scan_root_id)

        albums = [
            SmartAlbum("all", "All Photos", self.store.count_photos(base, params)),
            SmartAlbum("unknown", "Unknown Date", self.store.count_photos(
                f"{base} AND {self._album_unknown()}", params)),
        ]

        recent_sql, recent_params = self._album_recent()
        albums.append(SmartAlbum("recent", "Recently Added", self.store.count_photos(
            f"{base} AND {recent_sql}", [*params, *recent_params])))

        for month, count in self.store.date_bucket_counts(7, scan_root_id):
            albums.append(SmartAlbum(f"{MONTH_PREFIX}{month}", month, count))

        for year, count in self.store.date_bucket_counts(4, scan_root_id):
            albums.append(SmartAlbum(f"{YEAR_PREFIX}{year}", f"Year {year}", count))

        dup_sql, dup_params = self._album_duplicates(scan_root_id)
        albums.append(SmartAlbum("duplicates", "Possible Duplicates", self.store.count_photos(
            f"{base} AND {dup_sql}", [*params, *dup_params])))

        return albums

    def get_folder_subpaths(self, scan_root_id: int) -> List[str]:
        """Distinct photo folders relative to the root; '.' is the root itself."""
        root = self.store.get_scan_root(scan_root_id)
        if root is None:
            return []

        by_key: Dict[str, str] = {}
        for folder in self.store.distinct_folder_paths(scan_root_id):
            rel = os.path.relpath(folder, root.root_path) if folder else "."
            by_key.setdefault(os.path.normcase(rel), rel)
        return sorted(by_key.values(), key=str.lower)

    # --- Filter Compilation ---

    def _build_where(self, flt: PhotoQueryFilter) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []

        if flt.scan_root_id is not None:
            clauses.append("scan_root_id = ?")
            params.append(flt.scan_root_id)

        text_columns = ("file_name", "notes", "tags_csv", "people_csv", "animals_csv")
        for token in parse_search_tokens(flt.search_text):
            pattern = like_contains(token)
            clauses.append("(" + " OR ".join(f"{c} {_LIKE}" for c in text_columns) + ")")
            params.extend([pattern] * len(text_columns))

        for token in parse_search_tokens(flt.person_search_text):
            clauses.append(f"people_csv {_LIKE}")
            params.append(like_contains(token))

        for token in parse_search_tokens(flt.animal_search_text):
            clauses.append(f"animals_csv {_LIKE}")
            params.append(like_contains(token))

        if flt.from_date_utc is not None:
            clauses.append("date_taken IS NOT NULL AND date_taken >= ?")
            params.append(to_db_datetime(flt.from_date_utc))

        if flt.to_date_utc is not None:
            clauses.append("date_taken IS NOT NULL AND date_taken <= ?")
            params.append(to_db_datetime(flt.to_date_utc))

        if flt.date_source is not None:
            clauses.append("date_taken_source = ?")
            params.append(DateTakenSource(flt.date_source).value)

        if flt.folder_subpath and flt.folder_subpath.strip() and flt.scan_root_id is not None:
            root = self.store.get_scan_root(flt.scan_root_id)
            if root is not None:
                prefix = os.path.abspath(os.path.join(root.root_path, flt.folder_subpath.strip()))
                clauses.append("substr(folder_path, 1, ?) = ?")
                params.extend([len(prefix), prefix])

        album_sql, album_params = self._album_clause(flt.album_key, flt.scan_root_id)
        if album_sql:
            clauses.append(album_sql)
            params.extend(album_params)

        return (" AND ".join(clauses) if clauses else "1=1"), params

    def _album_clause(self, album_key: Optional[str], scan_root_id: Optional[int]) -> Tuple[Optional[str], List[Any]]:
        key = (album_key or "").strip()
        lowered = key.lower()

        if not key or lowered == "all":
            return None, []

        if lowered == "unknown":
            return self._album_unknown(), []

        if lowered == "recent":
            return self._album_recent()

        if lowered == "duplicates":
            return self._album_duplicates(scan_root_id)

        if lowered.startswith(DUPLICATE_PREFIX):
            digest = key[len(DUPLICATE_PREFIX):].strip().lower()
            if digest:
                return "lower(sha256) = ?", [digest]

        if lowered.startswith(YEAR_PREFIX):
            raw = key[len(YEAR_PREFIX):].strip()
            if raw.isdigit():
                return "substr(date_taken, 1, 4) = ?", [f"{int(raw):04d}"]

        if lowered.startswith(MONTH_PREFIX):
            parts = [p for p in key[len(MONTH_PREFIX):].split("-") if p]
            if len(parts) == 2 and all(p.strip().isdigit() for p in parts):
                year, month = int(parts[0]), int(parts[1])
                return "substr(date_taken, 1, 7) = ?", [f"{year:04d}-{month:02d}"]

        logging.debug(f"Unrecognized album key {album_key!r}; not filtering")
        return None, []

    def _album_unknown(self) -> str:
        return f"(date_taken IS NULL OR date_taken_source = '{DateTakenSource.UNKNOWN.value}')"

    def _album_recent(self) -> Tuple[str, List[Any]]:
        threshold = datetime.now(UTC) - timedelta(days=config.RECENT_DAYS)
        return "indexed_utc >= ?", [to_db_datetime(threshold)]

    def _album_duplicates(self, scan_root_id: Optional[int]) -> Tuple[str, List[Any]]:
        inner, params = self._root_scope(scan_root_id)
        return (
            "sha256 IN ("
            "SELECT sha256 FROM photo_assets "
            f"WHERE {inner} AND sha256 IS NOT NULL AND sha256 != '' "
            "GROUP BY sha256 HAVING COUNT(*) > 1)"
        ), params

    def _root_scope(self, scan_root_id: Optional[int]) -> Tuple[str, List[Any]]:
        if scan_root_id is None:
            return "1=1", []
        return "scan_root_id = ?", [scan_root_id]
