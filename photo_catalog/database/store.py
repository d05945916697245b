import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime, UTC
from typing import Optional, List, Tuple, Dict, Any, Iterable, Sequence, Iterator

from ..cancellation import CancellationToken
from ..exceptions import DatabaseError, OperationCancelledError
from ..models import ScanRoot, PhotoAsset, DuplicateGroup, DateTakenSource

PHOTO_COLUMNS = (
    "id", "scan_root_id", "full_path", "file_name", "extension", "folder_path",
    "file_size_bytes", "date_taken", "date_taken_source", "camera_make",
    "camera_model", "width", "height", "sha256", "file_created_utc",
    "file_last_write_utc", "indexed_utc", "updated_utc", "notes",
    "tags_csv", "people_csv", "animals_csv",
)
_PHOTO_SELECT = "SELECT " + ", ".join(PHOTO_COLUMNS) + " FROM photo_assets"

# sqlite3 progress handler granularity (VM instructions between polls)
_PROGRESS_HANDLER_STEPS = 1000


def to_db_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string. Naive values are taken to already be UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def from_db_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def to_csv(values: Iterable[str]) -> Optional[str]:
    items = sorted(v for v in values if v)
    return ",".join(items) if items else None


def from_csv(value: Optional[str]) -> set:
    if not value:
        return set()
    return {v.strip() for v in value.split(",") if v.strip()}


class CatalogStore:
    """
    Narrow persistence interface over the catalog DB.

    Scanner, duplicate detector, query engine and organizer only talk to the
    catalog through this class. Writes are not committed until commit() so
    callers control batch boundaries.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # --- Transactions ---

    def commit(self):
        self.conn.commit()

    def rollback(self):
        self.conn.rollback()

    @contextmanager
    def interruptible(self, cancel_token: Optional[CancellationToken]) -> Iterator[None]:
        """
        Aborts the running statement when the token is cancelled.
        SQLite surfaces the abort as OperationalError('interrupted').
        """
        if cancel_token is None:
            yield
            return

        self.conn.set_progress_handler(lambda: 1 if cancel_token.is_cancelled else 0, _PROGRESS_HANDLER_STEPS)
        try:
            yield
        except sqlite3.OperationalError as e:
            if cancel_token.is_cancelled:
                raise OperationCancelledError("Query was cancelled.") from e
            raise
        finally:
            self.conn.set_progress_handler(None, 0)

    # --- Scan Roots ---

    def list_scan_roots(self) -> List[ScanRoot]:
        cur = self.conn.cursor()
        cur.execute("""
            SELECT id, root_path, last_scan_utc, total_files_last_scan, enable_duplicate_detection, notes
            FROM scan_roots ORDER BY root_path
        """)
        return [self._row_to_scan_root(r) for r in cur.fetchall()]

    def get_scan_root(self, scan_root_id: int) -> Optional[ScanRoot]:
        cur = self.conn.cursor()
        cur.execute("""
            SELECT id, root_path, last_scan_utc, total_files_last_scan, enable_duplicate_detection, notes
            FROM scan_roots WHERE id = ?
        """, (scan_root_id,))
        row = cur.fetchone()
        return self._row_to_scan_root(row) if row else None

    def find_scan_root_by_path(self, root_path: str) -> Optional[ScanRoot]:
        cur = self.conn.cursor()
        cur.execute("""
            SELECT id, root_path, last_scan_utc, total_files_last_scan, enable_duplicate_detection, notes
            FROM scan_roots WHERE root_path = ?
        """, (root_path,))
        row = cur.fetchone()
        return self._row_to_scan_root(row) if row else None

    def add_scan_root(self, root: ScanRoot) -> ScanRoot:
        try:
            cur = self.conn.execute("""
                INSERT INTO scan_roots (root_path, last_scan_utc, total_files_last_scan, enable_duplicate_detection, notes)
                VALUES (?, ?, ?, ?, ?)
            """, (
                root.root_path, to_db_datetime(root.last_scan_utc), root.total_files_last_scan,
                int(root.enable_duplicate_detection), root.notes,
            ))
        except sqlite3.IntegrityError as e:
            raise DatabaseError(f"Scan root already registered: {root.root_path}") from e

        if cur.lastrowid is None:
            raise DatabaseError("Database INSERT failed to return a row ID.")
        root.id = cur.lastrowid
        return root

    def update_scan_root(self, root: ScanRoot):
        self.conn.execute("""
            UPDATE scan_roots
            SET root_path = ?, last_scan_utc = ?, total_files_last_scan = ?, enable_duplicate_detection = ?, notes = ?
            WHERE id = ?
        """, (
            root.root_path, to_db_datetime(root.last_scan_utc), root.total_files_last_scan,
            int(root.enable_duplicate_detection), root.notes, root.id,
        ))

    # --- Photo Assets ---

    def get_photo(self, photo_id: int) -> Optional[PhotoAsset]:
        cur = self.conn.cursor()
        cur.execute(f"{_PHOTO_SELECT} WHERE id = ?", (photo_id,))
        row = cur.fetchone()
        return self._row_to_photo(row) if row else None

    def list_photos(self, scan_root_id: int) -> List[PhotoAsset]:
        cur = self.conn.cursor()
        cur.execute(f"{_PHOTO_SELECT} WHERE scan_root_id = ? ORDER BY id", (scan_root_id,))
        return [self._row_to_photo(r) for r in cur.fetchall()]

    def list_photos_missing_hash(self, scan_root_id: int) -> List[PhotoAsset]:
        cur = self.conn.cursor()
        cur.execute(
            f"{_PHOTO_SELECT} WHERE scan_root_id = ? AND (sha256 IS NULL OR sha256 = '') ORDER BY id",
            (scan_root_id,),
        )
        return [self._row_to_photo(r) for r in cur.fetchall()]

    def find_photo_by_path(self, scan_root_id: int, full_path: str) -> Optional[PhotoAsset]:
        cur = self.conn.cursor()
        cur.execute(f"{_PHOTO_SELECT} WHERE scan_root_id = ? AND full_path = ?", (scan_root_id, full_path))
        row = cur.fetchone()
        return self._row_to_photo(row) if row else None

    def add_photo(self, asset: PhotoAsset) -> int:
        values = self._photo_values(asset)
        cols = PHOTO_COLUMNS[1:]
        try:
            cur = self.conn.execute(
                f"INSERT INTO photo_assets ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
                values,
            )
        except sqlite3.IntegrityError as e:
            raise DatabaseError(f"Photo already cataloged: {asset.full_path}") from e

        if cur.lastrowid is None:
            raise DatabaseError("Database INSERT failed to return a row ID.")
        asset.id = cur.lastrowid
        return asset.id

    def update_photo(self, asset: PhotoAsset):
        if asset.id is None:
            raise DatabaseError(f"Cannot update unsaved photo: {asset.full_path}")
        cols = PHOTO_COLUMNS[1:]
        try:
            self.conn.execute(
                f"UPDATE photo_assets SET {', '.join(f'{c} = ?' for c in cols)} WHERE id = ?",
                (*self._photo_values(asset), asset.id),
            )
        except sqlite3.IntegrityError as e:
            raise DatabaseError(f"Path already cataloged: {asset.full_path}") from e

    def delete_photos(self, photo_ids: Sequence[int]) -> int:
        if not photo_ids:
            return 0
        self.conn.executemany("DELETE FROM photo_assets WHERE id = ?", [(pid,) for pid in photo_ids])
        return len(photo_ids)

    # --- Queries ---

    def count_photos(self, where: str = "1=1", params: Sequence[Any] = ()) -> int:
        cur = self.conn.cursor()
        cur.execute(f"SELECT COUNT(*) FROM photo_assets WHERE {where}", tuple(params))
        return int(cur.fetchone()[0])

    def select_photos(self,
                      where: str = "1=1",
                      params: Sequence[Any] = (),
                      order_by: str = "id",
                      limit: Optional[int] = None,
                      offset: int = 0) -> List[PhotoAsset]:
        sql = f"{_PHOTO_SELECT} WHERE {where} ORDER BY {order_by}"
        args: List[Any] = list(params)
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            args.extend([limit, offset])
        cur = self.conn.cursor()
        cur.execute(sql, args)
        return [self._row_to_photo(r) for r in cur.fetchall()]

    def duplicate_groups(self, scan_root_id: Optional[int]) -> List[DuplicateGroup]:
        where, params = "sha256 IS NOT NULL AND sha256 != ''", []
        if scan_root_id is not None:
            where += " AND scan_root_id = ?"
            params.append(scan_root_id)
        cur = self.conn.cursor()
        cur.execute(f"""
            SELECT sha256, COUNT(*) AS cnt
            FROM photo_assets
            WHERE {where}
            GROUP BY sha256
            HAVING COUNT(*) > 1
            ORDER BY cnt DESC, sha256 ASC
        """, params)
        return [DuplicateGroup(sha256=h, count=int(c)) for h, c in cur.fetchall()]

    def date_bucket_counts(self, prefix_len: int, scan_root_id: Optional[int]) -> List[Tuple[str, int]]:
        """
        Counts dated photos grouped by the first prefix_len chars of date_taken
        (4 = year, 7 = year-month), newest bucket first.
        """
        where, params = "date_taken IS NOT NULL", []
        if scan_root_id is not None:
            where += " AND scan_root_id = ?"
            params.append(scan_root_id)
        cur = self.conn.cursor()
        cur.execute(f"""
            SELECT substr(date_taken, 1, {int(prefix_len)}) AS bucket, COUNT(*)
            FROM photo_assets
            WHERE {where}
            GROUP BY bucket
            ORDER BY bucket DESC
        """, params)
        return [(b, int(c)) for b, c in cur.fetchall()]

    def distinct_folder_paths(self, scan_root_id: int) -> List[str]:
        cur = self.conn.cursor()
        cur.execute("SELECT DISTINCT folder_path FROM photo_assets WHERE scan_root_id = ?", (scan_root_id,))
        return [r[0] for r in cur.fetchall()]

    # --- Row Mapping ---

    def _row_to_scan_root(self, row) -> ScanRoot:
        rid, root_path, last_scan, total, dup_enabled, notes = row
        return ScanRoot(
            id=rid,
            root_path=root_path,
            last_scan_utc=from_db_datetime(last_scan),
            total_files_last_scan=total or 0,
            enable_duplicate_detection=bool(dup_enabled),
            notes=notes,
        )

    def _row_to_photo(self, row) -> PhotoAsset:
        r: Dict[str, Any] = dict(zip(PHOTO_COLUMNS, row))
        try:
            source = DateTakenSource(r["date_taken_source"])
        except ValueError:
            logging.debug(f"Unknown date source {r['date_taken_source']!r} for photo {r['id']}")
            source = DateTakenSource.UNKNOWN

        return PhotoAsset(
            id=r["id"],
            scan_root_id=r["scan_root_id"],
            full_path=r["full_path"],
            file_name=r["file_name"],
            extension=r["extension"],
            folder_path=r["folder_path"],
            file_size_bytes=r["file_size_bytes"] or 0,
            date_taken=from_db_datetime(r["date_taken"]),
            date_taken_source=source,
            camera_make=r["camera_make"],
            camera_model=r["camera_model"],
            width=r["width"],
            height=r["height"],
            sha256=r["sha256"],
            file_created_utc=from_db_datetime(r["file_created_utc"]),
            file_last_write_utc=from_db_datetime(r["file_last_write_utc"]),
            indexed_utc=from_db_datetime(r["indexed_utc"]),
            updated_utc=from_db_datetime(r["updated_utc"]),
            notes=r["notes"],
            tags=from_csv(r["tags_csv"]),
            people_ids=from_csv(r["people_csv"]),
            animal_ids=from_csv(r["animals_csv"]),
        )

    def _photo_values(self, a: PhotoAsset) -> tuple:
        now = datetime.now(UTC)
        return (
            a.scan_root_id, a.full_path, a.file_name, a.extension, a.folder_path,
            a.file_size_bytes, to_db_datetime(a.date_taken), a.date_taken_source.value,
            a.camera_make, a.camera_model, a.width, a.height, a.sha256,
            to_db_datetime(a.file_created_utc), to_db_datetime(a.file_last_write_utc),
            to_db_datetime(a.indexed_utc or now), to_db_datetime(a.updated_utc or now),
            a.notes, to_csv(a.tags), to_csv(a.people_ids), to_csv(a.animal_ids),
        )
