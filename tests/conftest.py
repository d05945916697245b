import pytest
import sqlite3
from datetime import datetime, UTC

from photo_catalog.database.schema import init_schema
from photo_catalog.database.store import CatalogStore
from photo_catalog.metadata.extract import MetadataExtractor
from photo_catalog.models import ScanRoot, PhotoAsset, PhotoMetadata, DateTakenSource
from photo_catalog.paths import normalize_root_path


@pytest.fixture
def conn():
    """Returns an in-memory SQLite connection with the schema initialized."""
    c = sqlite3.connect(":memory:")
    init_schema(c)
    try:
        yield c
    finally:
        c.close()


@pytest.fixture
def store(conn):
    """Returns a CatalogStore attached to the in-memory DB."""
    return CatalogStore(conn)


@pytest.fixture
def fixed_metadata(monkeypatch):
    """
    Replaces metadata extraction with a fixed EXIF date (noon UTC, so the local
    calendar day matches in any timezone). Tests can change `.date` per file
    by assigning into `.by_name`.
    """
    class FixedMetadata:
        date = datetime(2023, 7, 15, 12, 0, 0, tzinfo=UTC)
        by_name = {}
        calls = 0

    def fake_extract(self, path):
        FixedMetadata.calls += 1
        name = str(path).replace("\\", "/").rsplit("/", 1)[-1]
        return PhotoMetadata(
            date_taken_utc=FixedMetadata.by_name.get(name, FixedMetadata.date),
            date_taken_source=DateTakenSource.EXIF,
            camera_make="TestCam",
            camera_model="T1",
            width=4,
            height=3,
        )

    monkeypatch.setattr(MetadataExtractor, "extract", fake_extract)
    return FixedMetadata


def add_root(store, path, duplicates=False) -> ScanRoot:
    root = store.add_scan_root(ScanRoot(root_path=normalize_root_path(path), enable_duplicate_detection=duplicates))
    store.commit()
    return root


def add_photo(store, root, path, date_taken=None, **fields) -> PhotoAsset:
    """Catalogs a file (which may or may not exist) without scanning."""
    now = datetime.now(UTC)
    asset = PhotoAsset(
        scan_root_id=root.id,
        full_path=str(path),
        date_taken=date_taken,
        date_taken_source=DateTakenSource.EXIF if date_taken else DateTakenSource.UNKNOWN,
        indexed_utc=fields.pop("indexed_utc", now),
        updated_utc=now,
        **fields,
    )
    store.add_photo(asset)
    store.commit()
    return asset


def write_file(path, data=b"photo-bytes"):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path
