import pytest
from datetime import datetime, timedelta, timezone, UTC

from photo_catalog.database.db import DBManager
from photo_catalog.database.store import to_db_datetime, from_db_datetime, to_csv, from_csv
from photo_catalog.exceptions import DatabaseError
from photo_catalog.models import ScanRoot, PhotoAsset, DateTakenSource

from conftest import add_root, add_photo


def test_datetime_strings_sort_chronologically():
    earlier = datetime(2023, 1, 1, 23, 0, tzinfo=timezone(timedelta(hours=-5)))  # 04:00Z next day
    later = datetime(2023, 1, 2, 5, 0, tzinfo=UTC)
    assert to_db_datetime(earlier) < to_db_datetime(later)
    assert to_db_datetime(datetime(2023, 1, 1)) == "2023-01-01T00:00:00.000000+00:00"
    assert from_db_datetime(to_db_datetime(later)) == later
    assert to_db_datetime(None) is None and from_db_datetime(None) is None


def test_csv_helpers():
    assert to_csv({"b", "a"}) == "a,b"
    assert to_csv(set()) is None
    assert from_csv("a, b,,") == {"a", "b"}
    assert from_csv(None) == set()


def test_photo_round_trip(store, tmp_path):
    root = add_root(store, tmp_path)
    taken = datetime(2022, 5, 6, 7, 8, 9, 123456, tzinfo=UTC)
    photo = add_photo(store, root, tmp_path / "Sub" / "IMG.JPG", date_taken=taken,
                      camera_make="Sony", width=10, height=20, sha256="ab" * 32,
                      tags={"x", "y"}, people_ids={"bob"}, notes="hi")

    loaded = store.get_photo(photo.id)

    assert loaded.file_name == "IMG.JPG"
    assert loaded.extension == ".jpg"
    assert loaded.folder_path == str(tmp_path / "Sub")
    assert loaded.date_taken == taken
    assert loaded.date_taken_source == DateTakenSource.EXIF
    assert (loaded.camera_make, loaded.width, loaded.height) == ("Sony", 10, 20)
    assert loaded.tags == {"x", "y"}
    assert loaded.people_ids == {"bob"}
    assert loaded.animal_ids == set()
    assert loaded.notes == "hi"


def test_unique_path_per_root(store, tmp_path):
    root = add_root(store, tmp_path)
    add_photo(store, root, tmp_path / "a.jpg")
    with pytest.raises(DatabaseError):
        add_photo(store, root, tmp_path / "a.jpg")


def test_same_path_in_two_roots_is_allowed(store, tmp_path):
    r1 = add_root(store, tmp_path / "one")
    r2 = add_root(store, tmp_path / "two")
    add_photo(store, r1, tmp_path / "a.jpg")
    add_photo(store, r2, tmp_path / "a.jpg")
    assert store.count_photos() == 2


def test_unique_root_path(store, tmp_path):
    add_root(store, tmp_path)
    with pytest.raises(DatabaseError):
        store.add_scan_root(ScanRoot(root_path=str(tmp_path)))


def test_update_photo_requires_id(store, tmp_path):
    with pytest.raises(DatabaseError):
        store.update_photo(PhotoAsset(scan_root_id=1, full_path=str(tmp_path / "x.jpg")))


def test_delete_and_lookup(store, tmp_path):
    root = add_root(store, tmp_path)
    a = add_photo(store, root, tmp_path / "a.jpg")
    b = add_photo(store, root, tmp_path / "b.jpg")

    assert store.find_photo_by_path(root.id, str(tmp_path / "b.jpg")).id == b.id
    assert store.delete_photos([a.id]) == 1
    assert store.delete_photos([]) == 0
    assert [p.id for p in store.list_photos(root.id)] == [b.id]


def test_unknown_date_source_reads_as_unknown(store, conn, tmp_path):
    root = add_root(store, tmp_path)
    photo = add_photo(store, root, tmp_path / "a.jpg")
    conn.execute("UPDATE photo_assets SET date_taken_source = 'sundial' WHERE id = ?", (photo.id,))

    assert store.get_photo(photo.id).date_taken_source == DateTakenSource.UNKNOWN


def test_db_manager_creates_schema(tmp_path):
    with DBManager(tmp_path / "catalog.db") as conn:
        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        mode = conn.execute("PRAGMA journal_mode").fetchone()[0]

    assert {"scan_roots", "photo_assets", "schema_version"} <= tables
    assert mode.lower() == "wal"
