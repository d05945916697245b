import pytest

from photo_catalog.cancellation import CancellationToken
from photo_catalog.duplicates.detector import DuplicateDetector
from photo_catalog.exceptions import OperationCancelledError

from conftest import add_root, add_photo, write_file


def test_identical_files_form_one_group(store, tmp_path):
    root = add_root(store, tmp_path)
    a = add_photo(store, root, write_file(tmp_path / "a.jpg", b"same bytes"))
    b = add_photo(store, root, write_file(tmp_path / "copy" / "a.jpg", b"same bytes"))
    add_photo(store, root, write_file(tmp_path / "c.jpg", b"different"))

    detector = DuplicateDetector(store, max_workers=2)
    updates = []
    hashed = detector.compute_missing_hashes(root.id, progress=updates.append)

    assert hashed == 3
    assert updates[-1].indexed == 3
    groups = detector.get_duplicate_groups(root.id)
    assert len(groups) == 1
    assert groups[0].count == 2
    assert groups[0].sha256 == store.get_photo(a.id).sha256 == store.get_photo(b.id).sha256


def test_missing_files_are_left_unhashed(store, tmp_path):
    root = add_root(store, tmp_path)
    present = add_photo(store, root, write_file(tmp_path / "a.jpg", b"x"))
    gone = add_photo(store, root, tmp_path / "gone.jpg")

    hashed = DuplicateDetector(store).compute_missing_hashes(root.id)

    assert hashed == 1
    assert store.get_photo(present.id).sha256 is not None
    assert store.get_photo(gone.id).sha256 is None


def test_already_hashed_photos_are_not_rehashed(store, tmp_path):
    root = add_root(store, tmp_path)
    add_photo(store, root, write_file(tmp_path / "a.jpg", b"x"), sha256="f" * 64)

    assert DuplicateDetector(store).compute_missing_hashes(root.id) == 0


def test_groups_are_ordered_by_size_then_hash(store, tmp_path):
    root = add_root(store, tmp_path)
    for i, digest in enumerate(["b" * 64, "b" * 64, "a" * 64, "a" * 64, "c" * 64, "c" * 64, "c" * 64]):
        add_photo(store, root, tmp_path / f"{i}.jpg", sha256=digest)
    add_photo(store, root, tmp_path / "single.jpg", sha256="d" * 64)

    groups = DuplicateDetector(store).get_duplicate_groups(root.id)

    assert [(g.sha256[0], g.count) for g in groups] == [("c", 3), ("a", 2), ("b", 2)]


def test_groups_are_scoped_to_the_root(store, tmp_path):
    root1 = add_root(store, tmp_path / "one")
    root2 = add_root(store, tmp_path / "two")
    add_photo(store, root1, tmp_path / "one" / "a.jpg", sha256="a" * 64)
    add_photo(store, root2, tmp_path / "two" / "a.jpg", sha256="a" * 64)

    assert DuplicateDetector(store).get_duplicate_groups(root1.id) == []


def test_cancelled_hash_fill_writes_nothing(store, tmp_path):
    root = add_root(store, tmp_path)
    photo = add_photo(store, root, write_file(tmp_path / "a.jpg", b"x"))
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelledError):
        DuplicateDetector(store).compute_missing_hashes(root.id, cancel_token=token)

    assert store.get_photo(photo.id).sha256 is None


def test_scan_with_detection_then_group(store, tmp_path, fixed_metadata):
    from photo_catalog.scanning.scanner import ScanService

    write_file(tmp_path / "holiday.jpg", b"identical")
    write_file(tmp_path / "holiday (copy).jpg", b"identical")
    service = ScanService(store)
    root = service.get_or_create_scan_root(str(tmp_path), enable_duplicate_detection=True)
    service.scan(root.id)

    detector = DuplicateDetector(store)
    assert detector.compute_missing_hashes(root.id) == 0
    groups = detector.get_duplicate_groups(root.id)
    assert [g.count for g in groups] == [2]
