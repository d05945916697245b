import os
import shutil
import pytest
from datetime import datetime, UTC
from pathlib import Path

from photo_catalog.cancellation import CancellationToken
from photo_catalog.exceptions import ScanRootNotFoundError, OperationCancelledError
from photo_catalog.models import OrganizerPlanItem, PhotoAsset
from photo_catalog.organization.planner import OrganizerPlanner, target_directory

from conftest import add_root, add_photo, write_file


def noon(year, month, day):
    # Noon UTC stays on the same calendar day in every local timezone that matters here
    return datetime(year, month, day, 12, 0, tzinfo=UTC)


@pytest.fixture
def log_path(tmp_path):
    return tmp_path / "logs" / "organizer_plan.log"


@pytest.fixture
def three_photos(store, tmp_path):
    root_dir = tmp_path / "lib"
    root = add_root(store, root_dir)
    photos = [
        add_photo(store, root, write_file(root_dir / "inbox" / "a.jpg", b"a"), date_taken=noon(2023, 1, 5)),
        add_photo(store, root, write_file(root_dir / "inbox" / "b.jpg", b"b"), date_taken=noon(2023, 1, 20)),
        add_photo(store, root, write_file(root_dir / "inbox" / "c.jpg", b"c"), date_taken=noon(2023, 2, 1)),
    ]
    return root, photos


def test_target_directory_uses_year_and_month(tmp_path):
    asset = PhotoAsset(scan_root_id=1, full_path=str(tmp_path / "x.jpg"), date_taken=noon(2022, 11, 3))
    assert target_directory(str(tmp_path), asset) == str(tmp_path / "2022" / "2022-11")

    undated = PhotoAsset(scan_root_id=1, full_path=str(tmp_path / "y.jpg"))
    assert target_directory(str(tmp_path), undated) is None

    by_write_time = PhotoAsset(scan_root_id=1, full_path=str(tmp_path / "z.jpg"), file_last_write_utc=noon(2020, 5, 5))
    assert target_directory(str(tmp_path), by_write_time) == str(tmp_path / "2020" / "2020-05")


def test_plan_buckets_by_month(store, three_photos, log_path):
    root, _ = three_photos
    plan = OrganizerPlanner(store, log_path).create_plan(root.id)

    assert plan.total_evaluated == 3
    assert plan.total_moves == 3
    folders = {os.path.relpath(os.path.dirname(i.destination_path), root.root_path) for i in plan.items}
    assert folders == {os.path.join("2023", "2023-01"), os.path.join("2023", "2023-02")}
    assert sorted(os.path.basename(i.destination_path) for i in plan.items) == ["a.jpg", "b.jpg", "c.jpg"]

    # Planning never touches the disk
    assert not os.path.exists(os.path.join(root.root_path, "2023"))

    log = log_path.read_text(encoding="utf-8")
    assert "Evaluated=3 Moves=3" in log
    assert log.count("PLAN: ") == 3


def test_plan_skips_photos_already_in_place(store, tmp_path, log_path):
    root = add_root(store, tmp_path)
    add_photo(store, root, write_file(tmp_path / "2023" / "2023-01" / "a.jpg"), date_taken=noon(2023, 1, 5))

    plan = OrganizerPlanner(store, log_path).create_plan(root.id)

    assert plan.total_evaluated == 1
    assert plan.items == []


def test_plan_resolves_name_collisions(store, tmp_path, log_path):
    root = add_root(store, tmp_path)
    # Already in place and staying put
    add_photo(store, root, write_file(tmp_path / "2023" / "2023-01" / "img.jpg"), date_taken=noon(2023, 1, 2))
    add_photo(store, root, write_file(tmp_path / "x" / "img.jpg"), date_taken=noon(2023, 1, 3))
    add_photo(store, root, write_file(tmp_path / "y" / "img.jpg"), date_taken=noon(2023, 1, 4))

    plan = OrganizerPlanner(store, log_path).create_plan(root.id)

    names = sorted(os.path.basename(i.destination_path) for i in plan.items)
    assert names == ["img_1.jpg", "img_2.jpg"]
    assert len({i.destination_path for i in plan.items}) == 2


def test_plan_unknown_root(store, log_path):
    with pytest.raises(ScanRootNotFoundError):
        OrganizerPlanner(store, log_path).create_plan(12)


def test_apply_moves_files_and_updates_catalog(store, three_photos, log_path):
    root, photos = three_photos
    planner = OrganizerPlanner(store, log_path)
    plan = planner.create_plan(root.id)

    result = planner.apply_plan(root.id, plan.items)

    assert (result.attempted, result.moved, result.skipped, result.failed) == (3, 3, 0, 0)
    for item in plan.items:
        assert os.path.isfile(item.destination_path)
        assert not os.path.exists(item.source_path)
        moved = store.get_photo(item.photo_id)
        assert moved.full_path == item.destination_path
        assert moved.folder_path == os.path.dirname(item.destination_path)
    assert "APPLY Root=" in log_path.read_text(encoding="utf-8")


def test_apply_with_deleted_source(store, three_photos, log_path):
    root, photos = three_photos
    planner = OrganizerPlanner(store, log_path)
    plan = planner.create_plan(root.id)
    os.remove(photos[1].full_path)

    result = planner.apply_plan(root.id, plan.items)

    assert (result.attempted, result.moved, result.skipped, result.failed) == (3, 2, 1, 0)
    assert len(result.errors) == 1
    assert "source file not found" in result.errors[0]
    assert log_path.read_text(encoding="utf-8").count("APPLY-ERROR: ") == 1


def test_second_apply_changes_nothing(store, three_photos, log_path):
    root, _ = three_photos
    planner = OrganizerPlanner(store, log_path)
    planner.apply_plan(root.id, planner.create_plan(root.id).items)

    second = planner.create_plan(root.id)
    assert second.items == []
    assert planner.apply_plan(root.id, second.items).attempted == 0


def test_apply_avoids_files_that_appeared_after_planning(store, three_photos, log_path):
    root, photos = three_photos
    planner = OrganizerPlanner(store, log_path)
    plan = planner.create_plan(root.id)
    intruder = write_file(Path(root.root_path) / "2023" / "2023-01" / "a.jpg", b"intruder")

    result = planner.apply_plan(root.id, plan.items)

    assert result.moved == 3
    assert intruder.read_bytes() == b"intruder"
    assert store.get_photo(photos[0].id).file_name == "a_1.jpg"


def test_apply_rejects_destination_outside_root(store, three_photos, tmp_path, log_path):
    root, photos = three_photos
    escape = OrganizerPlanItem(
        photo_id=photos[0].id,
        source_path=photos[0].full_path,
        destination_path=str(tmp_path / "elsewhere" / "a.jpg"),
    )

    result = OrganizerPlanner(store, log_path).apply_plan(root.id, [escape])

    assert (result.attempted, result.moved, result.skipped, result.failed) == (1, 0, 0, 1)
    assert os.path.isfile(photos[0].full_path)
    assert not (tmp_path / "elsewhere").exists()


def test_apply_skips_photo_from_another_root(store, three_photos, tmp_path, log_path):
    root, _ = three_photos
    other_root = add_root(store, tmp_path / "other")
    stranger = add_photo(store, other_root, write_file(tmp_path / "other" / "s.jpg"), date_taken=noon(2023, 1, 1))
    item = OrganizerPlanItem(
        photo_id=stranger.id,
        source_path=stranger.full_path,
        destination_path=os.path.join(root.root_path, "2023", "2023-01", "s.jpg"),
    )

    result = OrganizerPlanner(store, log_path).apply_plan(root.id, [item])

    assert (result.attempted, result.moved, result.skipped, result.failed) == (1, 0, 1, 0)
    assert os.path.isfile(stranger.full_path)


def test_apply_empty_plan(store, three_photos, log_path):
    root, _ = three_photos
    result = OrganizerPlanner(store, log_path).apply_plan(root.id, [])
    assert (result.attempted, result.moved) == (0, 0)


def test_cancelled_apply_logs_and_stops(store, three_photos, log_path):
    root, _ = three_photos
    planner = OrganizerPlanner(store, log_path)
    plan = planner.create_plan(root.id)
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelledError):
        planner.apply_plan(root.id, plan.items, cancel_token=token)

    assert "Cancelled=True" in log_path.read_text(encoding="utf-8")
    for item in plan.items:
        assert os.path.isfile(item.source_path)


def test_reapplying_the_same_plan_skips_everything(store, three_photos, log_path):
    root, _ = three_photos
    planner = OrganizerPlanner(store, log_path)
    plan = planner.create_plan(root.id)

    first = planner.apply_plan(root.id, plan.items)
    second = planner.apply_plan(root.id, plan.items)

    assert (first.attempted, first.moved, first.skipped, first.failed) == (3, 3, 0, 0)
    assert (second.attempted, second.moved, second.skipped, second.failed) == (3, 0, 3, 0)
    for item in plan.items:
        assert store.get_photo(item.photo_id).full_path == item.destination_path


def test_keyboard_interrupt_mid_apply_keeps_finished_moves(store, conn, three_photos, log_path, monkeypatch):
    root, photos = three_photos
    planner = OrganizerPlanner(store, log_path)
    plan = planner.create_plan(root.id)

    real_move = shutil.move
    calls = []

    def interrupting_move(src, dst, *args, **kwargs):
        calls.append(src)
        if len(calls) == 2:
            raise KeyboardInterrupt
        return real_move(src, dst, *args, **kwargs)

    monkeypatch.setattr(shutil, "move", interrupting_move)

    with pytest.raises(KeyboardInterrupt):
        planner.apply_plan(root.id, plan.items)

    # Nothing uncommitted may be left behind for the moved file
    conn.rollback()
    first = plan.items[0]
    assert store.get_photo(first.photo_id).full_path == first.destination_path
    assert os.path.isfile(first.destination_path)
    assert store.get_photo(photos[1].id).full_path == photos[1].full_path
    assert os.path.isfile(photos[1].full_path)
    last_block = log_path.read_text(encoding="utf-8").splitlines()[-1]
    assert "Moved=1" in last_block and "Cancelled=True" in last_block
