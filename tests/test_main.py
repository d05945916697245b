import os
import shutil
import signal
import pytest

from photo_catalog import config
from photo_catalog.cancellation import CancellationToken
from photo_catalog.database.db import DBManager
from photo_catalog.database.store import CatalogStore
from photo_catalog.main import main, cancel_on_interrupt

from conftest import write_file


@pytest.fixture
def library(tmp_path, fixed_metadata):
    lib = tmp_path / "lib"
    for name in ("a.jpg", "b.jpg", "c.jpg"):
        write_file(lib / "in" / name, name.encode())
    data = tmp_path / "data"
    assert main(["--data-dir", str(data), "scan", str(lib)]) == 0
    return lib, data


def cataloged_photos(data):
    with DBManager(config.get_db_path(data)) as conn:
        return CatalogStore(conn).list_photos(1)


def test_scan_then_query(library, capsys):
    lib, data = library
    assert main(["--data-dir", str(data), "query", "--root-id", "1", "--text", "b"]) == 0

    out = capsys.readouterr().out
    assert str(lib / "in" / "b.jpg") in out
    assert "Total: 1" in out


def test_dry_run_organize_moves_nothing(library):
    lib, data = library
    assert main(["--data-dir", str(data), "organize", "1", "--dry-run"]) == 0

    assert sorted(os.listdir(lib / "in")) == ["a.jpg", "b.jpg", "c.jpg"]
    assert "PLAN: " in config.get_organizer_log_path(data).read_text(encoding="utf-8")


def test_interrupted_organize_keeps_catalog_in_step(library, monkeypatch):
    lib, data = library
    real_move = shutil.move
    calls = []

    def interrupting_move(src, dst, *args, **kwargs):
        calls.append(src)
        if len(calls) == 3:
            raise KeyboardInterrupt
        return real_move(src, dst, *args, **kwargs)

    monkeypatch.setattr(shutil, "move", interrupting_move)

    assert main(["--data-dir", str(data), "organize", "1", "--yes"]) == 1

    photos = {p.file_name: p for p in cataloged_photos(data)}
    for photo in photos.values():
        assert os.path.isfile(photo.full_path), f"row points at a missing file: {photo.full_path}"
    assert photos["a.jpg"].folder_path == str(lib / "2023" / "2023-07")
    assert photos["b.jpg"].folder_path == str(lib / "2023" / "2023-07")
    assert photos["c.jpg"].folder_path == str(lib / "in")
    assert "Cancelled=True" in config.get_organizer_log_path(data).read_text(encoding="utf-8")


@pytest.mark.skipif(not hasattr(signal, "raise_signal"), reason="signal.raise_signal unavailable")
def test_interrupt_cancels_the_token_instead_of_raising():
    before = signal.getsignal(signal.SIGINT)
    token = CancellationToken()

    with cancel_on_interrupt(token):
        signal.raise_signal(signal.SIGINT)

    assert token.is_cancelled
    assert signal.getsignal(signal.SIGINT) is before
