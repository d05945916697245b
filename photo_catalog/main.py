import argparse
import logging
import signal
import sys
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from tqdm import tqdm

from . import config
from .cancellation import CancellationToken
from .database.db import DBManager
from .database.store import CatalogStore
from .duplicates.detector import DuplicateDetector
from .exceptions import PhotoCatalogError, OperationCancelledError
from .models import ScanOptions, PhotoQueryFilter, PhotoSortOption, DateTakenSource
from .organization.editor import PhotoEditService
from .organization.planner import OrganizerPlanner
from .query.engine import PhotoQueryEngine
from .scanning.scanner import ScanService


def setup_logging(log_file: Path, verbose: bool):
    """Sets up logging to both console and the app log file."""
    log_level = logging.DEBUG if verbose else logging.INFO
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Silence chatty libraries
    logging.getLogger("exifread").setLevel(logging.ERROR)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def parse_date(value: str) -> datetime:
    """argparse type for YYYY-MM-DD; the date is read as local midnight."""
    try:
        return datetime.strptime(value, "%Y-%m-%d").astimezone()
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected YYYY-MM-DD, got {value!r}")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Photo Catalog: index, search and organize photo folders")

    p.add_argument("--data-dir", type=Path, default=None,
                   help=f"Directory for the catalog and logs (default: ${config.DATA_DIR_ENV} or ~/.photo_catalog)")
    p.add_argument("--db", type=Path, default=None, help="Custom path for SQLite DB")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("roots", help="List registered scan roots")

    s = sub.add_parser("scan", help="Register a folder (if needed) and scan it")
    s.add_argument("root", type=Path, help="Folder to scan")
    s.add_argument("--duplicates", action="store_true", help="Hash files during the scan for duplicate detection")
    s.add_argument("--safe", action="store_true",
                   help="Whole-computer safe mode: skip system, hidden and linked directories")

    h = sub.add_parser("hash", help="Hash files that have no content hash yet")
    h.add_argument("root_id", type=int)

    d = sub.add_parser("dupes", help="List groups of byte-identical photos")
    d.add_argument("root_id", type=int)
    d.add_argument("--compute", action="store_true", help="Fill in missing hashes first")

    q = sub.add_parser("query", help="Search the catalog")
    q.add_argument("--root-id", type=int, default=None)
    q.add_argument("--text", default=None, help="Free text over names, notes, tags and subjects")
    q.add_argument("--person", default=None)
    q.add_argument("--animal", default=None)
    q.add_argument("--from", dest="from_date", type=parse_date, default=None, help="YYYY-MM-DD")
    q.add_argument("--to", dest="to_date", type=parse_date, default=None, help="YYYY-MM-DD")
    q.add_argument("--source", choices=[s.value for s in DateTakenSource], default=None)
    q.add_argument("--folder", default=None, help="Folder subpath relative to the root (needs --root-id)")
    q.add_argument("--album", default=None, help="Album key, e.g. recent, year:2023, month:2023-07")
    q.add_argument("--sort", choices=[s.value for s in PhotoSortOption],
                   default=PhotoSortOption.DATE_TAKEN_NEWEST.value)
    q.add_argument("--page", type=int, default=1)
    q.add_argument("--page-size", type=int, default=config.DEFAULT_PAGE_SIZE)

    a = sub.add_parser("albums", help="List smart albums with counts")
    a.add_argument("--root-id", type=int, default=None)

    o = sub.add_parser("organize", help="Sort a root into Year/Year-Month folders")
    o.add_argument("root_id", type=int)
    o.add_argument("--dry-run", action="store_true", help="Only write the plan; do not move anything")
    o.add_argument("--yes", action="store_true", help="Apply without asking for confirmation")

    t = sub.add_parser("tag", help="Replace the tags of a photo")
    t.add_argument("photo_id", type=int)
    t.add_argument("tags", nargs="*")

    r = sub.add_parser("rename", help="Rename a photo within its folder")
    r.add_argument("photo_id", type=int)
    r.add_argument("name")

    rp = sub.add_parser("repair", help="Find a photo that was moved outside the catalog")
    rp.add_argument("photo_id", type=int)

    return p


@contextmanager
def cancel_on_interrupt(cancel_token: CancellationToken):
    """
    Routes Ctrl-C to cancel_token while a long operation runs, so it stops at
    its next checkpoint and commits or rolls back cleanly. Prompts outside
    this block still get a plain KeyboardInterrupt.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def on_interrupt(signum, frame):
        logging.warning("Interrupt received; stopping at the next checkpoint...")
        cancel_token.cancel()

    previous = signal.signal(signal.SIGINT, on_interrupt)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def make_progress_printer(bar: tqdm):
    def on_progress(progress):
        bar.total = progress.found
        bar.n = progress.indexed + progress.updated + progress.skipped
        bar.set_postfix(new=progress.indexed, upd=progress.updated, skip=progress.skipped, refresh=False)
        bar.refresh()
    return on_progress


def run_command(args, store: CatalogStore, data_dir: Path, cancel_token: CancellationToken) -> int:
    if args.command == "roots":
        for root in ScanService(store).get_scan_roots():
            last = root.last_scan_utc.isoformat() if root.last_scan_utc else "never"
            print(f"{root.id}\t{root.root_path}\tfiles={root.total_files_last_scan}\t"
                  f"dupes={'on' if root.enable_duplicate_detection else 'off'}\tlast_scan={last}")
        return 0

    if args.command == "scan":
        service = ScanService(store)
        root = service.get_or_create_scan_root(str(args.root), enable_duplicate_detection=args.duplicates)
        options = ScanOptions.whole_computer_safe_defaults() if args.safe else ScanOptions()
        with tqdm(desc="Scanning", unit="file") as bar, cancel_on_interrupt(cancel_token):
            result = service.scan(root.id, options, progress=make_progress_printer(bar), cancel_token=cancel_token)
        print(f"Found={result.found} Indexed={result.indexed} Updated={result.updated} "
              f"Skipped={result.skipped} Removed={result.removed} DirsSkipped={result.directories_skipped}")
        return 0

    if args.command in ("hash", "dupes"):
        detector = DuplicateDetector(store)
        if args.command == "hash" or args.compute:
            with tqdm(desc="Hashing", unit="file") as bar, cancel_on_interrupt(cancel_token):
                detector.compute_missing_hashes(args.root_id, make_progress_printer(bar), cancel_token)
        if args.command == "dupes":
            for group in detector.get_duplicate_groups(args.root_id):
                print(f"{group.count}\t{group.sha256}")
        return 0

    if args.command == "query":
        flt = PhotoQueryFilter(
            scan_root_id=args.root_id,
            search_text=args.text,
            person_search_text=args.person,
            animal_search_text=args.animal,
            from_date_utc=args.from_date,
            to_date_utc=args.to_date,
            date_source=DateTakenSource(args.source) if args.source else None,
            folder_subpath=args.folder,
            album_key=args.album,
            sort_by=PhotoSortOption(args.sort),
            page=args.page,
            page_size=args.page_size,
        )
        with cancel_on_interrupt(cancel_token):
            result = PhotoQueryEngine(store).query(flt, cancel_token)
        for photo in result.items:
            taken = photo.date_taken.isoformat() if photo.date_taken else "-"
            print(f"{photo.id}\t{taken}\t{photo.full_path}")
        print(f"Total: {result.total_count}")
        return 0

    if args.command == "albums":
        for album in PhotoQueryEngine(store).get_smart_albums(args.root_id):
            print(f"{album.count}\t{album.key}\t{album.name}")
        return 0

    if args.command == "organize":
        planner = OrganizerPlanner(store, config.get_organizer_log_path(data_dir))
        with cancel_on_interrupt(cancel_token):
            plan = planner.create_plan(args.root_id, cancel_token)
        for item in plan.items:
            print(f"{item.source_path} => {item.destination_path}")
        print(f"Evaluated={plan.total_evaluated} Moves={plan.total_moves}")

        if args.dry_run or not plan.items:
            return 0
        if not args.yes:
            answer = input(f"Move {plan.total_moves} files? [y/N] ").strip().lower()
            if answer not in ("y", "yes"):
                logging.info("Organize aborted by user.")
                return 1

        with cancel_on_interrupt(cancel_token):
            result = planner.apply_plan(args.root_id, plan.items, cancel_token, show_progress=True)
        for error in result.errors:
            print(f"  {error}")
        print(f"Attempted={result.attempted} Moved={result.moved} Skipped={result.skipped} Failed={result.failed}")
        return 0 if result.failed == 0 else 2

    editor = PhotoEditService(store)

    if args.command == "tag":
        photo = editor.replace_tags(args.photo_id, args.tags)
    elif args.command == "rename":
        photo = editor.rename_photo(args.photo_id, args.name)
    else:
        with cancel_on_interrupt(cancel_token):
            photo = editor.repair_photo_location(args.photo_id, cancel_token)

    if photo is None:
        logging.error(f"Photo {args.photo_id} not found or could not be located.")
        return 1
    print(f"{photo.id}\t{photo.full_path}\ttags={','.join(sorted(photo.tags))}")
    return 0


def main(argv=None):
    args = build_parser().parse_args(argv)

    data_dir = config.ensure_data_dir(args.data_dir)
    setup_logging(config.get_app_log_path(data_dir), args.verbose)

    db_path = args.db if args.db else config.get_db_path(data_dir)
    cancel_token = CancellationToken()

    try:
        with DBManager(db_path) as conn:
            return run_command(args, CatalogStore(conn), data_dir, cancel_token)
    except KeyboardInterrupt:
        cancel_token.cancel()
        logging.warning("Operation cancelled by user.")
        return 1
    except OperationCancelledError:
        logging.warning("Operation cancelled.")
        return 1
    except PhotoCatalogError as e:
        logging.error(str(e))
        return 1
    except Exception:
        logging.exception("Fatal error.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
