"""
Configuration constants for the photo catalog.
"""
import os
from pathlib import Path
from typing import Optional

# --- File Type Definitions ---
SUPPORTED_PHOTO_EXTS = {'.jpg', '.jpeg', '.png', '.heic'}

# --- Scan Pruning ("whole computer safe mode") ---
# Only matched against the first path segment below the scan root
EXCLUDED_TOP_LEVEL_DIR_NAMES = {
    '$recycle.bin',
    'config.msi',
    'msocache',
    'perflogs',
    'program files',
    'program files (x86)',
    'programdata',
    'recovery',
    'system volume information',
    'windows',
}

# Matched against every segment below the scan root
EXCLUDED_SEGMENT_NAMES = {'.git', '.nuget', 'appdata', 'node_modules'}

# --- Metadata Parsing ---
DATE_TAGS = [
    'EXIF DateTimeOriginal',
    'EXIF DateTimeDigitized',
    'Image DateTime',
]
WIDTH_TAGS = ['EXIF ExifImageWidth', 'Image ImageWidth']
HEIGHT_TAGS = ['EXIF ExifImageLength', 'Image ImageLength']

# --- Hashing & Performance ---
HASH_CHUNK_SIZE = 1024 * 1024  # 1 MB chunks for reading
HASH_MAX_WORKERS = 4  # Concurrent file hashes; more mostly adds disk contention

# Catalog writes are committed in batches of this many mutations
SCAN_SAVE_BATCH_SIZE = 100
HASH_SAVE_BATCH_SIZE = 100
ORGANIZER_SAVE_BATCH_SIZE = 50

# --- Queries ---
DEFAULT_PAGE_SIZE = 120
MIN_PAGE_SIZE = 20
MAX_PAGE_SIZE = 500
MAX_SEARCH_TOKENS = 8
SEARCH_TOKEN_SEPARATORS = r"[\s,;|/\\\-_.]+"
RECENT_DAYS = 30

# --- Organization ---
FOLDER_PATTERN = "{year:04d}/{year:04d}-{month:02d}"
ORGANIZER_REASON = "Sort to Year/Month folders"
MAX_APPLY_ERRORS = 50

# --- Tags & subjects ---
MAX_SUBJECT_IDS = 100

# --- Storage Locations ---
DATA_DIR_ENV = "PHOTO_CATALOG_HOME"
DB_FILE_NAME = "photo_catalog.db"
ORGANIZER_LOG_FILE_NAME = "organizer_plan.log"
APP_LOG_FILE_NAME = "photo_catalog.log"


def get_data_dir(base_dir: Optional[Path] = None) -> Path:
    """Returns the directory holding the catalog DB and logs."""
    if base_dir is not None:
        return Path(base_dir)
    env = os.environ.get(DATA_DIR_ENV)
    if env:
        return Path(env)
    return Path.home() / ".photo_catalog"


def get_db_path(base_dir: Optional[Path] = None) -> Path:
    return get_data_dir(base_dir) / DB_FILE_NAME


def get_organizer_log_path(base_dir: Optional[Path] = None) -> Path:
    return get_data_dir(base_dir) / ORGANIZER_LOG_FILE_NAME


def get_app_log_path(base_dir: Optional[Path] = None) -> Path:
    return get_data_dir(base_dir) / APP_LOG_FILE_NAME


def ensure_data_dir(base_dir: Optional[Path] = None) -> Path:
    path = get_data_dir(base_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path
