import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, List, Set, Iterable

from . import config


class DateTakenSource(str, Enum):
    EXIF = 'exif'
    FILE_CREATED = 'file_created'
    FILE_MODIFIED = 'file_modified'
    UNKNOWN = 'unknown'


class PhotoSortOption(str, Enum):
    DATE_TAKEN_NEWEST = 'date_taken_newest'
    DATE_TAKEN_OLDEST = 'date_taken_oldest'
    DATE_ADDED_NEWEST = 'date_added_newest'
    DATE_ADDED_OLDEST = 'date_added_oldest'
    FILE_SIZE_LARGEST = 'file_size_largest'
    FILE_SIZE_SMALLEST = 'file_size_smallest'
    NAME_ASCENDING = 'name_ascending'
    NAME_DESCENDING = 'name_descending'


@dataclass
class ScanRoot:
    root_path: str
    enable_duplicate_detection: bool = False
    id: Optional[int] = None
    last_scan_utc: Optional[datetime] = None
    total_files_last_scan: int = 0
    notes: Optional[str] = None


@dataclass
class PhotoAsset:
    """
    One cataloged image file. All datetimes are timezone-aware UTC.

    file_name, extension and folder_path are always derived from full_path;
    use set_path() instead of assigning full_path directly.
    """
    scan_root_id: int
    full_path: str
    file_name: str = ''
    extension: str = ''
    folder_path: str = ''
    file_size_bytes: int = 0

    date_taken: Optional[datetime] = None
    date_taken_source: DateTakenSource = DateTakenSource.UNKNOWN
    camera_make: Optional[str] = None
    camera_model: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    sha256: Optional[str] = None

    file_created_utc: Optional[datetime] = None
    file_last_write_utc: Optional[datetime] = None
    indexed_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None

    notes: Optional[str] = None
    tags: Set[str] = field(default_factory=set)
    people_ids: Set[str] = field(default_factory=set)
    animal_ids: Set[str] = field(default_factory=set)

    id: Optional[int] = None

    def __post_init__(self):
        if self.full_path and not self.file_name:
            self.set_path(self.full_path)

    def set_path(self, full_path: str):
        """Points the asset at a new absolute path and re-derives the name fields."""
        normalized = os.path.abspath(full_path)
        self.full_path = normalized
        self.file_name = os.path.basename(normalized)
        self.extension = normalize_extension(os.path.splitext(normalized)[1])
        self.folder_path = os.path.dirname(normalized)


@dataclass
class PhotoMetadata:
    """Result of a best-effort metadata extraction."""
    date_taken_utc: Optional[datetime] = None
    date_taken_source: DateTakenSource = DateTakenSource.UNKNOWN
    camera_make: Optional[str] = None
    camera_model: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass
class ScanOptions:
    exclude_likely_system_and_program_directories: bool = False
    skip_hidden_and_system_directories: bool = False
    skip_reparse_points: bool = False

    @classmethod
    def whole_computer_safe_defaults(cls) -> 'ScanOptions':
        """Options for unattended full-drive scans."""
        return cls(
            exclude_likely_system_and_program_directories=True,
            skip_hidden_and_system_directories=True,
            skip_reparse_points=True,
        )


@dataclass(frozen=True)
class ScanProgress:
    found: int = 0
    indexed: int = 0
    updated: int = 0
    skipped: int = 0
    removed: int = 0
    current_file: str = ''
    elapsed: timedelta = timedelta(0)


@dataclass
class ScanResult:
    found: int = 0
    indexed: int = 0
    updated: int = 0
    skipped: int = 0
    removed: int = 0
    directories_skipped: int = 0
    duration: timedelta = timedelta(0)


@dataclass(frozen=True)
class DuplicateGroup:
    sha256: str
    count: int


@dataclass(frozen=True)
class SmartAlbum:
    key: str
    name: str
    count: int


@dataclass
class PhotoQueryFilter:
    scan_root_id: Optional[int] = None
    search_text: Optional[str] = None
    person_search_text: Optional[str] = None
    animal_search_text: Optional[str] = None
    from_date_utc: Optional[datetime] = None
    to_date_utc: Optional[datetime] = None
    date_source: Optional[DateTakenSource] = None
    folder_subpath: Optional[str] = None
    album_key: Optional[str] = None
    sort_by: PhotoSortOption = PhotoSortOption.DATE_TAKEN_NEWEST
    page: int = 1
    page_size: int = config.DEFAULT_PAGE_SIZE


@dataclass
class PhotoQueryResult:
    items: List[PhotoAsset] = field(default_factory=list)
    total_count: int = 0


@dataclass
class OrganizerPlanItem:
    photo_id: int
    source_path: str
    destination_path: str
    reason: str = config.ORGANIZER_REASON


@dataclass
class OrganizerPlanResult:
    generated_utc: datetime
    total_evaluated: int = 0
    total_moves: int = 0
    items: List[OrganizerPlanItem] = field(default_factory=list)


@dataclass
class OrganizerApplyResult:
    attempted: int = 0
    moved: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


# --- Normalization helpers ---

def normalize_extension(ext: str) -> str:
    ext = (ext or '').strip().lower()
    if not ext:
        return ''
    return ext if ext.startswith('.') else f'.{ext}'


def normalize_tag(tag: str) -> str:
    """Collapses inner whitespace and lowercases. Commas are reserved as separators."""
    return ' '.join((tag or '').replace(',', ' ').split()).lower()


def normalize_identifier(value: str) -> str:
    """'Aunt  May' -> 'aunt_may'. Identifiers never contain separators or spaces."""
    parts = [p for p in re.split(r"[\s,;:/\\]+", value or '') if p]
    return '_'.join(parts).lower()


def normalize_tags(tags: Iterable[str]) -> Set[str]:
    return {t for t in (normalize_tag(x) for x in tags) if t}


def normalize_identifiers(ids: Iterable[str]) -> Set[str]:
    result: Set[str] = set()
    for raw in ids:
        norm = normalize_identifier(raw)
        if norm and norm not in result:
            if len(result) >= config.MAX_SUBJECT_IDS:
                break
            result.add(norm)
    return result
