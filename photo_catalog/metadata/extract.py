import logging
import os
from datetime import datetime, UTC
from pathlib import Path
from typing import Optional, Tuple, Union, Any

import exifread
from PIL import Image
from pillow_heif import register_heif_opener

from .. import config
from ..models import PhotoMetadata, DateTakenSource

# Lets Pillow read HEIC headers for dimensions
register_heif_opener()

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def stat_times(stat_result: os.stat_result) -> Tuple[datetime, datetime]:
    """
    Returns (created_utc, modified_utc) from a stat result.
    st_birthtime is missing on most Linux filesystems; st_ctime stands in there.
    """
    created_ts = getattr(stat_result, 'st_birthtime', None)
    if created_ts is None:
        created_ts = stat_result.st_ctime
    created = datetime.fromtimestamp(created_ts, UTC)
    modified = datetime.fromtimestamp(stat_result.st_mtime, UTC)
    return created, modified


class MetadataExtractor:
    """
    Best-effort metadata for photo files.

    Strategies:
      - Capture date, camera make/model and EXIF dimensions: 'exifread'.
      - Dimensions fallback: Pillow header read (HEIC via pillow-heif).
      - Date fallback: file created time, then last write time, then UNKNOWN.

    extract() never raises; a file that cannot be read at all comes back with
    an UNKNOWN date source.
    """

    def extract(self, path: Union[str, Path]) -> PhotoMetadata:
        path = Path(path)
        result = PhotoMetadata()

        try:
            with path.open('rb') as f:
                # details=False skips MakerNotes and thumbnails
                tags = exifread.process_file(f, details=False)

            dt = self._parse_exif_date(tags)
            if dt is not None:
                # EXIF times carry no zone; treat them as local capture time
                result.date_taken_utc = dt.astimezone(UTC)
                result.date_taken_source = DateTakenSource.EXIF

            result.camera_make = self._tag_text(tags, 'Image Make')
            result.camera_model = self._tag_text(tags, 'Image Model')
            result.width = self._tag_int(tags, config.WIDTH_TAGS)
            result.height = self._tag_int(tags, config.HEIGHT_TAGS)
        except Exception as e:
            logging.debug(f"ExifRead failed for {path}: {e}")

        if result.width is None or result.height is None:
            width, height = self._image_size(path)
            result.width = result.width or width
            result.height = result.height or height

        if result.date_taken_utc is None:
            self._apply_file_time_fallback(path, result)

        return result

    # --- Internal Extraction Helpers ---

    def _image_size(self, path: Path) -> Tuple[Optional[int], Optional[int]]:
        try:
            # Image.open only parses the header; pixel data is never decoded here
            with Image.open(path) as im:
                return im.width, im.height
        except Exception as e:
            logging.debug(f"Failed to get image size for {path}: {e}")
            return None, None

    def _apply_file_time_fallback(self, path: Path, result: PhotoMetadata):
        try:
            created, modified = stat_times(path.stat())
        except OSError as e:
            logging.debug(f"Cannot stat {path} for date fallback: {e}")
            result.date_taken_source = DateTakenSource.UNKNOWN
            return

        if self._is_usable_timestamp(created):
            result.date_taken_utc = created
            result.date_taken_source = DateTakenSource.FILE_CREATED
        elif self._is_usable_timestamp(modified):
            result.date_taken_utc = modified
            result.date_taken_source = DateTakenSource.FILE_MODIFIED
        else:
            result.date_taken_source = DateTakenSource.UNKNOWN

    def _is_usable_timestamp(self, value: datetime) -> bool:
        return value > _EPOCH

    def _parse_exif_date(self, tags) -> Optional[datetime]:
        """Helper to parse standard EXIF date strings from exifread."""
        for tag in config.DATE_TAGS:
            if tag in tags:
                try:
                    # EXIF format is usually "YYYY:MM:DD HH:MM:SS"
                    dt_str = str(tags[tag]).strip().replace(':', '-', 2)
                    return datetime.strptime(dt_str[:19], "%Y-%m-%d %H:%M:%S")
                except ValueError:
                    continue
        return None

    def _tag_text(self, tags, name: str) -> Optional[str]:
        if name not in tags:
            return None
        text = str(tags[name]).strip().strip('\x00').strip()
        return text or None

    def _tag_int(self, tags, names) -> Optional[int]:
        for name in names:
            if name not in tags:
                continue
            tag: Any = tags[name]
            values = getattr(tag, 'values', None)
            try:
                value = int(values[0]) if values else int(str(tag))
            except (TypeError, ValueError, IndexError):
                continue
            if value > 0:
                return value
        return None
