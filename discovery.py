"""
Wind SCADA - File Discovery
===========================
Walks the per-site directory tree and decodes the date encoded in
vendor filenames (YYYYMMDD.ext).

  20240615.wsd  -> daily,   2024-06-15
  20240600.avm  -> monthly, 2024-06-01
  20240000.wsy  -> yearly,  2024-01-01
  00000000.xxx  -> alltime, no date

Names that do not decode are never dropped by the incremental filter.
"""
import os
import re
import logging
from collections import namedtuple
from datetime import datetime
from typing import Optional

from file_types import FILE_TYPES, get_file_type

log = logging.getLogger(__name__)

_DATE_NAME = re.compile(r'^\d{8}$')
_YEAR_DIR = re.compile(r'^\d{4}$')
_MONTH_DIR = re.compile(r'^\d{2}$')

FileTypeScan = namedtuple('FileTypeScan', 'file_type file_count extension file_location')


class LocationNotFound(FileNotFoundError):
    pass


# ─── Filename Dates ───────────────────────────────────────────────────────────

def _basename(file_path: str) -> str:
    return os.path.splitext(os.path.basename(file_path))[0]


def classify_filename(file_path: str) -> Optional[str]:
    """'daily' | 'monthly' | 'yearly' | 'alltime', or None when the name is undecodable."""
    name = _basename(file_path)
    if name == '00000000':
        return 'alltime'
    if decode_filename_date(file_path) is None:
        return None
    month, day = int(name[4:6]), int(name[6:8])
    if month == 0 and day == 0:
        return 'yearly'
    if day == 0:
        return 'monthly'
    return 'daily'


def decode_filename_date(file_path: str) -> Optional[datetime]:
    """
    Date encoded in a vendor filename, as a naive UTC midnight datetime.
    Returns None for the alltime marker and for anything undecodable.
    """
    name = _basename(file_path)
    if not _DATE_NAME.match(name) or name == '00000000':
        return None

    year, month, day = int(name[0:4]), int(name[4:6]), int(name[6:8])
    if year == 0:
        return None
    try:
        if month == 0 and day == 0:
            return datetime(year, 1, 1)
        if day == 0:
            return datetime(year, month, 1)
        return datetime(year, month, day)
    except ValueError:
        # month 13, Feb 30, ...
        return None


def day_start(dt: datetime) -> datetime:
    return datetime(dt.year, dt.month, dt.day)


def filter_new_files(files: list, high_water: Optional[datetime]) -> list:
    """
    Keep files whose encoded date is strictly after the high-water day.
    Files without a decodable date are always kept.
    """
    if high_water is None:
        return list(files)
    cutoff = day_start(high_water)
    kept = []
    for fp in files:
        file_date = decode_filename_date(fp)
        if file_date is None or file_date > cutoff:
            kept.append(fp)
    return kept


# ─── Directory Scanning ───────────────────────────────────────────────────────

def location_accessible(path: str) -> bool:
    return os.path.isdir(path)


def is_safe_path(value: str) -> bool:
    """No parent-directory hops and no NUL bytes."""
    return '..' not in value and '\0' not in value


def is_safe_location_code(code: str) -> bool:
    """A site code is a single directory name below the base path."""
    return bool(code) and is_safe_path(code) and '/' not in code and '\\' not in code


def is_within(path: str, root: str) -> bool:
    """True when `path` resolves to `root` or somewhere below it (symlinks followed)."""
    path = os.path.realpath(path)
    root = os.path.realpath(root)
    try:
        return os.path.commonpath([path, root]) == root
    except ValueError:
        return False


def _matching(dir_path: str, ext: str) -> list:
    suffix = '.' + ext.lower()
    try:
        entries = os.listdir(dir_path)
    except OSError:
        return []
    return [
        os.path.join(dir_path, f) for f in sorted(entries)
        if f.lower().endswith(suffix) and os.path.isfile(os.path.join(dir_path, f))
    ]


def _subdirs(dir_path: str, pattern) -> list:
    try:
        entries = os.listdir(dir_path)
    except OSError:
        return []
    return [
        os.path.join(dir_path, e) for e in sorted(entries)
        if pattern.match(e) and os.path.isdir(os.path.join(dir_path, e))
    ]


def discover_files(location_path: str, file_type: str) -> list:
    """Sorted, deduplicated absolute paths of `file_type` files under a site directory."""
    config = get_file_type(file_type)
    ext = config.extension
    files = []

    if not location_accessible(location_path):
        return files

    location_path = os.path.abspath(location_path)
    year_dirs = _subdirs(location_path, _YEAR_DIR)

    if config.file_location == 'daily':
        for year_path in year_dirs:
            for month_path in _subdirs(year_path, _MONTH_DIR):
                files.extend(_matching(month_path, ext))

    elif config.file_location == 'monthly':
        for year_path in year_dirs:
            files.extend(_matching(year_path, ext))
            for month_path in _subdirs(year_path, _MONTH_DIR):
                files.extend(_matching(month_path, ext))

    elif config.file_location == 'yearly':
        files.extend(_matching(location_path, ext))
        for year_path in year_dirs:
            files.extend(_matching(year_path, ext))

    elif config.file_location == 'alltime':
        files.extend(_matching(location_path, ext))

    return sorted(set(files))


def scan_all_file_types(base_path: str, location_code: str) -> list:
    """File counts per kind for one site; kinds without files are omitted."""
    location_path = os.path.join(base_path, location_code)
    if not location_accessible(location_path):
        raise LocationNotFound(f"Location directory not found: {location_path}")

    results = []
    for code, config in FILE_TYPES.items():
        files = discover_files(location_path, code)
        if files:
            results.append(FileTypeScan(code, len(files), config.extension, config.file_location))
    log.debug(f"Scanned {location_path}: {len(results)} file types with data")
    return results
