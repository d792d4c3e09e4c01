"""
Wind SCADA - Record Kinds
=========================
Central table of the fifteen vendor file kinds.

Each kind declares:
  extension      file extension used by the vendor (lowercase)
  file_location  where files live in the site directory tree
                   daily:   {site}/{YYYY}/{MM}/{YYYYMMDD}.{ext}
                   monthly: {site}/{YYYY}/{YYYYMM}00.{ext}  (also inside month folders)
                   yearly:  {site}/{YYYY}0000.{ext}         (root and year folder)
                   alltime: {site}/00000000.{ext}
  period_type    period covered by summary/availability files (None for samples/events)
  family         writer family that stores the records
"""
import math
from collections import namedtuple

# ─── Configuration ────────────────────────────────────────────────────────────

FileTypeConfig = namedtuple('FileTypeConfig', 'code extension file_location period_type family')

FILE_LOCATIONS = ('daily', 'monthly', 'yearly', 'alltime')
PERIOD_TYPES = ('DAILY', 'WEEKLY', 'MONTHLY', 'YEARLY')

FILE_TYPES = {
    # 10-minute samples
    'WSD': FileTypeConfig('WSD', 'wsd', 'daily',   None,      'power'),
    'UID': FileTypeConfig('UID', 'uid', 'daily',   None,      'electrical'),

    # Availability time budgets
    'AVR': FileTypeConfig('AVR', 'avr', 'daily',   'DAILY',   'availability'),
    'AVW': FileTypeConfig('AVW', 'avw', 'monthly', 'WEEKLY',  'availability'),
    'AVM': FileTypeConfig('AVM', 'avm', 'monthly', 'MONTHLY', 'availability'),
    'AVY': FileTypeConfig('AVY', 'avy', 'yearly',  'YEARLY',  'availability'),

    # Monthly state / warning summaries
    'SSM': FileTypeConfig('SSM', 'ssm', 'monthly', None,      'state_summary'),
    'SWM': FileTypeConfig('SWM', 'swm', 'monthly', None,      'warning_summary'),

    # Event logs
    'PES': FileTypeConfig('PES', 'pes', 'daily',   None,      'state_event'),
    'PEW': FileTypeConfig('PEW', 'pew', 'daily',   None,      'warning_event'),
    'PET': FileTypeConfig('PET', 'pet', 'daily',   None,      'text_event'),

    # Wind / meteorological summaries
    'WSR': FileTypeConfig('WSR', 'wsr', 'monthly', 'DAILY',   'wind_summary'),
    'WSW': FileTypeConfig('WSW', 'wsw', 'monthly', 'WEEKLY',  'wind_summary'),
    'WSM': FileTypeConfig('WSM', 'wsm', 'monthly', 'MONTHLY', 'wind_summary'),
    'WSY': FileTypeConfig('WSY', 'wsy', 'yearly',  'YEARLY',  'wind_summary'),
}

# The raw power kind drives monthly aggregation and sample-level high-water dates
POWER_FILE_TYPE = 'WSD'

# Auto-import order
AUTO_IMPORT_FILE_TYPES = [
    'WSD', 'UID', 'AVR', 'AVW', 'AVM', 'AVY', 'PES', 'PEW', 'PET', 'SSM', 'SWM',
    'WSR', 'WSW', 'WSM', 'WSY',
]

# Vendor "no data" markers
INVALID_VALUES = (32767, 65535, 6553.5, 65.535)

# 10-minute sampling
INTERVAL_MINUTES = 10
INTERVALS_PER_HOUR = 60 // INTERVAL_MINUTES   # 6
INTERVALS_PER_DAY = 24 * INTERVALS_PER_HOUR   # 144


class UnknownFileType(ValueError):
    pass


def get_file_type(code: str) -> FileTypeConfig:
    try:
        return FILE_TYPES[code]
    except KeyError:
        raise UnknownFileType(f"Unknown SCADA file type: {code!r}") from None


def is_valid_file_type(code) -> bool:
    return code in FILE_TYPES


def is_valid_value(val) -> bool:
    """False for None, non-numbers, non-finite values and vendor sentinels."""
    if val is None or isinstance(val, bool):
        return False
    try:
        num = float(val)
    except (TypeError, ValueError):
        return False
    return math.isfinite(num) and num not in INVALID_VALUES


def finite_or_none(val):
    """Pass-through for storage: numbers kept as-is (sentinels included), NaN/inf -> None."""
    if val is None:
        return None
    num = float(val)
    return num if math.isfinite(num) else None
