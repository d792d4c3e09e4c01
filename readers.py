"""
Wind SCADA - Record Reader Interface
====================================
The binary decoder for vendor files lives outside this code base. This module
defines the typed records it must produce and the hook through which a
deployment registers it.

Conventions every reader follows:
  - timestamps and dates are naive UTC datetimes
  - plant_no is the vendor plant number within the site
  - numeric fields are float/int or None; vendor "no data" markers
    (see file_types.INVALID_VALUES) may be passed through or nulled
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from flask import current_app


# ─── Records ──────────────────────────────────────────────────────────────────

@dataclass
class WsdRecord:
    timestamp: datetime
    plant_no: int
    wind_speed_ms: Optional[float] = None
    power_w: Optional[float] = None
    rotor_rpm: Optional[float] = None
    operating_hours: Optional[float] = None
    wind_direction: Optional[float] = None


@dataclass
class UidRecord:
    timestamp: datetime
    plant_no: int
    mean_voltages_v: tuple = (None, None, None)   # U1, U2, U3
    mean_currents_a: tuple = (None, None, None)   # I1, I2, I3
    mean_cos_phi: Optional[float] = None
    mean_frequency_hz: Optional[float] = None
    cumulative_active_energy_produced: Optional[float] = None


@dataclass
class AvailabilityRecord:
    """Time budgets in seconds."""
    date: datetime
    plant_no: int
    t1: Optional[int] = None  # production
    t2: Optional[int] = None  # waiting for wind
    t3: Optional[int] = None  # environmental stop
    t4: Optional[int] = None  # routine maintenance
    t5: Optional[int] = None  # equipment failure
    t6: Optional[int] = None  # other downtime
    t5_1: Optional[int] = None
    t5_2: Optional[int] = None
    t5_3: Optional[int] = None


@dataclass
class StateSummaryRecord:
    date: datetime
    plant_no: int
    state: Optional[int] = None
    sub_state: Optional[int] = None
    is_fault: bool = False
    frequency: Optional[int] = None
    duration: Optional[int] = None


@dataclass
class WarningSummaryRecord:
    date: datetime
    plant_no: int
    warn: Optional[int] = None
    sub_warn: Optional[int] = None
    is_warn_msg: bool = False
    frequency: Optional[int] = None
    duration: Optional[int] = None


@dataclass
class StateEventRecord:
    timestamp: datetime
    plant_no: int
    state: Optional[int] = None
    sub_state: Optional[int] = None
    is_service: bool = False
    is_fault: bool = False
    wind_speed_at_event: Optional[float] = None


@dataclass
class WarningEventRecord:
    timestamp: datetime
    plant_no: int
    warn: Optional[int] = None
    sub_warn: Optional[int] = None
    is_warn_msg: bool = False


@dataclass
class TextEventRecord:
    timestamp: datetime
    plant_no: int
    info: str = ''


@dataclass
class PeakTimestamp:
    """When a peak/low value occurred within a summary period."""
    hour: Optional[int] = None
    minute: Optional[int] = None
    second: Optional[int] = None
    date: Optional[datetime] = None


@dataclass
class WindSummaryRecord:
    date: datetime
    plant_no: int
    sample_count: Optional[int] = None

    mean_wind_speed_ms: Optional[float] = None
    peak_wind_speed_ms: Optional[float] = None
    low_wind_speed_ms: Optional[float] = None

    mean_rotor_rpm: Optional[float] = None
    peak_rotor_rpm: Optional[float] = None
    low_rotor_rpm: Optional[float] = None

    mean_power_kw: Optional[float] = None
    peak_power_kw: Optional[float] = None
    low_power_kw: Optional[float] = None

    mean_reactive_power_kvar: Optional[float] = None
    peak_reactive_power_kvar: Optional[float] = None
    low_reactive_power_kvar: Optional[float] = None

    mean_wind_direction: Optional[float] = None

    cumulative_operating_hours: Optional[float] = None
    cumulative_energy_kwh: Optional[float] = None
    cumulative_work_minutes: Optional[int] = None

    mean_power_wind_kw: Optional[float] = None
    mean_power_technical_kw: Optional[float] = None
    mean_power_forced_kw: Optional[float] = None
    mean_power_external_kw: Optional[float] = None

    mean_blade_angle: Optional[float] = None

    mean_rainfall: Optional[float] = None
    peak_rainfall: Optional[float] = None
    low_rainfall: Optional[float] = None
    mean_visibility_range: Optional[float] = None
    peak_visibility_range: Optional[float] = None
    low_visibility_range: Optional[float] = None
    mean_brightness: Optional[float] = None
    mean_lightning_current: Optional[float] = None
    mean_ice_detection: Optional[float] = None
    mean_air_pressure: Optional[float] = None
    mean_air_humidity: Optional[float] = None

    peak_timestamps: dict = field(default_factory=dict)  # {measure: PeakTimestamp}


# ─── Reader Hook ──────────────────────────────────────────────────────────────

class ReaderNotConfigured(RuntimeError):
    pass


class RecordReader:
    """Decodes one vendor file into a list of the records above."""

    def read(self, file_path: str, file_type: str) -> list:
        raise NotImplementedError


def register_reader(app, reader: RecordReader):
    app.extensions['scada_reader'] = reader


def get_reader() -> RecordReader:
    reader = current_app.extensions.get('scada_reader')
    if reader is None:
        raise ReaderNotConfigured("No SCADA record reader registered for this application")
    return reader
