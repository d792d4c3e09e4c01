"""
Wind SCADA - Batch Ingestion Writers
====================================
One writer per record family. All share the same algorithm:

  1. split records into batches of BATCH_SIZE
  2. translate each record to a row; records with an unmapped plant number
     are skipped and their plant number remembered
  3. INSERT ... ON CONFLICT DO NOTHING on the family's natural key
       imported += rows written
       skipped  += rows in batch - rows written   (duplicates)
  4. a batch that raises is rolled back and counted as failed in full

Writers are registered per family in WRITERS and looked up through
file_types.FILE_TYPES[kind].family.
"""
import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from database import (
    db, insert_skip_duplicates,
    ScadaMeasurement, ScadaAvailability, ScadaStateSummary, ScadaWarningSummary,
    ScadaStateEvent, ScadaWarningEvent, ScadaTextEvent, ScadaWindSummary,
)
from file_types import get_file_type, is_valid_value, finite_or_none

log = logging.getLogger(__name__)

BATCH_SIZE = 1000


@dataclass
class WriteResult:
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    unmapped_plants: set = field(default_factory=set)

    def merge(self, other: 'WriteResult'):
        self.imported += other.imported
        self.skipped += other.skipped
        self.failed += other.failed
        self.unmapped_plants |= other.unmapped_plants


def _mean_of_valid(values):
    valid = [float(v) for v in values if is_valid_value(v)]
    if not valid:
        return None
    return sum(valid) / len(valid)


def _int_or_zero(val) -> int:
    return int(val) if val is not None else 0


# ─── Base Writer ──────────────────────────────────────────────────────────────

class BatchWriter:
    model = None

    def to_row(self, rec, turbine_id: int, tenant_id: str, file_type: str) -> dict:
        raise NotImplementedError

    def write(self, records: list, turbine_mappings: dict, tenant_id: str,
              file_type: str, batch_size: int = BATCH_SIZE) -> WriteResult:
        result = WriteResult()

        for start in range(0, len(records), batch_size):
            batch = records[start:start + batch_size]
            rows = []
            for rec in batch:
                turbine_id = turbine_mappings.get(rec.plant_no)
                if turbine_id is None:
                    result.unmapped_plants.add(rec.plant_no)
                    result.skipped += 1
                    continue
                rows.append(self.to_row(rec, turbine_id, tenant_id, file_type))

            if not rows:
                continue

            try:
                written = insert_skip_duplicates(self.model, rows)
                db.session.commit()
            except SQLAlchemyError as exc:
                db.session.rollback()
                result.failed += len(rows)
                log.error(f"{file_type}: batch of {len(rows)} rows failed: {exc}")
                continue

            result.imported += written
            result.skipped += len(rows) - written

        return result


# ─── Family Writers ───────────────────────────────────────────────────────────

class PowerWriter(BatchWriter):
    """WSD: wind speed, active power (W), rotor, operating hours, direction."""
    model = ScadaMeasurement

    def to_row(self, rec, turbine_id, tenant_id, file_type):
        return {
            "turbine_id": turbine_id,
            "tenant_id": tenant_id,
            "timestamp": rec.timestamp,
            "source_file": file_type,
            "wind_speed_ms": finite_or_none(rec.wind_speed_ms),
            "power_w": finite_or_none(rec.power_w),
            "rotor_rpm": finite_or_none(rec.rotor_rpm),
            "operating_hours": finite_or_none(rec.operating_hours),
            "wind_direction": finite_or_none(rec.wind_direction),
            "voltage_v": None,
            "current_a": None,
            "power_factor": None,
            "frequency_hz": None,
            "meter_reading_kwh": None,
        }


class ElectricalWriter(BatchWriter):
    """UID: phase voltages/currents averaged over valid phases."""
    model = ScadaMeasurement

    def to_row(self, rec, turbine_id, tenant_id, file_type):
        return {
            "turbine_id": turbine_id,
            "tenant_id": tenant_id,
            "timestamp": rec.timestamp,
            "source_file": file_type,
            "wind_speed_ms": None,
            "power_w": None,
            "rotor_rpm": None,
            "operating_hours": None,
            "wind_direction": None,
            "voltage_v": _mean_of_valid(rec.mean_voltages_v or ()),
            "current_a": _mean_of_valid(rec.mean_currents_a or ()),
            "power_factor": finite_or_none(rec.mean_cos_phi),
            "frequency_hz": finite_or_none(rec.mean_frequency_hz),
            "meter_reading_kwh": finite_or_none(rec.cumulative_active_energy_produced),
        }


def availability_pct(t1, t2, t3, t4, t5, t6):
    """Producing share of the whole period, 3 decimals; None for an empty period."""
    total = t1 + t2 + t3 + t4 + t5 + t6
    if total <= 0:
        return None
    return round(t1 / total * 100, 3)


class AvailabilityWriter(BatchWriter):
    model = ScadaAvailability

    def to_row(self, rec, turbine_id, tenant_id, file_type):
        t = {name: _int_or_zero(getattr(rec, name))
             for name in ('t1', 't2', 't3', 't4', 't5', 't6', 't5_1', 't5_2', 't5_3')}
        return {
            "turbine_id": turbine_id,
            "tenant_id": tenant_id,
            "date": rec.date,
            "period_type": get_file_type(file_type).period_type,
            "plant_no": rec.plant_no,
            **t,
            "availability_pct": availability_pct(t['t1'], t['t2'], t['t3'], t['t4'], t['t5'], t['t6']),
            "source_file": file_type,
        }


class StateSummaryWriter(BatchWriter):
    model = ScadaStateSummary

    def to_row(self, rec, turbine_id, tenant_id, file_type):
        return {
            "turbine_id": turbine_id,
            "tenant_id": tenant_id,
            "date": rec.date,
            "plant_no": rec.plant_no,
            "state": _int_or_zero(rec.state),
            "sub_state": _int_or_zero(rec.sub_state),
            "is_fault": bool(rec.is_fault),
            "frequency": _int_or_zero(rec.frequency),
            "duration": _int_or_zero(rec.duration),
            "source_file": file_type,
        }


class WarningSummaryWriter(BatchWriter):
    model = ScadaWarningSummary

    def to_row(self, rec, turbine_id, tenant_id, file_type):
        return {
            "turbine_id": turbine_id,
            "tenant_id": tenant_id,
            "date": rec.date,
            "plant_no": rec.plant_no,
            "warn": _int_or_zero(rec.warn),
            "sub_warn": _int_or_zero(rec.sub_warn),
            "is_warn_msg": bool(rec.is_warn_msg),
            "frequency": _int_or_zero(rec.frequency),
            "duration": _int_or_zero(rec.duration),
            "source_file": file_type,
        }


class StateEventWriter(BatchWriter):
    model = ScadaStateEvent

    def to_row(self, rec, turbine_id, tenant_id, file_type):
        return {
            "turbine_id": turbine_id,
            "tenant_id": tenant_id,
            "timestamp": rec.timestamp,
            "plant_no": rec.plant_no,
            "state": _int_or_zero(rec.state),
            "sub_state": _int_or_zero(rec.sub_state),
            "is_service": bool(rec.is_service),
            "is_fault": bool(rec.is_fault),
            "wind_speed_at_event": finite_or_none(rec.wind_speed_at_event),
            "source_file": file_type,
        }


class WarningEventWriter(BatchWriter):
    model = ScadaWarningEvent

    def to_row(self, rec, turbine_id, tenant_id, file_type):
        return {
            "turbine_id": turbine_id,
            "tenant_id": tenant_id,
            "timestamp": rec.timestamp,
            "plant_no": rec.plant_no,
            "warn": _int_or_zero(rec.warn),
            "sub_warn": _int_or_zero(rec.sub_warn),
            "is_warn_msg": bool(rec.is_warn_msg),
            "source_file": file_type,
        }


class TextEventWriter(BatchWriter):
    model = ScadaTextEvent

    def to_row(self, rec, turbine_id, tenant_id, file_type):
        return {
            "turbine_id": turbine_id,
            "tenant_id": tenant_id,
            "timestamp": rec.timestamp,
            "plant_no": rec.plant_no,
            "info": (rec.info or '')[:255],
            "source_file": file_type,
        }


def serialize_peak_timestamps(peaks: dict):
    """{measure: PeakTimestamp} -> JSON-safe dict with ISO-8601 dates; None when empty."""
    if not peaks:
        return None
    out = {}
    for key, val in peaks.items():
        entry = {}
        for part in ('hour', 'minute', 'second'):
            v = getattr(val, part, None)
            if v is not None:
                entry[part] = v
        when = getattr(val, 'date', None)
        if when is not None:
            entry['date'] = when.isoformat()
        out[key] = entry
    return out


# reader field -> column
_WIND_SUMMARY_COLUMNS = {
    'mean_wind_speed_ms': 'mean_wind_speed',
    'peak_wind_speed_ms': 'peak_wind_speed',
    'low_wind_speed_ms': 'low_wind_speed',
    'mean_rotor_rpm': 'mean_rotor_rpm',
    'peak_rotor_rpm': 'peak_rotor_rpm',
    'low_rotor_rpm': 'low_rotor_rpm',
    'mean_power_kw': 'mean_power_kw',
    'peak_power_kw': 'peak_power_kw',
    'low_power_kw': 'low_power_kw',
    'mean_reactive_power_kvar': 'mean_reactive_power',
    'peak_reactive_power_kvar': 'peak_reactive_power',
    'low_reactive_power_kvar': 'low_reactive_power',
    'mean_wind_direction': 'mean_wind_direction',
    'cumulative_operating_hours': 'cumulative_operating_hours',
    'cumulative_energy_kwh': 'cumulative_energy_kwh',
    'mean_power_wind_kw': 'mean_wind_power',
    'mean_power_technical_kw': 'mean_tech_power',
    'mean_power_forced_kw': 'mean_feed_mgmt_power',
    'mean_power_external_kw': 'mean_external_power',
    'mean_blade_angle': 'mean_blade_angle',
    'mean_rainfall': 'mean_rain',
    'peak_rainfall': 'peak_rain',
    'low_rainfall': 'low_rain',
    'mean_visibility_range': 'mean_visibility',
    'peak_visibility_range': 'peak_visibility',
    'low_visibility_range': 'low_visibility',
    'mean_brightness': 'mean_brightness',
    'mean_lightning_current': 'mean_lightning_ice',
    'mean_ice_detection': 'mean_ice_detection',
    'mean_air_pressure': 'mean_air_pressure',
    'mean_air_humidity': 'mean_air_humidity',
}


class WindSummaryWriter(BatchWriter):
    model = ScadaWindSummary

    def to_row(self, rec, turbine_id, tenant_id, file_type):
        row = {
            "turbine_id": turbine_id,
            "tenant_id": tenant_id,
            "date": rec.date,
            "period_type": get_file_type(file_type).period_type,
            "plant_no": rec.plant_no,
            "sample_count": rec.sample_count,
            "work_minutes": rec.cumulative_work_minutes,
            "peak_timestamps": serialize_peak_timestamps(rec.peak_timestamps),
            "source_file": file_type,
        }
        for attr, column in _WIND_SUMMARY_COLUMNS.items():
            row[column] = finite_or_none(getattr(rec, attr))
        return row


WRITERS = {
    'power': PowerWriter(),
    'electrical': ElectricalWriter(),
    'availability': AvailabilityWriter(),
    'state_summary': StateSummaryWriter(),
    'warning_summary': WarningSummaryWriter(),
    'state_event': StateEventWriter(),
    'warning_event': WarningEventWriter(),
    'text_event': TextEventWriter(),
    'wind_summary': WindSummaryWriter(),
}


def writer_for(file_type: str) -> BatchWriter:
    return WRITERS[get_file_type(file_type).family]


def write_records(records: list, turbine_mappings: dict, tenant_id: str, file_type: str) -> WriteResult:
    return writer_for(file_type).write(records, turbine_mappings, tenant_id, file_type)
