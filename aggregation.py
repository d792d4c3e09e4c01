"""
Wind SCADA - Monthly Aggregation
Converts 10-minute power samples (W) into monthly energy (kWh) with a coverage figure.

  energy_kwh   = Σ power_w × (interval_min / 60) / 1000     over valid samples
  expected     = days_in_month × 24 × (60 / interval_min)
  coverage_pct = samples / expected × 100
"""
import calendar
import logging
from collections import namedtuple
from datetime import datetime

import numpy as np

from database import db, ScadaMeasurement, TurbineProduction
from file_types import INTERVAL_MINUTES, POWER_FILE_TYPE

log = logging.getLogger(__name__)

MonthlyAggregation = namedtuple(
    'MonthlyAggregation', 'total_energy_kwh sample_count expected_sample_count coverage_pct'
)


def month_bounds(year: int, month: int):
    start = datetime(year, month, 1)
    end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
    return start, end


def compute_energy(power_w, interval_minutes: int = INTERVAL_MINUTES):
    """(energy_kwh, valid_sample_count) for an iterable of power samples in W."""
    arr = np.array([np.nan if p is None else p for p in power_w], dtype=float)
    valid = arr[np.isfinite(arr) & (arr >= 0)]
    energy = float(np.sum(valid * (interval_minutes / 60.0) / 1000.0)) if valid.size else 0.0
    return round(energy, 3), int(valid.size)


def aggregate_monthly_production(turbine_id: int, year: int, month: int,
                                 interval_minutes: int = INTERVAL_MINUTES) -> MonthlyAggregation:
    start, end = month_bounds(year, month)
    rows = (db.session.query(ScadaMeasurement.power_w)
            .filter(
                ScadaMeasurement.turbine_id == turbine_id,
                ScadaMeasurement.source_file == POWER_FILE_TYPE,
                ScadaMeasurement.timestamp >= start,
                ScadaMeasurement.timestamp < end,
            )
            .all())

    total_kwh, sample_count = compute_energy((r[0] for r in rows), interval_minutes)
    days = calendar.monthrange(year, month)[1]
    expected = days * 24 * (60 // interval_minutes)
    coverage = round(sample_count / expected * 100, 2) if expected else 0.0

    return MonthlyAggregation(total_kwh, sample_count, expected, coverage)


def write_to_turbine_production(turbine_id: int, tenant_id: str, year: int, month: int,
                                total_kwh: float) -> TurbineProduction:
    """
    Upsert keyed on (turbine, year, month, tenant). Always resets to SCADA/DRAFT,
    also over a previously confirmed value.
    """
    now = datetime.utcnow()
    row = TurbineProduction.query.filter_by(
        turbine_id=turbine_id, tenant_id=tenant_id, year=year, month=month,
    ).first()

    if row is None:
        row = TurbineProduction(
            turbine_id=turbine_id, tenant_id=tenant_id, year=year, month=month,
            production_kwh=total_kwh, source='SCADA', status='DRAFT',
            created_at=now, updated_at=now,
        )
        db.session.add(row)
    else:
        row.production_kwh = total_kwh
        row.source = 'SCADA'
        row.status = 'DRAFT'
        row.updated_at = now

    db.session.commit()
    log.info(f"Turbine {turbine_id} {year}-{month:02d}: {total_kwh} kWh (SCADA, DRAFT)")
    return row
