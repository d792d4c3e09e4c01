"""
Wind SCADA - Anomaly Detection
==============================
Statistical checks over stored SCADA data, one tenant at a time.

Four checks (run concurrently, each isolated: a failing check logs and yields nothing):
  A. Performance drop   7-day vs 30-day mean power (capacity factor when rated power known)
  B. Availability       daily availability %, T5 failure hours, extended downtime from state events
  C. Curve deviation    per 1 m/s wind bin: recent (7 d) vs historical (90 d .. 7 d) mean power
  D. Data quality       24 h sample coverage and share of sentinel values

Checks are pure functions of (config, turbines, queries, tenant, now). The SQL
aggregates live behind AnomalyQueries so tests can substitute an in-memory engine.

New anomalies are deduplicated against unresolved ones of the same (turbine, type)
detected within the last 24 h, persisted, then announced through the notifier.

Usage:
  Standalone:  python anomaly_detection.py <tenant_id> [park_name]
  Via Flask:   POST /api/scada/anomalies/run
"""
import sys
import json
import logging
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta

from sqlalchemy import select, func, case, cast, Integer
from sqlalchemy.orm import sessionmaker

from database import (
    db, Turbine, ScadaAnomaly, ScadaAnomalyConfig,
    ScadaMeasurement, ScadaAvailability, ScadaStateEvent,
)
from file_types import INTERVALS_PER_DAY, POWER_FILE_TYPE
from notifications import build_summary, get_notifier

log = logging.getLogger(__name__)

# ─── Configuration ────────────────────────────────────────────────────────────

ANOMALY_TYPES = (
    'PERFORMANCE_DROP', 'LOW_AVAILABILITY', 'EXTENDED_DOWNTIME', 'CURVE_DEVIATION', 'DATA_QUALITY',
)

# Markers excluded from power / wind averages
SAMPLE_SENTINELS = (32767, 65535)
# Markers counted as invalid by the data-quality check
QUALITY_SENTINELS = (32767, 65535, 6553.5)

RECENT_DAYS          = 7
BASELINE_DAYS        = 30
CURVE_HISTORY_DAYS   = 90
CURVE_MIN_WIND_MS    = 3     # below cut-in
CURVE_MAX_WIND_MS    = 25    # above cut-out
CURVE_MIN_HIST       = 10    # samples per bin, historical window
CURVE_MIN_RECENT     = 3     # samples per bin, recent window
CURVE_MIN_BIN_SHARE  = 0.3
CURVE_MIN_BINS       = 2
T5_WARNING_HOURS     = 4
T5_CRITICAL_HOURS    = 12
INVALID_WARNING_PCT  = 10
INVALID_CRITICAL_PCT = 30
INVALID_MIN_SAMPLES  = 20
CRITICAL_FACTOR      = 1.5
DEDUP_HOURS          = 24


@dataclass
class AnomalyConfig:
    enabled: bool = True
    performance_threshold: float = 15.0       # % drop
    availability_threshold: float = 90.0      # %
    downtime_hours_threshold: int = 24        # hours
    curve_deviation_threshold: float = 20.0   # %
    data_quality_threshold: float = 80.0      # % coverage
    notify_by_email: bool = True
    notify_in_app: bool = True


CONFIG_FIELDS = tuple(AnomalyConfig.__dataclass_fields__)

TurbineInfo = namedtuple('TurbineInfo', 'id name rated_power_kw park_name')


@dataclass
class AnomalyResult:
    turbine_id: int
    turbine_name: str
    park_name: str
    type: str
    severity: str  # WARNING, CRITICAL
    message: str
    detected_at: datetime
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        d = asdict(self)
        d['detected_at'] = self.detected_at.isoformat()
        return d


DetectionRun = namedtuple('DetectionRun', 'detected created')


def _anomaly(turbine: TurbineInfo, type_, severity, message, now, details) -> AnomalyResult:
    return AnomalyResult(
        turbine_id=turbine.id,
        turbine_name=turbine.name,
        park_name=turbine.park_name,
        type=type_,
        severity=severity,
        message=message,
        detected_at=now,
        details=details,
    )


# ─── Config & Fleet ───────────────────────────────────────────────────────────

def get_config(tenant_id: str) -> AnomalyConfig:
    row = ScadaAnomalyConfig.query.filter_by(tenant_id=tenant_id).first()
    if row is None:
        return AnomalyConfig()
    return AnomalyConfig(**{name: getattr(row, name) for name in CONFIG_FIELDS})


def _validate_config(values: dict) -> dict:
    clean = {}
    for name, raw in values.items():
        if name not in CONFIG_FIELDS:
            raise ValueError(f"Unknown setting: {name}")
        if name in ('enabled', 'notify_by_email', 'notify_in_app'):
            if not isinstance(raw, bool):
                raise ValueError(f"{name} must be a boolean")
            clean[name] = raw
            continue
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise ValueError(f"{name} must be a number")
        if name == 'downtime_hours_threshold':
            if int(raw) != raw or not 1 <= raw <= 720:
                raise ValueError("downtime_hours_threshold must be a whole number of hours between 1 and 720")
            clean[name] = int(raw)
        else:
            if not 0 < raw <= 100:
                raise ValueError(f"{name} must be between 0 and 100")
            clean[name] = float(raw)
    return clean


def save_config(tenant_id: str, values: dict) -> AnomalyConfig:
    """Partial update of the tenant's thresholds; missing row is created with defaults."""
    clean = _validate_config(values)
    row = ScadaAnomalyConfig.query.filter_by(tenant_id=tenant_id).first()
    if row is None:
        row = ScadaAnomalyConfig(tenant_id=tenant_id, **asdict(AnomalyConfig()))
        db.session.add(row)
    for name, val in clean.items():
        setattr(row, name, val)
    db.session.commit()
    log.info(f"[{tenant_id}] anomaly config updated: {sorted(clean)}")
    return get_config(tenant_id)


def load_turbines(tenant_id: str, park_name: str = None) -> dict:
    q = Turbine.query.filter_by(tenant_id=tenant_id, status='ACTIVE')
    if park_name:
        q = q.filter_by(park_name=park_name)
    return {
        t.id: TurbineInfo(t.id, t.name, t.rated_power_kw, t.park_name)
        for t in q.order_by(Turbine.id).all()
    }


# ─── Query Interface ──────────────────────────────────────────────────────────

PowerWindowRow = namedtuple(
    'PowerWindowRow',
    'turbine_id avg_power_7d avg_wind_7d count_7d avg_power_30d avg_wind_30d count_30d',
)
AvailabilityRow = namedtuple('AvailabilityRow', 'turbine_id date availability_pct t1 t5')
StateEventRow = namedtuple('StateEventRow', 'turbine_id latest_running latest_event')
CurveBinRow = namedtuple(
    'CurveBinRow', 'turbine_id wind_bin avg_power_hist count_hist avg_power_recent count_recent'
)
QualityRow = namedtuple(
    'QualityRow', 'turbine_id total_records invalid_power invalid_wind null_power null_wind'
)


class AnomalyQueries:
    """Windowed aggregates the checks need. Every method returns a list of the rows above."""

    def power_windows(self, tenant_id, turbine_ids, recent_since, baseline_since):
        raise NotImplementedError

    def daily_availability(self, tenant_id, turbine_ids, since):
        raise NotImplementedError

    def state_event_summary(self, tenant_id, turbine_ids, since):
        raise NotImplementedError

    def power_curve_bins(self, tenant_id, turbine_ids, recent_since, history_since):
        raise NotImplementedError

    def quality_counts(self, tenant_id, turbine_ids, since):
        raise NotImplementedError


class SqlAnomalyQueries(AnomalyQueries):
    """
    SQL aggregates over the store. Each call opens its own short session so the
    checks can run on worker threads outside the Flask app context.
    """

    def __init__(self, engine):
        self.engine = engine
        self.Session = sessionmaker(bind=engine)

    def _fetch(self, stmt):
        with self.Session() as session:
            return session.execute(stmt).all()

    def _valid_samples(self, tenant_id, turbine_ids):
        m = ScadaMeasurement
        return (
            m.tenant_id == tenant_id,
            m.turbine_id.in_(turbine_ids),
            m.power_w.isnot(None),
            m.power_w.notin_(SAMPLE_SENTINELS),
            m.wind_speed_ms.isnot(None),
            m.wind_speed_ms.notin_(SAMPLE_SENTINELS),
        )

    def power_windows(self, tenant_id, turbine_ids, recent_since, baseline_since):
        m = ScadaMeasurement
        recent = m.timestamp >= recent_since
        stmt = (select(
                    m.turbine_id,
                    func.avg(case((recent, m.power_w))),
                    func.avg(case((recent, m.wind_speed_ms))),
                    func.count(case((recent, 1))),
                    func.avg(m.power_w),
                    func.avg(m.wind_speed_ms),
                    func.count(m.id),
                )
                .where(*self._valid_samples(tenant_id, turbine_ids), m.timestamp >= baseline_since)
                .group_by(m.turbine_id))
        return [PowerWindowRow(*row) for row in self._fetch(stmt)]

    def daily_availability(self, tenant_id, turbine_ids, since):
        a = ScadaAvailability
        stmt = (select(a.turbine_id, a.date, a.availability_pct, a.t1, a.t5)
                .where(
                    a.tenant_id == tenant_id,
                    a.turbine_id.in_(turbine_ids),
                    a.period_type == 'DAILY',
                    a.date >= since,
                )
                .order_by(a.date.desc(), a.turbine_id))
        return [AvailabilityRow(*row) for row in self._fetch(stmt)]

    def state_event_summary(self, tenant_id, turbine_ids, since):
        e = ScadaStateEvent
        stmt = (select(
                    e.turbine_id,
                    func.max(case((e.state == 0, e.timestamp))),
                    func.max(e.timestamp),
                )
                .where(e.tenant_id == tenant_id, e.turbine_id.in_(turbine_ids), e.timestamp >= since)
                .group_by(e.turbine_id))
        return [StateEventRow(*row) for row in self._fetch(stmt)]

    def _wind_bin(self):
        wind = ScadaMeasurement.wind_speed_ms
        if self.engine.dialect.name == 'sqlite':
            # CAST truncates in SQLite; equal to FLOOR for the positive speeds binned here
            return cast(wind, Integer)
        return cast(func.floor(wind), Integer)

    def power_curve_bins(self, tenant_id, turbine_ids, recent_since, history_since):
        m = ScadaMeasurement
        wind_bin = self._wind_bin().label('wind_bin')
        historical = m.timestamp < recent_since
        recent = m.timestamp >= recent_since
        stmt = (select(
                    m.turbine_id,
                    wind_bin,
                    func.avg(case((historical, m.power_w))),
                    func.count(case((historical, 1))),
                    func.avg(case((recent, m.power_w))),
                    func.count(case((recent, 1))),
                )
                .where(
                    *self._valid_samples(tenant_id, turbine_ids),
                    m.timestamp >= history_since,
                    m.wind_speed_ms >= CURVE_MIN_WIND_MS,
                    m.wind_speed_ms <= CURVE_MAX_WIND_MS,
                )
                .group_by(m.turbine_id, wind_bin)
                .order_by(m.turbine_id, wind_bin))
        return [CurveBinRow(*row) for row in self._fetch(stmt)]

    def quality_counts(self, tenant_id, turbine_ids, since):
        m = ScadaMeasurement
        stmt = (select(
                    m.turbine_id,
                    func.count(m.id),
                    func.count(case((m.power_w.in_(QUALITY_SENTINELS), 1))),
                    func.count(case((m.wind_speed_ms.in_(QUALITY_SENTINELS), 1))),
                    func.count(case((m.power_w.is_(None), 1))),
                    func.count(case((m.wind_speed_ms.is_(None), 1))),
                )
                .where(
                    m.tenant_id == tenant_id,
                    m.turbine_id.in_(turbine_ids),
                    m.source_file == POWER_FILE_TYPE,
                    m.timestamp >= since,
                )
                .group_by(m.turbine_id))
        return [QualityRow(*row) for row in self._fetch(stmt)]


# ─── Check A: Performance Drop ────────────────────────────────────────────────

def check_performance_drop(config: AnomalyConfig, turbines: dict, queries: AnomalyQueries,
                           tenant_id: str, now: datetime) -> list:
    """
    ratio = CF_7d / CF_30d when rated power and both mean wind speeds are known
            (baseline wind > 0), else mean_power_7d / mean_power_30d.
    Flag when ratio < 1 - threshold; CRITICAL when the drop >= 1.5 x threshold.
    Needs one full day of 7-day samples and seven full days of 30-day samples.
    """
    threshold = config.performance_threshold / 100
    rows = queries.power_windows(tenant_id, list(turbines),
                                 now - timedelta(days=RECENT_DAYS),
                                 now - timedelta(days=BASELINE_DAYS))
    found = []
    for row in rows:
        turbine = turbines.get(row.turbine_id)
        if turbine is None:
            continue
        if row.avg_power_7d is None or row.avg_power_30d is None:
            continue
        if row.count_30d < INTERVALS_PER_DAY * 7 or row.count_7d < INTERVALS_PER_DAY:
            continue

        rated_w = turbine.rated_power_kw * 1000 if turbine.rated_power_kw else None
        if rated_w and row.avg_wind_7d and row.avg_wind_30d and row.avg_wind_30d > 0:
            cf_recent = row.avg_power_7d / rated_w
            cf_baseline = row.avg_power_30d / rated_w
            if cf_baseline <= 0:
                continue
            ratio = cf_recent / cf_baseline
            basis = 'capacity_factor'
        else:
            if row.avg_power_30d <= 0:
                continue
            ratio = row.avg_power_7d / row.avg_power_30d
            basis = 'mean_power'

        if ratio >= 1 - threshold:
            continue

        drop_pct = round((1 - ratio) * 100)
        severity = 'CRITICAL' if drop_pct >= config.performance_threshold * CRITICAL_FACTOR else 'WARNING'
        found.append(_anomaly(
            turbine, 'PERFORMANCE_DROP', severity,
            f"Performance drop of {drop_pct}% detected. 7-day average well below 30-day baseline.",
            now,
            {
                "avg_power_7d": round(row.avg_power_7d),
                "avg_power_30d": round(row.avg_power_30d),
                "drop_percent": drop_pct,
                "basis": basis,
                "data_points_7d": row.count_7d,
                "data_points_30d": row.count_30d,
            },
        ))
    return found


# ─── Check B: Availability & Downtime ─────────────────────────────────────────

def check_availability(config: AnomalyConfig, turbines: dict, queries: AnomalyQueries,
                       tenant_id: str, now: datetime) -> list:
    found = []
    ids = list(turbines)
    threshold = config.availability_threshold

    for row in queries.daily_availability(tenant_id, ids, now - timedelta(days=2)):
        turbine = turbines.get(row.turbine_id)
        if turbine is None:
            continue
        day = row.date.date().isoformat()
        t5_hours = (row.t5 or 0) / 3600

        if row.availability_pct is not None and row.availability_pct < threshold:
            severity = 'CRITICAL' if row.availability_pct < threshold * 0.5 else 'WARNING'
            found.append(_anomaly(
                turbine, 'LOW_AVAILABILITY', severity,
                f"Availability {row.availability_pct:.1f}% on {day} is below the threshold of {threshold:g}%.",
                now,
                {
                    "availability_pct": row.availability_pct,
                    "threshold": threshold,
                    "t1_hours": round((row.t1 or 0) / 3600, 1),
                    "t5_hours": round(t5_hours, 1),
                    "date": day,
                },
            ))

        if t5_hours >= T5_WARNING_HOURS:
            severity = 'CRITICAL' if t5_hours >= T5_CRITICAL_HOURS else 'WARNING'
            found.append(_anomaly(
                turbine, 'LOW_AVAILABILITY', severity,
                f"Equipment failure time (T5) of {t5_hours:.1f} hours on {day}.",
                now,
                {"t5_hours": round(t5_hours, 1), "date": day},
            ))

    found.extend(_check_extended_downtime(config, turbines, queries, tenant_id, now))
    return found


def _check_extended_downtime(config, turbines, queries, tenant_id, now) -> list:
    """State 0 is 'running'. Lookback window is twice the downtime threshold."""
    limit = timedelta(hours=config.downtime_hours_threshold)
    lookback_hours = config.downtime_hours_threshold * 2
    found = []

    for row in queries.state_event_summary(tenant_id, list(turbines),
                                           now - timedelta(hours=lookback_hours)):
        turbine = turbines.get(row.turbine_id)
        if turbine is None or row.latest_event is None:
            continue

        if row.latest_running is None:
            found.append(_anomaly(
                turbine, 'EXTENDED_DOWNTIME', 'CRITICAL',
                f"No running state in the last {lookback_hours} hours.",
                now,
                {"downtime_hours_threshold": config.downtime_hours_threshold,
                 "lookback_hours": lookback_hours},
            ))
            continue

        down = row.latest_event - row.latest_running
        if down > limit:
            hours = round(down.total_seconds() / 3600, 1)
            found.append(_anomaly(
                turbine, 'EXTENDED_DOWNTIME', 'CRITICAL',
                f"Turbine not running for {hours} hours "
                f"(threshold: {config.downtime_hours_threshold}h).",
                now,
                {"downtime_hours": hours,
                 "threshold": config.downtime_hours_threshold,
                 "last_running_at": row.latest_running.isoformat()},
            ))
    return found


# ─── Check C: Power Curve Deviation ───────────────────────────────────────────

def check_curve_deviation(config: AnomalyConfig, turbines: dict, queries: AnomalyQueries,
                          tenant_id: str, now: datetime) -> list:
    """
    Per bin: deviation = (hist - recent) / hist. A turbine is flagged when at least
    30% of its qualifying bins and at least two bins deviate beyond the threshold.
    """
    threshold = config.curve_deviation_threshold / 100
    rows = queries.power_curve_bins(tenant_id, list(turbines),
                                    now - timedelta(days=RECENT_DAYS),
                                    now - timedelta(days=CURVE_HISTORY_DAYS))

    per_turbine = {}
    for row in rows:
        if row.count_hist < CURVE_MIN_HIST or row.count_recent < CURVE_MIN_RECENT:
            continue
        if row.avg_power_hist is None or row.avg_power_recent is None or row.avg_power_hist <= 0:
            continue

        deviation = (row.avg_power_hist - row.avg_power_recent) / row.avg_power_hist
        entry = per_turbine.setdefault(
            row.turbine_id, {"total": 0, "deviating": 0, "max": 0.0, "worst_bin": None}
        )
        entry["total"] += 1
        if deviation > threshold:
            entry["deviating"] += 1
            if deviation > entry["max"]:
                entry["max"] = deviation
                entry["worst_bin"] = int(row.wind_bin)

    found = []
    for turbine_id, dev in per_turbine.items():
        turbine = turbines.get(turbine_id)
        if turbine is None:
            continue
        share = dev["deviating"] / dev["total"] if dev["total"] else 0
        if share < CURVE_MIN_BIN_SHARE or dev["deviating"] < CURVE_MIN_BINS:
            continue

        max_pct = round(dev["max"] * 100)
        worst = dev["worst_bin"]
        severity = 'CRITICAL' if max_pct >= config.curve_deviation_threshold * CRITICAL_FACTOR else 'WARNING'
        found.append(_anomaly(
            turbine, 'CURVE_DEVIATION', severity,
            f"Power curve deviates in {dev['deviating']} of {dev['total']} wind speed bins "
            f"(max {max_pct}% at {worst}-{worst + 1} m/s).",
            now,
            {
                "deviating_bins": dev["deviating"],
                "total_bins": dev["total"],
                "max_deviation_percent": max_pct,
                "worst_wind_speed_bin": worst,
                "threshold": config.curve_deviation_threshold,
            },
        ))
    return found


# ─── Check D: Data Quality ────────────────────────────────────────────────────

def check_data_quality(config: AnomalyConfig, turbines: dict, queries: AnomalyQueries,
                       tenant_id: str, now: datetime) -> list:
    threshold = config.data_quality_threshold
    expected = INTERVALS_PER_DAY
    found = []

    for row in queries.quality_counts(tenant_id, list(turbines), now - timedelta(hours=24)):
        turbine = turbines.get(row.turbine_id)
        if turbine is None:
            continue

        coverage = row.total_records / expected * 100
        if coverage < threshold:
            severity = 'CRITICAL' if coverage < threshold * 0.5 else 'WARNING'
            found.append(_anomaly(
                turbine, 'DATA_QUALITY', severity,
                f"Data coverage only {coverage:.1f}% ({row.total_records}/{expected} samples in 24h). "
                f"Threshold: {threshold:g}%.",
                now,
                {"coverage_percent": round(coverage, 1),
                 "total_records": row.total_records,
                 "expected_records": expected,
                 "threshold": threshold},
            ))

        invalid = row.invalid_power + row.invalid_wind
        invalid_pct = invalid / (row.total_records * 2) * 100 if row.total_records else 0
        if invalid_pct > INVALID_WARNING_PCT and row.total_records >= INVALID_MIN_SAMPLES:
            found.append(_anomaly(
                turbine, 'DATA_QUALITY',
                'CRITICAL' if invalid_pct > INVALID_CRITICAL_PCT else 'WARNING',
                f"{invalid} invalid values ({invalid_pct:.1f}%) in the last 24 hours.",
                now,
                {"invalid_power_count": row.invalid_power,
                 "invalid_wind_count": row.invalid_wind,
                 "null_power_count": row.null_power,
                 "null_wind_count": row.null_wind,
                 "total_records": row.total_records,
                 "invalid_percent": round(invalid_pct, 1)},
            ))
    return found


CHECKS = (
    ('performance', check_performance_drop),
    ('availability', check_availability),
    ('curve', check_curve_deviation),
    ('quality', check_data_quality),
)


# ─── Main Orchestration ───────────────────────────────────────────────────────

def _run_check(name, check, config, turbines, queries, tenant_id, now) -> list:
    try:
        return check(config, turbines, queries, tenant_id, now)
    except Exception as exc:
        log.error(f"[{tenant_id}] {name} check failed: {exc}", exc_info=True)
        return []


def _recent_unresolved_keys(tenant_id: str, now: datetime) -> set:
    rows = (db.session.query(ScadaAnomaly.turbine_id, ScadaAnomaly.type)
            .filter(
                ScadaAnomaly.tenant_id == tenant_id,
                ScadaAnomaly.detected_at >= now - timedelta(hours=DEDUP_HOURS),
                ScadaAnomaly.resolved_at.is_(None),
            )
            .all())
    return {(turbine_id, type_) for turbine_id, type_ in rows}


def _send_notifications(tenant_id, anomalies, config, notifier):
    summary = build_summary(anomalies)
    channels = (('in_app', config.notify_in_app), ('email', config.notify_by_email))
    for channel, enabled in channels:
        if not enabled:
            continue
        try:
            notifier.notify(tenant_id, summary, channel)
        except Exception as exc:
            log.error(f"[{tenant_id}] {channel} notification failed: {exc}")


def run_anomaly_detection(tenant_id: str, park_name: str = None, queries: AnomalyQueries = None,
                          notifier=None, now: datetime = None, max_workers: int = 4) -> DetectionRun:
    """
    Run all checks for a tenant (optionally one park). Returns every detected
    anomaly and the subset that was newly persisted.
    """
    config = get_config(tenant_id)
    if not config.enabled:
        log.info(f"[{tenant_id}] anomaly detection disabled")
        return DetectionRun([], [])

    turbines = load_turbines(tenant_id, park_name)
    if not turbines:
        log.info(f"[{tenant_id}] no active turbines (park={park_name})")
        return DetectionRun([], [])

    now = now or datetime.utcnow()
    if queries is None:
        queries = SqlAnomalyQueries(db.engine)
    if notifier is None:
        notifier = get_notifier()

    # release the request session's connection before the workers open their own
    db.session.commit()

    log.info(f"[{tenant_id}] anomaly detection over {len(turbines)} turbines (park={park_name})")
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = [
            (name, pool.submit(_run_check, name, check, config, turbines, queries, tenant_id, now))
            for name, check in CHECKS
        ]
        results = {name: future.result() for name, future in futures}

    detected = [a for name, _ in CHECKS for a in results[name]]
    log.info(f"[{tenant_id}] detected {len(detected)} anomalies: "
             + ', '.join(f"{name}={len(results[name])}" for name, _ in CHECKS))

    existing = _recent_unresolved_keys(tenant_id, now)
    fresh = [a for a in detected if (a.turbine_id, a.type) not in existing]
    if not fresh:
        log.info(f"[{tenant_id}] no new anomalies (all duplicates of unresolved ones)")
        return DetectionRun(detected, [])

    db.session.add_all([
        ScadaAnomaly(
            tenant_id=tenant_id,
            turbine_id=a.turbine_id,
            type=a.type,
            severity=a.severity,
            message=a.message,
            details=a.details,
            detected_at=a.detected_at,
        )
        for a in fresh
    ])
    db.session.commit()

    _send_notifications(tenant_id, fresh, config, notifier)
    return DetectionRun(detected, fresh)


# ─── Anomaly Records ──────────────────────────────────────────────────────────

def list_anomalies(tenant_id: str, unresolved_only: bool = False, turbine_id: int = None,
                   limit: int = 100) -> list:
    q = ScadaAnomaly.query.filter_by(tenant_id=tenant_id)
    if unresolved_only:
        q = q.filter(ScadaAnomaly.resolved_at.is_(None))
    if turbine_id is not None:
        q = q.filter_by(turbine_id=turbine_id)
    return q.order_by(ScadaAnomaly.detected_at.desc(), ScadaAnomaly.id.desc()).limit(limit).all()


def resolve_anomaly(tenant_id: str, anomaly_id: int, note: str = None, now: datetime = None):
    """Mark an anomaly resolved. Returns None when it does not belong to the tenant."""
    anomaly = ScadaAnomaly.query.filter_by(id=anomaly_id, tenant_id=tenant_id).first()
    if anomaly is None:
        return None
    if anomaly.resolved_at is None:
        anomaly.resolved_at = now or datetime.utcnow()
    if note:
        anomaly.resolution_note = note
    db.session.commit()
    return anomaly


def anomaly_to_dict(anomaly: ScadaAnomaly) -> dict:
    return {
        "id": anomaly.id,
        "turbine_id": anomaly.turbine_id,
        "turbine_name": anomaly.turbine.name if anomaly.turbine else None,
        "type": anomaly.type,
        "severity": anomaly.severity,
        "message": anomaly.message,
        "details": anomaly.details,
        "detected_at": anomaly.detected_at.isoformat(),
        "resolved_at": anomaly.resolved_at.isoformat() if anomaly.resolved_at else None,
        "resolution_note": anomaly.resolution_note,
    }


# ─── Standalone Entry Point ───────────────────────────────────────────────────

if __name__ == "__main__":
    from dotenv import load_dotenv
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format='[SCADA] %(asctime)s %(levelname)s %(message)s',
        datefmt='%H:%M:%S',
    )
    if len(sys.argv) < 2:
        print("usage: python anomaly_detection.py <tenant_id> [park_name]")
        sys.exit(2)

    from app import create_app
    app = create_app()
    with app.app_context():
        run = run_anomaly_detection(sys.argv[1], park_name=sys.argv[2] if len(sys.argv) > 2 else None)
        print(json.dumps({
            "detected": len(run.detected),
            "created": [a.to_dict() for a in run.created],
        }, indent=2))
