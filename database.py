"""
Wind SCADA - Database Models
PostgreSQL (production) / SQLite (local, tests) via Flask-SQLAlchemy
"""
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.dialects import postgresql, sqlite

db = SQLAlchemy()


# ─── Fleet & Mapping ──────────────────────────────────────────────────────────

class Turbine(db.Model):
    __tablename__ = 'turbines'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(64), nullable=False)
    park_name = db.Column(db.String(128), nullable=False, default='')
    make = db.Column(db.String(64), nullable=True)
    model = db.Column(db.String(64), nullable=True)
    rated_power_kw = db.Column(db.Float, nullable=True)
    status = db.Column(db.String(16), default='ACTIVE')  # ACTIVE, INACTIVE

    mappings = db.relationship('ScadaTurbineMapping', backref='turbine', lazy='dynamic')


class ScadaTurbineMapping(db.Model):
    """Vendor plant number at a site -> internal turbine id."""
    __tablename__ = 'scada_turbine_mappings'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    location_code = db.Column(db.String(64), nullable=False)
    plant_no = db.Column(db.Integer, nullable=False)
    turbine_id = db.Column(db.Integer, db.ForeignKey('turbines.id'), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default='ACTIVE')  # ACTIVE, INACTIVE

    auto_import_enabled = db.Column(db.Boolean, nullable=False, default=False)
    auto_import_interval = db.Column(db.String(16), nullable=False, default='DAILY')  # HOURLY, DAILY, WEEKLY
    auto_import_path = db.Column(db.String(512), nullable=True)
    last_auto_import = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'location_code', 'plant_no', name='uq_mapping_plant'),
    )


# ─── Import Bookkeeping ───────────────────────────────────────────────────────

class ScadaImportLog(db.Model):
    """One row per (tenant, site, file type) import run. Sole source of resumability."""
    __tablename__ = 'scada_import_logs'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    location_code = db.Column(db.String(64), nullable=False)
    file_type = db.Column(db.String(8), nullable=False)
    status = db.Column(db.String(16), nullable=False, default='RUNNING')  # RUNNING, SUCCESS, PARTIAL, FAILED

    files_total = db.Column(db.Integer, nullable=False, default=0)
    files_processed = db.Column(db.Integer, nullable=False, default=0)
    records_imported = db.Column(db.Integer, nullable=False, default=0)
    records_skipped = db.Column(db.Integer, nullable=False, default=0)
    records_failed = db.Column(db.Integer, nullable=False, default=0)
    last_processed_date = db.Column(db.DateTime, nullable=True)
    error_details = db.Column(db.JSON, nullable=True)

    started_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.Index('ix_import_log_key', 'tenant_id', 'location_code', 'file_type', 'status'),
    )


class ScadaAutoImportLog(db.Model):
    __tablename__ = 'scada_auto_import_logs'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default='RUNNING')
    started_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)
    files_found = db.Column(db.Integer, nullable=False, default=0)
    files_imported = db.Column(db.Integer, nullable=False, default=0)
    files_skipped = db.Column(db.Integer, nullable=False, default=0)
    location_results = db.Column(db.JSON, nullable=True)
    errors = db.Column(db.JSON, nullable=True)
    summary = db.Column(db.Text, nullable=True)


# ─── Measurement Families ─────────────────────────────────────────────────────

class ScadaMeasurement(db.Model):
    """10-minute samples from WSD (power) and UID (electrical) files."""
    __tablename__ = 'scada_measurements'
    id = db.Column(db.Integer, primary_key=True)
    turbine_id = db.Column(db.Integer, db.ForeignKey('turbines.id'), nullable=False)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    timestamp = db.Column(db.DateTime, nullable=False)
    source_file = db.Column(db.String(8), nullable=False)

    # WSD
    wind_speed_ms = db.Column(db.Float)
    power_w = db.Column(db.Float)
    rotor_rpm = db.Column(db.Float)
    operating_hours = db.Column(db.Float)
    wind_direction = db.Column(db.Float)

    # UID
    voltage_v = db.Column(db.Float)
    current_a = db.Column(db.Float)
    power_factor = db.Column(db.Float)
    frequency_hz = db.Column(db.Float)
    meter_reading_kwh = db.Column(db.Float)

    __table_args__ = (
        db.UniqueConstraint('turbine_id', 'timestamp', 'source_file', name='uq_measurement'),
        db.Index('ix_measurement_tenant_ts', 'tenant_id', 'turbine_id', 'timestamp'),
    )


class ScadaAvailability(db.Model):
    """Time budgets t1..t6 in seconds (AVR/AVW/AVM/AVY)."""
    __tablename__ = 'scada_availability'
    id = db.Column(db.Integer, primary_key=True)
    turbine_id = db.Column(db.Integer, db.ForeignKey('turbines.id'), nullable=False)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    date = db.Column(db.DateTime, nullable=False)
    period_type = db.Column(db.String(8), nullable=False)  # DAILY, WEEKLY, MONTHLY, YEARLY
    plant_no = db.Column(db.Integer, nullable=False)
    t1 = db.Column(db.Integer, nullable=False, default=0)  # production
    t2 = db.Column(db.Integer, nullable=False, default=0)  # waiting for wind
    t3 = db.Column(db.Integer, nullable=False, default=0)  # environmental stop
    t4 = db.Column(db.Integer, nullable=False, default=0)  # routine maintenance
    t5 = db.Column(db.Integer, nullable=False, default=0)  # equipment failure
    t6 = db.Column(db.Integer, nullable=False, default=0)  # other downtime
    t5_1 = db.Column(db.Integer, nullable=False, default=0)
    t5_2 = db.Column(db.Integer, nullable=False, default=0)
    t5_3 = db.Column(db.Integer, nullable=False, default=0)
    availability_pct = db.Column(db.Float, nullable=True)
    source_file = db.Column(db.String(8), nullable=False)

    __table_args__ = (
        db.UniqueConstraint('turbine_id', 'date', 'source_file', 'plant_no', name='uq_availability'),
    )


class ScadaStateSummary(db.Model):
    __tablename__ = 'scada_state_summaries'
    id = db.Column(db.Integer, primary_key=True)
    turbine_id = db.Column(db.Integer, db.ForeignKey('turbines.id'), nullable=False)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    date = db.Column(db.DateTime, nullable=False)
    plant_no = db.Column(db.Integer, nullable=False)
    state = db.Column(db.Integer, nullable=False, default=0)
    sub_state = db.Column(db.Integer, nullable=False, default=0)
    is_fault = db.Column(db.Boolean, nullable=False, default=False)
    frequency = db.Column(db.Integer, nullable=False, default=0)
    duration = db.Column(db.Integer, nullable=False, default=0)  # seconds
    source_file = db.Column(db.String(8), nullable=False)

    __table_args__ = (
        db.UniqueConstraint('turbine_id', 'date', 'source_file', 'plant_no', 'state', 'sub_state',
                            name='uq_state_summary'),
    )


class ScadaWarningSummary(db.Model):
    __tablename__ = 'scada_warning_summaries'
    id = db.Column(db.Integer, primary_key=True)
    turbine_id = db.Column(db.Integer, db.ForeignKey('turbines.id'), nullable=False)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    date = db.Column(db.DateTime, nullable=False)
    plant_no = db.Column(db.Integer, nullable=False)
    warn = db.Column(db.Integer, nullable=False, default=0)
    sub_warn = db.Column(db.Integer, nullable=False, default=0)
    is_warn_msg = db.Column(db.Boolean, nullable=False, default=False)
    frequency = db.Column(db.Integer, nullable=False, default=0)
    duration = db.Column(db.Integer, nullable=False, default=0)
    source_file = db.Column(db.String(8), nullable=False)

    __table_args__ = (
        db.UniqueConstraint('turbine_id', 'date', 'source_file', 'plant_no', 'warn', 'sub_warn',
                            name='uq_warning_summary'),
    )


class ScadaStateEvent(db.Model):
    __tablename__ = 'scada_state_events'
    id = db.Column(db.Integer, primary_key=True)
    turbine_id = db.Column(db.Integer, db.ForeignKey('turbines.id'), nullable=False)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    timestamp = db.Column(db.DateTime, nullable=False)
    plant_no = db.Column(db.Integer, nullable=False)
    state = db.Column(db.Integer, nullable=False, default=0)  # 0 = running
    sub_state = db.Column(db.Integer, nullable=False, default=0)
    is_service = db.Column(db.Boolean, nullable=False, default=False)
    is_fault = db.Column(db.Boolean, nullable=False, default=False)
    wind_speed_at_event = db.Column(db.Float, nullable=True)
    source_file = db.Column(db.String(8), nullable=False)

    __table_args__ = (
        db.UniqueConstraint('turbine_id', 'timestamp', 'source_file', 'state', 'sub_state',
                            name='uq_state_event'),
        db.Index('ix_state_event_tenant_ts', 'tenant_id', 'turbine_id', 'timestamp'),
    )


class ScadaWarningEvent(db.Model):
    __tablename__ = 'scada_warning_events'
    id = db.Column(db.Integer, primary_key=True)
    turbine_id = db.Column(db.Integer, db.ForeignKey('turbines.id'), nullable=False)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    timestamp = db.Column(db.DateTime, nullable=False)
    plant_no = db.Column(db.Integer, nullable=False)
    warn = db.Column(db.Integer, nullable=False, default=0)
    sub_warn = db.Column(db.Integer, nullable=False, default=0)
    is_warn_msg = db.Column(db.Boolean, nullable=False, default=False)
    source_file = db.Column(db.String(8), nullable=False)

    __table_args__ = (
        db.UniqueConstraint('turbine_id', 'timestamp', 'source_file', 'warn', 'sub_warn',
                            name='uq_warning_event'),
    )


class ScadaTextEvent(db.Model):
    __tablename__ = 'scada_text_events'
    id = db.Column(db.Integer, primary_key=True)
    turbine_id = db.Column(db.Integer, db.ForeignKey('turbines.id'), nullable=False)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    timestamp = db.Column(db.DateTime, nullable=False)
    plant_no = db.Column(db.Integer, nullable=False)
    info = db.Column(db.String(255), nullable=False, default='')
    source_file = db.Column(db.String(8), nullable=False)

    __table_args__ = (
        db.UniqueConstraint('turbine_id', 'timestamp', 'source_file', 'info', name='uq_text_event'),
    )


class ScadaWindSummary(db.Model):
    """Aggregated wind/power/environment summaries (WSR/WSW/WSM/WSY)."""
    __tablename__ = 'scada_wind_summaries'
    id = db.Column(db.Integer, primary_key=True)
    turbine_id = db.Column(db.Integer, db.ForeignKey('turbines.id'), nullable=False)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    date = db.Column(db.DateTime, nullable=False)
    period_type = db.Column(db.String(8), nullable=False)
    plant_no = db.Column(db.Integer, nullable=False)
    sample_count = db.Column(db.Integer, nullable=True)

    # Wind speed (m/s)
    mean_wind_speed = db.Column(db.Float)
    peak_wind_speed = db.Column(db.Float)
    low_wind_speed = db.Column(db.Float)

    # Rotor
    mean_rotor_rpm = db.Column(db.Float)
    peak_rotor_rpm = db.Column(db.Float)
    low_rotor_rpm = db.Column(db.Float)

    # Power (kW) & reactive power (kVAr)
    mean_power_kw = db.Column(db.Float)
    peak_power_kw = db.Column(db.Float)
    low_power_kw = db.Column(db.Float)
    mean_reactive_power = db.Column(db.Float)
    peak_reactive_power = db.Column(db.Float)
    low_reactive_power = db.Column(db.Float)

    mean_wind_direction = db.Column(db.Float)

    # Counters
    cumulative_operating_hours = db.Column(db.Float)
    cumulative_energy_kwh = db.Column(db.Float)
    work_minutes = db.Column(db.Integer)

    # Power components (kW)
    mean_wind_power = db.Column(db.Float)
    mean_tech_power = db.Column(db.Float)
    mean_feed_mgmt_power = db.Column(db.Float)
    mean_external_power = db.Column(db.Float)

    mean_blade_angle = db.Column(db.Float)

    # Environment
    mean_rain = db.Column(db.Float)
    peak_rain = db.Column(db.Float)
    low_rain = db.Column(db.Float)
    mean_visibility = db.Column(db.Float)
    peak_visibility = db.Column(db.Float)
    low_visibility = db.Column(db.Float)
    mean_brightness = db.Column(db.Float)
    mean_lightning_ice = db.Column(db.Float)
    mean_ice_detection = db.Column(db.Float)
    mean_air_pressure = db.Column(db.Float)
    mean_air_humidity = db.Column(db.Float)

    peak_timestamps = db.Column(db.JSON, nullable=True)  # {measure: {hour, minute, second, date(ISO)}}
    source_file = db.Column(db.String(8), nullable=False)

    __table_args__ = (
        db.UniqueConstraint('turbine_id', 'date', 'source_file', 'plant_no', name='uq_wind_summary'),
    )


# ─── Derived Production ───────────────────────────────────────────────────────

class TurbineProduction(db.Model):
    """Monthly energy per turbine. Upserted by the aggregation engine."""
    __tablename__ = 'turbine_productions'
    id = db.Column(db.Integer, primary_key=True)
    turbine_id = db.Column(db.Integer, db.ForeignKey('turbines.id'), nullable=False)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=False)
    production_kwh = db.Column(db.Float, nullable=False)
    source = db.Column(db.String(16), nullable=False, default='SCADA')  # SCADA, MANUAL, CSV_IMPORT
    status = db.Column(db.String(16), nullable=False, default='DRAFT')  # DRAFT, CONFIRMED
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('turbine_id', 'year', 'month', 'tenant_id', name='uq_turbine_production'),
    )


# ─── Anomalies ────────────────────────────────────────────────────────────────

class ScadaAnomalyConfig(db.Model):
    __tablename__ = 'scada_anomaly_configs'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), nullable=False, unique=True)
    enabled = db.Column(db.Boolean, nullable=False, default=True)
    performance_threshold = db.Column(db.Float, nullable=False, default=15.0)     # % drop
    availability_threshold = db.Column(db.Float, nullable=False, default=90.0)    # %
    downtime_hours_threshold = db.Column(db.Integer, nullable=False, default=24)  # hours
    curve_deviation_threshold = db.Column(db.Float, nullable=False, default=20.0) # %
    data_quality_threshold = db.Column(db.Float, nullable=False, default=80.0)    # % coverage
    notify_by_email = db.Column(db.Boolean, nullable=False, default=True)
    notify_in_app = db.Column(db.Boolean, nullable=False, default=True)


class ScadaAnomaly(db.Model):
    __tablename__ = 'scada_anomalies'
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)
    turbine_id = db.Column(db.Integer, db.ForeignKey('turbines.id'), nullable=False, index=True)
    type = db.Column(db.String(32), nullable=False)  # PERFORMANCE_DROP, LOW_AVAILABILITY, ...
    severity = db.Column(db.String(16), nullable=False)  # WARNING, CRITICAL
    message = db.Column(db.Text, nullable=False)
    details = db.Column(db.JSON, nullable=True)
    detected_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    resolution_note = db.Column(db.Text, nullable=True)

    turbine = db.relationship('Turbine')


# ─── Store Primitives ─────────────────────────────────────────────────────────

_INSERT_BY_DIALECT = {
    'postgresql': postgresql.insert,
    'sqlite': sqlite.insert,
}


class UnsupportedDatabase(RuntimeError):
    pass


def check_dialect(engine):
    """Only PostgreSQL and SQLite offer the INSERT ... ON CONFLICT the writers rely on."""
    if engine.dialect.name not in _INSERT_BY_DIALECT:
        raise UnsupportedDatabase(
            f"Unsupported database {engine.dialect.name!r}; use PostgreSQL or SQLite")


def insert_skip_duplicates(model, rows: list) -> int:
    """
    Batch INSERT ... ON CONFLICT DO NOTHING for `model`.
    Returns the number of rows actually written; conflicting rows are skipped silently.
    Does not commit.
    """
    if not rows:
        return 0
    dialect = db.session.get_bind().dialect.name
    insert = _INSERT_BY_DIALECT.get(dialect)
    if insert is None:
        raise UnsupportedDatabase(f"insert-skip-duplicates not supported on {dialect!r}")

    table = model.__table__
    stmt = insert(table).on_conflict_do_nothing().returning(table.c.id)
    result = db.session.execute(stmt, rows)
    return len(result.all())
