"""
Wind SCADA - Turbine Mappings
Plant number -> turbine id resolution and per-site auto-import settings.
"""
import logging
from datetime import datetime

from database import db, ScadaTurbineMapping, ScadaImportLog

log = logging.getLogger(__name__)

AUTO_IMPORT_INTERVALS = ('HOURLY', 'DAILY', 'WEEKLY')

_UNSET = object()


def load_turbine_mappings(tenant_id: str, location_code: str) -> dict:
    """Active mappings for a site as {plant_no: turbine_id}."""
    rows = (db.session.query(ScadaTurbineMapping.plant_no, ScadaTurbineMapping.turbine_id)
            .filter(
                ScadaTurbineMapping.tenant_id == tenant_id,
                ScadaTurbineMapping.location_code == location_code,
                ScadaTurbineMapping.status == 'ACTIVE',
            )
            .all())
    return {plant_no: turbine_id for plant_no, turbine_id in rows}


def toggle_auto_import(tenant_id, location_code, enabled, interval=None, auto_import_path=_UNSET) -> int:
    """Enable/disable auto-import for every active mapping at a site. Returns rows updated."""
    values = {'auto_import_enabled': bool(enabled)}
    if interval in AUTO_IMPORT_INTERVALS:
        values['auto_import_interval'] = interval
    if auto_import_path is not _UNSET:
        values['auto_import_path'] = auto_import_path or None

    count = (ScadaTurbineMapping.query
             .filter_by(tenant_id=tenant_id, location_code=location_code, status='ACTIVE')
             .update(values, synchronize_session=False))
    db.session.commit()
    log.info(f"Auto-import {'enabled' if enabled else 'disabled'} for {location_code} "
             f"(tenant={tenant_id}, mappings={count})")
    return count


def stamp_last_auto_import(tenant_id: str, location_code: str, when: datetime) -> int:
    count = (ScadaTurbineMapping.query
             .filter_by(tenant_id=tenant_id, location_code=location_code, auto_import_enabled=True)
             .update({'last_auto_import': when}, synchronize_session=False))
    db.session.commit()
    return count


def get_last_import_date(tenant_id: str, location_code: str, file_type: str = None):
    """Latest high-water date of a SUCCESS/PARTIAL run at a site (optionally for one kind)."""
    q = (db.session.query(db.func.max(ScadaImportLog.last_processed_date))
         .filter(
             ScadaImportLog.tenant_id == tenant_id,
             ScadaImportLog.location_code == location_code,
             ScadaImportLog.status.in_(('SUCCESS', 'PARTIAL')),
             ScadaImportLog.last_processed_date.isnot(None),
         ))
    if file_type:
        q = q.filter(ScadaImportLog.file_type == file_type)
    return q.scalar()


def get_auto_import_status(tenant_id: str) -> list:
    """One entry per site with its auto-import settings and last data date."""
    mappings = (ScadaTurbineMapping.query
                .filter_by(tenant_id=tenant_id, status='ACTIVE')
                .order_by(ScadaTurbineMapping.location_code, ScadaTurbineMapping.id)
                .all())
    seen = set()
    results = []
    for m in mappings:
        if m.location_code in seen:
            continue
        seen.add(m.location_code)
        last_data = get_last_import_date(tenant_id, m.location_code)
        results.append({
            "mapping_id": m.id,
            "location_code": m.location_code,
            "auto_import_enabled": m.auto_import_enabled,
            "auto_import_interval": m.auto_import_interval,
            "auto_import_path": m.auto_import_path,
            "last_auto_import": m.last_auto_import.isoformat() if m.last_auto_import else None,
            "last_data_timestamp": last_data.isoformat() if last_data else None,
            "park_name": m.turbine.park_name if m.turbine else None,
        })
    return results
