"""
Wind SCADA - Auto-Import Cycle
==============================
Incremental import of every site that has auto-import enabled.

Per tenant cycle:
  1. sites with auto-import enabled, each at its override path or SCADA_BASE_PATH
  2. new files per kind: files dated after that kind's high-water date
  3. per (site, kind) with new files: skip if a run is RUNNING, else run the import
  4. cycle status from the same SUCCESS / PARTIAL / FAILED rule as a single run
  5. every enabled mapping at a processed site is stamped with last_auto_import

run_auto_import_all() is the scheduled job: it only visits sites whose interval
(HOURLY / DAILY / WEEKLY) has elapsed since their last auto-import.

Usage:
  Standalone:  python auto_import.py [tenant_id]
  Via Flask:   POST /api/scada/auto-import
"""
import os
import sys
import json
import time
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta

from flask import current_app

from database import db, ScadaTurbineMapping, ScadaAutoImportLog
from discovery import discover_files, filter_new_files, location_accessible
from file_types import AUTO_IMPORT_FILE_TYPES
from import_service import (
    ImportParams, start_import, create_import_log, find_running_import,
    find_last_high_water, final_status,
)
from mappings import stamp_last_auto_import

log = logging.getLogger(__name__)

INTERVAL_PERIODS = {
    'HOURLY': timedelta(hours=1),
    'DAILY':  timedelta(days=1),
    'WEEKLY': timedelta(weeks=1),
}


@dataclass
class LocationNewFiles:
    location_code: str
    base_path: str
    file_types: list = field(default_factory=list)  # [(file_type, new_file_count), ...]
    total_new_files: int = 0


@dataclass
class AutoImportResult:
    status: str = 'RUNNING'
    locations_checked: int = 0
    new_files_found: int = 0
    files_imported: int = 0
    imported: int = 0
    skipped: int = 0
    errors: list = field(default_factory=list)
    location_results: list = field(default_factory=list)
    summary: str = ''

    def to_dict(self) -> dict:
        return asdict(self)


def _default_base_path() -> str:
    return current_app.config['SCADA_BASE_PATH']


def _enabled_sites(tenant_id: str, locations=None) -> dict:
    """{location_code: override path or None} for sites with auto-import enabled."""
    q = (ScadaTurbineMapping.query
         .filter_by(tenant_id=tenant_id, auto_import_enabled=True, status='ACTIVE'))
    if locations is not None:
        q = q.filter(ScadaTurbineMapping.location_code.in_(list(locations)))

    sites = {}
    for m in q.order_by(ScadaTurbineMapping.location_code, ScadaTurbineMapping.id).all():
        if sites.get(m.location_code) is None:
            sites[m.location_code] = m.auto_import_path
    return sites


# ─── New-File Check ───────────────────────────────────────────────────────────

def check_for_new_files(tenant_id: str, base_path: str = None, locations=None) -> list:
    """Sites with at least one file newer than its kind's high-water date."""
    sites = _enabled_sites(tenant_id, locations)
    if not sites:
        log.info(f"[{tenant_id}] no auto-import enabled mappings")
        return []

    default_path = base_path or _default_base_path()
    results = []

    for location_code, override in sites.items():
        site_base = override or default_path
        location_path = os.path.join(site_base, location_code)

        if not location_accessible(location_path):
            log.warning(f"[{tenant_id}] {location_path} not accessible, skipping {location_code}")
            continue

        try:
            found = LocationNewFiles(location_code, site_base)
            for file_type in AUTO_IMPORT_FILE_TYPES:
                files = discover_files(location_path, file_type)
                if not files:
                    continue
                high_water = find_last_high_water(tenant_id, location_code, file_type)
                new_count = len(filter_new_files(files, high_water))
                if new_count:
                    found.file_types.append((file_type, new_count))
                    found.total_new_files += new_count

            if found.file_types:
                results.append(found)
        except OSError as exc:
            log.error(f"[{tenant_id}] error scanning {location_code}: {exc}")

    return results


# ─── Cycle ────────────────────────────────────────────────────────────────────

def _finish_log(log_id: int, result: AutoImportResult):
    (db.session.query(ScadaAutoImportLog)
     .filter(ScadaAutoImportLog.id == log_id)
     .update({
         'status': result.status,
         'completed_at': datetime.utcnow(),
         'files_found': result.new_files_found,
         'files_imported': result.files_imported,
         'files_skipped': max(result.new_files_found - result.files_imported, 0),
         'location_results': result.location_results,
         'errors': result.errors or None,
         'summary': result.summary,
     }, synchronize_session=False))
    db.session.commit()


def _import_location(tenant_id: str, location: LocationNewFiles, result: AutoImportResult, reader):
    outcome = {
        "location_code": location.location_code,
        "file_types_processed": [],
        "records_imported": 0,
        "records_skipped": 0,
        "status": 'SUCCESS',
    }
    errors = []

    for file_type, _ in location.file_types:
        tag = f"{location.location_code}/{file_type}"
        try:
            if find_running_import(tenant_id, location.location_code, file_type):
                log.info(f"[{tenant_id}] {tag}: import already running, skipping")
                continue

            entry = create_import_log(tenant_id, location.location_code, file_type)
            log.info(f"[{tenant_id}] {tag}: starting import #{entry.id}")
            run = start_import(ImportParams(
                tenant_id=tenant_id,
                location_code=location.location_code,
                file_type=file_type,
                base_path=location.base_path,
                import_log_id=entry.id,
            ), reader=reader)

            outcome["file_types_processed"].append(file_type)
            outcome["records_imported"] += run.records_imported
            outcome["records_skipped"] += run.records_skipped
            result.files_imported += run.files_processed
            result.imported += run.records_imported
            result.skipped += run.records_skipped

            if run.status in ('FAILED', 'PARTIAL'):
                errors.extend(f"{tag}: {e}" for e in run.errors)

        except Exception as exc:
            db.session.rollback()
            errors.append(f"{tag}: {exc}")
            log.error(f"[{tenant_id}] {tag}: auto-import failed: {exc}", exc_info=True)

    result.errors.extend(errors)
    if not errors and not outcome["file_types_processed"]:
        outcome["status"] = 'SKIPPED'
    else:
        outcome["status"] = final_status(errors, outcome["records_imported"], outcome["records_skipped"])
    return outcome


def run_auto_import(tenant_id: str, reader=None, base_path: str = None, locations=None,
                    now: datetime = None) -> AutoImportResult:
    """One auto-import cycle for a tenant (optionally limited to some sites). Never raises."""
    started = time.monotonic()
    entry = ScadaAutoImportLog(tenant_id=tenant_id, status='RUNNING')
    db.session.add(entry)
    db.session.commit()
    log_id = entry.id
    log.info(f"[{tenant_id}] auto-import cycle #{log_id} started")

    result = AutoImportResult()
    try:
        new_files = check_for_new_files(tenant_id, base_path, locations)
        result.locations_checked = len(new_files)
        result.new_files_found = sum(loc.total_new_files for loc in new_files)

        if not new_files:
            result.status = 'SUCCESS'
            result.summary = 'No new files found'
            _finish_log(log_id, result)
            log.info(f"[{tenant_id}] auto-import cycle #{log_id}: no new files")
            return result

        for location in new_files:
            result.location_results.append(_import_location(tenant_id, location, result, reader))
            stamp_last_auto_import(tenant_id, location.location_code, now or datetime.utcnow())

        result.status = final_status(result.errors, result.imported, result.skipped)
        result.summary = (
            f"{result.locations_checked} location(s) checked, "
            f"{result.imported} records imported, {result.skipped} skipped"
            + (f", {len(result.errors)} errors" if result.errors else '')
            + f" ({round(time.monotonic() - started)}s)"
        )
        _finish_log(log_id, result)
        log.info(f"[{tenant_id}] auto-import cycle #{log_id} {result.status}: {result.summary}")
        return result

    except Exception as exc:
        db.session.rollback()
        result.status = 'FAILED'
        result.errors.append(f"Critical error: {exc}")
        result.summary = f"Error: {exc}"
        log.error(f"[{tenant_id}] auto-import cycle #{log_id} failed: {exc}", exc_info=True)
        _finish_log(log_id, result)
        return result


# ─── Scheduled Job ────────────────────────────────────────────────────────────

def is_due(interval: str, last_auto_import, now: datetime) -> bool:
    if last_auto_import is None:
        return True
    period = INTERVAL_PERIODS.get(interval, INTERVAL_PERIODS['DAILY'])
    return now - last_auto_import >= period


def due_locations(now: datetime) -> dict:
    """{tenant_id: [location_code, ...]} for enabled sites whose interval has elapsed."""
    mappings = (ScadaTurbineMapping.query
                .filter_by(auto_import_enabled=True, status='ACTIVE')
                .order_by(ScadaTurbineMapping.tenant_id, ScadaTurbineMapping.location_code,
                          ScadaTurbineMapping.id)
                .all())

    sites = {}
    for m in mappings:
        key = (m.tenant_id, m.location_code)
        interval, last = sites.get(key, (m.auto_import_interval, m.last_auto_import))
        # the least recently stamped mapping decides
        if last is not None and (m.last_auto_import is None or m.last_auto_import < last):
            last = m.last_auto_import
        sites[key] = (interval, last)

    due = {}
    for (tenant_id, location_code), (interval, last) in sites.items():
        if is_due(interval, last, now):
            due.setdefault(tenant_id, []).append(location_code)
    return due


def run_auto_import_all(reader=None, now: datetime = None, base_path: str = None) -> dict:
    now = now or datetime.utcnow()
    due = due_locations(now)
    if not due:
        log.info("auto-import: no sites due")
        return {}

    results = {}
    for tenant_id, locations in due.items():
        log.info(f"auto-import: {tenant_id} due at {', '.join(locations)}")
        results[tenant_id] = run_auto_import(tenant_id, reader=reader, base_path=base_path,
                                             locations=locations, now=now)
    return results


# ─── Standalone Entry Point ───────────────────────────────────────────────────

if __name__ == "__main__":
    from dotenv import load_dotenv
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format='[SCADA] %(asctime)s %(levelname)s %(message)s',
        datefmt='%H:%M:%S',
    )

    from app import create_app
    app = create_app()
    with app.app_context():
        if len(sys.argv) > 1:
            output = run_auto_import(sys.argv[1]).to_dict()
        else:
            output = {tenant: r.to_dict() for tenant, r in run_auto_import_all().items()}
    print(json.dumps(output, indent=2, default=str))
