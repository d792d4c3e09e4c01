"""
Wind SCADA - Import Orchestrator
================================
Drives one import run for a (tenant, site, file type):

  DISCOVER            explicit file list, or a directory scan
  INCREMENTAL_FILTER  drop files on/before the last run's high-water day
  MAP_RESOLVE         plant number -> turbine id
  PER_FILE_PROCESS    read -> write -> progress update, one file at a time
  POST_AGGREGATE      monthly energy for touched months (power samples only)
  FINALIZE            final status; cleanup directory always removed

Final status:
  SUCCESS  no errors
  PARTIAL  errors, but records were imported or skipped
  FAILED   errors and nothing imported/skipped, or a top-level exception

The run's ScadaImportLog row must exist before start_import() is called so
that its progress can be polled while the run is in flight.
"""
import os
import shutil
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from database import db, ScadaImportLog
from discovery import discover_files, filter_new_files, decode_filename_date
from file_types import get_file_type, POWER_FILE_TYPE
from mappings import load_turbine_mappings
from readers import get_reader
from writers import write_records
from aggregation import aggregate_monthly_production, write_to_turbine_production

log = logging.getLogger(__name__)


@dataclass
class ImportParams:
    tenant_id: str
    location_code: str
    file_type: str
    base_path: str
    import_log_id: int
    file_paths: Optional[list] = None
    cleanup_dir: Optional[str] = None


@dataclass
class ImportResult:
    status: str
    files_processed: int = 0
    records_imported: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    errors: list = field(default_factory=list)
    affected_months: list = field(default_factory=list)  # [(year, month), ...]

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "files_processed": self.files_processed,
            "records_imported": self.records_imported,
            "records_skipped": self.records_skipped,
            "records_failed": self.records_failed,
            "errors": list(self.errors),
            "affected_months": [{"year": y, "month": m} for y, m in self.affected_months],
        }


def final_status(errors: list, imported: int, skipped: int) -> str:
    if not errors:
        return 'SUCCESS'
    if imported > 0 or skipped > 0:
        return 'PARTIAL'
    return 'FAILED'


# ─── Import Log ───────────────────────────────────────────────────────────────

def create_import_log(tenant_id: str, location_code: str, file_type: str) -> ScadaImportLog:
    entry = ScadaImportLog(
        tenant_id=tenant_id,
        location_code=location_code,
        file_type=file_type,
        status='RUNNING',
    )
    db.session.add(entry)
    db.session.commit()
    return entry


def update_import_log(import_log_id: int, **fields):
    """Single narrow UPDATE of the run row, committed immediately."""
    fields['updated_at'] = datetime.utcnow()
    (db.session.query(ScadaImportLog)
     .filter(ScadaImportLog.id == import_log_id)
     .update(fields, synchronize_session=False))
    db.session.commit()


def find_running_import(tenant_id: str, location_code: str, file_type: str):
    return (ScadaImportLog.query
            .filter_by(tenant_id=tenant_id, location_code=location_code,
                       file_type=file_type, status='RUNNING')
            .first())


def find_last_high_water(tenant_id: str, location_code: str, file_type: str,
                         exclude_id: int = None) -> Optional[datetime]:
    """High-water date of the most recent SUCCESS/PARTIAL run for the key."""
    q = (db.session.query(ScadaImportLog.last_processed_date)
         .filter(
             ScadaImportLog.tenant_id == tenant_id,
             ScadaImportLog.location_code == location_code,
             ScadaImportLog.file_type == file_type,
             ScadaImportLog.status.in_(('SUCCESS', 'PARTIAL')),
             ScadaImportLog.last_processed_date.isnot(None),
         ))
    if exclude_id is not None:
        q = q.filter(ScadaImportLog.id != exclude_id)
    row = q.order_by(ScadaImportLog.last_processed_date.desc()).first()
    return row[0] if row else None


def _affected_months(records) -> set:
    return {(rec.timestamp.year, rec.timestamp.month) for rec in records}


# ─── Orchestrator ─────────────────────────────────────────────────────────────

def start_import(params: ImportParams, reader=None, scanner=discover_files) -> ImportResult:
    """
    Run one import to completion. Never raises for data problems; all failures
    end up in the returned result and in the import log row.
    """
    config = get_file_type(params.file_type)
    log_id = params.import_log_id
    tag = f"[{params.tenant_id}/{params.location_code}/{params.file_type}]"

    errors = []
    files_processed = 0
    imported = skipped = failed = 0
    affected = set()

    try:
        if reader is None:
            reader = get_reader()

        # 1. Discover
        if params.file_paths:
            candidates = sorted(set(params.file_paths))
        else:
            location_path = os.path.join(params.base_path, params.location_code)
            candidates = scanner(location_path, params.file_type)

        if not candidates:
            message = f"No {params.file_type} files found for {params.location_code}"
            log.warning(f"{tag} {message}")
            update_import_log(log_id, status='FAILED', completed_at=datetime.utcnow(),
                              files_total=0, error_details={"errors": [message]})
            return ImportResult(status='FAILED', errors=[message])

        # 2. Incremental filter
        high_water = find_last_high_water(params.tenant_id, params.location_code,
                                          params.file_type, exclude_id=log_id)
        files = filter_new_files(candidates, high_water)

        if not files:
            message = (f"All {len(candidates)} files for {params.location_code} were already "
                       f"imported. Nothing new.")
            log.info(f"{tag} {message}")
            update_import_log(log_id, status='SUCCESS', completed_at=datetime.utcnow(),
                              files_total=0, files_processed=0, records_imported=0,
                              records_skipped=0, records_failed=0,
                              error_details={"message": message})
            return ImportResult(status='SUCCESS')

        update_import_log(log_id, status='RUNNING', files_total=len(files), files_processed=0)
        log.info(f"{tag} {len(files)} new of {len(candidates)} files (high-water={high_water})")

        # 3. Mappings
        turbine_mappings = load_turbine_mappings(params.tenant_id, params.location_code)
        if not turbine_mappings:
            message = (f"No turbine mappings for {params.location_code}. "
                       f"Records without a mapping are skipped.")
            log.warning(f"{tag} {message}")
            errors.append(message)

        # once a file's rows fail to land, the high-water mark stays put so a rerun retries it
        hold_high_water = False

        # 4. Per file
        for file_path in files:
            try:
                records = reader.read(file_path, params.file_type)
                is_power = params.file_type == POWER_FILE_TYPE

                if is_power and records:
                    affected |= _affected_months(records)

                result = write_records(records, turbine_mappings, params.tenant_id, params.file_type)
                imported += result.imported
                skipped += result.skipped
                failed += result.failed

                if result.failed:
                    errors.append(f"File {file_path}: {result.failed} records failed to write")
                    hold_high_water = True

                if result.unmapped_plants:
                    plants = ', '.join(str(p) for p in sorted(result.unmapped_plants))
                    errors.append(f"File {file_path}: plant no {plants} without turbine mapping, "
                                  f"records skipped")

                files_processed += 1
                progress = {
                    "files_processed": files_processed,
                    "records_imported": imported,
                    "records_skipped": skipped,
                    "records_failed": failed,
                }
                if not hold_high_water:
                    if is_power:
                        mark = records[-1].timestamp if records else None
                    else:
                        mark = decode_filename_date(file_path)
                    if mark is not None:
                        progress["last_processed_date"] = mark
                update_import_log(log_id, **progress)

            except Exception as exc:
                db.session.rollback()
                files_processed += 1
                hold_high_water = True
                errors.append(f"Error processing {file_path}: {exc}")
                log.error(f"{tag} {file_path} failed: {exc}", exc_info=True)
                update_import_log(log_id, files_processed=files_processed,
                                  records_failed=failed, error_details={"errors": list(errors)})

        # 5. Monthly aggregation (power samples only)
        months = sorted(affected)
        if config.code == POWER_FILE_TYPE and months:
            turbine_ids = sorted(set(turbine_mappings.values()))
            for year, month in months:
                for turbine_id in turbine_ids:
                    try:
                        agg = aggregate_monthly_production(turbine_id, year, month)
                        if agg.sample_count > 0:
                            write_to_turbine_production(turbine_id, params.tenant_id, year, month,
                                                        agg.total_energy_kwh)
                    except Exception as exc:
                        db.session.rollback()
                        errors.append(f"Aggregation error for turbine {turbine_id}, "
                                      f"{year}-{month:02d}: {exc}")
                        log.error(f"{tag} aggregation {turbine_id} {year}-{month:02d} failed: {exc}")

        # 6. Finalize
        status = final_status(errors, imported, skipped)
        update_import_log(log_id, status=status, completed_at=datetime.utcnow(),
                          files_processed=files_processed, records_imported=imported,
                          records_skipped=skipped, records_failed=failed,
                          error_details={"errors": list(errors)} if errors else None)
        log.info(f"{tag} {status}: files={files_processed} imported={imported} "
                 f"skipped={skipped} failed={failed} errors={len(errors)}")

        return ImportResult(status, files_processed, imported, skipped, failed, errors, months)

    except Exception as exc:
        db.session.rollback()
        errors.append(f"Critical error: {exc}")
        log.error(f"{tag} import failed: {exc}", exc_info=True)
        update_import_log(log_id, status='FAILED', completed_at=datetime.utcnow(),
                          files_processed=files_processed, records_imported=imported,
                          records_skipped=skipped, records_failed=failed,
                          error_details={"errors": list(errors)})
        return ImportResult('FAILED', files_processed, imported, skipped, failed, errors,
                            sorted(affected))

    finally:
        if params.cleanup_dir:
            shutil.rmtree(params.cleanup_dir, ignore_errors=True)
