from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

import writers
from database import db, ScadaImportLog, ScadaMeasurement, TurbineProduction
from import_service import (
    ImportParams, start_import, create_import_log, find_last_high_water, final_status,
)
from readers import WsdRecord, AvailabilityRecord
from tests.conftest import TENANT, LOCATION, touch


def _day_of_samples(day: datetime, plant_no: int, power_w: float = 1000.0, count: int = 3):
    return [WsdRecord(timestamp=day + timedelta(minutes=10 * (i + 1)), plant_no=plant_no,
                      wind_speed_ms=8.0, power_w=power_w) for i in range(count)]


def _run(file_type='WSD', base_path=None, **kwargs):
    entry = create_import_log(TENANT, LOCATION, file_type)
    params = ImportParams(
        tenant_id=TENANT, location_code=LOCATION, file_type=file_type,
        base_path=str(base_path), import_log_id=entry.id, **kwargs,
    )
    return start_import(params), entry.id


@pytest.fixture
def wsd_files(base_path, reader):
    day_dir = base_path / LOCATION / '2024' / '06'
    first = touch(day_dir / '20240601.wsd')
    second = touch(day_dir / '20240602.wsd')
    reader.records[first] = _day_of_samples(datetime(2024, 6, 1), 1) + _day_of_samples(datetime(2024, 6, 1), 2)
    reader.records[second] = _day_of_samples(datetime(2024, 6, 2), 1)
    return [first, second]


def test_final_status():
    assert final_status([], 0, 0) == 'SUCCESS'
    assert final_status(['x'], 0, 4) == 'PARTIAL'
    assert final_status(['x'], 0, 0) == 'FAILED'


def test_import_discovers_writes_and_aggregates(app, turbines, base_path, wsd_files):
    result, log_id = _run(base_path=base_path)

    assert result.status == 'SUCCESS'
    assert result.files_processed == 2
    assert result.records_imported == 9
    assert result.affected_months == [(2024, 6)]

    entry = db.session.get(ScadaImportLog, log_id)
    assert entry.status == 'SUCCESS'
    assert entry.files_total == 2
    assert entry.records_imported == 9
    assert entry.last_processed_date == datetime(2024, 6, 2, 0, 30)
    assert entry.completed_at is not None

    production = TurbineProduction.query.filter_by(turbine_id=turbines['t1'], year=2024, month=6).one()
    assert production.production_kwh == pytest.approx(1.0)
    assert (production.source, production.status) == ('SCADA', 'DRAFT')
    assert TurbineProduction.query.filter_by(turbine_id=turbines['t2']).one().production_kwh == pytest.approx(0.5)


def test_second_run_finds_nothing_new(app, turbines, base_path, wsd_files, reader):
    _run(base_path=base_path)
    reader.calls.clear()

    result, log_id = _run(base_path=base_path)

    assert result.status == 'SUCCESS'
    assert result.records_imported == 0
    assert reader.calls == []
    entry = db.session.get(ScadaImportLog, log_id)
    assert entry.files_total == 0
    assert 'Nothing new' in entry.error_details['message']


def test_high_water_ignores_failed_and_current_runs(app, turbines, base_path, wsd_files):
    _, first_id = _run(base_path=base_path)
    failed = ScadaImportLog(tenant_id=TENANT, location_code=LOCATION, file_type='WSD',
                            status='FAILED', last_processed_date=datetime(2030, 1, 1))
    db.session.add(failed)
    db.session.commit()

    assert find_last_high_water(TENANT, LOCATION, 'WSD') == datetime(2024, 6, 2, 0, 30)
    assert find_last_high_water(TENANT, LOCATION, 'WSD', exclude_id=first_id) is None
    assert find_last_high_water(TENANT, LOCATION, 'UID') is None


def test_reimporting_undated_files_is_idempotent(app, turbines, base_path, reader):
    upload = touch(base_path / 'upload' / 'export.wsd')
    reader.records[upload] = _day_of_samples(datetime(2024, 6, 1), 1)

    first, _ = _run(base_path=base_path, file_paths=[upload])
    second, _ = _run(base_path=base_path, file_paths=[upload])

    assert (first.records_imported, first.records_skipped) == (3, 0)
    assert (second.records_imported, second.records_skipped) == (0, 3)
    assert second.status == 'SUCCESS'
    assert ScadaMeasurement.query.count() == 3


def test_unmapped_plant_is_reported(app, turbines, base_path, reader):
    path = touch(base_path / LOCATION / '2024' / '06' / '20240601.wsd')
    reader.records[path] = _day_of_samples(datetime(2024, 6, 1), 1, count=1) + \
        _day_of_samples(datetime(2024, 6, 1), 7, count=1)

    result, _ = _run(base_path=base_path)

    assert (result.records_imported, result.records_skipped) == (1, 1)
    assert result.status == 'PARTIAL'
    assert any('plant no 7' in e for e in result.errors)


def test_missing_mappings_do_not_abort(app, base_path, reader):
    path = touch(base_path / LOCATION / '2024' / '06' / '20240601.wsd')
    reader.records[path] = _day_of_samples(datetime(2024, 6, 1), 1)

    result, _ = _run(base_path=base_path)

    assert result.status == 'PARTIAL'
    assert result.records_skipped == 3
    assert reader.calls == [(path, 'WSD')]
    assert 'No turbine mappings' in result.errors[0]


def test_failing_file_does_not_stop_the_loop(app, turbines, base_path, wsd_files, reader):
    reader.broken.add(wsd_files[0])

    result, log_id = _run(base_path=base_path)

    assert result.status == 'PARTIAL'
    assert result.files_processed == 2
    assert result.records_imported == 3
    assert any('20240601.wsd' in e for e in result.errors)
    assert db.session.get(ScadaImportLog, log_id).error_details['errors'] == result.errors


def test_all_files_failing_is_failed(app, turbines, base_path, wsd_files, reader):
    reader.broken.update(wsd_files)

    result, log_id = _run(base_path=base_path)

    assert result.status == 'FAILED'
    assert db.session.get(ScadaImportLog, log_id).status == 'FAILED'


def test_no_files_found_is_failed(app, turbines, base_path):
    result, log_id = _run(base_path=base_path)

    assert result.status == 'FAILED'
    assert 'No WSD files found' in result.errors[0]
    assert db.session.get(ScadaImportLog, log_id).status == 'FAILED'


def test_non_power_kind_tracks_filename_date(app, turbines, base_path, reader):
    path = touch(base_path / LOCATION / '2024' / '06' / '20240610.avr')
    reader.records[path] = [AvailabilityRecord(date=datetime(2024, 6, 10), plant_no=1, t1=86400)]

    result, log_id = _run(file_type='AVR', base_path=base_path)

    assert result.status == 'SUCCESS'
    assert result.affected_months == []
    assert db.session.get(ScadaImportLog, log_id).last_processed_date == datetime(2024, 6, 10)
    assert TurbineProduction.query.count() == 0


def test_critical_error_still_cleans_up(app, turbines, base_path, tmp_path):
    cleanup = tmp_path / 'upload-123'
    touch(cleanup / '20240601.wsd')

    def broken_scanner(location_path, file_type):
        raise RuntimeError('share went away')

    entry = create_import_log(TENANT, LOCATION, 'WSD')
    params = ImportParams(tenant_id=TENANT, location_code=LOCATION, file_type='WSD',
                          base_path=str(base_path), import_log_id=entry.id, cleanup_dir=str(cleanup))
    result = start_import(params, scanner=broken_scanner)

    assert result.status == 'FAILED'
    assert result.errors == ['Critical error: share went away']
    assert not cleanup.exists()
    assert db.session.get(ScadaImportLog, entry.id).status == 'FAILED'


def test_cleanup_after_success(app, turbines, base_path, reader, tmp_path):
    cleanup = tmp_path / 'upload-456'
    path = touch(cleanup / '20240601.wsd')
    reader.records[path] = _day_of_samples(datetime(2024, 6, 1), 1)

    result, _ = _run(base_path=base_path, file_paths=[path], cleanup_dir=str(cleanup))

    assert result.status == 'SUCCESS'
    assert not cleanup.exists()


def test_missing_reader_fails_the_run(app, turbines, base_path, wsd_files):
    app.extensions.pop('scada_reader')

    result, log_id = _run(base_path=base_path)

    assert result.status == 'FAILED'
    assert result.errors[0].startswith('Critical error: No SCADA record reader')
    assert db.session.get(ScadaImportLog, log_id).status == 'FAILED'


def test_failed_write_is_an_error_and_holds_the_high_water(app, turbines, base_path, wsd_files, monkeypatch):
    real_insert = writers.insert_skip_duplicates

    def flaky_insert(model, rows):
        if any(row['timestamp'].day == 1 for row in rows):
            raise OperationalError('INSERT', {}, Exception('database is locked'))
        return real_insert(model, rows)

    monkeypatch.setattr(writers, 'insert_skip_duplicates', flaky_insert)
    result, log_id = _run(base_path=base_path)

    assert result.status == 'PARTIAL'
    assert (result.records_imported, result.records_failed) == (3, 6)
    assert any('6 records failed to write' in e for e in result.errors)
    assert db.session.get(ScadaImportLog, log_id).last_processed_date is None
    assert find_last_high_water(TENANT, LOCATION, 'WSD') is None

    monkeypatch.setattr(writers, 'insert_skip_duplicates', real_insert)
    rerun, _ = _run(base_path=base_path)

    assert rerun.status == 'SUCCESS'
    assert (rerun.records_imported, rerun.records_skipped) == (6, 3)


def test_nothing_written_is_failed(app, turbines, base_path, wsd_files, monkeypatch):
    def broken_insert(model, rows):
        raise OperationalError('INSERT', {}, Exception('disk I/O error'))

    monkeypatch.setattr(writers, 'insert_skip_duplicates', broken_insert)
    result, _ = _run(base_path=base_path)

    assert result.status == 'FAILED'
    assert result.records_failed == 9
    assert find_last_high_water(TENANT, LOCATION, 'WSD') is None


def test_progress_is_saved_after_every_file(app, turbines, base_path, wsd_files, reader):
    seen = []
    read = reader.read

    def read_and_poll(file_path, file_type):
        if file_path == wsd_files[1]:
            entry = ScadaImportLog.query.order_by(ScadaImportLog.id.desc()).first()
            seen.append((entry.status, entry.files_processed, entry.records_imported,
                         entry.last_processed_date))
        return read(file_path, file_type)

    reader.read = read_and_poll
    _run(base_path=base_path)

    assert seen == [('RUNNING', 1, 6, datetime(2024, 6, 1, 0, 30))]
