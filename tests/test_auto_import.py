from datetime import datetime, timedelta

import pytest

from auto_import import (
    check_for_new_files, run_auto_import, run_auto_import_all, is_due, due_locations,
)
from database import db, ScadaAutoImportLog, ScadaImportLog, ScadaTurbineMapping
from mappings import toggle_auto_import
from readers import WsdRecord, StateEventRecord
from tests.conftest import TENANT, LOCATION, touch

NOW = datetime(2024, 6, 10, 6, 0)


@pytest.fixture
def site(app, turbines, base_path, reader):
    """Two days of power samples and one day of state events at LOCATION, auto-import on."""
    day_dir = base_path / LOCATION / '2024' / '06'
    for day in (1, 2):
        path = touch(day_dir / f'202406{day:02d}.wsd')
        reader.records[path] = [
            WsdRecord(timestamp=datetime(2024, 6, day, 0, 10), plant_no=1, wind_speed_ms=7.0, power_w=900000),
        ]
    pes = touch(day_dir / '20240602.pes')
    reader.records[pes] = [StateEventRecord(timestamp=datetime(2024, 6, 2, 3, 0), plant_no=2, state=0)]
    toggle_auto_import(TENANT, LOCATION, True, 'DAILY')
    return day_dir


def test_check_for_new_files_counts_per_kind(site):
    found = check_for_new_files(TENANT)

    assert len(found) == 1
    assert found[0].location_code == LOCATION
    assert dict(found[0].file_types) == {'WSD': 2, 'PES': 1}
    assert found[0].total_new_files == 3


def test_check_for_new_files_respects_high_water(site):
    db.session.add(ScadaImportLog(tenant_id=TENANT, location_code=LOCATION, file_type='WSD',
                                  status='SUCCESS', last_processed_date=datetime(2024, 6, 1, 23, 50)))
    db.session.commit()

    found = check_for_new_files(TENANT)
    assert dict(found[0].file_types) == {'WSD': 1, 'PES': 1}


def test_check_for_new_files_skips_disabled_and_unreachable(site, tmp_path):
    toggle_auto_import(TENANT, LOCATION, True, auto_import_path=str(tmp_path / 'offline'))
    assert check_for_new_files(TENANT) == []

    toggle_auto_import(TENANT, LOCATION, False)
    assert check_for_new_files(TENANT) == []


def test_run_auto_import_imports_and_stamps(site):
    result = run_auto_import(TENANT, now=NOW)

    assert result.status == 'SUCCESS'
    assert result.locations_checked == 1
    assert result.new_files_found == 3
    assert result.files_imported == 3
    assert result.imported == 3
    assert result.location_results[0]['status'] == 'SUCCESS'
    assert result.location_results[0]['file_types_processed'] == ['WSD', 'PES']

    for mapping in ScadaTurbineMapping.query.filter_by(location_code=LOCATION):
        assert mapping.last_auto_import == NOW

    cycle = ScadaAutoImportLog.query.one()
    assert cycle.status == 'SUCCESS'
    assert cycle.files_found == 3
    assert cycle.summary.startswith('1 location(s) checked, 3 records imported')


def test_second_cycle_finds_nothing(site):
    run_auto_import(TENANT, now=NOW)
    result = run_auto_import(TENANT, now=NOW)

    assert result.status == 'SUCCESS'
    assert result.summary == 'No new files found'
    assert ScadaAutoImportLog.query.count() == 2


def test_running_import_is_not_duplicated(site):
    db.session.add(ScadaImportLog(tenant_id=TENANT, location_code=LOCATION, file_type='WSD', status='RUNNING'))
    db.session.commit()

    result = run_auto_import(TENANT, now=NOW)

    assert result.location_results[0]['file_types_processed'] == ['PES']
    assert ScadaImportLog.query.filter_by(file_type='WSD').count() == 1


def test_failed_kind_makes_cycle_partial(site, reader):
    reader.broken.add(str(site / '20240602.pes'))

    result = run_auto_import(TENANT, now=NOW)

    assert result.status == 'PARTIAL'
    assert result.location_results[0]['status'] == 'PARTIAL'
    assert any(e.startswith(f'{LOCATION}/PES: ') for e in result.errors)


def test_is_due():
    assert is_due('DAILY', None, NOW)
    assert is_due('HOURLY', NOW - timedelta(hours=1), NOW)
    assert not is_due('DAILY', NOW - timedelta(hours=23), NOW)
    assert not is_due('WEEKLY', NOW - timedelta(days=6), NOW)


def test_scheduled_job_only_visits_due_sites(site):
    ScadaTurbineMapping.query.update({'last_auto_import': NOW - timedelta(hours=2)})
    db.session.commit()

    assert due_locations(NOW) == {}
    assert run_auto_import_all(now=NOW) == {}

    later = NOW + timedelta(days=1)
    assert due_locations(later) == {TENANT: [LOCATION]}
    results = run_auto_import_all(now=later)
    assert results[TENANT].status == 'SUCCESS'
    assert results[TENANT].imported == 3


def test_site_status_agrees_with_cycle_status(turbines, base_path, reader):
    pes = touch(base_path / LOCATION / '2024' / '06' / '20240605.pes')
    reader.records[pes] = [StateEventRecord(timestamp=datetime(2024, 6, 5, 3, 0), plant_no=7, state=0)]
    toggle_auto_import(TENANT, LOCATION, True, 'DAILY')

    result = run_auto_import(TENANT, now=NOW)

    assert (result.imported, result.skipped) == (0, 1)
    assert result.status == 'PARTIAL'
    assert result.location_results[0]['status'] == 'PARTIAL'
    assert result.location_results[0]['records_skipped'] == 1
