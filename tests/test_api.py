from datetime import datetime, timedelta

from database import db, ScadaAvailability, ScadaImportLog, TurbineProduction
from readers import WsdRecord
from tests.conftest import TENANT, LOCATION, touch

HEADERS = {'X-Tenant-Id': TENANT}


def test_status(client):
    resp = client.get('/status')
    assert resp.status_code == 200
    assert resp.get_json()['status'] == 'ok'


def test_missing_tenant_header(client):
    resp = client.get('/api/scada/anomalies')
    assert resp.status_code == 400
    assert resp.get_json() == {'error': 'Missing X-Tenant-Id header'}


# ─── Imports ──────────────────────────────────────────────────────────────────

def test_scan_counts_files(client, base_path):
    touch(base_path / LOCATION / '2024' / '06' / '20240601.wsd')
    touch(base_path / LOCATION / '2024' / '06' / '20240602.wsd')

    resp = client.get('/api/scada/scan', query_string={'location_code': LOCATION}, headers=HEADERS)

    assert resp.status_code == 200
    kinds = {s['file_type']: s['file_count'] for s in resp.get_json()['file_types']}
    assert kinds == {'WSD': 2}


def test_scan_unknown_location(client):
    resp = client.get('/api/scada/scan', query_string={'location_code': 'Loc_0000'}, headers=HEADERS)
    assert resp.status_code == 404


def test_start_import_and_poll(client, turbines, base_path, reader):
    path = touch(base_path / LOCATION / '2024' / '06' / '20240601.wsd')
    reader.records[path] = [WsdRecord(timestamp=datetime(2024, 6, 1, 0, 10), plant_no=1, power_w=1000)]

    resp = client.post('/api/scada/imports', json={'location_code': LOCATION, 'file_type': 'wsd'},
                       headers=HEADERS)
    assert resp.status_code == 202
    import_id = resp.get_json()['import_id']

    status = client.get(f'/api/scada/imports/{import_id}', headers=HEADERS).get_json()
    assert status['status'] == 'SUCCESS'
    assert status['records_imported'] == 1
    assert status['last_processed_date'] == '2024-06-01T00:10:00'

    other = client.get(f'/api/scada/imports/{import_id}', headers={'X-Tenant-Id': 'tenant-b'})
    assert other.status_code == 404


def test_start_import_rejects_running_duplicate(client, turbines):
    db.session.add(ScadaImportLog(tenant_id=TENANT, location_code=LOCATION, file_type='WSD', status='RUNNING'))
    db.session.commit()

    resp = client.post('/api/scada/imports', json={'location_code': LOCATION, 'file_type': 'WSD'},
                       headers=HEADERS)
    assert resp.status_code == 409


def test_start_import_validation(client):
    bad_kind = client.post('/api/scada/imports', json={'location_code': LOCATION, 'file_type': 'XYZ'},
                           headers=HEADERS)
    no_location = client.post('/api/scada/imports', json={'file_type': 'WSD'}, headers=HEADERS)
    bad_paths = client.post('/api/scada/imports',
                            json={'location_code': LOCATION, 'file_type': 'WSD', 'file_paths': 'a.wsd'},
                            headers=HEADERS)
    assert [r.status_code for r in (bad_kind, no_location, bad_paths)] == [400, 400, 400]


# ─── Auto-import ──────────────────────────────────────────────────────────────

def test_toggle_auto_import(client, turbines):
    resp = client.put(f'/api/scada/auto-import/{LOCATION}', json={'enabled': True, 'interval': 'HOURLY'},
                      headers=HEADERS)
    assert resp.status_code == 200
    assert resp.get_json() == {'location_code': LOCATION, 'updated': 2}

    sites = client.get('/api/scada/auto-import/status', headers=HEADERS).get_json()
    assert len(sites) == 1
    assert sites[0]['auto_import_enabled'] is True
    assert sites[0]['auto_import_interval'] == 'HOURLY'
    assert sites[0]['park_name'] == 'Nordfeld'


def test_toggle_auto_import_errors(client, turbines):
    unknown = client.put('/api/scada/auto-import/Loc_0000', json={'enabled': True}, headers=HEADERS)
    not_bool = client.put(f'/api/scada/auto-import/{LOCATION}', json={'enabled': 'yes'}, headers=HEADERS)
    bad_interval = client.put(f'/api/scada/auto-import/{LOCATION}',
                              json={'enabled': True, 'interval': 'MONTHLY'}, headers=HEADERS)
    assert [r.status_code for r in (unknown, not_bool, bad_interval)] == [404, 400, 400]


def test_run_auto_import_without_sites(client, turbines):
    resp = client.post('/api/scada/auto-import', headers=HEADERS)
    assert resp.status_code == 200
    assert resp.get_json()['summary'] == 'No new files found'


# ─── Anomalies ────────────────────────────────────────────────────────────────

def test_anomaly_config_roundtrip(client):
    defaults = client.get('/api/scada/anomaly-config', headers=HEADERS).get_json()
    assert defaults['performance_threshold'] == 15.0

    resp = client.put('/api/scada/anomaly-config', json={'availability_threshold': 95}, headers=HEADERS)
    assert resp.status_code == 200
    assert resp.get_json()['availability_threshold'] == 95.0

    bad = client.put('/api/scada/anomaly-config', json={'availability_threshold': 150}, headers=HEADERS)
    assert bad.status_code == 400


def test_detect_list_and_resolve(client, turbines, notifier):
    yesterday = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0) - timedelta(days=1)
    db.session.add(ScadaAvailability(turbine_id=turbines['t1'], tenant_id=TENANT, date=yesterday,
                                     period_type='DAILY', plant_no=1, t1=10 * 3600, t5=2 * 3600,
                                     availability_pct=40.0, source_file='AVR'))
    db.session.commit()

    run = client.post('/api/scada/anomalies/run', json={}, headers=HEADERS).get_json()
    assert run['detected'] == 1
    assert run['created'][0]['type'] == 'LOW_AVAILABILITY'
    assert run['created'][0]['severity'] == 'CRITICAL'
    assert len(notifier.sent) == 2

    listed = client.get('/api/scada/anomalies', query_string={'unresolved': '1'}, headers=HEADERS).get_json()
    assert len(listed) == 1
    assert listed[0]['turbine_name'] == 'WEA 01'

    resolved = client.post(f"/api/scada/anomalies/{listed[0]['id']}/resolve", json={'note': 'reset'},
                           headers=HEADERS)
    assert resolved.status_code == 200
    assert resolved.get_json()['resolution_note'] == 'reset'
    assert resolved.get_json()['resolved_at'] is not None

    assert client.get('/api/scada/anomalies', query_string={'unresolved': 'true'}, headers=HEADERS).get_json() == []


def test_resolve_unknown_anomaly(client):
    assert client.post('/api/scada/anomalies/999/resolve', headers=HEADERS).status_code == 404


# ─── Production ───────────────────────────────────────────────────────────────

def test_productions(client, turbines):
    t1 = turbines['t1']
    db.session.add_all([
        TurbineProduction(turbine_id=t1, tenant_id=TENANT, year=2024, month=6, production_kwh=812.5,
                          source='SCADA', status='DRAFT'),
        TurbineProduction(turbine_id=t1, tenant_id=TENANT, year=2023, month=12, production_kwh=1.0,
                          source='MANUAL', status='CONFIRMED'),
    ])
    db.session.commit()

    body = client.get(f'/api/turbine/{t1}/productions', headers=HEADERS).get_json()
    assert body['name'] == 'WEA 01'
    assert [(p['year'], p['month']) for p in body['productions']] == [(2023, 12), (2024, 6)]

    only_2024 = client.get(f'/api/turbine/{t1}/productions', query_string={'year': 2024}, headers=HEADERS)
    assert len(only_2024.get_json()['productions']) == 1


def test_productions_of_other_tenant(client, turbines):
    resp = client.get(f"/api/turbine/{turbines['other']}/productions", headers=HEADERS)
    assert resp.status_code == 404


# ─── Path validation ──────────────────────────────────────────────────────────

def test_scan_rejects_paths_leaving_the_base(client, base_path):
    touch(base_path.parent / 'other_tenant_site' / '2024' / '06' / '20240601.wsd')

    hop = client.get('/api/scada/scan', query_string={'location_code': '../other_tenant_site'}, headers=HEADERS)
    nested = client.get('/api/scada/scan', query_string={'location_code': 'Loc_1/../../x'}, headers=HEADERS)
    nul = client.get('/api/scada/scan', query_string={'location_code': 'Loc_1\0'}, headers=HEADERS)
    base = client.get('/api/scada/scan', query_string={'location_code': LOCATION, 'base_path': f'{base_path}/..'},
                      headers=HEADERS)

    assert [r.status_code for r in (hop, nested, nul, base)] == [400, 400, 400, 400]


def test_import_rejects_unsafe_location_and_base_path(client, turbines):
    hop = client.post('/api/scada/imports', json={'location_code': '../Loc_9999', 'file_type': 'WSD'},
                      headers=HEADERS)
    base = client.post('/api/scada/imports',
                       json={'location_code': LOCATION, 'file_type': 'WSD', 'base_path': '/data/../etc'},
                       headers=HEADERS)
    assert [r.status_code for r in (hop, base)] == [400, 400]
    assert ScadaImportLog.query.count() == 0


def test_import_file_paths_must_stay_in_site_or_upload_dir(app, client, turbines, base_path, reader, tmp_path):
    outside = touch(tmp_path / 'elsewhere' / '20240601.wsd')
    resp = client.post('/api/scada/imports',
                       json={'location_code': LOCATION, 'file_type': 'WSD', 'file_paths': [outside]},
                       headers=HEADERS)
    assert resp.status_code == 400

    app.config['SCADA_UPLOAD_PATH'] = str(tmp_path / 'uploads')
    uploaded = touch(tmp_path / 'uploads' / 'batch-1' / '20240601.wsd')
    in_site = touch(base_path / LOCATION / '2024' / '06' / '20240602.wsd')
    reader.records[uploaded] = [WsdRecord(timestamp=datetime(2024, 6, 1, 0, 10), plant_no=1, power_w=1000)]
    reader.records[in_site] = [WsdRecord(timestamp=datetime(2024, 6, 2, 0, 10), plant_no=1, power_w=1000)]

    resp = client.post('/api/scada/imports',
                       json={'location_code': LOCATION, 'file_type': 'WSD', 'file_paths': [uploaded, in_site]},
                       headers=HEADERS)
    assert resp.status_code == 202
    status = client.get(f"/api/scada/imports/{resp.get_json()['import_id']}", headers=HEADERS).get_json()
    assert status['records_imported'] == 2


def test_toggle_rejects_unsafe_auto_import_path(client, turbines):
    resp = client.put(f'/api/scada/auto-import/{LOCATION}',
                      json={'enabled': True, 'auto_import_path': '/data/scada/../../etc'}, headers=HEADERS)
    dotted = client.put('/api/scada/auto-import/Loc..5842', json={'enabled': True}, headers=HEADERS)
    assert [r.status_code for r in (resp, dotted)] == [400, 400]
