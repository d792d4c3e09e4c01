import os

import pytest

from app import create_app
from database import db, Turbine, ScadaTurbineMapping

TENANT = 'tenant-a'
LOCATION = 'Loc_5842'


class FakeReader:
    """Canned records per file path; paths in `broken` raise like a corrupt file."""

    def __init__(self):
        self.records = {}
        self.broken = set()
        self.calls = []

    def read(self, file_path, file_type):
        self.calls.append((file_path, file_type))
        if file_path in self.broken:
            raise IOError(f"corrupt file {os.path.basename(file_path)}")
        return list(self.records.get(file_path, []))


class RecordingNotifier:

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def notify(self, tenant_id, summary, channel):
        if self.fail:
            raise RuntimeError("mail server down")
        self.sent.append((tenant_id, summary, channel))


def touch(path) -> str:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b'')
    return str(path)


@pytest.fixture
def reader():
    return FakeReader()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def base_path(tmp_path):
    path = tmp_path / 'scada'
    path.mkdir()
    return path


@pytest.fixture
def app(base_path, reader, notifier):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'SQLALCHEMY_ENGINE_OPTIONS': {},
        'SCADA_BASE_PATH': str(base_path),
        'SCADA_IMPORT_IN_BACKGROUND': False,
        'ANOMALY_MAX_WORKERS': 1,
    }, reader=reader, notifier=notifier)

    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def turbines(app):
    """Two mapped turbines at LOCATION (plant 1 and 2) plus one turbine of another tenant."""
    t1 = Turbine(tenant_id=TENANT, name='WEA 01', park_name='Nordfeld', make='Enercon',
                 model='E-82', rated_power_kw=2000)
    t2 = Turbine(tenant_id=TENANT, name='WEA 02', park_name='Nordfeld', make='Enercon',
                 model='E-82', rated_power_kw=2000)
    other = Turbine(tenant_id='tenant-b', name='WEA 99', park_name='Elsewhere', rated_power_kw=3000)
    db.session.add_all([t1, t2, other])
    db.session.flush()
    db.session.add_all([
        ScadaTurbineMapping(tenant_id=TENANT, location_code=LOCATION, plant_no=1, turbine_id=t1.id),
        ScadaTurbineMapping(tenant_id=TENANT, location_code=LOCATION, plant_no=2, turbine_id=t2.id),
    ])
    db.session.commit()
    return {'t1': t1.id, 't2': t2.id, 'other': other.id}
