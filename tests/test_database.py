import pytest

import database
from app import create_app
from database import UnsupportedDatabase, ScadaMeasurement, insert_skip_duplicates


def test_insert_skip_duplicates_needs_on_conflict_support(app, monkeypatch):
    monkeypatch.setattr(database, '_INSERT_BY_DIALECT', {})
    with pytest.raises(UnsupportedDatabase):
        insert_skip_duplicates(ScadaMeasurement, [{'turbine_id': 1}])


def test_create_app_refuses_unsupported_database(monkeypatch):
    monkeypatch.setattr(database, '_INSERT_BY_DIALECT', {'postgresql': None})
    with pytest.raises(UnsupportedDatabase, match="'sqlite'"):
        create_app({'SQLALCHEMY_DATABASE_URI': 'sqlite://', 'SQLALCHEMY_ENGINE_OPTIONS': {}})
