import datetime

import pytest

from harvest import app as flask_app
from harvest.services.catalog import CatalogService
from harvest.services.product_store import JsonRecordStore
from harvest.services.uploads import UploadStore

ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "harvest-test"


class FakeClock:
    def __init__(self, start=datetime.datetime(2025, 3, 1, 9, 0, tzinfo=datetime.UTC)):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, **delta):
        self.current = self.current + datetime.timedelta(**delta)
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def json_store(tmp_path, clock):
    store = JsonRecordStore(tmp_path / "data", "test-secret", backups=2, clock=clock)
    store.ensure_admin(ADMIN_USERNAME, ADMIN_PASSWORD)
    return store


@pytest.fixture
def uploads(tmp_path):
    return UploadStore(tmp_path / "uploads")


@pytest.fixture
def catalog(json_store, uploads):
    return CatalogService(json_store, uploads)


@pytest.fixture(autouse=True)
def configure_test_env(monkeypatch, catalog):
    flask_app.app.config.update(TESTING=True)
    talisman = flask_app.app.extensions.get("talisman")
    if talisman:
        talisman.force_https = False
    monkeypatch.setattr(flask_app, "_CATALOG", catalog)
    yield catalog


@pytest.fixture
def client():
    return flask_app.app.test_client()


@pytest.fixture
def admin_client():
    client = flask_app.app.test_client()
    with client.session_transaction() as session:
        session["user"] = {"username": ADMIN_USERNAME, "role": "admin"}
    return client
