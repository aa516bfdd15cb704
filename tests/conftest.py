import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Point state files at a temp directory before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="adminflow_test_")
os.environ.setdefault("ADMINFLOW_DATA_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("DB_VERIFY_TIMEOUT_SECONDS", "0.5")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import mongomock  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from adminflow.service import runtime as runtime_module  # noqa: E402
from adminflow.service.catalog import REQUIRED_COLLECTIONS, ensure_collections  # noqa: E402
from adminflow.service.runtime import reset_runtime_for_tests  # noqa: E402
from adminflow.storage.base import StoreFactory  # noqa: E402
from adminflow.storage.sqlite import SQLiteRecordStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("ADMINFLOW_DATA_DIR", str(tmp_path / "state"))
    reset_runtime_for_tests()
    yield
    if runtime_module.runtime is not None:
        runtime_module.runtime.close()


@pytest.fixture
def mongo_client_factory():
    """A MongoClient stand-in that returns one in-process client per URI."""
    clients = {}

    def factory(uri, **_kwargs):
        if uri not in clients:
            clients[uri] = mongomock.MongoClient()
        return clients[uri]

    factory.clients = clients
    return factory


@pytest.fixture
def store_factory(mongo_client_factory):
    return StoreFactory(mongo_client_factory, timeout_seconds=0.5)


@pytest.fixture
def mongo_runtime(store_factory):
    """Runtime whose MongoDB access goes through mongomock."""
    return reset_runtime_for_tests(store_factory=store_factory)


@pytest.fixture
def sqlite_db(tmp_path) -> Path:
    """A SQLite file with every CRM table and a few rows."""
    path = tmp_path / "crm.sqlite"
    store = SQLiteRecordStore(path, create=True)
    try:
        ensure_collections(store, REQUIRED_COLLECTIONS)
        store.insert_many("clients", [
            {"id": 1, "name": "Acme", "email": "ops@acme.test", "createdAt": "2024-01-02 10:00:00"},
            {"id": 2, "name": "Globex", "email": "it@globex.test", "createdAt": "2024-02-03T08:30:00Z"},
        ])
        store.insert_many("tickets", [
            {
                "id": 10,
                "client_id": 1,
                "title": "Printer offline",
                "status": "open",
                "priority": "high",
                "annotations": '[{"text": "called"}]',
                "attachments": "not json",
                "audioNotes": None,
            },
        ])
        store.insert_many("budgets", [
            {"id": 5, "client_id": 2, "title": "Network refresh", "sections": '{"items": 3}'},
        ])
    finally:
        store.close()
    return path


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
