import importlib
import io
import shutil
import subprocess
import tarfile

import pytest
from fastapi.testclient import TestClient

from adminflow import app as app_module
from adminflow.storage.models import EngineConfig

MONGO_URI = "mongodb://db:27017"


class FakeRunner:
    def __init__(self):
        self.calls = []

    def __call__(self, command, **kwargs):
        self.calls.append(command)
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")


@pytest.fixture
def installed(mongo_runtime, sqlite_db):
    """A runtime installed against mongomock with ``sqlite_db`` as migration source."""
    mongo_runtime.installation.complete_install(
        EngineConfig(engine="mongodb", mongo_uri=MONGO_URI, mongo_db="crm", sqlite_path=str(sqlite_db))
    )
    return mongo_runtime


@pytest.fixture
def client(installed):
    return TestClient(app_module.app)


def test_request_id_is_echoed(client):
    response = client.get("/api/system/database", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["API-Version"] == app_module.__version__


def test_health_reports_database_and_installation(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["engine"] == "mongodb"
    assert body["checks"]["installation"]["status"] == "installed"


def test_allowed_origins_default():
    origins = app_module._allowed_origins()
    assert "http://localhost:3000" in origins


def test_allowed_origins_override(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://crm.example.com, https://admin.example.com")
    reloaded = importlib.reload(app_module)
    try:
        assert reloaded._allowed_origins() == ["https://crm.example.com", "https://admin.example.com"]
    finally:
        monkeypatch.delenv("CORS_ALLOW_ORIGINS")
        importlib.reload(app_module)


class TestEngineConfigRoutes:
    def test_get_returns_active_config(self, client):
        data = client.get("/api/system/database").json()["data"]
        assert data["engine"] == "mongodb"
        assert data["mongoUri"] == MONGO_URI
        assert data["configured"] is True

    def test_post_merges_fields(self, client):
        response = client.post("/api/system/database", json={"engine": "mongodb", "mongoDb": "crm2"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["mongoDb"] == "crm2"
        assert data["mongoUri"] == MONGO_URI

    def test_post_rejects_unknown_engine(self, client):
        response = client.post("/api/system/database", json={"engine": "postgres"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_verify_does_not_persist(self, client, tmp_path):
        missing = tmp_path / "nope.sqlite"
        response = client.post("/api/system/database/verify", json={"engine": "sqlite", "sqlitePath": str(missing)})

        assert response.json()["data"]["ok"] is False
        assert client.get("/api/system/database").json()["data"]["engine"] == "mongodb"

    def test_overview(self, client):
        data = client.get("/api/system/database/overview").json()["data"]
        assert data["verification"]["ok"] is True
        assert data["collections"]["complete"] is True
        assert data["installation"]["installed"] is True
        assert any(server["id"] == "local" for server in data["servers"])

    def test_select_switches_engine(self, client, sqlite_db):
        response = client.post("/api/db/select", json={"engine": "sqlite", "sqlitePath": str(sqlite_db)})

        assert response.status_code == 200
        assert response.json()["data"]["config"]["engine"] == "sqlite"
        assert client.get("/api/system/database").json()["data"]["engine"] == "sqlite"

    def test_select_resolves_relative_sqlite_path(self, client, sqlite_db, tmp_path):
        state_dir = tmp_path / "state"
        state_dir.mkdir(exist_ok=True)
        shutil.copy(sqlite_db, state_dir / "copy.sqlite")

        response = client.post("/api/db/select", json={"engine": "sqlite", "sqlitePath": "copy.sqlite"})

        assert response.status_code == 200
        assert response.json()["data"]["config"]["sqlitePath"] == str(state_dir / "copy.sqlite")

    def test_post_resolves_relative_sqlite_path(self, client, tmp_path):
        response = client.post("/api/system/database", json={"engine": "sqlite", "sqlitePath": "crm.sqlite"})

        assert response.json()["data"]["sqlitePath"] == str(tmp_path / "state" / "crm.sqlite")

    def test_select_unreachable_keeps_previous(self, client, tmp_path):
        response = client.post(
            "/api/db/select", json={"engine": "sqlite", "sqlitePath": str(tmp_path / "missing.sqlite")}
        )

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "connectivity_error"
        assert client.get("/api/system/database").json()["data"]["engine"] == "mongodb"


class TestJobRoutes:
    def test_migration_then_compare(self, client, installed):
        response = client.post("/api/db/migrate-to-mongo")
        assert response.status_code == 202
        job_id = response.json()["data"]["id"]

        installed.jobs.wait(job_id, timeout=10)
        job = client.get(f"/api/db/jobs/{job_id}").json()["data"]
        assert job["status"] == "completed"
        assert job["result"]["perTable"]["clients"] == 2
        assert job["result"]["totalMigrated"] == 4

        compare = client.get("/api/db/compare").json()["data"]
        assert compare["inSync"] is True
        clients_row = next(row for row in compare["tables"] if row["table"] == "clients")
        assert clients_row["sqliteCount"] == clients_row["mongoCount"] == 2

    def test_sync_copies_primary_to_secondary(self, client, installed):
        client.post("/api/mongo-servers", json={"id": "replica", "uri": "mongodb://replica:27017"})

        response = client.post("/api/db/sync", json={"targets": ["replica"]})
        assert response.status_code == 202
        job = installed.jobs.wait(response.json()["data"]["id"], timeout=10)

        assert job.status == "completed"
        assert job.result["perTarget"] == {"replica": "ok"}

    def test_sync_rejects_primary_as_target(self, client):
        response = client.post("/api/db/sync", json={"targets": ["local"]})
        assert response.status_code == 400

    def test_unknown_job_uses_error_envelope(self, client):
        response = client.get("/api/db/jobs/missing")

        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"
        assert body["error"]["details"] == {"jobId": "missing"}


class TestServerRoutes:
    def test_crud(self, client):
        created = client.post(
            "/api/mongo-servers",
            json={"id": "b", "host": "10.0.0.9", "port": 27018, "username": "u", "password": "pw"},
        )
        assert created.status_code == 201
        assert "password" not in created.json()["data"]
        assert "pw@" not in created.json()["data"]["uri"]

        listing = client.get("/api/mongo-servers").json()["data"]
        assert listing["currentServer"] == "local"
        assert {s["id"] for s in listing["servers"]} == {"local", "b"}

        updated = client.put("/api/mongo-servers/b", json={"port": 27019})
        assert updated.json()["data"]["port"] == 27019

        tested = client.post("/api/mongo-servers/b/test").json()["data"]
        assert tested["server"] == "b"
        assert tested["ok"] is True

        deleted = client.delete("/api/mongo-servers/b")
        assert deleted.json()["data"] == {"id": "b", "deleted": True}
        remaining = client.get("/api/mongo-servers").json()["data"]["servers"]
        assert [s["id"] for s in remaining] == ["local"]

    def test_set_current_server(self, client):
        client.post("/api/mongo-servers", json={"id": "b", "uri": "mongodb://b:27017"})

        response = client.post("/api/mongo-servers/b/current")

        assert response.json()["data"] == {"currentServer": "b"}
        assert client.get("/api/mongo-servers").json()["data"]["currentServer"] == "b"
        assert client.post("/api/mongo-servers/zzz/current").status_code == 404

    def test_duplicate_server(self, client):
        response = client.post("/api/mongo-servers", json={"id": "local"})
        assert response.status_code == 409

    def test_current_server_cannot_be_removed(self, client):
        assert client.delete("/api/mongo-servers/local").status_code == 409

    def test_bad_uri_scheme(self, client):
        response = client.post("/api/mongo-servers", json={"id": "x", "uri": "http://x"})
        assert response.status_code == 422


class TestBackupRoutes:
    def test_create_list_download_restore(self, client, installed):
        runner = FakeRunner()
        installed.backups.runner = runner

        created = client.post("/api/system/backups")
        assert created.status_code == 201
        name = created.json()["data"]["name"]
        assert name.startswith("crm_")

        items = client.get("/api/system/backups").json()["data"]["items"]
        assert [item["name"] for item in items] == [name]

        download = client.get(f"/api/system/backups/{name}/download")
        assert download.status_code == 200
        assert download.headers["content-type"] == "application/gzip"
        with tarfile.open(fileobj=io.BytesIO(download.content), mode="r:gz") as tar:
            assert f"{name}/_metadata.json" in tar.getnames()

        refused = client.post("/api/system/backups/restore", json={"name": name})
        assert refused.status_code == 400

        restored = client.post("/api/system/backups/restore", json={"name": name, "confirm": True})
        assert restored.status_code == 200
        assert runner.calls[-1][0] == "mongorestore"

    def test_download_unknown(self, client):
        assert client.get("/api/system/backups/nothing/download").status_code == 404
