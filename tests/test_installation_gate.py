import json

import pytest
from fastapi.testclient import TestClient

from adminflow.app import app, is_install_exempt
from adminflow.service.errors import ConflictError, ConnectivityError
from adminflow.service.installation import INSTALLED, UNINSTALLED, clean_mongo_uri
from adminflow.service.runtime import get_runtime
from adminflow.storage.models import EngineConfig


def test_clean_mongo_uri():
    assert clean_mongo_uri("mongodb://db:27017/crm", "crm") == "mongodb://db:27017"
    assert clean_mongo_uri("mongodb://db:27017/", "crm") == "mongodb://db:27017"
    assert clean_mongo_uri("mongodb://db:27017", "crm") == "mongodb://db:27017"
    assert clean_mongo_uri("mongodb://db:27017/crm/", "crm") == "mongodb://db:27017"


@pytest.mark.parametrize(
    "path, exempt",
    [
        ("/api/install/status", True),
        ("/healthz", True),
        ("/static/app.js", True),
        ("/_next/chunk.js", True),
        ("/uploads/a.png", True),
        ("/api/system/database", False),
        ("/api/installer", False),
        ("/staticfiles", False),
    ],
)
def test_exempt_paths(path, exempt):
    assert is_install_exempt(path) is exempt


class TestInstallationGate:
    def test_fresh_system_is_uninstalled(self):
        gate = get_runtime().installation
        assert not gate.is_installed()
        assert gate.state == UNINSTALLED
        assert gate.status()["hasMarker"] is False

    def test_marker_without_config_is_not_installed(self):
        runtime = get_runtime()
        runtime.installation.marker_path.parent.mkdir(parents=True, exist_ok=True)
        runtime.installation.marker_path.write_text("{}")
        assert not runtime.installation.is_installed()

    def test_complete_install_with_sqlite_creates_database(self, tmp_path):
        runtime = get_runtime()
        db_path = tmp_path / "fresh" / "crm.sqlite"

        record = runtime.installation.complete_install(EngineConfig(engine="sqlite", sqlite_path=str(db_path)))

        assert db_path.exists()
        assert runtime.installation.is_installed()
        assert runtime.installation.state == INSTALLED
        marker = json.loads(runtime.installation.marker_path.read_text())
        assert marker["version"] == record.version
        assert runtime.config_store.load(refresh=True).sqlite_path == str(db_path)

    def test_complete_install_with_mongo_normalizes_uri(self, mongo_runtime):
        mongo_runtime.installation.complete_install(
            EngineConfig(engine="mongodb", mongo_uri="mongodb://db:27017/crm/", mongo_db="crm")
        )
        saved = mongo_runtime.config_store.load(refresh=True)
        assert saved.mongo_uri == "mongodb://db:27017"
        assert saved.mongo_db == "crm"

    def test_install_twice_conflicts(self, tmp_path):
        runtime = get_runtime()
        cfg = EngineConfig(engine="sqlite", sqlite_path=str(tmp_path / "crm.sqlite"))
        runtime.installation.complete_install(cfg)
        with pytest.raises(ConflictError):
            runtime.installation.complete_install(cfg)

    def test_unreachable_target_writes_nothing(self, mongo_runtime, monkeypatch):
        def unreachable(cfg):
            raise ConnectivityError("server did not answer", detail={"engine": cfg.engine})

        monkeypatch.setattr(mongo_runtime.verifier, "ensure_reachable", unreachable)
        with pytest.raises(ConnectivityError):
            mongo_runtime.installation.complete_install(
                EngineConfig(engine="mongodb", mongo_uri="mongodb://db:27017", mongo_db="crm")
            )
        assert not mongo_runtime.installation.marker_path.exists()
        assert not mongo_runtime.config_store.path.exists()

    def test_validate_reports_errors_then_passes(self, tmp_path):
        gate = get_runtime().installation
        report = gate.validate()
        assert report["valid"] is False
        assert any("marker" in e for e in report["errors"])

        gate.complete_install(EngineConfig(engine="sqlite", sqlite_path=str(tmp_path / "crm.sqlite")))
        assert gate.validate() == {"valid": True, "errors": [], "warnings": []}

    def test_clean_backs_up_then_removes(self, tmp_path):
        runtime = get_runtime()
        runtime.installation.complete_install(EngineConfig(engine="sqlite", sqlite_path=str(tmp_path / "crm.sqlite")))

        result = runtime.installation.clean(tmp_path / "install-backups")

        assert not runtime.installation.is_installed()
        assert not runtime.installation.marker_path.exists()
        assert not runtime.config_store.path.exists()
        backed_up = sorted(p.name for p in (tmp_path / "install-backups").iterdir())
        assert len(backed_up) == 1
        assert sorted(result["backedUp"]) == [".installed", ".selected-db.json"]


class TestInstallationMiddleware:
    def test_routes_are_blocked_until_installed(self):
        client = TestClient(app)
        response = client.get("/api/system/database")

        assert response.status_code == 503
        body = response.json()
        assert body["redirectTo"] == "/install"
        assert body["error"] == "not_installed"
        assert "no-store" in response.headers["cache-control"]

    def test_install_routes_stay_reachable(self):
        client = TestClient(app)
        response = client.get("/api/install/status")
        assert response.status_code == 200
        assert response.json()["data"]["installed"] is False

    def test_install_flow_over_http(self, tmp_path):
        client = TestClient(app)
        db_path = tmp_path / "crm.sqlite"

        test_db = client.post("/api/install/test-db", json={"engine": "sqlite", "sqlitePath": str(db_path)})
        assert test_db.status_code == 200
        assert test_db.json()["data"]["ok"] is False

        done = client.post("/api/install/complete", json={"engine": "sqlite", "sqlitePath": str(db_path)})
        assert done.status_code == 201
        assert done.json()["data"]["installed"] is True

        unblocked = client.get("/api/system/database")
        assert unblocked.status_code == 200
        assert unblocked.json()["data"]["engine"] == "sqlite"

        again = client.post("/api/install/complete", json={"engine": "sqlite", "sqlitePath": str(db_path)})
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "conflict"

    def test_relative_sqlite_path_is_anchored_at_data_dir(self, tmp_path):
        client = TestClient(app)

        done = client.post("/api/install/complete", json={"engine": "sqlite", "sqlitePath": "db/crm.sqlite"})

        assert done.status_code == 201
        expected = tmp_path / "state" / "db" / "crm.sqlite"
        assert done.json()["data"]["config"]["sqlitePath"] == str(expected)
        assert expected.exists()
        assert get_runtime().config_store.load(refresh=True).sqlite_path == str(expected)
