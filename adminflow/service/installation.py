"""Installation state: uninstalled until a marker exists next to a usable engine config."""

from __future__ import annotations

import shutil
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from adminflow.logging import get_logger
from adminflow.service.backup import artifact_timestamp
from adminflow.service.catalog import REQUIRED_COLLECTIONS, check_completeness, ensure_collections
from adminflow.service.engine_config import EngineConfigStore, validate_engine_config
from adminflow.service.errors import ConflictError, IncompleteTargetError, WriteError
from adminflow.service.fs import atomic_write_json, read_json
from adminflow.service.verifier import ConnectionVerifier
from adminflow.storage.base import StoreFactory
from adminflow.storage.errors import StoreError
from adminflow.storage.models import EngineConfig, InstallationRecord, utcnow

logger = get_logger(__name__)

UNINSTALLED = "uninstalled"
INSTALLING = "installing"
INSTALLED = "installed"


def clean_mongo_uri(uri: str, database: str = "") -> str:
    """Drop a trailing ``/<database>`` segment and trailing slashes from a Mongo URI."""
    cleaned = (uri or "").strip().rstrip("/")
    if database and cleaned.endswith(f"/{database}"):
        cleaned = cleaned[: -(len(database) + 1)]
    return cleaned.rstrip("/")


class InstallationGate:
    """Tracks and drives the ``uninstalled -> installing -> installed`` lifecycle.

    ``installing`` is not persisted; it only exists while
    :meth:`complete_install` runs. The engine config is durably saved before
    the marker is written, so a crash in between leaves the system
    uninstalled rather than installed without a config.
    """

    def __init__(
        self,
        marker_path: Path,
        config_store: EngineConfigStore,
        verifier: ConnectionVerifier,
        store_factory: StoreFactory,
        *,
        version: str,
        environment: str,
    ) -> None:
        self.marker_path = Path(marker_path)
        self.config_store = config_store
        self.verifier = verifier
        self.store_factory = store_factory
        self.version = version
        self.environment = environment
        self._install_lock = threading.Lock()

    def is_installed(self) -> bool:
        return self.marker_path.exists() and self.config_store.is_configured()

    @property
    def state(self) -> str:
        if self._install_lock.locked():
            return INSTALLING
        return INSTALLED if self.is_installed() else UNINSTALLED

    def read_record(self) -> Optional[InstallationRecord]:
        if not self.marker_path.exists():
            return None
        try:
            data = read_json(self.marker_path)
            return InstallationRecord(
                installed_at=datetime.fromisoformat(str(data["installedAt"]).replace("Z", "+00:00")),
                version=str(data.get("version", "")),
                environment=str(data.get("environment", "")),
            )
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("install_marker_unreadable", path=str(self.marker_path), error=str(exc))
            return None

    def status(self) -> Dict[str, Any]:
        record = self.read_record()
        cfg = self.config_store.load()
        return {
            "installed": self.is_installed(),
            "state": self.state,
            "hasMarker": self.marker_path.exists(),
            "configured": isinstance(cfg, EngineConfig),
            "engine": cfg.engine if isinstance(cfg, EngineConfig) else None,
            "record": record.to_external() if record else None,
        }

    def _prepare_target(self, cfg: EngineConfig) -> List[str]:
        """Open (creating a SQLite file if needed) and create missing collections."""
        try:
            store = self.store_factory.open(cfg, create=cfg.engine == "sqlite")
        except StoreError as exc:
            raise IncompleteTargetError(
                "could not open the target database",
                detail={"engine": cfg.engine, "reason": exc.message},
            ) from exc
        try:
            report = check_completeness(store)
            created, errors = ensure_collections(store, report.missing_names)
            after = check_completeness(store)
        finally:
            store.close()
        if not after.complete:
            raise IncompleteTargetError(
                "target is missing required collections after auto-create",
                detail={"engine": cfg.engine, "missing": sorted(after.missing_names), "errors": errors},
            )
        return created

    def complete_install(self, cfg: EngineConfig) -> InstallationRecord:
        if self.is_installed():
            raise ConflictError("system is already installed", detail={"marker": str(self.marker_path)})
        if not self._install_lock.acquire(blocking=False):
            raise ConflictError("installation already in progress")
        try:
            if cfg.engine == "mongodb":
                cfg = replace(cfg, mongo_uri=clean_mongo_uri(cfg.mongo_uri, cfg.mongo_db))
            cfg = validate_engine_config(cfg)
            if cfg.engine == "mongodb":
                self.verifier.ensure_reachable(cfg)
            created = self._prepare_target(cfg)
            self.verifier.ensure_reachable(cfg)
            self.config_store.save(cfg)
            record = InstallationRecord(
                installed_at=utcnow(),
                version=self.version,
                environment=self.environment,
            )
            try:
                atomic_write_json(self.marker_path, record.to_external())
            except OSError as exc:
                raise WriteError(
                    "could not write installation marker",
                    detail={"path": str(self.marker_path), "reason": str(exc)},
                ) from exc
        finally:
            self._install_lock.release()
        logger.info(
            "installation_completed",
            engine=cfg.engine,
            version=record.version,
            environment=record.environment,
            created_collections=created,
        )
        return record

    def validate(self) -> Dict[str, Any]:
        """Installation health report; ``valid`` is false when any error is present."""
        errors: List[str] = []
        warnings: List[str] = []
        if not self.marker_path.exists():
            errors.append(f"installation marker not found: {self.marker_path}")
        else:
            record = self.read_record()
            if record is None:
                errors.append("installation marker is unreadable")
            elif record.version != self.version:
                warnings.append(f"installed version {record.version} differs from running version {self.version}")

        cfg = self.config_store.load(refresh=True)
        if not isinstance(cfg, EngineConfig):
            if self.config_store.path.exists():
                errors.append("database configuration is corrupt or invalid")
            else:
                errors.append(f"database configuration not found: {self.config_store.path}")
        else:
            result = self.verifier.verify(cfg)
            if not result.ok:
                errors.append(f"cannot connect to {cfg.engine}: {result.info}")
            else:
                try:
                    store = self.store_factory.open(cfg)
                except StoreError as exc:
                    warnings.append(f"could not inspect collections: {exc.message}")
                else:
                    try:
                        report = check_completeness(store)
                    except StoreError as exc:
                        warnings.append(f"could not inspect collections: {exc.message}")
                    else:
                        if not report.complete:
                            warnings.append("missing collections: " + ", ".join(sorted(report.missing_names)))
                    finally:
                        store.close()
        return {"valid": not errors, "errors": errors, "warnings": warnings}

    def clean(self, backup_dir: Path) -> Dict[str, Any]:
        """Back up then delete the marker and engine config, returning to uninstalled."""
        target = Path(backup_dir) / f"install_{artifact_timestamp(utcnow())}"
        removed: List[str] = []
        copied: List[str] = []
        with self.config_store.transaction():
            for path in (self.marker_path, self.config_store.path):
                if path.exists():
                    target.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(path, target / path.name)
                    copied.append(path.name)
            if self.marker_path.exists():
                self.marker_path.unlink()
                removed.append(str(self.marker_path))
            if self.config_store.path.exists():
                removed.append(str(self.config_store.path))
            self.config_store.clear()
        logger.warning("installation_cleaned", removed=removed, backup=str(target) if copied else None)
        return {"removed": removed, "backupLocation": str(target) if copied else None, "backedUp": copied}


__all__ = [
    "InstallationGate",
    "clean_mongo_uri",
    "REQUIRED_COLLECTIONS",
    "INSTALLED",
    "INSTALLING",
    "UNINSTALLED",
]
