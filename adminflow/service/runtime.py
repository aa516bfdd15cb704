from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

from adminflow.config import Settings, get_settings, reset_settings_cache
from adminflow.logging import get_logger, mask_uri_password
from adminflow.service.backup import BackupCoordinator
from adminflow.service.catalog import check_completeness, ensure_collections
from adminflow.service.engine_config import EngineConfigStore
from adminflow.service.errors import ConnectivityError, ValidationError
from adminflow.service.installation import InstallationGate
from adminflow.service.jobs import JobRunner
from adminflow.service.migrator import MIGRATION_TABLES, Migrator
from adminflow.service.replicas import ReplicaSynchronizer, ServerRegistry, servers_overview, targets_endpoint
from adminflow.service.switcher import EngineSwitcher
from adminflow.service.verifier import ConnectionVerifier
from adminflow.storage.base import RecordStore, StoreFactory
from adminflow.storage.errors import StoreError
from adminflow.storage.models import EngineConfig, Job, ServerDescriptor

logger = get_logger(__name__)

MIGRATION_JOB = "migration"
SYNC_JOB = "sync"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store_factory: Optional[StoreFactory] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            data_dir=self.settings.data_dir,
            default_engine=self.settings.default_engine.value,
            test_mode=self.settings.test_mode,
        )
        self.store_factory = store_factory or StoreFactory(
            timeout_seconds=self.settings.verify_timeout_seconds
        )
        self.config_store = EngineConfigStore(
            self.settings.engine_config_path,
            defaults=EngineConfig(
                engine=self.settings.default_engine.value,
                sqlite_path=str(self.settings.resolve_path(self.settings.default_sqlite_path)),
                mongo_uri=self.settings.default_mongo_uri,
                mongo_db=self.settings.default_mongo_db,
            ),
        )
        self.verifier = ConnectionVerifier(self.store_factory)
        self.switcher = EngineSwitcher(self.config_store, self.verifier, self.store_factory)
        self.servers = ServerRegistry(
            self.settings.servers_config_path,
            default_uri=self.settings.default_mongo_uri,
            default_database=self.settings.default_mongo_db,
        )
        self.synchronizer = ReplicaSynchronizer(self.store_factory.open_server)
        self.backups = BackupCoordinator(
            self.config_store,
            self.settings.backup_root,
            mongodump=self.settings.mongodump_path,
            mongorestore=self.settings.mongorestore_path,
            tool_timeout=self.settings.backup_tool_timeout_seconds,
        )
        self.installation = InstallationGate(
            self.settings.install_marker_path,
            self.config_store,
            self.verifier,
            self.store_factory,
            version=self.settings.app_version,
            environment=self.settings.environment,
        )
        self.jobs = JobRunner(self.settings.job_workers)
        active = self.config_store.load()
        logger.info(
            "runtime_init_completed",
            configured=bool(active),
            engine=self.config_store.current().engine,
            installed=self.installation.is_installed(),
        )

    def resolve_config(self, cfg: EngineConfig) -> EngineConfig:
        """Anchor a relative ``sqlite_path`` at the data directory."""
        path = (cfg.sqlite_path or "").strip()
        if not path:
            return cfg
        return replace(cfg, sqlite_path=str(self.settings.resolve_path(path)))

    def migration_endpoints(self) -> tuple[EngineConfig, EngineConfig]:
        """Relational source and document target for a migration, from the effective config."""
        cfg = self.config_store.current()
        defaults = self.config_store.defaults
        source = EngineConfig(engine="sqlite", sqlite_path=cfg.sqlite_path or defaults.sqlite_path)
        target = EngineConfig(
            engine="mongodb",
            mongo_uri=cfg.mongo_uri or defaults.mongo_uri,
            mongo_db=cfg.mongo_db or defaults.mongo_db,
        )
        return source, target

    def _open(self, cfg: EngineConfig) -> RecordStore:
        try:
            return self.store_factory.open(cfg)
        except StoreError as exc:
            raise ConnectivityError(
                exc.message,
                detail={"engine": cfg.engine, "target": mask_uri_password(cfg.location), "reason": exc.message},
            ) from exc

    def start_migration(self) -> Job:
        source_cfg, target_cfg = self.migration_endpoints()
        self.verifier.ensure_reachable(source_cfg)
        self.verifier.ensure_reachable(target_cfg)

        def run(report_progress, should_stop) -> Dict[str, Any]:
            source = self._open(source_cfg)
            try:
                target = self._open(target_cfg)
                try:
                    missing = check_completeness(target).missing_names
                    ensure_collections(target, missing)
                    migrator = Migrator(source, target, tables=MIGRATION_TABLES)
                    return migrator.migrate_all(report_progress, should_stop).as_dict()
                finally:
                    target.close()
            finally:
                source.close()

        return self.jobs.submit(MIGRATION_JOB, run)

    def compare(self) -> List[Dict[str, Any]]:
        source_cfg, target_cfg = self.migration_endpoints()
        source = self._open(source_cfg)
        try:
            target = self._open(target_cfg)
            try:
                return Migrator(source, target).compare()
            finally:
                target.close()
        finally:
            source.close()

    def _sync_targets(self, cfg: EngineConfig, primary_id: Optional[str], target_ids: Optional[Sequence[str]]) -> List[ServerDescriptor]:
        def is_active(server: ServerDescriptor) -> bool:
            return server.id == primary_id or targets_endpoint(server, cfg.mongo_uri, cfg.mongo_db)

        if target_ids:
            targets = [self.servers.get(server_id) for server_id in target_ids]
            for target in targets:
                if is_active(target):
                    raise ValidationError(
                        "the primary server cannot be a sync target",
                        detail={"server": target.id, "primary": primary_id},
                    )
            return targets
        return [s for s in self.servers.list() if s.active and not is_active(s)]

    def start_sync(self, target_ids: Optional[Sequence[str]] = None) -> Job:
        cfg = self.config_store.current()
        if cfg.engine != "mongodb":
            raise ValidationError(
                "replica sync requires the mongodb engine to be active",
                detail={"engine": cfg.engine},
            )
        primary_id = self.servers.primary_id(cfg.mongo_uri, cfg.mongo_db)
        targets = self._sync_targets(cfg, primary_id, target_ids)
        if not targets:
            raise ValidationError("no secondary servers to sync", detail={"primary": primary_id})
        self.verifier.ensure_reachable(cfg)

        def run(report_progress, should_stop) -> Dict[str, Any]:
            primary = self._open(cfg)
            try:
                report = self.synchronizer.sync(primary, targets, report_progress, should_stop)
            finally:
                primary.close()
            payload = report.as_dict()
            payload["primary"] = primary_id
            return payload

        return self.jobs.submit(SYNC_JOB, run)

    def servers_overview(self) -> List[ServerDescriptor]:
        cfg = self.config_store.current()
        if cfg.engine != "mongodb":
            return servers_overview(self.servers, self.store_factory, None)
        return servers_overview(self.servers, self.store_factory, cfg.mongo_uri, cfg.mongo_db)

    def overview(self) -> Dict[str, Any]:
        """Active engine, its reachability and completeness, and known servers."""
        cfg = self.config_store.current()
        verification = self.verifier.verify(cfg)
        completeness = None
        if verification.ok:
            try:
                store = self.store_factory.open(cfg)
            except StoreError as exc:
                logger.warning("overview_store_unavailable", engine=cfg.engine, error=exc.message)
            else:
                try:
                    completeness = check_completeness(store).as_dict()
                except StoreError as exc:
                    logger.warning("overview_completeness_failed", engine=cfg.engine, error=exc.message)
                finally:
                    store.close()
        return {
            "config": cfg.to_external(),
            "configured": self.config_store.is_configured(),
            "verification": verification.as_dict(),
            "collections": completeness,
            "servers": [s.public_dict() for s in self.servers_overview()],
            "installation": self.installation.status(),
        }

    def close(self) -> None:
        self.jobs.shutdown(wait=False)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**kwargs: Any) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, **kwargs)
        return runtime
