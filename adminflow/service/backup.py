"""Point-in-time backups of the active engine and restores from them.

MongoDB backups shell out to ``mongodump``/``mongorestore``; the tools are
treated as opaque collaborators whose exit code and stderr are mapped onto
:class:`BackupToolError` / :class:`RestoreToolError`. SQLite backups use the
driver's online backup API. Restores carry no atomicity guarantee beyond
what the underlying tool provides.
"""

from __future__ import annotations

import io
import json
import sqlite3
import subprocess
import tarfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Type

from adminflow.logging import get_logger, mask_uri_password, sanitize_error_message
from adminflow.service.engine_config import EngineConfigStore
from adminflow.service.errors import (
    BackupToolError,
    ConflictError,
    NotFoundError,
    RestoreToolError,
    ServiceError,
    ValidationError,
)
from adminflow.service.fs import PathTraversalError, atomic_write_json, read_json, safe_join
from adminflow.storage.errors import StoreError
from adminflow.storage.models import BackupArtifact, EngineConfig, utcnow
from adminflow.storage.sqlite import SQLiteRecordStore

logger = get_logger(__name__)

METADATA_FILE = "_metadata.json"
DEFAULT_TOOL_TIMEOUT_SECONDS = 3600
MAX_NAME_ATTEMPTS = 1000

Runner = Callable[..., subprocess.CompletedProcess]


def artifact_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and ':' / '.' made filesystem-safe."""
    moment = moment.astimezone(timezone.utc)
    iso = moment.strftime("%Y-%m-%dT%H:%M:%S") + f".{moment.microsecond // 1000:03d}Z"
    return iso.replace(":", "-").replace(".", "-")


class BackupCoordinator:
    """Creates, lists, restores and archives backup artifacts.

    Backup and restore share one non-blocking lock: a request that arrives
    while the other operation is running is rejected with ``ConflictError``.
    """

    def __init__(
        self,
        config_store: EngineConfigStore,
        backup_root: Path,
        *,
        mongodump: str = "mongodump",
        mongorestore: str = "mongorestore",
        tool_timeout: int = DEFAULT_TOOL_TIMEOUT_SECONDS,
        runner: Optional[Runner] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config_store = config_store
        self.backup_root = Path(backup_root)
        self.mongodump = mongodump
        self.mongorestore = mongorestore
        self.tool_timeout = tool_timeout
        self.runner = runner or subprocess.run
        self.clock = clock
        self._lock = threading.Lock()

    @contextmanager
    def _exclusive(self, operation: str) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise ConflictError(
                "another backup or restore is in progress",
                detail={"operation": operation},
            )
        try:
            yield
        finally:
            self._lock.release()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def _reserve_directory(self, base_name: str) -> Path:
        """Create a fresh artifact directory, suffixing ``-N`` on collision."""
        try:
            self.backup_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupToolError(
                "could not create backup directory",
                detail={"location": str(self.backup_root), "reason": str(exc)},
            ) from exc
        candidate = self.backup_root / base_name
        for attempt in range(2, MAX_NAME_ATTEMPTS + 2):
            try:
                candidate.mkdir()
                return candidate
            except FileExistsError:
                candidate = self.backup_root / f"{base_name}-{attempt}"
            except OSError as exc:
                raise BackupToolError(
                    "could not create backup directory",
                    detail={"location": str(candidate), "reason": str(exc)},
                ) from exc
        raise BackupToolError(
            "could not allocate a unique backup name",
            detail={"location": str(self.backup_root), "name": base_name},
        )

    def _run_tool(
        self,
        command: List[str],
        error_cls: Type[ServiceError],
        location: Path,
    ) -> subprocess.CompletedProcess:
        tool = Path(command[0]).name
        try:
            completed = self.runner(
                command,
                capture_output=True,
                text=True,
                timeout=self.tool_timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise error_cls(
                f"{tool} is not installed or not on PATH",
                detail={"tool": tool, "location": str(location), "reason": str(exc)},
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise error_cls(
                f"{tool} did not finish within {self.tool_timeout}s",
                detail={"tool": tool, "location": str(location)},
            ) from exc
        if completed.returncode != 0:
            stderr = sanitize_error_message(completed.stderr or "")
            logger.error(
                "backup_tool_failed",
                tool=tool,
                exit_code=completed.returncode,
                location=str(location),
                stderr=stderr,
            )
            raise error_cls(
                f"{tool} exited with code {completed.returncode}",
                detail={
                    "tool": tool,
                    "exitCode": completed.returncode,
                    "stderr": stderr,
                    "location": str(location),
                },
            )
        return completed

    def _write_metadata(self, directory: Path, payload: Dict[str, Any]) -> None:
        try:
            atomic_write_json(directory / METADATA_FILE, payload)
        except OSError as exc:
            logger.warning("backup_metadata_write_failed", location=str(directory), error=str(exc))

    def create_backup(self) -> Dict[str, Any]:
        cfg = self.config_store.current()
        with self._exclusive("backup"):
            if cfg.engine == "mongodb":
                artifact = self._backup_mongo(cfg)
            else:
                artifact = self._backup_sqlite(cfg)
        logger.info("backup_created", name=artifact.name, engine=artifact.engine, location=artifact.location)
        return {"ok": True, "name": artifact.name, "location": artifact.location, "engine": artifact.engine}

    def _backup_mongo(self, cfg: EngineConfig) -> BackupArtifact:
        created_at = self.clock()
        directory = self._reserve_directory(f"{cfg.mongo_db}_{artifact_timestamp(created_at)}")
        command = [
            self.mongodump,
            f"--uri={cfg.mongo_uri}",
            f"--db={cfg.mongo_db}",
            f"--out={directory}",
        ]
        logger.info("backup_started", engine="mongodb", uri=mask_uri_password(cfg.mongo_uri), location=str(directory))
        # a failed dump leaves the directory in place for inspection
        self._run_tool(command, BackupToolError, directory)
        metadata = {
            "engine": "mongodb",
            "database": cfg.mongo_db,
            "createdAt": created_at.isoformat(),
        }
        self._write_metadata(directory, metadata)
        return BackupArtifact(directory.name, created_at, str(directory), "mongodb", metadata)

    def _backup_sqlite(self, cfg: EngineConfig) -> BackupArtifact:
        created_at = self.clock()
        source = Path(cfg.sqlite_path)
        directory = self._reserve_directory(f"{source.stem}_{artifact_timestamp(created_at)}")
        try:
            store = SQLiteRecordStore(source)
        except StoreError as exc:
            raise BackupToolError(
                "could not open the SQLite database",
                detail={"path": str(source), "location": str(directory), "reason": exc.message},
            ) from exc
        try:
            store.backup_to(directory / source.name)
        except sqlite3.Error as exc:
            raise BackupToolError(
                "SQLite backup failed",
                detail={"path": str(source), "location": str(directory), "reason": str(exc)},
            ) from exc
        finally:
            store.close()
        metadata = {
            "engine": "sqlite",
            "database": source.name,
            "file": source.name,
            "createdAt": created_at.isoformat(),
        }
        self._write_metadata(directory, metadata)
        return BackupArtifact(directory.name, created_at, str(directory), "sqlite", metadata)

    def _read_artifact(self, directory: Path) -> BackupArtifact:
        metadata: Dict[str, Any] = {}
        meta_path = directory / METADATA_FILE
        if meta_path.exists():
            try:
                loaded = read_json(meta_path)
                if isinstance(loaded, dict):
                    metadata = loaded
            except (OSError, json.JSONDecodeError):
                metadata = {}
        created_at = datetime.fromtimestamp(directory.stat().st_mtime, tz=timezone.utc)
        if isinstance(metadata.get("createdAt"), str):
            try:
                parsed = datetime.fromisoformat(metadata["createdAt"])
            except ValueError:
                parsed = None
            if parsed is not None:
                created_at = parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        return BackupArtifact(
            name=directory.name,
            created_at=created_at,
            location=str(directory),
            engine=str(metadata.get("engine", "")),
            metadata=metadata,
        )

    def list_backups(self) -> List[BackupArtifact]:
        """Artifacts under the backup root, newest first."""
        if not self.backup_root.exists():
            return []
        artifacts = [
            self._read_artifact(entry)
            for entry in self.backup_root.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        ]
        artifacts.sort(key=lambda a: (a.created_at, a.name), reverse=True)
        return artifacts

    def _locate(self, name: str) -> Path:
        if not name or name.startswith("."):
            raise ValidationError("invalid backup name", detail={"name": name})
        try:
            directory = safe_join(self.backup_root, name)
        except PathTraversalError as exc:
            raise ValidationError("invalid backup name", detail={"name": name, "reason": str(exc)}) from exc
        if directory.parent != self.backup_root.resolve() or not directory.is_dir():
            raise NotFoundError("backup not found", detail={"name": name})
        return directory

    def restore_backup(self, name: str, *, confirm: bool = False) -> Dict[str, Any]:
        """Replace all data in the active store with the artifact ``name``.

        ``confirm`` must be true; restore is destructive and unconditional.
        """
        if not confirm:
            raise ValidationError(
                "restore replaces all current data and must be explicitly confirmed",
                detail={"name": name, "field": "confirm"},
            )
        directory = self._locate(name)
        artifact = self._read_artifact(directory)
        cfg = self.config_store.current()
        if artifact.engine and artifact.engine != cfg.engine:
            raise ValidationError(
                "backup was taken from a different engine than the active one",
                detail={"name": name, "backupEngine": artifact.engine, "activeEngine": cfg.engine},
            )
        with self._exclusive("restore"):
            logger.warning("restore_started", name=name, engine=cfg.engine)
            if cfg.engine == "mongodb":
                self._restore_mongo(cfg, directory, artifact)
            else:
                self._restore_sqlite(cfg, directory, artifact)
        logger.info("restore_completed", name=name, engine=cfg.engine)
        return {"ok": True, "name": name, "engine": cfg.engine}

    def _restore_mongo(self, cfg: EngineConfig, directory: Path, artifact: BackupArtifact) -> None:
        source_db = artifact.metadata.get("database") or cfg.mongo_db
        command = [
            self.mongorestore,
            f"--uri={cfg.mongo_uri}",
            "--drop",
            f"--nsInclude={source_db}.*",
        ]
        if source_db != cfg.mongo_db:
            command += [f"--nsFrom={source_db}.*", f"--nsTo={cfg.mongo_db}.*"]
        command.append(str(directory))
        self._run_tool(command, RestoreToolError, directory)

    def _restore_sqlite(self, cfg: EngineConfig, directory: Path, artifact: BackupArtifact) -> None:
        file_name = artifact.metadata.get("file") or Path(cfg.sqlite_path).name
        source = directory / file_name
        if not source.is_file():
            raise NotFoundError(
                "backup does not contain a SQLite file",
                detail={"name": artifact.name, "file": file_name},
            )
        try:
            store = SQLiteRecordStore(cfg.sqlite_path, create=True)
        except StoreError as exc:
            raise RestoreToolError(
                "could not open the active SQLite database",
                detail={"path": cfg.sqlite_path, "reason": exc.message},
            ) from exc
        try:
            store.restore_from(source)
        except sqlite3.Error as exc:
            raise RestoreToolError(
                "SQLite restore failed",
                detail={"path": cfg.sqlite_path, "location": str(directory), "reason": str(exc)},
            ) from exc
        finally:
            store.close()

    def archive(self, name: str) -> bytes:
        """A ``.tar.gz`` of the artifact directory for download."""
        directory = self._locate(name)
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
            tar.add(str(directory), arcname=directory.name)
        return buffer.getvalue()
