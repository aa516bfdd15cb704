from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from adminflow.logging import mask_uri_password


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EngineConfig:
    """The single active engine selection and its connection parameters."""

    engine: str
    sqlite_path: str = ""
    mongo_uri: str = ""
    mongo_db: str = ""

    @property
    def location(self) -> str:
        """Human-readable target used in logs and error details."""
        if self.engine == "sqlite":
            return self.sqlite_path
        return f"{self.mongo_uri}/{self.mongo_db}"

    def to_external(self) -> Dict[str, str]:
        """Persisted and wire shape: ``{engine, mongoUri, mongoDb, sqlitePath}``."""
        return {
            "engine": self.engine,
            "mongoUri": self.mongo_uri,
            "mongoDb": self.mongo_db,
            "sqlitePath": self.sqlite_path,
        }

    @classmethod
    def from_external(cls, data: Dict[str, Any]) -> "EngineConfig":
        return cls(
            engine=str(data.get("engine") or ""),
            sqlite_path=str(data.get("sqlitePath") or ""),
            mongo_uri=str(data.get("mongoUri") or ""),
            mongo_db=str(data.get("mongoDb") or ""),
        )


@dataclass
class InstallationRecord:
    installed_at: datetime
    version: str
    environment: str

    def to_external(self) -> Dict[str, str]:
        return {
            "installedAt": self.installed_at.isoformat(),
            "version": self.version,
            "environment": self.environment,
        }


@dataclass(frozen=True)
class CollectionDescriptor:
    name: str
    required_for_completeness: bool = True
    # (keys, options) pairs; keys is a list of (field, direction)
    indexes: tuple = ()


@dataclass
class CompletenessReport:
    """Structural presence of required collections on one target.

    ``total`` counts every collection that exists on the target, required or not.
    """

    total: int
    present_names: set = field(default_factory=set)
    missing_names: set = field(default_factory=set)

    @property
    def complete(self) -> bool:
        return not self.missing_names

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "presentNames": sorted(self.present_names),
            "missingNames": sorted(self.missing_names),
            "complete": self.complete,
        }


@dataclass
class VerificationResult:
    ok: bool
    info: str
    engine: str
    error_kind: Optional[str] = None
    server_version: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"engine": self.engine, "ok": self.ok, "info": self.info}
        if self.error_kind:
            payload["errorKind"] = self.error_kind
        if self.server_version:
            payload["serverVersion"] = self.server_version
        return payload


@dataclass
class ServerDescriptor:
    """A known document-store server.

    Registry fields are persisted; ``role``, ``connection_status`` and
    ``collections`` are filled in by probing.
    """

    id: str
    name: str
    host: str = "localhost"
    port: int = 27017
    database: str = "adminflow"
    uri: str = ""
    username: str = ""
    password: str = ""
    active: bool = True
    description: str = ""
    role: str = "secondary"
    connection_status: str = "offline"
    collections: Optional[CompletenessReport] = None
    error: Optional[str] = None

    def registry_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "uri": self.uri,
            "username": self.username,
            "password": self.password,
            "active": self.active,
            "description": self.description,
        }

    def public_dict(self) -> Dict[str, Any]:
        """Serializable view without the stored password."""
        payload = self.registry_dict()
        payload.pop("password")
        payload["uri"] = mask_uri_password(self.uri)
        payload["hasPassword"] = bool(self.password)
        payload["role"] = self.role
        payload["connectionStatus"] = self.connection_status
        payload["collections"] = self.collections.as_dict() if self.collections else None
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class InsertOutcome:
    """Per-batch result of an unordered bulk insert."""

    inserted: int = 0
    duplicates: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class MigrationReport:
    per_table: Dict[str, int] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    duplicates: Dict[str, int] = field(default_factory=dict)

    @property
    def total_migrated(self) -> int:
        return sum(self.per_table.values())

    def as_dict(self) -> Dict[str, Any]:
        return {
            "perTable": dict(self.per_table),
            "totalMigrated": self.total_migrated,
            "duplicates": dict(self.duplicates),
            "errors": dict(self.errors),
        }


@dataclass
class SyncReport:
    per_target: Dict[str, str] = field(default_factory=dict)
    collections: Dict[str, Dict[str, int]] = field(default_factory=dict)
    progress: float = 0.0
    interrupted: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "perTarget": dict(self.per_target),
            "collections": {k: dict(v) for k, v in self.collections.items()},
            "progress": self.progress,
            "interrupted": self.interrupted,
        }


@dataclass
class BackupArtifact:
    name: str
    created_at: datetime
    location: str
    engine: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "createdAt": self.created_at.isoformat(),
            "location": self.location,
            "engine": self.engine,
            "metadata": dict(self.metadata),
        }


@dataclass
class Job:
    id: str
    kind: str
    status: str = "queued"
    progress: float = 0.0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def done(self) -> bool:
        return self.status in {"completed", "failed"}

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        payload["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return payload


@dataclass
class SwitchResult:
    config: EngineConfig
    before: CompletenessReport
    after: CompletenessReport
    created: List[str] = field(default_factory=list)
    steps: List[str] = field(default_factory=list)
