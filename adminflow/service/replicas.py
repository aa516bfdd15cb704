"""Document-store server registry and primary-to-secondary replica sync."""

from __future__ import annotations

import json
import re
import threading
from dataclasses import fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import quote_plus, urlsplit

from pymongo.errors import PyMongoError

from adminflow.logging import get_logger, mask_uri_password
from adminflow.service.catalog import REQUIRED_COLLECTIONS, check_completeness
from adminflow.service.errors import ConflictError, NotFoundError, ValidationError, WriteError
from adminflow.service.fs import atomic_write_json, read_json
from adminflow.storage.base import RecordStore, StoreFactory
from adminflow.storage.errors import StoreError
from adminflow.storage.models import ServerDescriptor, SyncReport

logger = get_logger(__name__)

DEFAULT_SERVER_ID = "local"
_SERVER_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")
_REGISTRY_FIELDS = {f.name for f in fields(ServerDescriptor)} - {
    "role",
    "connection_status",
    "collections",
    "error",
}


def build_mongo_uri(host: str, port: int, username: str = "", password: str = "") -> str:
    if username and password:
        return f"mongodb://{quote_plus(username)}:{quote_plus(password)}@{host}:{port}"
    return f"mongodb://{host}:{port}"


def _normalize_uri(uri: str) -> str:
    """Scheme, hosts and credentials of a URI, ignoring path, query and trailing slash."""
    try:
        parts = urlsplit(uri.strip())
    except ValueError:
        return uri.strip()
    return f"{parts.scheme}://{parts.netloc}".lower()


class ServerRegistry:
    """Known MongoDB servers persisted as ``{currentServer, servers: [...]}``.

    A missing or unreadable file yields a registry with one ``local`` server.
    Every mutation rewrites the file atomically under a process-wide lock.
    """

    def __init__(self, path: Path, *, default_uri: str, default_database: str) -> None:
        self.path = Path(path)
        self.default_uri = default_uri
        self.default_database = default_database
        self._lock = threading.RLock()
        self._servers: Dict[str, ServerDescriptor] = {}
        self._current: Optional[str] = None
        self._load()

    def _default_server(self) -> ServerDescriptor:
        parts = urlsplit(self.default_uri)
        return ServerDescriptor(
            id=DEFAULT_SERVER_ID,
            name="Local Development",
            host=parts.hostname or "localhost",
            port=parts.port or 27017,
            database=self.default_database,
            uri=self.default_uri,
            description="Local MongoDB server",
        )

    def _load(self) -> None:
        data: Any = None
        if self.path.exists():
            try:
                data = read_json(self.path)
            except (OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
                logger.warning("server_registry_unreadable", path=str(self.path), error=str(exc))
        servers: Dict[str, ServerDescriptor] = {}
        if isinstance(data, dict):
            for raw in data.get("servers") or []:
                if not isinstance(raw, dict) or not raw.get("id"):
                    continue
                values = {k: v for k, v in raw.items() if k in _REGISTRY_FIELDS and v is not None}
                values.setdefault("name", values["id"])
                try:
                    values["port"] = int(values.get("port", 27017))
                except (TypeError, ValueError):
                    values["port"] = 27017
                servers[values["id"]] = ServerDescriptor(**values)
        if not servers:
            default = self._default_server()
            servers = {default.id: default}
        self._servers = servers
        current = data.get("currentServer") if isinstance(data, dict) else None
        self._current = current if current in servers else next(iter(servers))
        if not isinstance(data, dict):
            try:
                self._persist()
            except WriteError:
                logger.warning("server_registry_default_not_persisted", path=str(self.path))

    def _persist(self) -> None:
        payload = {
            "currentServer": self._current,
            "servers": [s.registry_dict() for s in self._servers.values()],
        }
        try:
            atomic_write_json(self.path, payload)
        except OSError as exc:
            logger.error("server_registry_write_failed", path=str(self.path), error=str(exc))
            raise WriteError(
                "could not persist server registry",
                detail={"path": str(self.path), "reason": str(exc)},
            ) from exc

    def list(self) -> List[ServerDescriptor]:
        with self._lock:
            return [replace(s) for s in self._servers.values()]

    def get(self, server_id: str) -> ServerDescriptor:
        with self._lock:
            server = self._servers.get(server_id)
            if server is None:
                raise NotFoundError("server not found", detail={"server": server_id})
            return replace(server)

    def current(self) -> Optional[ServerDescriptor]:
        with self._lock:
            if self._current is None:
                return None
            return replace(self._servers[self._current])

    def add(self, values: Dict[str, Any]) -> ServerDescriptor:
        server_id = str(values.get("id") or "").strip()
        if not _SERVER_ID_RE.match(server_id):
            raise ValidationError("server id is required (letters, digits, '-', '_', '.')", detail={"field": "id"})
        with self._lock:
            if server_id in self._servers:
                raise ConflictError("a server with that id already exists", detail={"server": server_id})
            server = ServerDescriptor(
                id=server_id,
                name=values.get("name") or server_id,
                host=values.get("host") or "localhost",
                port=int(values.get("port") or 27017),
                database=values.get("database") or self.default_database,
                uri=values.get("uri") or "",
                username=values.get("username") or "",
                password=values.get("password") or "",
                active=values.get("active") is not False,
                description=values.get("description") or "",
            )
            if not server.uri:
                server.uri = build_mongo_uri(server.host, server.port, server.username, server.password)
            self._servers[server.id] = server
            self._persist()
        logger.info("server_registered", server=server.id, uri=server.uri)
        return replace(server)

    def update(self, server_id: str, changes: Dict[str, Any]) -> ServerDescriptor:
        with self._lock:
            server = self._servers.get(server_id)
            if server is None:
                raise NotFoundError("server not found", detail={"server": server_id})
            allowed = {k: v for k, v in changes.items() if k in _REGISTRY_FIELDS - {"id"} and v is not None}
            if "port" in allowed:
                allowed["port"] = int(allowed["port"])
            updated = replace(server, **allowed)
            if {"host", "port", "username", "password"} & allowed.keys() and "uri" not in allowed:
                updated.uri = build_mongo_uri(updated.host, updated.port, updated.username, updated.password)
            self._servers[server_id] = updated
            self._persist()
        logger.info("server_updated", server=server_id, fields=sorted(allowed))
        return replace(updated)

    def remove(self, server_id: str) -> None:
        with self._lock:
            if server_id == self._current:
                raise ConflictError(
                    "cannot remove the current server; switch to another server first",
                    detail={"server": server_id},
                )
            if server_id not in self._servers:
                raise NotFoundError("server not found", detail={"server": server_id})
            del self._servers[server_id]
            self._persist()
        logger.info("server_removed", server=server_id)

    def set_current(self, server_id: str) -> ServerDescriptor:
        with self._lock:
            if server_id not in self._servers:
                raise NotFoundError("server not found", detail={"server": server_id})
            self._current = server_id
            self._persist()
            return replace(self._servers[server_id])

    def find_by_uri(self, uri: str, database: Optional[str] = None) -> Optional[ServerDescriptor]:
        """First server on ``uri``; when ``database`` is given it must match as well."""
        with self._lock:
            for server in self._servers.values():
                if targets_endpoint(server, uri, database):
                    return replace(server)
        return None

    def primary_id(self, active_uri: Optional[str], active_db: Optional[str] = None) -> Optional[str]:
        """The primary is the server holding the active engine config's database."""
        if active_uri:
            match = self.find_by_uri(active_uri, active_db)
            if match:
                return match.id
        return self._current


def targets_endpoint(server: ServerDescriptor, uri: str, database: Optional[str] = None) -> bool:
    """Whether ``server`` addresses ``uri`` (and ``database``, when given)."""
    if _normalize_uri(server.uri) != _normalize_uri(uri):
        return False
    return not database or server.database == database


def probe_server(server: ServerDescriptor, store_factory: StoreFactory) -> ServerDescriptor:
    """Return a copy of ``server`` with connection status and completeness filled in."""
    probed = replace(server)
    store = None
    try:
        store = store_factory.open_server(server)
        store.ping()
        probed.collections = check_completeness(store)
        probed.connection_status = "online"
    except (StoreError, PyMongoError, ValueError) as exc:
        probed.connection_status = "offline"
        probed.error = str(getattr(exc, "message", exc))
    finally:
        if store is not None:
            store.close()
    return probed


def servers_overview(
    registry: ServerRegistry,
    store_factory: StoreFactory,
    active_uri: Optional[str],
    active_db: Optional[str] = None,
) -> List[ServerDescriptor]:
    """Probe every registered server; exactly one is marked primary."""
    primary = registry.primary_id(active_uri, active_db)
    result = []
    for server in registry.list():
        probed = probe_server(server, store_factory)
        probed.role = "primary" if server.id == primary else "secondary"
        result.append(probed)
    return result


ProgressCallback = Callable[[float], None]
StopCheck = Callable[[], bool]
StoreOpener = Callable[[ServerDescriptor], RecordStore]


class ReplicaSynchronizer:
    """Brings secondary servers to exact parity with the primary.

    Per target and per required collection, the primary's documents replace
    the target's. A collection copy is the unit of progress; ``should_stop``
    is consulted between collections, and a stop leaves finished collections
    in place with the report marked interrupted. A target that fails its
    ping is skipped with an error entry and the remaining targets proceed.
    """

    def __init__(
        self,
        open_store: StoreOpener,
        *,
        collections: Sequence[str] = REQUIRED_COLLECTIONS,
    ) -> None:
        self.open_store = open_store
        self.collections = tuple(collections)

    def sync(
        self,
        primary: RecordStore,
        targets: Sequence[ServerDescriptor],
        progress: Optional[ProgressCallback] = None,
        should_stop: Optional[StopCheck] = None,
    ) -> SyncReport:
        report = SyncReport()
        primary_names = set(primary.list_collections())
        units = max(len(targets) * len(self.collections), 1)
        done = 0

        def advance(count: int = 1) -> None:
            nonlocal done
            done += count
            report.progress = done / units
            if progress:
                progress(report.progress)

        for target in targets:
            if report.interrupted:
                report.per_target[target.id] = "error: sync interrupted before this target"
                continue
            copied: Dict[str, int] = {}
            report.collections[target.id] = copied
            try:
                store = self.open_store(target)
            except (StoreError, PyMongoError, ValueError) as exc:
                report.per_target[target.id] = f"error: {exc}"
                logger.warning("replica_target_unavailable", server=target.id, error=str(exc))
                advance(len(self.collections))
                continue
            try:
                try:
                    store.ping()
                except StoreError as exc:
                    report.per_target[target.id] = f"error: target offline ({exc.message})"
                    logger.warning("replica_target_offline", server=target.id, error=exc.message)
                    advance(len(self.collections))
                    continue
                status = "ok"
                for position, name in enumerate(self.collections):
                    if should_stop and should_stop():
                        report.interrupted = True
                        status = "error: sync interrupted"
                        advance(len(self.collections) - position)
                        break
                    try:
                        docs = primary.read_all(name) if name in primary_names else []
                        copied[name] = store.replace_all(name, docs)
                    except StoreError as exc:
                        status = f"error: collection {name}: {exc.message}"
                        logger.warning(
                            "replica_collection_failed",
                            server=target.id,
                            collection=name,
                            error=exc.message,
                        )
                        advance(len(self.collections) - position)
                        break
                    advance()
                report.per_target[target.id] = status
            finally:
                store.close()
            logger.info(
                "replica_target_synced",
                server=target.id,
                uri=mask_uri_password(target.uri),
                status=report.per_target[target.id],
                collections=len(copied),
            )
        return report
