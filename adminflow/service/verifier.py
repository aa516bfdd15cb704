"""Side-effect free connectivity probes for candidate engine configs."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Optional

from pymongo.errors import (
    ConfigurationError,
    ConnectionFailure,
    ExecutionTimeout,
    InvalidURI,
    NetworkTimeout,
    OperationFailure,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from adminflow.logging import get_logger, mask_uri_password
from adminflow.service.errors import ConnectivityError
from adminflow.storage.base import StoreFactory
from adminflow.storage.models import EngineConfig, VerificationResult
from adminflow.storage.sqlite import open_sqlite

logger = get_logger(__name__)

# Stable error kinds and the operator-facing text for each
UNRESOLVABLE_HOST = "unresolvable_host"
CONNECTION_REFUSED = "connection_refused"
AUTHENTICATION_FAILED = "authentication_failed"
TIMEOUT = "timeout"
INVALID_URI = "invalid_uri"
FILE_MISSING = "file_missing"
FILE_LOCKED = "file_locked"
PERMISSION_DENIED = "permission_denied"
NOT_A_DATABASE = "not_a_database"
UNKNOWN = "unknown"

ERROR_MESSAGES = {
    UNRESOLVABLE_HOST: "host name could not be resolved",
    CONNECTION_REFUSED: "connection refused by the server",
    AUTHENTICATION_FAILED: "authentication failed, check user name and password",
    TIMEOUT: "server did not answer within the timeout",
    INVALID_URI: "connection URI is not valid",
    FILE_MISSING: "database file is missing",
    FILE_LOCKED: "database file is locked by another process",
    PERMISSION_DENIED: "permission denied opening the database file",
    NOT_A_DATABASE: "file is not a SQLite database",
    UNKNOWN: "connection failed",
}

_AUTH_FAILED_CODES = {18, 13}
_RESOLVE_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "no address associated",
    "temporary failure in name resolution",
    "name resolution",
    "dns",
)
_REFUSED_MARKERS = ("connection refused", "actively refused", "errno 111", "errno 61")
_AUTH_MARKERS = ("authentication failed", "auth failed", "bad auth")


def classify_mongo_error(exc: BaseException) -> str:
    """Map a driver exception onto one of the stable error kinds."""
    text = str(exc).lower()
    if isinstance(exc, InvalidURI):
        return INVALID_URI
    if isinstance(exc, ExecutionTimeout):
        return TIMEOUT
    if isinstance(exc, OperationFailure):
        if exc.code in _AUTH_FAILED_CODES or any(m in text for m in _AUTH_MARKERS):
            return AUTHENTICATION_FAILED
        return UNKNOWN
    if isinstance(exc, ConfigurationError):
        # SRV lookups fail with ConfigurationError when the host does not resolve
        if any(m in text for m in _RESOLVE_MARKERS):
            return UNRESOLVABLE_HOST
        return INVALID_URI
    if isinstance(exc, ConnectionFailure):
        if any(m in text for m in _AUTH_MARKERS):
            return AUTHENTICATION_FAILED
        if any(m in text for m in _RESOLVE_MARKERS):
            return UNRESOLVABLE_HOST
        if any(m in text for m in _REFUSED_MARKERS):
            return CONNECTION_REFUSED
        if isinstance(exc, (ServerSelectionTimeoutError, NetworkTimeout)):
            return TIMEOUT
        return UNKNOWN
    if isinstance(exc, ValueError):
        return INVALID_URI
    return UNKNOWN


def classify_sqlite_error(exc: BaseException) -> str:
    text = str(exc).lower()
    if isinstance(exc, PermissionError) or "readonly" in text or "permission" in text:
        return PERMISSION_DENIED
    if "locked" in text or "busy" in text:
        return FILE_LOCKED
    if "not a database" in text or "malformed" in text:
        return NOT_A_DATABASE
    if "unable to open" in text:
        return PERMISSION_DENIED
    return UNKNOWN


def _failure(engine: str, kind: str, target: str, reason: Optional[str] = None) -> VerificationResult:
    info = f"{ERROR_MESSAGES[kind]}: {target}"
    if reason and kind == UNKNOWN:
        info = f"{info} ({reason})"
    return VerificationResult(ok=False, info=info, engine=engine, error_kind=kind)


class ConnectionVerifier:
    """Attempts one lightweight round-trip against a candidate config.

    ``verify`` never raises for connectivity reasons and never mutates
    persisted state; each call owns its own connection or client.
    """

    def __init__(self, store_factory: StoreFactory) -> None:
        self.store_factory = store_factory

    @property
    def timeout_seconds(self) -> float:
        return self.store_factory.timeout_seconds

    def verify(self, cfg: EngineConfig) -> VerificationResult:
        if cfg.engine == "sqlite":
            result = self._verify_sqlite(cfg)
        elif cfg.engine == "mongodb":
            result = self._verify_mongo(cfg)
        else:
            result = VerificationResult(
                ok=False,
                info=f"unsupported engine: {cfg.engine}",
                engine=cfg.engine,
                error_kind=UNKNOWN,
            )
        logger.info(
            "connection_verified",
            engine=cfg.engine,
            target=mask_uri_password(cfg.location),
            ok=result.ok,
            error_kind=result.error_kind,
        )
        return result

    def _verify_sqlite(self, cfg: EngineConfig) -> VerificationResult:
        path = Path(cfg.sqlite_path)
        if not cfg.sqlite_path or not path.exists():
            return _failure("sqlite", FILE_MISSING, str(path))
        if path.is_dir():
            return _failure("sqlite", NOT_A_DATABASE, str(path))
        try:
            conn = open_sqlite(path)
        except (sqlite3.Error, OSError) as exc:
            return _failure("sqlite", classify_sqlite_error(exc), str(path), str(exc))
        try:
            conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
        except sqlite3.Error as exc:
            return _failure("sqlite", classify_sqlite_error(exc), str(path), str(exc))
        finally:
            conn.close()
        return VerificationResult(ok=True, info=f"SQLite database reachable: {path}", engine="sqlite")

    def _verify_mongo(self, cfg: EngineConfig) -> VerificationResult:
        target = mask_uri_password(cfg.mongo_uri) or "?"
        client = None
        try:
            client = self.store_factory.mongo_client(cfg.mongo_uri)
            client[cfg.mongo_db or "admin"].command("ping")
            version = self._server_version(client)
        except (PyMongoError, ValueError) as exc:
            kind = classify_mongo_error(exc)
            if kind == TIMEOUT:
                reason = f"{self.timeout_seconds:g}s"
                return VerificationResult(
                    ok=False,
                    info=f"{ERROR_MESSAGES[TIMEOUT]} ({reason}): {target}",
                    engine="mongodb",
                    error_kind=TIMEOUT,
                )
            return _failure("mongodb", kind, target, str(exc))
        finally:
            if client is not None:
                client.close()
        return VerificationResult(
            ok=True,
            info=f"MongoDB reachable, database {cfg.mongo_db}",
            engine="mongodb",
            server_version=version,
        )

    @staticmethod
    def _server_version(client) -> Optional[str]:
        try:
            return client.server_info().get("version")
        except PyMongoError:
            return None

    def ensure_reachable(self, cfg: EngineConfig) -> VerificationResult:
        """Verify ``cfg`` and raise :class:`ConnectivityError` when the probe fails."""
        result = self.verify(cfg)
        if not result.ok:
            raise ConnectivityError(
                result.info,
                detail={
                    "engine": result.engine,
                    "target": mask_uri_password(cfg.location),
                    "errorKind": result.error_kind,
                    "reason": result.info,
                },
            )
        return result
