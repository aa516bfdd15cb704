"""Durable holder of the single active engine selection."""

from __future__ import annotations

import json
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Optional, Union

from adminflow.config import EngineKind
from adminflow.logging import get_logger
from adminflow.service.errors import ValidationError, WriteError
from adminflow.service.fs import atomic_write_json, read_json
from adminflow.storage.models import EngineConfig

logger = get_logger(__name__)

_MONGO_SCHEMES = ("mongodb://", "mongodb+srv://")


class NotConfigured:
    """Sentinel returned by :meth:`EngineConfigStore.load` when nothing usable is persisted."""

    _instance: Optional["NotConfigured"] = None

    def __new__(cls) -> "NotConfigured":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_CONFIGURED"


NOT_CONFIGURED = NotConfigured()

LoadResult = Union[EngineConfig, NotConfigured]


def validate_engine_config(cfg: EngineConfig) -> EngineConfig:
    """Reject configs that could never be opened; returns a normalized copy."""
    engine = (cfg.engine or "").strip().lower()
    valid = {kind.value for kind in EngineKind}
    if engine not in valid:
        raise ValidationError(
            "unsupported database engine",
            detail={"engine": cfg.engine, "allowed": sorted(valid)},
        )
    cfg = replace(
        cfg,
        engine=engine,
        sqlite_path=(cfg.sqlite_path or "").strip(),
        mongo_uri=(cfg.mongo_uri or "").strip(),
        mongo_db=(cfg.mongo_db or "").strip(),
    )
    if engine == EngineKind.SQLITE.value and not cfg.sqlite_path:
        raise ValidationError("sqlitePath is required for the sqlite engine", detail={"field": "sqlitePath"})
    if engine == EngineKind.MONGODB.value:
        if not cfg.mongo_uri.startswith(_MONGO_SCHEMES):
            raise ValidationError(
                "mongoUri must start with mongodb:// or mongodb+srv://",
                detail={"field": "mongoUri"},
            )
        if not cfg.mongo_db:
            raise ValidationError("mongoDb is required for the mongodb engine", detail={"field": "mongoDb"})
    return cfg


def _parse(data: Any) -> LoadResult:
    if not isinstance(data, dict):
        return NOT_CONFIGURED
    try:
        return validate_engine_config(EngineConfig.from_external(data))
    except ValidationError:
        return NOT_CONFIGURED


class EngineConfigStore:
    """Persists the active :class:`EngineConfig` to a JSON file.

    ``load`` reads the file once and caches the result; ``save`` writes a temp
    file and renames it over the target, replacing the cache only on success.
    All writers serialize on one re-entrant lock, which callers can also hold
    across a longer sequence through :meth:`transaction`.
    """

    def __init__(self, path: Path, *, defaults: EngineConfig) -> None:
        self.path = Path(path)
        self.defaults = defaults
        self._lock = threading.RLock()
        self._cache: LoadResult = NOT_CONFIGURED
        self._loaded = False

    def transaction(self) -> threading.RLock:
        return self._lock

    def load(self, *, refresh: bool = False) -> LoadResult:
        with self._lock:
            if self._loaded and not refresh:
                return self._cache
            self._cache = self._read()
            self._loaded = True
            return self._cache

    def _read(self) -> LoadResult:
        if not self.path.exists():
            return NOT_CONFIGURED
        try:
            data = read_json(self.path)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("engine_config_unreadable", path=str(self.path), error=str(exc))
            return NOT_CONFIGURED
        result = _parse(data)
        if not result:
            logger.warning("engine_config_invalid", path=str(self.path))
        return result

    def current(self) -> EngineConfig:
        """Effective config: the persisted one, or the process defaults."""
        cfg = self.load()
        return cfg if isinstance(cfg, EngineConfig) else self.defaults

    def is_configured(self) -> bool:
        return isinstance(self.load(), EngineConfig)

    def save(self, cfg: EngineConfig) -> EngineConfig:
        cfg = validate_engine_config(cfg)
        with self._lock:
            try:
                atomic_write_json(self.path, cfg.to_external())
            except OSError as exc:
                logger.error("engine_config_write_failed", path=str(self.path), error=str(exc))
                raise WriteError(
                    "could not persist database configuration",
                    detail={"path": str(self.path), "reason": str(exc)},
                ) from exc
            self._cache = replace(cfg)
            self._loaded = True
        logger.info(
            "engine_config_saved",
            engine=cfg.engine,
            mongo_uri=cfg.mongo_uri,
            mongo_db=cfg.mongo_db,
            sqlite_path=cfg.sqlite_path,
        )
        return cfg

    def update(self, **changes: Any) -> EngineConfig:
        """Merge non-empty ``changes`` over the current config and save."""
        with self._lock:
            fields = {k: v for k, v in changes.items() if v not in (None, "")}
            return self.save(replace(self.current(), **fields))

    def clear(self) -> None:
        with self._lock:
            self.path.unlink(missing_ok=True)
            self._cache = NOT_CONFIGURED
            self._loaded = True
