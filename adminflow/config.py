from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class EngineKind(str, Enum):
    """Storage engines the persistence layer can run against."""

    SQLITE = "sqlite"
    MONGODB = "mongodb"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings for the persistence engine service."""

    data_dir: str = env_field(
        ".",
        "ADMINFLOW_DATA_DIR",
        description="Root for relative state files (engine selection, marker, backups)",
    )
    engine_config_file: str = env_field(".selected-db.json", "ENGINE_CONFIG_FILE")
    install_marker_file: str = env_field(".installed", "INSTALL_MARKER_FILE")
    servers_config_file: str = env_field(
        "config/mongo-servers.json", "MONGO_SERVERS_FILE"
    )
    backup_dir: str = env_field("backup", "BACKUP_DIR")
    install_backup_dir: str = env_field(
        "backups/install", "INSTALL_BACKUP_DIR",
        description="Where the clean-install script copies marker and engine config",
    )
    # Defaults applied when no engine selection has been persisted yet
    default_engine: EngineKind = env_field(EngineKind.MONGODB, "DB_ENGINE")
    default_mongo_uri: str = env_field("mongodb://localhost:27017", "MONGO_URI")
    default_mongo_db: str = env_field("adminflow", "MONGO_DB")
    default_sqlite_path: str = env_field("database/database.sqlite", "SQLITE_PATH")
    verify_timeout_seconds: float = env_field(
        5.0,
        "DB_VERIFY_TIMEOUT_SECONDS",
        description="Upper bound for a single connectivity probe",
    )
    mongodump_path: str = env_field("mongodump", "MONGODUMP_PATH")
    mongorestore_path: str = env_field("mongorestore", "MONGORESTORE_PATH")
    backup_tool_timeout_seconds: int = env_field(
        3600, "BACKUP_TOOL_TIMEOUT_SECONDS"
    )
    job_workers: int = env_field(
        2, "JOB_WORKERS", description="Threads used for migration and sync jobs"
    )
    app_version: str = env_field("1.0.0", "APP_VERSION")
    environment: str = env_field("production", "APP_ENV")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("default_engine", mode="before")
    @classmethod
    def _validate_engine(cls, value: Any) -> EngineKind:
        return EngineKind(str(value).strip().lower())

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("verify_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("verify timeout must be positive")
        return value

    def resolve_path(self, value: str) -> Path:
        """Resolve a configured path against ``data_dir`` unless already absolute."""
        path = Path(value)
        if path.is_absolute():
            return path
        return Path(self.data_dir) / path

    @property
    def engine_config_path(self) -> Path:
        return self.resolve_path(self.engine_config_file)

    @property
    def install_marker_path(self) -> Path:
        return self.resolve_path(self.install_marker_file)

    @property
    def servers_config_path(self) -> Path:
        return self.resolve_path(self.servers_config_file)

    @property
    def backup_root(self) -> Path:
        return self.resolve_path(self.backup_dir)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
