from __future__ import annotations

from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from adminflow.storage.models import EngineConfig

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "not_found",
    "conflict",
    "connectivity_error",
    "incomplete_target",
    "write_error",
    "backup_tool_error",
    "restore_tool_error",
    "not_installed",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class EngineConfigRequest(BaseModel):
    """Wire shape of an engine selection, matching the persisted file."""

    model_config = ConfigDict(extra="forbid")

    engine: str = Field(..., max_length=32)
    mongoUri: Optional[str] = Field(default=None, max_length=2048)
    mongoDb: Optional[str] = Field(default=None, max_length=64)
    sqlitePath: Optional[str] = Field(default=None, max_length=4096)

    @field_validator("engine")
    @classmethod
    def _normalize_engine(cls, value: str) -> str:
        return value.strip().lower()

    def to_config(self, base: Optional[EngineConfig] = None) -> EngineConfig:
        """Build an :class:`EngineConfig`, filling omitted fields from ``base``."""
        return EngineConfig(
            engine=self.engine,
            mongo_uri=self.mongoUri if self.mongoUri is not None else (base.mongo_uri if base else ""),
            mongo_db=self.mongoDb if self.mongoDb is not None else (base.mongo_db if base else ""),
            sqlite_path=self.sqlitePath if self.sqlitePath is not None else (base.sqlite_path if base else ""),
        )


class SyncRequest(BaseModel):
    targets: Optional[List[str]] = Field(default=None, max_length=64)


class ServerCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1, max_length=64)
    name: Optional[str] = Field(default=None, max_length=255)
    host: str = Field(default="localhost", max_length=255)
    port: int = Field(default=27017, ge=1, le=65535)
    database: Optional[str] = Field(default=None, max_length=64)
    uri: Optional[str] = Field(default=None, max_length=2048)
    username: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=1024)
    active: bool = True
    description: Optional[str] = Field(default=None, max_length=1024)

    @field_validator("uri")
    @classmethod
    def _validate_uri(cls, value: Optional[str]) -> Optional[str]:
        if value and not value.startswith(("mongodb://", "mongodb+srv://")):
            raise ValueError("uri must start with mongodb:// or mongodb+srv://")
        return value


class ServerUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=255)
    host: Optional[str] = Field(default=None, max_length=255)
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    database: Optional[str] = Field(default=None, max_length=64)
    uri: Optional[str] = Field(default=None, max_length=2048)
    username: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=1024)
    active: Optional[bool] = None
    description: Optional[str] = Field(default=None, max_length=1024)

    @field_validator("uri")
    @classmethod
    def _validate_uri(cls, value: Optional[str]) -> Optional[str]:
        if value and not value.startswith(("mongodb://", "mongodb+srv://")):
            raise ValueError("uri must start with mongodb:// or mongodb+srv://")
        return value


class RestoreRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    confirm: bool = False
