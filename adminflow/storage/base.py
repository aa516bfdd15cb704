"""Engine-neutral record store contract.

Orchestration code (switching, migration, replica sync) is written only
against :class:`RecordStore`; each engine provides one implementation.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from pymongo import MongoClient

from adminflow.storage.errors import StoreUnavailable
from adminflow.storage.models import EngineConfig, InsertOutcome, ServerDescriptor
from adminflow.storage.mongo import MongoRecordStore
from adminflow.storage.sqlite import SQLiteRecordStore


class RecordStore(Protocol):
    engine: str

    def ping(self) -> None: ...

    def list_collections(self) -> List[str]: ...

    def read_all(self, collection: str) -> List[Dict[str, Any]]: ...

    def insert_many(
        self, collection: str, docs: Sequence[Dict[str, Any]]
    ) -> InsertOutcome: ...

    def create_collection(self, name: str, indexes: Iterable = ()) -> bool: ...

    def replace_all(self, collection: str, docs: Sequence[Dict[str, Any]]) -> int: ...

    def count(self, collection: str) -> int: ...

    def close(self) -> None: ...


MongoClientFactory = Callable[..., Any]


class StoreFactory:
    """Opens record stores for engine configs and registry servers.

    The Mongo client factory is injectable so tests can substitute an
    in-process client.
    """

    def __init__(
        self,
        mongo_client_factory: Optional[MongoClientFactory] = None,
        *,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.mongo_client_factory = mongo_client_factory or MongoClient
        self.timeout_seconds = timeout_seconds

    def mongo_client(self, uri: str):
        timeout_ms = int(self.timeout_seconds * 1000)
        return self.mongo_client_factory(
            uri,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
        )

    def open(self, cfg: EngineConfig, *, create: bool = False) -> RecordStore:
        """Open a store for ``cfg``.

        SQLite files are only created when ``create`` is set; otherwise a
        missing file raises :class:`StoreUnavailable`.
        """
        if cfg.engine == "sqlite":
            return SQLiteRecordStore(cfg.sqlite_path, create=create)
        if cfg.engine == "mongodb":
            return MongoRecordStore(self.mongo_client(cfg.mongo_uri), cfg.mongo_db)
        raise StoreUnavailable(f"unsupported engine: {cfg.engine}", {"engine": cfg.engine})

    def open_server(self, server: ServerDescriptor) -> RecordStore:
        return MongoRecordStore(self.mongo_client(server.uri), server.database)
