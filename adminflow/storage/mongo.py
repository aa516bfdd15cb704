from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence

from pymongo.errors import BulkWriteError, CollectionInvalid, PyMongoError

from adminflow.logging import get_logger
from adminflow.storage.errors import CollectionCreateError, StoreError, StoreUnavailable
from adminflow.storage.models import InsertOutcome

logger = get_logger(__name__)

DUPLICATE_KEY_CODE = 11000


class MongoRecordStore:
    """Record store over one database of a MongoDB server."""

    engine = "mongodb"

    def __init__(self, client: Any, database: str) -> None:
        self.client = client
        self.database_name = database
        self.db = client[database]

    def ping(self) -> None:
        try:
            self.db.command("ping")
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc), {"database": self.database_name}) from exc

    def server_version(self) -> Optional[str]:
        try:
            return self.client.server_info().get("version")
        except PyMongoError:
            return None

    def list_collections(self) -> List[str]:
        try:
            return sorted(self.db.list_collection_names())
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc), {"database": self.database_name}) from exc

    def read_all(self, collection: str) -> List[Dict[str, Any]]:
        try:
            return list(self.db[collection].find({}))
        except PyMongoError as exc:
            raise StoreError(str(exc), {"collection": collection}) from exc

    def insert_many(self, collection: str, docs: Sequence[Dict[str, Any]]) -> InsertOutcome:
        """Unordered bulk insert; duplicate-key rejections are counted, not raised."""
        if not docs:
            return InsertOutcome()
        batch = [dict(doc) for doc in docs]
        try:
            result = self.db[collection].insert_many(batch, ordered=False)
        except BulkWriteError as exc:
            details = exc.details or {}
            write_errors = details.get("writeErrors", [])
            duplicates = [e for e in write_errors if e.get("code") == DUPLICATE_KEY_CODE]
            others = [
                str(e.get("errmsg", "write error"))
                for e in write_errors
                if e.get("code") != DUPLICATE_KEY_CODE
            ]
            return InsertOutcome(
                inserted=int(details.get("nInserted", 0)),
                duplicates=len(duplicates),
                errors=others,
            )
        except PyMongoError as exc:
            raise StoreError(str(exc), {"collection": collection}) from exc
        return InsertOutcome(inserted=len(result.inserted_ids))

    def create_collection(self, name: str, indexes: Iterable = ()) -> bool:
        if name in self.list_collections():
            return False
        try:
            self.db.create_collection(name)
        except CollectionInvalid:
            # created concurrently by someone else
            return False
        except PyMongoError as exc:
            raise CollectionCreateError(str(exc), {"collection": name}) from exc
        for keys, options in indexes:
            try:
                self.db[name].create_index(list(keys), **dict(options))
            except PyMongoError as exc:
                logger.warning(
                    "mongo_index_create_failed",
                    collection=name,
                    keys=list(keys),
                    error=str(exc),
                )
        logger.info("mongo_collection_created", collection=name, database=self.database_name)
        return True

    def replace_all(self, collection: str, docs: Sequence[Dict[str, Any]]) -> int:
        target = self.db[collection]
        try:
            target.delete_many({})
            if not docs:
                return 0
            result = target.insert_many([dict(doc) for doc in docs], ordered=False)
        except BulkWriteError as exc:
            details = exc.details or {}
            first = (details.get("writeErrors") or [{}])[0]
            raise StoreError(
                str(first.get("errmsg", "bulk write failed")),
                {"collection": collection, "inserted": details.get("nInserted", 0)},
            ) from exc
        except PyMongoError as exc:
            raise StoreError(str(exc), {"collection": collection}) from exc
        return len(result.inserted_ids)

    def count(self, collection: str) -> int:
        try:
            return int(self.db[collection].count_documents({}))
        except PyMongoError as exc:
            raise StoreError(str(exc), {"collection": collection}) from exc

    def close(self) -> None:
        self.client.close()
