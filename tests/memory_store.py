from __future__ import annotations

import copy
import threading
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence

from adminflow.storage.errors import CollectionCreateError, StoreError, StoreUnavailable
from adminflow.storage.models import InsertOutcome


class MemoryRecordStore:
    """In-process record store with the same surface as the engine stores.

    ``unique_fields`` maps a collection to field names that must be unique;
    ``online=False`` makes every call fail as an unreachable server would,
    and ``read_only=True`` rejects collection creation.
    """

    engine = "memory"

    def __init__(
        self,
        collections: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        *,
        unique_fields: Optional[Dict[str, Sequence[str]]] = None,
        online: bool = True,
        read_only: bool = False,
    ) -> None:
        self.collections: Dict[str, List[Dict[str, Any]]] = {
            name: [copy.deepcopy(doc) for doc in docs]
            for name, docs in (collections or {}).items()
        }
        self.unique_fields = {k: tuple(v) for k, v in (unique_fields or {}).items()}
        self.online = online
        self.read_only = read_only
        self.closed = False
        self._lock = threading.RLock()

    def _check_online(self) -> None:
        if not self.online:
            raise StoreUnavailable("server offline")

    def ping(self) -> None:
        self._check_online()

    def list_collections(self) -> List[str]:
        self._check_online()
        with self._lock:
            return sorted(self.collections)

    def read_all(self, collection: str) -> List[Dict[str, Any]]:
        self._check_online()
        with self._lock:
            if collection not in self.collections:
                raise StoreError(f"no such collection: {collection}", {"collection": collection})
            return [copy.deepcopy(doc) for doc in self.collections[collection]]

    def _is_duplicate(self, collection: str, doc: Dict[str, Any]) -> bool:
        existing = self.collections.get(collection, [])
        keys = ("_id",) + self.unique_fields.get(collection, ())
        for key in keys:
            value = doc.get(key)
            if value is None:
                continue
            if any(other.get(key) == value for other in existing):
                return True
        return False

    def insert_many(self, collection: str, docs: Sequence[Dict[str, Any]]) -> InsertOutcome:
        self._check_online()
        outcome = InsertOutcome()
        with self._lock:
            bucket = self.collections.setdefault(collection, [])
            for doc in docs:
                if self._is_duplicate(collection, doc):
                    outcome.duplicates += 1
                    continue
                stored = copy.deepcopy(dict(doc))
                stored.setdefault("_id", uuid.uuid4().hex)
                bucket.append(stored)
                outcome.inserted += 1
        return outcome

    def create_collection(self, name: str, indexes: Iterable = ()) -> bool:
        self._check_online()
        with self._lock:
            if name in self.collections:
                return False
            if self.read_only:
                raise CollectionCreateError("store is read-only", {"collection": name})
            self.collections[name] = []
            return True

    def replace_all(self, collection: str, docs: Sequence[Dict[str, Any]]) -> int:
        self._check_online()
        with self._lock:
            self.collections[collection] = []
            return self.insert_many(collection, docs).inserted

    def count(self, collection: str) -> int:
        self._check_online()
        with self._lock:
            return len(self.collections.get(collection, []))

    def close(self) -> None:
        self.closed = True
