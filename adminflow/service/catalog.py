"""Fixed catalog of CRM collections and the structural completeness check."""

from __future__ import annotations

from typing import Dict, Iterable, List, Tuple

from adminflow.logging import get_logger
from adminflow.storage.base import RecordStore
from adminflow.storage.errors import StoreError
from adminflow.storage.models import CollectionDescriptor, CompletenessReport

logger = get_logger(__name__)

ASC = 1
DESC = -1


def _idx(*keys: Tuple[str, int], **options) -> tuple:
    return (tuple(keys), tuple(options.items()))


COLLECTIONS: Tuple[CollectionDescriptor, ...] = (
    CollectionDescriptor("clients", indexes=(
        _idx(("email", ASC), unique=True, sparse=True),
        _idx(("name", ASC)),
        _idx(("alias", ASC)),
        _idx(("contract", ASC)),
        _idx(("createdAt", DESC)),
    )),
    CollectionDescriptor("tickets", indexes=(
        _idx(("clientId", ASC)),
        _idx(("status", ASC)),
        _idx(("priority", ASC)),
        _idx(("createdAt", DESC)),
        _idx(("clientId", ASC), ("status", ASC)),
    )),
    CollectionDescriptor("contracts", indexes=(
        _idx(("clientId", ASC)),
        _idx(("status", ASC)),
        _idx(("startDate", ASC)),
        _idx(("endDate", ASC)),
    )),
    CollectionDescriptor("products", indexes=(
        _idx(("name", ASC)),
        _idx(("category", ASC)),
        _idx(("manufacturer", ASC)),
    )),
    CollectionDescriptor("budgets", indexes=(
        _idx(("clientId", ASC)),
        _idx(("status", ASC)),
        _idx(("createdAt", DESC)),
    )),
    CollectionDescriptor("budget_items", indexes=(
        _idx(("budgetId", ASC)),
        _idx(("productId", ASC)),
    )),
    CollectionDescriptor("payments", indexes=(
        _idx(("clientId", ASC)),
        _idx(("ticketId", ASC)),
        _idx(("status", ASC)),
        _idx(("createdAt", DESC)),
    )),
    CollectionDescriptor("repository"),
    CollectionDescriptor("calendar_events", indexes=(
        _idx(("start", ASC)),
        _idx(("sourceType", ASC), ("sourceId", ASC)),
    )),
    CollectionDescriptor("users", indexes=(
        _idx(("email", ASC), unique=True),
    )),
)

CATALOG: Dict[str, CollectionDescriptor] = {c.name: c for c in COLLECTIONS}

REQUIRED_COLLECTIONS: Tuple[str, ...] = tuple(
    c.name for c in COLLECTIONS if c.required_for_completeness
)


def check_completeness(store: RecordStore) -> CompletenessReport:
    """Compare the collections present on ``store`` with the required set.

    Presence is structural: an empty table or collection counts as present.
    Never mutates the target.
    """
    existing = set(store.list_collections())
    required = set(REQUIRED_COLLECTIONS)
    return CompletenessReport(
        total=len(existing),
        present_names=existing & required,
        missing_names=required - existing,
    )


def ensure_collections(store: RecordStore, names: Iterable[str]) -> Tuple[List[str], Dict[str, str]]:
    """Create each named collection that is missing, with its declared indexes.

    Creating an existing collection is a no-op. Failures are collected per
    collection instead of raised; returns ``(created, errors)``.
    """
    created: List[str] = []
    errors: Dict[str, str] = {}
    for name in sorted(names):
        descriptor = CATALOG.get(name, CollectionDescriptor(name))
        try:
            if store.create_collection(name, descriptor.indexes):
                created.append(name)
        except StoreError as exc:
            errors[name] = exc.message
            logger.warning("collection_create_failed", collection=name, error=exc.message)
    return created, errors
