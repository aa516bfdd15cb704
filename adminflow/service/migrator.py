"""One-directional bulk copy of the relational CRM tables into the document store."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from adminflow.logging import get_logger
from adminflow.storage.base import RecordStore
from adminflow.storage.errors import StoreError
from adminflow.storage.models import MigrationReport

logger = get_logger(__name__)

MIGRATION_TABLES = (
    "clients",
    "tickets",
    "contracts",
    "products",
    "budgets",
    "budget_items",
    "payments",
    "repository",
    "calendar_events",
)

# Columns stored as JSON text in SQLite that become structured values
JSON_FIELDS: Dict[str, Sequence[str]] = {
    "tickets": ("annotations", "attachments", "audioNotes"),
    "budgets": ("sections",),
}

DATE_FIELDS = ("createdAt", "updatedAt")

# The relational id moves here so the document store keeps its own _id
SOURCE_ID_FIELD = "sqliteId"

ProgressCallback = Callable[[float], None]


def parse_json_field(value: Any) -> Any:
    """Decode a JSON text column; anything unparseable becomes an empty list."""
    if isinstance(value, (list, dict)):
        return value
    if value is None or value == "":
        return []
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return []


def coerce_date(value: Any) -> Any:
    """Convert an ISO-8601 or SQLite timestamp string to a UTC datetime.

    Values that are not strings or do not parse are returned unchanged.
    """
    if not isinstance(value, str) or not value.strip():
        return value
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def transform_row(table: str, row: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(row)
    if "id" in doc:
        doc[SOURCE_ID_FIELD] = doc.pop("id")
    for field in JSON_FIELDS.get(table, ()):
        if field in doc:
            doc[field] = parse_json_field(doc[field])
    for field in DATE_FIELDS:
        if doc.get(field):
            doc[field] = coerce_date(doc[field])
    return doc


class Migrator:
    """Copies every migration table from ``source`` into ``target``.

    Each table is isolated: a failure while reading, transforming or inserting
    one table is logged and reported as ``0`` for that table, and the next
    table proceeds. Duplicate-key rejections are counted out of the per-table
    total rather than treated as failures.
    """

    def __init__(
        self,
        source: RecordStore,
        target: RecordStore,
        *,
        tables: Sequence[str] = MIGRATION_TABLES,
    ) -> None:
        self.source = source
        self.target = target
        self.tables = tuple(tables)

    def migrate_table(self, table: str) -> Dict[str, Any]:
        rows = self.source.read_all(table)
        if not rows:
            return {"inserted": 0, "duplicates": 0, "errors": []}
        docs = [transform_row(table, row) for row in rows]
        outcome = self.target.insert_many(table, docs)
        return {
            "inserted": outcome.inserted,
            "duplicates": outcome.duplicates,
            "errors": outcome.errors,
        }

    def migrate_all(
        self,
        progress: Optional[ProgressCallback] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> MigrationReport:
        report = MigrationReport()
        total = len(self.tables)
        for index, table in enumerate(self.tables):
            result = None
            if should_stop and should_stop():
                # remaining tables still get a key so the report is complete
                report.per_table[table] = 0
                report.errors[table] = "migration cancelled"
            else:
                result = self._migrate_isolated(table, report)
            if result is not None:
                report.per_table[table] = result["inserted"]
                if result["duplicates"]:
                    report.duplicates[table] = result["duplicates"]
                if result["errors"]:
                    report.errors[table] = "; ".join(result["errors"][:5])
                logger.info(
                    "migration_table_done",
                    table=table,
                    inserted=result["inserted"],
                    duplicates=result["duplicates"],
                )
            if progress:
                progress((index + 1) / total)
        logger.info("migration_complete", total_migrated=report.total_migrated, errors=len(report.errors))
        return report

    def _migrate_isolated(self, table: str, report: MigrationReport) -> Optional[Dict[str, Any]]:
        """Run one table; any failure is recorded on ``report`` and yields ``None``."""
        try:
            return self.migrate_table(table)
        except Exception as exc:
            logger.error(
                "migration_table_failed",
                table=table,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            report.per_table[table] = 0
            report.errors[table] = str(exc) or type(exc).__name__
            return None

    def compare(self) -> List[Dict[str, Any]]:
        """Row counts per table on both sides; unreadable tables count as 0."""
        rows = []
        for table in self.tables:
            source_count = self._safe_count(self.source, table)
            target_count = self._safe_count(self.target, table)
            rows.append({
                "table": table,
                "collection": table,
                "sqliteCount": source_count,
                "mongoCount": target_count,
                "inSync": source_count == target_count,
            })
        return rows

    @staticmethod
    def _safe_count(store: RecordStore, table: str) -> int:
        try:
            return store.count(table)
        except StoreError as exc:
            logger.warning("migration_count_failed", table=table, engine=store.engine, error=str(exc))
            return 0
