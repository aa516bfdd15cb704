from __future__ import annotations

import json
import sqlite3
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence

from adminflow.logging import get_logger
from adminflow.storage.errors import CollectionCreateError, StoreError, StoreUnavailable
from adminflow.storage.models import InsertOutcome

logger = get_logger(__name__)

DEFAULT_BUSY_TIMEOUT_SECONDS = 5.0

# Column layout of the CRM tables; used when a missing table has to be created.
SQLITE_TABLES: Dict[str, str] = {
    "users": """
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email TEXT UNIQUE NOT NULL,
        password TEXT NOT NULL
    """,
    "clients": """
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        alias TEXT,
        rut TEXT,
        email TEXT UNIQUE,
        phone TEXT,
        address TEXT,
        latitude REAL,
        longitude REAL,
        contract BOOLEAN DEFAULT FALSE,
        notifications_enabled BOOLEAN DEFAULT TRUE,
        createdAt DATETIME DEFAULT CURRENT_TIMESTAMP,
        updatedAt DATETIME DEFAULT CURRENT_TIMESTAMP
    """,
    "repository": """
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        client_id INTEGER NOT NULL,
        equipo TEXT,
        usuario TEXT,
        password TEXT,
        mac_serie TEXT,
        comentarios TEXT,
        createdAt DATETIME DEFAULT CURRENT_TIMESTAMP,
        updatedAt DATETIME DEFAULT CURRENT_TIMESTAMP
    """,
    "tickets": """
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        client_id INTEGER NOT NULL,
        title TEXT NOT NULL,
        status TEXT NOT NULL,
        priority TEXT NOT NULL,
        amount REAL,
        visit BOOLEAN,
        annotations TEXT,
        description TEXT,
        attachments TEXT,
        audioNotes TEXT,
        createdAt DATETIME DEFAULT CURRENT_TIMESTAMP,
        updatedAt DATETIME DEFAULT CURRENT_TIMESTAMP
    """,
    "calendar_events": """
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        location TEXT,
        start TEXT NOT NULL,
        end TEXT,
        source_type TEXT DEFAULT 'manual',
        source_id TEXT,
        locked BOOLEAN DEFAULT 0,
        createdAt DATETIME DEFAULT CURRENT_TIMESTAMP,
        updatedAt DATETIME DEFAULT CURRENT_TIMESTAMP
    """,
    "contracts": """
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        client_id INTEGER NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        startDate TEXT,
        endDate TEXT,
        status TEXT,
        sla TEXT,
        contractType TEXT,
        amount REAL,
        file_path TEXT,
        createdAt DATETIME DEFAULT CURRENT_TIMESTAMP,
        updatedAt DATETIME DEFAULT CURRENT_TIMESTAMP
    """,
    "products": """
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        description TEXT,
        manufacturer TEXT,
        category TEXT,
        price_uyu REAL NOT NULL DEFAULT 0,
        price_usd REAL NOT NULL DEFAULT 0,
        badge TEXT NOT NULL DEFAULT 'Servicio',
        image_url TEXT,
        createdAt DATETIME DEFAULT CURRENT_TIMESTAMP,
        updatedAt DATETIME DEFAULT CURRENT_TIMESTAMP
    """,
    "budgets": """
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        client_id INTEGER NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        amount REAL,
        status TEXT,
        sections TEXT,
        file_path TEXT,
        createdAt DATETIME DEFAULT CURRENT_TIMESTAMP,
        updatedAt DATETIME DEFAULT CURRENT_TIMESTAMP
    """,
    "budget_items": """
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        budget_id INTEGER NOT NULL,
        product_id INTEGER,
        description TEXT NOT NULL,
        quantity INTEGER NOT NULL,
        unit_price REAL NOT NULL
    """,
    "payments": """
        id TEXT PRIMARY KEY,
        invoice TEXT,
        ticket_id TEXT,
        ticket_title TEXT,
        client TEXT,
        client_id INTEGER,
        concept TEXT,
        amount REAL NOT NULL,
        status TEXT,
        method TEXT,
        note TEXT,
        currency TEXT,
        createdAt DATETIME DEFAULT CURRENT_TIMESTAMP
    """,
}

_GENERIC_TABLE = """
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        data TEXT,
        createdAt DATETIME DEFAULT CURRENT_TIMESTAMP,
        updatedAt DATETIME DEFAULT CURRENT_TIMESTAMP
"""


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _to_column_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def open_sqlite(path: str | Path, *, create: bool = False, readonly: bool = False) -> sqlite3.Connection:
    """Open a SQLite file through a URI so a missing file is never created implicitly."""
    db_path = Path(path)
    if create:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        mode = "rwc"
    else:
        mode = "ro" if readonly else "rw"
    uri = f"{db_path.resolve().as_uri()}?mode={mode}"
    return sqlite3.connect(
        uri,
        uri=True,
        timeout=DEFAULT_BUSY_TIMEOUT_SECONDS,
        check_same_thread=False,
    )


class SQLiteRecordStore:
    """Record store over a single SQLite file."""

    engine = "sqlite"

    def __init__(self, path: str | Path, *, create: bool = False) -> None:
        self.path = Path(path)
        if not create and not self.path.exists():
            raise StoreUnavailable(
                f"database file is missing: {self.path}", {"path": str(self.path)}
            )
        try:
            self._conn = open_sqlite(self.path, create=create)
        except sqlite3.Error as exc:
            raise StoreUnavailable(str(exc), {"path": str(self.path)}) from exc
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()

    def ping(self) -> None:
        try:
            with self._lock:
                self._conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
        except sqlite3.Error as exc:
            raise StoreUnavailable(str(exc), {"path": str(self.path)}) from exc

    def list_collections(self) -> List[str]:
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'table' "
                    "AND name NOT LIKE 'sqlite_%' ORDER BY name"
                ).fetchall()
        except sqlite3.Error as exc:
            raise StoreUnavailable(str(exc), {"path": str(self.path)}) from exc
        return [row["name"] for row in rows]

    def _columns(self, table: str) -> List[str]:
        rows = self._conn.execute(f"PRAGMA table_info({_quote(table)})").fetchall()
        return [row["name"] for row in rows]

    def read_all(self, collection: str) -> List[Dict[str, Any]]:
        try:
            with self._lock:
                rows = self._conn.execute(f"SELECT * FROM {_quote(collection)}").fetchall()
        except sqlite3.Error as exc:
            raise StoreError(str(exc), {"table": collection}) from exc
        return [dict(row) for row in rows]

    def _insert_rows(self, table: str, docs: Sequence[Dict[str, Any]]) -> InsertOutcome:
        outcome = InsertOutcome()
        columns = set(self._columns(table))
        for doc in docs:
            row = {k: _to_column_value(v) for k, v in doc.items() if k in columns}
            if not row:
                outcome.errors.append("no matching columns")
                continue
            names = ", ".join(_quote(name) for name in row)
            marks = ", ".join("?" for _ in row)
            try:
                self._conn.execute(
                    f"INSERT INTO {_quote(table)} ({names}) VALUES ({marks})",
                    list(row.values()),
                )
                outcome.inserted += 1
            except sqlite3.IntegrityError as exc:
                if "UNIQUE" in str(exc).upper():
                    outcome.duplicates += 1
                else:
                    outcome.errors.append(str(exc))
        return outcome

    def insert_many(self, collection: str, docs: Sequence[Dict[str, Any]]) -> InsertOutcome:
        if not docs:
            return InsertOutcome()
        try:
            with self._lock, self._conn:
                return self._insert_rows(collection, docs)
        except sqlite3.Error as exc:
            raise StoreError(str(exc), {"table": collection}) from exc

    def create_collection(self, name: str, indexes: Iterable = ()) -> bool:
        if name in self.list_collections():
            return False
        body = SQLITE_TABLES.get(name, _GENERIC_TABLE)
        try:
            with self._lock, self._conn:
                self._conn.execute(f"CREATE TABLE IF NOT EXISTS {_quote(name)} ({body})")
        except sqlite3.Error as exc:
            raise CollectionCreateError(str(exc), {"table": name}) from exc
        logger.info("sqlite_table_created", table=name, path=str(self.path))
        return True

    def replace_all(self, collection: str, docs: Sequence[Dict[str, Any]]) -> int:
        try:
            with self._lock, self._conn:
                self._conn.execute(f"DELETE FROM {_quote(collection)}")
                outcome = self._insert_rows(collection, docs)
        except sqlite3.Error as exc:
            raise StoreError(str(exc), {"table": collection}) from exc
        return outcome.inserted

    def count(self, collection: str) -> int:
        try:
            with self._lock:
                row = self._conn.execute(
                    f"SELECT count(*) AS n FROM {_quote(collection)}"
                ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(str(exc), {"table": collection}) from exc
        return int(row["n"])

    def backup_to(self, destination: str | Path) -> None:
        """Copy the live database into ``destination`` using the online backup API."""
        target = sqlite3.connect(str(destination))
        try:
            with self._lock:
                self._conn.backup(target)
        finally:
            target.close()

    def restore_from(self, source: str | Path) -> None:
        """Overwrite the live database with the contents of ``source``."""
        src = open_sqlite(source, readonly=True)
        try:
            with self._lock:
                src.backup(self._conn)
        finally:
            src.close()

    def close(self) -> None:
        with self._lock:
            self._conn.close()
