"""
Key-value persistence for free-form events, color overrides and user
preferences.

The core treats the store as an opaque string-keyed blob store (``DataStore``).
``SqliteDataStore`` is the local implementation used by the CLI.
"""

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any
from typing import Protocol

from team_calendar.models import DecodeError
from team_calendar.models import TransportError

DEFAULT_SCOPE = "Default"
USER_SCOPE = "User"


class DataStore(Protocol):
    """Asynchronous string-keyed blob store, partitioned by scope."""

    async def get_value(self, key: str, scope: str = DEFAULT_SCOPE) -> Any | None: ...

    async def set_value(self, key: str, value: Any, scope: str = DEFAULT_SCOPE) -> None: ...


def events_key(team_id: str, month_key: str) -> str:
    """Store key for one team's month bucket, e.g. ``events-<team>-2024-03``."""
    return f"events-{team_id}-{month_key}"


def selected_team_key(project_id: str) -> str:
    return f"selected-team-{project_id}"


class SqliteDataStore:
    """``DataStore`` backed by a local SQLite file, one JSON value per row."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Open the database and create the table if needed."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(str(self.db_path))
            self.conn.row_factory = sqlite3.Row
            self._init_schema()
        except (OSError, sqlite3.Error) as e:
            raise TransportError(f"Cannot open data store {self.db_path}: {e}") from e

    def _init_schema(self):
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS extension_data (
                scope TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (scope, key)
            )
        """)
        self.conn.commit()

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise TransportError("Data store not connected")
        return self.conn

    async def get_value(self, key: str, scope: str = DEFAULT_SCOPE) -> Any | None:
        """Return the decoded value for *key*, or ``None`` when absent."""
        conn = self._require_conn()
        try:
            row = conn.execute(
                "SELECT value FROM extension_data WHERE scope = ? AND key = ?",
                (scope, key),
            ).fetchone()
        except sqlite3.Error as e:
            raise TransportError(f"Failed to read {key!r}: {e}") from e
        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except (json.JSONDecodeError, ValueError) as e:
            raise DecodeError(f"Stored value for {key!r} is not valid JSON: {e}") from e

    async def set_value(self, key: str, value: Any, scope: str = DEFAULT_SCOPE) -> None:
        """Upsert *key* with any JSON-serialisable *value*."""
        conn = self._require_conn()
        payload = json.dumps(value)
        try:
            conn.execute(
                "INSERT INTO extension_data (scope, key, value, updated_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(scope, key) DO UPDATE SET "
                "value = excluded.value, updated_at = excluded.updated_at",
                (scope, key, payload, int(time.time())),
            )
            conn.commit()
        except sqlite3.Error as e:
            raise TransportError(f"Failed to write {key!r}: {e}") from e
        logging.getLogger(__name__).debug("Stored %s/%s (%d bytes)", scope, key, len(payload))

    def keys(self, prefix: str = "", scope: str = DEFAULT_SCOPE) -> list[str]:
        """List stored keys starting with *prefix*."""
        conn = self._require_conn()
        pattern = prefix.replace("\\", "\\\\").replace("%", r"\%").replace("_", r"\_") + "%"
        try:
            cursor = conn.execute(
                "SELECT key FROM extension_data "
                "WHERE scope = ? AND key LIKE ? ESCAPE '\\' ORDER BY key",
                (scope, pattern),
            )
            return [row["key"] for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise TransportError(f"Failed to list keys under {prefix!r}: {e}") from e

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
