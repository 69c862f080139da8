"""SQLite-backed record store.

All collections share one ``records`` table with JSON serialization of the
record body. Movements additionally expose ``arrival_ms`` as a real column so
the poller's due-movement query can use an index. Commits run under
``BEGIN IMMEDIATE``, which takes the database write lock before the version
checks, so two processes cannot interleave a check and a write.
"""

import json
import sqlite3
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .repository import DELETED, CommitConflict, Key, Store, UnitOfWork


class SQLiteUnitOfWork(UnitOfWork):
    """Unit of work against a SQLiteStore."""

    def __init__(self, store: "SQLiteStore"):
        super().__init__()
        self._store = store

    def _read(self, collection: str, key: str) -> Optional[Tuple[int, dict]]:
        conn = self._store._get_connection()
        try:
            row = conn.execute(
                "SELECT version, data FROM records WHERE collection = ? AND key = ?",
                (collection, key),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return row[0], json.loads(row[1])

    def _apply(self, reads: Dict[Key, Optional[int]], writes: Dict[Key, object]) -> None:
        conn = self._store._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for (collection, key), version in reads.items():
                    row = conn.execute(
                        "SELECT version FROM records WHERE collection = ? AND key = ?",
                        (collection, key),
                    ).fetchone()
                    current_version = row[0] if row else None
                    if current_version != version:
                        raise CommitConflict(collection, key)

                for (collection, key), staged in writes.items():
                    if staged is DELETED:
                        conn.execute(
                            "DELETE FROM records WHERE collection = ? AND key = ?",
                            (collection, key),
                        )
                        continue
                    row = conn.execute(
                        "SELECT version, data FROM records WHERE collection = ? AND key = ?",
                        (collection, key),
                    ).fetchone()
                    current = json.loads(row[1]) if row else None
                    version = row[0] + 1 if row else 1
                    merged = staged.merged_onto(current)
                    arrival = merged.get("arrival_ms") if collection == "movements" else None
                    conn.execute("""
                        INSERT INTO records (collection, key, version, arrival_ms, data)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(collection, key) DO UPDATE SET
                            version = excluded.version,
                            arrival_ms = excluded.arrival_ms,
                            data = excluded.data
                    """, (collection, key, version, arrival, json.dumps(merged)))
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()


class SQLiteStore(Store):
    """SQLite record store, safe to share between processes on one host."""

    def __init__(self, database_uri: str = "instance/movements.db"):
        """Initialize store.

        Args:
            database_uri: Path to SQLite database file
        """
        self.database_path = Path(database_uri)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection in autocommit mode; transactions are explicit."""
        return sqlite3.connect(self.database_path, isolation_level=None, timeout=30)

    def _init_db(self) -> None:
        """Initialize database schema."""
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    collection TEXT NOT NULL,
                    key TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    arrival_ms INTEGER,
                    data TEXT NOT NULL,
                    PRIMARY KEY (collection, key)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_records_arrival ON records(collection, arrival_ms)"
            )
        finally:
            conn.close()

    def begin(self) -> UnitOfWork:
        return SQLiteUnitOfWork(self)

    def due_movements(self, now_ms: int) -> List[dict]:
        conn = self._get_connection()
        try:
            rows = conn.execute("""
                SELECT key, data FROM records
                WHERE collection = 'movements' AND arrival_ms <= ?
                ORDER BY arrival_ms
            """, (now_ms,)).fetchall()
        finally:
            conn.close()
        return [dict(json.loads(data), id=key) for key, data in rows]

    def list_records(self, collection: str) -> List[dict]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT key, data FROM records WHERE collection = ? ORDER BY key",
                (collection,),
            ).fetchall()
        finally:
            conn.close()
        return [dict(json.loads(data), id=key) for key, data in rows]

    def get_record(self, collection: str, key: str) -> Optional[dict]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT data FROM records WHERE collection = ? AND key = ?",
                (collection, key),
            ).fetchone()
        finally:
            conn.close()
        return json.loads(row[0]) if row else None
