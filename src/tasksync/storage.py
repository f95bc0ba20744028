"""Local sqlite store for tasks, the sync outbox and sync metadata.

This module provides persistent storage for the three tables the application
needs: ``tasks``, ``sync_queue`` (the outbox of pending mutations) and a small
``meta`` key-value table. It is plain data access; all sync semantics live in
:mod:`tasksync.sync`.
"""

import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from .task import Task, SyncStatus
from .sync.sync_models import QueueItem
from .utils.datetime import now_utc, parse_datetime, to_iso_string


logger = logging.getLogger(__name__)

# Columns of the tasks table that may be written through update_task
TASK_COLUMNS = frozenset({
    "server_id",
    "title",
    "description",
    "completed",
    "is_deleted",
    "updated_at",
    "sync_status",
    "last_synced_at",
})


class LocalStore:
    """Persistent storage for tasks, queue items and metadata."""

    def __init__(self, db_path: Union[Path, str]):
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self.logger = logging.getLogger(__name__)

        self._init_database()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init_database(self):
        """Initialize the SQLite database with required tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._connect() as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS tasks (
                        id TEXT PRIMARY KEY,
                        server_id TEXT,
                        title TEXT NOT NULL,
                        description TEXT NOT NULL DEFAULT '',
                        completed INTEGER NOT NULL DEFAULT 0,
                        is_deleted INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        sync_status TEXT NOT NULL DEFAULT 'pending'
                            CHECK (sync_status IN ('pending', 'synced', 'error')),
                        last_synced_at TEXT
                    )
                """)

                conn.execute("""
                    CREATE TABLE IF NOT EXISTS sync_queue (
                        id TEXT PRIMARY KEY,
                        task_id TEXT NOT NULL,
                        operation TEXT NOT NULL
                            CHECK (operation IN ('create', 'update', 'delete')),
                        data TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT,
                        retry_count INTEGER NOT NULL DEFAULT 0,
                        last_error TEXT
                    )
                """)

                conn.execute("""
                    CREATE TABLE IF NOT EXISTS meta (
                        key TEXT PRIMARY KEY,
                        value TEXT,
                        updated_at TEXT
                    )
                """)

                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_tasks_sync_status
                    ON tasks(sync_status)
                """)

                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_queue_created_at
                    ON sync_queue(created_at)
                """)

                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_queue_task_id
                    ON sync_queue(task_id)
                """)

            self.logger.debug(f"Initialized local store at {self.db_path}")

        except sqlite3.Error as e:
            self.logger.error(f"Failed to initialize database: {e}")
            raise

    # Task Operations

    async def insert_task(self, task: Task):
        """Insert a new task row."""
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO tasks
                (id, server_id, title, description, completed, is_deleted,
                 created_at, updated_at, sync_status, last_synced_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                task.id,
                task.server_id,
                task.title,
                task.description,
                int(task.completed),
                int(task.is_deleted),
                to_iso_string(task.created_at),
                to_iso_string(task.updated_at),
                task.sync_status.value,
                to_iso_string(task.last_synced_at),
            ))

    async def get_task(self, task_id: str, include_deleted: bool = False) -> Optional[Task]:
        """Get a task by id.

        Args:
            task_id: Local task id
            include_deleted: Also return soft-deleted rows

        Returns:
            Task if found, None otherwise
        """
        query = "SELECT * FROM tasks WHERE id = ?"
        if not include_deleted:
            query += " AND is_deleted = 0"

        with self._connect() as conn:
            row = conn.execute(query, (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    async def list_tasks(self, include_deleted: bool = False) -> List[Task]:
        """List tasks ordered by creation time."""
        query = "SELECT * FROM tasks"
        if not include_deleted:
            query += " WHERE is_deleted = 0"
        query += " ORDER BY created_at ASC, rowid ASC"

        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_task(row) for row in rows]

    async def get_tasks_needing_sync(self) -> List[Task]:
        """Get live tasks whose sync status is pending or error."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT * FROM tasks
                WHERE sync_status IN ('pending', 'error') AND is_deleted = 0
                ORDER BY updated_at ASC
            """).fetchall()
        return [self._row_to_task(row) for row in rows]

    async def update_task(self, task_id: str, fields: Dict[str, Any]) -> bool:
        """Update selected columns of a task row.

        Args:
            task_id: Local task id
            fields: Column -> value; only columns in TASK_COLUMNS are accepted

        Returns:
            True if a row was updated

        Raises:
            ValueError: If an unknown column is given
        """
        if not fields:
            return False

        unknown = set(fields) - TASK_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update task columns: {', '.join(sorted(unknown))}")

        columns = sorted(fields)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        params = [self._to_sql(fields[column]) for column in columns]
        params.append(task_id)

        with self._connect() as conn:
            cursor = conn.execute(f"UPDATE tasks SET {assignments} WHERE id = ?", params)
            return cursor.rowcount > 0

    async def set_task_sync_status_if(self, task_id: str, status: SyncStatus,
                                      current: SyncStatus) -> bool:
        """Set a task's sync status only when it currently equals ``current``."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE tasks SET sync_status = ? WHERE id = ? AND sync_status = ?",
                (status.value, task_id, current.value),
            )
            return cursor.rowcount > 0

    # Queue Operations

    async def insert_queue_item(self, item: QueueItem):
        """Append an item to the outbox."""
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO sync_queue
                (id, task_id, operation, data, created_at, updated_at, retry_count, last_error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                item.id,
                item.task_id,
                item.operation.value,
                item.data,
                to_iso_string(item.created_at),
                to_iso_string(item.updated_at),
                item.retry_count,
                item.last_error,
            ))

    async def get_queue_items(self, max_retries: int) -> List[QueueItem]:
        """Get items still eligible for processing, oldest first."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT * FROM sync_queue
                WHERE COALESCE(retry_count, 0) < ?
                ORDER BY created_at ASC, rowid ASC
            """, (max_retries,)).fetchall()
        return [self._row_to_queue_item(row) for row in rows]

    async def get_failed_queue_items(self, max_retries: int,
                                     item_ids: Optional[Sequence[str]] = None) -> List[QueueItem]:
        """Get items that reached the retry ceiling, optionally restricted to ids."""
        query = "SELECT * FROM sync_queue WHERE COALESCE(retry_count, 0) >= ?"
        params: List[Any] = [max_retries]
        if item_ids is not None:
            if not item_ids:
                return []
            placeholders = ",".join("?" for _ in item_ids)
            query += f" AND id IN ({placeholders})"
            params.extend(item_ids)
        query += " ORDER BY created_at ASC, rowid ASC"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_queue_item(row) for row in rows]

    async def get_queue_items_for_task(self, task_id: str) -> List[QueueItem]:
        """Get every outbox item for a task, oldest first."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT * FROM sync_queue
                WHERE task_id = ?
                ORDER BY created_at ASC, rowid ASC
            """, (task_id,)).fetchall()
        return [self._row_to_queue_item(row) for row in rows]

    async def get_queue_item(self, item_id: str) -> Optional[QueueItem]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sync_queue WHERE id = ?", (item_id,)).fetchone()
        return self._row_to_queue_item(row) if row else None

    async def increment_retry(self, item_id: str, error: str,
                              updated_at: Optional[datetime] = None) -> int:
        """Record a failed attempt on an item.

        Returns:
            The item's retry count after the increment, 0 if the item is gone
        """
        updated_at = updated_at or now_utc()
        with self._connect() as conn:
            conn.execute("""
                UPDATE sync_queue
                SET retry_count = COALESCE(retry_count, 0) + 1,
                    last_error = ?,
                    updated_at = ?
                WHERE id = ?
            """, (error, to_iso_string(updated_at), item_id))
            row = conn.execute(
                "SELECT retry_count FROM sync_queue WHERE id = ?", (item_id,)
            ).fetchone()
        return row["retry_count"] if row else 0

    async def delete_queue_item(self, item_id: str) -> bool:
        """Remove an item from the outbox."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM sync_queue WHERE id = ?", (item_id,))
            return cursor.rowcount > 0

    async def reset_queue_items(self, item_ids: Sequence[str]) -> int:
        """Clear retry bookkeeping so items become eligible again."""
        if not item_ids:
            return 0
        placeholders = ",".join("?" for _ in item_ids)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE sync_queue SET retry_count = 0, last_error = NULL, updated_at = ? "
                f"WHERE id IN ({placeholders})",
                [to_iso_string(now_utc()), *item_ids],
            )
            return cursor.rowcount

    async def delete_queue_items(self, item_ids: Sequence[str]) -> int:
        if not item_ids:
            return 0
        placeholders = ",".join("?" for _ in item_ids)
        with self._connect() as conn:
            cursor = conn.execute(
                f"DELETE FROM sync_queue WHERE id IN ({placeholders})", list(item_ids)
            )
            return cursor.rowcount

    async def count_queue_items(self, max_retries: int) -> int:
        """Count items still below the retry ceiling."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM sync_queue WHERE COALESCE(retry_count, 0) < ?",
                (max_retries,),
            ).fetchone()
        return row["count"]

    async def count_failed_queue_items(self, max_retries: int) -> int:
        """Count items at or over the retry ceiling."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM sync_queue WHERE COALESCE(retry_count, 0) >= ?",
                (max_retries,),
            ).fetchone()
        return row["count"]

    async def count_queue_items_for_task(self, task_id: str, max_retries: int) -> int:
        """Count one task's items still below the retry ceiling."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM sync_queue "
                "WHERE task_id = ? AND COALESCE(retry_count, 0) < ?",
                (task_id, max_retries),
            ).fetchone()
        return row["count"]

    async def count_failed_queue_items_for_task(self, task_id: str, max_retries: int) -> int:
        """Count one task's items at or over the retry ceiling."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM sync_queue "
                "WHERE task_id = ? AND COALESCE(retry_count, 0) >= ?",
                (task_id, max_retries),
            ).fetchone()
        return row["count"]

    # Metadata

    async def get_meta(self, key: str) -> Optional[str]:
        """Get a metadata value."""
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    async def set_meta(self, key: str, value: str):
        """Set a metadata value."""
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO meta (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, to_iso_string(now_utc())),
            )

    # Row conversion

    @staticmethod
    def _to_sql(value: Any) -> Any:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, datetime):
            return to_iso_string(value)
        if isinstance(value, Enum):
            return value.value
        return value

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        """Convert database row to Task object."""
        return Task(
            id=row["id"],
            server_id=row["server_id"],
            title=row["title"],
            description=row["description"] or "",
            completed=bool(row["completed"]),
            is_deleted=bool(row["is_deleted"]),
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
            sync_status=SyncStatus(row["sync_status"]),
            last_synced_at=parse_datetime(row["last_synced_at"]),
        )

    def _row_to_queue_item(self, row: sqlite3.Row) -> QueueItem:
        """Convert database row to QueueItem object."""
        return QueueItem(
            id=row["id"],
            task_id=row["task_id"],
            operation=row["operation"],
            data=row["data"],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
            retry_count=row["retry_count"] or 0,
            last_error=row["last_error"],
        )
