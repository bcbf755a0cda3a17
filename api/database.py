"""
Database module for BrowserPilot.
Implements SQLite persistence of tasks, screenshots and task types with async support.
"""

import json
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import aiosqlite

from core.models import SCHEMA_VERSION, Screenshot, Task

logger = logging.getLogger(__name__)

# Database configuration
DB_PATH = Path(os.getenv("DATABASE_PATH", "./data/browserpilot.db"))

_TASK_JSON_COLUMNS = ("params", "logs", "subtasks")


class Database:
    """
    Persistence collaborator for the task core.

    Every write commits before returning, so a caller that awaited a save
    can rely on it being durable.
    """

    def __init__(self, path: Union[str, Path] = DB_PATH):
        self.path = Path(path)

    async def init(self):
        """Initialize the database schema."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.path) as db:
            # Tasks table
            await db.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    name TEXT,
                    status TEXT NOT NULL,
                    stage TEXT,
                    params TEXT,
                    logs TEXT,
                    subtasks TEXT,
                    start_time TEXT,
                    end_time TEXT,
                    result TEXT,
                    error TEXT,
                    created_at TEXT,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # Screenshots table
            await db.execute("""
                CREATE TABLE IF NOT EXISTS screenshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id TEXT NOT NULL,
                    screenshot_index INTEGER NOT NULL,
                    label TEXT,
                    data BLOB NOT NULL,
                    created_at TEXT,
                    UNIQUE (task_id, screenshot_index)
                )
            """)

            # Custom chained task types
            await db.execute("""
                CREATE TABLE IF NOT EXISTS task_types (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    parameters TEXT,
                    subtasks TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            await db.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_screenshots_task ON screenshots(task_id)")

            await _migrate_tasks(db)
            await db.commit()

    @asynccontextmanager
    async def get_db(self):
        """Get a database connection."""
        db = await aiosqlite.connect(self.path)
        db.row_factory = aiosqlite.Row
        try:
            yield db
        finally:
            await db.close()

    # Task operations
    async def save_task(self, task_id: str, task: Task) -> bool:
        """Insert or replace the durable copy of a task."""
        record = task.to_dict()
        async with self.get_db() as db:
            await db.execute("""
                INSERT OR REPLACE INTO tasks
                (id, type, name, status, stage, params, logs, subtasks, current_index,
                 start_time, end_time, result, error, created_at, schema_version, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                task_id,
                record["type"],
                record["name"],
                record["status"],
                record["stage"],
                json.dumps(record["params"]),
                json.dumps(record["logs"]),
                json.dumps(record["subtasks"]),
                record["current_index"],
                record["start_time"],
                record["end_time"],
                record["result"],
                record["error"],
                record["created_at"],
                record["schema_version"],
                datetime.now().isoformat(),
            ))
            await db.commit()
            return True

    async def load_task(self, task_id: str) -> Optional[Task]:
        async with self.get_db() as db:
            cursor = await db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
            row = await cursor.fetchone()
            return _row_to_task(row) if row else None

    async def list_tasks(self, limit: int = 500) -> List[Task]:
        """Newest first."""
        async with self.get_db() as db:
            cursor = await db.execute(
                "SELECT * FROM tasks ORDER BY created_at DESC LIMIT ?", (limit,)
            )
            rows = await cursor.fetchall()

        tasks = []
        for row in rows:
            try:
                tasks.append(_row_to_task(row))
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping unreadable task row {row['id']}: {e}")
        return tasks

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task and its screenshots."""
        async with self.get_db() as db:
            cursor = await db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            await db.execute("DELETE FROM screenshots WHERE task_id = ?", (task_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def delete_tasks(self, task_ids: Iterable[str]) -> int:
        ids = list(task_ids)
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        async with self.get_db() as db:
            cursor = await db.execute(f"DELETE FROM tasks WHERE id IN ({placeholders})", ids)
            await db.execute(f"DELETE FROM screenshots WHERE task_id IN ({placeholders})", ids)
            await db.commit()
            return cursor.rowcount

    # Screenshot operations
    async def save_screenshot(self, task_id: str, index: int, label: str, data: bytes,
                              timestamp: Optional[str] = None) -> bool:
        async with self.get_db() as db:
            await db.execute("""
                INSERT OR REPLACE INTO screenshots (task_id, screenshot_index, label, data, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (task_id, index, label, data, timestamp or datetime.now().isoformat()))
            await db.commit()
            return True

    async def load_screenshots(self, task_id: str) -> List[Screenshot]:
        """All screenshots of a task, ordered by index."""
        async with self.get_db() as db:
            cursor = await db.execute(
                "SELECT * FROM screenshots WHERE task_id = ? ORDER BY screenshot_index",
                (task_id,)
            )
            rows = await cursor.fetchall()
        return [
            Screenshot(
                task_id=row["task_id"],
                index=row["screenshot_index"],
                label=row["label"] or "",
                data=bytes(row["data"]),
                timestamp=row["created_at"] or "",
            )
            for row in rows
        ]

    async def delete_screenshots(self, task_id: str) -> int:
        async with self.get_db() as db:
            cursor = await db.execute("DELETE FROM screenshots WHERE task_id = ?", (task_id,))
            await db.commit()
            return cursor.rowcount

    # Task type operations
    async def list_task_types(self) -> List[Dict[str, Any]]:
        async with self.get_db() as db:
            cursor = await db.execute("SELECT * FROM task_types ORDER BY created_at DESC")
            rows = await cursor.fetchall()
            return [_row_to_task_type(row) for row in rows]

    async def get_task_type(self, type_id: str) -> Optional[Dict[str, Any]]:
        async with self.get_db() as db:
            cursor = await db.execute("SELECT * FROM task_types WHERE id = ?", (type_id,))
            row = await cursor.fetchone()
            return _row_to_task_type(row) if row else None

    async def find_task_type(self, id_or_name: str) -> Optional[Dict[str, Any]]:
        """Look a task type up by id, falling back to its name."""
        async with self.get_db() as db:
            cursor = await db.execute(
                "SELECT * FROM task_types WHERE id = ? OR name = ? ORDER BY id = ? DESC LIMIT 1",
                (id_or_name, id_or_name, id_or_name)
            )
            row = await cursor.fetchone()
            return _row_to_task_type(row) if row else None

    async def create_task_type(self, task_type: Dict[str, Any]) -> Dict[str, Any]:
        """Create a task type. Returns the stored record."""
        type_id = task_type.get("id") or f"tt_{uuid.uuid4().hex[:12]}"
        now = datetime.now().isoformat()
        async with self.get_db() as db:
            await db.execute("""
                INSERT INTO task_types (id, name, description, parameters, subtasks, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                type_id,
                task_type["name"],
                task_type.get("description"),
                json.dumps(task_type.get("parameters") or []),
                json.dumps(task_type.get("subtasks") or []),
                now,
                now,
            ))
            await db.commit()
        return await self.get_task_type(type_id)

    async def update_task_type(self, type_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply the provided fields. Returns None if the type does not exist."""
        existing = await self.get_task_type(type_id)
        if not existing:
            return None
        merged = {**existing, **{k: v for k, v in updates.items() if v is not None}}
        async with self.get_db() as db:
            await db.execute("""
                UPDATE task_types
                SET name = ?, description = ?, parameters = ?, subtasks = ?, updated_at = ?
                WHERE id = ?
            """, (
                merged["name"],
                merged.get("description"),
                json.dumps(merged.get("parameters") or []),
                json.dumps(merged.get("subtasks") or []),
                datetime.now().isoformat(),
                type_id,
            ))
            await db.commit()
        return await self.get_task_type(type_id)

    async def delete_task_type(self, type_id: str) -> bool:
        async with self.get_db() as db:
            cursor = await db.execute("DELETE FROM task_types WHERE id = ?", (type_id,))
            await db.commit()
            return cursor.rowcount > 0


async def _migrate_tasks(db: aiosqlite.Connection):
    """Add new optional columns to tasks if missing."""
    cursor = await db.execute("PRAGMA table_info(tasks)")
    rows = await cursor.fetchall()
    existing = {row[1] for row in rows}  # (cid, name, type, notnull, dflt, pk)

    migrations = [
        ("current_index", "INTEGER DEFAULT 0"),
        ("schema_version", "INTEGER DEFAULT 1"),
    ]

    for col, col_type in migrations:
        if col in existing:
            continue
        await db.execute(f"ALTER TABLE tasks ADD COLUMN {col} {col_type}")


def _loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _row_to_task(row: aiosqlite.Row) -> Task:
    data = dict(row)
    data.pop("updated_at", None)
    for column in _TASK_JSON_COLUMNS:
        data[column] = _loads(data.get(column), {} if column == "params" else [])
    if "metadata" in data:
        data["metadata"] = _loads(data["metadata"], {})
    data["schema_version"] = data.get("schema_version") or 1
    if data["schema_version"] >= SCHEMA_VERSION:
        data.pop("metadata", None)
    return Task.from_dict(data)


def _row_to_task_type(row: aiosqlite.Row) -> Dict[str, Any]:
    data = dict(row)
    data["parameters"] = _loads(data.get("parameters"), [])
    data["subtasks"] = _loads(data.get("subtasks"), [])
    return data
